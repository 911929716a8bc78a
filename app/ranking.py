from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from app.models import (
    CriterionScore,
    EvaluatedQuestion,
    FinalReport,
    ReportMetadata,
)

DEFAULT_TOP_N = 5
UNKNOWN_TOPIC = "Unknown"
EVALUATION_ERROR_JUSTIFICATION = "Evaluation Error"


def overall_score(scores: Sequence[float]) -> float:
    if not scores:
        return 0.0
    return round(sum(float(s) for s in scores) / len(scores), 2)


def evaluated_from_criteria(question: str, criteria: Dict[str, Dict[str, Any]]) -> EvaluatedQuestion:
    novelty = CriterionScore(**criteria["novelty"])
    feasibility = CriterionScore(**criteria["feasibility"])
    impact = CriterionScore(**criteria["impact"])
    cross = CriterionScore(**criteria["crossDisciplinary"])
    return EvaluatedQuestion(
        question=question,
        novelty=novelty,
        feasibility=feasibility,
        impact=impact,
        cross_disciplinary=cross,
        overall_score=overall_score(
            [novelty.score, feasibility.score, impact.score, cross.score]
        ),
    )


def failed_evaluation(question: str, error: str) -> EvaluatedQuestion:
    placeholder = CriterionScore(score=0, justification=EVALUATION_ERROR_JUSTIFICATION)
    return EvaluatedQuestion(
        question=question,
        novelty=placeholder,
        feasibility=placeholder.model_copy(),
        impact=placeholder.model_copy(),
        cross_disciplinary=placeholder.model_copy(),
        overall_score=0.0,
        error=error or "unknown evaluation error",
    )


def rank_questions(
    evaluated: Sequence[EvaluatedQuestion], top_n: int = DEFAULT_TOP_N
) -> List[EvaluatedQuestion]:
    # sorted() is stable, so equal scores keep their input order.
    valid = [q for q in evaluated if not q.error]
    ranked = sorted(valid, key=lambda q: q.overall_score, reverse=True)
    return ranked[: max(0, int(top_n))]


def build_report(
    trace_id: str,
    seed_topic: Optional[str],
    evaluated: Sequence[EvaluatedQuestion],
    top_n: int = DEFAULT_TOP_N,
    now: Optional[datetime] = None,
) -> FinalReport:
    top = rank_questions(evaluated, top_n)
    timestamp = (now or datetime.now(timezone.utc)).isoformat()
    return FinalReport(
        trace_id=trace_id,
        seed_topic=seed_topic or UNKNOWN_TOPIC,
        timestamp=timestamp,
        top_questions=top,
        metadata=ReportMetadata(
            total_questions_evaluated=len(evaluated),
            questions_in_report=len(top),
        ),
    )
