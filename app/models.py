from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


TraceStateName = Literal[
    "Started",
    "QueriesGenerated",
    "SearchCompleted",
    "ContentExtracted",
    "QuestionsGenerated",
    "QuestionsJudged",
    "ReportReady",
    "Errored",
]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SearchResult(CamelModel):
    url: str
    title: str = ""
    relevance_score: Optional[float] = None
    published_date: Optional[str] = None
    author: Optional[str] = None


class ExtractedContent(CamelModel):
    url: str
    title: str = ""
    text: str = ""
    excerpt: Optional[str] = None
    length: Optional[int] = None
    error: Optional[str] = None

    @property
    def usable(self) -> bool:
        return not self.error and bool(self.text or self.excerpt)


class CriterionScore(BaseModel):
    score: float = 0
    justification: str = ""


class EvaluatedQuestion(CamelModel):
    question: str
    novelty: CriterionScore
    feasibility: CriterionScore
    impact: CriterionScore
    cross_disciplinary: CriterionScore
    overall_score: float = 0.0
    error: Optional[str] = None


class ReportMetadata(CamelModel):
    total_questions_evaluated: int
    questions_in_report: int


class FinalReport(CamelModel):
    trace_id: str
    seed_topic: str
    timestamp: str
    top_questions: List[EvaluatedQuestion] = Field(default_factory=list)
    metadata: ReportMetadata


class WorkflowErrorRecord(CamelModel):
    trace_id: str
    stage: str
    error: str
    timestamp: str


class StartResearchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    seed_topic: str = Field(min_length=1)

    @field_validator("seed_topic")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("seed_topic must not be blank")
        return value


class StartResearchResponse(CamelModel):
    trace_id: str


class TraceStatusResponse(CamelModel):
    trace_id: str
    seed_topic: Optional[str] = None
    state: TraceStateName
    artifacts: List[str] = Field(default_factory=list)
    error: Optional[WorkflowErrorRecord] = None
    events: List[Dict[str, Any]] = Field(default_factory=list)
