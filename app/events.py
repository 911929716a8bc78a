"""
Typed event payloads exchanged between stages.

Every event carries its own `name` tag; `Event` is the discriminated union
the router dispatches on, so a stage subscribed to `questions.judged` only
ever receives a `QuestionsJudged`.
"""

from typing import Annotated, Any, Dict, List, Literal, Union

from pydantic import Field, TypeAdapter

from app.models import CamelModel, EvaluatedQuestion, ExtractedContent, FinalReport, SearchResult


class TopicSeeded(CamelModel):
    name: Literal["topic.seeded"] = "topic.seeded"
    trace_id: str
    topic: str

    def summary(self) -> Dict[str, Any]:
        return {"topic": self.topic}


class QueriesGenerated(CamelModel):
    name: Literal["queries.generated"] = "queries.generated"
    trace_id: str
    queries: List[str]

    def summary(self) -> Dict[str, Any]:
        return {"queries": list(self.queries)}


class SearchResultsObtained(CamelModel):
    name: Literal["search_results.obtained"] = "search_results.obtained"
    trace_id: str
    results: List[SearchResult]
    errors: List[str] = Field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {"results": len(self.results), "errors": list(self.errors)}


class ContentExtracted(CamelModel):
    name: Literal["content.extracted"] = "content.extracted"
    trace_id: str
    extracted_content: List[ExtractedContent]

    def summary(self) -> Dict[str, Any]:
        failed = sum(1 for item in self.extracted_content if item.error)
        return {"extracted": len(self.extracted_content) - failed, "failed": failed}


class QuestionsGenerated(CamelModel):
    name: Literal["questions.generated"] = "questions.generated"
    trace_id: str
    questions: List[str]

    def summary(self) -> Dict[str, Any]:
        return {"questions": len(self.questions)}


class QuestionsJudged(CamelModel):
    name: Literal["questions.judged"] = "questions.judged"
    trace_id: str
    evaluated_questions: List[EvaluatedQuestion]

    def summary(self) -> Dict[str, Any]:
        failed = sum(1 for item in self.evaluated_questions if item.error)
        return {"evaluated": len(self.evaluated_questions), "failed": failed}


class ReportGenerated(CamelModel):
    name: Literal["report.generated"] = "report.generated"
    trace_id: str
    report: FinalReport

    def summary(self) -> Dict[str, Any]:
        return {"questionsInReport": self.report.metadata.questions_in_report}


class WorkflowError(CamelModel):
    name: Literal["workflow.error"] = "workflow.error"
    trace_id: str
    stage: str
    error: str

    def summary(self) -> Dict[str, Any]:
        return {"stage": self.stage, "error": self.error}


Event = Annotated[
    Union[
        TopicSeeded,
        QueriesGenerated,
        SearchResultsObtained,
        ContentExtracted,
        QuestionsGenerated,
        QuestionsJudged,
        ReportGenerated,
        WorkflowError,
    ],
    Field(discriminator="name"),
]

EVENT_ADAPTER: TypeAdapter = TypeAdapter(Event)

EVENT_NAMES = (
    "topic.seeded",
    "queries.generated",
    "search_results.obtained",
    "content.extracted",
    "questions.generated",
    "questions.judged",
    "report.generated",
    "workflow.error",
)


def parse_event(data: Any) -> Any:
    return EVENT_ADAPTER.validate_python(data)
