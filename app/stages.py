import time
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence

import httpx

from app.config import Settings
from app.events import (
    ContentExtracted,
    QueriesGenerated,
    QuestionsGenerated,
    QuestionsJudged,
    ReportGenerated,
    SearchResultsObtained,
    TopicSeeded,
    WorkflowError,
)
from app.models import EvaluatedQuestion, ExtractedContent, SearchResult, WorkflowErrorRecord
from app.ranking import build_report, evaluated_from_criteria, failed_evaluation
from app.router import Stage, StageContext
from app.state_store import StateStore
from discovery_engine import (
    LLM,
    SYSTEM_BRAINSTORM,
    SYSTEM_JUDGE,
    SYSTEM_QUERY_GEN,
    ContentFetcher,
    SearchError,
    WebSearch,
    parse_criteria,
    parse_string_list,
    truncate_text,
)

MAX_CONTEXT_CHARS = 8000
CONTEXT_SNIPPET_CHARS = 300
NO_CONTEXT_TEXT = "No content could be summarized from the provided sources."

# (model, temperature) -> object with complete(system, user, stage)
LLMFactory = Callable[[str, float], Any]


class StageFailure(RuntimeError):
    pass


def default_llm_factory(settings: Settings) -> LLMFactory:
    def factory(model: str, temperature: float) -> LLM:
        return LLM(
            api_key=settings.require_openai(),
            model=model,
            timeout=settings.llm_timeout_sec,
            temperature=temperature,
        )

    return factory


def default_search_factory(settings: Settings) -> Callable[[], WebSearch]:
    def factory() -> WebSearch:
        return WebSearch(
            api_key=settings.require_exa(),
            num_results=settings.search_results_per_query,
            timeout=settings.search_timeout_sec,
        )

    return factory


def default_fetcher_factory(settings: Settings) -> Callable[[], ContentFetcher]:
    def factory() -> ContentFetcher:
        return ContentFetcher(
            max_attempts=settings.fetch_max_attempts,
            timeout=settings.fetch_timeout_sec,
            retry_delay=settings.fetch_retry_delay_sec,
            concurrency=settings.fetch_concurrency,
        )

    return factory


def build_brainstorm_context(
    extracted: Sequence[ExtractedContent],
    max_chars: int = MAX_CONTEXT_CHARS,
    snippet_chars: int = CONTEXT_SNIPPET_CHARS,
) -> str:
    parts: List[str] = []
    used = 0
    for item in extracted:
        if not item.usable:
            continue
        title_part = f"Title: {item.title}\n" if item.title else ""
        summary = item.excerpt or truncate_text(item.text, snippet_chars)
        entry = f"{title_part}Source: {item.url}\nSummary: {summary}\n---\n"
        if used + len(entry) > max_chars:
            break
        parts.append(entry)
        used += len(entry)
    return "".join(parts)


class QueryGeneratorStage(Stage):
    name = "query-generator"
    subscribes = ("topic.seeded",)
    emits = ("queries.generated", "workflow.error")

    def __init__(
        self, settings: Settings, store: StateStore, llm_factory: Optional[LLMFactory] = None
    ) -> None:
        super().__init__(settings, store)
        self._llm_factory = llm_factory or default_llm_factory(settings)

    def handle(self, event: TopicSeeded, ctx: StageContext) -> None:
        ctx.log.info("[%s] generating queries for topic %r", ctx.trace_id, event.topic)
        llm = self._llm_factory(self.settings.query_model, 0.7)
        user_prompt = (
            f'Seed topic: "{event.topic}"\n\n'
            "Generate 3 to 5 diverse and specific search engine queries for this topic. "
            'Return JSON: {"queries": ["..."]}'
        )
        raw = llm.complete(SYSTEM_QUERY_GEN, user_prompt, stage=self.name)
        queries = parse_string_list(raw, "queries")
        ctx.log.info("[%s] generated %d queries", ctx.trace_id, len(queries))
        ctx.state.put("generated_queries", queries)
        ctx.emit(QueriesGenerated(trace_id=ctx.trace_id, queries=queries))


class SearcherStage(Stage):
    name = "searcher"
    subscribes = ("queries.generated",)
    emits = ("search_results.obtained", "workflow.error")

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        search_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(settings, store)
        self._search_factory = search_factory or default_search_factory(settings)
        self._sleep = sleep

    def handle(self, event: QueriesGenerated, ctx: StageContext) -> None:
        search = self._search_factory()
        results: List[SearchResult] = []
        errors: List[str] = []
        for i, query in enumerate(event.queries):
            try:
                hits = search.search(query)
            except (SearchError, httpx.HTTPError) as exc:
                ctx.log.error("[%s] search failed for %r: %s", ctx.trace_id, query, exc)
                errors.append(f'Query "{query}": {exc}')
            else:
                ctx.log.debug("[%s] %d results for %r", ctx.trace_id, len(hits), query)
                results.extend(
                    SearchResult(
                        url=hit.url,
                        title=hit.title,
                        relevance_score=hit.score,
                        published_date=hit.published_date,
                        author=hit.author,
                    )
                    for hit in hits
                )
            if i < len(event.queries) - 1 and self.settings.inter_call_delay_sec > 0:
                self._sleep(self.settings.inter_call_delay_sec)

        if not results:
            detail = f" First error: {errors[0]}" if errors else ""
            raise StageFailure(f"Failed to get results for any query.{detail}")

        ctx.log.info(
            "[%s] aggregated %d search results from %d queries (%d failed)",
            ctx.trace_id,
            len(results),
            len(event.queries),
            len(errors),
        )
        ctx.state.put("search_results", results)
        ctx.emit(SearchResultsObtained(trace_id=ctx.trace_id, results=results, errors=errors))


class ContentExtractorStage(Stage):
    name = "content-extractor"
    subscribes = ("search_results.obtained",)
    emits = ("content.extracted", "workflow.error")

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        fetcher_factory: Optional[Callable[[], Any]] = None,
    ) -> None:
        super().__init__(settings, store)
        self._fetcher_factory = fetcher_factory or default_fetcher_factory(settings)

    def handle(self, event: SearchResultsObtained, ctx: StageContext) -> None:
        if event.errors:
            ctx.log.warning(
                "[%s] search reported errors: %s", ctx.trace_id, "; ".join(event.errors)
            )
        fetcher = self._fetcher_factory()
        pages = fetcher.fetch_all(
            [(r.url, r.title) for r in event.results], trace_id=ctx.trace_id
        )
        extracted = [ExtractedContent(**page.to_dict()) for page in pages]
        failed = [item for item in extracted if item.error]
        for item in failed:
            ctx.log.warning("[%s] failed URL %s: %s", ctx.trace_id, item.url, item.error)
        ctx.log.info(
            "[%s] extracted %d of %d URLs",
            ctx.trace_id,
            len(extracted) - len(failed),
            len(extracted),
        )
        ctx.state.put("extracted_content", extracted)
        if not any(item.usable for item in extracted):
            raise StageFailure(f"Failed to extract content from any of {len(extracted)} URLs.")
        ctx.emit(ContentExtracted(trace_id=ctx.trace_id, extracted_content=extracted))


class QuestionBrainstormerStage(Stage):
    name = "question-brainstormer"
    subscribes = ("content.extracted",)
    emits = ("questions.generated", "workflow.error")

    def __init__(
        self, settings: Settings, store: StateStore, llm_factory: Optional[LLMFactory] = None
    ) -> None:
        super().__init__(settings, store)
        self._llm_factory = llm_factory or default_llm_factory(settings)

    def handle(self, event: ContentExtracted, ctx: StageContext) -> None:
        seed_topic = ctx.state.load("seed_topic")
        if seed_topic is None:
            raise StageFailure(f"Seed topic not found in state for key: {ctx.state.key('seed_topic')}")
        extracted = ctx.state.load("extracted_content")
        if not extracted:
            raise StageFailure(
                f"Extracted content not found or empty in state for key: "
                f"{ctx.state.key('extracted_content')}"
            )

        context_text = build_brainstorm_context(extracted)
        if not context_text:
            ctx.log.warning("[%s] no usable content for the brainstorming prompt", ctx.trace_id)
            context_text = NO_CONTEXT_TEXT

        user_prompt = (
            f'Seed Topic: "{seed_topic}"\n\n'
            f"Context from Web Search Results:\n{context_text}\n"
            "Based on the seed topic and the context above, generate 5-10 novel, impactful, "
            'and potentially cross-disciplinary research questions. Return JSON: {"questions": ["..."]}'
        )
        llm = self._llm_factory(self.settings.brainstorm_model, 0.7)
        raw = llm.complete(SYSTEM_BRAINSTORM, user_prompt, stage=self.name)
        questions = parse_string_list(raw, "questions")
        ctx.log.info("[%s] brainstormed %d research questions", ctx.trace_id, len(questions))
        ctx.state.put("generated_questions", questions)
        ctx.emit(QuestionsGenerated(trace_id=ctx.trace_id, questions=questions))


def judge_prompt(question: str, seed_topic: Optional[str]) -> str:
    topic_line = (
        f'The original seed topic for context was: "{seed_topic}"'
        if seed_topic
        else "No specific seed topic context available."
    )
    return (
        f'Evaluate the following research question:\n"{question}"\n\n'
        f"{topic_line}\n\n"
        "Score novelty, feasibility, impact and crossDisciplinary from 1 to 10 with a brief "
        "justification for each. Return ONLY the JSON object."
    )


class QuestionJudgerStage(Stage):
    name = "question-judger"
    subscribes = ("questions.generated",)
    emits = ("questions.judged", "workflow.error")

    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        llm_factory: Optional[LLMFactory] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        super().__init__(settings, store)
        self._llm_factory = llm_factory or default_llm_factory(settings)
        self._sleep = sleep

    def handle(self, event: QuestionsGenerated, ctx: StageContext) -> None:
        seed_topic = ctx.state.load("seed_topic")
        if not seed_topic:
            ctx.log.warning("[%s] seed topic missing; judging without topic context", ctx.trace_id)
        llm = self._llm_factory(self.settings.judge_model, 0.3)

        evaluated: List[EvaluatedQuestion] = []
        for i, question in enumerate(event.questions):
            try:
                raw = llm.complete(SYSTEM_JUDGE, judge_prompt(question, seed_topic), stage=self.name)
                item = evaluated_from_criteria(question, parse_criteria(raw))
            except Exception as exc:
                ctx.log.error("[%s] failed to evaluate %r: %s", ctx.trace_id, question, exc)
                item = failed_evaluation(question, str(exc) or type(exc).__name__)
            else:
                ctx.log.debug(
                    "[%s] evaluated %r overall=%.2f", ctx.trace_id, question, item.overall_score
                )
            evaluated.append(item)
            if i < len(event.questions) - 1 and self.settings.inter_call_delay_sec > 0:
                self._sleep(self.settings.inter_call_delay_sec)

        failed = sum(1 for q in evaluated if q.error)
        ctx.log.info(
            "[%s] evaluated %d questions, %d failed", ctx.trace_id, len(evaluated), failed
        )
        ctx.state.put("evaluated_questions", evaluated)
        ctx.emit(QuestionsJudged(trace_id=ctx.trace_id, evaluated_questions=evaluated))


class ReportCompilerStage(Stage):
    name = "report-compiler"
    subscribes = ("questions.judged",)
    emits = ("report.generated", "workflow.error")

    def handle(self, event: QuestionsJudged, ctx: StageContext) -> None:
        evaluated = ctx.state.load("evaluated_questions")
        if evaluated is None:
            ctx.log.warning("[%s] evaluated questions missing from state; using event payload", ctx.trace_id)
            evaluated = list(event.evaluated_questions)
        seed_topic = ctx.state.load("seed_topic")
        if not seed_topic:
            ctx.log.warning("[%s] seed topic missing; report will say Unknown", ctx.trace_id)

        report = build_report(ctx.trace_id, seed_topic, evaluated, top_n=self.settings.top_n)
        if not report.top_questions:
            ctx.log.warning("[%s] no valid questions survived evaluation; report is empty", ctx.trace_id)
        ctx.state.put("final_report", report)
        ctx.emit(ReportGenerated(trace_id=ctx.trace_id, report=report))
        ctx.log.info(
            "[%s] report compiled with top %d questions",
            ctx.trace_id,
            report.metadata.questions_in_report,
        )


class WorkflowErrorRecorderStage(Stage):
    name = "workflow-error-recorder"
    subscribes = ("workflow.error",)
    emits = ()

    def handle(self, event: WorkflowError, ctx: StageContext) -> None:
        ctx.log.error("[%s] workflow error in %s: %s", ctx.trace_id, event.stage, event.error)
        if ctx.state.has("workflow_error"):
            return
        ctx.state.put(
            "workflow_error",
            WorkflowErrorRecord(
                trace_id=ctx.trace_id,
                stage=event.stage,
                error=event.error,
                timestamp=datetime.now(timezone.utc).isoformat(),
            ),
        )


def build_stages(
    settings: Settings,
    store: StateStore,
    llm_factory: Optional[LLMFactory] = None,
    search_factory: Optional[Callable[[], Any]] = None,
    fetcher_factory: Optional[Callable[[], Any]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> List[Stage]:
    return [
        QueryGeneratorStage(settings, store, llm_factory=llm_factory),
        SearcherStage(settings, store, search_factory=search_factory, sleep=sleep),
        ContentExtractorStage(settings, store, fetcher_factory=fetcher_factory),
        QuestionBrainstormerStage(settings, store, llm_factory=llm_factory),
        QuestionJudgerStage(settings, store, llm_factory=llm_factory, sleep=sleep),
        ReportCompilerStage(settings, store),
        WorkflowErrorRecorderStage(settings, store),
    ]
