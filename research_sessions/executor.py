import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import httpx

from research_sessions.errors import (
    ExecutionStopped,
    ExecutorFailureError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from research_sessions.models import (
    ACTIVE_PHASES,
    PlanningSnapshot,
    ResearchingSnapshot,
    ResearchSession,
    ResearchSource,
    ResearchTask,
    ThinkingSnapshot,
    WritingSnapshot,
)


logger = logging.getLogger(__name__)

PublishFn = Callable[[str, Dict[str, Any]], Any]


@dataclass
class RunOutcome:
    final_report: str
    knowledge_graph: Optional[str] = None
    cited_urls: List[str] = field(default_factory=list)


class ExecutionContext:
    def __init__(
        self,
        session: ResearchSession,
        run_id: str,
        controller: Any,
        recorder: Any,
        publish: PublishFn,
    ) -> None:
        self.session = session
        self.run_id = run_id
        self._controller = controller
        self._recorder = recorder
        self._publish = publish
        self._phase = session.status if session.status in ACTIVE_PHASES else "thinking"
        self._step = session.current_step or "initialization"
        self._completed_queries: List[str] = []
        self._pending_queries: List[str] = []
        self._recorded_urls: List[str] = []
        self._draft_report = ""
        self._plan = session.report_plan or ""
        self._seed_from_snapshot(session.state_snapshot)

    @property
    def session_id(self) -> str:
        return self.session.id

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def recorded_urls(self) -> List[str]:
        return list(self._recorded_urls)

    @property
    def completed_queries(self) -> List[str]:
        return list(self._completed_queries)

    @property
    def resume_snapshot(self) -> Any:
        snapshot = self.session.state_snapshot
        if snapshot is not None and snapshot.kind in ACTIVE_PHASES:
            return snapshot
        return None

    def _seed_from_snapshot(self, snapshot: Any) -> None:
        # A resumed run carries on from the progress checkpointed before the pause.
        if isinstance(snapshot, ResearchingSnapshot):
            self._completed_queries = list(snapshot.completed_queries)
            self._pending_queries = [q for q in snapshot.pending_queries if q not in snapshot.completed_queries]
        elif isinstance(snapshot, WritingSnapshot):
            self._draft_report = snapshot.draft_report
        elif isinstance(snapshot, PlanningSnapshot) and snapshot.partial_plan and not self._plan:
            self._plan = snapshot.partial_plan

    def should_stop(self) -> bool:
        try:
            self._recorder.ensure_current(self.session_id, self.run_id)
        except ExecutionStopped:
            return True
        return False

    def ensure_current(self) -> None:
        self._recorder.ensure_current(self.session_id, self.run_id)

    def enter_phase(self, phase: str, step: Optional[str] = None, message: Optional[str] = None) -> None:
        step = step or phase
        # A resumed run may replay earlier phases; the session never moves back.
        if ACTIVE_PHASES.index(phase) > ACTIVE_PHASES.index(self._phase):
            try:
                self._controller.advance_phase(self.session_id, self.run_id, phase, step)
            except (InvalidTransitionError, NotFoundError) as exc:
                raise ExecutionStopped(exc.message) from exc
            self._phase = phase
        self._step = step
        self.emit_status(step, message or f"{step}: start")

    def emit_status(self, step: str, message: str) -> None:
        self._publish("status", {"type": step, "message": message})

    def publish_plan(self, plan: str) -> None:
        self._recorder.save_plan(self.session_id, self.run_id, plan)
        self._plan = plan
        self._publish("plan", {"plan": plan})

    def set_pending_queries(self, queries: List[str]) -> None:
        self._pending_queries = [
            str(q) for q in queries if str(q).strip() and str(q) not in self._completed_queries
        ]
        self.checkpoint()

    def is_query_done(self, query: str) -> bool:
        return query in self._completed_queries

    def append_draft(self, text: str) -> None:
        self._draft_report += text

    @property
    def draft_report(self) -> str:
        return self._draft_report

    def checkpoint(self, snapshot: Any = None) -> None:
        if snapshot is None:
            snapshot = self._default_snapshot()
        self._recorder.checkpoint(self.session_id, self.run_id, snapshot)

    def start_task(
        self,
        query: str,
        research_goal: Optional[str] = None,
        priority: int = 0,
    ) -> ResearchTask:
        task = self._recorder.create_task(
            self.session_id,
            self.run_id,
            query=query,
            research_goal=research_goal or f"Find information about: {query}",
            priority=priority,
        )
        task = self._recorder.update_task(self.session_id, self.run_id, task.id, status="searching") or task
        self._publish("task", {"type": "search_start", "task_id": task.id, "query": query})
        return task

    def record_source(self, url: str, task_id: Optional[str] = None, **fields: Any) -> Optional[ResearchSource]:
        tags = fields.pop("tags", None)
        try:
            source = self._recorder.record_source(
                self.session_id, self.run_id, url, task_id=task_id, tags=tags, **fields
            )
        except ValidationFailedError as exc:
            logger.warning("dropping source %r for session %s: %s", url, self.session_id, exc.message)
            return None
        if source.url not in self._recorded_urls:
            self._recorded_urls.append(source.url)
        return source

    def complete_task(
        self,
        task: ResearchTask,
        sources: Optional[List[Dict[str, Any]]] = None,
    ) -> Optional[ResearchTask]:
        recorded: List[ResearchSource] = []
        for raw in sources or []:
            data = dict(raw)
            url = str(data.pop("url", "") or "")
            data.setdefault("tags", [self.session.question, task.query])
            source = self.record_source(url, task_id=task.id, **_source_fields(data))
            if source is not None:
                recorded.append(source)
        scores = [s.relevance_score for s in recorded if s.relevance_score is not None]
        updated = self._recorder.update_task(
            self.session_id,
            self.run_id,
            task.id,
            status="completed",
            search_results=[s.model_dump(mode="json", include={"url", "title", "summary"}) for s in recorded],
            analysis=f'Completed search for "{task.query}" with {len(recorded)} relevant sources found.',
            result_count=len(recorded),
            relevance_score=(sum(scores) / len(scores)) if scores else None,
        )
        self._mark_query_done(task.query)
        self._publish(
            "task",
            {
                "type": "search_complete",
                "task_id": task.id,
                "query": task.query,
                "sources": [
                    s.model_dump(mode="json", include={"url", "title", "summary", "relevance_score"})
                    for s in recorded
                ],
            },
        )
        return updated

    def retry_task(self, task: ResearchTask, error: str) -> bool:
        """Count a failed attempt. Returns True while the task still has retries left."""
        updated = self._recorder.record_retry(self.session_id, self.run_id, task.id, error)
        if updated is None or updated.status == "failed":
            self._mark_query_done(task.query)
            self._publish(
                "task",
                {"type": "search_failed", "task_id": task.id, "query": task.query, "error": error},
            )
            return False
        return True

    def fail_task(self, task: ResearchTask, error: str) -> Optional[ResearchTask]:
        updated = self._recorder.update_task(
            self.session_id, self.run_id, task.id, status="failed", error_message=error
        )
        self._mark_query_done(task.query)
        self._publish(
            "task", {"type": "search_failed", "task_id": task.id, "query": task.query, "error": error}
        )
        return updated

    def skip_task(self, task: ResearchTask) -> Optional[ResearchTask]:
        updated = self._recorder.update_task(self.session_id, self.run_id, task.id, status="skipped")
        self._mark_query_done(task.query)
        return updated

    def _mark_query_done(self, query: str) -> None:
        if query in self._pending_queries:
            self._pending_queries.remove(query)
        if query not in self._completed_queries:
            self._completed_queries.append(query)

    def _default_snapshot(self) -> Any:
        if self._phase == "planning":
            return PlanningSnapshot(step=self._step, partial_plan=self._plan)
        if self._phase == "researching":
            return ResearchingSnapshot(
                step=self._step,
                completed_queries=list(self._completed_queries),
                pending_queries=list(self._pending_queries),
            )
        if self._phase == "writing":
            return WritingSnapshot(step=self._step, draft_report=self._draft_report)
        return ThinkingSnapshot(step=self._step)


_SOURCE_KEYS = {
    "title",
    "content",
    "summary",
    "source_type",
    "domain",
    "relevance_score",
    "quality_score",
    "credibility_score",
    "language",
    "word_count",
    "tags",
}


def _source_fields(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = dict(raw)
    # Search APIs commonly report relevance as "score".
    if "relevance_score" not in data and isinstance(data.get("score"), (int, float)):
        data["relevance_score"] = max(0.0, min(1.0, float(data["score"])))
    if "source_type" not in data and "sourceType" in data:
        data["source_type"] = data["sourceType"]
    return {k: v for k, v in data.items() if k in _SOURCE_KEYS}


def cited_urls_in(report: str, urls: List[str]) -> List[str]:
    return [u for u in urls if u and u in report]


class TaskExecutor(ABC):
    @abstractmethod
    def execute(self, ctx: ExecutionContext) -> RunOutcome:
        """Perform the research for ``ctx.session``; raise on failure."""


class RemoteTaskExecutor(TaskExecutor):
    """Drives research on a remote service that streams its progress as SSE.

    The service receives ``{"query", "session_id", "ai_config", "search_config",
    "continuation", "resume"}`` and answers with ``progress``, ``message``,
    ``plan``, ``task``, ``report``, ``knowledge_graph``, ``error`` and ``done``
    events. ``resume`` is the phase snapshot a resumed run starts from; tasks
    for queries it lists as completed are not recorded again.
    """

    _PROGRESS_PHASES = {
        "initialization": ("thinking", "initialization"),
        "planning": ("planning", "planning"),
        "query-generation": ("planning", "query_generation"),
        "searching": ("researching", "searching"),
        "writing": ("writing", "report_generation"),
    }

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        timeout: float = 300.0,
        max_connect_attempts: int = 3,
        backoff_sec: float = 0.5,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.url = url
        self.token = token
        self.timeout = timeout
        self.max_connect_attempts = max(1, int(max_connect_attempts))
        self.backoff_sec = max(0.0, float(backoff_sec))
        self._transport = transport

    def execute(self, ctx: ExecutionContext) -> RunOutcome:
        body = self._request_body(ctx)
        headers = {"Accept": "text/event-stream"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        last_exc: Optional[Exception] = None
        with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
            for attempt in range(self.max_connect_attempts):
                try:
                    with client.stream("POST", self.url, json=body, headers=headers) as response:
                        if response.status_code >= 400:
                            raise ExecutorFailureError(
                                f"Research service failed: {response.status_code} {response.reason_phrase}"
                            )
                        return self._consume(ctx, _iter_sse(response.iter_lines()))
                except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
                    last_exc = exc
                    logger.warning(
                        "research service unreachable (attempt %d/%d): %s",
                        attempt + 1,
                        self.max_connect_attempts,
                        exc,
                    )
                    if attempt < self.max_connect_attempts - 1:
                        time.sleep(self.backoff_sec * (2**attempt))
                except httpx.HTTPError as exc:
                    raise ExecutorFailureError(f"Research service stream broke: {exc}") from exc
        raise ExecutorFailureError(f"Research service unreachable: {last_exc}")

    def _request_body(self, ctx: ExecutionContext) -> Dict[str, Any]:
        session = ctx.session
        continuation = None
        snapshot = session.state_snapshot
        if snapshot is not None and snapshot.kind == "continuation":
            continuation = snapshot.continuation_context
        resume = ctx.resume_snapshot
        return {
            "query": session.question,
            "session_id": session.id,
            "ai_config": session.ai_config.model_dump(),
            "search_config": session.search_config.model_dump(),
            "continuation": continuation,
            "resume": resume.model_dump(mode="json") if resume is not None else None,
        }

    def _consume(self, ctx: ExecutionContext, events: Iterator[Tuple[str, Any]]) -> RunOutcome:
        tasks: Dict[str, ResearchTask] = {}
        report: Optional[str] = None
        knowledge_graph: Optional[str] = None
        cited: Optional[List[str]] = None
        saw_task_events = False

        for event_type, data in events:
            ctx.ensure_current()
            if not isinstance(data, dict):
                data = {}
            if event_type == "progress":
                step = str(data.get("step", ""))
                status = str(data.get("status", ""))
                if status == "start" and step in self._PROGRESS_PHASES:
                    phase, step_name = self._PROGRESS_PHASES[step]
                    ctx.enter_phase(phase, step_name, f"{step}: {status}")
                elif status == "end":
                    payload = data.get("data")
                    if step == "planning" and isinstance(payload, str):
                        ctx.publish_plan(payload)
                    elif step == "query-generation" and isinstance(payload, list):
                        ctx.set_pending_queries(payload)
                    elif step == "searching" and isinstance(payload, list) and not saw_task_events:
                        self._record_search_results(ctx, payload)
                    elif step == "writing" and isinstance(payload, str) and report is None:
                        report = payload
                    ctx.emit_status(step, f"{step}: {status}")
                ctx.checkpoint()
            elif event_type == "message":
                text = str(data.get("text", ""))
                if ctx.phase == "writing":
                    ctx.append_draft(text)
                elif text.strip():
                    ctx.emit_status(ctx.phase, text.strip())
            elif event_type == "plan":
                plan = data.get("plan")
                if isinstance(plan, str) and plan.strip():
                    ctx.publish_plan(plan)
                    ctx.checkpoint()
            elif event_type == "task":
                saw_task_events = True
                self._handle_task_event(ctx, tasks, data)
                ctx.checkpoint()
            elif event_type == "report":
                report = str(data.get("report", ""))
                if isinstance(data.get("cited_urls"), list):
                    cited = [str(u) for u in data["cited_urls"]]
            elif event_type == "knowledge_graph":
                knowledge_graph = str(data.get("knowledge_graph", "")) or None
            elif event_type == "error":
                raise ExecutorFailureError(str(data.get("message") or "Research service reported an error"))
            elif event_type == "done":
                break
            else:
                logger.debug("ignoring research service event %r", event_type)
        else:
            raise ExecutorFailureError("Research service stream ended before completion")

        if report is None and ctx.draft_report.strip():
            report = ctx.draft_report
        if not report:
            raise ExecutorFailureError("Research service finished without a report")
        if cited is None:
            cited = cited_urls_in(report, ctx.recorded_urls)
        return RunOutcome(final_report=report, knowledge_graph=knowledge_graph, cited_urls=cited)

    def _handle_task_event(
        self, ctx: ExecutionContext, tasks: Dict[str, ResearchTask], data: Dict[str, Any]
    ) -> None:
        kind = data.get("type")
        query = str(data.get("query", "")).strip()
        if not query:
            return
        if ctx.is_query_done(query):
            logger.debug("skipping %s for already completed query %r", kind, query)
            return
        if kind == "search_start":
            if ctx.phase != "researching":
                ctx.enter_phase("researching", "searching")
            tasks[query] = ctx.start_task(query, priority=len(tasks))
        elif kind == "search_complete":
            task = tasks.pop(query, None) or ctx.start_task(query, priority=len(tasks))
            sources = data.get("sources")
            ctx.complete_task(task, sources if isinstance(sources, list) else [])
        elif kind == "search_failed":
            task = tasks.pop(query, None)
            if task is not None:
                ctx.fail_task(task, str(data.get("error") or "Search failed"))

    def _record_search_results(self, ctx: ExecutionContext, results: List[Any]) -> None:
        for i, item in enumerate(results):
            if not isinstance(item, dict) or not str(item.get("query", "")).strip():
                continue
            query = str(item["query"]).strip()
            if ctx.is_query_done(query):
                continue
            task = ctx.start_task(query, priority=i)
            result = item.get("result") if isinstance(item.get("result"), dict) else {}
            if result.get("error"):
                ctx.fail_task(task, str(result["error"]))
                continue
            hits = result.get("results")
            ctx.complete_task(task, hits if isinstance(hits, list) else [])


def _iter_sse(lines: Iterator[str]) -> Iterator[Tuple[str, Any]]:
    event_type = "message"
    data_lines: List[str] = []
    for line in lines:
        if line == "":
            if data_lines:
                yield event_type, _decode_data("\n".join(data_lines))
            event_type = "message"
            data_lines = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "event":
            event_type = value.strip() or "message"
        elif name == "data":
            data_lines.append(value)
    if data_lines:
        yield event_type, _decode_data("\n".join(data_lines))


def _decode_data(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("undecodable research service event data: %r", raw[:200])
        return {}
