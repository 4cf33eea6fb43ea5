import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import urlparse

from pydantic import ValidationError

from research_sessions.errors import ExecutionStopped, NotFoundError, ValidationFailedError
from research_sessions.models import (
    ACTIVE_PHASES,
    TERMINAL_TASK_STATUSES,
    PhaseSnapshot,
    ResearchSource,
    ResearchTask,
    SessionBundle,
    TaskStatus,
)
from research_sessions.store import SessionStore, retry_on_conflict


logger = logging.getLogger(__name__)

_TASK_TRANSITIONS: Dict[str, frozenset] = {
    "pending": frozenset({"searching", "skipped", "failed"}),
    "searching": frozenset({"processing", "completed", "failed", "skipped"}),
    "processing": frozenset({"completed", "failed", "skipped"}),
}
_TASK_RESULT_FIELDS = frozenset(
    {
        "search_results",
        "analysis",
        "learnings",
        "result_count",
        "relevance_score",
        "execution_time",
        "error_message",
    }
)
_SOURCE_FIELDS = frozenset(
    {
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
    }
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_valid_absolute_http_url(url: str) -> bool:
    candidate = (url or "").strip()
    if not candidate:
        return False
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"}:
        return False
    if not parsed.netloc:
        return False
    return True


def apply_citations(bundle: SessionBundle, urls: Iterable[str]) -> List[ResearchSource]:
    wanted = {str(u).strip() for u in urls if str(u).strip()}
    cited: List[ResearchSource] = []
    now = _now()
    for source in bundle.sources:
        if source.url in wanted:
            source.cited_in_report = True
            source.citation_count += 1
            source.updated_at = now
            cited.append(source)
    return cited


def _validation_failed(message: str, exc: ValidationError) -> ValidationFailedError:
    return ValidationFailedError(message, details=exc.errors(include_url=False))


class TaskRecorder:
    def __init__(
        self,
        store: SessionStore,
        max_task_retries: int = 2,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._store = store
        self._max_task_retries = max(0, int(max_task_retries))
        self._retry_attempts = max(1, int(conflict_retry_attempts))

    @contextmanager
    def _run_transaction(self, session_id: str, run_id: str) -> Iterator[SessionBundle]:
        with self._store.transaction(session_id) as bundle:
            session = bundle.session
            if session.active_run_id != run_id or session.status not in ACTIVE_PHASES:
                raise ExecutionStopped(
                    f"Run {run_id} is no longer active for session {session_id} "
                    f"(status={session.status})"
                )
            yield bundle

    def ensure_current(self, session_id: str, run_id: str) -> None:
        bundle = self._store.read(session_id)
        if bundle is None:
            raise ExecutionStopped(f"Session {session_id} no longer exists")
        session = bundle.session
        if session.active_run_id != run_id or session.status not in ACTIVE_PHASES:
            raise ExecutionStopped(
                f"Run {run_id} is no longer active for session {session_id} "
                f"(status={session.status})"
            )

    def create_task(
        self,
        session_id: str,
        run_id: str,
        query: str,
        research_goal: Optional[str] = None,
        task_type: str = "search",
        priority: int = 0,
        search_provider: Optional[str] = None,
        max_results: Optional[int] = None,
    ) -> ResearchTask:
        def op() -> ResearchTask:
            with self._run_transaction(session_id, run_id) as bundle:
                now = _now()
                search_config = bundle.session.search_config
                task = ResearchTask(
                    id=uuid.uuid4().hex,
                    session_id=session_id,
                    query=query,
                    research_goal=research_goal,
                    task_type=task_type,
                    priority=int(priority),
                    status="pending",
                    search_provider=search_provider or search_config.search_provider,
                    max_results=int(max_results or search_config.max_results),
                    created_at=now,
                    updated_at=now,
                )
                bundle.tasks.append(task)
            return task

        return retry_on_conflict(op, self._retry_attempts)

    def update_task(
        self,
        session_id: str,
        run_id: str,
        task_id: str,
        status: Optional[TaskStatus] = None,
        **fields: Any,
    ) -> Optional[ResearchTask]:
        """Apply a status move and/or result fields to a task.

        Returns None when the update is ignored: the task is already terminal
        or the status would move backwards.
        """
        unknown = set(fields) - _TASK_RESULT_FIELDS
        if unknown:
            raise ValidationFailedError(
                "Unknown task fields.",
                details=[{"loc": [name], "msg": "Extra inputs are not permitted"} for name in sorted(unknown)],
            )

        def op() -> Optional[ResearchTask]:
            with self._run_transaction(session_id, run_id) as bundle:
                idx, task = self._find_task(bundle, task_id)
                if task.status in TERMINAL_TASK_STATUSES:
                    logger.warning(
                        "ignoring late update for %s task %s (requested %s)",
                        task.status,
                        task_id,
                        status,
                    )
                    return None
                if status is not None and status != task.status:
                    if status not in _TASK_TRANSITIONS.get(task.status, frozenset()):
                        logger.warning(
                            "ignoring task %s move %s -> %s", task_id, task.status, status
                        )
                        return None
                updated = self._validated_task(task, self._status_fields(task, status), fields)
                bundle.tasks[idx] = updated
            return updated

        return retry_on_conflict(op, self._retry_attempts)

    def record_retry(
        self, session_id: str, run_id: str, task_id: str, error: str
    ) -> Optional[ResearchTask]:
        def op() -> Optional[ResearchTask]:
            with self._run_transaction(session_id, run_id) as bundle:
                idx, task = self._find_task(bundle, task_id)
                if task.status in TERMINAL_TASK_STATUSES:
                    logger.warning("ignoring retry for %s task %s", task.status, task_id)
                    return None
                retry_count = task.retry_count + 1
                changes: Dict[str, Any] = {"retry_count": retry_count, "error_message": error}
                if retry_count > self._max_task_retries:
                    changes.update(self._status_fields(task, "failed"))
                else:
                    changes.update(self._status_fields(task, "searching"))
                updated = self._validated_task(task, changes, {})
                bundle.tasks[idx] = updated
            return updated

        return retry_on_conflict(op, self._retry_attempts)

    def record_source(
        self,
        session_id: str,
        run_id: str,
        url: str,
        task_id: Optional[str] = None,
        tags: Optional[List[str]] = None,
        **fields: Any,
    ) -> ResearchSource:
        url = str(url or "").strip()
        if not is_valid_absolute_http_url(url):
            raise ValidationFailedError(
                "Source URL must be an absolute http(s) URL.",
                details=[{"loc": ["url"], "msg": "Invalid URL", "input": url}],
            )
        unknown = set(fields) - _SOURCE_FIELDS
        if unknown:
            raise ValidationFailedError(
                "Unknown source fields.",
                details=[{"loc": [name], "msg": "Extra inputs are not permitted"} for name in sorted(unknown)],
            )
        if not fields.get("domain"):
            fields["domain"] = urlparse(url).netloc.lower() or None
        if fields.get("content") and not fields.get("word_count"):
            fields["word_count"] = len(str(fields["content"]).split())

        def op() -> ResearchSource:
            with self._run_transaction(session_id, run_id) as bundle:
                now = _now()
                for idx, existing in enumerate(bundle.sources):
                    if existing.url != url:
                        continue
                    data = existing.model_dump()
                    data.update({k: v for k, v in fields.items() if v is not None})
                    data["tags"] = self._merge_tags(existing.tags, tags)
                    data["task_id"] = existing.task_id or task_id
                    data["updated_at"] = now
                    try:
                        updated = ResearchSource.model_validate(data)
                    except ValidationError as exc:
                        raise _validation_failed("Invalid source update.", exc) from exc
                    bundle.sources[idx] = updated
                    return updated
                try:
                    source = ResearchSource(
                        id=uuid.uuid4().hex,
                        session_id=session_id,
                        task_id=task_id,
                        url=url,
                        tags=self._merge_tags([], tags),
                        created_at=now,
                        updated_at=now,
                        **{k: v for k, v in fields.items() if v is not None},
                    )
                except ValidationError as exc:
                    raise _validation_failed("Invalid source.", exc) from exc
                bundle.sources.append(source)
            return source

        return retry_on_conflict(op, self._retry_attempts)

    def save_plan(self, session_id: str, run_id: str, plan: str) -> None:
        def op() -> None:
            with self._run_transaction(session_id, run_id) as bundle:
                bundle.session.report_plan = plan

        retry_on_conflict(op, self._retry_attempts)

    def checkpoint(self, session_id: str, run_id: str, snapshot: PhaseSnapshot) -> None:
        def op() -> None:
            with self._run_transaction(session_id, run_id) as bundle:
                bundle.session.state_snapshot = snapshot

        retry_on_conflict(op, self._retry_attempts)

    def _find_task(self, bundle: SessionBundle, task_id: str) -> tuple[int, ResearchTask]:
        for idx, task in enumerate(bundle.tasks):
            if task.id == task_id:
                return idx, task
        raise NotFoundError("Research task not found")

    def _status_fields(self, task: ResearchTask, status: Optional[str]) -> Dict[str, Any]:
        if status is None or status == task.status:
            return {}
        now = _now()
        out: Dict[str, Any] = {"status": status}
        if status == "searching" and task.started_at is None:
            out["started_at"] = now
        if status in TERMINAL_TASK_STATUSES:
            out["completed_at"] = now
        return out

    def _validated_task(
        self, task: ResearchTask, status_fields: Dict[str, Any], fields: Dict[str, Any]
    ) -> ResearchTask:
        data = task.model_dump()
        data.update(fields)
        data.update(status_fields)
        data["updated_at"] = _now()
        try:
            return ResearchTask.model_validate(data)
        except ValidationError as exc:
            raise _validation_failed("Invalid task update.", exc) from exc

    def _merge_tags(self, current: List[str], extra: Optional[List[str]]) -> List[str]:
        out: List[str] = []
        seen = set()
        for item in list(current) + list(extra or []):
            s = str(item).strip()
            if not s or s in seen:
                continue
            seen.add(s)
            out.append(s)
        return out
