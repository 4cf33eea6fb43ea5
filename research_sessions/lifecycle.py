import logging
import math
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, ValidationError

from research_sessions.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from research_sessions.history import HistoryLedger, capture_state
from research_sessions.models import (
    ACTIVE_PHASES,
    ChangeType,
    ContinuationSnapshot,
    CreateSessionRequest,
    ResearchSession,
    SessionBundle,
    UpdateSessionRequest,
    state_snapshot_adapter,
)
from research_sessions.recorder import apply_citations
from research_sessions.store import SessionStore, ensure_owner, retry_on_conflict


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_minutes(started_at: Optional[datetime], now: datetime) -> int:
    if started_at is None:
        return 0
    seconds = (now - started_at).total_seconds()
    return max(0, math.floor(seconds / 60))


class LifecycleController:
    def __init__(
        self,
        store: SessionStore,
        ledger: HistoryLedger,
        clock: Callable[[], datetime] = _now,
        default_estimated_duration: int = 30,
        continuation_ratio: float = 0.7,
        continuation_report_prefix_chars: int = 500,
        conflict_retry_attempts: int = 3,
    ) -> None:
        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._default_estimated_duration = max(1, int(default_estimated_duration))
        self._continuation_ratio = float(continuation_ratio)
        self._report_prefix_chars = max(0, int(continuation_report_prefix_chars))
        self._retry_attempts = max(1, int(conflict_retry_attempts))

    # Session records

    def create_session(self, user_id: str, req: CreateSessionRequest) -> ResearchSession:
        now = self._clock()
        session = ResearchSession(
            id=uuid.uuid4().hex,
            user_id=user_id,
            workspace_id=req.workspace_id,
            title=req.title,
            description=req.description,
            question=req.question,
            status="draft",
            ai_config=req.ai_config,
            search_config=req.search_config,
            current_step="initialization",
            estimated_duration=req.estimated_duration,
            created_at=now,
            updated_at=now,
        )
        bundle = self._store.create(SessionBundle(session=session))
        logger.info("created research session %s", session.id)
        return bundle.session

    def get_session(self, user_id: str, session_id: str) -> SessionBundle:
        bundle = self._store.read(session_id)
        if bundle is None:
            raise NotFoundError("Research session not found")
        ensure_owner(bundle, user_id)
        return bundle

    def list_sessions(
        self,
        user_id: str,
        workspace_id: str,
        status: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[ResearchSession]:
        sessions = [
            s
            for s in self._store.list_sessions()
            if s.user_id == user_id
            and s.workspace_id == workspace_id
            and (status is None or s.status == status)
        ]
        sessions.sort(key=lambda s: s.updated_at, reverse=True)
        offset = max(0, int(offset))
        return sessions[offset : offset + max(1, int(limit))]

    def update_session(
        self,
        user_id: str,
        session_id: str,
        req: UpdateSessionRequest,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        changes = req.model_dump(exclude_unset=True, exclude_none=True)

        def op() -> ResearchSession:
            with self._store.transaction(session_id, expected_version) as bundle:
                ensure_owner(bundle, user_id)
                session = bundle.session
                intent_changes = {k for k in changes if k in ("description", "question")}
                if intent_changes and session.status != "draft":
                    raise InvalidTransitionError(
                        f"Cannot edit {', '.join(sorted(intent_changes))} of session in "
                        f"{session.status} status",
                        current_status=session.status,
                    )
                if "title" in changes and session.status in ACTIVE_PHASES:
                    raise InvalidTransitionError(
                        f"Cannot rename session in {session.status} status",
                        current_status=session.status,
                    )
                for field, value in changes.items():
                    setattr(session, field, value)
            return bundle.session

        return retry_on_conflict(op, self._retry_attempts)

    def delete_session(self, user_id: str, session_id: str) -> None:
        with self._store.lock_for(session_id):
            bundle = self.get_session(user_id, session_id)
            status = bundle.session.status
            if status in ACTIVE_PHASES:
                raise InvalidTransitionError(
                    f"Cannot delete session in {status} status", current_status=status
                )
            self._store.delete(session_id)
        logger.info("deleted research session %s", session_id)

    # User-driven transitions

    def start(
        self, user_id: str, session_id: str, expected_version: Optional[int] = None
    ) -> ResearchSession:
        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            s.status = "thinking"
            s.current_step = "initialization"
            s.started_at = now
            s.paused_at = None
            s.completed_at = None
            s.error_message = None
            s.active_run_id = uuid.uuid4().hex

        return self._transition(
            session_id,
            action="start",
            allowed=("draft",),
            apply=apply,
            change_type="auto",
            step_name="initialization",
            description="Research started",
            user_id=user_id,
            expected_version=expected_version,
        )

    def pause(
        self,
        user_id: str,
        session_id: str,
        state_snapshot: Union[Dict[str, Any], BaseModel, None] = None,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        snapshot = self._parse_snapshot(state_snapshot)

        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            if s.started_at is not None and s.actual_duration is None:
                s.actual_duration = elapsed_minutes(s.started_at, now)
            if snapshot is not None:
                s.state_snapshot = snapshot
            s.status = "paused"
            s.paused_at = now
            s.active_run_id = None

        return self._transition(
            session_id,
            action="pause",
            allowed=ACTIVE_PHASES,
            apply=apply,
            change_type="manual",
            step_name="paused",
            description="Research session paused",
            user_id=user_id,
            expected_version=expected_version,
        )

    def resume(
        self, user_id: str, session_id: str, expected_version: Optional[int] = None
    ) -> ResearchSession:
        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            status, step = self._resume_target(s)
            s.status = status
            s.current_step = step
            s.started_at = now
            s.paused_at = None
            s.active_run_id = uuid.uuid4().hex

        return self._transition(
            session_id,
            action="resume",
            allowed=("paused",),
            apply=apply,
            change_type="manual",
            step_name="resumed",
            description="Research session resumed",
            user_id=user_id,
            expected_version=expected_version,
        )

    def continue_session(
        self,
        user_id: str,
        session_id: str,
        additional_instructions: Optional[str] = None,
        extend_duration: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            original = s.estimated_duration or self._default_estimated_duration
            s.estimated_duration = (
                int(extend_duration)
                if extend_duration
                else math.floor(original * self._continuation_ratio)
            )
            s.state_snapshot = ContinuationSnapshot(
                original_session_id=s.id,
                continuation_context=self.build_continuation_context(
                    s, additional_instructions
                ),
                additional_instructions=additional_instructions,
                previous_report=s.final_report,
                previous_plan=s.report_plan,
            )
            s.status = "thinking"
            s.current_step = "continuation_planning"
            s.started_at = now
            s.paused_at = None
            s.completed_at = None
            s.error_message = None
            s.active_run_id = uuid.uuid4().hex

        return self._transition(
            session_id,
            action="continue",
            allowed=("completed",),
            apply=apply,
            change_type="user_action",
            step_name="continued",
            description="Research session continued with additional investigation",
            user_id=user_id,
            expected_version=expected_version,
        )

    def build_continuation_context(
        self, session: ResearchSession, additional_instructions: Optional[str]
    ) -> str:
        parts = [f'Previous research has been completed on: "{session.question}"']
        if session.final_report:
            prefix = session.final_report[: self._report_prefix_chars]
            parts.append(f"Previous findings summary:\n{prefix}...")
        if additional_instructions:
            parts.append(f"Additional research instructions: {additional_instructions}")
        parts.append(
            "Please extend this research with new insights, updated information, "
            "or deeper analysis."
        )
        return "\n\n".join(parts)

    # Run-driven transitions (called by the executor side, scoped to a run id)

    def rebind_run(self, user_id: str, session_id: str) -> ResearchSession:
        def apply(bundle: SessionBundle, now: datetime) -> None:
            bundle.session.active_run_id = uuid.uuid4().hex

        return self._transition(
            session_id,
            action="reattach",
            allowed=ACTIVE_PHASES,
            apply=apply,
            change_type="auto",
            step_name="run_reattached",
            description="Research run reattached",
            user_id=user_id,
        )

    def advance_phase(
        self, session_id: str, run_id: str, phase: str, step: Optional[str] = None
    ) -> ResearchSession:
        if phase not in ACTIVE_PHASES:
            raise ValidationFailedError(
                f"Unknown research phase: {phase}",
                details=[{"loc": ["phase"], "msg": f"Input should be one of {', '.join(ACTIVE_PHASES)}"}],
            )

        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            if ACTIVE_PHASES.index(phase) < ACTIVE_PHASES.index(s.status):
                raise InvalidTransitionError(
                    f"Cannot move session back from {s.status} to {phase}",
                    current_status=s.status,
                )
            s.status = phase
            s.current_step = step or phase

        return self._transition(
            session_id,
            action=f"enter {phase} for",
            allowed=ACTIVE_PHASES,
            apply=apply,
            change_type="auto",
            step_name=step or phase,
            description=f"Research entered {phase}",
            run_id=run_id,
        )

    def complete_run(
        self,
        session_id: str,
        run_id: Optional[str],
        final_report: str,
        knowledge_graph: Optional[str] = None,
        cited_urls: Iterable[str] = (),
    ) -> ResearchSession:
        cited_urls = list(cited_urls)

        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            s.actual_duration = (s.actual_duration or 0) + elapsed_minutes(s.started_at, now)
            s.status = "completed"
            s.current_step = "completed"
            s.final_report = final_report
            if knowledge_graph is not None:
                s.knowledge_graph = knowledge_graph
            s.completed_at = now
            s.paused_at = None
            s.error_message = None
            s.active_run_id = None
            apply_citations(bundle, cited_urls)

        return self._transition(
            session_id,
            action="complete",
            allowed=ACTIVE_PHASES,
            apply=apply,
            change_type="auto",
            step_name="completed",
            description="Research completed successfully",
            run_id=run_id,
        )

    def fail_run(self, session_id: str, run_id: Optional[str], error: str) -> ResearchSession:
        def apply(bundle: SessionBundle, now: datetime) -> None:
            s = bundle.session
            s.status = "failed"
            s.current_step = "error"
            s.error_message = error
            s.completed_at = now
            s.paused_at = None
            s.active_run_id = None

        return self._transition(
            session_id,
            action="fail",
            allowed=ACTIVE_PHASES,
            apply=apply,
            change_type="auto",
            step_name="failed",
            description="Research failed",
            run_id=run_id,
        )

    def _transition(
        self,
        session_id: str,
        action: str,
        allowed: Iterable[str],
        apply: Callable[[SessionBundle, datetime], None],
        change_type: ChangeType,
        step_name: str,
        description: str,
        user_id: Optional[str] = None,
        run_id: Optional[str] = None,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        allowed = tuple(allowed)
        transitions: List[str] = []

        def op() -> ResearchSession:
            with self._store.transaction(session_id, expected_version) as bundle:
                if user_id is not None:
                    ensure_owner(bundle, user_id)
                session = bundle.session
                if session.status not in allowed:
                    raise InvalidTransitionError(
                        f"Cannot {action} session in {session.status} status",
                        current_status=session.status,
                    )
                if run_id is not None and session.active_run_id != run_id:
                    raise InvalidTransitionError(
                        f"Run {run_id} is no longer bound to session {session_id}",
                        current_status=session.status,
                    )
                before = session.status
                apply(bundle, self._clock())
                self._ledger.append_locked(
                    bundle,
                    user_id=session.user_id,
                    change_type=change_type,
                    full_state=capture_state(session),
                    step_name=step_name,
                    description=description,
                )
                transitions.append(f"{before} -> {session.status}")
            return bundle.session

        session = retry_on_conflict(op, self._retry_attempts)
        logger.info("research session %s %s: %s", session_id, action, transitions[-1])
        return session

    def _parse_snapshot(self, raw: Union[Dict[str, Any], BaseModel, None]) -> Any:
        if raw is None:
            return None
        if isinstance(raw, BaseModel):
            raw = raw.model_dump()
        try:
            return state_snapshot_adapter.validate_python(raw)
        except ValidationError as exc:
            raise ValidationFailedError(
                "Invalid state snapshot.",
                details=exc.errors(include_url=False),
            ) from exc

    def _resume_target(self, session: ResearchSession) -> tuple[str, str]:
        snapshot = session.state_snapshot
        if snapshot is not None and snapshot.kind in ACTIVE_PHASES:
            return snapshot.kind, snapshot.step or "initialization"
        return "thinking", "initialization"
