import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from research_sessions.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from research_sessions.models import (
    ACTIVE_PHASES,
    ChangeType,
    HistoryEntry,
    ResearchSession,
    SessionBundle,
    StateSnapshot,
)
from research_sessions.store import SessionStore, ensure_owner, retry_on_conflict


logger = logging.getLogger(__name__)

RESTORABLE_FIELDS = (
    "title",
    "description",
    "current_step",
    "state_snapshot",
    "report_plan",
    "final_report",
    "knowledge_graph",
)
LIFECYCLE_FIELDS = (
    "status",
    "started_at",
    "paused_at",
    "completed_at",
    "estimated_duration",
    "actual_duration",
    "error_message",
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RestorableState(BaseModel):
    title: str = Field(default="", min_length=1, max_length=200)
    description: Optional[str] = None
    current_step: Optional[str] = None
    state_snapshot: Optional[StateSnapshot] = None
    report_plan: Optional[str] = None
    final_report: Optional[str] = None
    knowledge_graph: Optional[str] = None


def capture_state(session: ResearchSession) -> Dict[str, Any]:
    return session.model_dump(mode="json", include=set(RESTORABLE_FIELDS + LIFECYCLE_FIELDS))


def diff_states(previous: Dict[str, Any], current: Dict[str, Any]) -> Dict[str, Any]:
    diff: Dict[str, Any] = {}
    for key in sorted(set(previous) | set(current)):
        before = previous.get(key)
        after = current.get(key)
        if before != after:
            diff[key] = {"from": before, "to": after}
    return diff


class HistoryLedger:
    _MAX_LIST_LIMIT = 500

    def __init__(self, store: SessionStore, conflict_retry_attempts: int = 3) -> None:
        self._store = store
        self._retry_attempts = max(1, int(conflict_retry_attempts))

    def append_locked(
        self,
        bundle: SessionBundle,
        user_id: str,
        change_type: ChangeType,
        full_state: Dict[str, Any],
        step_name: Optional[str] = None,
        description: Optional[str] = None,
        parent_version_id: Optional[str] = None,
        is_bookmarked: bool = False,
    ) -> HistoryEntry:
        if change_type in ("restore", "branch") and not parent_version_id:
            raise ValidationFailedError(
                f"A {change_type} entry requires parent_version_id.",
                details=[{"loc": ["parent_version_id"], "msg": "Field required"}],
            )
        if parent_version_id and not any(e.id == parent_version_id for e in bundle.history):
            raise NotFoundError("History version not found")
        versions = [e.version for e in bundle.history]
        next_version = (max(versions) if versions else 0) + 1
        previous = max(bundle.history, key=lambda e: e.version) if bundle.history else None
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            session_id=bundle.session.id,
            user_id=user_id,
            version=next_version,
            description=description,
            change_type=change_type,
            full_state=dict(full_state),
            state_diff=diff_states(previous.full_state, full_state) if previous else None,
            parent_version_id=parent_version_id,
            step_name=step_name,
            is_bookmarked=is_bookmarked,
            created_at=_now(),
        )
        bundle.history.append(entry)
        return entry

    def append(
        self,
        session_id: str,
        user_id: str,
        change_type: ChangeType,
        full_state: Dict[str, Any],
        step_name: Optional[str] = None,
        description: Optional[str] = None,
        parent_version_id: Optional[str] = None,
        is_bookmarked: bool = False,
    ) -> HistoryEntry:
        def op() -> HistoryEntry:
            with self._store.transaction(session_id) as bundle:
                ensure_owner(bundle, user_id)
                self._ensure_started(bundle.session, "append history to")
                entry = self.append_locked(
                    bundle,
                    user_id=user_id,
                    change_type=change_type,
                    full_state=full_state,
                    step_name=step_name,
                    description=description,
                    parent_version_id=parent_version_id,
                    is_bookmarked=is_bookmarked,
                )
            return entry

        entry = retry_on_conflict(op, self._retry_attempts)
        logger.info("history entry for session %s, version %d", session_id, entry.version)
        return entry

    def list(
        self,
        session_id: str,
        user_id: str,
        bookmarked_only: bool = False,
        limit: int = 50,
    ) -> List[HistoryEntry]:
        bundle = self._read_owned(session_id, user_id)
        entries = [e for e in bundle.history if e.is_bookmarked or not bookmarked_only]
        entries.sort(key=lambda e: e.version, reverse=True)
        limit = max(1, min(int(limit), self._MAX_LIST_LIMIT))
        return entries[:limit]

    def get(self, session_id: str, user_id: str, entry_id: str) -> HistoryEntry:
        bundle = self._read_owned(session_id, user_id)
        for entry in bundle.history:
            if entry.id == entry_id:
                return entry
        raise NotFoundError("History version not found")

    def set_bookmark(
        self, session_id: str, user_id: str, entry_id: str, is_bookmarked: bool
    ) -> HistoryEntry:
        def op() -> HistoryEntry:
            with self._store.transaction(session_id) as bundle:
                ensure_owner(bundle, user_id)
                for entry in bundle.history:
                    if entry.id == entry_id:
                        entry.is_bookmarked = bool(is_bookmarked)
                        found = entry.model_copy()
                        break
                else:
                    raise NotFoundError("History version not found")
            return found

        return retry_on_conflict(op, self._retry_attempts)

    def restore(
        self,
        session_id: str,
        user_id: str,
        version_id: str,
        create_branch: bool = False,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        def op() -> ResearchSession:
            with self._store.transaction(session_id, expected_version) as bundle:
                ensure_owner(bundle, user_id)
                self._ensure_started(bundle.session, "restore")
                target = next((e for e in bundle.history if e.id == version_id), None)
                if target is None:
                    raise NotFoundError("History version not found")
                session = bundle.session
                if session.status in ACTIVE_PHASES:
                    raise InvalidTransitionError(
                        f"Cannot restore session in {session.status} status",
                        current_status=session.status,
                    )
                overlay = self._validate_restorable(target.full_state)
                for field in overlay.model_fields_set:
                    setattr(session, field, getattr(overlay, field))
                self.append_locked(
                    bundle,
                    user_id=user_id,
                    change_type="branch" if create_branch else "restore",
                    full_state=capture_state(session),
                    step_name="restored",
                    description=f"Restored from version {target.version}",
                    parent_version_id=target.id,
                )
            return bundle.session

        session = retry_on_conflict(op, self._retry_attempts)
        logger.info(
            "session %s restored from history entry %s (branch=%s)",
            session_id,
            version_id,
            bool(create_branch),
        )
        return session

    def _ensure_started(self, session: ResearchSession, action: str) -> None:
        # Version 1 belongs to start.
        if session.status == "draft":
            raise InvalidTransitionError(
                f"Cannot {action} session in draft status", current_status="draft"
            )

    def _validate_restorable(self, full_state: Any) -> RestorableState:
        if not isinstance(full_state, dict):
            raise ValidationFailedError(
                "History entry has no restorable state.",
                details=[{"loc": ["full_state"], "msg": "Input should be a valid dictionary"}],
            )
        present = {k: v for k, v in full_state.items() if k in RESTORABLE_FIELDS}
        try:
            return RestorableState.model_validate(present)
        except ValidationError as exc:
            raise ValidationFailedError(
                "History entry state is not restorable.",
                details=exc.errors(include_url=False),
            ) from exc

    def _read_owned(self, session_id: str, user_id: str) -> SessionBundle:
        bundle = self._store.read(session_id)
        if bundle is None:
            raise NotFoundError("Research session not found")
        ensure_owner(bundle, user_id)
        return bundle
