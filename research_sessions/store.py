import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, TypeVar

from filelock import FileLock
from pydantic import ValidationError

from research_sessions.errors import (
    ConcurrencyConflictError,
    NotFoundError,
    StaleVersionError,
)
from research_sessions.models import ResearchSession, SessionBundle


logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_owner(bundle: SessionBundle, user_id: str) -> None:
    # Sessions of other users are indistinguishable from missing ones.
    if bundle.session.user_id != str(user_id or ""):
        raise NotFoundError("Research session not found")


def retry_on_conflict(operation: Callable[[], T], attempts: int = 3) -> T:
    # StaleVersionError means the caller's view is out of date; it is never retried.
    attempts = max(1, int(attempts))
    for attempt in range(attempts):
        try:
            return operation()
        except StaleVersionError:
            raise
        except ConcurrencyConflictError as exc:
            if attempt >= attempts - 1:
                raise
            logger.warning(
                "write conflict (attempt %d/%d): %s", attempt + 1, attempts, exc.message
            )
            time.sleep(0.01 * (2**attempt))
    raise RuntimeError("Unexpected failure in conflict retry loop.")


class SessionStore:
    _LOCK_TIMEOUT_SEC = 10.0

    def __init__(self, data_dir: Path | str) -> None:
        self._sessions_dir = Path(data_dir) / "sessions"
        self._sessions_dir.mkdir(parents=True, exist_ok=True)
        self._bundles: Dict[str, SessionBundle] = {}
        self._session_locks: Dict[str, threading.RLock] = {}
        self._session_locks_guard = threading.Lock()
        self._lock = threading.Lock()
        self._bootstrap_from_disk()

    def lock_for(self, session_id: str) -> threading.RLock:
        with self._session_locks_guard:
            return self._session_locks.setdefault(session_id, threading.RLock())

    def create(self, bundle: SessionBundle) -> SessionBundle:
        session_id = bundle.session.id
        with self.lock_for(session_id):
            path = self._path_for(session_id)
            with FileLock(self._file_lock_path(session_id), timeout=self._LOCK_TIMEOUT_SEC):
                if path.exists():
                    raise ConcurrencyConflictError(f"Session {session_id} already exists.")
                self._refresh_counters(bundle)
                self._write_atomic(path, bundle)
            with self._lock:
                self._bundles[session_id] = bundle
        return bundle.model_copy(deep=True)

    def read(self, session_id: str) -> Optional[SessionBundle]:
        with self.lock_for(session_id):
            bundle = self._load_locked(session_id)
            return bundle.model_copy(deep=True) if bundle else None

    @contextmanager
    def transaction(
        self, session_id: str, expected_version: Optional[int] = None
    ) -> Iterator[SessionBundle]:
        with self.lock_for(session_id):
            base = self._load_locked(session_id)
            if base is None:
                raise NotFoundError("Research session not found")
            if expected_version is not None and int(expected_version) != base.session.revision:
                raise StaleVersionError(
                    expected_version=int(expected_version),
                    current_version=base.session.revision,
                )
            working = base.model_copy(deep=True)
            yield working
            self._commit_locked(base, working)

    def delete(self, session_id: str) -> None:
        with self.lock_for(session_id):
            path = self._path_for(session_id)
            with FileLock(self._file_lock_path(session_id), timeout=self._LOCK_TIMEOUT_SEC):
                if path.exists():
                    path.unlink()
            with self._lock:
                self._bundles.pop(session_id, None)
        with self._session_locks_guard:
            self._session_locks.pop(session_id, None)
        try:
            Path(self._file_lock_path(session_id)).unlink()
        except OSError:
            pass

    def list_sessions(self) -> List[ResearchSession]:
        known: set[str] = set()
        with self._lock:
            known.update(self._bundles.keys())
        for path in self._sessions_dir.glob("*.json"):
            known.add(path.stem)
        out: List[ResearchSession] = []
        for session_id in sorted(known):
            bundle = self.read(session_id)
            if bundle:
                out.append(bundle.session)
        return out

    def _commit_locked(self, base: SessionBundle, working: SessionBundle) -> None:
        if working == base:
            return
        session_id = base.session.id
        path = self._path_for(session_id)
        with FileLock(self._file_lock_path(session_id), timeout=self._LOCK_TIMEOUT_SEC):
            disk_revision = self._read_disk_revision(path)
            if disk_revision != base.session.revision:
                with self._lock:
                    self._bundles.pop(session_id, None)
                raise ConcurrencyConflictError(
                    expected_version=base.session.revision,
                    current_version=disk_revision,
                )
            working.session.revision = base.session.revision + 1
            working.session.updated_at = _now()
            self._refresh_counters(working)
            self._write_atomic(path, working)
        with self._lock:
            self._bundles[session_id] = working.model_copy(deep=True)

    def _load_locked(self, session_id: str) -> Optional[SessionBundle]:
        with self._lock:
            cached = self._bundles.get(session_id)
        if cached is not None:
            return cached
        bundle = self._read_file(self._path_for(session_id))
        if bundle is None:
            return None
        with self._lock:
            self._bundles[session_id] = bundle
        return bundle

    def _refresh_counters(self, bundle: SessionBundle) -> None:
        bundle.session.total_tasks = len(bundle.tasks)
        bundle.session.completed_tasks = sum(1 for t in bundle.tasks if t.status == "completed")
        bundle.session.total_sources = len(bundle.sources)

    def _path_for(self, session_id: str) -> Path:
        safe_id = "".join(ch for ch in str(session_id) if ch.isalnum() or ch in "-_")
        if not safe_id:
            raise NotFoundError("Research session not found")
        return self._sessions_dir / f"{safe_id}.json"

    def _file_lock_path(self, session_id: str) -> str:
        return str(self._path_for(session_id)) + ".lock"

    def _read_file(self, path: Path) -> Optional[SessionBundle]:
        if not path.exists():
            return None
        try:
            return SessionBundle.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as exc:
            logger.error("unreadable session file %s: %s", path, exc)
            return None

    def _read_disk_revision(self, path: Path) -> Optional[int]:
        if not path.exists():
            return None
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
            return int(raw["session"]["revision"])
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def _write_atomic(self, path: Path, bundle: SessionBundle) -> None:
        fd, temp_path = tempfile.mkstemp(
            dir=self._sessions_dir,
            prefix=f".{path.stem}.",
            suffix=".tmp",
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(bundle.model_dump_json(indent=2))
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise

    def _bootstrap_from_disk(self) -> None:
        loaded = 0
        for path in sorted(self._sessions_dir.glob("*.json")):
            bundle = self._read_file(path)
            if bundle is None:
                continue
            with self._lock:
                self._bundles[bundle.session.id] = bundle
            loaded += 1
        if loaded:
            logger.info("loaded %d research sessions from %s", loaded, self._sessions_dir)
