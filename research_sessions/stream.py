import logging
import threading
from datetime import datetime, timezone
from queue import Queue
from typing import Any, Dict, List, Optional, Tuple

from research_sessions.errors import (
    ExecutionStopped,
    ExecutorFailureError,
    InvalidTransitionError,
    LifecycleError,
)
from research_sessions.executor import ExecutionContext, TaskExecutor
from research_sessions.lifecycle import LifecycleController
from research_sessions.models import ACTIVE_PHASES, ResearchSession, StreamEvent
from research_sessions.recorder import TaskRecorder


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def is_stream_closing(event: StreamEvent) -> bool:
    if event.type in ("complete", "error"):
        return True
    return event.type == "status" and event.payload.get("type") == "paused"


class ProgressPublisher:
    # At-most-once delivery: events published while nobody listens are dropped.
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[Queue]] = {}
        self._seq: Dict[str, int] = {}

    def subscribe(self, session_id: str) -> Queue:
        q: Queue = Queue()
        with self._lock:
            self._subscribers.setdefault(session_id, []).append(q)
        return q

    def unsubscribe(self, session_id: str, queue: Queue) -> None:
        with self._lock:
            subs = self._subscribers.get(session_id, [])
            if queue in subs:
                subs.remove(queue)
            if not subs:
                self._subscribers.pop(session_id, None)

    def forget(self, session_id: str) -> None:
        with self._lock:
            self._seq.pop(session_id, None)
            self._subscribers.pop(session_id, None)

    def subscriber_count(self, session_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(session_id, []))

    def publish(self, session_id: str, event_type: str, payload: Optional[Dict[str, Any]] = None) -> StreamEvent:
        # Sequence allocation and delivery share the lock so every subscriber
        # sees the same order.
        with self._lock:
            seq = self._seq.get(session_id, 0) + 1
            self._seq[session_id] = seq
            event = StreamEvent(
                type=event_type,
                session_id=session_id,
                seq=seq,
                timestamp=_now(),
                payload=dict(payload or {}),
            )
            for q in self._subscribers.get(session_id, []):
                try:
                    q.put_nowait(event)
                except Exception as exc:
                    logger.warning("dropping %s event for a subscriber of %s: %s", event_type, session_id, exc)
        return event


class RunCoordinator:
    def __init__(
        self,
        controller: LifecycleController,
        recorder: TaskRecorder,
        publisher: ProgressPublisher,
        executor: Optional[TaskExecutor] = None,
    ) -> None:
        self._controller = controller
        self._recorder = recorder
        self._publisher = publisher
        self._executor = executor
        self._runs: Dict[str, Tuple[str, threading.Thread]] = {}
        self._lock = threading.Lock()
        self._attach_lock = threading.Lock()

    def start(self, user_id: str, session_id: str, expected_version: Optional[int] = None) -> ResearchSession:
        session = self._controller.start(user_id, session_id, expected_version)
        self._launch(session)
        return session

    def pause(
        self,
        user_id: str,
        session_id: str,
        state_snapshot: Any = None,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        session = self._controller.pause(user_id, session_id, state_snapshot, expected_version)
        self._publisher.publish(
            session_id, "status", {"type": "paused", "message": "Research session paused"}
        )
        return session

    def resume(self, user_id: str, session_id: str, expected_version: Optional[int] = None) -> ResearchSession:
        session = self._controller.resume(user_id, session_id, expected_version)
        self._launch(session)
        return session

    def continue_session(
        self,
        user_id: str,
        session_id: str,
        additional_instructions: Optional[str] = None,
        extend_duration: Optional[int] = None,
        expected_version: Optional[int] = None,
    ) -> ResearchSession:
        session = self._controller.continue_session(
            user_id, session_id, additional_instructions, extend_duration, expected_version
        )
        self._launch(session)
        return session

    def attach(self, user_id: str, session_id: str) -> ResearchSession:
        # Draft sessions are started; an active session whose run is gone is rebound.
        with self._attach_lock:
            session = self._controller.get_session(user_id, session_id).session
            if session.status == "draft":
                return self.start(user_id, session_id)
            if session.status not in ACTIVE_PHASES:
                raise InvalidTransitionError(
                    f"Cannot stream session in {session.status} status",
                    current_status=session.status,
                )
            if self.is_running(session_id, session.active_run_id):
                return session
            session = self._controller.rebind_run(user_id, session_id)
            self._launch(session)
            return session

    def is_running(self, session_id: str, run_id: Optional[str] = None) -> bool:
        with self._lock:
            entry = self._runs.get(session_id)
        if entry is None:
            return False
        current_run_id, thread = entry
        if run_id is not None and current_run_id != run_id:
            return False
        return thread.is_alive()

    def wait(self, session_id: str, timeout: Optional[float] = None) -> bool:
        with self._lock:
            entry = self._runs.get(session_id)
        if entry is None:
            return True
        entry[1].join(timeout)
        return not entry[1].is_alive()

    def _launch(self, session: ResearchSession) -> None:
        run_id = session.active_run_id
        if not run_id:
            return
        thread = threading.Thread(
            target=self._execute_run,
            args=(session, run_id),
            name=f"research-run-{session.id[:8]}",
            daemon=True,
        )
        with self._lock:
            self._runs[session.id] = (run_id, thread)
        thread.start()

    def _execute_run(self, session: ResearchSession, run_id: str) -> None:
        session_id = session.id

        def publish(event_type: str, payload: Dict[str, Any]) -> StreamEvent:
            return self._publisher.publish(session_id, event_type, payload)

        logger.info("run %s started for research session %s", run_id, session_id)
        try:
            publish(
                "status",
                {"type": session.current_step or session.status, "message": "Starting deep research..."},
            )
            try:
                if self._executor is None:
                    raise ExecutorFailureError("No task executor is configured")
                ctx = ExecutionContext(session, run_id, self._controller, self._recorder, publish)
                outcome = self._executor.execute(ctx)
            except ExecutionStopped as exc:
                logger.info("run %s stopped: %s", run_id, exc)
                return
            except Exception as exc:
                logger.exception("run %s for research session %s failed", run_id, session_id)
                self._fail(session_id, run_id, str(exc) or exc.__class__.__name__)
                return

            try:
                completed = self._controller.complete_run(
                    session_id,
                    run_id,
                    outcome.final_report,
                    knowledge_graph=outcome.knowledge_graph,
                    cited_urls=outcome.cited_urls,
                )
            except InvalidTransitionError as exc:
                logger.info("run %s finished after the session moved on: %s", run_id, exc.message)
                return
            except LifecycleError as exc:
                logger.error("run %s could not record its report: %s", run_id, exc.message)
                self._fail(session_id, run_id, exc.message)
                return

            publish("report", {"report": completed.final_report})
            if completed.knowledge_graph:
                publish("knowledge_graph", {"knowledge_graph": completed.knowledge_graph})
            publish(
                "complete",
                {
                    "message": "Research completed successfully!",
                    "duration": completed.actual_duration,
                    "total_sources": completed.total_sources,
                    "total_tasks": completed.total_tasks,
                },
            )
            logger.info("run %s completed research session %s", run_id, session_id)
        finally:
            with self._lock:
                entry = self._runs.get(session_id)
                if entry is not None and entry[0] == run_id:
                    self._runs.pop(session_id, None)

    def _fail(self, session_id: str, run_id: str, error: str) -> None:
        try:
            self._controller.fail_run(session_id, run_id, error)
        except LifecycleError as exc:
            # Paused or rebound meanwhile: the session no longer belongs to this run.
            logger.info("run %s failure not recorded: %s", run_id, exc.message)
            return
        self._publisher.publish(
            session_id, "error", {"message": "Research failed due to an error", "error": error}
        )
