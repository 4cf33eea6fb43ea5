import threading
from datetime import datetime, timedelta, timezone

import pytest

from research_sessions.errors import (
    ConcurrencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    StaleVersionError,
    ValidationFailedError,
)
from research_sessions.history import HistoryLedger
from research_sessions.lifecycle import LifecycleController
from research_sessions.models import CreateSessionRequest, UpdateSessionRequest
from research_sessions.store import SessionStore, retry_on_conflict


USER = "user-1"


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float) -> None:
        self.now += timedelta(minutes=minutes)


def _controller(tmp_path, clock=None):
    store = SessionStore(tmp_path)
    ledger = HistoryLedger(store)
    return LifecycleController(store, ledger, clock=clock or _Clock())


def _create(controller, question="How do solid-state batteries age?", **kwargs):
    req = CreateSessionRequest(
        workspace_id="ws-1", title="Battery aging", question=question, **kwargs
    )
    return controller.create_session(USER, req)


def _history(controller, session_id):
    return sorted(controller.get_session(USER, session_id).history, key=lambda e: e.version)


def test_start_pause_resume_complete_continue_scenario(tmp_path):
    clock = _Clock()
    ctl = _controller(tmp_path, clock)
    session = _create(ctl)
    assert session.status == "draft"
    assert session.revision == 1

    started = ctl.start(USER, session.id)
    assert started.status == "thinking"
    assert started.started_at == clock.now
    assert started.paused_at is None
    assert started.completed_at is None
    assert started.active_run_id

    clock.advance(10.7)
    paused = ctl.pause(USER, session.id)
    assert paused.status == "paused"
    assert paused.paused_at == clock.now
    assert paused.actual_duration == 10
    assert paused.active_run_id is None

    clock.advance(60)
    resumed = ctl.resume(USER, session.id)
    assert resumed.status == "thinking"
    assert resumed.current_step == "initialization"
    assert resumed.paused_at is None
    assert resumed.started_at == clock.now

    ctl.advance_phase(session.id, resumed.active_run_id, "researching", "searching")
    clock.advance(5)
    completed = ctl.complete_run(session.id, resumed.active_run_id, "# Findings\n" + "x" * 700)
    assert completed.status == "completed"
    assert completed.completed_at == clock.now
    assert completed.actual_duration == 15
    assert completed.active_run_id is None

    continued = ctl.continue_session(USER, session.id, additional_instructions="Focus on costs")
    assert continued.status == "thinking"
    assert continued.current_step == "continuation_planning"
    assert continued.completed_at is None
    assert continued.paused_at is None
    assert continued.estimated_duration == 21
    assert continued.state_snapshot.kind == "continuation"
    assert continued.state_snapshot.previous_report.startswith("# Findings")

    history = _history(ctl, session.id)
    assert [e.version for e in history] == [1, 2, 3, 4, 5, 6]
    assert [e.change_type for e in history] == [
        "auto",
        "manual",
        "manual",
        "auto",
        "auto",
        "user_action",
    ]
    assert [e.step_name for e in history] == [
        "initialization",
        "paused",
        "resumed",
        "searching",
        "completed",
        "continued",
    ]
    assert history[-1].full_state["status"] == "thinking"


def test_resume_on_draft_is_rejected_without_side_effects(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)

    with pytest.raises(InvalidTransitionError) as excinfo:
        ctl.resume(USER, session.id)

    assert excinfo.value.current_status == "draft"
    bundle = ctl.get_session(USER, session.id)
    assert bundle.history == []
    assert bundle.session.revision == session.revision


def test_start_twice_is_rejected(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)

    with pytest.raises(InvalidTransitionError) as excinfo:
        ctl.start(USER, session.id)

    assert excinfo.value.current_status == "thinking"
    assert len(_history(ctl, session.id)) == 1


def test_continue_requires_completed_session(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    started = ctl.start(USER, session.id)
    ctl.complete_run(session.id, started.active_run_id, "report")
    ctl.continue_session(USER, session.id)

    with pytest.raises(InvalidTransitionError) as excinfo:
        ctl.continue_session(USER, session.id)

    assert excinfo.value.current_status == "thinking"


def test_concurrent_pauses_have_exactly_one_winner(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)
    barrier = threading.Barrier(2)
    outcomes = []

    def pause():
        barrier.wait()
        try:
            ctl.pause(USER, session.id)
            outcomes.append("ok")
        except InvalidTransitionError:
            outcomes.append("rejected")

    threads = [threading.Thread(target=pause) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert sorted(outcomes) == ["ok", "rejected"]
    steps = [e.step_name for e in _history(ctl, session.id)]
    assert steps.count("paused") == 1


def test_pause_with_snapshot_resumes_into_recorded_phase(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    started = ctl.start(USER, session.id)
    ctl.advance_phase(session.id, started.active_run_id, "researching", "searching")

    ctl.pause(
        USER,
        session.id,
        {
            "kind": "researching",
            "step": "searching",
            "completed_queries": ["aging mechanisms"],
            "pending_queries": ["dendrite growth"],
        },
    )
    resumed = ctl.resume(USER, session.id)

    assert resumed.status == "researching"
    assert resumed.current_step == "searching"
    assert resumed.state_snapshot.pending_queries == ["dendrite growth"]


def test_pause_keeps_existing_snapshot_when_none_given(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)
    ctl.pause(USER, session.id, {"kind": "writing", "draft_report": "half"})
    ctl.resume(USER, session.id)

    paused = ctl.pause(USER, session.id)

    assert paused.state_snapshot.kind == "writing"
    assert paused.state_snapshot.draft_report == "half"


def test_pause_keeps_first_measured_duration(tmp_path):
    clock = _Clock()
    ctl = _controller(tmp_path, clock)
    session = _create(ctl)
    ctl.start(USER, session.id)
    clock.advance(4)
    ctl.pause(USER, session.id)
    ctl.resume(USER, session.id)
    clock.advance(30)

    paused = ctl.pause(USER, session.id)

    assert paused.actual_duration == 4


def test_pause_rejects_malformed_snapshot(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)

    with pytest.raises(ValidationFailedError) as excinfo:
        ctl.pause(USER, session.id, {"kind": "dreaming"})

    assert excinfo.value.details
    bundle = ctl.get_session(USER, session.id)
    assert bundle.session.status == "thinking"
    assert len(bundle.history) == 1


def test_expected_version_mismatch_is_not_retried(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)

    with pytest.raises(StaleVersionError) as excinfo:
        ctl.start(USER, session.id, expected_version=session.revision + 5)

    assert excinfo.value.current_version == session.revision
    assert ctl.get_session(USER, session.id).session.status == "draft"


def test_continuation_context_and_duration(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl, question="Why is the sky blue?", estimated_duration=40)
    started = ctl.start(USER, session.id)
    ctl.complete_run(session.id, started.active_run_id, "y" * 600)

    continued = ctl.continue_session(USER, session.id, additional_instructions="Cover sunsets")
    context = continued.state_snapshot.continuation_context

    assert 'Previous research has been completed on: "Why is the sky blue?"' in context
    assert "y" * 500 + "..." in context
    assert "y" * 501 not in context
    assert "Additional research instructions: Cover sunsets" in context
    assert continued.estimated_duration == 28


def test_continue_extend_duration_overrides_estimate(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    started = ctl.start(USER, session.id)
    ctl.complete_run(session.id, started.active_run_id, "done")

    continued = ctl.continue_session(USER, session.id, extend_duration=45)

    assert continued.estimated_duration == 45


def test_run_callbacks_from_stale_run_are_rejected(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    first = ctl.start(USER, session.id)
    ctl.pause(USER, session.id)
    ctl.resume(USER, session.id)

    with pytest.raises(InvalidTransitionError):
        ctl.complete_run(session.id, first.active_run_id, "late report")

    assert ctl.get_session(USER, session.id).session.status == "thinking"


def test_advance_phase_never_moves_back(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    started = ctl.start(USER, session.id)
    ctl.advance_phase(session.id, started.active_run_id, "writing")

    with pytest.raises(InvalidTransitionError):
        ctl.advance_phase(session.id, started.active_run_id, "planning")


def test_fail_run_records_error(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    started = ctl.start(USER, session.id)

    failed = ctl.fail_run(session.id, started.active_run_id, "search quota exceeded")

    assert failed.status == "failed"
    assert failed.error_message == "search quota exceeded"
    assert failed.completed_at is not None
    assert _history(ctl, session.id)[-1].step_name == "failed"


def test_update_session_respects_status(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.update_session(USER, session.id, UpdateSessionRequest(question="What limits cycle life?"))
    ctl.start(USER, session.id)
    ctl.pause(USER, session.id)

    renamed = ctl.update_session(USER, session.id, UpdateSessionRequest(title="Cycle life"))
    assert renamed.title == "Cycle life"
    assert renamed.question == "What limits cycle life?"

    with pytest.raises(InvalidTransitionError):
        ctl.update_session(USER, session.id, UpdateSessionRequest(question="Another question"))


def test_delete_refused_while_active(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)

    with pytest.raises(InvalidTransitionError):
        ctl.delete_session(USER, session.id)

    ctl.pause(USER, session.id)
    ctl.delete_session(USER, session.id)
    with pytest.raises(NotFoundError):
        ctl.get_session(USER, session.id)


def test_other_users_cannot_see_session(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)

    with pytest.raises(NotFoundError):
        ctl.get_session("user-2", session.id)
    with pytest.raises(NotFoundError):
        ctl.start("user-2", session.id)


def test_list_sessions_filters_by_workspace_and_status(tmp_path):
    ctl = _controller(tmp_path)
    first = _create(ctl)
    _create(ctl, question="Second question")
    ctl.create_session(
        USER,
        CreateSessionRequest(workspace_id="ws-2", title="Other", question="Elsewhere"),
    )
    ctl.start(USER, first.id)

    in_ws = ctl.list_sessions(USER, "ws-1")
    thinking = ctl.list_sessions(USER, "ws-1", status="thinking")

    assert len(in_ws) == 2
    assert [s.id for s in thinking] == [first.id]
    assert ctl.list_sessions("user-2", "ws-1") == []


def test_sessions_survive_store_reload(tmp_path):
    ctl = _controller(tmp_path)
    session = _create(ctl)
    ctl.start(USER, session.id)
    ctl.pause(USER, session.id, {"kind": "planning", "partial_plan": "1. scope"})

    reloaded = _controller(tmp_path)
    bundle = reloaded.get_session(USER, session.id)

    assert bundle.session.status == "paused"
    assert bundle.session.state_snapshot.partial_plan == "1. scope"
    assert [e.version for e in bundle.history] == [1, 2]


def test_pause_from_a_second_process_loses_the_race_cleanly(tmp_path):
    first = _controller(tmp_path)
    second = _controller(tmp_path)
    session = _create(first)
    first.start(USER, session.id)
    # Load the started session into the second store's cache.
    assert second.get_session(USER, session.id).session.status == "thinking"

    first.pause(USER, session.id)
    with pytest.raises(InvalidTransitionError) as excinfo:
        second.pause(USER, session.id)

    assert excinfo.value.current_status == "paused"
    bundle = _controller(tmp_path).get_session(USER, session.id)
    assert [e.version for e in bundle.history] == [1, 2]
    assert bundle.session.revision == 3


def test_retry_gives_up_after_the_attempt_budget():
    calls = []

    def always_conflicts():
        calls.append(1)
        raise ConcurrencyConflictError(expected_version=1, current_version=2)

    with pytest.raises(ConcurrencyConflictError):
        retry_on_conflict(always_conflicts, attempts=3)

    assert len(calls) == 3


def test_retry_recovers_after_a_lost_race():
    calls = []

    def conflicts_once():
        calls.append(1)
        if len(calls) == 1:
            raise ConcurrencyConflictError()
        return "ok"

    assert retry_on_conflict(conflicts_once, attempts=3) == "ok"
    assert len(calls) == 2


def test_stale_version_is_not_retried():
    calls = []

    def stale():
        calls.append(1)
        raise StaleVersionError(expected_version=1, current_version=2)

    with pytest.raises(StaleVersionError):
        retry_on_conflict(stale, attempts=3)

    assert len(calls) == 1


def test_completed_duration_adds_the_final_stint(tmp_path):
    clock = _Clock()
    ctl = _controller(tmp_path, clock)
    session = _create(ctl)
    ctl.start(USER, session.id)
    clock.advance(4)
    ctl.pause(USER, session.id)
    resumed = ctl.resume(USER, session.id)
    clock.advance(6)
    completed = ctl.complete_run(session.id, resumed.active_run_id, "report")

    assert completed.actual_duration == 10


def test_deleted_session_drops_its_lock(tmp_path):
    store = SessionStore(tmp_path)
    ctl = LifecycleController(store, HistoryLedger(store))
    session = _create(ctl)

    ctl.delete_session(USER, session.id)

    assert session.id not in store._session_locks
