import pytest

from research_sessions.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from research_sessions.history import HistoryLedger, diff_states
from research_sessions.lifecycle import LifecycleController
from research_sessions.models import CreateSessionRequest
from research_sessions.store import SessionStore


USER = "user-1"


def _setup(tmp_path):
    store = SessionStore(tmp_path)
    ledger = HistoryLedger(store)
    ctl = LifecycleController(store, ledger)
    session = ctl.create_session(
        USER,
        CreateSessionRequest(workspace_id="ws-1", title="Original title", question="What is CRDT?"),
    )
    return ctl, ledger, session


def _paused(tmp_path):
    ctl, ledger, session = _setup(tmp_path)
    ctl.start(USER, session.id)
    ctl.pause(USER, session.id)
    return ctl, ledger, session


def test_versions_are_contiguous_from_one(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    ctl.resume(USER, session.id)
    ctl.pause(USER, session.id)
    ledger.append(session.id, USER, "manual", {"title": "Checkpoint"}, step_name="note")

    versions = sorted(e.version for e in ledger.list(session.id, USER))

    assert versions == [1, 2, 3, 4, 5]


def test_list_is_newest_first_and_bounded(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    ctl.resume(USER, session.id)

    entries = ledger.list(session.id, USER, limit=2)

    assert [e.version for e in entries] == [3, 2]


def test_manual_append_records_diff_against_previous(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    previous = ledger.list(session.id, USER, limit=1)[0]
    state = dict(previous.full_state, title="Renamed")

    entry = ledger.append(session.id, USER, "manual", state)

    assert entry.version == previous.version + 1
    assert entry.state_diff == {"title": {"from": "Original title", "to": "Renamed"}}


def test_diff_states_reports_added_and_removed_keys():
    diff = diff_states({"a": 1, "b": 2}, {"b": 3, "c": 4})

    assert diff == {
        "a": {"from": 1, "to": None},
        "b": {"from": 2, "to": 3},
        "c": {"from": None, "to": 4},
    }


def test_restore_overlays_fields_and_links_parent(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    target = ledger.append(
        session.id,
        USER,
        "manual",
        {"title": "Earlier title", "report_plan": "1. Define CRDT"},
        step_name="planning",
    )

    restored = ledger.restore(session.id, USER, target.id)

    assert restored.title == "Earlier title"
    assert restored.report_plan == "1. Define CRDT"
    assert restored.status == "paused"
    latest = ledger.list(session.id, USER, limit=1)[0]
    assert latest.change_type == "restore"
    assert latest.parent_version_id == target.id
    assert latest.description == f"Restored from version {target.version}"


def test_restore_leaves_absent_fields_untouched(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    target = ledger.append(session.id, USER, "manual", {"final_report": "draft v1"})

    restored = ledger.restore(session.id, USER, target.id)

    assert restored.final_report == "draft v1"
    assert restored.title == "Original title"


def test_restore_as_branch(tmp_path):
    ctl, ledger, session = _paused(tmp_path)
    first = sorted(ledger.list(session.id, USER), key=lambda e: e.version)[0]

    ledger.restore(session.id, USER, first.id, create_branch=True)

    latest = ledger.list(session.id, USER, limit=1)[0]
    assert latest.change_type == "branch"
    assert latest.parent_version_id == first.id


def test_restore_unknown_version(tmp_path):
    _, ledger, session = _paused(tmp_path)

    with pytest.raises(NotFoundError):
        ledger.restore(session.id, USER, "no-such-entry")


def test_restore_refused_while_running(tmp_path):
    ctl, ledger, session = _setup(tmp_path)
    ctl.start(USER, session.id)
    entry = ledger.list(session.id, USER)[0]

    with pytest.raises(InvalidTransitionError) as excinfo:
        ledger.restore(session.id, USER, entry.id)

    assert excinfo.value.current_status == "thinking"
    assert len(ledger.list(session.id, USER)) == 1


def test_restore_rejects_malformed_state(tmp_path):
    _, ledger, session = _paused(tmp_path)
    bad = ledger.append(session.id, USER, "manual", {"title": ""})
    before = len(ledger.list(session.id, USER))

    with pytest.raises(ValidationFailedError):
        ledger.restore(session.id, USER, bad.id)

    assert len(ledger.list(session.id, USER)) == before


def test_restore_entries_require_existing_parent(tmp_path):
    _, ledger, session = _paused(tmp_path)

    with pytest.raises(ValidationFailedError):
        ledger.append(session.id, USER, "restore", {"title": "x"})
    with pytest.raises(NotFoundError):
        ledger.append(session.id, USER, "branch", {"title": "x"}, parent_version_id="missing")


def test_bookmarks(tmp_path):
    _, ledger, session = _paused(tmp_path)
    entry = ledger.list(session.id, USER)[0]

    marked = ledger.set_bookmark(session.id, USER, entry.id, True)
    bookmarked = ledger.list(session.id, USER, bookmarked_only=True)

    assert marked.is_bookmarked is True
    assert [e.id for e in bookmarked] == [entry.id]
    assert ledger.get(session.id, USER, entry.id).is_bookmarked is True


def test_history_of_other_user_is_hidden(tmp_path):
    _, ledger, session = _paused(tmp_path)

    with pytest.raises(NotFoundError):
        ledger.list(session.id, "user-2")


def test_draft_sessions_take_no_history_so_start_is_version_one(tmp_path):
    ctl, ledger, session = _setup(tmp_path)

    with pytest.raises(InvalidTransitionError) as appended:
        ledger.append(session.id, USER, "manual", {"title": "Too early"})
    with pytest.raises(InvalidTransitionError) as restored:
        ledger.restore(session.id, USER, "any-entry")
    ctl.start(USER, session.id)

    assert appended.value.current_status == "draft"
    assert restored.value.current_status == "draft"
    entries = ledger.list(session.id, USER)
    assert [(e.version, e.step_name) for e in entries] == [(1, "initialization")]
