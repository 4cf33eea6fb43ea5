import pytest

from research_sessions.errors import ExecutionStopped, ValidationFailedError
from research_sessions.history import HistoryLedger
from research_sessions.lifecycle import LifecycleController
from research_sessions.models import CreateSessionRequest, ResearchingSnapshot
from research_sessions.recorder import TaskRecorder, is_valid_absolute_http_url
from research_sessions.store import SessionStore


USER = "user-1"


def _running(tmp_path, max_task_retries=2):
    store = SessionStore(tmp_path)
    ctl = LifecycleController(store, HistoryLedger(store))
    recorder = TaskRecorder(store, max_task_retries=max_task_retries)
    session = ctl.create_session(
        USER,
        CreateSessionRequest(workspace_id="ws-1", title="Heat pumps", question="Are heat pumps efficient?"),
    )
    session = ctl.start(USER, session.id)
    return ctl, recorder, session


def _bundle(ctl, session_id):
    return ctl.get_session(USER, session_id)


def test_create_task_uses_search_config_defaults(tmp_path):
    ctl, recorder, session = _running(tmp_path)

    task = recorder.create_task(session.id, session.active_run_id, "heat pump COP winter")

    assert task.status == "pending"
    assert task.max_results == 5
    assert task.search_provider == "model"
    assert _bundle(ctl, session.id).session.total_tasks == 1


def test_task_status_moves_forward_and_terminal_tasks_ignore_late_updates(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    run_id = session.active_run_id
    task = recorder.create_task(session.id, run_id, "q")

    searching = recorder.update_task(session.id, run_id, task.id, status="searching")
    done = recorder.update_task(session.id, run_id, task.id, status="completed", result_count=3)
    late = recorder.update_task(session.id, run_id, task.id, status="failed", error_message="timeout")

    assert searching.started_at is not None
    assert done.status == "completed"
    assert done.completed_at is not None
    assert late is None
    stored = _bundle(ctl, session.id).tasks[0]
    assert stored.status == "completed"
    assert stored.error_message is None
    assert _bundle(ctl, session.id).session.completed_tasks == 1


def test_backwards_task_move_is_ignored(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    run_id = session.active_run_id
    task = recorder.create_task(session.id, run_id, "q")
    recorder.update_task(session.id, run_id, task.id, status="searching")
    recorder.update_task(session.id, run_id, task.id, status="processing")
    revision = _bundle(ctl, session.id).session.revision

    assert recorder.update_task(session.id, run_id, task.id, status="searching") is None
    assert _bundle(ctl, session.id).session.revision == revision


def test_task_scores_are_validated(tmp_path):
    _, recorder, session = _running(tmp_path)
    task = recorder.create_task(session.id, session.active_run_id, "q")

    with pytest.raises(ValidationFailedError):
        recorder.update_task(session.id, session.active_run_id, task.id, relevance_score=1.5)


def test_retry_budget(tmp_path):
    _, recorder, session = _running(tmp_path, max_task_retries=1)
    run_id = session.active_run_id
    task = recorder.create_task(session.id, run_id, "q")
    recorder.update_task(session.id, run_id, task.id, status="searching")

    first = recorder.record_retry(session.id, run_id, task.id, "HTTP 503")
    second = recorder.record_retry(session.id, run_id, task.id, "HTTP 503")

    assert first.status == "searching"
    assert first.retry_count == 1
    assert second.status == "failed"
    assert second.retry_count == 2


def test_source_upsert_is_idempotent_by_url(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    run_id = session.active_run_id
    url = "https://energy.example.org/heat-pumps"

    first = recorder.record_source(session.id, run_id, url, tags=["winter"], title="Heat pumps")
    second = recorder.record_source(
        session.id, run_id, url, tags=["winter", "cop"], relevance_score=0.7
    )

    bundle = _bundle(ctl, session.id)
    assert len(bundle.sources) == 1
    assert second.id == first.id
    assert second.tags == ["winter", "cop"]
    assert second.title == "Heat pumps"
    assert second.domain == "energy.example.org"
    assert bundle.session.total_sources == 1


def test_source_word_count_is_derived_from_content(tmp_path):
    _, recorder, session = _running(tmp_path)

    source = recorder.record_source(
        session.id, session.active_run_id, "https://a.example/x", content="one two three"
    )

    assert source.word_count == 3


def test_source_url_must_be_absolute_http(tmp_path):
    _, recorder, session = _running(tmp_path)

    with pytest.raises(ValidationFailedError):
        recorder.record_source(session.id, session.active_run_id, "ftp://files.example/x")
    assert is_valid_absolute_http_url("https://example.com/a")
    assert not is_valid_absolute_http_url("/relative/path")


def test_writes_stop_once_session_is_paused(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    ctl.pause(USER, session.id)

    with pytest.raises(ExecutionStopped):
        recorder.create_task(session.id, session.active_run_id, "q")
    assert _bundle(ctl, session.id).tasks == []


def test_writes_from_replaced_run_are_rejected(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    ctl.pause(USER, session.id)
    resumed = ctl.resume(USER, session.id)

    with pytest.raises(ExecutionStopped):
        recorder.record_source(session.id, session.active_run_id, "https://a.example/x")
    recorder.record_source(session.id, resumed.active_run_id, "https://a.example/x")

    assert len(_bundle(ctl, session.id).sources) == 1


def test_checkpoint_feeds_resume(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    ctl.advance_phase(session.id, session.active_run_id, "researching", "searching")
    recorder.checkpoint(
        session.id,
        session.active_run_id,
        ResearchingSnapshot(step="analysis", completed_queries=["a"], pending_queries=["b"]),
    )
    ctl.pause(USER, session.id)

    resumed = ctl.resume(USER, session.id)

    assert resumed.status == "researching"
    assert resumed.current_step == "analysis"


def test_citations_only_come_from_report_completion(tmp_path):
    ctl, recorder, session = _running(tmp_path)
    run_id = session.active_run_id
    cited = "https://a.example/cited"
    recorder.record_source(session.id, run_id, cited)
    recorder.record_source(session.id, run_id, "https://a.example/unused")

    ctl.complete_run(session.id, run_id, f"See {cited}", cited_urls=[cited])

    sources = {s.url: s for s in _bundle(ctl, session.id).sources}
    assert sources[cited].cited_in_report is True
    assert sources[cited].citation_count == 1
    assert sources["https://a.example/unused"].cited_in_report is False
