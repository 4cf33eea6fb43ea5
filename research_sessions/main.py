import json
import logging
import os
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Dict, Iterator, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.requests import Request

from research_sessions.auth import AuthConfig, AuthService, UserPrincipal, get_current_user_from_request
from research_sessions.engine import ResearchEngine, build_engine
from research_sessions.errors import LifecycleError
from research_sessions.executor import RemoteTaskExecutor, TaskExecutor
from research_sessions.knowledge import KnowledgeBaseDirectory
from research_sessions.models import (
    BookmarkRequest,
    ContinueRequest,
    CreateHistoryRequest,
    CreateSessionRequest,
    HistoryListResponse,
    KnowledgeListResponse,
    LinkKnowledgeRequest,
    PauseRequest,
    RestoreHistoryRequest,
    SessionDetailResponse,
    SessionListResponse,
    UpdateSessionRequest,
)
from research_sessions.sse import format_keepalive, format_sse
from research_sessions.stream import is_stream_closing


BASE_DIR = Path(__file__).resolve().parent
WEB_CONFIG_PATH = BASE_DIR.parent / "web_config.json"

logging.getLogger("research_sessions").setLevel(
    str(os.getenv("RESEARCH_LOG_LEVEL", "INFO")).strip().upper() or "INFO"
)
logger = logging.getLogger(__name__)


def _int_setting(raw: Dict[str, Any], key: str, default: int, low: int, high: int) -> int:
    try:
        value = int(raw.get(key, default))
    except (TypeError, ValueError):
        value = default
    return max(low, min(value, high))


def _load_web_config() -> Dict[str, Any]:
    default = {
        "history_limit": 50,
        "session_list_limit": 20,
        "default_estimated_duration": 30,
        "continuation_ratio": 0.7,
        "continuation_report_prefix_chars": 500,
        "conflict_retry_attempts": 3,
        "stream_keepalive_sec": 15,
        "max_task_retries": 2,
    }
    if not WEB_CONFIG_PATH.exists():
        return default
    try:
        raw = json.loads(WEB_CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        logger.warning("ignoring unreadable %s: %s", WEB_CONFIG_PATH, exc)
        return default
    if not isinstance(raw, dict):
        return default
    try:
        continuation_ratio = float(raw.get("continuation_ratio", default["continuation_ratio"]))
    except (TypeError, ValueError):
        continuation_ratio = default["continuation_ratio"]
    return {
        "history_limit": _int_setting(raw, "history_limit", 50, 1, 500),
        "session_list_limit": _int_setting(raw, "session_list_limit", 20, 1, 100),
        "default_estimated_duration": _int_setting(raw, "default_estimated_duration", 30, 1, 24 * 60),
        "continuation_ratio": min(max(continuation_ratio, 0.1), 1.0),
        "continuation_report_prefix_chars": _int_setting(
            raw, "continuation_report_prefix_chars", 500, 0, 10000
        ),
        "conflict_retry_attempts": _int_setting(raw, "conflict_retry_attempts", 3, 1, 10),
        "stream_keepalive_sec": _int_setting(raw, "stream_keepalive_sec", 15, 1, 120),
        "max_task_retries": _int_setting(raw, "max_task_retries", 2, 0, 10),
    }


def _executor_from_env() -> Optional[TaskExecutor]:
    url = str(os.getenv("RESEARCH_EXECUTOR_URL", "")).strip()
    if not url:
        logger.warning("RESEARCH_EXECUTOR_URL is not set; research runs will fail")
        return None
    token = str(os.getenv("RESEARCH_EXECUTOR_TOKEN", "")).strip() or None
    return RemoteTaskExecutor(url, token=token)


def _knowledge_directory_from_env() -> Optional[KnowledgeBaseDirectory]:
    path = str(os.getenv("RESEARCH_KNOWLEDGE_DIRECTORY", "")).strip()
    if not path:
        return None
    return KnowledgeBaseDirectory.from_file(path)


WEB_CONFIG = _load_web_config()
engine: ResearchEngine = build_engine(
    os.getenv("RESEARCH_DATA_DIR", "runs"),
    WEB_CONFIG,
    executor=_executor_from_env(),
    knowledge_directory=_knowledge_directory_from_env(),
)
auth_service = AuthService(AuthConfig())

app = FastAPI(title="Research Sessions")


def current_user(request: Request) -> UserPrincipal:
    user = get_current_user_from_request(request, auth_service)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required.")
    return user


def _http_error(exc: LifecycleError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=jsonable_encoder(exc.to_detail()))


@app.exception_handler(RequestValidationError)
def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=422,
        content={
            "detail": {
                "error": "Invalid request.",
                "error_code": "validation_error",
                "details": jsonable_encoder(exc.errors()),
            }
        },
    )


@app.post("/api/research", response_model=SessionDetailResponse, status_code=201)
def create_session(
    req: CreateSessionRequest, user: UserPrincipal = Depends(current_user)
) -> SessionDetailResponse:
    try:
        session = engine.controller.create_session(user.user_id, req)
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.get("/api/research", response_model=SessionListResponse)
def list_sessions(
    workspace_id: str = Query(min_length=1),
    status: Optional[str] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    user: UserPrincipal = Depends(current_user),
) -> SessionListResponse:
    default_limit = int(WEB_CONFIG.get("session_list_limit", 20))
    limit = max(1, min(int(limit or default_limit), 100))
    sessions = engine.controller.list_sessions(
        user.user_id, workspace_id, status=status, limit=limit, offset=max(0, offset)
    )
    return SessionListResponse(sessions=sessions)


@app.get("/api/research/{session_id}", response_model=SessionDetailResponse)
def get_session(
    session_id: str,
    include_tasks: bool = False,
    include_sources: bool = False,
    include_history: bool = False,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    try:
        bundle = engine.controller.get_session(user.user_id, session_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    history = None
    if include_history:
        history = sorted(bundle.history, key=lambda e: e.version)
        history = history[-int(WEB_CONFIG.get("history_limit", 50)) :]
    return SessionDetailResponse(
        session=bundle.session,
        tasks=sorted(bundle.tasks, key=lambda t: t.created_at) if include_tasks else None,
        sources=(
            sorted(bundle.sources, key=lambda s: -(s.relevance_score or 0.0)) if include_sources else None
        ),
        history=history,
    )


@app.patch("/api/research/{session_id}", response_model=SessionDetailResponse)
def update_session(
    session_id: str,
    req: UpdateSessionRequest,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    try:
        session = engine.controller.update_session(user.user_id, session_id, req, expected_version)
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.delete("/api/research/{session_id}")
def delete_session(session_id: str, user: UserPrincipal = Depends(current_user)) -> dict:
    try:
        engine.controller.delete_session(user.user_id, session_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    engine.publisher.forget(session_id)
    return {"session_id": session_id, "deleted": True}


@app.post("/api/research/{session_id}/start", response_model=SessionDetailResponse)
def start_session(
    session_id: str,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    try:
        session = engine.runs.start(user.user_id, session_id, expected_version)
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.post("/api/research/{session_id}/pause", response_model=SessionDetailResponse)
def pause_session(
    session_id: str,
    req: Optional[PauseRequest] = None,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    snapshot = req.state_snapshot if req is not None else None
    try:
        session = engine.runs.pause(user.user_id, session_id, snapshot, expected_version)
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.post("/api/research/{session_id}/resume", response_model=SessionDetailResponse)
def resume_session(
    session_id: str,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    try:
        session = engine.runs.resume(user.user_id, session_id, expected_version)
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.post("/api/research/{session_id}/continue", response_model=SessionDetailResponse)
def continue_session(
    session_id: str,
    req: Optional[ContinueRequest] = None,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    req = req or ContinueRequest()
    try:
        session = engine.runs.continue_session(
            user.user_id,
            session_id,
            additional_instructions=req.additional_instructions,
            extend_duration=req.extend_duration,
            expected_version=expected_version,
        )
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


def _event_stream(session_id: str, q: Queue) -> Iterator[str]:
    keepalive = float(WEB_CONFIG.get("stream_keepalive_sec", 15))
    try:
        while True:
            try:
                event = q.get(timeout=keepalive)
            except Empty:
                yield format_keepalive()
                continue
            yield format_sse(event)
            if is_stream_closing(event):
                break
    finally:
        engine.publisher.unsubscribe(session_id, q)


@app.post("/api/research/{session_id}/stream")
def stream_session(session_id: str, user: UserPrincipal = Depends(current_user)) -> StreamingResponse:
    # Subscribe before attaching so the first events of a new run are not missed.
    q = engine.publisher.subscribe(session_id)
    try:
        engine.runs.attach(user.user_id, session_id)
    except LifecycleError as exc:
        engine.publisher.unsubscribe(session_id, q)
        raise _http_error(exc)
    return StreamingResponse(
        _event_stream(session_id, q),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.get("/api/research/{session_id}/history", response_model=HistoryListResponse)
def list_history(
    session_id: str,
    bookmarked: bool = False,
    limit: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> HistoryListResponse:
    try:
        entries = engine.ledger.list(
            session_id,
            user.user_id,
            bookmarked_only=bookmarked,
            limit=limit or int(WEB_CONFIG.get("history_limit", 50)),
        )
    except LifecycleError as exc:
        raise _http_error(exc)
    return HistoryListResponse(history=entries)


@app.post("/api/research/{session_id}/history", status_code=201)
def create_history_entry(
    session_id: str, req: CreateHistoryRequest, user: UserPrincipal = Depends(current_user)
) -> dict:
    try:
        entry = engine.ledger.append(
            session_id,
            user.user_id,
            change_type=req.change_type,
            full_state=req.full_state,
            step_name=req.step_name,
            description=req.description,
            parent_version_id=req.parent_version_id,
            is_bookmarked=req.is_bookmarked,
        )
    except LifecycleError as exc:
        raise _http_error(exc)
    return {"entry": jsonable_encoder(entry)}


@app.post("/api/research/{session_id}/history/restore", response_model=SessionDetailResponse)
def restore_history(
    session_id: str,
    req: RestoreHistoryRequest,
    expected_version: Optional[int] = None,
    user: UserPrincipal = Depends(current_user),
) -> SessionDetailResponse:
    try:
        session = engine.ledger.restore(
            session_id,
            user.user_id,
            req.version_id,
            create_branch=req.create_branch,
            expected_version=expected_version,
        )
    except LifecycleError as exc:
        raise _http_error(exc)
    return SessionDetailResponse(session=session)


@app.get("/api/research/{session_id}/history/{entry_id}")
def get_history_entry(
    session_id: str, entry_id: str, user: UserPrincipal = Depends(current_user)
) -> dict:
    try:
        entry = engine.ledger.get(session_id, user.user_id, entry_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    return {"entry": jsonable_encoder(entry)}


@app.put("/api/research/{session_id}/history/{entry_id}/bookmark")
def bookmark_history_entry(
    session_id: str,
    entry_id: str,
    req: BookmarkRequest,
    user: UserPrincipal = Depends(current_user),
) -> dict:
    try:
        entry = engine.ledger.set_bookmark(session_id, user.user_id, entry_id, req.is_bookmarked)
    except LifecycleError as exc:
        raise _http_error(exc)
    return {"entry": jsonable_encoder(entry)}


@app.get("/api/research/{session_id}/knowledge", response_model=KnowledgeListResponse)
def list_knowledge_links(
    session_id: str, user: UserPrincipal = Depends(current_user)
) -> KnowledgeListResponse:
    try:
        links = engine.knowledge.list(session_id, user.user_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    return KnowledgeListResponse(links=links)


@app.post("/api/research/{session_id}/knowledge")
def link_knowledge(
    session_id: str,
    req: LinkKnowledgeRequest,
    response: Response,
    user: UserPrincipal = Depends(current_user),
) -> dict:
    try:
        link, created = engine.knowledge.link(session_id, user.user_id, req)
    except LifecycleError as exc:
        raise _http_error(exc)
    response.status_code = 201 if created else 200
    return {"link": jsonable_encoder(link), "created": created}


@app.delete("/api/research/{session_id}/knowledge/{link_id}")
def unlink_knowledge(
    session_id: str, link_id: str, user: UserPrincipal = Depends(current_user)
) -> dict:
    try:
        engine.knowledge.unlink(session_id, user.user_id, link_id)
    except LifecycleError as exc:
        raise _http_error(exc)
    return {"link_id": link_id, "deleted": True}
