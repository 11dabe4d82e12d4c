"""ChatDesk HTTP and WebSocket API.

Routes:

* ``POST /api/chat`` streams an assistant reply as Server-Sent Events.
* ``GET /api/messages/{thread_id}`` returns the caller's turns for a thread.
* ``/ws`` relays presence and typing events between tabs of one thread.
* Account, system prompt, file and domain catalogue routes under ``/api``.
* ``/health`` and ``/metrics`` for operations.

Every error response has the shape ``{"error": "<message>"}``.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, Dict, List, Literal, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from pydantic import BaseModel, ConfigDict, Field
from starlette.exceptions import HTTPException as StarletteHTTPException
from structlog.contextvars import bind_contextvars, unbind_contextvars

from chatdesk import auth
from chatdesk.config import get_settings
from chatdesk.db import create_engine_from_settings
from chatdesk.errors import ChatDeskError, ValidationFailure
from chatdesk.metrics import get_or_create_metric
from chatdesk.openai_client import get_completion_client
from chatdesk.presence import PresenceBroadcaster
from chatdesk.prompts import domain_catalogue, is_known_domain, resolve_system_prompt
from chatdesk.relay import CompletionRelay
from chatdesk.session_gate import SessionUser, SessionValidator
from chatdesk.storage import ChatStore
from chatdesk.time_utils import MAX_CLIENT_TIMESTAMP, seconds_from_client
from chatdesk.uploads import extract_file_content

settings = get_settings()

logging.basicConfig(level=getattr(logging, settings.log_level, logging.INFO), format="%(message)s")

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ],
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    wrapper_class=structlog.stdlib.BoundLogger,
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger(__name__)

_TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)


REQUEST_COUNTER = get_or_create_metric(
    Counter,
    "chatdesk_requests_total",
    "Total HTTP requests processed by the backend",
    ("method", "endpoint", "status"),
)
REQUEST_LATENCY = get_or_create_metric(
    Histogram,
    "chatdesk_request_latency_seconds",
    "Latency of HTTP requests",
    ("method", "endpoint"),
)

_PATH_PARAM_RE = re.compile(r"/(?:[0-9]+|[0-9a-fA-F]{8,})")


def _normalise_path_for_metrics(path: str) -> str:
    """Reduce high-cardinality segments in request paths for metrics labels."""

    if not path:
        return "/"
    return _PATH_PARAM_RE.sub("/:param", path)


# Shared collaborators.  Tests replace these module attributes directly.
chat_store = ChatStore(create_engine_from_settings())
session_validator = SessionValidator(chat_store, settings)
completion_client = get_completion_client(settings)
presence = PresenceBroadcaster(queue_size=settings.presence_queue_size)

START_TIME = time.time()
_SHUTTING_DOWN = False

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _SHUTTING_DOWN
    logger.info("lifespan_startup", environment=settings.environment)
    chat_store.create_schema()
    try:
        purged = chat_store.purge_expired_sessions()
        if purged:
            logger.info("expired_sessions_purged", count=purged)
    except ChatDeskError as exc:
        logger.warning("session_purge_failed", error=str(exc))
    start_ts = time.time()
    try:
        yield
    finally:
        _SHUTTING_DOWN = True
        await presence.close_all()
        logger.info("lifespan_shutdown_complete", uptime=time.time() - start_ts)


app = FastAPI(title="ChatDesk API", lifespan=lifespan)


@app.middleware("http")
async def inject_trace_id(request: Request, call_next):
    """Attach or propagate a trace identifier for each request."""

    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = _TRACE_ID_CTX.set(trace_id)
    bind_contextvars(trace_id=trace_id, path=request.url.path, method=request.method)
    request.state.trace_id = trace_id
    response = None
    try:
        response = await call_next(request)
        return response
    except Exception:
        logger.exception("request_failed", path=request.url.path, method=request.method)
        raise
    finally:
        if response is not None:
            response.headers["X-Trace-Id"] = trace_id
        try:
            unbind_contextvars("trace_id", "path", "method")
        except LookupError:  # pragma: no cover
            pass
        _TRACE_ID_CTX.reset(token)


@app.middleware("http")
async def track_http_metrics(request: Request, call_next):
    """Emit Prometheus counters and histograms for each request."""

    start = time.perf_counter()
    normalised = _normalise_path_for_metrics(request.url.path)
    try:
        response = await call_next(request)
    except Exception:
        REQUEST_COUNTER.labels(request.method, normalised, "500").inc()
        REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
        raise
    REQUEST_COUNTER.labels(request.method, normalised, str(response.status_code)).inc()
    REQUEST_LATENCY.labels(request.method, normalised).observe(time.perf_counter() - start)
    return response


def _error_response(status_code: int, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message}, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return _error_response(exc.status_code, detail, dict(exc.headers or {}))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    logger.info("request_validation_failed", error=message)
    return _error_response(400, message)


@app.exception_handler(ChatDeskError)
async def chatdesk_exception_handler(request: Request, exc: ChatDeskError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_error", error=exc.message, status=exc.status_code)
    else:
        logger.info("request_rejected", error=exc.message, status=exc.status_code)
    return _error_response(exc.status_code, exc.message)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("unhandled_error", error=str(exc))
    return _error_response(500, "Internal server error")


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def require_session(request: Request) -> SessionUser:
    """Resolve the session cookie or fail with 401."""

    token = request.cookies.get(session_validator.cookie_name)
    user = session_validator.validate_token(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    bind_contextvars(user_id=user.user_id)
    return user


def require_admin(user: SessionUser = Depends(require_session)) -> SessionUser:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

DomainName = Literal["law", "finance", "medicine"]


class ChatRequest(BaseModel):
    content: str = Field(min_length=1)
    domain: DomainName
    thread_id: str = Field(alias="threadId", min_length=1)
    role: Literal["user"] = "user"
    practice_area: Optional[str] = Field(default=None, alias="practiceArea")
    focus_area: Optional[str] = Field(default=None, alias="focusArea")
    sub_feature: Optional[str] = Field(default=None, alias="subFeature")
    timestamp: Optional[float] = Field(default=None, ge=0, le=MAX_CLIENT_TIMESTAMP, allow_inf_nan=False)

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def resolved_sub_feature(self) -> Optional[str]:
        return self.sub_feature or self.focus_area or None

    def turn_metadata(self) -> Optional[Dict[str, str]]:
        meta = {}
        if self.practice_area:
            meta["practiceArea"] = self.practice_area
        if self.focus_area:
            meta["focusArea"] = self.focus_area
        return meta or None


class RegisterModel(BaseModel):
    username: str
    password: str
    domain: Optional[DomainName] = None
    practice_area: Optional[str] = Field(default=None, alias="practiceArea")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class LoginModel(BaseModel):
    username: str
    password: str


class SystemPromptModel(BaseModel):
    domain: str
    prompt: str = Field(min_length=1)
    sub_feature_id: Optional[str] = Field(default=None, alias="subFeatureId")
    is_global: bool = Field(default=False, alias="isGlobal")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class FileUploadModel(BaseModel):
    name: str = Field(min_length=1)
    content: str
    file_type: str = Field(alias="fileType", min_length=1)
    domain: DomainName
    sub_feature_id: Optional[str] = Field(default=None, alias="subFeatureId")
    size: Optional[int] = None
    is_admin_only: bool = Field(default=False, alias="isAdminOnly")

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# Serialisers
# ---------------------------------------------------------------------------


def _user_payload(user: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": user["id"],
        "username": user["username"],
        "isAdmin": bool(user.get("is_admin")),
        "domain": user.get("domain"),
        "practiceArea": user.get("practice_area"),
        "onboardingCompleted": bool(user.get("onboarding_completed")),
    }


def _turn_payload(turn: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": turn["id"],
        "threadId": turn["thread_id"],
        "domain": turn["domain"],
        "role": turn["role"],
        "content": turn["content"],
        "subFeatureId": turn.get("sub_feature_id"),
        "metadata": turn.get("metadata"),
        "timestamp": turn["timestamp"],
    }


def _prompt_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "domain": row["domain"],
        "prompt": row["prompt"],
        "subFeatureId": row.get("sub_feature_id"),
        "isGlobal": bool(row.get("is_global")),
        "updatedAt": row.get("updated_at"),
    }


def _file_payload(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "content": row["content"],
        "fileType": row["file_type"],
        "domain": row["domain"],
        "subFeatureId": row.get("sub_feature_id"),
        "size": row["size"],
        "isAdminOnly": bool(row.get("is_admin_only")),
        "uploadedBy": row.get("uploaded_by"),
        "createdAt": row.get("created_at"),
    }


def _session_response(payload: Dict[str, Any], cookie_value: str, status_code: int = 200) -> JSONResponse:
    response = JSONResponse(status_code=status_code, content=payload)
    response.set_cookie(
        session_validator.cookie_name,
        cookie_value,
        max_age=settings.session_ttl_seconds,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )
    return response


# ---------------------------------------------------------------------------
# System routes
# ---------------------------------------------------------------------------


@app.get("/health", tags=["system"])
async def health():
    """Report liveness, uptime and whether the database answers."""

    db_ok = await asyncio.to_thread(chat_store.ping)
    return {
        "status": "ok",
        "uptime": round(time.time() - START_TIME, 2),
        "db": db_ok,
        "shutting_down": _SHUTTING_DOWN,
    }


@app.get("/metrics", tags=["system"], response_model=None)
async def metrics() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@app.post("/api/register")
def register(model: RegisterModel, request: Request) -> JSONResponse:
    user = auth.register_user(
        chat_store,
        model.username,
        model.password,
        domain=model.domain,
        practice_area=model.practice_area,
    )
    _, cookie_value = auth.start_session(
        chat_store,
        user,
        settings,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    return _session_response(_user_payload(user), cookie_value, status_code=201)


@app.post("/api/login")
def login(model: LoginModel, request: Request) -> JSONResponse:
    user = auth.authenticate_user(chat_store, model.username, model.password)
    if user is None:
        logger.info("login_failed")
        raise HTTPException(status_code=401, detail="Invalid credentials")
    _, cookie_value = auth.start_session(
        chat_store,
        user,
        settings,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    logger.info("login_succeeded", user_id=user["id"])
    return _session_response(_user_payload(user), cookie_value)


@app.post("/api/logout")
def logout(user: SessionUser = Depends(require_session)) -> JSONResponse:
    chat_store.delete_session(user.session_id)
    response = JSONResponse({"success": True})
    response.delete_cookie(session_validator.cookie_name)
    logger.info("logout", user_id=user.user_id)
    return response


@app.get("/api/user")
def current_user(user: SessionUser = Depends(require_session)) -> Dict[str, Any]:
    row = chat_store.get_user(user.user_id)
    if row is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return _user_payload(row)


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------


@app.post("/api/chat")
async def chat(req: ChatRequest, user: SessionUser = Depends(require_session)):
    """Store the user's turn and stream the assistant's reply as SSE."""

    relay = CompletionRelay(
        chat_store,
        completion_client,
        idle_timeout=settings.completion_idle_timeout,
        pacing_seconds=settings.stream_pacing_seconds,
    )
    turn, messages = await asyncio.to_thread(
        relay.accept_turn,
        thread_id=req.thread_id,
        domain=req.domain,
        content=req.content,
        user_id=user.user_id,
        sub_feature=req.resolved_sub_feature(),
        metadata=req.turn_metadata(),
        timestamp=seconds_from_client(req.timestamp),
    )
    return StreamingResponse(
        relay.stream(turn, messages),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/messages/{thread_id}")
def list_messages(thread_id: str, user: SessionUser = Depends(require_session)) -> List[Dict[str, Any]]:
    turns = chat_store.list_turns(thread_id, user_id=user.user_id)
    return [_turn_payload(turn) for turn in turns]


# ---------------------------------------------------------------------------
# System prompts
# ---------------------------------------------------------------------------


@app.post("/api/system-prompts")
def save_system_prompt(model: SystemPromptModel, user: SessionUser = Depends(require_admin)) -> Dict[str, Any]:
    if not model.is_global and not is_known_domain(model.domain):
        raise ValidationFailure(f"Unknown domain: {model.domain}")
    row = chat_store.upsert_system_prompt(
        model.domain,
        model.prompt,
        sub_feature=model.sub_feature_id,
        is_global=model.is_global,
    )
    logger.info(
        "system_prompt_saved",
        domain=row.get("domain"),
        sub_feature=row.get("sub_feature_id"),
        is_global=model.is_global,
    )
    return _prompt_payload(row)


@app.get("/api/system-prompts/{domain}")
def get_system_prompt(
    domain: str,
    sub_feature: Optional[str] = Query(default=None, alias="subFeature"),
    user: SessionUser = Depends(require_session),
) -> Dict[str, Any]:
    if not is_known_domain(domain):
        raise ValidationFailure(f"Unknown domain: {domain}")
    prompt, source = resolve_system_prompt(chat_store, domain, sub_feature)
    return {"domain": domain, "subFeature": sub_feature, "prompt": prompt, "source": source}


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


@app.post("/api/files", status_code=201)
async def upload_file(model: FileUploadModel, user: SessionUser = Depends(require_session)) -> Dict[str, Any]:
    if model.is_admin_only and not user.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    extracted = await extract_file_content(
        model.content,
        model.file_type,
        completion_client,
        max_bytes=settings.max_upload_bytes,
    )
    row = await asyncio.to_thread(
        lambda: chat_store.create_file(
            name=model.name,
            content=extracted.content,
            file_type=model.file_type,
            domain=model.domain,
            size=model.size if model.size is not None else extracted.size,
            uploaded_by="admin" if model.is_admin_only else "user",
            sub_feature=model.sub_feature_id,
            is_admin_only=model.is_admin_only,
        )
    )
    logger.info("file_uploaded", file_id=row.get("id"), domain=model.domain, file_type=model.file_type)
    return _file_payload(row)


@app.get("/api/files/item/{file_id}")
def get_file(file_id: int, user: SessionUser = Depends(require_session)) -> Dict[str, Any]:
    row = chat_store.get_file(file_id)
    if row is None or (row.get("is_admin_only") and not user.is_admin):
        raise HTTPException(status_code=404, detail="File not found")
    return _file_payload(row)


@app.get("/api/files/{domain}")
def list_files(domain: str, user: SessionUser = Depends(require_session)) -> List[Dict[str, Any]]:
    if not is_known_domain(domain):
        raise ValidationFailure(f"Unknown domain: {domain}")
    rows = chat_store.list_files(domain, include_admin_only=user.is_admin)
    return [_file_payload(row) for row in rows]


@app.get("/api/domains")
def list_domains() -> List[Dict[str, Any]]:
    return domain_catalogue()


# ---------------------------------------------------------------------------
# Presence
# ---------------------------------------------------------------------------


@app.websocket("/ws")
async def presence_socket(websocket: WebSocket):
    try:
        await presence.handle(websocket, session_validator.authenticate_websocket)
    except WebSocketDisconnect:
        return
