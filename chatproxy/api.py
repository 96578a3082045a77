from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import UserIdDependency
from .config import get_settings
from .models import (
    ChatRequest,
    ChatResponse,
    Message,
    MessageListResponse,
    SaveMessagesRequest,
    SaveSessionRequest,
    SessionListResponse,
)
from .repository import SessionRepository
from .service import ChatService, CompletionError, ConfigurationError, warmup

STATIC_DIR = Path(__file__).resolve().parent / "static"

log_level = getattr(logging, get_settings().log_level, logging.INFO)
if not logging.getLogger().handlers:
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
logging.getLogger("chatproxy").setLevel(log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Chat Proxy API", version="1.0.0")

router = APIRouter()


def get_chat_service() -> ChatService:
    return ChatService.instance()


def configured_chat_service(service: ChatService = Depends(get_chat_service)) -> ChatService:
    # Resolved before the body is validated, so a missing key wins over any payload
    try:
        service.ensure_configured()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return service


def get_repository() -> SessionRepository:
    return ChatService.instance().repository()


@app.exception_handler(StarletteHTTPException)
async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(
        {"error": exc.detail},
        status_code=exc.status_code,
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def malformed_body(request: Request, exc: RequestValidationError) -> JSONResponse:
    # Unparseable bodies land in the same generic failure as any other error
    logger.error("Malformed request to %s: %s", request.url.path, exc.errors())
    return JSONResponse({"error": "Internal server error"}, status_code=500)


@app.on_event("startup")
async def on_startup() -> None:
    active = await warmup()
    logger.info("Chat service ready: %s", active)


@app.get("/healthz")
async def healthz() -> dict:
    return {"status": "ok"}


@app.get("/", include_in_schema=False)
async def index() -> FileResponse:
    return FileResponse(STATIC_DIR / "index.html")


@router.post("/chat", response_model=ChatResponse)
async def chat(
    req: ChatRequest, service: ChatService = Depends(configured_chat_service)
) -> ChatResponse:
    try:
        message = await service.reply(req.messages, req.image)
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    except CompletionError as e:
        raise HTTPException(status_code=e.status_code, detail=f"Completion API error: {e.body}")
    except Exception:
        logger.error("Chat API error", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return ChatResponse(message=message)


@router.get("/chats", response_model=SessionListResponse)
async def list_sessions(
    user_id: str = UserIdDependency,
    repo: SessionRepository = Depends(get_repository),
) -> SessionListResponse:
    try:
        return SessionListResponse(sessions=repo.list_sessions(user_id))
    except Exception:
        logger.error("Error getting sessions", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/chats", response_model=SessionListResponse)
async def save_session(
    body: SaveSessionRequest,
    user_id: str = UserIdDependency,
    repo: SessionRepository = Depends(get_repository),
) -> SessionListResponse:
    if not body.session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")
    try:
        repo.save_session(user_id, body.session_id, body.title)
        return SessionListResponse(sessions=repo.list_sessions(user_id))
    except Exception:
        logger.error("Error saving session", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/chats", response_model=SessionListResponse)
async def delete_session(
    session_id: Optional[str] = Query(default=None, alias="sessionId"),
    user_id: str = UserIdDependency,
    repo: SessionRepository = Depends(get_repository),
) -> SessionListResponse:
    if not session_id:
        raise HTTPException(status_code=400, detail="sessionId is required")
    try:
        repo.delete_session(user_id, session_id)
        return SessionListResponse(sessions=repo.list_sessions(user_id))
    except Exception:
        logger.error("Error deleting session", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get(
    "/chats/{session_id}",
    response_model=MessageListResponse,
    response_model_exclude_none=True,
)
async def get_session_messages(
    session_id: str,
    user_id: str = UserIdDependency,
    repo: SessionRepository = Depends(get_repository),
) -> MessageListResponse:
    try:
        return MessageListResponse(messages=repo.get_messages(user_id, session_id))
    except Exception:
        logger.error("Error getting messages", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/chats/{session_id}")
async def save_session_messages(
    session_id: str,
    body: SaveMessagesRequest,
    user_id: str = UserIdDependency,
    repo: SessionRepository = Depends(get_repository),
) -> dict:
    if not isinstance(body.messages, list):
        raise HTTPException(status_code=400, detail="messages must be an array")
    try:
        messages = [Message.model_validate(m) for m in body.messages]
        repo.save_messages(user_id, session_id, messages)
    except Exception:
        logger.error("Error saving messages", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")
    return {"success": True}


app.include_router(router)
