from __future__ import annotations

from typing import Any, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str
    image: Optional[str] = None  # data URL of an attached picture


class ChatSession(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    title: str
    created_at: int = Field(alias="createdAt")  # epoch milliseconds
    updated_at: int = Field(alias="updatedAt")


class ChatRequest(BaseModel):
    messages: List[Message]
    image: Optional[str] = None


class ChatResponse(BaseModel):
    message: str


class SaveSessionRequest(BaseModel):
    # Optional so a missing id is reported as 400 by the route, not as a parse error
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    title: Optional[str] = None


class SaveMessagesRequest(BaseModel):
    messages: Any = None


class SessionListResponse(BaseModel):
    sessions: List[ChatSession]


class MessageListResponse(BaseModel):
    messages: List[Message]


# Explicit exports
__all__ = [
    "Message",
    "ChatSession",
    "ChatRequest",
    "ChatResponse",
    "SaveSessionRequest",
    "SaveMessagesRequest",
    "SessionListResponse",
    "MessageListResponse",
]
