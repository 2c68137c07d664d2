from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["user", "assistant", "system"]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def today() -> str:
    """Default session id: the current UTC date as YYYY-MM-DD."""
    return datetime.now(timezone.utc).date().isoformat()


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)


class Session(BaseModel):
    """One conversation log. Stored on disk as ``{"date": ..., "messages": [...]}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="date")
    messages: List[Message] = Field(default_factory=list)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# ---- request / response bodies ----

class SubmitAck(BaseModel):
    success: bool = True
    message: str
    date: str


class StatusResponse(BaseModel):
    status: Literal["idle", "processing", "done"]


class NonStreamResponse(BaseModel):
    success: bool = True
    sessionID: str
    response: str


class HistoryResponse(BaseModel):
    sessionID: str
    messages: List[Dict[str, Any]]


class ClearResponse(BaseModel):
    success: bool = True
    message: str


class SessionListResponse(BaseModel):
    sessions: List[str]


class InboundChat(BaseModel):
    """A chat request after boundary normalization."""

    text: str
    session_id: Optional[str] = None
    stream: bool = True
