"""Turn the wire formats we accept into plain text prompts, and back.

Accepted ``POST /chat`` bodies:

* ``{"message": "hi"}``: legacy CLI, answered in the background;
* ``{"messages": [...]}``: Vercel ``useChat``, last entry must be the user's;
* ``{"message": {UIMessage}, "id": "..."}``: web UI sending only the newest message.

Messages may carry their text as ``content`` or as ``parts`` of type ``text``.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import InvalidRequestError
from .schemas import InboundChat, Message


def message_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    parts = message.get("parts")
    if isinstance(parts, list):
        return "".join(
            p.get("text", "") for p in parts
            if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
        )
    return ""


def _require_text(text: str, what: str = "Message is required") -> str:
    if not text.strip():
        raise InvalidRequestError(what)
    return text


def _session_id(body: Dict[str, Any]) -> Optional[str]:
    sid = body.get("id")
    if sid is None:
        return None
    if not isinstance(sid, str) or not sid:
        raise InvalidRequestError("id must be a non-empty string")
    return sid


def normalize_chat_body(body: Any) -> InboundChat:
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")

    if "messages" in body:
        messages = body["messages"]
        if not isinstance(messages, list) or not messages:
            raise InvalidRequestError("Messages are required")
        last = messages[-1]
        if not isinstance(last, dict) or last.get("role") != "user":
            raise InvalidRequestError("Last message must be from user")
        return InboundChat(text=_require_text(message_text(last)), stream=True)

    message = body.get("message")
    if isinstance(message, str):
        return InboundChat(text=_require_text(message), stream=False)
    if isinstance(message, dict):
        if message.get("role", "user") != "user":
            raise InvalidRequestError("Message must be from user")
        return InboundChat(text=_require_text(message_text(message)), session_id=_session_id(body), stream=True)

    raise InvalidRequestError("Message is required")


def message_from_body(body: Any) -> str:
    """Text of a ``{"message": ...}`` body on the per-session endpoints."""
    if not isinstance(body, dict):
        raise InvalidRequestError("Request body must be a JSON object")
    return _require_text(message_text(body.get("message")))


def to_ui_message(message: Message, session_id: str, index: int) -> Dict[str, Any]:
    return {
        "id": f"{session_id}-{index}",
        "role": message.role,
        "parts": [{"type": "text", "text": message.content}],
        "createdAt": message.timestamp,
    }


def to_ui_messages(messages: List[Message], session_id: str) -> List[Dict[str, Any]]:
    return [to_ui_message(m, session_id, i) for i, m in enumerate(messages)]
