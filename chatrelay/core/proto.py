from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import ProtocolError


# ---------------------------------------------------------------------------
# Client -> relay frames
# ---------------------------------------------------------------------------

class _Frame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AuthFrame(_Frame):
    type: Literal["auth"]
    # Missing or non-string tokens are an auth failure, not a protocol failure;
    # the verifier rejects them.
    token: Any = ""


class MessageFrame(_Frame):
    type: Literal["message"]
    to_id: str = Field(alias="toId", min_length=1)
    content: str = Field(min_length=1)


class TypingFrame(_Frame):
    type: Literal["typing"]
    to_id: str = Field(alias="toId", min_length=1)
    is_typing: bool = Field(alias="isTyping")


class MarkSeenFrame(_Frame):
    type: Literal["mark_seen"]
    message_id: str = Field(alias="messageId", min_length=1)


ClientFrame = Annotated[
    Union[AuthFrame, MessageFrame, TypingFrame, MarkSeenFrame],
    Field(discriminator="type"),
]

FRAME_TYPES = ("auth", "message", "typing", "mark_seen")

_CLIENT_FRAME: TypeAdapter = TypeAdapter(ClientFrame)


def parse_client_frame(raw: Union[str, bytes]) -> ClientFrame:
    """Decode one websocket text frame into a typed client frame.

    Every malformed shape raises ProtocolError: invalid JSON, a non-object
    document, an unknown ``type`` or a missing/empty required field.
    """

    try:
        data = json.loads(raw)
    except (TypeError, ValueError):
        raise ProtocolError("Invalid message format") from None
    if not isinstance(data, dict):
        raise ProtocolError("Invalid message format")

    kind = data.get("type")
    if kind not in FRAME_TYPES:
        raise ProtocolError(f"Unknown frame type: {kind!r}")

    try:
        return _CLIENT_FRAME.validate_python(data)
    except ValidationError as exc:
        fields = sorted({str(err["loc"][-1]) for err in exc.errors() if err.get("loc")})
        raise ProtocolError(f"Invalid {kind} frame: {', '.join(fields) or 'bad shape'} required") from None


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class UserSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl")


class Message(BaseModel):
    """A persisted private message, as sent over the wire and the bus."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    from_id: str = Field(alias="fromId")
    to_id: str = Field(alias="toId")
    content: str
    created_at: datetime = Field(alias="createdAt")
    seen: bool = False
    sender: Optional[UserSummary] = Field(default=None, alias="from")
    receiver: Optional[UserSummary] = Field(default=None, alias="to")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


def new_message_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FanoutEvent(BaseModel):
    """Event carried on the fanout bus.

    ``origin`` names the publishing instance; external publishers leave it
    unset.
    """

    kind: Literal["message", "notification"]
    payload: Dict[str, Any]
    origin: Optional[str] = None


# ---------------------------------------------------------------------------
# Relay -> client frames
# ---------------------------------------------------------------------------

def connected_frame(user_id: str) -> Dict[str, Any]:
    return {"type": "connected", "userId": user_id, "message": "Authenticated successfully"}


def message_frame(message: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "message", "message": message}


def message_sent_frame(message: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "message_sent", "message": message}


def typing_frame(from_id: str, is_typing: bool) -> Dict[str, Any]:
    return {"type": "typing", "fromId": from_id, "isTyping": is_typing}


def notification_frame(notification: Any) -> Dict[str, Any]:
    return {"type": "notification", "notification": notification}


def error_frame(text: str) -> Dict[str, Any]:
    return {"type": "error", "message": text}


def encode_frame(frame: Dict[str, Any]) -> str:
    return json.dumps(frame, separators=(",", ":"))


__all__ = [
    "AuthFrame",
    "MessageFrame",
    "TypingFrame",
    "MarkSeenFrame",
    "ClientFrame",
    "FRAME_TYPES",
    "parse_client_frame",
    "UserSummary",
    "Message",
    "FanoutEvent",
    "new_message_id",
    "utcnow",
    "connected_frame",
    "message_frame",
    "message_sent_frame",
    "typing_frame",
    "notification_frame",
    "error_frame",
    "encode_frame",
]
