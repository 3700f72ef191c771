"""
GrantDesk Backend: Chat Wire Schemas
=====================================

What:  Pydantic models for everything that crosses the /ws WebSocket, plus
       the /health response.
How:   Inbound frames are a discriminated union on `type`, decoded exactly
       once at the connection boundary by `decode_frame()`. Outbound frames
       are built by the helpers at the bottom of this module.
Who:   ConnectionSession decodes with these; RelayService builds messages.

Wire names:
    Field aliases keep the JSON names the web client already uses
    (`userId`, `targetUserId`, `senderRole`, `message`, `createdAt`);
    Python code uses snake_case attribute names.

Frame Table:
    in   auth        token, userId?
    in   send        userId?, senderRole?, message, targetUserId?
    in   getHistory  userId?, targetUserId
    out  auth-error  message
    out  history     messages: ChatMessage[]
    out  message     ChatMessage fields
    out  error       message
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Sequence, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError as PydanticValidationError,
)

from grantdesk.exceptions import MalformedFrame


# ══════════════════════════════════════════════════════════════════════════
# Participants
# ══════════════════════════════════════════════════════════════════════════


class ParticipantRole(str, Enum):
    """Role of an authenticated participant: applicant or reviewer."""

    USER = "user"
    ADMIN = "admin"


class Participant(BaseModel):
    """
    What:  An authenticated actor, as vouched for by the token verifier.
    When:  Created at handshake time; lives only as long as its connection.
    """

    identifier: str = Field(min_length=1, description="User id from the token")
    role: ParticipantRole = Field(description="user or admin")
    email: Optional[str] = Field(default=None, description="Email claim, if any")

    model_config = ConfigDict(frozen=True)

    @property
    def is_admin(self) -> bool:
        return self.role is ParticipantRole.ADMIN


# ══════════════════════════════════════════════════════════════════════════
# Chat Messages
# ══════════════════════════════════════════════════════════════════════════


class ChatMessage(BaseModel):
    """
    One entry of the Message Log.

    Immutable once created. `target_id` routes admin→user sends. On a
    user-authored message it is recorded for conversation history only;
    the message still goes to whichever admins are online.
    """

    id: str = Field(description="Strictly increasing, unique per process")
    sender_id: str = Field(alias="userId")
    sender_role: ParticipantRole = Field(alias="senderRole")
    body: str = Field(alias="message")
    created_at: datetime = Field(alias="createdAt")
    target_id: Optional[str] = Field(default=None, alias="targetUserId")

    model_config = ConfigDict(frozen=True, populate_by_name=True, from_attributes=True)

    def involves(self, identifier: str) -> bool:
        """True when `identifier` sent this message or is its target."""
        return self.sender_id == identifier or self.target_id == identifier

    def between(self, first: str, second: str) -> bool:
        """True when this message went from `first` to `second` or back."""
        return (self.sender_id == first and self.target_id == second) or (
            self.sender_id == second and self.target_id == first
        )

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict using wire names; `targetUserId` omitted when absent."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# ══════════════════════════════════════════════════════════════════════════
# Inbound Frames: what clients send
# ══════════════════════════════════════════════════════════════════════════


class _InboundFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class AuthFrame(_InboundFrame):
    """Handshake: present a bearer token, optionally restating the user id."""

    type: Literal["auth"]
    token: str
    user_id: Optional[str] = Field(default=None, alias="userId")


class SendFrame(_InboundFrame):
    """
    Chat send request.

    `user_id` and `sender_role` are accepted for compatibility with the web
    client but are not trusted: the sender is the authenticated participant.
    """

    type: Literal["send"]
    message: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    sender_role: Optional[str] = Field(default=None, alias="senderRole")
    target_user_id: Optional[str] = Field(default=None, alias="targetUserId")


class GetHistoryFrame(_InboundFrame):
    """Conversation history request between the requester and `target_user_id`."""

    type: Literal["getHistory"]
    target_user_id: str = Field(alias="targetUserId")
    user_id: Optional[str] = Field(default=None, alias="userId")


InboundFrame = Annotated[
    Union[AuthFrame, SendFrame, GetHistoryFrame],
    Field(discriminator="type"),
]

_inbound_adapter: TypeAdapter = TypeAdapter(InboundFrame)


def decode_frame(raw: Union[str, bytes]) -> Union[AuthFrame, SendFrame, GetHistoryFrame]:
    """
    Decode one raw WebSocket payload into a typed frame.

    Raises:
        MalformedFrame: invalid JSON, unknown `type`, or bad fields. The
            pydantic error summary goes into `context` for logging.
    """
    try:
        return _inbound_adapter.validate_json(raw)
    except PydanticValidationError as e:
        errors = e.errors(include_url=False)
        raise MalformedFrame(
            context={
                "errors": [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in errors],
            },
        ) from e


# ══════════════════════════════════════════════════════════════════════════
# Outbound Frames: what the relay sends
# ══════════════════════════════════════════════════════════════════════════


def message_frame(message: ChatMessage) -> Dict[str, Any]:
    """Delivered copy of a sent message: `{"type": "message", ...fields}`."""
    return {"type": "message", **message.to_wire()}


def history_frame(messages: Sequence[ChatMessage]) -> Dict[str, Any]:
    return {"type": "history", "messages": [m.to_wire() for m in messages]}


def error_frame(message: str) -> Dict[str, str]:
    return {"type": "error", "message": message}



# ══════════════════════════════════════════════════════════════════════════
# HTTP Responses
# ══════════════════════════════════════════════════════════════════════════


class ErrorResponse(BaseModel):
    """
    What:  Standardized error body for HTTP routes.

    Example:
        {
            "error": "server_error",
            "message": "An internal error occurred. Please try again later.",
            "request_id": "550e8400"
        }
    """

    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    What:  Health check response showing relay and message store status.
    Who:   Returned by GET /health for monitoring and load balancer probes.
    """

    status: str = Field(description="Overall service status: healthy, unhealthy")
    version: str = Field(description="Application version")
    message_store: str = Field(description="Message store backend: memory, database")
    message_store_status: str = Field(description="available, unavailable")
    connections: int = Field(description="Authenticated connections currently online")
    connections_by_role: Dict[str, int] = Field(description="Online connections per role")
    messages_logged: Optional[int] = Field(
        default=None,
        description="Messages in the log (null when the store is unreachable)",
    )
    uptime_seconds: float = Field(description="Seconds since service started")

