"""
GrantDesk Backend: Custom Exception Hierarchy
==============================================

What:  Application-specific exceptions for the chat relay and its collaborators.
How:   Each exception carries a client-safe message, an optional context dict
       (logged, never sent), and the outbound frame type it is reported as.
       The connection lifecycle turns them into notification frames; HTTP
       routes turn them into JSON responses via handlers in main.py.
Who:   Raised by services; caught by ConnectionSession and the global handlers.

Exception Hierarchy:
    GrantDeskError (base)
    ├── AuthenticationFailure   → "auth-error" frame, then close (fatal)
    ├── UnauthenticatedAction   → "error" frame, connection stays open
    ├── UnknownSender           → "error" frame to the originating connection
    ├── MalformedFrame          → logged and ignored
    ├── MessageStoreError       → "error" frame, message not delivered
    └── ConfigurationError      → startup only
"""

from typing import Any, Dict, Optional


class GrantDeskError(Exception):
    """
    Base exception for all GrantDesk application errors.

    Attributes:
        message:     User-facing error description (safe to send to the client)
        context:     Additional debug info (logged but NOT sent to the client)
        frame_type:  Outbound frame type used when reported over a WebSocket
        fatal:       Whether the connection must be closed after reporting
    """

    frame_type: str = "error"
    fatal: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)

    def to_frame(self) -> Dict[str, str]:
        """Notification frame reported to the originating connection."""
        return {"type": self.frame_type, "message": self.message}


class AuthenticationFailure(GrantDeskError):
    """
    Raised when a bearer token cannot be verified.

    When:    Invalid signature, expired token, missing claims, unknown role,
             a `userId` that contradicts the token, or handshake timeout.
    Effect:  The connection is sent an `auth-error` frame and closed. Not retried.
    """

    frame_type = "auth-error"
    fatal = True

    def __init__(
        self,
        message: str = "Invalid token",
        reason: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if reason:
            ctx["reason"] = reason
        super().__init__(message=message, context=ctx)
        self.reason = reason


class UnauthenticatedAction(GrantDeskError):
    """
    Raised when a connection sends anything but `auth` before authenticating.

    The connection stays open so the client can still authenticate.
    """

    def __init__(
        self,
        frame: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if frame:
            ctx["frame"] = frame
        super().__init__(message="User not authenticated", context=ctx)


class UnknownSender(GrantDeskError):
    """
    Raised when a send names an identifier with no live registration.

    Also used when a `send` frame claims a `userId` other than the one the
    connection authenticated as.
    """

    def __init__(
        self,
        sender_id: Optional[str] = None,
        message: str = "User not authenticated",
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if sender_id:
            ctx["sender_id"] = sender_id
        super().__init__(message=message, context=ctx)
        self.sender_id = sender_id


class MalformedFrame(GrantDeskError):
    """
    Raised when an inbound frame cannot be decoded.

    What:    Invalid JSON, unknown `type`, or missing/mistyped fields.
    Effect:  Logged at WARNING and ignored; nothing is sent back.
    """

    def __init__(
        self,
        message: str = "Malformed frame",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class MessageStoreError(GrantDeskError):
    """
    Raised when the durable message log fails to read or write.

    Security Note:
        The client only sees a generic message; the driver error is kept in
        `context` for server-side logs.
    """

    def __init__(
        self,
        message: str = "Message could not be stored. Please try again.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class ConfigurationError(GrantDeskError):
    """Raised by Settings.validate_required_for_production() at startup."""

    def __init__(
        self,
        message: str = "Configuration validation failed",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
