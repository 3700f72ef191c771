"""
GrantDesk Backend: Connection Lifecycle
========================================

What:  Drives one WebSocket from accept to close: handshake, frame decoding,
       dispatch to the relay, error reporting, and teardown.
How:   A small state machine per connection, one receive loop per asyncio
       task. Frames for a connection are handled strictly in order.
Who:   Created by the /ws route for every accepted socket.

State Machine:
    CONNECTED (transport open, no identity)
        → auth frame verified       → AUTHENTICATED (registered, history sent)
        → auth frame rejected       → CLOSED ("auth-error" first)
        → history unavailable       → stays CONNECTED ("error" reply, may retry)
        → handshake timeout         → CLOSED ("auth-error" first)
        → any other frame           → stays CONNECTED ("error" reply)

    AUTHENTICATED
        → send / getHistory         → stays AUTHENTICATED
        → auth frame                → re-authenticates
        → replaced by new socket    → CLOSED (close-on-replace)

    any state
        → transport disconnect      → CLOSED (directory entry removed)
        → malformed frame           → unchanged (logged, ignored)

    close() is idempotent; CLOSED is terminal.

Transport contract:
    Starlette's WebSocket, or any object with
        async receive() -> ASGI message dict
        async send_json(data) -> None
        async close(code: int = 1000) -> None
"""

import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Dict, Optional, Union

from grantdesk.exceptions import (
    AuthenticationFailure,
    GrantDeskError,
    MalformedFrame,
    UnauthenticatedAction,
    UnknownSender,
)
from grantdesk.middleware.request_id import request_id_var
from grantdesk.schemas.chat import (
    AuthFrame,
    GetHistoryFrame,
    Participant,
    SendFrame,
    decode_frame,
    error_frame,
    history_frame,
)
from grantdesk.services.auth_service import TokenVerifier
from grantdesk.services.relay_service import RelayService

logger = logging.getLogger(__name__)

CLOSE_CODE_NORMAL = 1000
CLOSE_CODE_INTERNAL_ERROR = 1011
CLOSE_CODE_UNAUTHORIZED = 4001


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """
    Lifecycle manager for a single client connection.

    Args:
        transport: Accepted WebSocket (see module docstring for the contract)
        relay: Shared RelayService
        verifier: Token verifier used for `auth` frames
        auth_timeout: Seconds allowed between accept and a successful `auth`
            frame; None or 0 disables the deadline
        connection_id: Correlation id for logs (generated when omitted)
    """

    def __init__(
        self,
        transport: Any,
        relay: RelayService,
        verifier: TokenVerifier,
        auth_timeout: Optional[float] = None,
        connection_id: Optional[str] = None,
    ):
        self.transport = transport
        self.relay = relay
        self.verifier = verifier
        self.auth_timeout = auth_timeout or None
        self.connection_id = connection_id or uuid.uuid4().hex[:8]
        self.state = ConnectionState.CONNECTED
        self.participant: Optional[Participant] = None
        self._send_lock = asyncio.Lock()
        self._transport_closed = False
        self._auth_deadline: Optional[float] = None

    def __repr__(self) -> str:
        who = self.participant.identifier if self.participant else "-"
        return f"<ConnectionSession(id={self.connection_id}, user={who}, state={self.state.value})>"

    @property
    def identifier(self) -> Optional[str]:
        return self.participant.identifier if self.participant else None

    # ══════════════════════════════════════════════════════════════════════
    # Receive Loop
    # ══════════════════════════════════════════════════════════════════════

    async def run(self) -> None:
        """
        Serve the connection until it closes.

        Never raises: transport failures and unexpected errors end in a
        logged close, not in an exception escaping to the server.
        """
        request_id_var.set(self.connection_id)
        logger.info("New client connected")
        if self.auth_timeout:
            self._auth_deadline = asyncio.get_running_loop().time() + self.auth_timeout

        close_code = CLOSE_CODE_NORMAL
        try:
            while self.state is not ConnectionState.CLOSED:
                raw = await self._receive()
                if raw is None:
                    break
                await self.handle_raw(raw)
        except Exception as e:
            close_code = CLOSE_CODE_INTERNAL_ERROR
            logger.error("Connection error: %s", str(e), exc_info=True)
        finally:
            await self.close(code=close_code)

    async def _receive(self) -> Optional[Union[str, bytes]]:
        """
        Next payload, or None once the client has gone away.

        While unauthenticated the wait is bounded by the handshake deadline;
        missing it is an authentication failure.
        """
        timeout = None
        if self.state is ConnectionState.CONNECTED and self._auth_deadline is not None:
            timeout = max(0.0, self._auth_deadline - asyncio.get_running_loop().time())

        try:
            message = await asyncio.wait_for(self.transport.receive(), timeout)
        except asyncio.TimeoutError:
            await self.report(
                AuthenticationFailure(message="Authentication timed out", reason="timeout")
            )
            return None

        if message.get("type") == "websocket.disconnect":
            self._transport_closed = True
            logger.info("Client disconnected (code=%s)", message.get("code"))
            return None

        if message.get("text") is not None:
            return message["text"]
        return message.get("bytes")

    async def handle_raw(self, raw: Optional[Union[str, bytes]]) -> None:
        """Decode one payload and dispatch it; errors become notification frames."""
        if raw is None:
            return
        try:
            frame = decode_frame(raw)
        except MalformedFrame as e:
            logger.warning("Ignoring malformed frame: %s", "; ".join(e.context.get("errors", [])))
            return

        try:
            await self.dispatch(frame)
        except GrantDeskError as e:
            await self.report(e)
        except Exception as e:
            logger.error("Unexpected error handling '%s' frame: %s", frame.type, str(e), exc_info=True)
            await self.deliver(error_frame("An unexpected error occurred"))

    # ══════════════════════════════════════════════════════════════════════
    # Dispatch
    # ══════════════════════════════════════════════════════════════════════

    async def dispatch(self, frame: Union[AuthFrame, SendFrame, GetHistoryFrame]) -> None:
        if isinstance(frame, AuthFrame):
            await self.authenticate(frame)
            return

        if self.state is not ConnectionState.AUTHENTICATED or self.participant is None:
            raise UnauthenticatedAction(frame=frame.type)

        self._check_claimed_identity(frame.user_id)

        if isinstance(frame, SendFrame):
            await self.relay.send(
                self.participant.identifier,
                frame.message,
                frame.target_user_id,
                connection=self,
            )
        elif isinstance(frame, GetHistoryFrame):
            messages = await self.relay.get_history(
                self.participant.identifier,
                frame.target_user_id,
            )
            await self.deliver(history_frame(messages))

    async def authenticate(self, frame: AuthFrame) -> None:
        """
        Verify the token, register the participant, and replay history.

        Raises:
            AuthenticationFailure: token rejected, or `userId` in the frame
                names someone other than the token's subject
            MessageStoreError: history could not be read; the connection is
                left unauthenticated and may retry
        """
        participant = await self.verifier.verify(frame.token)

        if frame.user_id is not None and frame.user_id != participant.identifier:
            raise AuthenticationFailure(
                reason="user_id_mismatch",
                context={"claimed": frame.user_id, "token_subject": participant.identifier},
            )

        if self.participant is not None:
            await self.relay.unregister(self)
            self.participant = None
            self.state = ConnectionState.CONNECTED

        history = await self.relay.register(participant, self)
        if self.state is ConnectionState.CLOSED:
            # Replaced by a newer connection while registering
            return
        self.participant = participant
        self.state = ConnectionState.AUTHENTICATED
        self._auth_deadline = None
        logger.info(
            "User %s authenticated as %s (%d messages replayed)",
            participant.identifier,
            participant.role.value,
            len(history),
        )
        await self.deliver(history_frame(history))

    def _check_claimed_identity(self, claimed: Optional[str]) -> None:
        if claimed is not None and claimed != self.participant.identifier:
            raise UnknownSender(
                sender_id=claimed,
                message="Sender does not match authenticated user",
            )

    # ══════════════════════════════════════════════════════════════════════
    # Output & Teardown
    # ══════════════════════════════════════════════════════════════════════

    async def report(self, error: GrantDeskError) -> None:
        """Surface `error` to this connection; fatal errors close it afterwards."""
        if error.fatal:
            logger.info("Closing connection: %s %s", error.message, error.context or "")
            await self.close(notice=error.to_frame(), code=CLOSE_CODE_UNAUTHORIZED)
        else:
            logger.info("Rejected request: %s %s", error.message, error.context or "")
            await self.deliver(error.to_frame())

    async def deliver(self, frame: Dict[str, Any]) -> bool:
        """Write one frame; False when the connection is closed or the write failed."""
        if self.state is ConnectionState.CLOSED:
            return False
        return await self._write(frame)

    async def _write(self, frame: Dict[str, Any]) -> bool:
        if self._transport_closed:
            return False
        try:
            async with self._send_lock:
                await self.transport.send_json(frame)
            return True
        except Exception as e:
            logger.warning(
                "Delivery to connection %s failed: %s",
                self.connection_id,
                str(e) or type(e).__name__,
            )
            return False

    async def close(self, notice: Optional[Dict[str, Any]] = None, code: int = CLOSE_CODE_NORMAL) -> None:
        """
        Tear the connection down: unregister, optionally notify, close transport.

        Idempotent. Safe to call from other connections' tasks (close-on-replace).
        """
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        await self.relay.unregister(self)

        if notice is not None:
            await self._write(notice)

        if not self._transport_closed:
            self._transport_closed = True
            try:
                await self.transport.close(code=code)
            except Exception as e:
                # Client already gone; nothing left to release
                logger.debug("Transport close for %s failed: %s", self.connection_id, str(e))

        logger.info("Connection %s closed (user=%s)", self.connection_id, self.identifier or "-")
