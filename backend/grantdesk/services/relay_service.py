"""
GrantDesk Backend: Relay Service (Chat Routing Orchestrator)
=============================================================

What:  Owns the shared relay state (Session Directory + Message Log) and
       decides who receives each chat message.
How:   One asyncio.Lock guards directory mutations, recipient snapshots and
       log appends. Writes to sockets happen after the lock is released, so
       a slow client never stalls the relay.
Who:   One instance per process, created in the app lifespan and handed to
       every ConnectionSession.

Routing Rules (send):
    ┌────────────┬──────────────┬────────────────────────────────────────┐
    │ sender     │ targetUserId │ recipients                             │
    ├────────────┼──────────────┼────────────────────────────────────────┤
    │ admin      │ present      │ target (if online) + sender            │
    │ admin      │ absent       │ sender only ("admin broadcast to self")│
    │ user       │ stored only  │ every online admin + sender            │
    └────────────┴──────────────┴────────────────────────────────────────┘

    A user's targetUserId is kept on the logged message so conversation
    history covers both directions, but it never narrows routing.

    Every send appends exactly one ChatMessage, before any delivery, no
    matter how many recipients there are (including none but the sender).

Connection objects:
    Anything registered here must provide
        async deliver(frame: dict) -> bool
        async close(notice: dict | None = None, code: int = 1000) -> None
    ConnectionSession is the production implementation.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from grantdesk.exceptions import UnknownSender
from grantdesk.schemas.chat import (
    ChatMessage,
    Participant,
    ParticipantRole,
    error_frame,
    message_frame,
)
from grantdesk.services.message_log import MessageLog
from grantdesk.services.session_directory import SessionDirectory

logger = logging.getLogger(__name__)

# Close code sent to a connection displaced by a newer one for the same user
CLOSE_CODE_REPLACED = 4002
REPLACED_NOTICE = "Session replaced by a new connection"


@dataclass
class SendResult:
    """Outcome of a send: the logged message and how many copies went out."""

    message: ChatMessage
    recipients: List[Any] = field(default_factory=list)
    delivered: int = 0


@dataclass
class RelayStats:
    connections: int
    connections_by_role: Dict[str, int]
    messages_logged: Optional[int]


class RelayService:
    """
    Chat relay: registration, routing, history.

    Args:
        message_log: In-memory or database-backed log
        close_replaced: Close the previous connection when an identifier
            registers again (close-on-replace). When False the previous
            connection stays open but no longer receives routed messages.
    """

    def __init__(self, message_log: MessageLog, close_replaced: bool = True):
        self.directory = SessionDirectory()
        self.message_log = message_log
        self.close_replaced = close_replaced
        self._lock = asyncio.Lock()
        self._last_id = 0

    # ── Registration ──────────────────────────────────────────────────────

    async def register(self, participant: Participant, connection: Any) -> List[ChatMessage]:
        """
        Bind `participant` to `connection` and return its replay history.

        Replay rules:
            admin → every message in the log
            user  → messages the user sent or that target the user

        The history snapshot is taken under the same lock as the
        registration, so no message can land between "registered" and
        "history read" and be missed by both the replay and live delivery.
        History is read first: if the log raises, nothing is registered
        and any previous connection keeps its entry.

        Raises:
            MessageStoreError: the history could not be read
        """
        async with self._lock:
            if participant.is_admin:
                history = await self.message_log.all()
            else:
                history = await self.message_log.for_participant(participant.identifier)
            previous = self.directory.register(
                participant.identifier, connection, participant.role
            )

        if previous is not None and previous.connection is not connection:
            logger.info(
                "User %s reconnected; previous connection %s",
                participant.identifier,
                "closed" if self.close_replaced else "left open",
            )
            if self.close_replaced:
                await previous.connection.close(
                    notice=error_frame(REPLACED_NOTICE),
                    code=CLOSE_CODE_REPLACED,
                )

        return history

    async def unregister(self, connection: Any) -> Optional[str]:
        """Remove whichever entry `connection` holds. Safe to call repeatedly."""
        async with self._lock:
            identifier = self.directory.unregister(connection)
        if identifier is not None:
            logger.info("User %s went offline (%d online)", identifier, len(self.directory))
        return identifier

    # ── Sending ───────────────────────────────────────────────────────────

    async def send(
        self,
        sender_id: str,
        body: str,
        target_id: Optional[str] = None,
        connection: Optional[Any] = None,
    ) -> SendResult:
        """
        Log one message and fan it out per the routing table above.

        Args:
            connection: The sending connection, when known. It must be the
                one currently registered for `sender_id`; a displaced
                connection cannot send on behalf of its replacement.

        Raises:
            UnknownSender: `sender_id` has no live registration, or
                `connection` is not the registered one
            MessageStoreError: the durable log rejected the append; nothing
                is delivered in that case
        """
        async with self._lock:
            entry = self.directory.entry(sender_id)
            if entry is None:
                raise UnknownSender(sender_id=sender_id)
            if connection is not None and entry.connection is not connection:
                raise UnknownSender(
                    sender_id=sender_id,
                    context={"reason": "connection_replaced"},
                )

            message = ChatMessage(
                id=self._next_id(),
                sender_id=sender_id,
                sender_role=entry.role,
                body=body,
                created_at=datetime.now(timezone.utc),
                target_id=target_id,
            )
            await self.message_log.append(message)

            recipients = self._recipients(entry.role, entry.connection, message)

        frame = message_frame(message)
        outcomes = await asyncio.gather(*(c.deliver(frame) for c in recipients))
        delivered = sum(1 for ok in outcomes if ok)
        logger.debug(
            "Message %s from %s delivered to %d/%d connections",
            message.id,
            sender_id,
            delivered,
            len(recipients),
        )
        return SendResult(message=message, recipients=recipients, delivered=delivered)

    def _recipients(
        self,
        role: ParticipantRole,
        sender_connection: Any,
        message: ChatMessage,
    ) -> List[Any]:
        """Snapshot of connections for `message`; caller holds the lock."""
        recipients: List[Any] = []

        if role is ParticipantRole.ADMIN:
            if message.target_id is not None:
                target = self.directory.lookup(message.target_id)
                if target is not None:
                    recipients.append(target)
                else:
                    logger.info(
                        "User %s offline; message %s kept for later retrieval",
                        message.target_id,
                        message.id,
                    )
            else:
                logger.info("Admin %s sent message %s with no target", message.sender_id, message.id)
        else:
            admins = self.directory.all_with_role(ParticipantRole.ADMIN)
            if not admins:
                logger.info("No admin online, message %s stored for later delivery", message.id)
            recipients.extend(admins)

        recipients.append(sender_connection)

        # An admin addressing themselves would otherwise get two copies
        unique: List[Any] = []
        for connection in recipients:
            if not any(connection is seen for seen in unique):
                unique.append(connection)
        return unique

    def _next_id(self) -> str:
        """Nanosecond clock, bumped so ids strictly increase within the process."""
        candidate = time.time_ns()
        if candidate <= self._last_id:
            candidate = self._last_id + 1
        self._last_id = candidate
        return str(candidate)

    # ── History ───────────────────────────────────────────────────────────

    async def get_history(self, requester_id: str, target_id: str) -> List[ChatMessage]:
        """
        Conversation between `requester_id` and `target_id`, oldest first.

        An unknown pair is not an error; the result is simply empty.
        """
        async with self._lock:
            return await self.message_log.conversation(requester_id, target_id)

    # ── Observability & Shutdown ──────────────────────────────────────────

    async def stats(self) -> RelayStats:
        async with self._lock:
            connections = len(self.directory)
            by_role = self.directory.count_by_role()
        try:
            logged: Optional[int] = await self.message_log.count()
        except Exception as e:
            logger.warning("Could not count logged messages: %s", str(e))
            logged = None
        return RelayStats(
            connections=connections,
            connections_by_role=by_role,
            messages_logged=logged,
        )

    async def shutdown(self) -> None:
        """Close every registered connection (server going away)."""
        async with self._lock:
            connections = self.directory.connections()
        for connection in connections:
            await connection.close(code=1001)
