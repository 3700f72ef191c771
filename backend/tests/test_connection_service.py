"""
GrantDesk Backend: Connection Lifecycle Tests
==============================================

What:  ConnectionSession state machine over a FakeTransport.
How:   Most tests feed raw payloads straight into handle_raw(); the
       receive-loop tests run session.run() as a task and drive it through
       the transport's inbox.

What we test:
    ✅ Successful auth registers the connection and replays history
    ✅ Rejected auth sends "auth-error" and closes with 4001
    ✅ Unreadable history leaves the connection unauthenticated and retryable
    ✅ Frames before auth get "User not authenticated" and keep the socket open
    ✅ Malformed frames are ignored without a reply
    ✅ Claimed userId must match the authenticated identity
    ✅ Store failures and unexpected errors become "error" frames
    ✅ Handshake timeout, client disconnect and close-on-replace
    ✅ close() is idempotent
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from grantdesk.exceptions import MessageStoreError
from grantdesk.services.connection_service import (
    CLOSE_CODE_INTERNAL_ERROR,
    CLOSE_CODE_UNAUTHORIZED,
    ConnectionState,
)
from grantdesk.services.relay_service import CLOSE_CODE_REPLACED, REPLACED_NOTICE


def auth(token, user_id=None) -> str:
    frame = {"type": "auth", "token": token}
    if user_id is not None:
        frame["userId"] = user_id
    return json.dumps(frame)


def send(message, user_id=None, target=None) -> str:
    frame = {"type": "send", "message": message}
    if user_id is not None:
        frame["userId"] = user_id
    if target is not None:
        frame["targetUserId"] = target
    return json.dumps(frame)


class TestHandshake:

    @pytest.mark.asyncio
    async def test_auth_success_replays_history(self, make_session, issue_token, relay):
        session = make_session()

        await session.handle_raw(auth(issue_token("u1"), user_id="u1"))

        assert session.state is ConnectionState.AUTHENTICATED
        assert session.identifier == "u1"
        assert relay.directory.lookup("u1") is session
        assert session.transport.sent == [{"type": "history", "messages": []}]

    @pytest.mark.asyncio
    async def test_invalid_token_closes_connection(self, make_session, relay):
        session = make_session()

        await session.handle_raw(auth("garbage"))

        assert session.transport.sent == [{"type": "auth-error", "message": "Invalid token"}]
        assert session.transport.close_code == CLOSE_CODE_UNAUTHORIZED
        assert session.state is ConnectionState.CLOSED
        assert len(relay.directory) == 0

    @pytest.mark.asyncio
    async def test_user_id_mismatch_is_auth_failure(self, make_session, issue_token, relay):
        session = make_session()

        await session.handle_raw(auth(issue_token("u1"), user_id="u2"))

        assert session.transport.frames_of_type("auth-error")
        assert session.transport.close_code == CLOSE_CODE_UNAUTHORIZED
        assert "u1" not in relay.directory and "u2" not in relay.directory

    @pytest.mark.asyncio
    async def test_history_unavailable_leaves_connection_unauthenticated(
        self, make_session, issue_token, relay
    ):
        first, second = make_session(), make_session()
        await first.handle_raw(auth(issue_token("u1")))
        relay.message_log.for_participant = AsyncMock(side_effect=MessageStoreError())

        await second.handle_raw(auth(issue_token("u1")))

        assert second.state is ConnectionState.CONNECTED
        assert second.identifier is None
        assert second.transport.sent == [
            {"type": "error", "message": "Message could not be stored. Please try again."}
        ]
        assert not second.transport.closed
        assert first.state is ConnectionState.AUTHENTICATED
        assert not first.transport.closed
        assert relay.directory.lookup("u1") is first

        await second.handle_raw(send("hello"))
        assert second.transport.sent[-1] == {"type": "error", "message": "User not authenticated"}

    @pytest.mark.asyncio
    async def test_auth_retry_after_history_failure(self, make_session, issue_token, relay):
        session = make_session()
        real_read = relay.message_log.for_participant
        relay.message_log.for_participant = AsyncMock(side_effect=MessageStoreError())
        await session.handle_raw(auth(issue_token("u1")))
        relay.message_log.for_participant = real_read

        await session.handle_raw(auth(issue_token("u1")))

        assert session.state is ConnectionState.AUTHENTICATED
        assert session.transport.sent[-1] == {"type": "history", "messages": []}
        assert relay.directory.lookup("u1") is session

    @pytest.mark.asyncio
    async def test_reauth_as_other_user_moves_registration(self, make_session, issue_token, relay):
        session = make_session()
        await session.handle_raw(auth(issue_token("u1")))
        await session.handle_raw(auth(issue_token("u2")))

        assert "u1" not in relay.directory
        assert relay.directory.lookup("u2") is session
        assert session.identifier == "u2"


class TestUnauthenticatedFrames:

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            send("hello", user_id="u1"),
            json.dumps({"type": "getHistory", "userId": "u1", "targetUserId": "a1"}),
        ],
    )
    async def test_rejected_but_open(self, make_session, relay, raw):
        session = make_session()

        await session.handle_raw(raw)

        assert session.transport.sent == [{"type": "error", "message": "User not authenticated"}]
        assert session.state is ConnectionState.CONNECTED
        assert not session.transport.closed
        assert await relay.message_log.count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["{not json", '{"type": "teleport"}', '{"type": "send"}', b"\x00\x01"])
    async def test_malformed_frames_are_ignored(self, make_session, raw):
        session = make_session()

        await session.handle_raw(raw)

        assert session.transport.sent == []
        assert session.state is ConnectionState.CONNECTED


class TestAuthenticatedFrames:

    @pytest.mark.asyncio
    async def test_send_reaches_admin_and_sender(self, make_session, issue_token):
        user, admin = make_session(), make_session()
        await user.handle_raw(auth(issue_token("u1")))
        await admin.handle_raw(auth(issue_token("a1", "admin")))

        await user.handle_raw(send("hello", user_id="u1"))

        for session in (user, admin):
            [frame] = session.transport.frames_of_type("message")
            assert frame["userId"] == "u1"
            assert frame["senderRole"] == "user"
            assert frame["message"] == "hello"

    @pytest.mark.asyncio
    async def test_sender_role_field_is_not_trusted(self, make_session, issue_token, relay):
        user = make_session()
        await user.handle_raw(auth(issue_token("u1")))

        await user.handle_raw(
            json.dumps({"type": "send", "senderRole": "admin", "message": "x", "targetUserId": "u2"})
        )

        [logged] = await relay.message_log.all()
        assert logged.sender_role.value == "user"
        assert logged.target_id == "u2"

    @pytest.mark.asyncio
    async def test_claimed_sender_mismatch(self, make_session, issue_token, relay):
        user = make_session()
        await user.handle_raw(auth(issue_token("u1")))

        await user.handle_raw(send("spoof", user_id="u2"))

        assert user.transport.sent[-1] == {
            "type": "error",
            "message": "Sender does not match authenticated user",
        }
        assert await relay.message_log.count() == 0
        assert user.state is ConnectionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_get_history(self, make_session, issue_token):
        user, admin = make_session(), make_session()
        await user.handle_raw(auth(issue_token("u1")))
        await admin.handle_raw(auth(issue_token("a1", "admin")))
        await admin.handle_raw(send("hi", target="u1"))

        await user.handle_raw(json.dumps({"type": "getHistory", "targetUserId": "a1"}))

        frame = user.transport.sent[-1]
        assert frame["type"] == "history"
        assert [m["message"] for m in frame["messages"]] == ["hi"]
        assert frame["messages"][0]["targetUserId"] == "u1"

    @pytest.mark.asyncio
    async def test_store_failure_reported_to_sender(self, make_session, issue_token, relay):
        relay.message_log.append = AsyncMock(side_effect=MessageStoreError())
        user = make_session()
        await user.handle_raw(auth(issue_token("u1")))

        await user.handle_raw(send("hello"))

        assert user.transport.sent[-1] == {
            "type": "error",
            "message": "Message could not be stored. Please try again.",
        }
        assert user.state is ConnectionState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_unexpected_error_keeps_connection_open(self, make_session, issue_token, relay):
        user = make_session()
        await user.handle_raw(auth(issue_token("u1")))
        relay.send = AsyncMock(side_effect=RuntimeError("boom"))

        await user.handle_raw(send("hello"))

        assert user.transport.sent[-1] == {"type": "error", "message": "An unexpected error occurred"}
        assert user.state is ConnectionState.AUTHENTICATED


class TestTeardown:

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_session, issue_token, relay):
        session = make_session()
        await session.handle_raw(auth(issue_token("u1")))
        session.transport.close = AsyncMock()

        await session.close()
        await session.close()

        session.transport.close.assert_awaited_once_with(code=1000)
        assert "u1" not in relay.directory
        assert await session.deliver({"type": "error", "message": "late"}) is False

    @pytest.mark.asyncio
    async def test_close_on_replace(self, make_session, issue_token, relay):
        first, second = make_session(), make_session()
        await first.handle_raw(auth(issue_token("u1")))
        await second.handle_raw(auth(issue_token("u1")))

        assert first.state is ConnectionState.CLOSED
        assert first.transport.sent[-1] == {"type": "error", "message": REPLACED_NOTICE}
        assert first.transport.close_code == CLOSE_CODE_REPLACED
        assert relay.directory.lookup("u1") is second

        await first.close()
        assert relay.directory.lookup("u1") is second

    @pytest.mark.asyncio
    async def test_displaced_connection_send_rejected(self, make_session, issue_token, relay):
        relay.close_replaced = False
        first, second = make_session(), make_session()
        await first.handle_raw(auth(issue_token("u1")))
        await second.handle_raw(auth(issue_token("u1")))
        assert first.state is ConnectionState.AUTHENTICATED

        await first.handle_raw(send("stale tab"))

        assert first.transport.sent[-1] == {"type": "error", "message": "User not authenticated"}
        assert not second.transport.frames_of_type("message")
        assert await relay.message_log.count() == 0


class TestReceiveLoop:

    @pytest.mark.asyncio
    async def test_auth_timeout(self, make_session, relay):
        session = make_session(auth_timeout=0.05)

        await asyncio.wait_for(session.run(), timeout=2)

        assert session.transport.sent == [
            {"type": "auth-error", "message": "Authentication timed out"}
        ]
        assert session.transport.close_code == CLOSE_CODE_UNAUTHORIZED
        assert session.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_junk_frames_do_not_extend_auth_deadline(self, make_session):
        session = make_session(auth_timeout=0.2)
        task = asyncio.create_task(session.run())
        for _ in range(5):
            session.transport.feed_raw("junk")
            await asyncio.sleep(0.05)

        await asyncio.wait_for(task, timeout=2)

        assert session.transport.frames_of_type("auth-error")

    @pytest.mark.asyncio
    async def test_timeout_does_not_apply_after_auth(self, make_session, issue_token):
        session = make_session(auth_timeout=0.05)
        task = asyncio.create_task(session.run())

        session.transport.feed({"type": "auth", "token": issue_token("u1")})
        assert (await session.transport.next_frame())["type"] == "history"
        await asyncio.sleep(0.1)
        session.transport.feed({"type": "send", "message": "still here"})
        assert (await session.transport.next_frame())["message"] == "still here"

        session.transport.disconnect()
        await asyncio.wait_for(task, timeout=2)
        assert not session.transport.frames_of_type("auth-error")

    @pytest.mark.asyncio
    async def test_disconnect_unregisters(self, make_session, issue_token, relay):
        session = make_session()
        task = asyncio.create_task(session.run())
        session.transport.feed({"type": "auth", "token": issue_token("u1")})
        await session.transport.next_frame()
        assert "u1" in relay.directory

        session.transport.disconnect(code=1001)
        await asyncio.wait_for(task, timeout=2)

        assert "u1" not in relay.directory
        assert session.state is ConnectionState.CLOSED
        # Client already went away; the server does not send a close frame
        assert session.transport.close_code is None

    @pytest.mark.asyncio
    async def test_transport_error_closes_with_internal_error(self, make_session):
        session = make_session()
        session.transport.receive = AsyncMock(side_effect=RuntimeError("socket exploded"))

        await asyncio.wait_for(session.run(), timeout=2)

        assert session.transport.close_code == CLOSE_CODE_INTERNAL_ERROR
        assert session.state is ConnectionState.CLOSED
