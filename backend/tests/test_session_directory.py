"""
GrantDesk Backend: Session Directory Unit Tests
================================================

What:  Tests for the identifier → connection map owned by the relay.
How:   Plain objects stand in for connections; the directory never calls them.

What we test:
    ✅ register/lookup round-trip and role bookkeeping
    ✅ Re-registering an identifier returns the displaced entry
    ✅ unregister() removes by connection identity
    ✅ A stale connection cannot evict its replacement
    ✅ Role filtering and per-role counts
"""

from grantdesk.schemas.chat import ParticipantRole
from grantdesk.services.session_directory import SessionDirectory


class TestSessionDirectoryRegister:

    def setup_method(self):
        self.directory = SessionDirectory()

    def test_register_then_lookup(self):
        conn = object()
        assert self.directory.register("u1", conn, ParticipantRole.USER) is None
        assert self.directory.lookup("u1") is conn
        assert self.directory.entry("u1").role is ParticipantRole.USER
        assert "u1" in self.directory
        assert len(self.directory) == 1

    def test_lookup_unknown_returns_none(self):
        assert self.directory.lookup("nobody") is None
        assert self.directory.entry("nobody") is None

    def test_reregister_returns_previous_entry(self):
        old, new = object(), object()
        self.directory.register("u1", old, ParticipantRole.USER)
        previous = self.directory.register("u1", new, ParticipantRole.USER)

        assert previous.connection is old
        assert self.directory.lookup("u1") is new
        assert len(self.directory) == 1


class TestSessionDirectoryUnregister:

    def setup_method(self):
        self.directory = SessionDirectory()

    def test_unregister_by_connection(self):
        conn = object()
        self.directory.register("u1", conn, ParticipantRole.USER)

        assert self.directory.unregister(conn) == "u1"
        assert "u1" not in self.directory
        assert len(self.directory) == 0

    def test_unregister_unknown_connection_is_noop(self):
        self.directory.register("u1", object(), ParticipantRole.USER)
        assert self.directory.unregister(object()) is None
        assert len(self.directory) == 1

    def test_stale_connection_does_not_evict_replacement(self):
        old, new = object(), object()
        self.directory.register("u1", old, ParticipantRole.USER)
        self.directory.register("u1", new, ParticipantRole.USER)

        assert self.directory.unregister(old) is None
        assert self.directory.lookup("u1") is new


class TestSessionDirectoryRoles:

    def test_all_with_role_and_counts(self):
        directory = SessionDirectory()
        a1, a2, u1 = object(), object(), object()
        directory.register("a1", a1, ParticipantRole.ADMIN)
        directory.register("a2", a2, ParticipantRole.ADMIN)
        directory.register("u1", u1, ParticipantRole.USER)

        admins = directory.all_with_role(ParticipantRole.ADMIN)
        assert len(admins) == 2
        assert any(c is a1 for c in admins) and any(c is a2 for c in admins)
        assert directory.all_with_role(ParticipantRole.USER) == [u1]
        assert directory.count_by_role() == {"user": 1, "admin": 2}
        assert len(directory.connections()) == 3

    def test_counts_on_empty_directory(self):
        assert SessionDirectory().count_by_role() == {"user": 0, "admin": 0}
