"""
GrantDesk Backend: Services Layer
==================================

What:  The chat relay core, independent of HTTP and WebSocket plumbing.

Service Inventory:
    - SessionDirectory: identifier → live connection and role
    - MessageLog: append-only chat record (in-memory or database)
    - RelayService: shared state, routing, history; owns the lock
    - ConnectionSession: per-socket handshake, dispatch, teardown
    - JwtTokenService: token verification collaborator (PyJWT)

Dependencies flow downwards only: ConnectionSession → RelayService →
SessionDirectory / MessageLog. Each is constructed explicitly and passed in,
so tests build a relay around an InMemoryMessageLog and fake transports.
"""
