"""
GrantDesk Backend: Application Package Initializer
==================================================

What: Marks the `grantdesk` directory as a Python package.
Who:  Imported by uvicorn (`grantdesk.main:app`), pytest, and every module
      that reads `grantdesk.config.settings`.

Architecture Note:
    The backend is organised in layers around the support-chat relay:

    ┌─────────────────────────────────────┐
    │   Routes (/ws WebSocket, /health)   │  ← transport concerns only
    ├─────────────────────────────────────┤
    │   Connection Lifecycle (per socket) │  ← handshake, decode, teardown
    ├─────────────────────────────────────┤
    │   Relay Service (shared state)      │  ← routing, history, one lock
    ├─────────────────────────────────────┤
    │   Session Directory | Message Log   │  ← live sessions, chat record
    └─────────────────────────────────────┘

    Token verification and durable message storage are collaborators the
    relay calls into; both are injected, so the core runs entirely in
    memory under test.
"""

__version__ = "1.0.0"
