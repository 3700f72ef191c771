"""
GrantDesk Backend: Middleware Package
======================================

What:  Cross-cutting concerns applied to every HTTP request.

Middleware Chain (order matters!):
    Request → [Request ID] → [Logging] → [CORS] → Route Handler

    1. Request ID: sets the correlation id used by every log line
    2. Logging: access log with status and duration

WebSocket connections bypass BaseHTTPMiddleware; they get their correlation
id from ConnectionSession instead.
"""
