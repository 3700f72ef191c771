"""
GrantDesk Backend: Correlation IDs
===================================

What:  One short id per HTTP request or WebSocket connection, stamped on
       every log line produced while handling it.
How:   A ContextVar holds the current id. RequestIDMiddleware sets it for
       HTTP requests (honouring an incoming X-Request-ID header);
       ConnectionSession sets it to its connection id. RequestIDLogFilter
       copies it onto each LogRecord as `request_id`.

Why a ContextVar:
    Requests and sockets run as concurrent coroutines on one thread, so
    thread-local storage would mix their ids.
"""

import logging
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

request_id_var: ContextVar[str] = ContextVar("request_id", default="")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Assigns a correlation id to each HTTP request.

    Behavior:
        1. Use the client's X-Request-ID header when present
        2. Otherwise generate an 8-character id
        3. Store it in request_id_var and request.state
        4. Echo it back in the X-Request-ID response header

    WebSocket scopes pass straight through; the connection lifecycle
    assigns their ids.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = request.headers.get("X-Request-ID", uuid.uuid4().hex[:8])
        request_id_var.set(rid)
        request.state.request_id = rid

        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every record ("-" outside a request or connection)."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_var.get("") or "-"
        return True
