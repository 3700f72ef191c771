"""
GrantDesk Backend: Health Check Route
======================================

What:  Health check endpoint for monitoring and load balancer probes.
How:   Reports relay occupancy and probes the message store.

Status levels:
    - healthy:   message store reachable (HTTP 200)
    - unhealthy: message store unreachable (HTTP 503); sends would fail
"""

import logging
import time

from fastapi import APIRouter, Request, Response

from grantdesk import __version__
from grantdesk.schemas.chat import HealthResponse
from grantdesk.services.relay_service import RelayService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
    description=(
        "Returns relay occupancy (online connections by role, logged messages) "
        "and message store reachability."
    ),
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    relay: RelayService = request.app.state.relay

    store_ok = await relay.message_log.health_check()
    stats = await relay.stats()

    overall = "healthy"
    if not store_ok:
        overall = "unhealthy"
        response.status_code = 503
        logger.warning("Health check: message store '%s' unreachable", relay.message_log.name)

    return HealthResponse(
        status=overall,
        version=__version__,
        message_store=relay.message_log.name,
        message_store_status="available" if store_ok else "unavailable",
        connections=stats.connections,
        connections_by_role=stats.connections_by_role,
        messages_logged=stats.messages_logged,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
