"""
GrantDesk Backend: Routes Package
==================================

Route Inventory:
    - chat.py:    WS   /ws       (support chat relay; path from WS_PATH)
    - health.py:  GET  /health   (service health check)

Routes stay thin: they accept the transport and delegate to services.
"""
