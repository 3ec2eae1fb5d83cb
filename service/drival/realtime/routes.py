"""
Push channel endpoint for quota monitoring.
"""

from typing import Optional

from fastapi import APIRouter, WebSocket

router = APIRouter(tags=["realtime"])


@router.websocket("/ws/monitor")
async def monitor_endpoint(websocket: WebSocket, token: Optional[str] = None):
    """
    Persistent per-session channel.

    Authenticated with the session token, from ``?token=`` or an
    ``Authorization: Bearer`` header. The server pushes:
    - quota_update / quota_warning after each heartbeat
    - session_terminated when the session ends for any reason
    - server_shutdown before a restart

    Clients may send ``ping`` and ``status_request``.
    """
    # Accept first so rejections reach the client as close codes.
    await websocket.accept()

    if not token:
        authorization = websocket.headers.get("authorization", "")
        if authorization.startswith("Bearer "):
            token = authorization[len("Bearer "):]

    services = websocket.app.state.services
    await services.monitor.handle_connection(websocket, token)
