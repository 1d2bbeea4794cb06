"""
Viewer Router

Hands out viewer sessions for a simulation's browser viewer and lets the
viewer check them.
"""

import logging

from fastapi import APIRouter, Depends, Response, WebSocket, status

from ..auth import get_current_owner
from ..coordinator import Coordinator, get_coordinator
from ..errors import CoordinatorError
from ..utils.websockets import close_quietly, reject, wait_for_disconnect
from .simulations import load_owned_simulation

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/simulations/{name}/viewer")
async def viewer_websocket(websocket: WebSocket, name: str):
    """
    Open a viewer session.

    Sends {"id", "host"} once the viewer is reachable. The id stays valid
    until this websocket closes.
    """
    coordinator = get_coordinator(websocket)
    try:
        owner = await get_current_owner(websocket, coordinator.settings)
        simulation = await load_owned_simulation(coordinator, name, owner)
    except CoordinatorError as e:
        await reject(websocket, e)
        return

    await websocket.accept()
    try:
        host = await coordinator.viewers.ensure_viewer(simulation)
    except CoordinatorError as e:
        await reject(websocket, e)
        return

    viewer_id = coordinator.viewer_sessions.register(simulation.name)
    try:
        await websocket.send_json({"id": viewer_id, "host": host})
        await wait_for_disconnect(websocket)
    finally:
        coordinator.viewer_sessions.remove(viewer_id)
    await close_quietly(websocket)


@router.get("/viewer/{viewer_id}/validate")
async def validate_viewer(
    viewer_id: str,
    coordinator: Coordinator = Depends(get_coordinator),
):
    """Used by the viewer's authentication hook."""
    if coordinator.viewer_sessions.is_valid(viewer_id):
        return Response(status_code=status.HTTP_200_OK)
    return Response(status_code=status.HTTP_403_FORBIDDEN)
