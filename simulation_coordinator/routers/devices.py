"""
Device Relay Router

Lets coordinators without direct cloud access reach devices through a
cloud-mode coordinator. Callers authenticate as the device itself with a
JWT signed by the device's identity key.
"""

import logging

from fastapi import APIRouter, Depends, WebSocket
from pydantic import BaseModel

from ..auth import get_device_claims
from ..coordinator import Coordinator, get_coordinator
from ..errors import CoordinatorError, InvalidRequestError, NotFoundError, UnauthorizedError
from ..services.device_auth import DeviceClaims
from ..services.transport import CONTROL_SUBFOLDER, VIDEO_SUBFOLDER
from ..utils.websockets import close_quietly, forward_subscription, reject

logger = logging.getLogger(__name__)
router = APIRouter()

RELAY_SUBFOLDERS = (CONTROL_SUBFOLDER, VIDEO_SUBFOLDER)


class RelayCommandRequest(BaseModel):
    subfolder: str
    message: str


def require_cloud_mode(coordinator: Coordinator = Depends(get_coordinator)) -> Coordinator:
    if not coordinator.settings.is_cloud_mode:
        raise NotFoundError("device relay is only available in cloud mode")
    return coordinator


@router.post("/commands")
async def relay_command(
    request: RelayCommandRequest,
    coordinator: Coordinator = Depends(require_cloud_mode),
    claims: DeviceClaims = Depends(get_device_claims),
):
    """Send one command to the authenticated device."""
    if request.subfolder not in RELAY_SUBFOLDERS:
        raise InvalidRequestError(f"invalid subfolder: {request.subfolder}")
    await coordinator.registry.send_command(
        claims.tenant_id,
        claims.device_id,
        request.subfolder,
        request.message.encode(),
    )
    logger.info(f"Relayed {request.subfolder} command to {claims.tenant_id}/{claims.device_id}")
    return {"subfolder": request.subfolder}


@router.websocket("/events/{device_id}/{path:path}")
async def relay_events_websocket(websocket: WebSocket, device_id: str, path: str):
    """Stream the authenticated device's events under the topic prefix."""
    coordinator = get_coordinator(websocket)
    try:
        require_cloud_mode(coordinator)
        claims = await get_device_claims(websocket, coordinator)
        if claims.device_id != device_id:
            raise UnauthorizedError(f"token is not valid for device {device_id}")
    except CoordinatorError as e:
        await reject(websocket, e)
        return

    await websocket.accept()
    async with coordinator.bridge.subscription(device_id, path) as subscription:
        await forward_subscription(websocket, subscription)
    await close_quietly(websocket)
