"""
Drones Router

Drone management inside a simulation, plus the streaming endpoints for a
drone's events and its interactive shell.
"""

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, WebSocket
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from ..auth import get_current_owner
from ..coordinator import Coordinator, get_coordinator
from ..errors import CoordinatorError, InvalidRequestError
from ..services.drones import AddDroneRequest as AddDroneOptions
from ..services.namespaces import Simulation
from ..services.shell import ShellProtocolError
from ..services.transport import (
    CONTROL_COMMANDS,
    CONTROL_SUBFOLDER,
    VIDEO_SUBFOLDER,
    control_command_payload,
    video_command_payload,
)
from ..utils.websockets import POLICY_VIOLATION, close_quietly, forward_subscription, reject
from .simulations import get_owned_simulation, load_owned_simulation

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models

class AddDroneRequest(BaseModel):
    drone_id: Optional[str] = None
    private_key: Optional[str] = None
    location: Optional[str] = None
    mavlink_address: Optional[str] = None
    mavlink_udp_port: Optional[int] = None
    pos_x: float = 0.0
    pos_y: float = 0.0
    pos_z: float = 0.0
    yaw: float = 0.0
    pitch: float = 0.0
    roll: float = 0.0
    record_topics: List[str] = Field(default_factory=list)
    record_size_threshold: Optional[int] = None


class AddDroneResponse(BaseModel):
    drone_id: str


class CommandRequest(BaseModel):
    command: str


class VideoResponse(BaseModel):
    video_url: str


class EventsRequest(BaseModel):
    path: str = ""


# Endpoints

@router.get("/simulations/{name}/drones")
async def list_drones(
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    """Drones registered with the simulation's physics server."""
    return await coordinator.physics.list_drones(simulation.name)


@router.post("/simulations/{name}/drones", response_model=AddDroneResponse)
async def add_drone(
    request: AddDroneRequest,
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    device_id = await coordinator.drones.add_to_simulation(
        simulation,
        AddDroneOptions(**request.model_dump()),
        broker_address=coordinator.simulations.broker_address(simulation),
    )
    return AddDroneResponse(drone_id=device_id)


@router.post("/simulations/{name}/drones/{drone_id}/command")
async def send_drone_command(
    drone_id: str,
    request: CommandRequest,
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    if request.command not in CONTROL_COMMANDS:
        raise InvalidRequestError(f"unknown command: {request.command}")
    await coordinator.transport.send_command(
        simulation.name,
        drone_id,
        CONTROL_SUBFOLDER,
        control_command_payload(request.command),
    )
    logger.info(f"Sent {request.command} to {drone_id} in {simulation.name}")
    return {"command": request.command}


@router.get("/simulations/{name}/drones/{drone_id}/logs", response_class=PlainTextResponse)
async def get_drone_logs(
    drone_id: str,
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    return await coordinator.drones.get_logs(simulation.name, drone_id)


@router.post("/simulations/{name}/drones/{drone_id}/video", response_model=VideoResponse)
async def start_drone_video(
    drone_id: str,
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    """Ask the drone to push its camera stream to the video server."""
    address, video_url = await coordinator.drones.video_stream_addresses(simulation, drone_id)
    await coordinator.transport.send_command(
        simulation.name,
        drone_id,
        VIDEO_SUBFOLDER,
        video_command_payload(address),
    )
    return VideoResponse(video_url=video_url)


@router.websocket("/simulations/{name}/drones/{drone_id}/events")
async def drone_events_websocket(websocket: WebSocket, name: str, drone_id: str):
    """
    Stream a drone's events.

    The first client message is {"path": "<topic prefix>"}; afterwards every
    matching event is sent as a {"topic", "data"} JSON frame until either
    side goes away.
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
        raw = await websocket.receive_text()
        path = EventsRequest(**json.loads(raw)).path
    except (ValueError, TypeError) as e:
        logger.warning(f"Invalid events request for {drone_id}: {e}")
        await close_quietly(websocket, POLICY_VIOLATION, "expected {\"path\": ...}")
        return

    logger.info(f"Streaming events of {drone_id} in {simulation.name} under {path!r}")
    try:
        async with coordinator.transport.subscribe(simulation.name, drone_id, path) as subscription:
            await forward_subscription(websocket, subscription)
    except CoordinatorError as e:
        await reject(websocket, e)
        return
    await close_quietly(websocket)


@router.websocket("/simulations/{name}/drones/{drone_id}/shell")
async def drone_shell_websocket(websocket: WebSocket, name: str, drone_id: str):
    """Interactive shell in the drone's pod."""
    coordinator = get_coordinator(websocket)
    try:
        owner = await get_current_owner(websocket, coordinator.settings)
        simulation = await load_owned_simulation(coordinator, name, owner)
        pod_name = await coordinator.drones.get_pod_name(simulation.name, drone_id)
    except CoordinatorError as e:
        await reject(websocket, e)
        return

    await websocket.accept()
    try:
        await coordinator.shell.run(websocket, simulation.name, pod_name)
    except ShellProtocolError as e:
        logger.error(f"Shell session for {drone_id} ended: {e}")
        await close_quietly(websocket, POLICY_VIOLATION, str(e)[:120])
        return
    await close_quietly(websocket)
