"""
Simulations Router

Create, list, inspect and remove simulations.
"""

import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, Response, status
from pydantic import BaseModel, Field

from ..auth import get_current_owner
from ..coordinator import Coordinator, get_coordinator
from ..services.namespaces import Simulation, check_owner
from ..services.simulations import SimulationRequest

logger = logging.getLogger(__name__)
router = APIRouter()


# Request/Response Models

class CreateSimulationRequest(BaseModel):
    name: Optional[str] = None
    world: str
    standalone: bool = False
    data_image: Optional[str] = None
    mission_data_directory: Optional[str] = None
    gpu_mode: Optional[str] = None
    expiry_seconds: Optional[int] = Field(default=None, ge=0)


class CreateSimulationResponse(BaseModel):
    name: str


class SimulationInfo(BaseModel):
    name: str
    phase: Optional[str] = None
    type: str
    created_at: Optional[str] = None
    expires_at: Optional[str] = None


class MQTTServer(BaseModel):
    url: str


class SimulationDetails(BaseModel):
    mqtt_server: MQTTServer


async def load_owned_simulation(coordinator: Coordinator, name: str, owner: Optional[str]) -> Simulation:
    """Fetch a simulation, failing with 404/403 for missing or foreign ones."""
    simulation = await coordinator.simulations.get_simulation(name)
    check_owner(simulation, owner)
    return simulation


async def get_owned_simulation(
    name: str,
    owner: Optional[str] = Depends(get_current_owner),
    coordinator: Coordinator = Depends(get_coordinator),
) -> Simulation:
    return await load_owned_simulation(coordinator, name, owner)


# Endpoints

@router.get("/simulations", response_model=List[SimulationInfo])
async def list_simulations(
    owner: Optional[str] = Depends(get_current_owner),
    coordinator: Coordinator = Depends(get_coordinator),
):
    """List simulations visible to the caller."""
    simulations = await coordinator.simulations.list_simulations()
    visible = [
        sim for sim in simulations
        if owner is None or not sim.owners or owner in sim.owners
    ]
    return [sim.to_dict() for sim in visible]


@router.post("/simulations", response_model=CreateSimulationResponse)
async def create_simulation(
    request: CreateSimulationRequest,
    owner: Optional[str] = Depends(get_current_owner),
    coordinator: Coordinator = Depends(get_coordinator),
):
    """
    Create a simulation.

    Either everything gets created or the partial state is rolled back
    before the error is returned.
    """
    expiry = None
    if request.expiry_seconds is not None:
        expiry = timedelta(seconds=request.expiry_seconds)

    simulation = await coordinator.simulations.create_simulation(SimulationRequest(
        world=request.world,
        standalone=request.standalone,
        name=request.name,
        data_image=request.data_image,
        mission_data_directory=request.mission_data_directory,
        gpu_mode=request.gpu_mode,
        expiry=expiry,
        owners=[owner] if owner else None,
    ))
    return CreateSimulationResponse(name=simulation.name)


@router.get("/simulations/{name}", response_model=SimulationDetails)
async def get_simulation(
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    url = await coordinator.simulations.mqtt_server_url(simulation)
    return SimulationDetails(mqtt_server=MQTTServer(url=url))


@router.delete("/simulations/{name}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_simulation(
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    await coordinator.simulations.remove_simulation(simulation.name)
    logger.info(f"Removed simulation {simulation.name}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/simulations/{name}/expiry", response_model=SimulationInfo)
async def refresh_simulation_expiry(
    simulation: Simulation = Depends(get_owned_simulation),
    coordinator: Coordinator = Depends(get_coordinator),
):
    """Push the simulation's expiration out by its expiry duration."""
    refreshed = await coordinator.simulations.refresh_expiry(simulation.name)
    return refreshed.to_dict()
