"""
Simulation lifecycle.

Creation is a strict sequence: namespace, image pull secret, physics server,
optional standalone stack, wait for the physics server, start the physics
session. Once the namespace exists every step pushes an undo action; any
failure unwinds them in reverse (ending with the namespace deletion) before
the original error reaches the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from ..config import Settings
from ..errors import InvalidRequestError
from ..utils.identity import generate_simulation_name
from ..utils.rollback import RollbackStack
from .kubernetes import manifests
from .kubernetes.client import KubernetesClient
from .namespaces import NamespaceProvisioner, Simulation, SimulationType, format_timestamp
from .physics import PhysicsServerClient
from .ports import PORT_RANGE_START_ANNOTATION
from .provisioning import ServiceProvisioner

logger = logging.getLogger(__name__)


@dataclass
class SimulationRequest:
    world: str
    standalone: bool = False
    name: Optional[str] = None
    data_image: Optional[str] = None
    mission_data_directory: Optional[str] = None
    gpu_mode: Optional[str] = None
    expiry: Optional[timedelta] = None
    owners: Optional[List[str]] = None


class SimulationManager:
    """Creates, inspects and removes simulations."""

    def __init__(
        self,
        k8s: KubernetesClient,
        namespaces: NamespaceProvisioner,
        services: ServiceProvisioner,
        physics: PhysicsServerClient,
        settings: Settings,
    ):
        self.k8s = k8s
        self.namespaces = namespaces
        self.services = services
        self.physics = physics
        self.settings = settings

    async def create_simulation(self, request: SimulationRequest) -> Simulation:
        """
        Provision a complete simulation.

        Args:
            request: What to create

        Returns:
            The created simulation

        Raises:
            SimulationExistsError: if the name is taken (nothing is rolled back)
            ProvisioningTimeoutError: if the physics server never became available
            UpstreamError: if the physics session could not be started
        """
        if not request.world:
            raise InvalidRequestError("world is required")
        if request.gpu_mode and request.gpu_mode not in manifests.GPU_MODES:
            raise InvalidRequestError(f"invalid gpu mode: {request.gpu_mode}")

        name = request.name or generate_simulation_name(await self.namespaces.existing_names())
        sim_type = SimulationType.STANDALONE if request.standalone else SimulationType.GLOBAL
        logger.info(f"[SIM] Creating {sim_type} simulation {name} with world {request.world}")

        # Losing a creation race surfaces as SimulationExistsError here, before
        # anything is registered for rollback.
        namespace = await self.namespaces.create_namespace(
            name,
            sim_id=f"{name}-{format_timestamp(self.namespaces.clock())}",
            sim_type=sim_type,
            expiry=request.expiry,
            owners=request.owners,
        )
        simulation_port_start = int(namespace.metadata.annotations[PORT_RANGE_START_ANNOTATION])

        undo = RollbackStack(f"simulation {name}")
        undo.push(f"namespace {name}", self.k8s.delete_namespace, name)
        try:
            await self.services.copy_pull_secret(name, undo)
            await self.services.create_gzserver(
                name,
                simulation_port_start,
                undo,
                data_image=request.data_image,
                gpu_mode=request.gpu_mode,
            )
            if request.standalone:
                await self.services.create_standalone_stack(
                    name,
                    simulation_port_start,
                    undo,
                    mission_data_directory=request.mission_data_directory,
                )

            await self.k8s.wait_deployment_available(
                manifests.deployment_name(manifests.GZSERVER_NAME),
                name,
                timeout=self.settings.provisioning_timeout_seconds,
            )
        except asyncio.CancelledError:
            logger.warning(f"[SIM] Creating simulation {name} was cancelled, rolling back")
            await asyncio.shield(undo.unwind())
            raise
        except Exception as e:
            logger.error(f"[SIM] Creating simulation {name} failed, rolling back: {e}")
            await undo.unwind()
            raise

        # The physics start keeps retrying even if the requesting client goes
        # away; a cancelled request leaves the simulation to finish starting.
        try:
            await asyncio.shield(self.physics.start_simulation(name, request.world))
        except asyncio.CancelledError:
            logger.warning(f"[SIM] Request for {name} cancelled while the physics session starts")
            raise
        except Exception as e:
            logger.error(f"[SIM] Starting simulation {name} failed, rolling back: {e}")
            await undo.unwind()
            raise

        undo.clear()
        logger.info(f"[SIM] ✅ Simulation {name} is running")
        return await self.namespaces.get_simulation(name)

    async def remove_simulation(self, name: str) -> None:
        await self.namespaces.remove_simulation(name)

    async def get_simulation(self, name: str) -> Simulation:
        return await self.namespaces.get_simulation(name)

    async def list_simulations(self) -> List[Simulation]:
        return await self.namespaces.list_simulations()

    async def refresh_expiry(self, name: str) -> Simulation:
        return await self.namespaces.refresh_expiry(name)

    async def mqtt_server_url(self, simulation: Simulation) -> str:
        """
        The broker URL external clients use for a simulation.

        Global simulations use the shared broker; standalone simulations
        publish their own through a LoadBalancer.
        """
        if not simulation.is_standalone:
            return self.settings.mqtt_server_url
        ip = await self.k8s.wait_load_balancer_ip(
            manifests.public_service_name(manifests.MQTT_SERVER_NAME),
            simulation.name,
            timeout=self.settings.load_balancer_timeout_seconds,
        )
        port = manifests.MQTT_PORT
        if simulation.port_range_start is not None:
            port = simulation.port_range_start + manifests.MQTT_PORT_OFFSET
        return f"tcp://{ip}:{port}"

    def broker_address(self, simulation: Simulation) -> str:
        """The broker URL pods inside the simulation use."""
        if simulation.is_standalone:
            return f"tcp://{manifests.service_name(manifests.MQTT_SERVER_NAME)}.{simulation.name}:{manifests.MQTT_PORT}"
        return self.settings.mqtt_server_url
