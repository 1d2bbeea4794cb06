"""
Component wiring.

Every service gets the cluster client and its collaborators handed in
explicitly. build_coordinator runs once at startup; request handlers reach
the result through get_coordinator.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from starlette.requests import HTTPConnection

from .config import Settings
from .services.device_auth import DeviceAuthValidator
from .services.drones import DroneLifecycleManager
from .services.events import EventSubscriptionBridge, PubSubEventSource
from .services.expiry import ExpiryWatcher
from .services.kubernetes.client import KubernetesClient
from .services.namespaces import NamespaceProvisioner
from .services.physics import PhysicsServerClient
from .services.ports import PortRangeAllocator
from .services.provisioning import ServiceProvisioner
from .services.registry import DeviceRegistryClient
from .services.shell import RemoteShellBridge
from .services.simulations import SimulationManager
from .services.transport import DeviceTransport, TransportMode, create_transport
from .services.viewer import ViewerManager, ViewerSessionRegistry

logger = logging.getLogger(__name__)


@dataclass
class Coordinator:
    settings: Settings
    k8s: KubernetesClient
    simulations: SimulationManager
    drones: DroneLifecycleManager
    expiry: ExpiryWatcher
    bridge: EventSubscriptionBridge
    transport: DeviceTransport
    registry: DeviceRegistryClient
    device_auth: DeviceAuthValidator
    shell: RemoteShellBridge
    viewers: ViewerManager
    viewer_sessions: ViewerSessionRegistry
    physics: PhysicsServerClient
    pubsub: Optional[PubSubEventSource] = None
    tasks: List[asyncio.Task] = field(default_factory=list)

    def start_background_tasks(self) -> None:
        self.tasks.append(asyncio.create_task(self.expiry.run()))
        if self.pubsub is not None:
            self.tasks.append(asyncio.create_task(self._listen_pubsub()))

    async def _listen_pubsub(self) -> None:
        # The listener only returns when a subscription dies; restart it after a pause
        while True:
            try:
                await self.pubsub.run()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[EVENTS] Pub/Sub listener failed: {e}", exc_info=True)
            await asyncio.sleep(5)

    async def close(self) -> None:
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        self.tasks.clear()
        await self.transport.close()
        await self.registry.close()
        await self.physics.close()


def build_coordinator(
    settings: Settings,
    k8s: KubernetesClient,
    physics: Optional[PhysicsServerClient] = None,
    registry: Optional[DeviceRegistryClient] = None,
    transport: Optional[DeviceTransport] = None,
    pubsub: Optional[PubSubEventSource] = None,
) -> Coordinator:
    """
    Wire all components around one cluster client.

    Optional collaborators are built from settings when not given.
    """
    mode = TransportMode.from_string(settings.deployment_mode)
    physics = physics or PhysicsServerClient()
    registry = registry or DeviceRegistryClient(
        settings.device_registry_url,
        settings.cloud_project_id,
        settings.cloud_region,
        token=settings.device_registry_token,
    )
    bridge = EventSubscriptionBridge(buffer_size=settings.subscriber_buffer_size)

    allocator = PortRangeAllocator(k8s)
    namespaces = NamespaceProvisioner(k8s, allocator, timedelta(seconds=settings.default_expiry_seconds))
    services = ServiceProvisioner(k8s, settings)
    simulations = SimulationManager(k8s, namespaces, services, physics, settings)

    async def resolve_broker(simulation_name: str) -> str:
        simulation = await simulations.get_simulation(simulation_name)
        if simulation.is_standalone and settings.out_cluster_mode:
            return await simulations.mqtt_server_url(simulation)
        return simulations.broker_address(simulation)

    if transport is None:
        transport = create_transport(
            mode,
            resolve_broker,
            registry=registry,
            bridge=bridge,
            tenant_id=settings.default_tenant_id,
            broker_password=settings.mqtt_password,
            buffer_size=settings.subscriber_buffer_size,
        )

    if pubsub is None and mode == TransportMode.CLOUD:
        pubsub = PubSubEventSource(bridge, settings.cloud_project_id, settings.pubsub_subscription_list)

    viewer_sessions = ViewerSessionRegistry()
    return Coordinator(
        settings=settings,
        k8s=k8s,
        simulations=simulations,
        drones=DroneLifecycleManager(k8s, physics, settings),
        expiry=ExpiryWatcher(k8s, settings.expiry_check_interval_seconds),
        bridge=bridge,
        transport=transport,
        registry=registry,
        device_auth=DeviceAuthValidator(registry, settings.default_tenant_id),
        shell=RemoteShellBridge(k8s),
        viewers=ViewerManager(k8s, services, settings, viewer_sessions),
        viewer_sessions=viewer_sessions,
        physics=physics,
        pubsub=pubsub,
    )


def get_coordinator(connection: HTTPConnection) -> Coordinator:
    """FastAPI dependency for both HTTP and websocket routes."""
    return connection.app.state.coordinator
