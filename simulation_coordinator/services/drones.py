"""
Drone lifecycle.

A drone is a secret/deployment/service triple in its simulation's namespace.
The secret holds the drone's identity key; the deployment only references it
through a secretKeyRef.

Creation fails with DroneExistsError when any part of the triple already
exists, without touching the existing resources. Deletion is idempotent.
"""

import asyncio
import base64
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from kubernetes.client.rest import ApiException

from ..config import Settings
from ..errors import CoordinatorError, DroneExistsError, InvalidRequestError, MultiError, NoSuchDroneError
from ..utils.identity import generate_drone_id, generate_identity
from ..utils.rollback import RollbackStack
from .kubernetes import manifests
from .kubernetes.client import KubernetesClient
from .namespaces import Simulation
from .physics import PhysicsServerClient

logger = logging.getLogger(__name__)

DEVICE_ID_LABEL = "drone-device-id"


class DroneLocation(str, Enum):
    """Where the drone software runs."""

    CLUSTER = "cluster"
    LOCAL = "local"
    REMOTE = "remote"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "DroneLocation":
        value_lower = (value or cls.CLUSTER.value).lower().strip()
        for location in cls:
            if location.value == value_lower:
                return location
        valid = ", ".join(loc.value for loc in cls)
        raise InvalidRequestError(f"invalid drone location '{value}', expected one of: {valid}")


@dataclass
class DroneOptions:
    device_id: str
    private_key: str
    mqtt_broker_address: str
    rtsp_server_address: str = ""
    recorder_url: str = ""
    record_size_threshold: int = 10_000_000
    record_topics: List[str] = field(default_factory=list)


@dataclass
class AddDroneRequest:
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
    record_topics: List[str] = field(default_factory=list)
    record_size_threshold: Optional[int] = None


class DroneLifecycleManager:
    """Creates and removes drone triples and inspects running drones."""

    def __init__(self, k8s: KubernetesClient, physics: PhysicsServerClient, settings: Settings):
        self.k8s = k8s
        self.physics = physics
        self.settings = settings

    # =========================================================================
    # TRIPLES
    # =========================================================================

    async def create_drone(self, namespace: str, opts: DroneOptions) -> None:
        """
        Create a drone's secret, deployment and service, in that order.

        Raises:
            DroneExistsError: if any part of the triple already exists; the
                resources created by this call are removed again
        """
        device_id = opts.device_id
        undo = RollbackStack(f"drone {namespace}/{device_id}")
        try:
            await self.k8s.create_secret(
                namespace, manifests.create_drone_secret(namespace, device_id, opts.private_key)
            )
            undo.push("secret", self.k8s.delete_secret, manifests.drone_secret_name(device_id), namespace)

            await self.k8s.create_deployment(namespace, manifests.create_drone_deployment(
                namespace,
                device_id,
                image=self.settings.drone_image,
                pull_policy=self.settings.image_pull_policy,
                mqtt_broker_address=opts.mqtt_broker_address,
                rtsp_server_address=opts.rtsp_server_address,
                recorder_url=opts.recorder_url,
                record_size_threshold=opts.record_size_threshold,
                record_topics=opts.record_topics,
                pull_secret_name=self.settings.image_pull_secret_name,
            ))
            undo.push("deployment", self.k8s.delete_deployment, manifests.drone_name(device_id), namespace)

            await self.k8s.create_service(namespace, manifests.create_drone_service(namespace, device_id))
        except ApiException as e:
            await undo.unwind()
            if e.status == 409:
                raise DroneExistsError(device_id) from e
            raise
        except Exception:
            await undo.unwind()
            raise
        logger.info(f"[DRONE] ✅ Created drone {device_id} in {namespace}")

    async def delete_drone(self, namespace: str, device_id: str) -> None:
        """
        Delete a drone's deployment, service and secret.

        Parts that are already gone are skipped; other failures are collected
        and raised together after every part was attempted.
        """
        errors = MultiError(f"delete drone {namespace}/{device_id}")
        for delete, name in (
            (self.k8s.delete_deployment, manifests.drone_name(device_id)),
            (self.k8s.delete_service, manifests.drone_service_name(device_id)),
            (self.k8s.delete_secret, manifests.drone_secret_name(device_id)),
        ):
            try:
                await delete(name, namespace)
            except Exception as e:
                errors.add(e)
        errors.raise_if_any()
        logger.info(f"[DRONE] Deleted drone {device_id} from {namespace}")

    async def get_pod_name(self, namespace: str, device_id: str) -> str:
        """
        Raises:
            NoSuchDroneError: unless exactly one pod carries the device label
        """
        pods = await self.k8s.list_pods(namespace, f"{DEVICE_ID_LABEL}={device_id}")
        if len(pods) != 1:
            raise NoSuchDroneError(device_id, f"found {len(pods)} pods")
        return pods[0].metadata.name

    async def get_logs(self, namespace: str, device_id: str) -> str:
        pod_name = await self.get_pod_name(namespace, device_id)
        return await self.k8s.read_pod_log(pod_name, namespace)

    async def get_identity_key(self, namespace: str, device_id: str) -> str:
        secret = await self.k8s.read_secret(manifests.drone_secret_name(device_id), namespace)
        if secret is None:
            raise NoSuchDroneError(device_id)
        data = secret.data or {}
        if "DRONE_IDENTITY_KEY" not in data:
            raise NoSuchDroneError(device_id, "identity key missing")
        return base64.b64decode(data["DRONE_IDENTITY_KEY"]).decode()

    async def list_device_ids(self, namespace: str) -> List[str]:
        pods = await self.k8s.list_pods(namespace, DEVICE_ID_LABEL)
        return sorted({(p.metadata.labels or {}).get(DEVICE_ID_LABEL, "") for p in pods} - {""})

    # =========================================================================
    # ADDING DRONES TO A SIMULATION
    # =========================================================================

    async def add_to_simulation(
        self,
        simulation: Simulation,
        request: AddDroneRequest,
        broker_address: str,
    ) -> str:
        """
        Add a drone to a simulation and register it with the physics server.

        Standalone simulations generate missing IDs and identity keys; global
        simulations need both from the caller since the drone has to match a
        device registered in the cloud.

        Returns:
            The drone's device ID
        """
        location = DroneLocation.from_string(request.location)
        device_id = request.drone_id
        private_key = request.private_key

        if not simulation.is_standalone and (not device_id or not private_key):
            raise InvalidRequestError("drone_id and private_key are required for global simulations")
        if not device_id:
            device_id = generate_drone_id(await self._known_drone_ids(simulation.name))
        if not private_key:
            private_key, _ = await asyncio.to_thread(generate_identity, device_id)

        created = False
        if location == DroneLocation.CLUSTER:
            await self.create_drone(simulation.name, DroneOptions(
                device_id=device_id,
                private_key=private_key,
                mqtt_broker_address=broker_address,
                rtsp_server_address=self._rtsp_address(simulation, device_id),
                recorder_url=self._recorder_url(simulation),
                record_size_threshold=request.record_size_threshold or self.settings.default_record_size_threshold,
                record_topics=request.record_topics,
            ))
            created = True

        try:
            await self.physics.add_drone(simulation.name, self._physics_payload(device_id, location, request))
        except Exception as e:
            if created:
                logger.error(f"[DRONE] Registering {device_id} with the physics server failed, removing it: {e}")
                try:
                    await self.delete_drone(simulation.name, device_id)
                except Exception as cleanup_error:
                    logger.error(f"[DRONE] Cleanup of {device_id} failed: {cleanup_error}")
            raise
        return device_id

    async def _known_drone_ids(self, namespace: str) -> List[str]:
        ids = set(await self.list_device_ids(namespace))
        try:
            for drone in await self.physics.list_drones(namespace):
                if isinstance(drone, dict) and drone.get("device_id"):
                    ids.add(drone["device_id"])
        except Exception as e:
            logger.warning(f"[DRONE] Could not list drones of {namespace} from the physics server: {e}")
        return sorted(ids)

    def _rtsp_address(self, simulation: Simulation, device_id: str) -> str:
        if simulation.is_standalone:
            server = (f"{manifests.service_name(manifests.VIDEO_SERVER_NAME)}.{simulation.name}:"
                      f"{manifests.VIDEO_SERVER_PORT}")
        else:
            server = self.global_video_host()
        return self._credential_rtsp_url(server, device_id)

    def _credential_rtsp_url(self, server: str, device_id: str) -> str:
        user = self.settings.video_server_username
        password = self.settings.video_server_password
        return f"rtsp://{user}:{password}@{server}/{device_id}"

    def global_video_host(self) -> str:
        """host[:port] of the shared video server; the setting may be a bare host or a URL."""
        configured = self.settings.global_video_server_url
        if "://" in configured:
            return urlparse(configured).netloc.rpartition("@")[2]
        return configured

    # =========================================================================
    # VIDEO STREAMING
    # =========================================================================

    async def video_stream_addresses(self, simulation: Simulation, device_id: str) -> Tuple[str, str]:
        """
        Where a drone should push its video and where viewers can pull it.

        Standalone simulations stream through their own video server's
        public service; global ones through the shared video server.

        Returns:
            (address with credentials for the drone, public URL without them)
        """
        if simulation.is_standalone:
            if simulation.port_range_start is None:
                raise CoordinatorError(f"simulation {simulation.name} has no port range")
            ip = await self.k8s.wait_load_balancer_ip(
                manifests.public_service_name(manifests.VIDEO_SERVER_NAME),
                simulation.name,
                timeout=self.settings.load_balancer_timeout_seconds,
            )
            server = f"{ip}:{simulation.port_range_start + manifests.VIDEO_PORT_OFFSET}"
        else:
            server = self.global_video_host()
            if not server:
                raise CoordinatorError("no global video server configured")
        return self._credential_rtsp_url(server, device_id), f"rtsp://{server}/{device_id}"

    def _recorder_url(self, simulation: Simulation) -> str:
        if simulation.is_standalone:
            return f"http://{manifests.service_name(manifests.RECORDER_NAME)}.{simulation.name}"
        return self.settings.global_mission_data_recorder_url

    def _physics_payload(self, device_id: str, location: DroneLocation, request: AddDroneRequest) -> Dict[str, Any]:
        return {
            "drone_location": location.value,
            "device_id": device_id,
            "mavlink_address": request.mavlink_address or manifests.drone_service_name(device_id),
            "mavlink_udp_port": request.mavlink_udp_port or manifests.DRONE_MAVLINK_PORT,
            "video_udp_port": manifests.DRONE_VIDEO_PORT,
            "pos_x": request.pos_x,
            "pos_y": request.pos_y,
            "pos_z": request.pos_z,
            "yaw": request.yaw,
            "pitch": request.pitch,
            "roll": request.roll,
        }
