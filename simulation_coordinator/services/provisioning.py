"""
Service provisioning inside a simulation namespace.

Every create method takes the RollbackStack of the surrounding operation and
pushes the undo action for each resource it created, so a failure later in
the sequence removes exactly what this request built.
"""

import asyncio
import json
import logging
from typing import Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..config import Settings
from ..utils.identity import generate_identity
from ..utils.rollback import RollbackStack
from .kubernetes import manifests
from .kubernetes.client import KubernetesClient

logger = logging.getLogger(__name__)


class ServiceProvisioner:
    """Creates the standard deployment+service pairs of a simulation."""

    def __init__(self, k8s: KubernetesClient, settings: Settings):
        self.k8s = k8s
        self.settings = settings

    @property
    def pull_policy(self) -> str:
        return self.settings.image_pull_policy

    @property
    def pull_secret(self) -> str:
        return self.settings.image_pull_secret_name

    # =========================================================================
    # BUILDING BLOCKS
    # =========================================================================

    async def _create_deployment(self, namespace: str, body: client.V1Deployment, undo: RollbackStack) -> None:
        await self.k8s.create_deployment(namespace, body)
        undo.push(f"deployment {body.metadata.name}", self.k8s.delete_deployment, body.metadata.name, namespace)

    async def _create_service(self, namespace: str, body: client.V1Service, undo: RollbackStack) -> None:
        await self.k8s.create_service(namespace, body)
        undo.push(f"service {body.metadata.name}", self.k8s.delete_service, body.metadata.name, namespace)

    async def _create_secret(self, namespace: str, body: client.V1Secret, undo: RollbackStack) -> None:
        await self.k8s.create_secret(namespace, body)
        undo.push(f"secret {body.metadata.name}", self.k8s.delete_secret, body.metadata.name, namespace)

    async def _create_config_map(self, namespace: str, body: client.V1ConfigMap, undo: RollbackStack) -> None:
        await self.k8s.create_config_map(namespace, body)
        undo.push(f"configmap {body.metadata.name}", self.k8s.delete_config_map, body.metadata.name, namespace)

    async def copy_pull_secret(self, namespace: str, undo: RollbackStack) -> None:
        """Copy the image pull secret from the coordinator's namespace."""
        await self.k8s.copy_secret(
            self.pull_secret,
            self.settings.coordinator_namespace,
            self.pull_secret,
            namespace,
        )
        undo.push(f"secret {self.pull_secret}", self.k8s.delete_secret, self.pull_secret, namespace)

    # =========================================================================
    # PHYSICS SERVER
    # =========================================================================

    async def create_gzserver(
        self,
        namespace: str,
        port_range_start: int,
        undo: RollbackStack,
        data_image: Optional[str] = None,
        gpu_mode: Optional[str] = None,
    ) -> None:
        """
        Create the physics server deployment and service.

        In out-cluster mode the API port is also published on the
        simulation's port range.
        """
        deployment = manifests.create_gzserver_deployment(
            namespace,
            image=self.settings.gzserver_image,
            data_image=data_image or self.settings.default_data_image,
            pull_policy=self.pull_policy,
            pull_secret_name=self.pull_secret,
            gpu_mode=gpu_mode or self.settings.default_gpu_mode,
            cloud_mode=self.settings.is_cloud_mode,
        )
        await self._create_deployment(namespace, deployment, undo)
        await self._create_service(namespace, manifests.create_gzserver_service(namespace), undo)

        if self.settings.out_cluster_mode:
            await self._create_service(namespace, manifests.create_public_service_manifest(
                manifests.public_service_name(manifests.GZSERVER_NAME),
                namespace,
                "gzserver-pod",
                port_range_start + manifests.GZSERVER_PORT_OFFSET,
                manifests.GZSERVER_API_PORT,
            ), undo)

    # =========================================================================
    # STANDALONE STACK
    # =========================================================================

    async def create_mqtt_server(self, namespace: str, port_range_start: int, undo: RollbackStack) -> None:
        await self._create_deployment(namespace, manifests.create_mqtt_server_deployment(
            namespace, self.settings.mqtt_server_image, self.pull_policy, self.pull_secret
        ), undo)
        await self._create_service(namespace, manifests.create_mqtt_server_service(namespace), undo)
        # Drones and clients outside the namespace reach the broker through this one
        await self._create_service(namespace, manifests.create_public_service_manifest(
            manifests.public_service_name(manifests.MQTT_SERVER_NAME),
            namespace,
            f"{manifests.MQTT_SERVER_NAME}-pod",
            port_range_start + manifests.MQTT_PORT_OFFSET,
            manifests.MQTT_PORT,
        ), undo)

    async def create_mission_control(self, namespace: str, undo: RollbackStack) -> None:
        await self._create_deployment(namespace, manifests.create_mission_control_deployment(
            namespace, self.settings.mission_control_image, self.pull_policy, self.pull_secret
        ), undo)
        await self._create_service(namespace, manifests.create_mission_control_service(namespace), undo)

    async def create_video_server(self, namespace: str, port_range_start: int, undo: RollbackStack) -> None:
        cert_pem, key_pem = self.settings.video_server_cert, self.settings.video_server_key
        if not cert_pem or not key_pem:
            key_pem, cert_pem = await asyncio.to_thread(generate_identity, manifests.VIDEO_SERVER_NAME)

        await self._create_secret(namespace, manifests.create_video_server_secret(namespace, cert_pem, key_pem), undo)
        await self._create_deployment(namespace, manifests.create_video_server_deployment(
            namespace,
            self.settings.video_server_image,
            self.pull_policy,
            self.settings.video_server_username,
            self.settings.video_server_password,
            self.pull_secret,
        ), undo)
        await self._create_service(namespace, manifests.create_video_server_service(namespace), undo)
        await self._create_service(namespace, manifests.create_public_service_manifest(
            manifests.public_service_name(manifests.VIDEO_SERVER_NAME),
            namespace,
            f"{manifests.VIDEO_SERVER_NAME}-pod",
            port_range_start + manifests.VIDEO_PORT_OFFSET,
            manifests.VIDEO_SERVER_PORT,
        ), undo)

    async def create_mission_data_recorder(
        self,
        namespace: str,
        undo: RollbackStack,
        storage_directory: Optional[str] = None,
    ) -> bool:
        """
        Create the mission data recorder backend.

        Storage is a host directory (request, then settings) or, failing
        that, the configured cloud bucket key.

        Returns:
            False if no storage is configured and the recorder was skipped
        """
        storage_directory = storage_directory or self.settings.mission_data_directory or None
        key_json = self.settings.mission_data_recorder_key
        if not storage_directory and not key_json:
            logger.warning(f"[SIM] No mission data storage configured, skipping recorder in {namespace}")
            return False

        host = f"http://{manifests.service_name(manifests.RECORDER_NAME)}.{namespace}"
        if storage_directory:
            config_map = manifests.create_recorder_config_map(namespace, host, storage_directory=storage_directory)
        else:
            try:
                service_account = json.loads(key_json).get("client_email", "")
            except json.JSONDecodeError as e:
                raise ValueError(f"mission data recorder key is not valid JSON: {e}") from e
            config_map = manifests.create_recorder_config_map(
                namespace, host, bucket=self.settings.mission_data_bucket, service_account=service_account
            )
            await self._create_secret(namespace, manifests.create_recorder_key_secret(namespace, key_json), undo)

        await self._create_config_map(namespace, config_map, undo)
        await self._create_deployment(namespace, manifests.create_recorder_deployment(
            namespace,
            self.settings.mission_data_recorder_backend_image,
            self.pull_policy,
            storage_directory=storage_directory,
            pull_secret_name=self.pull_secret,
        ), undo)
        await self._create_service(namespace, manifests.create_recorder_service(namespace), undo)
        return True

    async def create_standalone_stack(
        self,
        namespace: str,
        port_range_start: int,
        undo: RollbackStack,
        mission_data_directory: Optional[str] = None,
    ) -> None:
        """Create the private support services of a standalone simulation."""
        await self.create_mqtt_server(namespace, port_range_start, undo)
        await self.create_mission_control(namespace, undo)
        await self.create_video_server(namespace, port_range_start, undo)
        await self.create_mission_data_recorder(namespace, undo, mission_data_directory)
        logger.info(f"[SIM] Standalone stack created in {namespace}")

    # =========================================================================
    # VIEWER
    # =========================================================================

    async def ensure_viewer(self, namespace: str, port_range_start: int) -> bool:
        """
        Create the viewer if it isn't there yet.

        The viewer reuses the world data image of the physics server.

        Returns:
            True if the viewer was created by this call
        """
        gzweb_name = manifests.deployment_name(manifests.GZWEB_NAME)
        if await self.k8s.read_deployment(gzweb_name, namespace) is not None:
            return False

        gzserver = await self.k8s.read_deployment(manifests.deployment_name(manifests.GZSERVER_NAME), namespace)
        data_image = manifests.get_data_image(gzserver) if gzserver is not None else None

        undo = RollbackStack(f"viewer {namespace}")
        try:
            await self._create_deployment(namespace, manifests.create_gzweb_deployment(
                namespace,
                self.settings.gzweb_image,
                data_image or self.settings.default_data_image,
                self.pull_policy,
                self.settings.coordinator_url,
                self.pull_secret,
            ), undo)
            await self._create_service(namespace, manifests.create_gzweb_service(
                namespace, port_range_start + manifests.VIEWER_PORT_OFFSET
            ), undo)
        except ApiException as e:
            await undo.unwind()
            if e.status == 409:
                logger.info(f"[VIEWER] Viewer in {namespace} was created concurrently")
                return False
            raise
        except Exception:
            await undo.unwind()
            raise
        logger.info(f"[VIEWER] Created viewer in {namespace}")
        return True
