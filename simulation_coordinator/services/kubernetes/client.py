"""
Kubernetes Client for Simulation Namespaces

This module provides the interface to the Kubernetes API used by every
provisioning component. All blocking API calls run in worker threads via
asyncio.to_thread so the event loop never waits on the cluster.

The client is constructed once at startup and handed to each component
explicitly. ClusterClientProvider offers a lock-guarded lazy accessor for
code paths that need to build it on first use.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream
import asyncio
import logging
import threading
import time
from typing import Callable, List, Optional

from ...errors import ProvisioningTimeoutError

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 0.5


def load_cluster_config() -> None:
    """Load in-cluster config, falling back to the local kubeconfig."""
    try:
        # Try in-cluster config first (for production)
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        try:
            # Fall back to kubeconfig (for development)
            config.load_kube_config()
            logger.info("Loaded kubeconfig for development")
        except config.ConfigException as e:
            logger.error(f"Failed to load Kubernetes config: {e}")
            raise RuntimeError("Cannot load Kubernetes configuration") from e


class KubernetesClient:
    """
    Manages Kubernetes resources for simulation namespaces.

    Creates raise ApiException on conflicts (status 409) so callers can
    translate them into typed AlreadyExists conditions. Deletes tolerate
    missing resources and return whether anything was deleted.
    """

    def __init__(self, load_config: bool = True):
        if load_config:
            load_cluster_config()

        self.core_v1 = client.CoreV1Api()
        self.apps_v1 = client.AppsV1Api()

        logger.info("[K8S] Kubernetes client initialized")

    def _get_stream_client(self) -> client.CoreV1Api:
        """
        Create a fresh CoreV1Api client for stream operations.

        stream() patches the api_client request method to use WebSocket,
        so exec sessions must not share the client used for regular calls.
        """
        return client.CoreV1Api()

    # =========================================================================
    # NAMESPACE MANAGEMENT
    # =========================================================================

    async def create_namespace(self, body: client.V1Namespace) -> client.V1Namespace:
        """
        Create a namespace. Atomic on the API server side.

        Raises:
            ApiException: status 409 if the namespace already exists
        """
        created = await asyncio.to_thread(
            self.core_v1.create_namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created namespace: {body.metadata.name}")
        return created

    async def read_namespace(self, name: str) -> Optional[client.V1Namespace]:
        """Read a namespace, returning None if it doesn't exist."""
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespace,
                name=name
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def list_namespaces(self, label_selector: Optional[str] = None) -> List[client.V1Namespace]:
        kwargs = {}
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = await asyncio.to_thread(self.core_v1.list_namespace, **kwargs)
        return list(result.items or [])

    async def replace_namespace(self, name: str, body: client.V1Namespace) -> client.V1Namespace:
        return await asyncio.to_thread(
            self.core_v1.replace_namespace,
            name=name,
            body=body
        )

    async def delete_namespace(self, name: str, grace_period_seconds: int = 5) -> bool:
        """
        Delete a namespace and everything inside it.

        Args:
            name: Namespace name
            grace_period_seconds: Pod termination grace period

        Returns:
            True if deleted, False if it was already gone
        """
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespace,
                name=name,
                body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds)
            )
            logger.info(f"[K8S] ✅ Deleted namespace: {name}")
            return True
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"[K8S] Namespace {name} already deleted")
                return False
            raise

    # =========================================================================
    # SECRETS AND CONFIGMAPS
    # =========================================================================

    async def create_secret(self, namespace: str, body: client.V1Secret) -> client.V1Secret:
        created = await asyncio.to_thread(
            self.core_v1.create_namespaced_secret,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created secret {body.metadata.name} in {namespace}")
        return created

    async def read_secret(self, name: str, namespace: str) -> Optional[client.V1Secret]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_secret,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def delete_secret(self, name: str, namespace: str, grace_period_seconds: int = 5) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_secret,
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds)
            )
            logger.info(f"[K8S] ✅ Deleted secret {name} from {namespace}")
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def copy_secret(
        self,
        source_name: str,
        source_namespace: str,
        target_name: str,
        target_namespace: str
    ) -> client.V1Secret:
        """
        Copy a secret between namespaces (e.g. image pull credentials).

        Raises:
            ApiException: 404 if the source is missing, 409 if the target exists
        """
        source = await asyncio.to_thread(
            self.core_v1.read_namespaced_secret,
            name=source_name,
            namespace=source_namespace
        )
        target = client.V1Secret(
            metadata=client.V1ObjectMeta(
                name=target_name,
                namespace=target_namespace,
                labels=source.metadata.labels
            ),
            type=source.type,
            data=source.data
        )
        copied = await asyncio.to_thread(
            self.core_v1.create_namespaced_secret,
            namespace=target_namespace,
            body=target
        )
        logger.info(f"[K8S] ✅ Copied secret {source_namespace}/{source_name} to {target_namespace}/{target_name}")
        return copied

    async def create_config_map(self, namespace: str, body: client.V1ConfigMap) -> client.V1ConfigMap:
        created = await asyncio.to_thread(
            self.core_v1.create_namespaced_config_map,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created configmap {body.metadata.name} in {namespace}")
        return created

    async def delete_config_map(self, name: str, namespace: str) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_config_map,
                name=name,
                namespace=namespace
            )
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    # =========================================================================
    # DEPLOYMENTS AND SERVICES
    # =========================================================================

    async def create_deployment(self, namespace: str, body: client.V1Deployment) -> client.V1Deployment:
        created = await asyncio.to_thread(
            self.apps_v1.create_namespaced_deployment,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created deployment {body.metadata.name} in {namespace}")
        return created

    async def read_deployment(self, name: str, namespace: str) -> Optional[client.V1Deployment]:
        try:
            return await asyncio.to_thread(
                self.apps_v1.read_namespaced_deployment,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def delete_deployment(self, name: str, namespace: str, grace_period_seconds: int = 5) -> bool:
        try:
            await asyncio.to_thread(
                self.apps_v1.delete_namespaced_deployment,
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds)
            )
            logger.info(f"[K8S] ✅ Deleted deployment {name} from {namespace}")
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    async def create_service(self, namespace: str, body: client.V1Service) -> client.V1Service:
        created = await asyncio.to_thread(
            self.core_v1.create_namespaced_service,
            namespace=namespace,
            body=body
        )
        logger.info(f"[K8S] ✅ Created service {body.metadata.name} in {namespace}")
        return created

    async def read_service(self, name: str, namespace: str) -> Optional[client.V1Service]:
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_service,
                name=name,
                namespace=namespace
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    async def delete_service(self, name: str, namespace: str, grace_period_seconds: int = 5) -> bool:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_service,
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(grace_period_seconds=grace_period_seconds)
            )
            logger.info(f"[K8S] ✅ Deleted service {name} from {namespace}")
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    # =========================================================================
    # PODS
    # =========================================================================

    async def list_pods(self, namespace: str, label_selector: str) -> List[client.V1Pod]:
        result = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=namespace,
            label_selector=label_selector
        )
        return list(result.items or [])

    async def read_pod_log(self, name: str, namespace: str) -> str:
        return await asyncio.to_thread(
            self.core_v1.read_namespaced_pod_log,
            name=name,
            namespace=namespace
        )

    def open_exec_stream(self, pod_name: str, namespace: str, command: List[str]):
        """
        Open an interactive exec stream (stdin/stdout/stderr/tty) to a pod.

        Blocking; call through asyncio.to_thread.

        Returns:
            kubernetes.stream.ws_client.WSClient
        """
        stream_client = self._get_stream_client()
        return stream(
            stream_client.connect_get_namespaced_pod_exec,
            pod_name,
            namespace,
            command=command,
            stderr=True,
            stdin=True,
            stdout=True,
            tty=True,
            _preload_content=False,  # Required for streaming
        )

    # =========================================================================
    # READINESS
    # =========================================================================

    async def wait_deployment_available(self, name: str, namespace: str, timeout: float) -> None:
        """
        Poll until a deployment reports at least one available replica.

        A missing deployment is tolerated while polling.

        Raises:
            ProvisioningTimeoutError: if the deadline passes first
        """
        async def _available() -> bool:
            deployment = await self.read_deployment(name, namespace)
            if deployment is None or deployment.status is None:
                return False
            return (deployment.status.available_replicas or 0) > 0

        await self._poll(_available, timeout, f"deployment {namespace}/{name} to become available")
        logger.info(f"[K8S] Deployment {namespace}/{name} is available")

    async def wait_load_balancer_ip(self, name: str, namespace: str, timeout: float) -> str:
        """
        Poll until a LoadBalancer service has an ingress IP.

        Returns:
            The external IP address
        """
        found: List[str] = []

        async def _has_ip() -> bool:
            service = await self.read_service(name, namespace)
            ip = load_balancer_ip(service)
            if ip:
                found.append(ip)
                return True
            return False

        await self._poll(_has_ip, timeout, f"external IP of service {namespace}/{name}")
        return found[0]

    async def _poll(self, check: Callable, timeout: float, what: str) -> None:
        deadline = time.monotonic() + timeout
        while True:
            if await check():
                return
            if time.monotonic() >= deadline:
                raise ProvisioningTimeoutError(f"timed out waiting for {what}")
            await asyncio.sleep(POLL_INTERVAL_SECONDS)


def load_balancer_ip(service: Optional[client.V1Service]) -> Optional[str]:
    """Extract the first ingress IP from a LoadBalancer service."""
    if service is None or service.status is None or service.status.load_balancer is None:
        return None
    for ingress in service.status.load_balancer.ingress or []:
        if ingress.ip:
            return ingress.ip
    return None


class ClusterClientProvider:
    """
    Single-initialization accessor for the cluster client.

    The first call to get() constructs the client under a lock; later calls
    return the same instance without locking.
    """

    def __init__(self, factory: Callable[[], KubernetesClient] = KubernetesClient):
        self._factory = factory
        self._client: Optional[KubernetesClient] = None
        self._lock = threading.Lock()

    def get(self) -> KubernetesClient:
        if self._client is not None:
            return self._client
        with self._lock:
            if self._client is None:
                self._client = self._factory()
        return self._client
