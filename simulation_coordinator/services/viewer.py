"""
Viewer sessions.

A viewer id is a short-lived token that authorizes one browser connection to
a simulation's viewer. It's valid while the websocket that obtained it stays
open.
"""

import logging
import threading
import uuid
from typing import Dict

from ..config import Settings
from ..errors import CoordinatorError
from .kubernetes import manifests
from .kubernetes.client import KubernetesClient
from .namespaces import Simulation
from .provisioning import ServiceProvisioner

logger = logging.getLogger(__name__)


class ViewerSessionRegistry:
    def __init__(self):
        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()

    def register(self, simulation: str) -> str:
        viewer_id = str(uuid.uuid4())
        with self._lock:
            self._sessions[viewer_id] = simulation
        logger.info(f"[VIEWER] Registered viewer {viewer_id} for {simulation}")
        return viewer_id

    def remove(self, viewer_id: str) -> None:
        with self._lock:
            self._sessions.pop(viewer_id, None)
        logger.info(f"[VIEWER] Removed viewer {viewer_id}")

    def is_valid(self, viewer_id: str) -> bool:
        with self._lock:
            return viewer_id in self._sessions

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class ViewerManager:
    """Creates a simulation's viewer on demand and hands out viewer sessions."""

    def __init__(self, k8s: KubernetesClient, services: ServiceProvisioner, settings: Settings,
                 sessions: ViewerSessionRegistry):
        self.k8s = k8s
        self.services = services
        self.settings = settings
        self.sessions = sessions

    async def ensure_viewer(self, simulation: Simulation) -> str:
        """
        Create the viewer if needed and wait for its public address.

        Returns:
            host:port the browser connects to
        """
        if simulation.port_range_start is None:
            raise CoordinatorError(f"simulation {simulation.name} has no port range")
        port_range_start = simulation.port_range_start
        await self.services.ensure_viewer(simulation.name, port_range_start)
        ip = await self.k8s.wait_load_balancer_ip(
            manifests.service_name(manifests.GZWEB_NAME),
            simulation.name,
            timeout=self.settings.load_balancer_timeout_seconds,
        )
        return f"{ip}:{port_range_start + manifests.VIEWER_PORT_OFFSET}"
