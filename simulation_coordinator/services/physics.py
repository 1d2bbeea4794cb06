"""
HTTP client for the physics server (gzserver) running in a simulation.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..errors import UpstreamError
from .kubernetes.manifests import GZSERVER_API_PORT, GZSERVER_NAME, service_name

logger = logging.getLogger(__name__)

START_ATTEMPTS = 32
START_WAIT_SECONDS = 0.5


class PhysicsServerClient:
    """Talks to the physics server API through its in-cluster service."""

    def __init__(self, http: Optional[httpx.AsyncClient] = None, timeout: float = 10.0,
                 start_attempts: int = START_ATTEMPTS, start_wait: float = START_WAIT_SECONDS):
        self.http = http or httpx.AsyncClient(timeout=timeout)
        self.start_attempts = start_attempts
        self.start_wait = start_wait

    def base_url(self, simulation: str) -> str:
        return f"http://{service_name(GZSERVER_NAME)}.{simulation}:{GZSERVER_API_PORT}"

    async def start_simulation(self, simulation: str, world: str) -> None:
        """
        Start the physics session with the given world.

        The server usually accepts connections a little after its pod turns
        available, so the call is retried at fixed intervals.

        Raises:
            UpstreamError: if every attempt failed
        """
        url = f"{self.base_url(simulation)}/simulation/start"
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.start_attempts),
            wait=wait_fixed(self.start_wait),
            retry=retry_if_exception_type((httpx.HTTPError, UpstreamError)),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    response = await self.http.post(url, json={"world_file": world})
                    if response.status_code != 200:
                        raise UpstreamError(
                            f"physics server returned {response.status_code}: {response.text.strip()}"
                        )
        except httpx.HTTPError as e:
            raise UpstreamError(f"could not start simulation {simulation}: {e}") from e
        logger.info(f"[SIM] Physics session of {simulation} started with world {world}")

    async def list_drones(self, simulation: str) -> List[Dict[str, Any]]:
        try:
            response = await self.http.get(f"{self.base_url(simulation)}/simulation/drones")
        except httpx.HTTPError as e:
            raise UpstreamError(f"could not list drones of {simulation}: {e}") from e
        if response.status_code != 200:
            raise UpstreamError(f"physics server returned {response.status_code}: {response.text.strip()}")
        return response.json()

    async def add_drone(self, simulation: str, drone: Dict[str, Any]) -> None:
        """Register a drone with the physics server so it gets spawned in the world."""
        try:
            response = await self.http.post(f"{self.base_url(simulation)}/simulation/drones", json=drone)
        except httpx.HTTPError as e:
            raise UpstreamError(f"could not add drone to {simulation}: {e}") from e
        if response.status_code not in (200, 201):
            raise UpstreamError(f"physics server returned {response.status_code}: {response.text.strip()}")

    async def close(self) -> None:
        await self.http.aclose()
