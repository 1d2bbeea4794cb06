"""
Expiry watcher.

Background loop that deletes simulation namespaces whose recorded expiration
timestamp has passed. It is the backstop for simulations that were abandoned
or left behind by a crashed provisioning flow.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List

from ..errors import MultiError
from .kubernetes.client import KubernetesClient
from .namespaces import EXPIRATION_ANNOTATION, SIMULATION_SELECTOR, parse_timestamp, utcnow

logger = logging.getLogger(__name__)


class ExpiryWatcher:
    def __init__(self, k8s: KubernetesClient, interval_seconds: float,
                 clock: Callable[[], datetime] = utcnow):
        self.k8s = k8s
        self.interval_seconds = interval_seconds
        self.clock = clock

    async def sweep(self) -> List[str]:
        """
        Delete every simulation namespace that expired before now.

        A namespace expiring exactly now is kept until the next sweep.
        Per-namespace failures don't stop the sweep; they're raised together
        at the end.

        Returns:
            Names of the deleted namespaces
        """
        now = self.clock()
        errors = MultiError("expiry sweep")
        deleted: List[str] = []

        namespaces = await self.k8s.list_namespaces(label_selector=SIMULATION_SELECTOR)
        for ns in namespaces:
            name = ns.metadata.name
            raw = (ns.metadata.annotations or {}).get(EXPIRATION_ANNOTATION, "")
            if not raw:
                continue
            try:
                expires_at = parse_timestamp(raw)
            except ValueError as e:
                errors.add(ValueError(f"namespace {name}: invalid expiration timestamp {raw!r}: {e}"))
                continue
            if now <= expires_at:
                continue

            logger.info(f"[EXPIRY] Simulation {name} expired at {raw}, deleting")
            try:
                if await self.k8s.delete_namespace(name, grace_period_seconds=0):
                    deleted.append(name)
                else:
                    logger.info(f"[EXPIRY] Simulation {name} was already gone")
            except Exception as e:
                errors.add(RuntimeError(f"namespace {name}: {e}"))

        errors.raise_if_any()
        return deleted

    async def run(self) -> None:
        """Sweep forever at the configured interval, logging failures."""
        logger.info(f"[EXPIRY] Expiry watcher started (every {self.interval_seconds}s)")
        while True:
            try:
                deleted = await self.sweep()
                if deleted:
                    logger.info(f"[EXPIRY] Deleted {len(deleted)} expired simulations: {', '.join(deleted)}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[EXPIRY] Sweep failed: {e}", exc_info=True)
            await asyncio.sleep(self.interval_seconds)
