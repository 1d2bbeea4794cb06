"""
Port range allocation for simulations.

Each simulation gets PORT_RANGE_SIZE consecutive external ports. Nothing is
persisted: the allocation is recomputed on every call from the range starts
recorded on live simulation namespaces, so ranges are freed implicitly when
a namespace is deleted.

Concurrent callers can compute the same range. The conflict then shows up
when the second caller creates its LoadBalancer services, and the caller may
retry.
"""

import logging
from typing import Iterable, List, Optional

from kubernetes import client

from ..errors import MultiError
from .kubernetes.client import KubernetesClient

logger = logging.getLogger(__name__)

GLOBAL_PORT_RANGE_START = 38400
PORT_RANGE_SIZE = 5

PORT_RANGE_START_ANNOTATION = "dronsole-port-range-start"


def find_free_range(starts: Iterable[int], base: int = GLOBAL_PORT_RANGE_START,
                    size: int = PORT_RANGE_SIZE) -> int:
    """
    Find the first gap of at least `size` ports above `base`.

    Args:
        starts: Range starts already in use
        base: Lowest port that may be allocated
        size: Ports per range

    Returns:
        Start of the free range
    """
    current = base
    for start in sorted(starts):
        if start + size <= current:
            continue
        if start >= current + size:
            return current
        current = start + size
    return current


class PortRangeAllocator:
    """Assigns a unique block of externally reachable ports per simulation."""

    def __init__(self, k8s: KubernetesClient, base: int = GLOBAL_PORT_RANGE_START,
                 size: int = PORT_RANGE_SIZE):
        self.k8s = k8s
        self.base = base
        self.size = size

    async def allocate_range(self) -> int:
        """
        Allocate a port range start from the ranges of live namespaces.

        Namespaces with unparseable range annotations are logged and
        ignored; they don't block allocation.
        """
        namespaces = await self.k8s.list_namespaces()
        starts, errors = collect_range_starts(namespaces)
        if errors:
            logger.warning(f"[PORTS] Ignoring invalid port range annotations: {errors}")

        start = find_free_range(starts, self.base, self.size)
        logger.info(f"[PORTS] Allocated port range {start}-{start + self.size - 1}")
        return start


def collect_range_starts(namespaces: List[client.V1Namespace]):
    """
    Read the recorded port range starts from namespaces.

    Returns:
        (starts, errors): parsed starts and a MultiError with parse failures
    """
    starts: List[int] = []
    errors = MultiError("parse port range annotations")
    for ns in namespaces:
        value = parse_range_start(ns, errors)
        if value is not None:
            starts.append(value)
    return starts, errors


def parse_range_start(ns: client.V1Namespace, errors: Optional[MultiError] = None) -> Optional[int]:
    annotations = ns.metadata.annotations or {}
    raw = annotations.get(PORT_RANGE_START_ANNOTATION)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as e:
        if errors is not None:
            errors.add(ValueError(f"namespace {ns.metadata.name}: {e}"))
        return None
