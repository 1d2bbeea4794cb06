"""
Simulation namespaces.

A simulation is exactly one namespace. Everything the coordinator knows about
it (type, owners, expiry, port range) is stored in the namespace's labels and
annotations; there is no other state store.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from kubernetes import client
from kubernetes.client.rest import ApiException

from ..errors import ForbiddenError, SimulationExistsError, SimulationNotFoundError
from .kubernetes.client import KubernetesClient
from .kubernetes.manifests import MANAGED_BY
from .ports import PORT_RANGE_START_ANNOTATION, PortRangeAllocator, parse_range_start

logger = logging.getLogger(__name__)

TYPE_LABEL = "dronsole-type"
TYPE_LABEL_VALUE = "simulation"
SIMULATION_TYPE_LABEL = "dronsole-simulation-type"
SIMULATION_NAME_LABEL = "dronsole-simulation-name"
SIMULATION_SELECTOR = f"{TYPE_LABEL}={TYPE_LABEL_VALUE}"

EXPIRATION_ANNOTATION = "dronsole-expiration-timestamp"
EXPIRY_DURATION_ANNOTATION = "dronsole-expiry-duration"
SIMULATION_ID_ANNOTATION = "dronsole-simulation-id"
OWNERS_ANNOTATION = "dronsole-owners"

# An expiry of zero means the simulation should not expire
NEVER_EXPIRES = timedelta(days=100 * 365)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SimulationType(str, Enum):
    """
    Kinds of simulation.

    Attributes:
        GLOBAL: Drones talk to the shared cloud services
        STANDALONE: The simulation runs its own private support stack
    """

    GLOBAL = "global"
    STANDALONE = "standalone"

    @classmethod
    def from_string(cls, value: str) -> "SimulationType":
        value_lower = (value or "").lower().strip()
        for sim_type in cls:
            if sim_type.value == value_lower:
                return sim_type
        valid = ", ".join(t.value for t in cls)
        raise ValueError(f"Invalid simulation type: '{value}'. Valid types: {valid}")

    def __str__(self) -> str:
        return self.value


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC3339 timestamp into an aware UTC datetime."""
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass
class Simulation:
    """A simulation, translated from its namespace metadata."""

    name: str
    id: str = ""
    type: str = ""
    phase: str = ""
    owners: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    port_range_start: Optional[int] = None

    @property
    def is_standalone(self) -> bool:
        return self.type == SimulationType.STANDALONE.value

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "phase": self.phase,
            "type": self.type,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
            "expires_at": format_timestamp(self.expires_at) if self.expires_at else None,
        }


def is_simulation_namespace(ns: Optional[client.V1Namespace]) -> bool:
    if ns is None or ns.metadata is None:
        return False
    return (ns.metadata.labels or {}).get(TYPE_LABEL) == TYPE_LABEL_VALUE


def simulation_from_namespace(ns: client.V1Namespace) -> Simulation:
    """
    Translate namespace metadata into a Simulation.

    Missing or malformed annotations degrade to empty values and are logged;
    they never make the lookup fail.
    """
    labels = ns.metadata.labels or {}
    annotations = ns.metadata.annotations or {}
    name = ns.metadata.name

    owners: List[str] = []
    raw_owners = annotations.get(OWNERS_ANNOTATION)
    if raw_owners:
        try:
            parsed = json.loads(raw_owners)
            if isinstance(parsed, list):
                owners = [str(o) for o in parsed]
            else:
                logger.warning(f"[SIM] Owners annotation of {name} is not a list")
        except json.JSONDecodeError as e:
            logger.warning(f"[SIM] Could not parse owners of {name}: {e}")

    expires_at = None
    raw_expiry = annotations.get(EXPIRATION_ANNOTATION)
    if raw_expiry:
        try:
            expires_at = parse_timestamp(raw_expiry)
        except ValueError as e:
            logger.warning(f"[SIM] Could not parse expiration timestamp of {name}: {e}")

    return Simulation(
        name=name,
        id=annotations.get(SIMULATION_ID_ANNOTATION, ""),
        type=labels.get(SIMULATION_TYPE_LABEL, ""),
        phase=ns.status.phase if ns.status and ns.status.phase else "",
        owners=owners,
        created_at=ns.metadata.creation_timestamp,
        expires_at=expires_at,
        port_range_start=parse_range_start(ns),
    )


class NamespaceProvisioner:
    """Creates, reads and removes simulation namespaces."""

    def __init__(
        self,
        k8s: KubernetesClient,
        allocator: PortRangeAllocator,
        default_expiry: timedelta,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.k8s = k8s
        self.allocator = allocator
        self.default_expiry = default_expiry
        self.clock = clock

    def _expiry_duration(self, expiry: Optional[timedelta]) -> timedelta:
        if expiry is None:
            expiry = self.default_expiry
        if expiry.total_seconds() <= 0:
            return NEVER_EXPIRES
        return expiry

    async def create_namespace(
        self,
        name: str,
        sim_id: str,
        sim_type: SimulationType,
        expiry: Optional[timedelta] = None,
        owners: Optional[List[str]] = None,
    ) -> client.V1Namespace:
        """
        Create a simulation namespace with its metadata embedded.

        Args:
            name: Simulation (and namespace) name
            sim_id: Simulation id
            sim_type: global or standalone
            expiry: Time until the simulation is reaped; None for the
                default, zero for "never"
            owners: Opaque owner identifiers

        Returns:
            The created namespace

        Raises:
            SimulationExistsError: if the namespace already exists
        """
        port_range_start = await self.allocator.allocate_range()
        duration = self._expiry_duration(expiry)
        expires_at = self.clock() + duration

        body = client.V1Namespace(
            metadata=client.V1ObjectMeta(
                name=name,
                labels={
                    TYPE_LABEL: TYPE_LABEL_VALUE,
                    SIMULATION_TYPE_LABEL: str(sim_type),
                    SIMULATION_NAME_LABEL: name,
                    "app.kubernetes.io/managed-by": MANAGED_BY,
                },
                annotations={
                    EXPIRATION_ANNOTATION: format_timestamp(expires_at),
                    EXPIRY_DURATION_ANNOTATION: str(int(duration.total_seconds())),
                    SIMULATION_ID_ANNOTATION: sim_id,
                    PORT_RANGE_START_ANNOTATION: str(port_range_start),
                    OWNERS_ANNOTATION: json.dumps(list(owners or [])),
                },
            )
        )
        try:
            namespace = await self.k8s.create_namespace(body)
        except ApiException as e:
            if e.status == 409:
                raise SimulationExistsError(name) from e
            raise
        logger.info(f"[SIM] Created {sim_type} simulation namespace {name} (ports from {port_range_start})")
        return namespace

    async def _read_simulation_namespace(self, name: str) -> client.V1Namespace:
        ns = await self.k8s.read_namespace(name)
        if not is_simulation_namespace(ns):
            raise SimulationNotFoundError(name)
        return ns

    async def get_simulation(self, name: str) -> Simulation:
        """
        Raises:
            SimulationNotFoundError: if the namespace is missing or isn't a simulation
        """
        return simulation_from_namespace(await self._read_simulation_namespace(name))

    async def list_simulations(self) -> List[Simulation]:
        namespaces = await self.k8s.list_namespaces(label_selector=SIMULATION_SELECTOR)
        return [simulation_from_namespace(ns) for ns in namespaces if is_simulation_namespace(ns)]

    async def remove_simulation(self, name: str, grace_period_seconds: int = 5) -> None:
        """
        Delete a simulation namespace.

        The label check runs first so a generic delete-by-name can never
        remove a namespace the coordinator doesn't own.

        Raises:
            SimulationNotFoundError: if the namespace is missing or isn't a simulation
        """
        await self._read_simulation_namespace(name)
        deleted = await self.k8s.delete_namespace(name, grace_period_seconds=grace_period_seconds)
        if not deleted:
            raise SimulationNotFoundError(name)
        logger.info(f"[SIM] Removed simulation {name}")

    async def refresh_expiry(self, name: str) -> Simulation:
        """Move a simulation's expiration to now plus its recorded duration."""
        ns = await self._read_simulation_namespace(name)
        annotations = ns.metadata.annotations or {}
        try:
            duration = timedelta(seconds=int(annotations.get(EXPIRY_DURATION_ANNOTATION, "")))
        except ValueError:
            logger.warning(f"[SIM] {name} has no valid expiry duration, using the default")
            duration = self._expiry_duration(None)

        annotations[EXPIRATION_ANNOTATION] = format_timestamp(self.clock() + duration)
        ns.metadata.annotations = annotations
        updated = await self.k8s.replace_namespace(name, ns)
        logger.info(f"[SIM] Refreshed expiry of {name} to {annotations[EXPIRATION_ANNOTATION]}")
        return simulation_from_namespace(updated)

    async def existing_names(self) -> List[str]:
        return [sim.name for sim in await self.list_simulations()]


def check_owner(simulation: Simulation, owner: Optional[str]) -> None:
    """
    Raise ForbiddenError if an authenticated caller doesn't own the simulation.

    Simulations without owners are open to every authenticated caller, and
    an owner of None means authentication is disabled.
    """
    if owner is None or not simulation.owners:
        return
    if owner not in simulation.owners:
        raise ForbiddenError(f"not an owner of simulation {simulation.name}")
