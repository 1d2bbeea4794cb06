"""
Error taxonomy for the simulation coordinator.

Service-layer code raises these typed errors; the HTTP layer renders every
CoordinatorError as {"error": "<message>"} with the class's status code.
"""

import logging
from typing import List, Optional

logger = logging.getLogger(__name__)


class CoordinatorError(Exception):
    """Base class for errors that map onto an HTTP status."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidRequestError(CoordinatorError):
    status_code = 400


class NotFoundError(CoordinatorError):
    status_code = 404


class SimulationNotFoundError(NotFoundError):
    def __init__(self, name: str):
        super().__init__(f"simulation {name} does not exist")
        self.name = name


class NoSuchDroneError(NotFoundError):
    def __init__(self, device_id: str, detail: Optional[str] = None):
        message = f"no such drone: {device_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.device_id = device_id


class AlreadyExistsError(CoordinatorError):
    """Idempotency signal: the resource was already provisioned."""

    status_code = 409


class SimulationExistsError(AlreadyExistsError):
    def __init__(self, name: str):
        super().__init__(f"simulation {name} already exists")
        self.name = name


class DroneExistsError(AlreadyExistsError):
    def __init__(self, device_id: str):
        super().__init__(f"drone {device_id} already exists")
        self.device_id = device_id


class UnauthorizedError(CoordinatorError):
    status_code = 401


class ForbiddenError(CoordinatorError):
    status_code = 403


class ProvisioningTimeoutError(CoordinatorError):
    """A bounded wait ran out before the resource became ready."""

    status_code = 500


class UpstreamError(CoordinatorError):
    """A managed service was unreachable or rejected the request."""

    status_code = 502


# =============================================================================
# Device token errors
# =============================================================================

class DeviceTokenError(UnauthorizedError):
    """Base class for device token validation failures."""


class MalformedTokenError(DeviceTokenError):
    def __init__(self, reason: str):
        super().__init__(f"malformed token: {reason}")


class ExpiredTokenError(DeviceTokenError):
    def __init__(self, reason: str = "token is expired"):
        super().__init__(f"invalid token: {reason}")


class UnauthorizedDeviceError(DeviceTokenError):
    def __init__(self, tenant_id: str, device_id: str):
        super().__init__(f"unauthorized device: {tenant_id}/{device_id}")
        self.tenant_id = tenant_id
        self.device_id = device_id


# =============================================================================
# Aggregation
# =============================================================================

class MultiError(CoordinatorError):
    """
    Collects errors from independent sub-operations.

    Used where one failing item must not stop the others, e.g. the expiry
    sweep or listening on several Pub/Sub subscriptions at once.

    Example:
        >>> errors = MultiError("expiry sweep")
        >>> for ns in namespaces:
        ...     try:
        ...         delete(ns)
        ...     except Exception as e:
        ...         errors.add(e)
        >>> errors.raise_if_any()
    """

    status_code = 502

    def __init__(self, context: str, errors: Optional[List[BaseException]] = None):
        self.context = context
        self.errors: List[BaseException] = list(errors or [])
        super().__init__(self._format())

    def _format(self) -> str:
        if not self.errors:
            return f"{self.context}: no errors"
        lines = "; ".join(str(e) for e in self.errors)
        return f"{self.context}: {len(self.errors)} error(s) occurred: {lines}"

    def add(self, error: BaseException) -> None:
        self.errors.append(error)
        self.message = self._format()
        self.args = (self.message,)

    def __bool__(self) -> bool:
        return bool(self.errors)

    def __len__(self) -> int:
        return len(self.errors)

    def raise_if_any(self) -> None:
        """Raise self if at least one error was collected."""
        if self.errors:
            raise self
