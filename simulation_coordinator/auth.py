"""
Request authentication.

API callers present an HS256 bearer JWT; its subject identifies the caller
as a simulation owner. Devices present a JWT signed with their own key,
checked by the DeviceAuthValidator.
"""

import logging
from typing import Optional

from fastapi import Depends
from jose import JWTError, jwt
from starlette.requests import HTTPConnection

from .config import Settings, get_settings
from .coordinator import Coordinator, get_coordinator
from .errors import UnauthorizedError
from .services.device_auth import DeviceClaims

logger = logging.getLogger(__name__)


def extract_bearer_token(connection: HTTPConnection) -> Optional[str]:
    """
    Read the bearer token from the Authorization header.

    Browsers can't set headers on websocket requests, so a "token" query
    parameter is accepted too.
    """
    header = connection.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return connection.query_params.get("token") or None


def decode_owner_token(token: str, settings: Settings) -> str:
    try:
        payload = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.algorithm],
            options={"verify_aud": False}
        )
    except JWTError as e:
        logger.warning(f"[AUTH] Rejected bearer token: {e}")
        raise UnauthorizedError("Could not validate credentials") from e
    subject = payload.get("sub")
    if not subject:
        raise UnauthorizedError("Could not validate credentials")
    return str(subject)


async def get_current_owner(
    connection: HTTPConnection,
    settings: Settings = Depends(get_settings),
) -> Optional[str]:
    """
    Authenticate the caller.

    Returns:
        The caller's owner id, or None when authentication is disabled
    """
    if not settings.enable_auth:
        return None
    token = extract_bearer_token(connection)
    if not token:
        raise UnauthorizedError("Not authenticated")
    return decode_owner_token(token, settings)


async def get_device_claims(
    connection: HTTPConnection,
    coordinator: Coordinator = Depends(get_coordinator),
) -> DeviceClaims:
    """Authenticate a device by its signed token."""
    token = extract_bearer_token(connection)
    if not token:
        raise UnauthorizedError("Not authenticated")
    claims = await coordinator.device_auth.validate(token)
    logger.info(f"[AUTH] Authenticated device {claims.tenant_id}/{claims.device_id}")
    return claims
