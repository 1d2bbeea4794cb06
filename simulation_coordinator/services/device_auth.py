"""
Device token validation.

Devices authenticate with a JWT signed by their private key. The token is
parsed without automatic validation first so each failure can be attributed:

- MalformedTokenError: the token can't be parsed or lacks required claims
- ExpiredTokenError: exp has passed or iat lies in the future
- UnauthorizedDeviceError: no registered credential validates the token

Credentials are checked in registry order. Expired or unparseable ones are
logged and skipped; a credential whose algorithm differs from the token's is
skipped silently, so old and new keys of different types can coexist while a
device rotates its key.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from jose import JWTError, jwt

from ..errors import (
    ExpiredTokenError,
    MalformedTokenError,
    NoSuchDroneError,
    UnauthorizedDeviceError,
    UpstreamError,
)
from .registry import DeviceCredential, DeviceRegistryClient

logger = logging.getLogger(__name__)

# Credential format -> (signature algorithm, certificate wrapped, key type)
CREDENTIAL_FORMATS = {
    "RSA_X509_PEM": ("RS256", True, rsa.RSAPublicKey),
    "RSA_PEM": ("RS256", False, rsa.RSAPublicKey),
    "ES256_X509_PEM": ("ES256", True, ec.EllipticCurvePublicKey),
    "ES256_PEM": ("ES256", False, ec.EllipticCurvePublicKey),
}


class CredentialError(Exception):
    """A registered credential is expired or unusable."""


@dataclass
class DeviceClaims:
    device_id: str
    tenant_id: str
    bag_name: str
    expires_at: datetime
    issued_at: datetime


def parse_credential_expiration(value: str) -> Optional[datetime]:
    """
    Parse a credential's RFC3339 expiration time.

    Returns:
        The expiration, or None when the credential never expires (the Unix
        epoch)

    Raises:
        ValueError: if the value is empty or not a timestamp
    """
    if not value or not value.strip():
        raise ValueError("missing expiration time")
    parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed.timestamp() == 0:
        return None
    return parsed


def credential_public_key(credential: DeviceCredential, token_algorithm: str, now: datetime) -> Optional[str]:
    """
    Get a credential's public key if it can verify a token of the given algorithm.

    Args:
        credential: Registered credential
        token_algorithm: The token's "alg" header
        now: Current time

    Returns:
        PEM encoded public key, or None if the credential uses another algorithm

    Raises:
        CredentialError: if the credential is expired, of unknown format or
            its key material can't be decoded
    """
    try:
        expires_at = parse_credential_expiration(credential.expiration_time)
    except ValueError as e:
        raise CredentialError(f"invalid expiration time {credential.expiration_time!r}: {e}") from e
    if expires_at is not None and expires_at <= now:
        raise CredentialError(f"credential expired at {credential.expiration_time}")

    if credential.format not in CREDENTIAL_FORMATS:
        raise CredentialError(f"unsupported credential format {credential.format!r}")
    algorithm, is_certificate, key_type = CREDENTIAL_FORMATS[credential.format]
    if algorithm != token_algorithm:
        return None

    material = credential.public_key.encode()
    try:
        if is_certificate:
            public_key = x509.load_pem_x509_certificate(material).public_key()
        else:
            public_key = serialization.load_pem_public_key(material)
    except ValueError as e:
        raise CredentialError(f"invalid {credential.format} key: {e}") from e
    if not isinstance(public_key, key_type):
        raise CredentialError(f"{credential.format} credential holds a {type(public_key).__name__}")

    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()


def _timestamp_claim(claims: dict, name: str) -> datetime:
    value = claims.get(name)
    if value is None:
        raise MalformedTokenError(f"missing {name} claim")
    try:
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedTokenError(f"invalid {name} claim: {e}") from e


class DeviceAuthValidator:
    """Validates device-signed tokens against the device registry."""

    def __init__(
        self,
        registry: DeviceRegistryClient,
        default_tenant_id: str,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.registry = registry
        self.default_tenant_id = default_tenant_id
        self.clock = clock

    def parse(self, token: str):
        """
        Parse a token without verifying it.

        Returns:
            (algorithm, claims)
        """
        try:
            header = jwt.get_unverified_header(token)
            claims = jwt.get_unverified_claims(token)
        except JWTError as e:
            raise MalformedTokenError(str(e)) from e
        algorithm = header.get("alg")
        if not algorithm:
            raise MalformedTokenError("missing alg header")
        return algorithm, claims

    async def validate(self, token: str) -> DeviceClaims:
        """
        Validate a device token.

        A registry that can't be reached rejects the device like an unknown
        one does.

        Raises:
            MalformedTokenError, ExpiredTokenError, UnauthorizedDeviceError
        """
        algorithm, claims = self.parse(token)

        device_id = claims.get("deviceId") or claims.get("device_id")
        if not device_id:
            raise MalformedTokenError("missing deviceId claim")
        tenant_id = claims.get("tenantId") or self.default_tenant_id

        now = self.clock()
        expires_at = _timestamp_claim(claims, "exp")
        issued_at = _timestamp_claim(claims, "iat")
        if now >= expires_at:
            raise ExpiredTokenError("token is expired")
        if issued_at > now:
            raise ExpiredTokenError("token used before issued")

        try:
            credentials = await self.registry.get_device_credentials(tenant_id, device_id)
        except NoSuchDroneError as e:
            raise UnauthorizedDeviceError(tenant_id, device_id) from e
        except UpstreamError as e:
            logger.warning(f"[AUTH] Could not fetch credentials of {tenant_id}/{device_id}: {e}")
            raise UnauthorizedDeviceError(tenant_id, device_id) from e
        key = self._select_key(credentials, algorithm, now, tenant_id, device_id)
        if key is None:
            raise UnauthorizedDeviceError(tenant_id, device_id)

        try:
            jwt.decode(
                token,
                key,
                algorithms=[algorithm],
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "verify_aud": False,
                },
            )
        except JWTError as e:
            logger.warning(f"[AUTH] Signature check failed for {tenant_id}/{device_id}: {e}")
            raise UnauthorizedDeviceError(tenant_id, device_id) from e

        return DeviceClaims(
            device_id=device_id,
            tenant_id=tenant_id,
            bag_name=claims.get("bagName", ""),
            expires_at=expires_at,
            issued_at=issued_at,
        )

    def _select_key(
        self,
        credentials: List[DeviceCredential],
        algorithm: str,
        now: datetime,
        tenant_id: str,
        device_id: str,
    ) -> Optional[str]:
        for index, credential in enumerate(credentials):
            try:
                key = credential_public_key(credential, algorithm, now)
            except CredentialError as e:
                logger.warning(f"[AUTH] Skipping credential {index} of {tenant_id}/{device_id}: {e}")
                continue
            if key is not None:
                return key
        return None
