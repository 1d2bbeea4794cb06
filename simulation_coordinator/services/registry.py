"""
Device registry REST client.

Reads registered device credentials and relays commands to devices through
the cloud IoT registry. A tenant maps onto one registry.
"""

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from ..errors import NoSuchDroneError, UpstreamError

logger = logging.getLogger(__name__)


@dataclass
class DeviceCredential:
    public_key: str
    format: str
    expiration_time: str = ""


class DeviceRegistryClient:
    def __init__(
        self,
        base_url: str,
        project_id: str,
        region: str,
        token: str = "",
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.region = region
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self.http = http or httpx.AsyncClient(timeout=10.0, headers=headers)

    def device_path(self, tenant_id: str, device_id: str) -> str:
        return (f"{self.base_url}/projects/{self.project_id}/locations/{self.region}"
                f"/registries/{tenant_id}/devices/{device_id}")

    async def get_device_credentials(self, tenant_id: str, device_id: str) -> List[DeviceCredential]:
        """
        Fetch a device's registered credentials, in registry order.

        Raises:
            NoSuchDroneError: if the registry doesn't know the device
            UpstreamError: if the registry couldn't be queried
        """
        try:
            response = await self.http.get(
                self.device_path(tenant_id, device_id),
                params={"fieldMask": "credentials"},
            )
        except httpx.HTTPError as e:
            raise UpstreamError(f"device registry unreachable: {e}") from e
        if response.status_code == 404:
            raise NoSuchDroneError(device_id, f"not registered in {tenant_id}")
        if response.status_code != 200:
            raise UpstreamError(f"device registry returned {response.status_code} for {tenant_id}/{device_id}")

        credentials = []
        for entry in response.json().get("credentials", []):
            public_key = entry.get("publicKey") or {}
            credentials.append(DeviceCredential(
                public_key=public_key.get("key", ""),
                format=public_key.get("format", ""),
                expiration_time=entry.get("expirationTime", ""),
            ))
        return credentials

    async def send_command(self, tenant_id: str, device_id: str, subfolder: str, payload: bytes) -> None:
        """Send a command to a connected device."""
        url = f"{self.device_path(tenant_id, device_id)}:sendCommandToDevice"
        body = {
            "binaryData": base64.b64encode(payload).decode(),
            "subfolder": subfolder,
        }
        try:
            response = await self.http.post(url, json=body)
        except httpx.HTTPError as e:
            raise UpstreamError(f"device registry unreachable: {e}") from e
        if response.status_code != 200:
            raise UpstreamError(
                f"sending command to {tenant_id}/{device_id} failed with {response.status_code}: {response.text.strip()}"
            )
        logger.info(f"[REGISTRY] Sent {subfolder} command to {tenant_id}/{device_id}")

    async def close(self) -> None:
        await self.http.aclose()
