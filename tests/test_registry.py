"""
Tests for the device registry REST client.
"""

import base64
import json

import httpx
import pytest

from simulation_coordinator.errors import NoSuchDroneError, UpstreamError
from simulation_coordinator.services.registry import DeviceCredential, DeviceRegistryClient


def _registry(handler):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return DeviceRegistryClient("https://registry.test/v1/", "project", "europe-west1", http=http)


@pytest.mark.unit
class TestDeviceRegistryClient:
    @pytest.mark.asyncio
    async def test_credentials_in_registry_order(self):
        def handler(request):
            assert request.url.path == "/v1/projects/project/locations/europe-west1/registries/fleet/devices/alpha"
            return httpx.Response(200, json={"credentials": [
                {"publicKey": {"format": "RSA_X509_PEM", "key": "cert"}, "expirationTime": "1970-01-01T00:00:00Z"},
                {"publicKey": {"format": "ES256_PEM", "key": "ec"}},
            ]})

        credentials = await _registry(handler).get_device_credentials("fleet", "alpha")

        assert credentials == [
            DeviceCredential("cert", "RSA_X509_PEM", "1970-01-01T00:00:00Z"),
            DeviceCredential("ec", "ES256_PEM", ""),
        ]

    @pytest.mark.asyncio
    async def test_unknown_device(self):
        with pytest.raises(NoSuchDroneError):
            await _registry(lambda request: httpx.Response(404)).get_device_credentials("fleet", "ghost")

    @pytest.mark.asyncio
    async def test_registry_failure(self):
        with pytest.raises(UpstreamError):
            await _registry(lambda request: httpx.Response(503)).get_device_credentials("fleet", "alpha")

    @pytest.mark.asyncio
    async def test_send_command(self):
        sent = []

        def handler(request):
            sent.append((request.url.path, json.loads(request.content)))
            return httpx.Response(200, json={})

        await _registry(handler).send_command("fleet", "alpha", "control", b'{"Command": "land"}')

        path, body = sent[0]
        assert path.endswith("/devices/alpha:sendCommandToDevice")
        assert body["subfolder"] == "control"
        assert base64.b64decode(body["binaryData"]) == b'{"Command": "land"}'

    @pytest.mark.asyncio
    async def test_send_command_to_disconnected_device(self):
        def handler(request):
            return httpx.Response(400, text="device is not connected")

        with pytest.raises(UpstreamError, match="device is not connected"):
            await _registry(handler).send_command("fleet", "alpha", "control", b"{}")
