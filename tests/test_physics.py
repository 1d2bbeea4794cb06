"""
Tests for the physics server client.
"""

import httpx
import pytest

from simulation_coordinator.errors import UpstreamError
from simulation_coordinator.services.physics import PhysicsServerClient


def _client(handler, attempts=3):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PhysicsServerClient(http=http, start_attempts=attempts, start_wait=0)


@pytest.mark.unit
class TestPhysicsServerClient:
    @pytest.mark.asyncio
    async def test_start_retries_until_server_is_up(self):
        requests = []

        def handler(request):
            requests.append(request)
            if len(requests) < 3:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(200)

        await _client(handler).start_simulation("sim-a", "empty.world")

        assert len(requests) == 3
        assert requests[0].url.host == "gzserver-svc.sim-a"
        assert requests[0].url.path == "/simulation/start"

    @pytest.mark.asyncio
    async def test_start_gives_up_after_all_attempts(self):
        def handler(request):
            return httpx.Response(503, text="still loading")

        with pytest.raises(UpstreamError, match="503"):
            await _client(handler, attempts=2).start_simulation("sim-a", "empty.world")

    @pytest.mark.asyncio
    async def test_connection_errors_become_upstream_errors(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(UpstreamError, match="could not start simulation sim-a"):
            await _client(handler, attempts=2).start_simulation("sim-a", "empty.world")

    @pytest.mark.asyncio
    async def test_list_and_add_drones(self):
        drones = []

        def handler(request):
            if request.method == "POST":
                drones.append(request.content)
                return httpx.Response(201)
            return httpx.Response(200, json=[{"device_id": "alpha"}])

        physics = _client(handler)
        await physics.add_drone("sim-a", {"device_id": "alpha"})

        assert len(drones) == 1
        assert await physics.list_drones("sim-a") == [{"device_id": "alpha"}]

    @pytest.mark.asyncio
    async def test_add_drone_rejected(self):
        def handler(request):
            return httpx.Response(400, text="unknown world")

        with pytest.raises(UpstreamError, match="400"):
            await _client(handler).add_drone("sim-a", {"device_id": "alpha"})
