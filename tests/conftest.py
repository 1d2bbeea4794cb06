"""
Test configuration and fixtures for pytest.

Fixtures build the coordinator around in-memory doubles: a fake cluster
client and a physics server served through httpx.MockTransport.
"""

import os
from datetime import datetime, timezone

import pytest


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables and registers custom markers.
    """
    # Set test environment variables BEFORE any app imports
    os.environ["SECRET_KEY"] = "test-secret-key-for-testing-only"
    os.environ["ENABLE_AUTH"] = "false"
    os.environ["DEPLOYMENT_MODE"] = "broker"
    os.environ["SIMULATION_COORDINATOR_NAMESPACE"] = "dronsole"
    os.environ["MISSION_DATA_DIRECTORY"] = "/data/missions"
    os.environ["LOG_LEVEL"] = "WARNING"

    # Import and clear settings cache after env vars are set
    from simulation_coordinator.config import get_settings
    get_settings.cache_clear()

    # Register custom markers
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "kubernetes: mark test as exercising the Kubernetes layer")


@pytest.fixture
def settings():
    from simulation_coordinator.config import Settings
    return Settings(enable_auth=False, secret_key="test-secret-key-for-testing-only")


@pytest.fixture
def fake_k8s():
    from tests.fakes import FakeKubernetesClient
    return FakeKubernetesClient()


@pytest.fixture
def physics_server():
    from tests.fakes import FakePhysicsServer
    return FakePhysicsServer()


@pytest.fixture
def fixed_now():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def coordinator(settings, fake_k8s, physics_server):
    """Coordinator wired to the fake cluster and physics server."""
    from unittest.mock import AsyncMock, MagicMock

    from simulation_coordinator.coordinator import build_coordinator
    from simulation_coordinator.services.registry import DeviceRegistryClient

    transport = MagicMock()
    transport.send_command = AsyncMock()
    transport.close = AsyncMock()
    registry = MagicMock(spec=DeviceRegistryClient)
    registry.close = AsyncMock()
    return build_coordinator(
        settings,
        fake_k8s,
        physics=physics_server.client(),
        registry=registry,
        transport=transport,
    )
