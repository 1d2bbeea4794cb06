"""
Tests for the expiry watcher.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from simulation_coordinator.errors import MultiError
from simulation_coordinator.services.expiry import ExpiryWatcher
from simulation_coordinator.services.namespaces import (
    EXPIRATION_ANNOTATION,
    TYPE_LABEL,
    TYPE_LABEL_VALUE,
    format_timestamp,
)


def _simulation_namespace(name, expiration):
    annotations = {}
    if expiration is not None:
        annotations[EXPIRATION_ANNOTATION] = expiration
    return client.V1Namespace(metadata=client.V1ObjectMeta(
        name=name,
        labels={TYPE_LABEL: TYPE_LABEL_VALUE},
        annotations=annotations,
    ))


@pytest.fixture
def populated_k8s(fake_k8s, fixed_now):
    for name, offset in (("expired", -10), ("future", 10), ("now", 0)):
        fake_k8s.namespaces[name] = _simulation_namespace(
            name, format_timestamp(fixed_now + timedelta(seconds=offset))
        )
    return fake_k8s


@pytest.mark.unit
class TestExpirySweep:
    @pytest.mark.asyncio
    async def test_only_past_expirations_are_deleted(self, populated_k8s, fixed_now):
        watcher = ExpiryWatcher(populated_k8s, interval_seconds=3600, clock=lambda: fixed_now)

        deleted = await watcher.sweep()

        assert deleted == ["expired"]
        assert sorted(populated_k8s.namespaces) == ["future", "now"]

    @pytest.mark.asyncio
    async def test_missing_annotation_is_skipped(self, fake_k8s, fixed_now):
        fake_k8s.namespaces["eternal"] = _simulation_namespace("eternal", None)
        watcher = ExpiryWatcher(fake_k8s, interval_seconds=3600, clock=lambda: fixed_now)

        assert await watcher.sweep() == []
        assert "eternal" in fake_k8s.namespaces

    @pytest.mark.asyncio
    async def test_non_simulation_namespaces_are_ignored(self, fake_k8s, fixed_now):
        fake_k8s.namespaces["kube-system"] = client.V1Namespace(metadata=client.V1ObjectMeta(
            name="kube-system",
            annotations={EXPIRATION_ANNOTATION: format_timestamp(fixed_now - timedelta(days=1))},
        ))
        watcher = ExpiryWatcher(fake_k8s, interval_seconds=3600, clock=lambda: fixed_now)

        assert await watcher.sweep() == []

    @pytest.mark.asyncio
    async def test_failures_are_collected_after_the_sweep(self, populated_k8s, fixed_now):
        populated_k8s.namespaces["bad"] = _simulation_namespace("bad", "not a time")
        populated_k8s.namespaces["expired-too"] = _simulation_namespace(
            "expired-too", format_timestamp(fixed_now - timedelta(hours=1))
        )
        populated_k8s.fail_next("delete_namespace", ApiException(status=500))
        watcher = ExpiryWatcher(populated_k8s, interval_seconds=3600, clock=lambda: fixed_now)

        with pytest.raises(MultiError) as exc_info:
            await watcher.sweep()

        # One of the two expired namespaces failed, the other was still deleted
        assert len(exc_info.value) == 2
        remaining = {"expired", "expired-too"} & set(populated_k8s.namespaces)
        assert len(remaining) == 1

    @pytest.mark.asyncio
    async def test_namespace_already_gone_is_not_reported(self, populated_k8s, fixed_now):
        populated_k8s.delete_namespace = AsyncMock(return_value=False)
        watcher = ExpiryWatcher(populated_k8s, interval_seconds=3600, clock=lambda: fixed_now)

        assert await watcher.sweep() == []
        populated_k8s.delete_namespace.assert_awaited_once_with("expired", grace_period_seconds=0)

    @pytest.mark.asyncio
    async def test_run_keeps_going_after_failures(self, fake_k8s, fixed_now):
        watcher = ExpiryWatcher(fake_k8s, interval_seconds=0, clock=lambda: fixed_now)
        calls = []

        async def failing_sweep():
            calls.append(1)
            if len(calls) >= 3:
                raise asyncio.CancelledError()
            raise RuntimeError("cluster unavailable")

        watcher.sweep = failing_sweep

        with pytest.raises(asyncio.CancelledError):
            await watcher.run()

        assert len(calls) == 3
