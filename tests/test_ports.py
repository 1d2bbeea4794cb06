"""
Tests for simulation port range allocation.
"""

from datetime import timedelta

import pytest

from kubernetes import client

from simulation_coordinator.services.namespaces import NamespaceProvisioner, SimulationType
from simulation_coordinator.services.ports import (
    GLOBAL_PORT_RANGE_START,
    PORT_RANGE_SIZE,
    PORT_RANGE_START_ANNOTATION,
    PortRangeAllocator,
    collect_range_starts,
    find_free_range,
)


def _namespace(name, range_start=None):
    annotations = {}
    if range_start is not None:
        annotations[PORT_RANGE_START_ANNOTATION] = str(range_start)
    return client.V1Namespace(metadata=client.V1ObjectMeta(name=name, annotations=annotations))


@pytest.mark.unit
class TestFindFreeRange:
    def test_empty_cluster_starts_at_base(self):
        assert find_free_range([]) == GLOBAL_PORT_RANGE_START

    def test_fills_the_first_gap(self):
        base = GLOBAL_PORT_RANGE_START
        starts = [base, base + 2 * PORT_RANGE_SIZE]
        assert find_free_range(starts) == base + PORT_RANGE_SIZE

    def test_skips_ranges_overlapping_the_candidate(self):
        base = GLOBAL_PORT_RANGE_START
        start = find_free_range([base + 2])
        assert start == base + 2 + PORT_RANGE_SIZE

    def test_ignores_ranges_below_base(self):
        assert find_free_range([100, 200]) == GLOBAL_PORT_RANGE_START


@pytest.mark.unit
class TestPortRangeAllocator:
    @pytest.mark.asyncio
    async def test_sequential_allocations_are_disjoint(self, fake_k8s):
        """Each allocation observes the previous ones through namespace metadata."""
        provisioner = NamespaceProvisioner(fake_k8s, PortRangeAllocator(fake_k8s), default_expiry=timedelta(hours=1))
        ranges = []
        for i in range(6):
            ns = await provisioner.create_namespace(f"sim-{i}", sim_id=f"id-{i}", sim_type=SimulationType.GLOBAL)
            start = int(ns.metadata.annotations[PORT_RANGE_START_ANNOTATION])
            ranges.append(set(range(start, start + PORT_RANGE_SIZE)))

        for i, a in enumerate(ranges):
            for b in ranges[i + 1:]:
                assert not a & b

    @pytest.mark.asyncio
    async def test_freed_range_is_reused(self, fake_k8s):
        provisioner = NamespaceProvisioner(fake_k8s, PortRangeAllocator(fake_k8s), default_expiry=timedelta(hours=1))
        for i in range(3):
            await provisioner.create_namespace(f"sim-{i}", sim_id=f"id-{i}", sim_type=SimulationType.GLOBAL)
        await fake_k8s.delete_namespace("sim-1")

        assert await PortRangeAllocator(fake_k8s).allocate_range() == GLOBAL_PORT_RANGE_START + PORT_RANGE_SIZE

    @pytest.mark.asyncio
    async def test_invalid_annotations_do_not_block_allocation(self, fake_k8s):
        fake_k8s.namespaces["broken"] = _namespace("broken", "not-a-port")
        fake_k8s.namespaces["ok"] = _namespace("ok", GLOBAL_PORT_RANGE_START)

        start = await PortRangeAllocator(fake_k8s).allocate_range()

        assert start == GLOBAL_PORT_RANGE_START + PORT_RANGE_SIZE

    def test_collect_reports_parse_failures(self):
        starts, errors = collect_range_starts([
            _namespace("a", 38400),
            _namespace("b", "x"),
            _namespace("c"),
        ])
        assert starts == [38400]
        assert len(errors) == 1
        assert "namespace b" in str(errors)
