"""Tests for inventory collection."""

import asyncio

import pytest

from exclusion_sync.core.models import InventorySourceKind, VmRecord
from exclusion_sync.services.collector_service import ABORTED_REASON, InventoryCollector


@pytest.mark.anyio
async def test_collects_from_all_reachable_sources(make_settings, fakes):
    sources = [fakes.source("hv01"), fakes.source("cluster01", InventorySourceKind.HV_CLUSTER)]
    client = fakes.BackupClient(
        sources,
        inventory={"hv01": ["web-01", "db-01"], "cluster01": ["web-01"]},
    )
    collector = InventoryCollector(make_settings(), client)

    vms, outcome = await collector.collect(sources)

    assert sorted(vm.name for vm in vms) == ["db-01", "web-01", "web-01"]
    assert outcome.queried_ok == 2
    assert outcome.total_sources == 2
    assert outcome.skipped == []


@pytest.mark.anyio
async def test_query_failure_is_isolated(make_settings, fakes):
    sources = [fakes.source("hv01"), fakes.source("hv02"), fakes.source("hv03")]
    client = fakes.BackupClient(
        sources,
        inventory={"hv01": ["a"], "hv03": ["c"]},
        failing_sources={"hv02": RuntimeError("Access is denied")},
    )
    collector = InventoryCollector(make_settings(), client)

    vms, outcome = await collector.collect(sources)

    assert sorted(vm.name for vm in vms) == ["a", "c"]
    assert outcome.queried_ok == 2
    assert [(s.source.display_name, s.reason) for s in outcome.skipped] == [("hv02", "Access is denied")]


@pytest.mark.anyio
async def test_unreachable_sources_are_skipped_without_query(make_settings, fakes):
    sources = [fakes.source("hv01"), fakes.source("hv02")]
    client = fakes.BackupClient(sources, inventory={"hv01": ["a"], "hv02": ["b"]})
    prober = fakes.Prober(reachable=["hv01"])
    settings = make_settings(reachability_check_enabled=True, reachability_timeout_ms=250)
    collector = InventoryCollector(settings, client, prober)

    vms, outcome = await collector.collect(sources)

    assert [vm.name for vm in vms] == ["a"]
    assert client.queried == ["hv01"]
    assert outcome.skipped[0].source.display_name == "hv02"
    assert outcome.skipped[0].reason == "timed out after 250 ms"


@pytest.mark.anyio
async def test_probe_disabled_queries_every_source(make_settings, fakes):
    sources = [fakes.source("hv01"), fakes.source("hv02")]
    client = fakes.BackupClient(sources)
    prober = fakes.Prober(reachable=[])
    collector = InventoryCollector(make_settings(reachability_check_enabled=False), client, prober)

    _, outcome = await collector.collect(sources)

    assert prober.checked == []
    assert outcome.queried_ok == 2


@pytest.mark.anyio
async def test_source_without_address_is_skipped(make_settings, fakes):
    sources = [fakes.source("hv01", address="  ")]
    client = fakes.BackupClient(sources)
    collector = InventoryCollector(make_settings(), client)

    vms, outcome = await collector.collect(sources)

    assert vms == []
    assert client.queried == []
    assert outcome.skipped[0].reason == "no address"


@pytest.mark.anyio
async def test_all_sources_failing_reports_zero_queried(make_settings, fakes):
    sources = [fakes.source("hv01"), fakes.source("hv02"), fakes.source("hv03")]
    client = fakes.BackupClient(sources)
    collector = InventoryCollector(
        make_settings(reachability_check_enabled=True), client, fakes.Prober(reachable=[])
    )

    vms, outcome = await collector.collect(sources)

    assert vms == []
    assert outcome.queried_ok == 0
    assert outcome.degraded
    assert [s.source.display_name for s in outcome.skipped] == ["hv01", "hv02", "hv03"]


@pytest.mark.anyio
async def test_no_sources_returns_empty_outcome(make_settings, fakes):
    collector = InventoryCollector(make_settings(), fakes.BackupClient())

    vms, outcome = await collector.collect([])

    assert vms == []
    assert outcome.total_sources == 0
    assert outcome.queried_ok == 0


@pytest.mark.anyio
async def test_non_vm_entities_are_discarded(make_settings, fakes):
    source = fakes.source("hv01")

    class MixedRegistry:
        async def query_source(self, src):
            return [VmRecord(name="vm-1", source_id=src.id), {"Name": "Folder", "Type": "Folder"}, "host"]

    collector = InventoryCollector(make_settings(), MixedRegistry())

    vms, outcome = await collector.collect([source])

    assert [vm.name for vm in vms] == ["vm-1"]
    assert outcome.queried_ok == 1


@pytest.mark.anyio
async def test_slow_query_times_out(make_settings, fakes):
    source = fakes.source("hv01")

    class SlowRegistry:
        async def query_source(self, src):
            await asyncio.sleep(10)
            return []

    collector = InventoryCollector(make_settings(query_timeout_seconds=1), SlowRegistry())

    _, outcome = await collector.collect([source])

    assert outcome.queried_ok == 0
    assert outcome.skipped[0].reason == "query timed out after 1s"


@pytest.mark.anyio
async def test_stop_event_abandons_in_flight_sources(make_settings, fakes):
    fast = fakes.source("fast")
    stuck = fakes.source("stuck")
    release = asyncio.Event()

    class Registry:
        async def query_source(self, src):
            if src.display_name == "stuck":
                await release.wait()
            return [VmRecord(name=f"{src.display_name}-vm", source_id=src.id)]

    stop_event = asyncio.Event()
    collector = InventoryCollector(make_settings(collection_concurrency=2), Registry())

    task = asyncio.create_task(collector.collect([fast, stuck], stop_event))
    await asyncio.sleep(0.05)
    stop_event.set()
    vms, outcome = await asyncio.wait_for(task, timeout=2)

    assert [vm.name for vm in vms] == ["fast-vm"]
    assert outcome.queried_ok == 1
    assert [(s.source.display_name, s.reason) for s in outcome.skipped] == [("stuck", ABORTED_REASON)]


@pytest.mark.anyio
async def test_vmware_sources_probed_on_vsphere_port(make_settings, fakes):
    sources = [fakes.source("esx01", InventorySourceKind.ESXI)]
    client = fakes.BackupClient(sources, inventory={"esx01": ["a"]})
    prober = fakes.Prober(reachable=["esx01"])
    settings = make_settings(managed_platform="VMware", reachability_check_enabled=True)

    _, outcome = await InventoryCollector(settings, client, prober).collect(sources)

    assert prober.ports == [443]
    assert outcome.queried_ok == 1


@pytest.mark.anyio
async def test_explicit_probe_port_is_used(make_settings, fakes):
    sources = [fakes.source("hv01")]
    prober = fakes.Prober(reachable=["hv01"])
    settings = make_settings(reachability_check_enabled=True, reachability_port=5986)

    await InventoryCollector(settings, fakes.BackupClient(sources), prober).collect(sources)

    assert prober.ports == [5986]
