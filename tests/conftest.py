"""Shared fixtures for the exclusion-sync test suite."""

import os
from typing import Dict, List, Optional, Sequence

import pytest

from exclusion_sync.core.config import Settings
from exclusion_sync.core.models import (
    ExclusionEntry,
    InventorySource,
    InventorySourceKind,
    ManagedPlatform,
    ProbeResult,
    VmRecord,
)

# Keep a developer's .env or exported variables out of the tests
for _name in list(os.environ):
    if _name.upper().startswith(("SMTP_", "WINRM_", "VBR_")):
        os.environ.pop(_name)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def make_settings(tmp_path):
    """Build settings without reading any .env file."""

    def _make(**overrides) -> Settings:
        values = {
            "name_pattern": "-control-plan",
            "min_name_length": 21,
            "log_folder": str(tmp_path / "logs"),
            "enable_audit": False,
            "reachability_check_enabled": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


def make_source(name: str, kind: InventorySourceKind = InventorySourceKind.HV_SERVER, address: Optional[str] = None) -> InventorySource:
    return InventorySource(
        id=f"id-{name}",
        display_name=name,
        kind=kind,
        address=name if address is None else address,
    )


class FakeBackupClient:
    """In-memory stand-in for the backup server."""

    def __init__(
        self,
        sources: Sequence[InventorySource] = (),
        inventory: Optional[Dict[str, List[str]]] = None,
        exclusions: Sequence[ExclusionEntry] = (),
        *,
        failing_sources: Optional[Dict[str, Exception]] = None,
        platform: ManagedPlatform = ManagedPlatform.HYPERV,
    ):
        self.sources = list(sources)
        self.inventory = inventory or {}
        self.exclusions = list(exclusions)
        self.failing_sources = failing_sources or {}
        self.platform = platform
        self.connect_error: Optional[Exception] = None
        self.add_error: Optional[Exception] = None
        self.remove_error: Optional[Exception] = None
        self.queried: List[str] = []
        self.add_calls: List[tuple] = []
        self.remove_calls: List[list] = []

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error

    async def list_registered_sources(self, kinds):
        return [source for source in self.sources if source.kind in kinds]

    async def query_source(self, source: InventorySource) -> List[VmRecord]:
        self.queried.append(source.display_name)
        if source.display_name in self.failing_sources:
            raise self.failing_sources[source.display_name]
        return [
            VmRecord(name=name, source_id=source.id)
            for name in self.inventory.get(source.display_name, [])
        ]

    async def list_exclusions(self) -> List[ExclusionEntry]:
        return list(self.exclusions)

    async def add_exclusions(self, records, note: str) -> List[str]:
        self.add_calls.append((list(records), note))
        if self.add_error is not None:
            raise self.add_error
        for record in records:
            self.exclusions.append(ExclusionEntry(name=record.name, platform=self.platform, note=note))
        return [record.name for record in records]

    async def remove_exclusions(self, entries) -> List[str]:
        self.remove_calls.append(list(entries))
        if self.remove_error is not None:
            raise self.remove_error
        keys = {entry.key for entry in entries}
        self.exclusions = [entry for entry in self.exclusions if entry.key not in keys]
        return [entry.name for entry in entries]


class FakeProber:
    """Reachability prober answering from a fixed set of reachable addresses."""

    def __init__(self, reachable: Sequence[str] = ()):
        self.reachable = set(reachable)
        self.checked: List[str] = []
        self.ports: List[int] = []

    async def check(self, address: str, port: int, timeout_ms: int) -> ProbeResult:
        self.checked.append(address)
        self.ports.append(port)
        if address in self.reachable:
            return ProbeResult(reachable=True)
        return ProbeResult(reachable=False, reason_if_not=f"timed out after {timeout_ms} ms")

    async def probe(self, address: str, port: int, timeout_ms: int) -> bool:
        return (await self.check(address, port, timeout_ms)).reachable


class FakeTransport:
    """Mail transport recording messages instead of sending them."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.sent: List[dict] = []

    def send(self, to, sender, subject, body) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append({"to": list(to), "sender": sender, "subject": subject, "body": body})


@pytest.fixture
def fakes():
    """Expose the fake collaborators and source builder to test modules."""

    class _Fakes:
        BackupClient = FakeBackupClient
        Prober = FakeProber
        Transport = FakeTransport
        source = staticmethod(make_source)

    return _Fakes
