"""Veeam Backup & Replication client driven through PowerShell remoting.

Every call runs a short script on the backup server that loads the Veeam
PowerShell module and emits JSON. The client exposes two narrow surfaces:
the registry of virtualization servers (``list_registered_sources`` /
``query_source``) and the global VM exclusion store (``list_exclusions`` /
``add_exclusions`` / ``remove_exclusions``).
"""
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, List, Optional, Sequence

from ..core.config import Settings
from ..core.models import (
    ExclusionEntry,
    InventorySource,
    InventorySourceKind,
    ManagedPlatform,
    VmRecord,
)
from .winrm_service import WinRMService

logger = logging.getLogger(__name__)

VEEAM_MODULE_PREAMBLE = (
    "Import-Module Veeam.Backup.PowerShell -ErrorAction Stop -WarningAction SilentlyContinue "
    "-DisableNameChecking | Out-Null"
)

VM_ENTITY_TYPE = "vm"

# Wildcards matched against the exclusion's Platform property on the server
_PLATFORM_FILTERS = {
    ManagedPlatform.HYPERV: "*Hyper*",
    ManagedPlatform.VMWARE: "*VMware*",
}

_FIND_ENTITY_CMDLET = {
    ManagedPlatform.HYPERV: "Find-VBRHvEntity",
    ManagedPlatform.VMWARE: "Find-VBRViEntity",
}


class BackupClientError(RuntimeError):
    """Base exception for backup server failures."""


class BackupPlatformUnavailableError(BackupClientError):
    """Raised when the backup server cannot be reached, loaded or authenticated."""


class QueryError(BackupClientError):
    """Raised when a single inventory source cannot be queried."""

    def __init__(self, source: InventorySource, message: str):
        super().__init__(message)
        self.source = source
        self.message = message


class StoreError(BackupClientError):
    """Raised when the exclusion store rejects an add or remove."""

    def __init__(self, operation: str, message: str):
        super().__init__(message)
        self.operation = operation
        self.message = message


class _CommandFailed(Exception):
    """Internal signal for a non-zero exit or unusable output."""


def parse_platform(value: Any) -> Optional[ManagedPlatform]:
    """Map a Veeam platform label (``EHyperV``, ``VMware``...) to a managed platform."""

    text = str(value or "").casefold()
    if "hyper" in text:
        return ManagedPlatform.HYPERV
    if "vmware" in text or text in {"evmware", "vsphere"}:
        return ManagedPlatform.VMWARE
    return None


def _as_list(payload: Any) -> List[Any]:
    """ConvertTo-Json emits a bare object for single results."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    return [payload]


def _ps_array(values: Sequence[str]) -> str:
    quoted = ", ".join(WinRMService.ps_quote(value) for value in values)
    return f"@({quoted})"


class VeeamBackupClient:
    """Registry and exclusion-store collaborator backed by the Veeam PowerShell module."""

    def __init__(self, settings: Settings, winrm: Optional[WinRMService] = None):
        self._settings = settings
        self._winrm = winrm or WinRMService(settings)
        self._server = settings.vbr_server
        self._platform = settings.managed_platform
        self._timeout = max(1.0, float(settings.query_timeout_seconds))

    async def connect(self) -> None:
        """Verify the Veeam module loads and a backup server session is available."""

        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                "if (-not (Get-VBRServerSession)) { Connect-VBRServer -Server localhost }",
                "$session = Get-VBRServerSession",
                "[pscustomobject]@{ Server = \"$($session.Server)\"; User = \"$($session.User)\" }"
                " | ConvertTo-Json -Compress",
            ]
        )
        try:
            payload = await self._run_json(command, description="connect")
        except Exception as exc:
            logger.error("Unable to connect to backup server %s: %s", self._server, exc)
            raise BackupPlatformUnavailableError(
                f"Backup server {self._server} is unavailable: {exc}"
            ) from exc

        session = _as_list(payload)
        details = session[0] if session and isinstance(session[0], dict) else {}
        logger.info(
            "Connected to backup server %s (session server=%s, user=%s)",
            self._server,
            details.get("Server") or "<unknown>",
            details.get("User") or "<unknown>",
        )

    async def list_registered_sources(
        self, kinds: Sequence[InventorySourceKind]
    ) -> List[InventorySource]:
        """Return registered servers of the requested kinds, in server order."""

        kind_list = _ps_array([kind.value for kind in kinds])
        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                f"$servers = foreach ($type in {kind_list}) {{ Get-VBRServer -Type $type }}",
                "@($servers | ForEach-Object {",
                "    $address = $_.Info.DnsName",
                "    if (-not $address) { $address = $_.Name }",
                "    [pscustomobject]@{",
                "        Id = \"$($_.Id)\"",
                "        Name = $_.Name",
                "        Type = \"$($_.Type)\"",
                "        Address = \"$address\"",
                "    }",
                "}) | ConvertTo-Json -Compress -Depth 3",
            ]
        )
        try:
            payload = await self._run_json(command, description="list sources")
        except Exception as exc:
            raise BackupPlatformUnavailableError(
                f"Unable to list registered servers on {self._server}: {exc}"
            ) from exc

        sources: List[InventorySource] = []
        for item in _as_list(payload):
            if not isinstance(item, dict):
                continue
            try:
                kind = InventorySourceKind(str(item.get("Type")))
            except ValueError:
                logger.debug("Ignoring registered server of unsupported type %r", item.get("Type"))
                continue
            name = str(item.get("Name") or "")
            sources.append(
                InventorySource(
                    id=str(item.get("Id") or name),
                    display_name=name,
                    kind=kind,
                    address=str(item.get("Address") or "").strip(),
                )
            )

        logger.info(
            "Backup server reports %d registered source(s) of kind(s) %s",
            len(sources),
            ", ".join(kind.value for kind in kinds),
        )
        return sources

    async def query_source(self, source: InventorySource) -> List[VmRecord]:
        """Return the VMs visible through ``source``; other entity kinds are dropped."""

        cmdlet = _FIND_ENTITY_CMDLET[self._platform]
        source_id = WinRMService.ps_quote(source.id)
        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                f"$server = Get-VBRServer | Where-Object {{ \"$($_.Id)\" -eq {source_id} }}"
                " | Select-Object -First 1",
                "if (-not $server) { throw ('Server ' + "
                f"{WinRMService.ps_quote(source.display_name)} + ' is no longer registered') }}",
                f"@({cmdlet} -Server $server | ForEach-Object {{",
                "    [pscustomobject]@{ Name = $_.Name; Type = \"$($_.Type)\" }",
                "}) | ConvertTo-Json -Compress",
            ]
        )
        try:
            payload = await self._run_json(command, description=f"query {source.display_name}")
        except asyncio.TimeoutError as exc:
            raise QueryError(source, f"query timed out after {self._timeout:.0f}s") from exc
        except Exception as exc:
            raise QueryError(source, str(exc) or type(exc).__name__) from exc

        records: List[VmRecord] = []
        ignored = 0
        for item in _as_list(payload):
            if not isinstance(item, dict):
                ignored += 1
                continue
            name = str(item.get("Name") or "").strip()
            if str(item.get("Type") or "").casefold() != VM_ENTITY_TYPE or not name:
                ignored += 1
                continue
            records.append(VmRecord(name=name, source_id=source.id))

        if ignored:
            logger.debug("Ignored %d non-VM entities from %s", ignored, source.display_name)
        return records

    async def list_exclusions(self) -> List[ExclusionEntry]:
        """Return every global VM exclusion whose platform is recognised."""

        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                "@(Get-VBRVMExclusion | ForEach-Object {",
                "    [pscustomobject]@{ Name = $_.Name; Platform = \"$($_.Platform)\"; Note = $_.Note }",
                "}) | ConvertTo-Json -Compress",
            ]
        )
        try:
            payload = await self._run_json(command, description="list exclusions")
        except Exception as exc:
            raise BackupPlatformUnavailableError(
                f"Unable to read global exclusions on {self._server}: {exc}"
            ) from exc

        entries: List[ExclusionEntry] = []
        for item in _as_list(payload):
            if not isinstance(item, dict) or not item.get("Name"):
                continue
            platform = parse_platform(item.get("Platform"))
            if platform is None:
                logger.debug(
                    "Ignoring exclusion %s with unrecognised platform %r",
                    item.get("Name"),
                    item.get("Platform"),
                )
                continue
            entries.append(
                ExclusionEntry(name=str(item["Name"]), platform=platform, note=item.get("Note") or None)
            )
        return entries

    async def add_exclusions(self, records: Sequence[VmRecord], note: str) -> List[str]:
        """Add global exclusions for ``records`` in one batch; returns the names added."""

        if not records:
            return []

        cmdlet = _FIND_ENTITY_CMDLET[self._platform]
        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                f"$names = {_ps_array([record.name for record in records])}",
                "$entities = @(foreach ($name in $names) {",
                f"    {cmdlet} -Name $name | Where-Object {{ \"$($_.Type)\" -eq 'Vm' }} | Select-Object -First 1",
                "}) | Where-Object { $_ }",
                "$entities = @($entities)",
                "if ($entities.Count -gt 0) {",
                f"    Add-VBRVMExclusion -Entity $entities -Note {WinRMService.ps_quote(note)} | Out-Null",
                "}",
                "@($entities | ForEach-Object { $_.Name }) | ConvertTo-Json -Compress",
            ]
        )
        try:
            payload = await self._run_json(command, description="add exclusions")
        except Exception as exc:
            raise StoreError("add", str(exc) or type(exc).__name__) from exc

        added = [str(name) for name in _as_list(payload) if name]
        added_keys = {name.casefold() for name in added}
        missing = {record.name for record in records if record.key not in added_keys}
        if missing:
            logger.warning(
                "%d VM(s) could not be resolved for exclusion: %s",
                len(missing),
                ", ".join(sorted(missing)),
            )
        return added

    async def remove_exclusions(self, entries: Sequence[ExclusionEntry]) -> List[str]:
        """Remove the named global exclusions in one batch; returns the names removed."""

        if not entries:
            return []

        platform_filter = WinRMService.ps_quote(_PLATFORM_FILTERS[self._platform])
        command = "\n".join(
            [
                VEEAM_MODULE_PREAMBLE,
                f"$names = {_ps_array([entry.name for entry in entries])}",
                "$targets = @(Get-VBRVMExclusion | Where-Object {",
                f"    ($names -contains $_.Name) -and (\"$($_.Platform)\" -like {platform_filter})",
                "})",
                "if ($targets.Count -gt 0) {",
                "    Remove-VBRVMExclusion -Exclusion $targets -Confirm:$false | Out-Null",
                "}",
                "@($targets | ForEach-Object { $_.Name }) | ConvertTo-Json -Compress",
            ]
        )
        try:
            payload = await self._run_json(command, description="remove exclusions")
        except Exception as exc:
            raise StoreError("remove", str(exc) or type(exc).__name__) from exc

        return [str(name) for name in _as_list(payload) if name]

    async def _run_json(self, command: str, *, description: str) -> Any:
        """Run ``command`` on the backup server and decode its JSON output."""

        logger.debug("Running backup server operation (%s) on %s", description, self._server)
        stdout, stderr, exit_code = await asyncio.wait_for(
            asyncio.to_thread(self._winrm.execute_ps_command, self._server, command),
            timeout=self._timeout,
        )

        stdout = (stdout or "").strip().lstrip("\ufeff")
        if exit_code != 0:
            preview = (stderr or "").strip() or stdout
            raise _CommandFailed(preview[:500] if preview else f"{description} failed (exit={exit_code})")

        if not stdout:
            return None
        try:
            return json.loads(stdout)
        except json.JSONDecodeError as exc:
            logger.debug("Raw %s payload from %s: %s", description, self._server, stdout)
            raise _CommandFailed(f"Unparseable output from {description}: {exc}") from exc


__all__ = [
    "BackupClientError",
    "BackupPlatformUnavailableError",
    "QueryError",
    "StoreError",
    "VeeamBackupClient",
    "parse_platform",
]
