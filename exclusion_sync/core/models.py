"""Data models for a reconciliation run."""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ManagedPlatform(str, Enum):
    """Virtualization platform whose exclusions this job governs."""
    HYPERV = "HyperV"
    VMWARE = "VMware"

    def source_kinds(self, include_management: bool = False) -> List["InventorySourceKind"]:
        """Return the registered server kinds collected for this platform."""
        if self is ManagedPlatform.HYPERV:
            kinds = [InventorySourceKind.HV_SERVER, InventorySourceKind.HV_CLUSTER]
            if include_management:
                kinds.append(InventorySourceKind.SCVMM)
        else:
            kinds = [InventorySourceKind.ESXI]
            if include_management:
                kinds.append(InventorySourceKind.VCENTER)
        return kinds

    @property
    def default_probe_port(self) -> int:
        """Management port the platform's hosts listen on (WinRM or vSphere HTTPS)."""
        return 5985 if self is ManagedPlatform.HYPERV else 443


class InventorySourceKind(str, Enum):
    """Kind of registered virtualization server."""
    HV_SERVER = "HvServer"
    HV_CLUSTER = "HvCluster"
    SCVMM = "Scvmm"
    ESXI = "ESXi"
    VCENTER = "VC"


class InventorySource(BaseModel):
    """A virtualization host, cluster or management server registered on the backup server."""
    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    kind: InventorySourceKind
    address: str = ""


class ProbeResult(BaseModel):
    """Outcome of a single reachability probe."""
    reachable: bool
    reason_if_not: Optional[str] = None


class VmRecord(BaseModel):
    """A virtual machine reported by an inventory source."""
    model_config = ConfigDict(frozen=True)

    name: str
    source_id: str

    @property
    def key(self) -> str:
        return self.name.casefold()


class ExclusionEntry(BaseModel):
    """A global VM exclusion persisted on the backup server."""
    model_config = ConfigDict(frozen=True)

    name: str
    platform: ManagedPlatform
    note: Optional[str] = None

    @property
    def key(self) -> str:
        return self.name.casefold()


class SkippedSource(BaseModel):
    """A source that contributed no inventory this run, and why."""
    source: InventorySource
    reason: str


class CollectionOutcome(BaseModel):
    """Aggregate result of inventory collection."""
    queried_ok: int = 0
    total_sources: int = 0
    skipped: List[SkippedSource] = Field(default_factory=list)

    @property
    def degraded(self) -> bool:
        """True when no source could be queried, so ground truth is unknown."""
        return self.queried_ok == 0


class ChangeSet(BaseModel):
    """Exclusions to add and remove, each unique by case-insensitive name."""
    model_config = ConfigDict(frozen=True)

    to_add: Tuple[VmRecord, ...] = ()
    to_remove: Tuple[ExclusionEntry, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.to_add and not self.to_remove


class AppliedResult(BaseModel):
    """Names actually added to / removed from the exclusion store."""
    added_names: List[str] = Field(default_factory=list)
    removed_names: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added_names or self.removed_names)


class RunReport(BaseModel):
    """Summary of one reconciliation pass."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    dry_run: bool = False
    total_sources: int = 0
    queried_ok: int = 0
    skipped: List[SkippedSource] = Field(default_factory=list)
    vm_count: int = 0
    candidate_count: int = 0
    applied: AppliedResult = Field(default_factory=AppliedResult)
    notification_sent: bool = False
