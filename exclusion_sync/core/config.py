"""Configuration management using Pydantic settings."""

from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import InventorySourceKind, ManagedPlatform


AUDIT_LOG_PREFIX = "exclusion-sync"


class Settings(BaseSettings):
    """Run settings loaded from environment variables.

    Built once by the entry point and handed to every component; instances
    are frozen so nothing can mutate configuration mid-run.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
    )

    debug: bool = False
    dry_run: bool = False  # Plan and report, but never touch the exclusion store

    # Backup server connection (PowerShell remoting)
    vbr_server: str = "localhost"
    winrm_port: int = 5985
    winrm_username: Optional[str] = None
    winrm_password: Optional[str] = None
    winrm_auth: str = "negotiate"
    winrm_connection_timeout: float = 30.0  # network connect timeout in seconds
    winrm_operation_timeout: float = 20.0  # seconds to wait for WinRM calls
    winrm_read_timeout: float = 30.0  # HTTP read timeout in seconds

    # Reconciliation rule
    managed_platform: ManagedPlatform = ManagedPlatform.HYPERV
    include_management_sources: bool = False  # SCVMM / vCenter
    name_pattern: str = "-control-plan"
    min_name_length: int = 21
    note_prefix: str = "Auto-excluded by exclusion-sync"

    # Inventory collection
    query_timeout_seconds: float = 120.0
    collection_concurrency: int = 4

    # Reachability probe
    reachability_check_enabled: bool = True
    reachability_port: Optional[int] = None  # defaults to the managed platform's port
    reachability_timeout_ms: int = 1500

    # E-mail notification
    enable_email: bool = False
    smtp_server: Optional[str] = None
    smtp_port: int = 25
    smtp_use_tls: bool = False
    smtp_from: Optional[str] = None
    smtp_to: str = ""  # Comma-separated list of recipients
    smtp_subject: str = "Backup exclusion changes"
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None

    # Audit log
    log_folder: str = "logs"
    enable_audit: bool = True
    log_retention_days: int = 30

    def get_smtp_recipients(self) -> List[str]:
        """Parse comma-separated recipient list."""
        if not self.smtp_to:
            return []
        return [r.strip() for r in self.smtp_to.split(",") if r.strip()]

    def has_smtp_credential(self) -> bool:
        return bool(self.smtp_username and self.smtp_password)

    def get_reachability_port(self) -> int:
        """Port probed before querying a source."""
        if self.reachability_port is not None:
            return self.reachability_port
        return self.managed_platform.default_probe_port

    def get_source_kinds(self) -> List[InventorySourceKind]:
        """Source kinds collected for the managed platform."""
        return self.managed_platform.source_kinds(self.include_management_sources)


def load_settings(env_file: Optional[str] = None, **overrides) -> Settings:
    """Construct settings, optionally from an alternate ``.env`` file."""

    if env_file is not None:
        return Settings(_env_file=env_file, **overrides)
    return Settings(**overrides)
