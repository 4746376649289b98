"""Configuration validation utilities."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Set

from .config import Settings
from .models import ManagedPlatform

VALID_WINRM_AUTH = {"negotiate", "kerberos", "ntlm", "basic", "credssp", "certificate"}


@dataclass
class ConfigIssue:
    """Represents a single configuration issue."""

    message: str
    hint: Optional[str] = None


@dataclass
class ConfigValidationResult:
    """Outcome of running configuration checks."""

    checked_at: datetime
    errors: List[ConfigIssue] = field(default_factory=list)
    warnings: List[ConfigIssue] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def has_warnings(self) -> bool:
        return bool(self.warnings)


def _warn(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.warnings.append(ConfigIssue(message=message, hint=hint))


def _error(result: ConfigValidationResult, message: str, hint: Optional[str] = None) -> None:
    result.errors.append(ConfigIssue(message=message, hint=hint))


def _field_was_provided(provided_fields: Set[str], field_name: str) -> bool:
    """Return True if the setting was explicitly provided via environment variables."""

    return field_name in provided_fields


def _check_port(result: ConfigValidationResult, name: str, value: int) -> None:
    if not 1 <= value <= 65535:
        _error(result, f"{name} must be between 1 and 65535 (got {value}).")


def run_config_checks(settings: Settings) -> ConfigValidationResult:
    """Validate configuration combinations before a run starts."""

    result = ConfigValidationResult(checked_at=datetime.now(timezone.utc))
    provided_fields = settings.model_fields_set

    # Naming rule
    if not settings.name_pattern.strip():
        _error(
            result,
            "NAME_PATTERN is empty.",
            "An empty pattern would match every VM; set NAME_PATTERN to the naming convention substring.",
        )
    if settings.min_name_length < 1:
        _error(
            result,
            "MIN_NAME_LENGTH must be at least 1.",
            "Set MIN_NAME_LENGTH to the shortest VM name that should be excluded.",
        )
    elif len(settings.name_pattern) > settings.min_name_length:
        _warn(
            result,
            "NAME_PATTERN is longer than MIN_NAME_LENGTH; the length threshold has no effect.",
        )
    if not _field_was_provided(provided_fields, "name_pattern"):
        _warn(
            result,
            f"NAME_PATTERN not provided; defaulting to '{settings.name_pattern}'.",
            "Set NAME_PATTERN explicitly to document intent.",
        )

    # Backup server connection
    if not settings.vbr_server.strip():
        _error(result, "VBR_SERVER is empty.", "Set VBR_SERVER to the backup server hostname.")
    _check_port(result, "WINRM_PORT", settings.winrm_port)
    if settings.winrm_auth.lower() not in VALID_WINRM_AUTH:
        _error(
            result,
            f"WINRM_AUTH '{settings.winrm_auth}' is not supported.",
            "Use one of: " + ", ".join(sorted(VALID_WINRM_AUTH)) + ".",
        )
    if bool(settings.winrm_username) != bool(settings.winrm_password):
        _error(
            result,
            "Only one of WINRM_USERNAME / WINRM_PASSWORD is set.",
            "Provide both, or neither to rely on an existing Kerberos ticket.",
        )
    for name in ("winrm_connection_timeout", "winrm_operation_timeout", "winrm_read_timeout"):
        if getattr(settings, name) <= 0:
            _error(result, f"{name.upper()} must be positive.")

    # Collection
    if settings.query_timeout_seconds <= 0:
        _error(result, "QUERY_TIMEOUT_SECONDS must be positive.")
    if settings.collection_concurrency < 1:
        _error(result, "COLLECTION_CONCURRENCY must be at least 1.")

    if settings.reachability_check_enabled:
        _check_port(result, "REACHABILITY_PORT", settings.get_reachability_port())
        if (
            settings.managed_platform is ManagedPlatform.VMWARE
            and settings.reachability_port == ManagedPlatform.HYPERV.default_probe_port
        ):
            _warn(
                result,
                "REACHABILITY_PORT is the WinRM port but MANAGED_PLATFORM is VMware.",
                "ESXi and vCenter servers listen on 443; unset REACHABILITY_PORT to probe the platform default.",
            )
        if settings.reachability_timeout_ms <= 0:
            _error(result, "REACHABILITY_TIMEOUT_MS must be positive.")
    else:
        _warn(
            result,
            "REACHABILITY_CHECK_ENABLED is false.",
            "Unreachable sources will only be detected by the inventory query timeout.",
        )

    # E-mail
    if settings.enable_email:
        if not settings.smtp_server:
            _error(result, "SMTP_SERVER is required when ENABLE_EMAIL is true.")
        if not settings.smtp_from:
            _error(result, "SMTP_FROM is required when ENABLE_EMAIL is true.")
        if not settings.get_smtp_recipients():
            _error(
                result,
                "SMTP_TO is required when ENABLE_EMAIL is true.",
                "Set SMTP_TO to a comma-separated list of recipients.",
            )
        _check_port(result, "SMTP_PORT", settings.smtp_port)
        if bool(settings.smtp_username) != bool(settings.smtp_password):
            _warn(
                result,
                "Only one of SMTP_USERNAME / SMTP_PASSWORD is set; mail will be sent unauthenticated.",
            )
        if settings.smtp_password and not settings.smtp_use_tls:
            _warn(
                result,
                "SMTP credentials will be sent without TLS.",
                "Set SMTP_USE_TLS=true when the relay supports STARTTLS.",
            )

    if settings.log_retention_days < 0:
        _error(result, "LOG_RETENTION_DAYS cannot be negative.", "Use 0 to keep audit logs forever.")

    if settings.dry_run:
        _warn(result, "DRY_RUN is enabled; no exclusions will be changed.")

    return result
