"""WinRM service for executing PowerShell on the backup server."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from time import perf_counter
from typing import Any, Iterable, Iterator, List, Optional

from pypsrp.exceptions import (
    AuthenticationError,
    WinRMError,
    WinRMTransportError as PyWinRMTransportError,
)
from pypsrp.powershell import PowerShell, RunspacePool
from pypsrp.wsman import WSMan

from ..core.config import Settings

logger = logging.getLogger(__name__)

EXIT_SENTINEL = "__EXCLUSION_SYNC_EXIT_CODE__:"


class WinRMServiceError(RuntimeError):
    """Base exception for WinRM service failures."""


class WinRMAuthenticationError(WinRMServiceError):
    """Raised when authentication to a host fails."""


class WinRMTransportError(WinRMServiceError):
    """Raised for lower-level transport failures."""


def _stringify(item: Any) -> str:
    """Best-effort string conversion for PSRP output and error records."""

    if item is None:
        return ""
    if isinstance(item, str):
        return item

    formatter = getattr(item, "to_string", None)
    if callable(formatter):
        try:
            text = formatter()
            if text:
                return str(text)
        except Exception:  # pragma: no cover - defensive logging
            logger.debug("Failed to format PSRP object via to_string", exc_info=True)
    elif isinstance(formatter, str) and formatter.strip():
        return formatter

    return str(item)


def _format_output_preview(output: str, *, max_length: int = 400) -> str:
    """Return a newline-prefixed preview of command output."""
    if not output:
        return ""

    sanitized = output.replace("\r\n", "\n").strip()
    if not sanitized:
        return ""

    if len(sanitized) > max_length:
        preview = sanitized[: max_length - 3] + "..."
    else:
        preview = sanitized

    return "\n" + preview


def split_exit_code(lines: Iterable[str]) -> tuple[List[str], Optional[int]]:
    """Separate the exit code sentinel from ordinary output lines."""

    kept: List[str] = []
    exit_code: Optional[int] = None
    for line in lines:
        if line.startswith(EXIT_SENTINEL):
            parsed = line[len(EXIT_SENTINEL) :].strip()
            try:
                exit_code = int(parsed)
            except ValueError:
                logger.warning("Received malformed exit code sentinel '%s'", parsed)
            continue
        kept.append(line)
    return kept, exit_code


class WinRMService:
    """Run PowerShell commands on a Windows server over PSRP."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @contextmanager
    def _session(self, hostname: str) -> Iterator[RunspacePool]:
        """Yield an opened runspace pool for the target host."""

        wsman = self._create_session(hostname)
        pool = self._open_runspace_pool(hostname, wsman)
        try:
            yield pool
        finally:
            try:
                pool.close()
            finally:
                self._dispose_session(wsman)

    def _create_session(self, hostname: str) -> WSMan:
        """Create a new WSMan session using configured credentials."""

        settings = self._settings
        connection_timeout = int(max(1.0, float(settings.winrm_connection_timeout)))
        operation_timeout = int(max(1.0, float(settings.winrm_operation_timeout)))
        read_timeout = int(max(1.0, float(settings.winrm_read_timeout)))
        # WSMan requires the read timeout to exceed the operation timeout
        read_timeout = max(read_timeout, operation_timeout + 1)
        auth = settings.winrm_auth.lower()

        logger.info(
            "Creating WinRM (PSRP) session to %s (port=%s, transport=%s, username=%s)",
            hostname,
            settings.winrm_port,
            auth,
            settings.winrm_username or "<current ticket>",
        )

        try:
            session = WSMan(
                hostname,
                port=settings.winrm_port,
                username=settings.winrm_username,
                password=settings.winrm_password,
                auth=auth,
                ssl=settings.winrm_port == 5986,
                cert_validation=False,
                connection_timeout=connection_timeout,
                operation_timeout=operation_timeout,
                read_timeout=read_timeout,
            )
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            logger.error("Authentication failed while connecting to %s: %s", hostname, exc)
            raise WinRMAuthenticationError(str(exc)) from exc
        except (PyWinRMTransportError, WinRMError) as exc:  # pragma: no cover - network heavy
            logger.error("Failed to create WSMan session to %s: %s", hostname, exc)
            raise WinRMTransportError(str(exc)) from exc

        return session

    def execute_ps_command(self, hostname: str, command: str) -> tuple[str, str, int]:
        """Execute a PowerShell command and return ``(stdout, stderr, exit_code)``."""

        truncated = command.replace("\n", " ")
        if len(truncated) > 120:
            truncated = f"{truncated[:117]}..."
        logger.debug("Executing PowerShell command on %s: %s", hostname, truncated)

        script = self.wrap_command(command)
        with self._session(hostname) as pool:
            stdout_lines, stderr_lines, exit_code, duration = self._invoke(pool, hostname, script)

        stdout = "\n".join(stdout_lines)
        stderr = "\n".join(stderr_lines)

        logger.debug(
            "Command on %s completed in %.2fs with exit code %s (stdout=%d bytes, stderr=%d bytes)",
            hostname,
            duration,
            exit_code,
            len(stdout.encode("utf-8")),
            len(stderr.encode("utf-8")),
        )
        stderr_preview = _format_output_preview(stderr)
        if stderr_preview and exit_code != 0:
            logger.warning("Command stderr preview on %s:%s", hostname, stderr_preview)

        return stdout, stderr, exit_code

    def _invoke(
        self, pool: RunspacePool, hostname: str, script: str
    ) -> tuple[List[str], List[str], int, float]:
        """Run the provided script in the supplied runspace pool."""

        ps = PowerShell(pool)
        ps.add_script(script)

        start_time = perf_counter()
        try:
            ps.invoke()
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            logger.error("Authentication failure while executing command on %s: %s", hostname, exc)
            raise WinRMAuthenticationError(str(exc)) from exc
        except WinRMError as exc:  # pragma: no cover - network heavy
            logger.error("WinRM execution failed on %s: %s", hostname, exc)
            raise WinRMTransportError(str(exc)) from exc
        duration = perf_counter() - start_time

        stdout_lines, exit_code = split_exit_code(
            text for text in (_stringify(item) for item in ps.output) if text
        )
        stderr_lines = [text for text in (_stringify(item) for item in ps.streams.error) if text]

        if exit_code is None:
            exit_code = 1 if getattr(ps, "had_errors", False) else 0

        return stdout_lines, stderr_lines, exit_code, duration

    @staticmethod
    def wrap_command(command: str) -> str:
        """Embed the requested command in exit-code handling boilerplate."""

        boilerplate = [
            "$ErrorActionPreference = 'Stop'",
            "$ProgressPreference = 'SilentlyContinue'",
            "$SyncExitCode = 0",
            "try {",
            "    & {",
            "        " + command.replace("\n", "\n        "),
            "    }",
            "} catch {",
            "    $SyncExitCode = 1",
            "    Write-Error -Message $_.Exception.Message -ErrorAction Continue",
            "}",
            f'Write-Output "{EXIT_SENTINEL}$SyncExitCode"',
        ]
        return "\n".join(boilerplate)

    @staticmethod
    def ps_quote(value: str) -> str:
        """Return a single-quoted PowerShell literal."""

        escaped = (value or "").replace("'", "''")
        return f"'{escaped}'"

    def _dispose_session(self, session: WSMan) -> None:
        """Attempt to close transport resources for a WSMan session."""

        closer = getattr(session, "close", None)
        if callable(closer):
            try:
                closer()
            except Exception:  # pragma: no cover - best effort cleanup
                logger.debug("Failed to close WSMan session cleanly", exc_info=True)

    def _open_runspace_pool(self, hostname: str, wsman: WSMan) -> RunspacePool:
        """Open a runspace pool and translate connection errors."""

        pool = RunspacePool(wsman)
        try:
            pool.open()
        except AuthenticationError as exc:  # pragma: no cover - network heavy
            logger.error(
                "Authentication failure while opening runspace pool on %s: %s",
                hostname,
                exc,
            )
            self._dispose_session(wsman)
            raise WinRMAuthenticationError(str(exc)) from exc
        except (PyWinRMTransportError, WinRMError) as exc:  # pragma: no cover - network heavy
            logger.error(
                "Transport error while opening runspace pool on %s: %s",
                hostname,
                exc,
            )
            self._dispose_session(wsman)
            raise WinRMTransportError(str(exc)) from exc

        return pool


__all__ = [
    "WinRMService",
    "WinRMServiceError",
    "WinRMAuthenticationError",
    "WinRMTransportError",
    "split_exit_code",
]
