"""Command-line entry point for a single reconciliation run."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from .core.audit_log import audit_log
from .core.config import Settings, load_settings
from .core.config_validation import ConfigValidationResult, run_config_checks
from .services.backup_client import BackupPlatformUnavailableError
from .services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="exclusion-sync",
        description=(
            "Reconcile the backup server's global VM exclusions with the live "
            "virtualization inventory using a VM naming convention."
        ),
    )
    parser.add_argument("--env-file", metavar="PATH", help="Load settings from this .env file")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Plan and report changes without touching the exclusion store",
    )
    parser.add_argument("--debug", action="store_true", default=None, help="Enable debug logging")
    parser.add_argument(
        "--check-config",
        action="store_true",
        help="Validate configuration and exit",
    )
    return parser


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    # pypsrp/requests chatter drowns the run log at DEBUG
    for noisy in ("pypsrp", "requests_credssp", "urllib3", "spnego"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _log_config_result(result: ConfigValidationResult) -> None:
    for issue in result.errors:
        logger.error("Configuration error: %s", issue.message)
        if issue.hint:
            logger.error("Hint: %s", issue.hint)
    for issue in result.warnings:
        logger.warning("Configuration warning: %s", issue.message)
        if issue.hint:
            logger.warning("Hint: %s", issue.hint)


def _install_signal_handlers(loop: asyncio.AbstractEventLoop, stop_event: asyncio.Event) -> None:
    """Turn SIGINT/SIGTERM into a request to abandon in-flight collection."""

    def _request_stop(signame: str) -> None:
        if stop_event.is_set():
            logger.warning("Received %s; stop already requested", signame)
            return
        logger.warning(
            "Received %s; abandoning in-flight inventory queries. "
            "Stages after collection still run to completion.",
            signame,
        )
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig.name)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows event loops
            logger.debug("Signal handler for %s not supported on this platform", sig.name)


def _remove_signal_handlers(loop: asyncio.AbstractEventLoop) -> None:
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - Windows event loops
            logger.debug("Signal handler for %s not supported on this platform", sig.name)


async def run_once(settings: Settings, service: Optional[ReconciliationService] = None) -> int:
    """Run one reconciliation pass and return the process exit code."""

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    _install_signal_handlers(loop, stop_event)

    service = service or ReconciliationService(settings)
    try:
        await service.run(stop_event)
    except BackupPlatformUnavailableError as exc:
        logger.error("Fatal: %s", exc)
        return EXIT_FATAL
    finally:
        _remove_signal_handlers(loop)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    overrides = {}
    if args.dry_run is not None:
        overrides["dry_run"] = args.dry_run
    if args.debug is not None:
        overrides["debug"] = args.debug

    try:
        settings = load_settings(args.env_file, **overrides)
    except ValidationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("Invalid configuration: %s", exc)
        return EXIT_CONFIG

    _configure_logging(settings)

    with audit_log(settings) as audit_path:
        if audit_path is not None:
            logger.info("Writing audit log to %s", audit_path)

        config_result = run_config_checks(settings)
        _log_config_result(config_result)
        if config_result.has_errors:
            return EXIT_CONFIG
        if args.check_config:
            logger.info("Configuration is valid")
            return EXIT_OK

        return asyncio.run(run_once(settings))


if __name__ == "__main__":
    sys.exit(main())
