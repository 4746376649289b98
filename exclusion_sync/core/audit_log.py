"""Per-run audit log file."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterator, Optional

from .config import AUDIT_LOG_PREFIX, Settings

logger = logging.getLogger(__name__)

AUDIT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def audit_log_filename(started_at: datetime) -> str:
    return f"{AUDIT_LOG_PREFIX}_{started_at:%Y%m%d-%H%M%S}.log"


def prune_audit_logs(folder: Path, retention_days: int, *, now: Optional[datetime] = None) -> int:
    """Delete audit files older than ``retention_days``. Returns the count removed."""

    if retention_days <= 0 or not folder.is_dir():
        return 0

    cutoff = (now or datetime.now()) - timedelta(days=retention_days)
    removed = 0
    for path in folder.glob(f"{AUDIT_LOG_PREFIX}_*.log"):
        try:
            modified = datetime.fromtimestamp(path.stat().st_mtime)
            if modified < cutoff:
                path.unlink()
                removed += 1
        except OSError as exc:
            logger.warning("Unable to prune audit log %s: %s", path, exc)

    if removed:
        logger.info("Pruned %d audit log(s) older than %d day(s)", removed, retention_days)
    return removed


@contextmanager
def audit_log(settings: Settings, *, started_at: Optional[datetime] = None) -> Iterator[Optional[Path]]:
    """Mirror all log records of the run into a timestamped file.

    Yields the file path, or ``None`` when auditing is disabled. The handler
    is detached and closed on every exit path.
    """

    if not settings.enable_audit:
        yield None
        return

    folder = Path(settings.log_folder)
    path = folder / audit_log_filename(started_at or datetime.now())
    try:
        folder.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, encoding="utf-8")
    except OSError as exc:
        logger.warning("Audit log disabled for this run; cannot write to %s: %s", folder, exc)
        yield None
        return

    handler.setLevel(logging.DEBUG if settings.debug else logging.INFO)
    handler.setFormatter(logging.Formatter(AUDIT_LOG_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    logger.info("Audit log started at %s", path)
    try:
        prune_audit_logs(folder, settings.log_retention_days)
        yield path
    finally:
        logger.info("Audit log closed")
        root.removeHandler(handler)
        try:
            handler.close()
        except Exception:  # pragma: no cover - best effort cleanup
            logger.debug("Failed to close audit log handler cleanly", exc_info=True)
