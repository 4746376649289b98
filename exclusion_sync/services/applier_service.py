"""Apply a change set to the global exclusion store."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Protocol, Sequence

from ..core.config import Settings
from ..core.models import AppliedResult, ChangeSet, ExclusionEntry, VmRecord
from ..core.naming import NamingRule

logger = logging.getLogger(__name__)


class ExclusionStore(Protocol):
    """Batch mutations of the backup server's global exclusions."""

    async def add_exclusions(self, records: Sequence[VmRecord], note: str) -> List[str]:
        """Add exclusions and return the names actually added."""

    async def remove_exclusions(self, entries: Sequence[ExclusionEntry]) -> List[str]:
        """Remove exclusions and return the names actually removed."""


class ChangeApplier:
    """Run the add batch and the remove batch independently of each other."""

    def __init__(self, settings: Settings, store: ExclusionStore, rule: NamingRule):
        self._settings = settings
        self._store = store
        self._rule = rule

    def build_note(self, now: Optional[datetime] = None) -> str:
        """Annotation attached to automated exclusions."""

        timestamp = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%SZ")
        return f"{self._settings.note_prefix} {timestamp} (rule: {self._rule.describe()})"

    async def apply(self, change_set: ChangeSet) -> AppliedResult:
        if change_set.is_empty:
            logger.info("No exclusion changes to apply")
            return AppliedResult()

        if self._settings.dry_run:
            for record in change_set.to_add:
                logger.info("[dry run] Would exclude %s", record.name)
            for entry in change_set.to_remove:
                logger.info("[dry run] Would remove exclusion %s", entry.name)
            return AppliedResult(
                added_names=[record.name for record in change_set.to_add],
                removed_names=[entry.name for entry in change_set.to_remove],
            )

        added = await self._add(change_set.to_add)
        removed = await self._remove(change_set.to_remove)
        return AppliedResult(added_names=added, removed_names=removed)

    async def _add(self, records: Sequence[VmRecord]) -> List[str]:
        if not records:
            return []

        note = self.build_note()
        logger.info("Adding %d global exclusion(s): %s", len(records), ", ".join(r.name for r in records))
        try:
            added = await self._store.add_exclusions(list(records), note)
        except Exception as exc:
            logger.error("Failed to add %d exclusion(s): %s", len(records), exc)
            return []

        logger.info("Added %d global exclusion(s)", len(added))
        return list(added)

    async def _remove(self, entries: Sequence[ExclusionEntry]) -> List[str]:
        if not entries:
            return []

        logger.info("Removing %d global exclusion(s): %s", len(entries), ", ".join(e.name for e in entries))
        try:
            removed = await self._store.remove_exclusions(list(entries))
        except Exception as exc:
            logger.error("Failed to remove %d exclusion(s): %s", len(entries), exc)
            return []

        logger.info("Removed %d global exclusion(s)", len(removed))
        return list(removed)


__all__ = ["ChangeApplier", "ExclusionStore"]
