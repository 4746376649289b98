"""Diff naming-rule candidates against the current global exclusions."""
from __future__ import annotations

import logging
from typing import Iterable, Sequence

from ..core.models import (
    ChangeSet,
    CollectionOutcome,
    ExclusionEntry,
    ManagedPlatform,
    VmRecord,
)
from ..core.naming import NamingRule

logger = logging.getLogger(__name__)


def reconcile(
    candidates: Sequence[VmRecord],
    current_exclusions: Iterable[ExclusionEntry],
    outcome: CollectionOutcome,
    rule: NamingRule,
    platform: ManagedPlatform,
    live_names: Iterable[str],
) -> ChangeSet:
    """Compute the exclusions to add and to remove.

    Only exclusions for ``platform`` are considered. An exclusion is removed
    when its own name satisfies ``rule`` and no collected VM carries that
    name; removals are suppressed entirely when no source was queried.
    """

    scoped = [entry for entry in current_exclusions if entry.platform == platform]
    excluded_keys = {entry.key for entry in scoped}

    to_add: dict[str, VmRecord] = {}
    for record in candidates:
        if record.key in excluded_keys or record.key in to_add:
            continue
        to_add[record.key] = record

    to_remove: dict[str, ExclusionEntry] = {}
    if outcome.degraded:
        stale = [entry for entry in scoped if rule.matches(entry.name)]
        logger.warning(
            "No inventory source was queried successfully (%d skipped); "
            "suppressing removal of %d matching exclusion(s)",
            len(outcome.skipped),
            len(stale),
        )
    else:
        live_keys = {name.casefold() for name in live_names}
        for entry in scoped:
            if entry.key in live_keys or entry.key in to_remove:
                continue
            if not rule.matches(entry.name):
                continue
            to_remove[entry.key] = entry

    change_set = ChangeSet(
        to_add=tuple(record for _, record in sorted(to_add.items())),
        to_remove=tuple(entry for _, entry in sorted(to_remove.items())),
    )
    logger.info(
        "Reconciliation: %d exclusion(s) in scope, %d to add, %d to remove",
        len(scoped),
        len(change_set.to_add),
        len(change_set.to_remove),
    )
    return change_set


__all__ = ["reconcile"]
