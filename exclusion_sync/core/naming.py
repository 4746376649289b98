"""Naming convention used to decide which VMs are excluded from backup."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Tuple

from .models import VmRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NamingRule:
    """A VM is a candidate when its name is long enough and contains the substring.

    Both parts are evaluated case-insensitively.
    """

    substring: str
    min_length: int

    def matches(self, name: str) -> bool:
        if not name or len(name) < self.min_length:
            return False
        return self.substring.casefold() in name.casefold()

    def describe(self) -> str:
        return f"length >= {self.min_length} and contains '{self.substring}'"


def select_candidates(records: Iterable[VmRecord], rule: NamingRule) -> Tuple[VmRecord, ...]:
    """Return records matching ``rule``, one per case-insensitive name.

    When several sources report the same VM the first record seen is kept.
    """

    selected: dict[str, VmRecord] = {}
    duplicates = 0
    for record in records:
        if not rule.matches(record.name):
            continue
        if record.key in selected:
            duplicates += 1
            continue
        selected[record.key] = record

    if duplicates:
        logger.debug("Collapsed %d duplicate candidate record(s)", duplicates)
    logger.info("%d VM(s) match naming rule (%s)", len(selected), rule.describe())
    return tuple(selected.values())
