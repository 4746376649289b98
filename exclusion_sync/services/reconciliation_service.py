"""One reconciliation pass: collect, select, reconcile, apply, notify."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from ..core.config import Settings
from ..core.models import RunReport
from ..core.naming import NamingRule, select_candidates
from .applier_service import ChangeApplier
from .backup_client import VeeamBackupClient
from .collector_service import InventoryCollector
from .notification_service import NotificationService
from .reachability_service import ReachabilityService
from .reconciler import reconcile

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Drive a single stateless pass over the configured backup server.

    ``BackupPlatformUnavailableError`` from connecting, listing sources or
    reading exclusions propagates to the caller; every other failure is
    absorbed by the stage where it happens.
    """

    def __init__(
        self,
        settings: Settings,
        client: Optional[VeeamBackupClient] = None,
        *,
        prober: Optional[ReachabilityService] = None,
        notifier: Optional[NotificationService] = None,
    ):
        self._settings = settings
        self._rule = NamingRule(substring=settings.name_pattern, min_length=settings.min_name_length)
        self._client = client or VeeamBackupClient(settings)
        self._collector = InventoryCollector(settings, self._client, prober)
        self._applier = ChangeApplier(settings, self._client, self._rule)
        self._notifier = notifier or NotificationService(settings, self._rule)

    @property
    def rule(self) -> NamingRule:
        return self._rule

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> RunReport:
        settings = self._settings
        report = RunReport(started_at=datetime.now(timezone.utc), dry_run=settings.dry_run)
        logger.info(
            "Starting exclusion reconciliation (platform=%s, rule: %s, dry_run=%s)",
            settings.managed_platform.value,
            self._rule.describe(),
            settings.dry_run,
        )

        await self._client.connect()
        sources = await self._client.list_registered_sources(settings.get_source_kinds())

        vms, outcome = await self._collector.collect(sources, stop_event)
        if stop_event is not None and stop_event.is_set():
            logger.warning("Stop was requested during collection; finishing the run with the partial inventory")
        report.total_sources = outcome.total_sources
        report.queried_ok = outcome.queried_ok
        report.skipped = list(outcome.skipped)
        report.vm_count = len(vms)

        candidates = select_candidates(vms, self._rule)
        report.candidate_count = len(candidates)

        exclusions = await self._client.list_exclusions()
        change_set = reconcile(
            candidates,
            exclusions,
            outcome,
            self._rule,
            settings.managed_platform,
            (vm.name for vm in vms),
        )

        report.applied = await self._applier.apply(change_set)
        report.notification_sent = await self._notifier.notify(
            report.applied.added_names,
            report.applied.removed_names,
            outcome.skipped,
        )

        report.finished_at = datetime.now(timezone.utc)
        logger.info(
            "Reconciliation finished in %.1fs: sources %d/%d, VMs %d, candidates %d, added %d, removed %d",
            (report.finished_at - report.started_at).total_seconds(),
            report.queried_ok,
            report.total_sources,
            report.vm_count,
            report.candidate_count,
            len(report.applied.added_names),
            len(report.applied.removed_names),
        )
        return report


__all__ = ["ReconciliationService"]
