"""Inventory collection across registered virtualization sources."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence, Tuple

from ..core.config import Settings
from ..core.models import CollectionOutcome, InventorySource, SkippedSource, VmRecord
from .reachability_service import ReachabilityService

logger = logging.getLogger(__name__)

ABORTED_REASON = "collection aborted"


class InventoryRegistry(Protocol):
    """Source of VM inventory for one registered server."""

    async def query_source(self, source: InventorySource) -> List[VmRecord]:
        """Return the VMs visible through ``source``."""


@dataclass(frozen=True)
class SourceResult:
    """Per-source collection result: either VMs or the reason there are none."""

    source: InventorySource
    vms: List[VmRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class InventoryCollector:
    """Probe and query every source in isolation and fold the results together.

    No failure of an individual source escapes ``collect``; it becomes an
    entry in ``CollectionOutcome.skipped`` instead.
    """

    def __init__(
        self,
        settings: Settings,
        registry: InventoryRegistry,
        prober: Optional[ReachabilityService] = None,
    ):
        self._settings = settings
        self._registry = registry
        self._prober = prober or ReachabilityService()

    async def collect(
        self,
        sources: Sequence[InventorySource],
        stop_event: Optional[asyncio.Event] = None,
    ) -> Tuple[List[VmRecord], CollectionOutcome]:
        """Collect VMs from ``sources``.

        If ``stop_event`` is set while sources are still in flight, those
        sources are abandoned and reported as skipped.
        """

        sources = list(sources)
        if not sources:
            logger.warning("No inventory sources registered; nothing to collect")
            return [], CollectionOutcome(total_sources=0)

        logger.info(
            "Collecting inventory from %d source(s) (concurrency=%d, reachability check=%s)",
            len(sources),
            self._settings.collection_concurrency,
            "on" if self._settings.reachability_check_enabled else "off",
        )

        semaphore = asyncio.Semaphore(max(1, self._settings.collection_concurrency))
        tasks = [
            asyncio.create_task(self._collect_source(source, semaphore), name=f"collect:{source.id}")
            for source in sources
        ]
        await self._wait_for_tasks(tasks, stop_event)

        records: List[VmRecord] = []
        outcome = CollectionOutcome(total_sources=len(sources))
        for source, task in zip(sources, tasks):
            if task.cancelled():
                result = SourceResult(source=source, error=ABORTED_REASON)
                logger.warning("Skipping %s (%s): %s", source.display_name, source.kind.value, ABORTED_REASON)
            elif task.exception() is not None:  # pragma: no cover - _collect_source catches
                result = SourceResult(source=source, error=str(task.exception()))
            else:
                result = task.result()

            if result.ok:
                outcome.queried_ok += 1
                records.extend(result.vms)
            else:
                outcome.skipped.append(SkippedSource(source=source, reason=result.error or "unknown error"))

        logger.info(
            "Inventory collection finished: %d/%d source(s) queried, %d skipped, %d VM record(s)",
            outcome.queried_ok,
            outcome.total_sources,
            len(outcome.skipped),
            len(records),
        )
        return records, outcome

    async def _wait_for_tasks(
        self, tasks: List["asyncio.Task[SourceResult]"], stop_event: Optional[asyncio.Event]
    ) -> None:
        """Wait for every task, or until ``stop_event`` fires and cancel the rest."""

        pending = set(tasks)
        stop_waiter = asyncio.create_task(stop_event.wait()) if stop_event is not None else None
        try:
            while pending:
                waitables = set(pending)
                if stop_waiter is not None:
                    waitables.add(stop_waiter)
                done, _ = await asyncio.wait(waitables, return_when=asyncio.FIRST_COMPLETED)
                pending -= done
                if stop_waiter is not None and stop_waiter in done:
                    if pending:
                        logger.warning(
                            "Stop requested; abandoning %d in-flight source(s)", len(pending)
                        )
                    break
        finally:
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if stop_waiter is not None and not stop_waiter.done():
                stop_waiter.cancel()
                await asyncio.gather(stop_waiter, return_exceptions=True)

    async def _collect_source(
        self, source: InventorySource, semaphore: asyncio.Semaphore
    ) -> SourceResult:
        async with semaphore:
            address = (source.address or "").strip()
            if not address:
                return self._skip(source, "no address")

            settings = self._settings
            if settings.reachability_check_enabled:
                probe = await self._prober.check(
                    address,
                    settings.get_reachability_port(),
                    settings.reachability_timeout_ms,
                )
                if not probe.reachable:
                    return self._skip(source, probe.reason_if_not or "unreachable")

            timeout = max(1.0, float(settings.query_timeout_seconds))
            try:
                vms = await asyncio.wait_for(self._registry.query_source(source), timeout=timeout)
            except asyncio.TimeoutError:
                return self._skip(source, f"query timed out after {timeout:.0f}s")
            except Exception as exc:
                return self._skip(source, str(exc) or type(exc).__name__)

            records = [vm for vm in vms if isinstance(vm, VmRecord)]
            logger.info("Source %s (%s): %d VM(s)", source.display_name, source.kind.value, len(records))
            return SourceResult(source=source, vms=records)

    @staticmethod
    def _skip(source: InventorySource, reason: str) -> SourceResult:
        logger.warning("Skipping %s (%s): %s", source.display_name, source.kind.value, reason)
        return SourceResult(source=source, error=reason)


__all__ = ["InventoryCollector", "InventoryRegistry", "SourceResult", "ABORTED_REASON"]
