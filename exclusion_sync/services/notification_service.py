"""Operator notification of exclusion changes."""
from __future__ import annotations

import asyncio
import logging
import socket
from datetime import datetime, timezone
from typing import Optional, Protocol, Sequence

from ..core.config import Settings
from ..core.models import SkippedSource
from ..core.naming import NamingRule
from .mail_service import SmtpMailTransport

logger = logging.getLogger(__name__)

NONE_MARKER = "None"


class MailTransport(Protocol):
    def send(self, to: Sequence[str], sender: str, subject: str, body: str) -> None:
        """Deliver one message or raise."""


class NotificationService:
    """Render and deliver the end-of-run change report."""

    def __init__(
        self,
        settings: Settings,
        rule: NamingRule,
        transport: Optional[MailTransport] = None,
        *,
        hostname: Optional[str] = None,
    ):
        self._settings = settings
        self._rule = rule
        self._transport = transport or SmtpMailTransport(settings)
        self._hostname = hostname or socket.gethostname()

    def render_report(
        self,
        added_names: Sequence[str],
        removed_names: Sequence[str],
        skipped_sources: Sequence[SkippedSource],
        *,
        run_at: Optional[datetime] = None,
    ) -> str:
        """Plain-text report; identical inputs always render identically."""

        run_at = run_at or datetime.now(timezone.utc)
        settings = self._settings
        lines = [
            "Backup global exclusion reconciliation",
            "",
            f"Run time: {run_at:%Y-%m-%d %H:%M:%S %Z}".rstrip(),
            f"Host: {self._hostname}",
            f"Rule: name length >= {self._rule.min_length} and contains '{self._rule.substring}'",
            f"Platform: {settings.managed_platform.value}",
        ]
        if settings.dry_run:
            lines.append("Mode: DRY RUN (no exclusions were changed)")

        lines.extend(["", f"Added ({len(added_names)}):"])
        lines.extend(self._name_section(added_names))

        lines.extend(["", f"Removed ({len(removed_names)}):"])
        lines.extend(self._name_section(removed_names))

        lines.extend(["", f"Skipped/Unreachable sources ({len(skipped_sources)}):"])
        if skipped_sources:
            for skipped in skipped_sources:
                lines.append(
                    f"  - {skipped.source.display_name} [{skipped.source.kind.value}]: {skipped.reason}"
                )
        else:
            lines.append(f"  {NONE_MARKER}")

        return "\n".join(lines) + "\n"

    @staticmethod
    def _name_section(names: Sequence[str]) -> list[str]:
        if not names:
            return [f"  {NONE_MARKER}"]
        return [f"  - {name}" for name in sorted(names, key=str.casefold)]

    async def notify(
        self,
        added_names: Sequence[str],
        removed_names: Sequence[str],
        skipped_sources: Sequence[SkippedSource],
    ) -> bool:
        """Send the report when something changed. Returns True if a message was delivered."""

        if not added_names and not removed_names:
            logger.info("No exclusion changes; no notification sent")
            return False

        settings = self._settings
        if not settings.enable_email:
            logger.info(
                "E-mail disabled; %d addition(s) and %d removal(s) not reported by mail",
                len(added_names),
                len(removed_names),
            )
            return False

        body = self.render_report(added_names, removed_names, skipped_sources)
        subject = settings.smtp_subject
        if settings.dry_run:
            subject = f"[DRY RUN] {subject}"

        try:
            await asyncio.to_thread(
                self._transport.send,
                settings.get_smtp_recipients(),
                settings.smtp_from or "",
                subject,
                body,
            )
        except Exception as exc:
            logger.error("Failed to send change notification: %s", exc)
            return False

        logger.info("Change notification sent")
        return True


__all__ = ["NotificationService", "MailTransport", "NONE_MARKER"]
