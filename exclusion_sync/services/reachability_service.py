"""TCP reachability checks for inventory sources."""
from __future__ import annotations

import asyncio
import logging
import socket

from ..core.models import ProbeResult

logger = logging.getLogger(__name__)


class ReachabilityService:
    """Decide whether a host accepts TCP connections within a bounded timeout.

    A single attempt is made per call; there are no retries.
    """

    async def probe(self, address: str, port: int, timeout_ms: int) -> bool:
        result = await self.check(address, port, timeout_ms)
        return result.reachable

    async def check(self, address: str, port: int, timeout_ms: int) -> ProbeResult:
        """Attempt one connection and explain the outcome. Never raises."""

        if not address or not address.strip():
            return ProbeResult(reachable=False, reason_if_not="no address")

        timeout = max(0.001, timeout_ms / 1000.0)
        writer = None
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(address.strip(), port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            reason = f"timed out after {timeout_ms} ms"
        except ConnectionRefusedError:
            reason = "connection refused"
        except socket.gaierror as exc:
            reason = f"name resolution failed: {exc.strerror or exc}"
        except OSError as exc:
            reason = f"connection failed: {exc.strerror or exc}"
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.debug("Unexpected probe failure for %s:%s", address, port, exc_info=True)
            reason = f"probe failed: {exc}"
        else:
            logger.debug("Probe of %s:%s succeeded", address, port)
            return ProbeResult(reachable=True)
        finally:
            if writer is not None:
                writer.close()
                try:
                    await writer.wait_closed()
                except Exception:  # pragma: no cover - best effort cleanup
                    logger.debug("Failed to close probe connection cleanly", exc_info=True)

        logger.debug("Probe of %s:%s failed: %s", address, port, reason)
        return ProbeResult(reachable=False, reason_if_not=reason)


__all__ = ["ReachabilityService"]
