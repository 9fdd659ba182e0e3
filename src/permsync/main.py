"""
Stale-permission sync entry point: periodically re-syncs every channel
whose cached administrator records are stale or erroring.

Runs as a long-lived systemd service.

Key behaviours:
    - Loads configuration from ``/etc/adchannels/settings.toml``.
    - Validates the bot token at startup and refuses to run without it.
    - One shared Bot API client (and therefore one rate limiter) for the
      whole process.
    - Handles SIGTERM / SIGINT for graceful shutdown.
    - Logs every cycle to the audit log.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import threading
from typing import Any, Dict

from botapi.client import create_client
from permsync.service import PermissionSyncService
from permsync.store import PermissionRecordStore
from shared.audit import AuditLogger
from shared.config import audit_log_path, load_config, staleness_window
from shared.db import get_connection_pool, init_database
from shared.secrets import get_secret

logger = logging.getLogger("permsync.main")


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------

_shutdown_event: threading.Event = threading.Event()


async def _sleep_with_shutdown(seconds: float) -> bool:
    """Sleep for up to ``seconds`` while remaining responsive to shutdown."""
    remaining = max(0.0, seconds)
    while remaining > 0 and not _shutdown_event.is_set():
        tick = min(0.5, remaining)
        await asyncio.sleep(tick)
        remaining -= tick
    return _shutdown_event.is_set()


def _handle_signal(sig: int, frame: Any) -> None:
    """Signal handler; sets the shutdown event so the main loop exits cleanly."""
    logger.info("Received signal %s, initiating graceful shutdown...", sig)
    _shutdown_event.set()


# ---------------------------------------------------------------------------
# Sync cycle
# ---------------------------------------------------------------------------


async def sync_cycle(
    service: PermissionSyncService, audit: AuditLogger, cycle: int
) -> None:
    """Run one stale-sync cycle; errors are logged, never raised."""
    try:
        bulk = await service.sync_stale()
    except Exception:
        logger.exception("Error during stale permission sync")
        await audit.log("permsync", "stale_sync", {"cycle": cycle, "error": "see logs"}, success=False)
        return

    logger.info(
        "Stale sync #%d complete: %d channel(s), %d ok, %d failed (%dms)",
        cycle,
        bulk.total_channels,
        bulk.successful_syncs,
        bulk.failed_syncs,
        bulk.duration_ms,
    )
    await audit.log(
        "permsync",
        "stale_sync",
        {
            "cycle": cycle,
            "channels": bulk.total_channels,
            "failed": bulk.failed_syncs,
        },
        success=bulk.failed_syncs == 0,
    )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


async def main(config: Dict[str, Any] | None = None) -> None:
    """Top-level async entry point for the stale-sync service."""
    config = config or load_config()
    sync_config = config.get("permsync", {})
    interval = float(sync_config.get("sync_interval_seconds", 900))

    pool = await get_connection_pool(config["database"])
    try:
        await init_database(pool)
        async with create_client(config.get("botapi", {}), get_secret("bot_token")) as client, \
                AuditLogger(pool, log_path=audit_log_path(config)) as audit:
            if not await client.validate_token():
                raise RuntimeError("Bot token rejected by the Bot API")

            service = PermissionSyncService(
                client,
                PermissionRecordStore(pool, staleness=staleness_window(config)),
                audit=audit,
                deadline_seconds=float(sync_config.get("deadline_seconds", 60)),
                bulk_delay_seconds=float(sync_config.get("bulk_delay_seconds", 0.2)),
            )
            await audit.log("permsync", "startup", {"interval": interval}, success=True)

            cycle = 0
            while not _shutdown_event.is_set():
                cycle += 1
                await sync_cycle(service, audit, cycle)
                await _sleep_with_shutdown(interval)
    finally:
        try:
            await pool.close()
        except Exception:
            logger.exception("Failed to close database pool")
        logger.info("Permission sync service shut down cleanly.")


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    asyncio.run(main())


if __name__ == "__main__":
    run()
