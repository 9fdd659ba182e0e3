"""
Structured audit trail for permission changes: every reconciliation
pass and every explicit revocation is written to a JSON Lines file and
to the PostgreSQL ``audit_log`` table.

Events are queued and flushed by one background task so request handlers
and sync passes never wait on the audit writes.  A failed file or DB write
is logged and does not affect the caller.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import asyncpg

from shared.config import DEFAULT_AUDIT_LOG_PATH

logger = logging.getLogger("shared.audit")

_INSERT_AUDIT_SQL = (
    "INSERT INTO audit_log (service, action, channel_id, details, success) "
    "VALUES ($1, $2, $3, $4::jsonb, $5)"
)


@dataclass(slots=True)
class AuditEvent:
    service: str
    action: str
    details: Dict[str, Any]
    success: bool
    channel_id: Optional[int] = None
    timestamp: str = ""

    def json_line(self) -> str:
        return json.dumps(
            {
                "timestamp": self.timestamp,
                "service": self.service,
                "action": self.action,
                "channel_id": self.channel_id,
                "details": self.details,
                "success": self.success,
            },
            default=str,
        ) + "\n"

    def db_params(self) -> tuple:
        return (
            self.service,
            self.action,
            self.channel_id,
            json.dumps(self.details, default=str),
            self.success,
        )


class AuditLogger:
    """Queued audit writer (file + database).

    Usable as an async context manager; leaving the block flushes and
    stops the writer.

    Args:
        pool: ``asyncpg`` connection pool (needs INSERT on ``audit_log``).
        log_path: JSON Lines file; ``None`` disables the file copy.
        queue_size: Max queued events before producers wait.
        flush_batch_size: Max events written per round-trip.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        log_path: Optional[Path] = DEFAULT_AUDIT_LOG_PATH,
        queue_size: int = 1024,
        flush_batch_size: int = 64,
    ) -> None:
        self._pool = pool
        self._log_path = log_path
        self._queue: asyncio.Queue[AuditEvent | None] = asyncio.Queue(
            maxsize=max(1, queue_size)
        )
        self._flush_batch_size = max(1, flush_batch_size)
        self._writer: asyncio.Task[None] | None = None
        self._closed = False
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "AuditLogger":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _append_file(self, batch: List[AuditEvent]) -> None:
        assert self._log_path is not None
        self._log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._log_path, "a", encoding="utf-8") as handle:
            handle.write("".join(event.json_line() for event in batch))

    async def _flush(self, batch: List[AuditEvent]) -> None:
        if self._log_path is not None:
            try:
                await asyncio.to_thread(self._append_file, batch)
            except OSError:
                logger.exception("Failed to write audit log file %s", self._log_path)

        try:
            async with self._pool.acquire() as conn:
                await conn.executemany(
                    _INSERT_AUDIT_SQL, [event.db_params() for event in batch]
                )
        except Exception:
            logger.exception("Failed to write %d audit event(s) to database", len(batch))

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            batch: List[AuditEvent] = []
            stop = event is None
            if event is not None:
                batch.append(event)
            while not stop and len(batch) < self._flush_batch_size:
                try:
                    event = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                if event is None:
                    stop = True
                else:
                    batch.append(event)

            if batch:
                await self._flush(batch)
            if stop:
                return

    async def log(
        self,
        service: str,
        action: str,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
    ) -> None:
        """Queue an audit event.

        Args:
            service: Originating service (``"permsync"`` or ``"webapi"``).
            action: Action identifier (``"permissions_sync"``,
                    ``"permission_revoked"``, ``"startup"`` ...).
            details: JSON-serialisable metadata.  A ``channel_id`` key is
                     also stored in its own column.
            success: Whether the action succeeded.
        """
        details = dict(details or {})
        event = AuditEvent(
            service=service,
            action=action,
            details=details,
            success=success,
            channel_id=details.get("channel_id"),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )
        async with self._lock:
            if self._closed:
                logger.debug("Audit logger closed; dropping %s/%s", service, action)
                return
            if self._writer is None:
                self._writer = asyncio.get_running_loop().create_task(
                    self._drain(), name="adchannels-audit-writer"
                )
            await self._queue.put(event)

    async def close(self) -> None:
        """Flush queued events and stop the background writer."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            writer = self._writer
            if writer is not None:
                await self._queue.put(None)
        if writer is not None:
            await writer
