"""
HTTP API entry point: serves the channel-permission routes with uvicorn.

The lifespan owns everything with an open connection: the asyncpg pool,
the Bot API client (and with it the process-wide rate limiter) and the
audit writer.  Handlers reach the service through ``app.state.service``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status

from botapi.client import PlatformAPIClient, create_client
from permsync.service import PermissionSyncService
from permsync.store import PermissionRecordStore
from shared.audit import AuditLogger
from shared.config import audit_log_path, load_config, staleness_window
from shared.db import get_connection_pool, health_check, init_database
from shared.secrets import get_secret
from webapi.handlers import router

logger = logging.getLogger("webapi.main")


def build_application(
    config: Dict[str, Any],
    client: Optional[PlatformAPIClient] = None,
) -> FastAPI:
    """Create the FastAPI app.

    Args:
        config: Parsed settings (see :func:`shared.config.load_config`).
        client: Pre-built Bot API client; when omitted one is created from
                the ``[botapi]`` section and the ``bot_token`` secret.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        pool = await get_connection_pool(config["database"])
        bot: Optional[PlatformAPIClient] = client
        audit: Optional[AuditLogger] = None
        try:
            if bot is None:
                bot = create_client(config.get("botapi", {}), get_secret("bot_token"))
            audit = AuditLogger(pool, log_path=audit_log_path(config))
            await init_database(pool)
            sync_config = config.get("permsync", {})
            app.state.pool = pool
            app.state.service = PermissionSyncService(
                bot,
                PermissionRecordStore(pool, staleness=staleness_window(config)),
                audit=audit,
                deadline_seconds=float(sync_config.get("deadline_seconds", 60)),
            )
            await audit.log("webapi", "startup", {}, success=True)
            logger.info("Channel permission API ready")
            yield
        finally:
            if audit is not None:
                await audit.close()
            if bot is not None:
                await bot.aclose()
            await pool.close()
            logger.info("Channel permission API shut down")

    app = FastAPI(title="adchannels permissions", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health(request: Request) -> Dict[str, str]:
        if not await health_check(request.app.state.pool):
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Database unavailable",
            )
        return {"status": "ok"}

    return app


def run() -> None:
    """Synchronous entry point (called from ``__main__`` or systemd)."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    config = load_config()
    web_config = config.get("webapi", {})
    uvicorn.run(
        build_application(config),
        host=web_config.get("host", "127.0.0.1"),
        port=int(web_config.get("port", 8080)),
        log_level="info",
    )


if __name__ == "__main__":
    run()
