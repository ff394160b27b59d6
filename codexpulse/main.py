"""codexpulse FastAPI application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from codexpulse import config
from codexpulse.observability import initialize as initialize_observability, shutdown as shutdown_observability
from codexpulse.parsers.status_writer import StatusPublisher
from codexpulse.routers.status import status_router
from codexpulse.service import CodexWatcher

logging.basicConfig(level=logging.DEBUG if config.DEBUG else logging.INFO)
logger = logging.getLogger("codexpulse")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("codexpulse starting up")
    initialize_observability(app)

    publisher = StatusPublisher(config.STATUS_FILE)
    watcher = CodexWatcher(publisher, codex_home=config.CODEX_HOME, sessions_dir=config.SESSIONS_DIR)
    app.state.publisher = publisher
    app.state.watcher = watcher

    if not await watcher.start():
        logger.info("Codex is not installed; serving status only")

    yield

    logger.info("codexpulse shutting down")
    await watcher.stop()
    await publisher.close()
    shutdown_observability(app)


app = FastAPI(
    title="codexpulse",
    description="Live Codex session status for the desktop companion",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(status_router)
