"""FastAPI application entry point."""

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import FastAPI

from api import sync, webhooks
from config import settings
from database import get_session_local
from logging_config import setup_logging
from services.sync_worker import JobRunner

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the in-process sync worker when enabled."""
    stop_event = threading.Event()
    worker_thread = None

    if settings.SYNC_WORKER_ENABLED:
        runner = JobRunner(get_session_local())
        worker_thread = threading.Thread(
            target=runner.run_forever,
            args=(stop_event,),
            name="sync-worker",
            daemon=True,
        )
        worker_thread.start()
    else:
        logger.info("Sync worker disabled; run scripts/run_worker.py to process jobs")

    yield

    if worker_thread is not None:
        stop_event.set()
        worker_thread.join(timeout=30)
        if worker_thread.is_alive():
            logger.warning("Sync worker did not stop within 30s")


app = FastAPI(
    title="Money Sync",
    description="Aggregator account and transaction synchronization",
    version="0.1.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(sync.router)
app.include_router(webhooks.router)


@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok"}
