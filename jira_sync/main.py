"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from jira_sync.api import sync
from jira_sync.config import settings
from jira_sync.logger import configure_logging
from jira_sync.models.base import init_db
from jira_sync.sqs.queues import sqs_queues

configure_logging(settings.log_level)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting GitHub to Jira sync worker")
    init_db()
    sqs_queues.start()
    yield
    # Shutdown
    logger.info("Stopping GitHub to Jira sync worker")
    await sqs_queues.stop()


app = FastAPI(
    title="GitHub to Jira Sync",
    description="Queue workers and backfill of GitHub development data into Jira",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "GitHub to Jira Sync"}


@app.get("/metrics")
async def metrics():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "jira_sync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
