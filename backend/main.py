"""Rewind Subtitles FastAPI application entrypoint."""

import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
import uvicorn
from fastapi import FastAPI

from config import settings
from routers import sessions
from services.jellyfin import JellyfinClient
from services.monitor import MonitorLoop
from services.plex import PlexClient
from services.session_manager import SessionFetcher

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_monitor(http: httpx.AsyncClient) -> MonitorLoop:
    clients = [
        PlexClient(http, settings.plex_url, settings.plex_token, settings.plex_client_identifier),
        JellyfinClient(http, settings.jellyfin_url, settings.jellyfin_api_key),
    ]
    fetcher = SessionFetcher(clients, timeout=settings.request_timeout_seconds)
    if not fetcher.clients:
        logger.warning("Neither Plex nor Jellyfin is configured; no sessions will be monitored")
    return MonitorLoop(settings, fetcher)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    async with httpx.AsyncClient(timeout=settings.request_timeout_seconds) as http:
        monitor = build_monitor(http)
        app.state.monitor = monitor
        task = asyncio.create_task(monitor.run())
        yield
        # Shutdown: let the current cycle finish, then restore overrides
        monitor.stop()
        try:
            await asyncio.wait_for(task, timeout=settings.request_timeout_seconds * 2)
        except asyncio.TimeoutError:
            logger.warning("Monitor did not stop in time; leaving active overrides in place")


app = FastAPI(
    title="Rewind Subtitles",
    description="Shows subtitles for a moment after you rewind on Plex/Jellyfin",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions.router, prefix="/api")


@app.get("/api/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
