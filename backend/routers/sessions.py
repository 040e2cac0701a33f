"""Sessions router: exposes what the monitoring loop is tracking."""

from fastapi import APIRouter, HTTPException, Request

from models import MonitorStatus, TrackedSession
from services.monitor import MonitorLoop

router = APIRouter(tags=["sessions"])


def _monitor(request: Request) -> MonitorLoop:
    monitor = getattr(request.app.state, "monitor", None)
    if monitor is None:
        raise HTTPException(503, "Monitor is not running")
    return monitor


@router.get("/sessions", response_model=list[TrackedSession])
async def list_sessions(request: Request):
    """Return every tracked session with its detector and override state."""
    return _monitor(request).tracked_sessions()


@router.get("/monitor", response_model=MonitorStatus)
async def monitor_status(request: Request):
    return _monitor(request).status()


@router.post("/monitor/wake", response_model=MonitorStatus)
async def wake_monitor(request: Request):
    """Skip the rest of the current sleep, e.g. right after starting playback."""
    monitor = _monitor(request)
    monitor.wake()
    return monitor.status()
