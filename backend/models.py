"""Pydantic models shared across the application."""

from typing import Optional

from pydantic import BaseModel

# Selection value meaning "subtitles off"
NO_SUBTITLES = "none"


# ── Session models ──────────────────────────────────────────────

class SubtitleStream(BaseModel):
    """A subtitle track the player can switch to."""
    id: str
    title: str = ""  # e.g. "English (SRT External)"
    language: str = ""
    is_external: bool = False


class SessionSnapshot(BaseModel):
    """Normalized playback session from Plex or Jellyfin, as seen in one poll."""
    session_id: str
    source: str  # "plex" | "jellyfin"
    player_id: str
    player_title: str = ""
    media_id: str = ""
    title: str = ""
    position_seconds: float
    is_paused: bool = False
    subtitle_stream_id: str = NO_SUBTITLES
    available_subtitles: list[SubtitleStream] = []


class Snapshot(BaseModel):
    """Result of one fetch across all configured servers."""
    sessions: list[SessionSnapshot] = []
    failed_sources: list[str] = []  # sessions from these sources are left untouched


# ── Status models ───────────────────────────────────────────────

class TrackedSession(BaseModel):
    session_id: str
    source: str
    title: str
    player_title: str
    position_seconds: float
    subtitle_stream_id: str
    detector_state: str  # "normal" | "override_active"
    override_active: bool
    saved_subtitle_stream_id: Optional[str] = None
    missed_polls: int = 0
    pending_intents: list[str] = []


class MonitorStatus(BaseModel):
    state: str  # "active" | "idle"
    running: bool
    cycles: int
    tracked_sessions: int
    poll_interval_seconds: float
