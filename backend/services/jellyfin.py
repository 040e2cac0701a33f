"""Jellyfin API client: fetches active playback sessions and switches subtitle streams."""

import logging

import httpx

from errors import CommandTransientError, SessionGoneError, TransientFetchError
from models import NO_SUBTITLES, SessionSnapshot, SubtitleStream

logger = logging.getLogger(__name__)

# Jellyfin returns PositionTicks in 100-nanosecond intervals
_TICKS_PER_SECOND = 10_000_000
# SubtitleStreamIndex=-1 turns subtitles off
_JELLYFIN_NO_SUBTITLES = -1
_ID_PREFIX = "jf-"


class JellyfinClient:
    source = "jellyfin"

    def __init__(self, http: httpx.AsyncClient, url: str, api_key: str):
        self._http = http
        self._url = url.rstrip("/")
        self._api_key = api_key

    @property
    def enabled(self) -> bool:
        return bool(self._url and self._api_key)

    def _headers(self) -> dict[str, str]:
        return {"X-Emby-Token": self._api_key}

    async def list_active_sessions(self) -> list[SessionSnapshot]:
        """Query Jellyfin for currently-playing sessions."""
        try:
            resp = await self._http.get(f"{self._url}/Sessions", headers=self._headers())
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Jellyfin session fetch failed: {e}") from e
        except ValueError as e:
            raise TransientFetchError(f"Jellyfin returned malformed JSON: {e}") from e

        sessions: list[SessionSnapshot] = []

        for s in data:
            item = s.get("NowPlayingItem")
            play_state = s.get("PlayState", {})
            if not item or not play_state:
                continue

            # Build title
            if item.get("Type", "") == "Episode" and item.get("SeriesName"):
                title = f"{item['SeriesName']} - {item.get('Name', '')}"
            else:
                title = item.get("Name", "Unknown")

            subtitles = [
                SubtitleStream(
                    id=str(stream.get("Index")),
                    title=stream.get("DisplayTitle", "") or stream.get("Title", ""),
                    language=stream.get("Language", "") or "",
                    is_external=bool(stream.get("IsExternal")),
                )
                for stream in item.get("MediaStreams", [])
                if stream.get("Type") == "Subtitle" and stream.get("Index") is not None
            ]

            index = play_state.get("SubtitleStreamIndex")
            current = NO_SUBTITLES if index is None or index < 0 else str(index)
            position_ticks = play_state.get("PositionTicks", 0) or 0

            sessions.append(SessionSnapshot(
                session_id=f"{_ID_PREFIX}{s.get('Id', '')}",
                source=self.source,
                player_id=s.get("DeviceId", ""),
                player_title=s.get("DeviceName", ""),
                media_id=item.get("Id", ""),
                title=title,
                position_seconds=position_ticks / _TICKS_PER_SECOND,
                is_paused=bool(play_state.get("IsPaused")),
                subtitle_stream_id=current,
                available_subtitles=subtitles,
            ))

        return sessions

    async def select_subtitle_stream(self, session: SessionSnapshot, stream_id: str) -> None:
        """Send a SetSubtitleStreamIndex general command to the session."""
        raw_id = session.session_id.removeprefix(_ID_PREFIX)
        index = _JELLYFIN_NO_SUBTITLES if stream_id == NO_SUBTITLES else int(stream_id)
        body = {"Name": "SetSubtitleStreamIndex", "Arguments": {"Index": str(index)}}

        try:
            resp = await self._http.post(
                f"{self._url}/Sessions/{raw_id}/Command", json=body, headers=self._headers(),
            )
        except httpx.HTTPError as e:
            raise CommandTransientError(f"SetSubtitleStreamIndex to {session.player_title or raw_id} failed: {e}") from e

        if resp.status_code == 404:
            raise SessionGoneError(f"Jellyfin session {raw_id} no longer exists")
        if resp.is_error:
            raise CommandTransientError(
                f"SetSubtitleStreamIndex returned {resp.status_code}: {resp.text.strip()[:200]}"
            )
        logger.debug("SetSubtitleStreamIndex=%s sent to %s", index, raw_id)
