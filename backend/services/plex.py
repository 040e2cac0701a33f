"""Plex API client: fetches active playback sessions and switches subtitle streams."""

import logging
import xml.etree.ElementTree as ET

import httpx

from errors import CommandTransientError, SessionGoneError, TransientFetchError
from models import NO_SUBTITLES, SessionSnapshot, SubtitleStream

logger = logging.getLogger(__name__)

# Plex stream types: 1 video, 2 audio, 3 subtitle
_SUBTITLE_STREAM_TYPE = "3"
# subtitleStreamID=0 turns subtitles off
_PLEX_NO_SUBTITLES = "0"


def _parse_subtitles(element: ET.Element) -> list[SubtitleStream]:
    streams: list[SubtitleStream] = []
    for stream in element.iter("Stream"):
        if stream.get("streamType") != _SUBTITLE_STREAM_TYPE:
            continue
        streams.append(SubtitleStream(
            id=stream.get("id", ""),
            title=stream.get("extendedDisplayTitle") or stream.get("displayTitle") or stream.get("title", ""),
            language=stream.get("language", ""),
            is_external=stream.get("location") == "external",
        ))
    return streams


def _selected_subtitle(element: ET.Element) -> str:
    for stream in element.iter("Stream"):
        if stream.get("streamType") == _SUBTITLE_STREAM_TYPE and stream.get("selected") == "1":
            return stream.get("id", NO_SUBTITLES)
    return NO_SUBTITLES


class PlexClient:
    source = "plex"

    def __init__(
        self,
        http: httpx.AsyncClient,
        url: str,
        token: str,
        client_identifier: str = "rewind-subtitles",
    ):
        self._http = http
        self._url = url.rstrip("/")
        self._token = token
        self._client_identifier = client_identifier
        # ratingKey -> full subtitle list, from the library metadata endpoint
        self._subtitle_cache: dict[str, list[SubtitleStream]] = {}

    @property
    def enabled(self) -> bool:
        return bool(self._url and self._token)

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "X-Plex-Token": self._token,
            "X-Plex-Client-Identifier": self._client_identifier,
            "Accept": "application/xml",
        }
        headers.update(extra)
        return headers

    async def list_active_sessions(self) -> list[SessionSnapshot]:
        """Query Plex for currently-playing sessions."""
        try:
            resp = await self._http.get(f"{self._url}/status/sessions", headers=self._headers())
            resp.raise_for_status()
            root = ET.fromstring(resp.text)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"Plex session fetch failed: {e}") from e
        except ET.ParseError as e:
            raise TransientFetchError(f"Plex returned malformed session XML: {e}") from e

        sessions: list[SessionSnapshot] = []
        for video in root.iter("Video"):
            player = video.find("Player")
            if player is None:
                continue
            session_el = video.find("Session")
            sid = session_el.get("id", "") if session_el is not None else video.get("sessionKey", "")
            if not sid:
                continue

            if video.get("type") == "episode" and video.get("grandparentTitle"):
                title = f"{video.get('grandparentTitle')} - {video.get('title', '')}"
            else:
                title = video.get("title", "Unknown")

            rating_key = video.get("ratingKey", "")
            sessions.append(SessionSnapshot(
                session_id=f"plex-{sid}",
                source=self.source,
                player_id=player.get("machineIdentifier", ""),
                player_title=player.get("title", ""),
                media_id=rating_key,
                title=title,
                position_seconds=int(video.get("viewOffset", 0)) / 1000.0,
                is_paused=player.get("state") in ("paused", "buffering"),
                subtitle_stream_id=_selected_subtitle(video),
                available_subtitles=await self._available_subtitles(rating_key, video),
            ))

        # Forget items nobody is watching any more
        playing = {s.media_id for s in sessions}
        for rating_key in list(self._subtitle_cache):
            if rating_key not in playing:
                del self._subtitle_cache[rating_key]

        return sessions

    async def _available_subtitles(self, rating_key: str, video: ET.Element) -> list[SubtitleStream]:
        """Session payloads only list the streams in use, so ask the library for the rest."""
        if not rating_key:
            return _parse_subtitles(video)
        if rating_key in self._subtitle_cache:
            return self._subtitle_cache[rating_key]

        try:
            resp = await self._http.get(
                f"{self._url}/library/metadata/{rating_key}", headers=self._headers(),
            )
            resp.raise_for_status()
            streams = _parse_subtitles(ET.fromstring(resp.text))
        except (httpx.HTTPError, ET.ParseError) as e:
            logger.warning("Could not fetch subtitle list for item %s: %s", rating_key, e)
            return _parse_subtitles(video)

        self._subtitle_cache[rating_key] = streams
        return streams

    async def select_subtitle_stream(self, session: SessionSnapshot, stream_id: str) -> None:
        """Ask the player to switch to ``stream_id`` (or turn subtitles off for "none")."""
        params = {
            "subtitleStreamID": _PLEX_NO_SUBTITLES if stream_id == NO_SUBTITLES else stream_id,
            "type": "video",
        }
        headers = self._headers(**{
            "X-Plex-Target-Client-Identifier": session.player_id,
            "X-Plex-Device-Name": session.player_title,
        })

        try:
            resp = await self._http.get(
                f"{self._url}/player/playback/setStreams", params=params, headers=headers,
            )
        except httpx.HTTPError as e:
            raise CommandTransientError(f"setStreams to {session.player_title or session.player_id} failed: {e}") from e

        if resp.status_code == 404:
            raise SessionGoneError(f"Player {session.player_id} is no longer reachable")
        if resp.is_error:
            raise CommandTransientError(
                f"setStreams returned {resp.status_code}: {resp.text.strip()[:200]}"
            )
        logger.debug("setStreams subtitleStreamID=%s sent to %s", params["subtitleStreamID"], session.player_id)
