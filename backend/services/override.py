"""Subtitle override controller: forces subtitles on and restores the user's selection."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from errors import CommandTransientError
from models import NO_SUBTITLES, SessionSnapshot, SubtitleStream

if TYPE_CHECKING:
    from services.monitor import SessionRecord
    from services.session_manager import SessionFetcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Inactive:
    pass


@dataclass(frozen=True)
class Active:
    saved: str  # selection before the override; NO_SUBTITLES is a valid value
    forced: Optional[str]  # stream forced on, None when nothing could be forced
    confirmed: bool = False  # the server acknowledged the override (or nothing had to be sent)

    @property
    def changes_selection(self) -> bool:
        return self.forced is not None and self.forced != self.saved


OverrideState = Union[Inactive, Active]


def choose_subtitle_stream(
    streams: list[SubtitleStream], patterns: list[str], prefer_external: bool = False,
) -> Optional[SubtitleStream]:
    """Pick the stream to force on.

    Patterns are case-insensitive substrings of the stream title. A leading
    "-" excludes matches. A stream is a candidate when it matches every
    positive pattern and no negative one; with no candidates all streams are
    considered.
    """
    if not streams:
        return None

    positives = [p.lower() for p in patterns if p and not p.startswith("-")]
    negatives = [p[1:].lower() for p in patterns if p.startswith("-") and len(p) > 1]

    candidates = streams
    if positives or negatives:
        matching = [
            s for s in streams
            if all(p in s.title.lower() for p in positives)
            and not any(n in s.title.lower() for n in negatives)
        ]
        if matching:
            candidates = matching

    if prefer_external:
        external = [s for s in candidates if s.is_external]
        if external:
            return external[0]
    return candidates[0]


class SubtitleOverrideController:
    def __init__(
        self,
        fetcher: SessionFetcher,
        timeout: float,
        patterns: Optional[list[str]] = None,
        prefer_external: bool = False,
    ):
        self.fetcher = fetcher
        self.timeout = timeout
        self.patterns = patterns or []
        self.prefer_external = prefer_external

    async def _send(self, session: SessionSnapshot, stream_id: str) -> None:
        client = self.fetcher.client_for(session.source)
        try:
            await asyncio.wait_for(
                client.select_subtitle_stream(session, stream_id), timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise CommandTransientError(
                f"Subtitle command to {session.player_title or session.player_id} timed out after {self.timeout}s"
            ) from e

    def _target_for(self, session: SessionSnapshot) -> Optional[str]:
        if session.subtitle_stream_id != NO_SUBTITLES:
            return session.subtitle_stream_id
        stream = choose_subtitle_stream(session.available_subtitles, self.patterns, self.prefer_external)
        return stream.id if stream else None

    async def apply_override(self, record: SessionRecord) -> None:
        """Force subtitles on, saving the current selection first.

        The Active state is stored before the command goes out, so a failure
        or cancellation mid-send still leaves the original selection known.
        """
        session = record.session
        state = record.override

        if isinstance(state, Active):
            if state.confirmed:
                return
            # Retry of an earlier unconfirmed send; the saved selection stays as captured
            forced = state.forced
        else:
            forced = self._target_for(session)
            state = Active(saved=session.subtitle_stream_id, forced=forced)
            record.override = state

        if not state.changes_selection:
            if forced is None:
                logger.warning("%s: No subtitle streams available for %s", session.player_title, session.title)
            record.override = Active(saved=state.saved, forced=forced, confirmed=True)
            return

        await self._send(session, forced)
        record.override = Active(saved=state.saved, forced=forced, confirmed=True)
        logger.info(
            "%s: Rewind in %s, showing subtitles (stream %s, was %s)",
            session.player_title, session.title, forced, state.saved,
        )

    async def restore_override(self, record: SessionRecord) -> None:
        """Put back the saved selection. No-op if nothing is overridden."""
        state = record.override
        if isinstance(state, Inactive):
            return

        if state.changes_selection:
            await self._send(record.session, state.saved)
            logger.info(
                "%s: Restored subtitle selection %s for %s",
                record.session.player_title, state.saved, record.session.title,
            )
        record.override = Inactive()

    def observe_selection(self, record: SessionRecord) -> bool:
        """Drop the override if the user picked different subtitles while it was active.

        Returns True when the override was released to the user's choice.
        """
        state = record.override
        if not isinstance(state, Active) or not state.confirmed or not state.changes_selection:
            return False

        current = record.session.subtitle_stream_id
        if current in (state.forced, state.saved):
            return False

        logger.info(
            "%s: Subtitles changed manually to %s, keeping the user's choice",
            record.session.player_title, current,
        )
        record.override = Inactive()
        return True
