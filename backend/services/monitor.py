"""Monitoring loop: polls sessions, drives the rewind detector and the Active/Idle duty cycle."""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional

from config import Settings
from errors import CommandTransientError, SessionGoneError, TransientFetchError
from models import MonitorStatus, SessionSnapshot, TrackedSession
from services.detector import DetectorState, Intent, Normal, RewindDetector
from services.history import Classification, ClassifierOptions, PositionHistory
from services.override import Active, Inactive, OverrideState, SubtitleOverrideController
from services.session_manager import SessionFetcher

logger = logging.getLogger(__name__)


class MonitoringState(str, Enum):
    ACTIVE = "active"
    IDLE = "idle"


@dataclass
class PendingIntent:
    kind: Intent
    attempts: int = 0


@dataclass
class SessionRecord:
    """Everything the loop knows about one session. Only the loop mutates it."""
    session: SessionSnapshot
    history: PositionHistory
    detector_state: DetectorState = field(default_factory=Normal)
    override: OverrideState = field(default_factory=Inactive)
    pending: deque = field(default_factory=deque)  # of PendingIntent, in emission order
    missed_polls: int = 0


class MonitorLoop:
    def __init__(
        self,
        settings: Settings,
        fetcher: SessionFetcher,
        controller: Optional[SubtitleOverrideController] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.fetcher = fetcher
        self.controller = controller or SubtitleOverrideController(
            fetcher,
            timeout=settings.request_timeout_seconds,
            patterns=settings.subtitle_preference_patterns,
            prefer_external=settings.prefer_external_subtitles,
        )
        self.detector = RewindDetector(
            settings.forward_confirmation_cycles, settings.long_rewind_cooldown_cycles,
        )
        self.classifier_options = ClassifierOptions.from_settings(settings)
        self._clock = clock

        self.sessions: dict[str, SessionRecord] = {}
        self.state = MonitoringState.IDLE
        self.cycles = 0
        self.running = False
        self._stop = asyncio.Event()
        self._interrupt = asyncio.Event()

    @property
    def poll_interval(self) -> float:
        if self.state is MonitoringState.ACTIVE:
            return self.settings.active_poll_interval_seconds
        return self.settings.idle_poll_interval_seconds

    # ── Lifecycle ───────────────────────────────────────────────

    async def run(self) -> None:
        """Poll until stop() is called. Cancelling the task abandons in-flight work."""
        self.running = True
        logger.info(
            "Monitoring started (active every %.1fs, idle every %.1fs, rewind threshold %.1fs)",
            self.settings.active_poll_interval_seconds,
            self.settings.idle_poll_interval_seconds,
            self.settings.rewind_threshold_seconds,
        )
        try:
            while not self._stop.is_set():
                try:
                    await self.run_cycle()
                except Exception:
                    logger.exception("Unexpected error in monitoring cycle")
                await self._sleep(self.poll_interval)

            if self.settings.restore_on_shutdown:
                await self.restore_all()
        finally:
            self.running = False
            logger.info("Monitoring stopped")

    def stop(self) -> None:
        self._stop.set()
        self._interrupt.set()

    def wake(self) -> None:
        """Cut the current sleep short, e.g. when playback is known to have started."""
        if self.state is MonitoringState.IDLE:
            logger.debug("Waking from idle sleep")
        self._interrupt.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._interrupt.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
        self._interrupt.clear()

    async def restore_all(self) -> None:
        """One restore attempt for every active override."""
        for record in list(self.sessions.values()):
            if not isinstance(record.override, Active):
                continue
            try:
                await self.controller.restore_override(record)
            except (CommandTransientError, SessionGoneError) as e:
                logger.warning("%s: Could not restore subtitles on shutdown: %s", record.session.player_title, e)

    # ── Polling cycle ───────────────────────────────────────────

    async def run_cycle(self) -> None:
        self.cycles += 1
        try:
            snapshot = await self.fetcher.fetch()
        except TransientFetchError as e:
            logger.warning("Session fetch failed, keeping %d tracked session(s): %s", len(self.sessions), e)
            return

        now = self._clock()
        present = {s.session_id: s for s in snapshot.sessions}
        await self._reconcile(present, snapshot.failed_sources)

        for session_id in present:
            record = self.sessions.get(session_id)
            if record is None:
                continue
            self._observe(record, now)
            await self._execute(record)

        self._update_state()

    async def _reconcile(self, present: dict[str, SessionSnapshot], failed_sources: list[str]) -> None:
        for session_id, session in present.items():
            record = self.sessions.get(session_id)
            if record is None:
                self.sessions[session_id] = SessionRecord(
                    session=session,
                    history=PositionHistory(self.classifier_options, self.settings.history_size),
                )
                logger.info("Tracking %s session on %s: %s", session.source, session.player_title, session.title)
            else:
                record.session = session
                record.missed_polls = 0

        for session_id, record in list(self.sessions.items()):
            if session_id in present or record.session.source in failed_sources:
                continue
            record.missed_polls += 1
            if record.missed_polls > self.settings.missed_poll_grace:
                await self._dispose(record, "no longer reported by the server")

    def _observe(self, record: SessionRecord, now: float) -> None:
        session = record.session

        if self.controller.observe_selection(record):
            record.detector_state = Normal()
            record.pending.clear()

        classification = record.history.observe(now, session.position_seconds, session.is_paused)
        new_state, intents = self.detector.step(record.detector_state, classification)
        logger.debug(
            "%s: %.2fs %s (%s -> %s)",
            session.player_title, session.position_seconds, classification.value,
            record.detector_state.name, new_state.name,
        )
        if classification is Classification.LONG_REWIND:
            logger.info(
                "%s: Rewound past %.0fs, treating it as a scene change and cooling down",
                session.player_title, self.settings.max_rewind_seconds,
            )
        record.detector_state = new_state
        record.pending.extend(PendingIntent(kind) for kind in intents)

        # A restore that was given up on is tried again once nothing else is queued
        if isinstance(new_state, Normal) and isinstance(record.override, Active) and not record.pending:
            record.pending.append(PendingIntent(Intent.RESTORE))

    async def _execute(self, record: SessionRecord) -> None:
        """Run queued intents in order; stop at the first failure."""
        while record.pending:
            intent = record.pending[0]
            try:
                if intent.kind is Intent.APPLY_OVERRIDE:
                    await self.controller.apply_override(record)
                else:
                    await self.controller.restore_override(record)
            except SessionGoneError as e:
                logger.info("%s: Session gone: %s", record.session.player_title, e)
                await self._dispose(record, "reported gone", attempt_restore=intent.kind is not Intent.RESTORE)
                return
            except CommandTransientError as e:
                intent.attempts += 1
                if intent.attempts >= self.settings.command_retry_limit:
                    logger.warning(
                        "%s: Giving up on %s after %d attempts: %s",
                        record.session.player_title, intent.kind.value, intent.attempts, e,
                    )
                    record.pending.popleft()
                else:
                    logger.warning(
                        "%s: %s failed (attempt %d/%d), retrying next cycle: %s",
                        record.session.player_title, intent.kind.value, intent.attempts,
                        self.settings.command_retry_limit, e,
                    )
                return
            record.pending.popleft()

    async def _dispose(self, record: SessionRecord, reason: str, attempt_restore: bool = True) -> None:
        """Remove a session, restoring its subtitles first (one attempt, outcome ignored)."""
        needs_restore = self.detector.dispose(record.detector_state) or isinstance(record.override, Active)
        if attempt_restore and needs_restore:
            try:
                await self.controller.restore_override(record)
            except (CommandTransientError, SessionGoneError) as e:
                logger.warning("%s: Best-effort restore failed: %s", record.session.player_title, e)

        self.sessions.pop(record.session.session_id, None)
        logger.info("Stopped tracking session on %s (%s)", record.session.player_title, reason)

    def _update_state(self) -> None:
        new_state = MonitoringState.ACTIVE if self.sessions else MonitoringState.IDLE
        if new_state is not self.state:
            logger.info("Switched to %s monitoring", new_state.value)
        self.state = new_state

    # ── Status ──────────────────────────────────────────────────

    def tracked_sessions(self) -> list[TrackedSession]:
        return [
            TrackedSession(
                session_id=r.session.session_id,
                source=r.session.source,
                title=r.session.title,
                player_title=r.session.player_title,
                position_seconds=r.session.position_seconds,
                subtitle_stream_id=r.session.subtitle_stream_id,
                detector_state=r.detector_state.name,
                override_active=isinstance(r.override, Active),
                saved_subtitle_stream_id=r.override.saved if isinstance(r.override, Active) else None,
                missed_polls=r.missed_polls,
                pending_intents=[p.kind.value for p in r.pending],
            )
            for r in self.sessions.values()
        ]

    def status(self) -> MonitorStatus:
        return MonitorStatus(
            state=self.state.value,
            running=self.running,
            cycles=self.cycles,
            tracked_sessions=len(self.sessions),
            poll_interval_seconds=self.poll_interval,
        )
