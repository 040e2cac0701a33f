import pytest

from config import Settings
from errors import TransientFetchError
from models import NO_SUBTITLES, SessionSnapshot, SubtitleStream
from services.monitor import MonitorLoop
from services.session_manager import SessionFetcher


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeClient:
    """In-memory media server: tests set ``sessions`` and inspect ``commands``."""

    def __init__(self, source: str = "plex"):
        self.source = source
        self.enabled = True
        self.sessions: list[SessionSnapshot] = []
        self.commands: list[tuple[str, str]] = []
        self.command_errors: list[Exception] = []
        self.fail_fetch = False

    async def list_active_sessions(self) -> list[SessionSnapshot]:
        if self.fail_fetch:
            raise TransientFetchError("server unreachable")
        return list(self.sessions)

    async def select_subtitle_stream(self, session: SessionSnapshot, stream_id: str) -> None:
        self.commands.append((session.session_id, stream_id))
        if self.command_errors:
            raise self.command_errors.pop(0)


def make_session(
    position: float,
    subtitle: str = NO_SUBTITLES,
    paused: bool = False,
    session_id: str = "plex-1",
    source: str = "plex",
) -> SessionSnapshot:
    return SessionSnapshot(
        session_id=session_id,
        source=source,
        player_id="player-1",
        player_title="Living Room",
        media_id="100",
        title="Some Show",
        position_seconds=position,
        is_paused=paused,
        subtitle_stream_id=subtitle,
        available_subtitles=[
            SubtitleStream(id="41", title="Deutsch (SRT)", language="de"),
            SubtitleStream(id="42", title="English (SRT)", language="en"),
        ],
    )


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        plex_url="http://plex.local:32400",
        plex_token="token",
        rewind_threshold_seconds=3.0,
        max_rewind_seconds=60.0,
        long_rewind_cooldown_cycles=2,
        jitter_tolerance_seconds=1.0,
        seek_forward_tolerance_seconds=7.0,
        min_sample_interval_seconds=0.5,
        forward_confirmation_cycles=2,
        history_size=4,
        active_poll_interval_seconds=1.0,
        idle_poll_interval_seconds=30.0,
        missed_poll_grace=1,
        request_timeout_seconds=1.0,
        command_retry_limit=2,
        subtitle_preference_patterns=["English"],
    )


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monitor(settings, client, clock) -> MonitorLoop:
    fetcher = SessionFetcher([client], timeout=settings.request_timeout_seconds)
    return MonitorLoop(settings, fetcher, clock=clock)
