"""Rewind detector: per-session state machine deciding when to force and restore subtitles."""

from dataclasses import dataclass
from enum import Enum
from typing import Union

from services.history import Classification


class Intent(str, Enum):
    APPLY_OVERRIDE = "apply_override"
    RESTORE = "restore"


@dataclass(frozen=True)
class Normal:
    cooldown: int = 0  # cycles left in which rewinds are ignored
    name = "normal"


@dataclass(frozen=True)
class OverrideActive:
    forward_streak: int = 0
    name = "override_active"


DetectorState = Union[Normal, OverrideActive]


class RewindDetector:
    """Pure transition function; the caller owns the state and executes the intents.

    Normal + Rewind starts an override. While the override is active, only a
    sustained run of Forward classifications (or a jump forward past the
    replayed section) restores the original subtitles. Further rewinds reset
    the run but never capture the selection again.

    A long rewind is a scene change: it restores any active override and
    starts a cooldown so that a user stepping back with a remote does not
    trigger an override on the next short step.
    """

    def __init__(self, confirmation_cycles: int, cooldown_cycles: int = 0):
        self.confirmation_cycles = confirmation_cycles
        self.cooldown_cycles = cooldown_cycles

    def step(
        self, state: DetectorState, classification: Classification,
    ) -> tuple[DetectorState, list[Intent]]:
        if isinstance(state, Normal):
            if state.cooldown:
                return self._cooling_down(state, classification), []
            if classification is Classification.REWIND:
                return OverrideActive(), [Intent.APPLY_OVERRIDE]
            if classification is Classification.LONG_REWIND:
                return Normal(self.cooldown_cycles), []
            return state, []

        if isinstance(state, OverrideActive):
            if classification is Classification.FORWARD:
                streak = state.forward_streak + 1
                if streak >= self.confirmation_cycles:
                    return Normal(), [Intent.RESTORE]
                return OverrideActive(streak), []
            if classification is Classification.REWIND:
                return OverrideActive(), []
            if classification is Classification.SEEK_FORWARD:
                return Normal(), [Intent.RESTORE]
            if classification is Classification.LONG_REWIND:
                return Normal(self.cooldown_cycles), [Intent.RESTORE]
            # Paused and Unknown neither count towards nor break the run
            return state, []

        raise TypeError(f"Unknown detector state: {state!r}")

    def _cooling_down(self, state: Normal, classification: Classification) -> Normal:
        if classification is Classification.SEEK_FORWARD:
            return Normal()
        if classification in (Classification.REWIND, Classification.LONG_REWIND):
            return Normal(self.cooldown_cycles)
        return Normal(state.cooldown - 1)

    def dispose(self, state: DetectorState) -> list[Intent]:
        """Intents to run before a session leaves the table."""
        if isinstance(state, OverrideActive):
            return [Intent.RESTORE]
        return []
