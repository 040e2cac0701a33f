"""Per-session position history and transition classification."""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class Classification(str, Enum):
    FORWARD = "forward"
    PAUSED = "paused"
    SEEK_FORWARD = "seek_forward"
    REWIND = "rewind"
    LONG_REWIND = "long_rewind"  # backward jump past max_rewind: a scene change, not a replay
    UNKNOWN = "unknown"


_JUMPS = (Classification.REWIND, Classification.LONG_REWIND, Classification.SEEK_FORWARD)
_DECISIONS = (Classification.FORWARD,) + _JUMPS


@dataclass(frozen=True)
class PositionSample:
    timestamp: float  # monotonic seconds
    position: float  # playback position in seconds
    sequence: int


@dataclass(frozen=True)
class ClassifierOptions:
    rewind_threshold: float
    jitter_tolerance: float
    seek_forward_tolerance: float
    min_sample_interval: float
    max_rewind: float = float("inf")

    @classmethod
    def from_settings(cls, settings) -> "ClassifierOptions":
        return cls(
            rewind_threshold=settings.rewind_threshold_seconds,
            jitter_tolerance=settings.jitter_tolerance_seconds,
            seek_forward_tolerance=settings.seek_forward_tolerance_seconds,
            min_sample_interval=settings.min_sample_interval_seconds,
            max_rewind=settings.max_rewind_seconds,
        )


def classify_step(
    previous: PositionSample, timestamp: float, position: float, options: ClassifierOptions,
) -> Classification:
    """Classify the move from ``previous`` to (timestamp, position) for a playing session."""
    dt = timestamp - previous.timestamp
    delta = position - previous.position

    if dt < options.min_sample_interval:
        return Classification.UNKNOWN
    if delta < -options.max_rewind:
        return Classification.LONG_REWIND
    if delta < -options.rewind_threshold:
        return Classification.REWIND
    if delta < -options.jitter_tolerance:
        # Backward step beyond jitter but short of a rewind: no decision
        return Classification.UNKNOWN
    if delta > dt + options.seek_forward_tolerance:
        return Classification.SEEK_FORWARD
    return Classification.FORWARD


class PositionHistory:
    """Bounded record of the most recent samples for one session.

    Every sample is kept, but only playing samples that produced a decision
    (Forward or a jump) become the baseline for the next comparison. A rewind
    first reported while paused, buffering or inside a duplicate poll is
    therefore still seen once playback resumes.
    """

    def __init__(self, options: ClassifierOptions, size: int = 4):
        self.options = options
        self._samples: deque[PositionSample] = deque(maxlen=size)
        self._next_sequence = 0
        self._baseline: Optional[PositionSample] = None
        self._before_jump: Optional[PositionSample] = None
        self._last_decision = Classification.UNKNOWN

    @property
    def samples(self) -> list[PositionSample]:
        return list(self._samples)

    @property
    def latest(self) -> Optional[PositionSample]:
        return self._samples[-1] if self._samples else None

    @property
    def baseline(self) -> Optional[PositionSample]:
        return self._baseline

    def observe(self, timestamp: float, position: float, is_paused: bool) -> Classification:
        """Record a sample and classify the transition that led to it."""
        classification = self._classify(timestamp, position, is_paused)
        sample = PositionSample(timestamp, position, self._next_sequence)
        self._samples.append(sample)
        self._next_sequence += 1

        if self._baseline is None:
            self._baseline = sample
        elif classification in _DECISIONS:
            self._before_jump = self._baseline
            self._baseline = sample
            self._last_decision = classification
        return classification

    def _classify(self, timestamp: float, position: float, is_paused: bool) -> Classification:
        if self._baseline is None:
            return Classification.UNKNOWN
        if is_paused:
            return Classification.PAUSED

        result = classify_step(self._baseline, timestamp, position, self.options)
        if result in _JUMPS and self._rebounds_from_spike(timestamp, position):
            logger.debug(
                "Treating %.2fs as a rebound from outlier report %.2fs",
                position, self._baseline.position,
            )
            return Classification.FORWARD
        return result

    def _rebounds_from_spike(self, timestamp: float, position: float) -> bool:
        # A jump straight back onto the playback line that preceded the previous jump
        if self._last_decision not in _JUMPS or self._before_jump is None:
            return False
        return classify_step(self._before_jump, timestamp, position, self.options) == Classification.FORWARD
