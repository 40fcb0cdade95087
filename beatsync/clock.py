"""
Musical Clock Module
Converts wall-clock time and a mutable tempo into a continuous beat position.
"""

import math
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .errors import InvalidParameter


MIN_BPM = 20.0
MAX_BPM = 300.0
BPM_PRESETS = [60, 80, 90, 100, 120, 140, 160, 180]


class ClockState(Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass
class ClockConfig:
    """Clock configuration."""
    bpm: float = 120.0
    time_sig_numerator: int = 4
    time_sig_denominator: int = 4
    start_beat: float = 1.0  # Beat at the left edge of the timeline


def beats_to_seconds(beats: float, bpm: float) -> float:
    """Convert a beat count to seconds at the given tempo."""
    return beats * (60.0 / bpm)


def seconds_to_beats(seconds: float, bpm: float) -> float:
    """Convert seconds to a beat count at the given tempo."""
    return seconds * (bpm / 60.0)


def bar_and_beat(beat: float, numerator: int = 4, start_beat: float = 1.0) -> Tuple[int, int]:
    """Convert a beat position to 1-based (bar, beat in bar)."""
    index = max(0, int(math.floor(beat - start_beat)))
    return index // numerator + 1, index % numerator + 1


def format_time(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""
    seconds = max(0, int(seconds))
    hrs = seconds // 3600
    mins = (seconds % 3600) // 60
    secs = seconds % 60
    return f"{hrs:02d}:{mins:02d}:{secs:02d}"


def _subscribe(callbacks: List[Callable], callback: Callable) -> Callable[[], None]:
    callbacks.append(callback)

    def unsubscribe():
        if callback in callbacks:
            callbacks.remove(callback)

    return unsubscribe


class Clock:
    """
    Musical clock driven by an absolute time source.

    The beat position is always derived from the anchor
    (origin_time, origin_beat) and the current tempo, never accumulated per
    frame, so it can be queried at any rate without drift. Every tempo change,
    play, pause or seek re-anchors at a single sampled instant.
    """

    def __init__(self, config: Optional[ClockConfig] = None,
                 time_source: Optional[Callable[[], float]] = None):
        self.config = config or ClockConfig()
        self.config.bpm = self._clamp_bpm(self.config.bpm)
        self._time = time_source or time.perf_counter
        self._lock = threading.RLock()

        self._state = ClockState.STOPPED
        self._origin_time = self._time()
        self._origin_beat = float(self.config.start_beat)
        self._last_whole_beat: Optional[int] = None

        # Callbacks
        self._state_callbacks: List[Callable[[ClockState], None]] = []
        self._tempo_callbacks: List[Callable[[float, float], None]] = []  # old, new
        self._seek_callbacks: List[Callable[[float], None]] = []
        self._position_callbacks: List[Callable[[float], None]] = []
        self._beat_callbacks: List[Callable[[int, int], None]] = []  # bar, beat

    @property
    def state(self) -> ClockState:
        return self._state

    @property
    def running(self) -> bool:
        return self._state == ClockState.PLAYING

    @property
    def bpm(self) -> float:
        return self.config.bpm

    @bpm.setter
    def bpm(self, value: float):
        self.set_tempo(value)

    @staticmethod
    def _clamp_bpm(value) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
            raise InvalidParameter(f"Tempo must be a number, got {value!r}")
        return max(MIN_BPM, min(MAX_BPM, float(value)))

    def _beat_at(self, now: float) -> float:
        if self._state == ClockState.PLAYING:
            elapsed = now - self._origin_time
            return self._origin_beat + seconds_to_beats(elapsed, self.config.bpm)
        return self._origin_beat

    def current_beat(self) -> float:
        """Current beat position; frozen unless playing."""
        with self._lock:
            return self._beat_at(self._time())

    def elapsed_seconds(self) -> float:
        """Timeline seconds from the start beat, at the current tempo."""
        with self._lock:
            beats = self._beat_at(self._time()) - self.config.start_beat
            return max(0.0, beats_to_seconds(beats, self.config.bpm))

    def _reset_beat_edge(self, beat: float):
        # An exact whole beat fires its beat callback on the next publish
        whole = math.floor(beat)
        self._last_whole_beat = whole - 1 if whole == beat else whole

    def play(self) -> bool:
        """Start or resume from the current position."""
        with self._lock:
            if self._state == ClockState.PLAYING:
                return True
            now = self._time()
            self._origin_beat = self._beat_at(now)
            self._origin_time = now
            self._state = ClockState.PLAYING
            self._reset_beat_edge(self._origin_beat)
            beat = self._origin_beat

        self._notify_state_change(ClockState.PLAYING)
        print(f"Clock: Playing from beat {beat:.2f} at {self.config.bpm:g} BPM")
        return True

    def _freeze(self, state: ClockState) -> Optional[float]:
        """Enter a frozen state. Returns the beat frozen at, or None if nothing changed."""
        with self._lock:
            was_playing = self._state == ClockState.PLAYING
            if not was_playing and self._state == state:
                return None
            now = self._time()
            self._origin_beat = self._beat_at(now)
            self._origin_time = now
            self._state = state
            beat = self._origin_beat
        self._notify_state_change(state)
        return beat

    def pause(self) -> Optional[float]:
        """Freeze the beat position."""
        beat = self._freeze(ClockState.PAUSED)
        if beat is not None:
            print(f"Clock: Paused at beat {beat:.2f}")
        return beat

    def stop(self) -> Optional[float]:
        """Freeze the beat position and enter the stopped state."""
        beat = self._freeze(ClockState.STOPPED)
        if beat is not None:
            print(f"Clock: Stopped at beat {beat:.2f}")
        return beat

    def reset(self):
        """Stop and return to the start of the timeline."""
        self.stop()
        self.seek(self.config.start_beat)

    def seek(self, beat: float):
        """Jump to a beat position, playing or not."""
        if isinstance(beat, bool) or not isinstance(beat, (int, float)) or math.isnan(beat):
            raise InvalidParameter(f"Seek target must be a number, got {beat!r}")
        if math.isinf(beat):
            raise InvalidParameter(f"Seek target must be finite, got {beat!r}")

        with self._lock:
            self._origin_beat = max(0.0, float(beat))
            self._origin_time = self._time()
            self._reset_beat_edge(self._origin_beat)
            target = self._origin_beat

        for callback in list(self._seek_callbacks):
            try:
                callback(target)
            except Exception as e:
                print(f"Seek callback error: {e}")

        print(f"Clock: Seeked to beat {target:.2f}")

    def set_tempo(self, bpm: float) -> float:
        """Set tempo (clamped to 20-300 BPM) without moving the playhead."""
        new_bpm = self._clamp_bpm(bpm)

        with self._lock:
            old_bpm = self.config.bpm
            if new_bpm == old_bpm:
                return new_bpm
            # Sample the position with the old tempo and re-anchor at that same instant
            now = self._time()
            self._origin_beat = self._beat_at(now)
            self._origin_time = now
            self.config.bpm = new_bpm
            beat = self._origin_beat

        for callback in list(self._tempo_callbacks):
            try:
                callback(old_bpm, new_bpm)
            except Exception as e:
                print(f"Tempo callback error: {e}")

        print(f"Clock: BPM changed from {old_bpm:g} to {new_bpm:g} at beat {beat:.2f}")
        return new_bpm

    def set_time_signature(self, numerator: int, denominator: int):
        """Set time signature."""
        self.config.time_sig_numerator = max(1, min(16, int(numerator)))
        self.config.time_sig_denominator = max(1, min(16, int(denominator)))
        print(f"Clock: Time signature set to {self.config.time_sig_numerator}/"
              f"{self.config.time_sig_denominator}")

    def publish_position(self, beat: float):
        """Notify position listeners, and beat listeners on a whole-beat boundary."""
        for callback in list(self._position_callbacks):
            try:
                callback(beat)
            except Exception as e:
                print(f"Position callback error: {e}")

        whole = math.floor(beat)
        with self._lock:
            crossed = self._last_whole_beat is None or whole > self._last_whole_beat
            if crossed:
                self._last_whole_beat = whole
        if not crossed or not self._beat_callbacks:
            return

        bar, beat_in_bar = bar_and_beat(whole, self.config.time_sig_numerator,
                                        self.config.start_beat)
        for callback in list(self._beat_callbacks):
            try:
                callback(bar, beat_in_bar)
            except Exception as e:
                print(f"Beat callback error: {e}")

    def _notify_state_change(self, state: ClockState):
        """Notify state change callbacks."""
        for callback in list(self._state_callbacks):
            try:
                callback(state)
            except Exception as e:
                print(f"State callback error: {e}")

    def add_state_callback(self, callback: Callable[[ClockState], None]) -> Callable[[], None]:
        """Register callback for state changes. Returns an unsubscribe function."""
        return _subscribe(self._state_callbacks, callback)

    def add_tempo_callback(self, callback: Callable[[float, float], None]) -> Callable[[], None]:
        """Register callback for tempo changes (old_bpm, new_bpm)."""
        return _subscribe(self._tempo_callbacks, callback)

    def add_seek_callback(self, callback: Callable[[float], None]) -> Callable[[], None]:
        """Register callback for seeks (target beat)."""
        return _subscribe(self._seek_callbacks, callback)

    def add_position_callback(self, callback: Callable[[float], None]) -> Callable[[], None]:
        """Register callback for position updates published by the scheduler loop."""
        return _subscribe(self._position_callbacks, callback)

    def add_beat_callback(self, callback: Callable[[int, int], None]) -> Callable[[], None]:
        """Register callback for beat events (bar, beat)."""
        return _subscribe(self._beat_callbacks, callback)

    def clear_callbacks(self):
        self._state_callbacks.clear()
        self._tempo_callbacks.clear()
        self._seek_callbacks.clear()
        self._position_callbacks.clear()
        self._beat_callbacks.clear()

    def get_status(self) -> dict:
        """Get current clock status."""
        with self._lock:
            now = self._time()
            beat = self._beat_at(now)
            bpm = self.config.bpm
            state = self._state
        bar, beat_in_bar = bar_and_beat(beat, self.config.time_sig_numerator,
                                        self.config.start_beat)
        elapsed = max(0.0, beats_to_seconds(beat - self.config.start_beat, bpm))
        return {
            'state': state.value,
            'current_beat': beat,
            'bar': bar,
            'beat': beat_in_bar,
            'bpm': bpm,
            'time_sig': f"{self.config.time_sig_numerator}/{self.config.time_sig_denominator}",
            'display_time': format_time(elapsed),
        }
