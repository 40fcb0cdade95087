"""
Voice Module
One playing instance of one block's audio, with its lifecycle state machine,
fade envelope and gain/pan ramps.
"""

from enum import Enum
from typing import Any, Optional

import numpy as np

from .content import AudioContent


class VoiceState(Enum):
    LOADING = "loading"
    READY = "ready"
    PLAYING = "playing"
    STOPPING = "stopping"
    DISPOSED = "disposed"


# Nothing re-enters LOADING; new content means a new Voice
_TRANSITIONS = {
    VoiceState.LOADING: {VoiceState.READY, VoiceState.DISPOSED},
    VoiceState.READY: {VoiceState.PLAYING, VoiceState.DISPOSED},
    VoiceState.PLAYING: {VoiceState.STOPPING, VoiceState.DISPOSED},
    VoiceState.STOPPING: {VoiceState.DISPOSED},
    VoiceState.DISPOSED: set(),
}

LIVE_STATES = (VoiceState.LOADING, VoiceState.READY, VoiceState.PLAYING)


class Ramp:
    """Linear parameter ramp over wall-clock time."""

    def __init__(self, value: float = 0.0):
        self._start_value = float(value)
        self._target = float(value)
        self._start_time = 0.0
        self._duration = 0.0

    @property
    def target(self) -> float:
        return self._target

    @property
    def end_time(self) -> float:
        return self._start_time + self._duration

    def value_at(self, now: float) -> float:
        if self._duration <= 0.0 or now >= self.end_time:
            return self._target
        if now <= self._start_time:
            return self._start_value
        fraction = (now - self._start_time) / self._duration
        return self._start_value + (self._target - self._start_value) * fraction

    def values(self, t0: float, frames: int, sample_rate: int) -> np.ndarray:
        """Per-sample ramp values for a buffer starting at t0."""
        if self._duration <= 0.0 or t0 >= self.end_time:
            return np.full(frames, self._target, dtype=np.float32)
        t = t0 + np.arange(frames, dtype=np.float64) / sample_rate
        fraction = np.clip((t - self._start_time) / self._duration, 0.0, 1.0)
        return (self._start_value + (self._target - self._start_value) * fraction).astype(np.float32)

    def set(self, target: float, now: float, duration: float):
        """Ramp from the current value to target over duration seconds."""
        self._start_value = self.value_at(now)
        self._target = float(target)
        self._start_time = now
        self._duration = max(0.0, duration)

    def jump(self, value: float):
        self._start_value = self._target = float(value)
        self._duration = 0.0

    def is_settled(self, now: float) -> bool:
        return self._duration <= 0.0 or now >= self.end_time


class Voice:
    """
    A single block's playback instance.

    Only the Mixer creates and mutates voices. The stored settings (gain, pan,
    mute, solo) are what the caller asked for; gain_ramp carries the computed
    gain after mute/solo rules, so clearing a mute restores the exact level.
    """

    def __init__(self, block_id: str, content_ref: Any, gain: float = 0.8,
                 pan: float = 0.0, mute: bool = False, solo: bool = False,
                 offset_seconds: float = 0.0, requested_at: Optional[float] = None):
        self.block_id = block_id
        self.content_ref = content_ref
        self.state = VoiceState.LOADING

        # Stored settings
        self.gain = gain
        self.pan = pan
        self.mute = mute
        self.solo = solo

        self.offset_seconds = max(0.0, offset_seconds)
        # When the offset was valid; time spent loading is added on start
        self.requested_at = requested_at
        self.content: Optional[AudioContent] = None
        self.position = 0  # Next frame to read
        self.start_requested = False
        self.error: Optional[Exception] = None

        self.gain_ramp = Ramp(0.0)
        self.pan_ramp = Ramp(pan)
        self.envelope = Ramp(0.0)
        self.stop_started: Optional[float] = None
        self.fade_out = 0.0

    def __repr__(self):
        return f"Voice({self.block_id!r}, {self.state.value})"

    def _transition(self, new_state: VoiceState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Voice {self.block_id}: illegal transition "
                               f"{self.state.value} -> {new_state.value}")
        self.state = new_state

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_sounding(self) -> bool:
        return self.state in (VoiceState.PLAYING, VoiceState.STOPPING)

    def _offset_at(self, now: float) -> float:
        if self.requested_at is None:
            return self.offset_seconds
        return self.offset_seconds + max(0.0, now - self.requested_at)

    def _seek_frames(self, seconds: float):
        if self.content is not None:
            self.position = min(int(seconds * self.content.sample_rate), self.content.frames)

    def mark_ready(self, content: AudioContent):
        self._transition(VoiceState.READY)
        self.content = content
        self._seek_frames(self.offset_seconds)

    def start(self, now: float, fade_in: float):
        self._transition(VoiceState.PLAYING)
        # The playhead kept moving while the content loaded
        self._seek_frames(self._offset_at(now))
        self.envelope.jump(0.0)
        self.envelope.set(1.0, now, fade_in)

    def reposition(self, offset_seconds: float, now: float, fade_in: float):
        """Move the read position to a new offset into the content."""
        self.offset_seconds = max(0.0, offset_seconds)
        self.requested_at = now
        if self.state == VoiceState.PLAYING:
            self._seek_frames(self.offset_seconds)
            self.envelope.jump(0.0)
            self.envelope.set(1.0, now, fade_in)
        elif self.state == VoiceState.READY:
            self._seek_frames(self.offset_seconds)

    def begin_stop(self, now: float, fade_out: float):
        self._transition(VoiceState.STOPPING)
        self.envelope.set(0.0, now, fade_out)
        self.stop_started = now
        self.fade_out = fade_out

    def fade_finished(self, now: float, grace: float = 0.0) -> bool:
        if self.state != VoiceState.STOPPING or self.stop_started is None:
            return False
        return now >= self.stop_started + self.fade_out + grace

    def dispose(self) -> bool:
        """Release the content reference. Safe to call more than once."""
        if self.state == VoiceState.DISPOSED:
            return False
        self._transition(VoiceState.DISPOSED)
        self.content = None
        self.start_requested = False
        return True

    def render(self, frames: int, t0: float, sample_rate: int,
               bus: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
        """
        Render this voice's next buffer, or None if it contributes nothing.

        The bus gain curve is folded in per voice so that gain x bus can be
        capped at unity before the master stage.
        """
        if not self.is_sounding or self.content is None:
            return None

        remaining = self.content.frames - self.position
        n = max(0, min(frames, remaining))
        if n == 0:
            return None

        out = np.zeros((frames, 2), dtype=np.float32)
        out[:n] = self.content.samples[self.position:self.position + n]
        self.position += n

        gain = self.envelope.values(t0, frames, sample_rate) * self.gain_ramp.values(t0, frames, sample_rate)
        if bus is not None:
            gain = np.minimum(gain * bus, 1.0)
        pan = np.clip(self.pan_ramp.values(t0, frames, sample_rate), -1.0, 1.0)
        out[:, 0] *= gain * (1.0 - np.maximum(pan, 0.0))
        out[:, 1] *= gain * (1.0 + np.minimum(pan, 0.0))
        return out

    def snapshot(self) -> dict:
        return {
            'block_id': self.block_id,
            'state': self.state.value,
            'gain': self.gain,
            'pan': self.pan,
            'mute': self.mute,
            'solo': self.solo,
            'computed_gain': self.gain_ramp.target,
            'position_seconds': (self.position / self.content.sample_rate) if self.content else 0.0,
            'error': str(self.error) if self.error else None,
        }
