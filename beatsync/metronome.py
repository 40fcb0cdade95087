"""
Metronome Module
Click on every beat, accented on the downbeat, mixed as a one-shot.
"""

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import numpy as np

from .clock import Clock
from .mixer import Mixer


@dataclass
class MetronomeConfig:
    """Metronome configuration."""
    enabled: bool = False
    volume: float = 0.7
    sample_rate: int = 44100
    click_duration: float = 0.05  # 50ms
    downbeat_freq: float = 1200.0
    beat_freq: float = 900.0


def generate_click_samples(sample_rate: int = 44100, duration: float = 0.05,
                           downbeat_freq: float = 1200.0,
                           beat_freq: float = 900.0) -> Dict[str, np.ndarray]:
    """Generate audio samples for metronome clicks.

    Short sine bursts with an exponential decay: a higher, louder click for
    the downbeat (beat 1) and a softer one for the other beats.

    Returns:
        Dictionary with 'downbeat' and 'beat' mono float32 samples.
    """
    t = np.linspace(0, duration, int(sample_rate * duration), False)

    # Fast decay for a percussive sound
    decay = np.exp(-t * 50)

    downbeat = (np.sin(2 * np.pi * downbeat_freq * t) * decay * 0.6).astype(np.float32)
    beat = (np.sin(2 * np.pi * beat_freq * t) * decay * 0.4).astype(np.float32)

    return {
        'downbeat': downbeat,
        'beat': beat
    }


class Metronome:
    """Listens to the clock's beat events and triggers clicks in the mixer."""

    def __init__(self, clock: Clock, mixer: Mixer, config: Optional[MetronomeConfig] = None):
        self.clock = clock
        self.mixer = mixer
        self.config = config or MetronomeConfig()
        self.config.volume = max(0.0, min(1.0, self.config.volume))

        self._click_samples = generate_click_samples(
            self.config.sample_rate,
            self.config.click_duration,
            self.config.downbeat_freq,
            self.config.beat_freq,
        )
        self.click_count = 0
        self._click_callbacks: List[Callable[[int, int], None]] = []
        self._unsubscribe = clock.add_beat_callback(self._on_beat)

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def set_enabled(self, enabled: bool):
        self.config.enabled = bool(enabled)
        print(f"Metronome: {'Enabled' if self.config.enabled else 'Disabled'}")

    @property
    def volume(self) -> float:
        return self.config.volume

    def set_volume(self, volume: float):
        self.config.volume = max(0.0, min(1.0, float(volume)))

    def add_click_callback(self, callback: Callable[[int, int], None]):
        """Register callback for each click (bar, beat)."""
        self._click_callbacks.append(callback)

    def _on_beat(self, bar: int, beat: int):
        if not self.config.enabled:
            return

        sample_key = 'downbeat' if beat == 1 else 'beat'
        self.mixer.trigger_one_shot(self._click_samples[sample_key], self.config.volume)
        self.click_count += 1

        for callback in list(self._click_callbacks):
            try:
                callback(bar, beat)
            except Exception as e:
                print(f"Click callback error: {e}")

    def dispose(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._click_callbacks.clear()
