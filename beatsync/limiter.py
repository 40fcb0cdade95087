"""Peak limiter used as the last stage of the mix bus."""

from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np


@dataclass
class LimiterConfig:
    """Configuration for the output limiter."""
    sample_rate: int = 44100
    threshold_db: float = -0.5   # Output ceiling in dBFS
    release_ms: float = 50.0     # Recovery time after a peak


class Limiter:
    """
    Brickwall peak limiter with instant attack and exponential release.

    A safety net for transient overshoot; normal gain control happens in the
    mixer's bus and master stages.
    """

    def __init__(self, config: Optional[LimiterConfig] = None):
        self.config = config or LimiterConfig()
        self.sample_rate = self.config.sample_rate
        self.enabled = True

        self._update_time_constants()

        # Gain follower state
        self._gain = 1.0
        self.last_reduction_db = 0.0

    def _update_time_constants(self) -> None:
        """Calculate release coefficient from the time constant."""
        if self.config.release_ms > 0:
            self._release_coef = np.exp(-1.0 / (self.config.release_ms * self.sample_rate / 1000.0))
        else:
            self._release_coef = 0.0

    def _db_to_linear(self, db: float) -> float:
        """Convert decibels to linear gain."""
        return 10.0 ** (db / 20.0)

    def _linear_to_db(self, linear: float) -> float:
        """Convert linear gain to decibels."""
        if linear <= 0:
            return -96.0  # Floor at -96 dB
        return 20.0 * np.log10(linear)

    @property
    def ceiling(self) -> float:
        return self._db_to_linear(self.config.threshold_db)

    def process(self, audio: np.ndarray) -> np.ndarray:
        """Limit a (frames,) or (frames, channels) buffer to the ceiling."""
        ceiling = self.ceiling
        if not self.enabled or audio.shape[0] == 0:
            return np.clip(audio, -ceiling, ceiling)

        # Use the max of all channels so the stereo image is preserved
        peak = np.abs(audio) if audio.ndim == 1 else np.max(np.abs(audio), axis=1)

        if self._gain >= 1.0 and float(peak.max()) <= ceiling:
            self.last_reduction_db = 0.0
            return audio

        gain = self._gain_curve(peak, ceiling)
        self.last_reduction_db = self._linear_to_db(float(gain.min()))

        wet = audio * (gain if audio.ndim == 1 else gain.reshape(-1, 1))
        # Hard clip catches anything the follower let through
        return np.clip(wet, -ceiling, ceiling).astype(audio.dtype, copy=False)

    def _gain_curve(self, peak: np.ndarray, ceiling: float) -> np.ndarray:
        output_gain = np.ones(len(peak), dtype=np.float32)
        g = self._gain
        coef = self._release_coef

        for i in range(len(peak)):
            level = peak[i]
            required = ceiling / level if level > ceiling else 1.0

            if required < g:
                g = required
            else:
                g = coef * g + (1.0 - coef) * required

            output_gain[i] = g

        self._gain = min(1.0, g)
        return output_gain

    def reset(self) -> None:
        """Reset follower state."""
        self._gain = 1.0
        self.last_reduction_db = 0.0

    def get_parameters(self) -> Dict[str, Any]:
        return {
            'threshold_db': self.config.threshold_db,
            'release_ms': self.config.release_ms,
            'enabled': self.enabled,
            'reduction_db': self.last_reduction_db,
        }

    def set_parameter(self, name: str, value: float) -> bool:
        if name == 'threshold_db':
            self.config.threshold_db = max(-24.0, min(value, 0.0))
            return True
        elif name == 'release_ms':
            self.config.release_ms = max(1.0, min(value, 1000.0))
            self._update_time_constants()
            return True
        elif name == 'enabled':
            self.enabled = bool(value)
            return True
        return False
