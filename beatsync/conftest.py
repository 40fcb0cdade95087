"""Shared fixtures: a hand-driven time source and in-memory audio content."""

import numpy as np
import pytest

from beatsync.content import ContentLoader, MemoryResolver
from beatsync.mixer import Mixer, MixerConfig


SAMPLE_RATE = 44100


class ManualTime:
    """Time source that only moves when a test advances it."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_tone(seconds: float, freq: float = 440.0, amplitude: float = 0.5,
              sample_rate: int = SAMPLE_RATE) -> np.ndarray:
    """Stereo sine tone, (frames, 2) float32."""
    t = np.arange(int(seconds * sample_rate)) / sample_rate
    mono = (np.sin(2 * np.pi * freq * t) * amplitude).astype(np.float32)
    return np.stack([mono, mono], axis=1)


@pytest.fixture
def manual_time():
    return ManualTime()


@pytest.fixture
def resolver():
    """Resolver with a few registered clips."""
    res = MemoryResolver()
    res.register("tone", make_tone(4.0), SAMPLE_RATE)
    res.register("tone2", make_tone(4.0, freq=660.0), SAMPLE_RATE)
    res.register("loud", np.ones((SAMPLE_RATE, 2), dtype=np.float32) * 0.99, SAMPLE_RATE)
    return res


@pytest.fixture
def loader(resolver):
    """Loader with every registered clip already decoded, so voices start synchronously."""
    content_loader = ContentLoader(resolver, sample_rate=SAMPLE_RATE)
    content_loader.preload(["tone", "tone2", "loud"])
    return content_loader


@pytest.fixture
def mixer(loader, manual_time):
    m = Mixer(MixerConfig(sample_rate=SAMPLE_RATE), loader=loader, time_source=manual_time)
    yield m
    m.dispose()
