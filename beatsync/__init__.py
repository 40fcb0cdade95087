"""Beat-synchronized block playback and mixing engine."""

from .errors import BeatSyncError, InvalidParameter, ContentUnavailable
from .timeline import Track, Block, TimelineStore
from .clock import Clock, ClockConfig, ClockState, BPM_PRESETS
from .content import (
    AudioContent,
    ContentLoader,
    ContentResolver,
    FileResolver,
    MemoryResolver,
    CallableResolver,
)
from .voice import Voice, VoiceState
from .limiter import Limiter, LimiterConfig
from .mixer import Mixer, MixerConfig, VoiceOptions, bus_gain
from .scheduler import BlockScheduler, SchedulerConfig, TickResult
from .metronome import Metronome, MetronomeConfig
from .engine import PlaybackEngine, EngineConfig

__all__ = [
    'BeatSyncError',
    'InvalidParameter',
    'ContentUnavailable',
    'Track',
    'Block',
    'TimelineStore',
    'Clock',
    'ClockConfig',
    'ClockState',
    'BPM_PRESETS',
    'AudioContent',
    'ContentLoader',
    'ContentResolver',
    'FileResolver',
    'MemoryResolver',
    'CallableResolver',
    'Voice',
    'VoiceState',
    'Limiter',
    'LimiterConfig',
    'Mixer',
    'MixerConfig',
    'VoiceOptions',
    'bus_gain',
    'BlockScheduler',
    'SchedulerConfig',
    'TickResult',
    'Metronome',
    'MetronomeConfig',
    'PlaybackEngine',
    'EngineConfig',
]
