"""
Playback Engine
Explicitly constructed owner of the clock, mixer, scheduler, metronome and
audio output. Callers hold one instance and dispose it when done.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .clock import Clock, ClockConfig, ClockState
from .content import ContentLoader, ContentResolver
from .errors import ContentUnavailable
from .metronome import Metronome, MetronomeConfig
from .mixer import Mixer, MixerConfig
from .scheduler import BlockScheduler, SchedulerConfig
from .timeline import TimelineStore


@dataclass
class EngineConfig:
    """Engine configuration; each component keeps its own config."""
    clock: ClockConfig = field(default_factory=ClockConfig)
    mixer: MixerConfig = field(default_factory=MixerConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    metronome: MetronomeConfig = field(default_factory=MetronomeConfig)
    output_device: Optional[int] = None
    enable_output: bool = False  # Open a sounddevice stream on create
    cache_content: bool = True


class PlaybackEngine:
    """
    Beat-synchronized playback core.

    Wires the scheduler to the clock and the mixer, and the metronome to the
    clock's beat events. The audio output, when enabled, pulls the mixer from
    the device thread; otherwise callers pull mixer.render() themselves.
    """

    def __init__(self, store=None, resolver: Optional[ContentResolver] = None,
                 config: Optional[EngineConfig] = None,
                 time_source: Optional[Callable[[], float]] = None):
        self.config = config or EngineConfig()
        self.store = store if store is not None else TimelineStore()

        # Clock
        self.clock = Clock(self.config.clock, time_source=time_source)

        # Mixer and content loading
        self.loader = ContentLoader(resolver, sample_rate=self.config.mixer.sample_rate,
                                    cache=self.config.cache_content)
        self.mixer = Mixer(self.config.mixer, loader=self.loader, time_source=time_source)

        # Scheduler
        self.scheduler = BlockScheduler(self.clock, self.mixer, self.store,
                                        self.config.scheduler)

        # Metronome
        self.config.metronome.sample_rate = self.config.mixer.sample_rate
        self.metronome = Metronome(self.clock, self.mixer, self.config.metronome)

        self.output = None
        self._disposed = False

    @classmethod
    def create(cls, store=None, resolver: Optional[ContentResolver] = None,
               config: Optional[EngineConfig] = None,
               time_source: Optional[Callable[[], float]] = None) -> 'PlaybackEngine':
        """Build an engine and open the audio output if configured."""
        engine = cls(store, resolver, config, time_source)
        if engine.config.enable_output:
            engine.start_output()
        print(f"PlaybackEngine: Created ({engine.config.mixer.sample_rate}Hz, "
              f"{engine.clock.bpm:g} BPM)")
        return engine

    # === Audio output ===

    def start_output(self) -> bool:
        """Open the device stream. A device failure leaves the engine usable."""
        if self.output is None:
            from .output import AudioOutput, AudioOutputConfig
            self.output = AudioOutput(self.mixer, AudioOutputConfig(
                sample_rate=self.config.mixer.sample_rate,
                buffer_size=self.config.mixer.buffer_size,
                channels=self.config.mixer.channels,
                device=self.config.output_device,
            ))
        return self.output.start()

    def stop_output(self):
        if self.output is not None:
            self.output.stop()

    def set_output_device(self, device_id: Optional[int]) -> bool:
        self.config.output_device = device_id
        if self.output is None:
            return True
        return self.output.set_device(device_id)

    # === Transport ===

    def play(self) -> bool:
        return self.clock.play()

    def pause(self):
        self.clock.pause()

    def stop(self):
        self.clock.stop()

    def reset(self):
        """Stop and return to the first beat."""
        self.clock.reset()

    def seek(self, beat: float):
        self.clock.seek(beat)

    def set_tempo(self, bpm: float) -> float:
        return self.clock.set_tempo(bpm)

    @property
    def bpm(self) -> float:
        return self.clock.bpm

    @property
    def state(self) -> ClockState:
        return self.clock.state

    def current_beat(self) -> float:
        return self.clock.current_beat()

    # === Mixing ===

    def set_volume(self, volume: float):
        self.mixer.set_master_volume(volume)

    def set_mute(self, muted: bool):
        self.mixer.set_mute(muted)

    def set_voice_gain(self, block_id: str, gain: float) -> bool:
        return self.mixer.set_voice_gain(block_id, gain)

    def set_voice_pan(self, block_id: str, pan: float) -> bool:
        return self.mixer.set_voice_pan(block_id, pan)

    def set_voice_mute(self, block_id: str, muted: bool) -> bool:
        return self.mixer.set_voice_mute(block_id, muted)

    def set_voice_solo(self, block_id: str, solo: bool) -> bool:
        return self.mixer.set_voice_solo(block_id, solo)

    def set_metronome(self, enabled: bool, volume: Optional[float] = None):
        self.metronome.set_enabled(enabled)
        if volume is not None:
            self.metronome.set_volume(volume)

    # === Content ===

    def preload(self, content_refs: List[Any]) -> Dict[Any, Optional[ContentUnavailable]]:
        """Decode content ahead of playback so voices start without loading."""
        return self.loader.preload(content_refs)

    def preload_timeline(self) -> Dict[Any, Optional[ContentUnavailable]]:
        """Preload the content of every block in the store."""
        refs = []
        for block in self.store.list_blocks():
            if block.content_ref not in refs:
                refs.append(block.content_ref)
        return self.preload(refs)

    def evict_content(self, content_ref: Any) -> bool:
        return self.loader.evict(content_ref)

    def prune_content(self) -> dict:
        """Drop cached content and voice settings for blocks no longer in the store."""
        pruned = self.scheduler.prune()
        if pruned['forgotten_blocks'] or pruned['evicted_content']:
            print(f"PlaybackEngine: Pruned {len(pruned['evicted_content'])} content item(s), "
                  f"{len(pruned['forgotten_blocks'])} block setting(s)")
        return pruned

    def retry_block(self, block_id: str) -> bool:
        return self.scheduler.retry_block(block_id)

    def poll(self):
        """Run one scheduler step by hand (when the loop thread is disabled)."""
        return self.scheduler.poll()

    # === Status ===

    def get_status(self) -> dict:
        return {
            'clock': self.clock.get_status(),
            'mixer': self.mixer.get_status(),
            'scheduler': self.scheduler.get_status(),
            'metronome': {
                'enabled': self.metronome.enabled,
                'volume': self.metronome.volume,
            },
            'output': self.output.get_status() if self.output else None,
            'disposed': self._disposed,
        }

    # === Teardown ===

    def dispose(self):
        """Stop everything and release every voice, thread and stream. Safe to call twice."""
        if self._disposed:
            return
        self._disposed = True

        self.clock.stop()
        self.scheduler.dispose()
        self.metronome.dispose()
        self.stop_output()
        self.mixer.dispose()
        self.loader.clear()
        self.clock.clear_callbacks()
        print("PlaybackEngine: Disposed")

    @property
    def disposed(self) -> bool:
        return self._disposed

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.dispose()
