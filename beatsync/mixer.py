"""
Mixer Module
Owns every Voice and the output graph: per-voice gain/pan stages, the summing
bus with headroom compensation, master gain and the output limiter.
"""

import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from .content import AudioContent, ContentLoader, to_stereo_float32
from .errors import ContentUnavailable, InvalidParameter
from .limiter import Limiter, LimiterConfig
from .voice import Ramp, Voice, VoiceState


DEFAULT_VOICE_GAIN = 0.8
MAX_VOICE_GAIN = 1.25


def bus_gain(active_voices: int, k: float = 0.25) -> float:
    """Headroom compensation for N summed voices: 1 / (1 + ln(N) * k)."""
    if active_voices <= 1:
        return 1.0
    return 1.0 / (1.0 + math.log(active_voices) * k)


@dataclass
class MixerConfig:
    """Mixer configuration."""
    sample_rate: int = 44100
    buffer_size: int = 512
    channels: int = 2
    master_gain: float = 0.9
    fade_in: float = 0.01        # Voice start fade (seconds)
    fade_out: float = 0.01       # Voice stop fade (seconds)
    param_ramp: float = 0.05     # Gain/pan/mute/solo ramps
    bus_ramp: float = 0.1        # Bus gain ramp on voice count change
    dispose_grace: float = 0.05  # Extra time after fade-out before disposal
    headroom_k: float = 0.25
    limiter_threshold_db: float = -0.5
    limiter_release_ms: float = 50.0
    load_join_timeout: float = 1.0


@dataclass
class VoiceOptions:
    """Initial settings for a new voice."""
    gain: float = DEFAULT_VOICE_GAIN
    pan: float = 0.0
    mute: bool = False
    solo: bool = False
    offset_seconds: float = 0.0


@dataclass
class _OneShot:
    samples: np.ndarray
    gain: float = 1.0
    position: int = 0


def _subscribe(callbacks: List[Callable], callback: Callable) -> Callable[[], None]:
    callbacks.append(callback)

    def unsubscribe():
        if callback in callbacks:
            callbacks.remove(callback)

    return unsubscribe


def _check_number(name: str, value) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise InvalidParameter(f"{name} must be a number, got {value!r}")
    return float(value)


class Mixer:
    """
    Mixes every active voice into one stereo signal.

    All mutation goes through the command methods below, under one lock that
    the audio thread's render() also takes. Voice state and error callbacks
    are fired after the lock is released.
    """

    def __init__(self, config: Optional[MixerConfig] = None,
                 loader: Optional[ContentLoader] = None,
                 time_source: Optional[Callable[[], float]] = None):
        self.config = config or MixerConfig()
        self.loader = loader or ContentLoader(sample_rate=self.config.sample_rate)
        self._time = time_source or time.perf_counter
        self._lock = threading.RLock()

        # Voices keyed by block id: at most one per block
        self._voices: Dict[str, Voice] = {}
        # Settings remembered per block and applied to its future voices
        self._settings: Dict[str, Dict[str, Any]] = {}
        # Blocks whose content failed to load, with the content_ref that failed
        self._failed: Dict[str, Any] = {}
        self._load_threads: List[threading.Thread] = []

        # Bus state
        self._master = Ramp(max(0.0, min(1.0, self.config.master_gain)))
        self._muted = False
        self._bus = Ramp(1.0)
        self._active_count = 0
        self._one_shots: List[_OneShot] = []

        self.limiter = Limiter(LimiterConfig(
            sample_rate=self.config.sample_rate,
            threshold_db=self.config.limiter_threshold_db,
            release_ms=self.config.limiter_release_ms,
        ))

        self._disposed = False

        # Callbacks
        self._voice_state_callbacks: List[Callable[[str, VoiceState], None]] = []
        self._voice_error_callbacks: List[Callable[[str, ContentUnavailable], None]] = []

    # === Voice lifecycle ===

    def start_voice(self, block_id: str, content_ref: Any,
                    options: Optional[VoiceOptions] = None) -> bool:
        """
        Create a voice for a block and start it as soon as its audio is ready.

        Args:
            block_id: Block the voice plays
            content_ref: Reference handed to the content loader
            options: Initial gain/pan/mute/solo and start offset

        Returns:
            True if a voice for the block is live (new or existing), False if
            the block's previous voice is still fading out, the same content
            already failed for this block, or the mixer is disposed
        """
        options = options or VoiceOptions()
        events: List[Tuple[str, VoiceState]] = []

        with self._lock:
            if self._disposed:
                return False

            existing = self._voices.get(block_id)
            if existing is not None:
                return existing.is_live

            if block_id in self._failed:
                if self._failed[block_id] == content_ref:
                    return False
                # New content gets a fresh attempt
                del self._failed[block_id]

            settings = dict(gain=options.gain, pan=options.pan,
                            mute=options.mute, solo=options.solo)
            settings.update(self._settings.get(block_id, {}))

            voice = Voice(
                block_id, content_ref,
                gain=max(0.0, min(MAX_VOICE_GAIN, settings['gain'])),
                pan=max(-1.0, min(1.0, settings['pan'])),
                mute=bool(settings['mute']),
                solo=bool(settings['solo']),
                offset_seconds=options.offset_seconds,
                requested_at=self._time(),
            )
            voice.start_requested = True
            self._voices[block_id] = voice
            events.append((block_id, VoiceState.LOADING))

            cached = self.loader.get_cached(content_ref)
            if cached is not None:
                self._on_loaded_locked(voice, cached, events)
            else:
                self._load_threads = [t for t in self._load_threads if t.is_alive()]
                thread = threading.Thread(target=self._load_worker, args=(voice,),
                                          name=f"voice-load-{block_id}", daemon=True)
                self._load_threads.append(thread)
                thread.start()

        self._emit_states(events)
        return True

    def _load_worker(self, voice: Voice):
        """Background thread: resolve and decode, then hand back to the mixer."""
        try:
            content = self.loader.load(voice.content_ref)
        except ContentUnavailable as e:
            self._on_load_failed(voice, e)
            return
        except Exception as e:
            self._on_load_failed(voice, ContentUnavailable(voice.content_ref, str(e)))
            return

        events: List[Tuple[str, VoiceState]] = []
        with self._lock:
            self._on_loaded_locked(voice, content, events)
        self._emit_states(events)

    def _on_loaded_locked(self, voice: Voice, content: AudioContent,
                          events: List[Tuple[str, VoiceState]]):
        # A stop or dispose while loading already took this voice out of the map
        if voice.state != VoiceState.LOADING or self._voices.get(voice.block_id) is not voice:
            return
        voice.mark_ready(content)
        events.append((voice.block_id, VoiceState.READY))
        if voice.start_requested:
            self._begin_playback_locked(voice, events)

    def _begin_playback_locked(self, voice: Voice, events: List[Tuple[str, VoiceState]]):
        now = self._time()
        voice.start_requested = False
        # The fade-in envelope handles the attack, so the gain stage starts at its target
        voice.gain_ramp.jump(self._target_gain_locked(voice, self._any_solo_locked()))
        voice.start(now, self.config.fade_in)
        events.append((voice.block_id, VoiceState.PLAYING))
        self._refresh_gains_locked(now)

    def _on_load_failed(self, voice: Voice, error: ContentUnavailable):
        with self._lock:
            voice.error = error
            current = self._voices.get(voice.block_id) is voice
            if current:
                # Recorded before the voice leaves the map so no start can slip in between
                self._failed[voice.block_id] = voice.content_ref
                del self._voices[voice.block_id]
            disposed = voice.dispose()
            if current:
                self._refresh_gains_locked(self._time())

        if not current:
            return

        print(f"Mixer: Voice {voice.block_id} failed to load: {error}")
        if disposed:
            self._emit_states([(voice.block_id, VoiceState.DISPOSED)])
        for callback in list(self._voice_error_callbacks):
            try:
                callback(voice.block_id, error)
            except Exception as e:
                print(f"Voice error callback error: {e}")

    def stop_voice(self, block_id: str) -> bool:
        """
        Fade out and release a block's voice.

        Stopping a voice that is missing or already stopping is a no-op and
        returns False. A voice still loading is cancelled outright, so it
        never sounds.
        """
        events: List[Tuple[str, VoiceState]] = []
        with self._lock:
            stopped = self._stop_locked(block_id, self._time(), events)
            if stopped:
                self._refresh_gains_locked(self._time())
        self._emit_states(events)
        return stopped

    def _stop_locked(self, block_id: str, now: float,
                     events: List[Tuple[str, VoiceState]]) -> bool:
        voice = self._voices.get(block_id)
        if voice is None or not voice.is_live:
            return False

        if voice.state == VoiceState.PLAYING:
            voice.begin_stop(now, self.config.fade_out)
            events.append((block_id, VoiceState.STOPPING))
        else:
            # Loading or ready: nothing has sounded yet
            del self._voices[block_id]
            voice.dispose()
            events.append((block_id, VoiceState.DISPOSED))
        return True

    def stop_all(self) -> List[str]:
        """Stop every live voice. Returns the block ids that were stopped."""
        events: List[Tuple[str, VoiceState]] = []
        stopped = []
        with self._lock:
            now = self._time()
            for block_id in list(self._voices.keys()):
                if self._stop_locked(block_id, now, events):
                    stopped.append(block_id)
            if stopped:
                self._refresh_gains_locked(now)
        self._emit_states(events)
        return stopped

    def reap(self) -> List[str]:
        """Dispose voices whose fade-out (plus grace period) has finished."""
        events: List[Tuple[str, VoiceState]] = []
        with self._lock:
            now = self._time()
            for block_id, voice in list(self._voices.items()):
                if voice.fade_finished(now, self.config.dispose_grace):
                    del self._voices[block_id]
                    voice.dispose()
                    events.append((block_id, VoiceState.DISPOSED))
        self._emit_states(events)
        return [block_id for block_id, _ in events]

    def has_stopping_voices(self) -> bool:
        with self._lock:
            return any(v.state == VoiceState.STOPPING for v in self._voices.values())

    def reposition_voice(self, block_id: str, offset_seconds: float) -> bool:
        """
        Jump a block's voice to a new offset into its audio.

        A playing voice fades back in from the new position. A voice still
        loading starts at the new offset plus the time the load takes.
        """
        offset_seconds = max(0.0, _check_number("offset_seconds", offset_seconds))
        with self._lock:
            voice = self._voices.get(block_id)
            if voice is None or not voice.is_live:
                return False
            voice.reposition(offset_seconds, self._time(), self.config.fade_in)
            return True

    def is_failed(self, block_id: str, content_ref: Any) -> bool:
        with self._lock:
            return block_id in self._failed and self._failed[block_id] == content_ref

    def failed_blocks(self) -> List[str]:
        with self._lock:
            return list(self._failed.keys())

    def clear_failure(self, block_id: str) -> bool:
        """Allow a failed block to load again."""
        with self._lock:
            return self._failed.pop(block_id, None) is not None

    def wait_for_loads(self, timeout: Optional[float] = None):
        """Join loader threads that are still running."""
        with self._lock:
            threads = list(self._load_threads)
        for thread in threads:
            thread.join(timeout=timeout)

    # === Gain staging ===

    def _any_solo_locked(self) -> bool:
        return any(v.solo for v in self._voices.values() if v.is_live)

    def _target_gain_locked(self, voice: Voice, any_solo: bool) -> float:
        if self._muted or voice.mute or (any_solo and not voice.solo):
            return 0.0
        return voice.gain

    def _refresh_gains_locked(self, now: float):
        """Recompute the bus gain and every voice's computed gain."""
        count = sum(1 for v in self._voices.values() if v.state == VoiceState.PLAYING)
        if count != self._active_count:
            self._active_count = count
            self._bus.set(bus_gain(count, self.config.headroom_k), now, self.config.bus_ramp)

        any_solo = self._any_solo_locked()
        for voice in self._voices.values():
            if voice.state == VoiceState.DISPOSED:
                continue
            target = self._target_gain_locked(voice, any_solo)
            if voice.gain_ramp.target != target:
                voice.gain_ramp.set(target, now, self.config.param_ramp)

    def _update_voice(self, block_id: str, name: str, value) -> bool:
        with self._lock:
            self._settings.setdefault(block_id, {})[name] = value
            voice = self._voices.get(block_id)
            if voice is None or voice.state == VoiceState.DISPOSED:
                return False
            now = self._time()
            setattr(voice, name, value)
            if name == 'pan':
                voice.pan_ramp.set(value, now, self.config.param_ramp)
            else:
                self._refresh_gains_locked(now)
            return True

    def set_voice_gain(self, block_id: str, gain: float) -> bool:
        """Set a block's voice gain (0-1.25). Returns True if a voice was updated."""
        gain = max(0.0, min(MAX_VOICE_GAIN, _check_number("gain", gain)))
        return self._update_voice(block_id, 'gain', gain)

    def set_voice_pan(self, block_id: str, pan: float) -> bool:
        """Set a block's voice pan (-1 left to 1 right)."""
        pan = max(-1.0, min(1.0, _check_number("pan", pan)))
        return self._update_voice(block_id, 'pan', pan)

    def set_voice_mute(self, block_id: str, muted: bool) -> bool:
        return self._update_voice(block_id, 'mute', bool(muted))

    def set_voice_solo(self, block_id: str, solo: bool) -> bool:
        return self._update_voice(block_id, 'solo', bool(solo))

    def forget_voice_settings(self, block_id: str):
        """Drop everything remembered about a block (settings and failure mark)."""
        with self._lock:
            self._settings.pop(block_id, None)
            self._failed.pop(block_id, None)

    def retain_voice_settings(self, block_ids) -> List[str]:
        """Forget every block not in block_ids. Returns the forgotten ids."""
        keep = set(block_ids)
        with self._lock:
            stale = [b for b in set(self._settings) | set(self._failed) if b not in keep]
            for block_id in stale:
                self._settings.pop(block_id, None)
                self._failed.pop(block_id, None)
        return stale

    def set_master_volume(self, volume: float):
        """Set master gain (0-1), ramped."""
        volume = max(0.0, min(1.0, _check_number("volume", volume)))
        with self._lock:
            self._master.set(volume, self._time(), self.config.param_ramp)

    def set_mute(self, muted: bool):
        """Mute the whole mix without touching per-voice settings."""
        with self._lock:
            self._muted = bool(muted)
            self._refresh_gains_locked(self._time())

    @property
    def muted(self) -> bool:
        return self._muted

    @property
    def master_gain(self) -> float:
        return self._master.target

    @property
    def bus_gain(self) -> float:
        return self._bus.target

    @property
    def active_voice_count(self) -> int:
        with self._lock:
            return self._active_count

    def computed_gain(self, block_id: str) -> Optional[float]:
        """Gain after mute/solo rules, before bus and master."""
        with self._lock:
            voice = self._voices.get(block_id)
            if voice is None:
                return None
            return voice.gain_ramp.target

    def composite_gain(self, block_id: str) -> Optional[float]:
        """Overall gain from voice to output; never above the master gain."""
        with self._lock:
            voice = self._voices.get(block_id)
            if voice is None:
                return None
            return min(1.0, voice.gain_ramp.target * self._bus.target) * self._master.target

    # === Rendering ===

    def trigger_one_shot(self, samples: np.ndarray, gain: float = 1.0):
        """Mix a short sample (e.g. a metronome click) once, outside the voice map."""
        with self._lock:
            if self._disposed:
                return
            self._one_shots.append(_OneShot(to_stereo_float32(samples), gain))

    def render(self, frames: int) -> np.ndarray:
        """
        Render the next output buffer.

        Processing chain:
        1. Each sounding voice: fade envelope x computed gain x bus gain
           (capped at unity), then pan
        2. Sum, then master gain
        3. One-shots
        4. Limiter
        """
        sample_rate = self.config.sample_rate
        with self._lock:
            t0 = self._time()
            mix = np.zeros((frames, 2), dtype=np.float32)

            if not self._disposed:
                bus = self._bus.values(t0, frames, sample_rate)
                for voice in self._voices.values():
                    buffer = voice.render(frames, t0, sample_rate, bus=bus)
                    if buffer is not None:
                        mix += buffer

                mix *= self._master.values(t0, frames, sample_rate).reshape(-1, 1)

                if self._muted:
                    self._one_shots.clear()
                for shot in self._one_shots:
                    n = min(frames, shot.samples.shape[0] - shot.position)
                    mix[:n] += shot.samples[shot.position:shot.position + n] * shot.gain
                    shot.position += n
                self._one_shots = [s for s in self._one_shots if s.position < s.samples.shape[0]]

            out = self.limiter.process(mix)

        channels = self.config.channels
        if channels == 1:
            return out.mean(axis=1, keepdims=True).astype(np.float32)
        if channels > 2:
            padded = np.zeros((frames, channels), dtype=np.float32)
            padded[:, :2] = out
            return padded
        return out

    # === Observability ===

    def voice_state(self, block_id: str) -> Optional[VoiceState]:
        with self._lock:
            voice = self._voices.get(block_id)
            return voice.state if voice else None

    def has_voice(self, block_id: str) -> bool:
        with self._lock:
            return block_id in self._voices

    def is_playing(self, block_id: str) -> bool:
        return self.voice_state(block_id) == VoiceState.PLAYING

    def playing_block_ids(self) -> List[str]:
        with self._lock:
            return [b for b, v in self._voices.items() if v.state == VoiceState.PLAYING]

    def live_voices(self) -> List[Tuple[str, Any]]:
        """(block_id, content_ref) for every loading, ready or playing voice."""
        with self._lock:
            return [(b, v.content_ref) for b, v in self._voices.items() if v.is_live]

    def get_voices(self) -> List[dict]:
        with self._lock:
            return [v.snapshot() for v in self._voices.values()]

    def get_status(self) -> dict:
        with self._lock:
            return {
                'master_gain': self._master.target,
                'muted': self._muted,
                'active_voice_count': self._active_count,
                'bus_gain': self._bus.target,
                'failed_blocks': list(self._failed.keys()),
                'limiter_reduction_db': self.limiter.last_reduction_db,
                'voices': [v.snapshot() for v in self._voices.values()],
            }

    # === Callbacks ===

    def add_voice_state_callback(self, callback: Callable[[str, VoiceState], None]) -> Callable[[], None]:
        """Register callback for voice state changes (block_id, state)."""
        return _subscribe(self._voice_state_callbacks, callback)

    def add_voice_error_callback(self, callback: Callable[[str, ContentUnavailable], None]) -> Callable[[], None]:
        """Register callback for voice load failures (block_id, error)."""
        return _subscribe(self._voice_error_callbacks, callback)

    def _emit_states(self, events: List[Tuple[str, VoiceState]]):
        for block_id, state in events:
            for callback in list(self._voice_state_callbacks):
                try:
                    callback(block_id, state)
                except Exception as e:
                    print(f"Voice state callback error: {e}")

    # === Teardown ===

    def dispose(self):
        """Release every voice and wait for loader threads. Safe to call twice."""
        events: List[Tuple[str, VoiceState]] = []
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            for block_id, voice in self._voices.items():
                if voice.dispose():
                    events.append((block_id, VoiceState.DISPOSED))
            self._voices.clear()
            self._settings.clear()
            self._failed.clear()
            self._one_shots.clear()
            self._active_count = 0
            threads = list(self._load_threads)
            self._load_threads.clear()

        self._emit_states(events)
        for thread in threads:
            thread.join(timeout=self.config.load_join_timeout)

        self._voice_state_callbacks.clear()
        self._voice_error_callbacks.clear()
        print("Mixer: All resources disposed")
