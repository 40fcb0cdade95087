"""
Block Scheduler Module
Reconciles the voices in the mixer with the blocks under the playhead.
Runs the single scheduling loop while the clock is playing.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Any, List, Optional

from .clock import Clock, ClockState, beats_to_seconds
from .errors import ContentUnavailable
from .mixer import Mixer, VoiceOptions
from .timeline import Block


@dataclass
class SchedulerConfig:
    """Scheduler loop configuration."""
    tick_interval: float = 0.005  # 5ms between polls
    join_timeout: float = 1.0
    run_loop: bool = True         # Start a loop thread when the clock plays


@dataclass
class TickResult:
    """Block ids affected by one tick."""
    started: List[str] = field(default_factory=list)
    stopped: List[str] = field(default_factory=list)


class BlockScheduler:
    """
    Starts and stops block voices to match the playhead.

    Each tick runs in two passes. All stops are issued first, then all starts,
    so a voice leaving its block and a voice entering the next one never
    overlap in the voice map. The store is read on every tick; nothing about
    the blocks is cached between ticks.
    """

    def __init__(self, clock: Clock, mixer: Mixer, store,
                 config: Optional[SchedulerConfig] = None):
        self.clock = clock
        self.mixer = mixer
        self.store = store
        self.config = config or SchedulerConfig()

        self._tick_lock = threading.RLock()
        self._loop_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._disposed = False

        self._last_beat: Optional[float] = None

        self._unsubscribers = [
            clock.add_state_callback(self._on_clock_state_change),
            clock.add_seek_callback(self._on_seek),
            mixer.add_voice_error_callback(self._on_voice_error),
        ]

    # === Reconciliation ===

    def tick(self, current_beat: float, previous_beat: Optional[float] = None) -> TickResult:
        """
        Run one stop pass and one start pass at the given beat.

        Args:
            current_beat: Playhead position now
            previous_beat: Playhead position at the previous tick, or None
                after play/seek

        Returns:
            TickResult with the block ids stopped and started
        """
        result = TickResult()

        with self._tick_lock:
            blocks = self.store.list_blocks()
            released = []

            # Stop pass
            for block_id, content_ref in self.mixer.live_voices():
                block = self.store.get_block(block_id)
                if block is not None and block.contains(current_beat) \
                        and block.content_ref == content_ref:
                    continue
                if self.mixer.stop_voice(block_id):
                    result.stopped.append(block_id)
                if block is None:
                    self.mixer.forget_voice_settings(block_id)
                if block is None or block.content_ref != content_ref:
                    released.append(content_ref)

            if released:
                self._release_content(released, blocks)

            # Start pass
            for block in blocks:
                if not block.contains(current_beat):
                    continue
                if self.mixer.has_voice(block.id) or self.mixer.is_failed(block.id, block.content_ref):
                    continue
                if self._start_block(block, current_beat, previous_beat):
                    result.started.append(block.id)

        return result

    def _release_content(self, content_refs: List[Any], blocks: List[Block]):
        """Evict decoded content no block refers to any more."""
        in_use = [b.content_ref for b in blocks]
        for content_ref in content_refs:
            if content_ref not in in_use:
                self.mixer.loader.evict(content_ref)

    def _start_block(self, block: Block, current_beat: float,
                     previous_beat: Optional[float]) -> bool:
        offset = beats_to_seconds(current_beat - block.start_beat, self.clock.bpm)
        started = self.mixer.start_voice(block.id, block.content_ref,
                                         VoiceOptions(offset_seconds=offset))
        if not started:
            return False

        entered = previous_beat is not None and previous_beat < block.start_beat <= current_beat
        if entered:
            print(f"Scheduler: Block {block.id} entered at beat {current_beat:.2f}")
        else:
            print(f"Scheduler: Block {block.id} started {offset:.3f}s in at beat {current_beat:.2f}")
        return True

    def retry_block(self, block_id: str) -> bool:
        """Clear a block's failed mark so the next tick tries it again."""
        return self.mixer.clear_failure(block_id)

    def failed_blocks(self) -> List[str]:
        return self.mixer.failed_blocks()

    def prune(self) -> dict:
        """Forget settings and cached content for blocks no longer in the store."""
        with self._tick_lock:
            blocks = self.store.list_blocks()
            forgotten = self.mixer.retain_voice_settings([b.id for b in blocks])
            # Content of voices still sounding stays cached
            refs = [b.content_ref for b in blocks] + [ref for _, ref in self.mixer.live_voices()]
            evicted = self.mixer.loader.retain(refs)
        return {'forgotten_blocks': forgotten, 'evicted_content': evicted}

    def poll(self) -> Optional[TickResult]:
        """
        One scheduler step: tick at the clock's beat if playing, publish the
        position, then reap voices whose fade-out has finished.
        """
        result = None
        current = None
        with self._tick_lock:
            if self.clock.running:
                current = self.clock.current_beat()
                result = self.tick(current, self._last_beat)
                self._last_beat = current

        self.mixer.reap()
        if current is not None:
            self.clock.publish_position(current)
        return result

    # === Loop ===

    def _ensure_loop(self):
        with self._loop_lock:
            if self._disposed or self._thread is not None:
                return
            self._running = True
            self._thread = threading.Thread(target=self._scheduler_loop,
                                            name="block-scheduler", daemon=True)
            self._thread.start()

    def _scheduler_loop(self):
        """Poll while playing, then keep reaping until no voice is fading out."""
        while self._running:
            try:
                self.poll()
            except Exception as e:
                print(f"Scheduler loop error: {e}")

            with self._loop_lock:
                if not self.clock.running and not self.mixer.has_stopping_voices():
                    self._thread = None
                    return

            time.sleep(self.config.tick_interval)

    @property
    def is_running(self) -> bool:
        with self._loop_lock:
            return self._thread is not None

    # === Callbacks ===

    def _on_clock_state_change(self, state: ClockState):
        """Start the loop on play; cancel every voice on pause or stop."""
        if state == ClockState.PLAYING:
            with self._tick_lock:
                self._last_beat = None
            if self.config.run_loop:
                self._ensure_loop()
            return

        with self._tick_lock:
            stopped = self.mixer.stop_all()
            self._last_beat = None
        if stopped:
            print(f"Scheduler: Stopped {len(stopped)} voice(s) on {state.value}")
        if stopped and self.config.run_loop:
            # Keep reaping until the fade-outs finish
            self._ensure_loop()

    def _on_seek(self, beat: float):
        """Realign voices that stay inside their block; the next tick stops the rest."""
        with self._tick_lock:
            # The next tick after a seek has no edge
            self._last_beat = None
            bpm = self.clock.bpm
            for block_id, content_ref in self.mixer.live_voices():
                block = self.store.get_block(block_id)
                if block is None or not block.contains(beat) or block.content_ref != content_ref:
                    continue
                self.mixer.reposition_voice(block_id, beats_to_seconds(beat - block.start_beat, bpm))

    def _on_voice_error(self, block_id: str, error: ContentUnavailable):
        print(f"Scheduler: Block {block_id} marked failed; not retried until retry_block()")

    # === Teardown ===

    def dispose(self):
        """Stop the loop thread and detach from the clock and mixer."""
        with self._loop_lock:
            if self._disposed:
                return
            self._disposed = True
            self._running = False
            thread = self._thread

        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.config.join_timeout)
        with self._loop_lock:
            self._thread = None

    def get_status(self) -> dict:
        with self._tick_lock:
            return {
                'loop_running': self.is_running,
                'last_beat': self._last_beat,
                'failed_blocks': self.mixer.failed_blocks(),
            }
