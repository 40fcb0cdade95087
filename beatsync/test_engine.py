"""Tests for engine wiring, the real scheduler loop and teardown."""

import threading
import time

import pytest

from beatsync.clock import ClockState
from beatsync.engine import EngineConfig, PlaybackEngine
from beatsync.errors import InvalidParameter
from beatsync.metronome import MetronomeConfig
from beatsync.scheduler import SchedulerConfig
from beatsync.timeline import TimelineStore


def _scheduler_threads():
    return [t for t in threading.enumerate() if t.name == "block-scheduler" and t.is_alive()]


def _wait_for(predicate, timeout=2.0):
    deadline = time.perf_counter() + timeout
    while time.perf_counter() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def test_loop_thread_plays_and_releases_voices(resolver):
    store = TimelineStore()
    track = store.add_track()
    block = store.create_block(track.id, 1.0, 64.0, "tone")

    engine = PlaybackEngine.create(store, resolver)
    engine.preload_timeline()

    engine.play()
    assert _wait_for(lambda: engine.mixer.is_playing(block.id))
    assert engine.scheduler.is_running

    engine.pause()
    assert engine.state == ClockState.PAUSED
    # The loop keeps reaping after the pause, then exits
    assert _wait_for(lambda: engine.mixer.get_voices() == [])
    assert _wait_for(lambda: not engine.scheduler.is_running)

    engine.dispose()
    assert _scheduler_threads() == []


def test_dispose_twice_leaves_nothing_running(resolver):
    store = TimelineStore()
    track = store.add_track()
    store.create_block(track.id, 1.0, 64.0, "tone")

    engine = PlaybackEngine.create(store, resolver)
    engine.preload_timeline()
    engine.play()
    assert _wait_for(lambda: engine.mixer.active_voice_count == 1)

    engine.dispose()
    engine.dispose()

    assert engine.disposed
    assert engine.mixer.get_voices() == []
    assert not engine.scheduler.is_running
    assert _scheduler_threads() == []


def test_context_manager_disposes(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False))
    with PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time) as engine:
        engine.play()
    assert engine.disposed
    assert engine.state == ClockState.STOPPED


def test_transport_and_mixing_controls(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False),
                          metronome=MetronomeConfig(enabled=False))
    engine = PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time)
    track = engine.store.add_track()
    block = engine.store.create_block(track.id, 1.0, 4.0, "tone")
    engine.preload_timeline()

    engine.set_voice_gain(block.id, 0.4)
    engine.set_voice_pan(block.id, 0.5)
    engine.play()
    engine.poll()
    assert engine.mixer.computed_gain(block.id) == pytest.approx(0.4)

    engine.set_voice_mute(block.id, True)
    assert engine.mixer.computed_gain(block.id) == 0.0
    engine.set_voice_mute(block.id, False)
    engine.set_voice_solo(block.id, True)
    assert engine.mixer.computed_gain(block.id) == pytest.approx(0.4)

    engine.set_volume(0.5)
    engine.set_mute(True)
    assert engine.mixer.muted

    with pytest.raises(InvalidParameter):
        engine.set_tempo(float('nan'))
    with pytest.raises(InvalidParameter):
        engine.seek(float('nan'))

    engine.set_metronome(True, volume=0.3)
    assert engine.metronome.enabled

    manual_time.advance(1.0)
    engine.stop()
    assert engine.current_beat() == pytest.approx(3.0)
    engine.reset()
    assert engine.current_beat() == 1.0
    engine.dispose()


def test_preload_and_retry(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False))
    engine = PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time)
    track = engine.store.add_track()
    engine.store.create_block(track.id, 1.0, 4.0, "tone")
    bad = engine.store.create_block(track.id, 1.0, 4.0, "missing")

    results = engine.preload_timeline()
    assert results["tone"] is None
    assert results["missing"] is not None

    engine.play()
    engine.poll()
    engine.mixer.wait_for_loads(5.0)
    assert engine.get_status()['scheduler']['failed_blocks'] == [bad.id]
    assert engine.retry_block(bad.id)

    assert engine.evict_content("tone")
    assert not engine.evict_content("tone")
    engine.dispose()


def test_status_shape(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False))
    engine = PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time)
    status = engine.get_status()
    assert status['clock']['state'] == 'stopped'
    assert status['clock']['bpm'] == 120.0
    assert status['mixer']['active_voice_count'] == 0
    assert status['output'] is None
    assert status['disposed'] is False
    engine.dispose()


def test_dispose_releases_cached_content(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False))
    engine = PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time)
    engine.preload(["tone", "tone2"])
    assert engine.loader.cached_count == 2

    engine.dispose()
    assert engine.loader.cached_count == 0


def test_prune_content(resolver, manual_time):
    config = EngineConfig(scheduler=SchedulerConfig(run_loop=False))
    engine = PlaybackEngine(TimelineStore(), resolver, config, time_source=manual_time)
    track = engine.store.add_track()
    keep = engine.store.create_block(track.id, 1.0, 4.0, "tone")
    drop = engine.store.create_block(track.id, 9.0, 4.0, "tone2")
    engine.preload_timeline()
    engine.set_voice_gain(drop.id, 0.2)

    engine.store.remove_block(drop.id)
    pruned = engine.prune_content()
    assert pruned['forgotten_blocks'] == [drop.id]
    assert pruned['evicted_content'] == ["tone2"]
    assert engine.loader.get_cached(keep.content_ref) is not None
    engine.dispose()
