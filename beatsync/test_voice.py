"""Tests for the voice state machine and parameter ramps."""

import numpy as np
import pytest

from beatsync.content import AudioContent
from beatsync.voice import Ramp, Voice, VoiceState


def _content(seconds=1.0, sample_rate=1000):
    samples = np.full((int(seconds * sample_rate), 2), 0.5, dtype=np.float32)
    return AudioContent("tone", samples, sample_rate)


def test_full_lifecycle():
    voice = Voice("b1", "tone")
    assert voice.state == VoiceState.LOADING

    voice.mark_ready(_content())
    assert voice.state == VoiceState.READY

    voice.start(now=0.0, fade_in=0.01)
    assert voice.state == VoiceState.PLAYING

    voice.begin_stop(now=1.0, fade_out=0.01)
    assert voice.state == VoiceState.STOPPING
    assert not voice.fade_finished(1.005)
    assert voice.fade_finished(1.07, grace=0.05)

    assert voice.dispose()
    assert voice.state == VoiceState.DISPOSED
    assert voice.content is None


def test_dispose_is_idempotent_from_any_state():
    for prepare in (
        lambda v: None,
        lambda v: v.mark_ready(_content()),
    ):
        voice = Voice("b1", "tone")
        prepare(voice)
        assert voice.dispose()
        assert not voice.dispose()
        assert voice.state == VoiceState.DISPOSED


def test_illegal_transitions_raise():
    voice = Voice("b1", "tone")
    with pytest.raises(RuntimeError):
        voice.start(0.0, 0.01)

    voice.dispose()
    with pytest.raises(RuntimeError):
        voice.mark_ready(_content())


def test_start_offset_sets_read_position():
    voice = Voice("b1", "tone", offset_seconds=0.25)
    voice.mark_ready(_content(seconds=1.0, sample_rate=1000))
    assert voice.position == 250

    late = Voice("b2", "tone", offset_seconds=5.0)
    late.mark_ready(_content(seconds=1.0, sample_rate=1000))
    assert late.position == 1000


def test_render_applies_envelope_gain_and_pan():
    voice = Voice("b1", "tone", gain=1.0, pan=1.0)
    voice.mark_ready(_content(sample_rate=1000))
    voice.gain_ramp.jump(1.0)
    voice.start(now=0.0, fade_in=0.0)

    out = voice.render(100, t0=0.0, sample_rate=1000)
    assert out.shape == (100, 2)
    # Hard right pan silences the left channel
    assert np.allclose(out[:, 0], 0.0)
    assert np.allclose(out[:, 1], 0.5)


def test_render_caps_gain_times_bus_at_unity():
    voice = Voice("b1", "tone", gain=1.25)
    voice.mark_ready(_content(sample_rate=1000))
    voice.gain_ramp.jump(1.25)
    voice.start(now=0.0, fade_in=0.0)

    out = voice.render(10, t0=0.0, sample_rate=1000, bus=np.full(10, 0.9, dtype=np.float32))
    assert np.allclose(out, 0.5)


def test_render_returns_none_when_silent_or_finished():
    voice = Voice("b1", "tone")
    assert voice.render(10, 0.0, 1000) is None

    voice.mark_ready(_content(seconds=0.01, sample_rate=1000))
    voice.start(0.0, 0.0)
    assert voice.render(10, 0.0, 1000) is not None
    assert voice.render(10, 0.0, 1000) is None


def test_ramp_is_linear_and_settles():
    ramp = Ramp(0.0)
    ramp.set(1.0, now=10.0, duration=0.1)
    assert ramp.value_at(10.0) == 0.0
    assert ramp.value_at(10.05) == pytest.approx(0.5)
    assert ramp.value_at(11.0) == 1.0
    assert not ramp.is_settled(10.05)
    assert ramp.is_settled(10.1)

    values = ramp.values(10.0, 100, 1000)
    assert values[0] == pytest.approx(0.0)
    assert values[50] == pytest.approx(0.5, abs=1e-6)
    assert values[99] == pytest.approx(0.99, abs=1e-6)


def test_ramp_retarget_starts_from_current_value():
    ramp = Ramp(0.0)
    ramp.set(1.0, now=0.0, duration=1.0)
    ramp.set(0.0, now=0.5, duration=1.0)
    assert ramp.value_at(0.5) == pytest.approx(0.5)
    assert ramp.value_at(1.0) == pytest.approx(0.25)


def test_snapshot():
    voice = Voice("b1", "tone", gain=0.7, solo=True)
    snap = voice.snapshot()
    assert snap['state'] == 'loading'
    assert snap['gain'] == 0.7
    assert snap['solo'] is True


def test_start_adds_time_spent_loading():
    voice = Voice("b1", "tone", offset_seconds=0.25, requested_at=10.0)
    voice.mark_ready(_content(seconds=2.0, sample_rate=1000))
    assert voice.position == 250
    voice.start(10.5, 0.01)
    assert voice.position == 750


def test_reposition_refades_a_playing_voice():
    voice = Voice("b1", "tone")
    voice.mark_ready(_content(seconds=2.0, sample_rate=1000))
    voice.start(0.0, 0.01)
    assert voice.envelope.value_at(1.0) == 1.0

    voice.reposition(1.5, 1.0, 0.01)
    assert voice.position == 1500
    assert voice.envelope.value_at(1.0) == 0.0
    assert voice.envelope.value_at(1.02) == 1.0

    loading = Voice("b2", "tone")
    loading.reposition(0.5, 3.0, 0.01)
    loading.mark_ready(_content(seconds=2.0, sample_rate=1000))
    loading.start(3.25, 0.01)
    assert loading.position == 750
