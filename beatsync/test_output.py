"""Tests for the device output wrapper. No stream is opened."""

import numpy as np
import pytest

try:
    from beatsync.output import AudioOutput, AudioOutputConfig
except OSError as e:  # PortAudio library missing on the host
    pytest.skip(f"PortAudio not available: {e}", allow_module_level=True)


def test_callback_pulls_the_mixer(mixer, manual_time):
    output = AudioOutput(mixer)
    mixer.start_voice("b1", "tone")
    manual_time.advance(0.05)

    outdata = np.zeros((512, 2), dtype=np.float32)
    output._audio_callback(outdata, 512, None, 0)

    assert np.max(np.abs(outdata)) > 0.1
    assert output.callback_count == 1
    assert output.error_count == 0


def test_callback_adapts_channel_count(mixer):
    output = AudioOutput(mixer)
    mixer.trigger_one_shot(np.full(64, 0.25, dtype=np.float32))

    outdata = np.ones((64, 4), dtype=np.float32)
    output._audio_callback(outdata, 64, None, 0)
    assert np.allclose(outdata[:, :2], 0.25)
    assert np.allclose(outdata[:, 2:], 0.0)


def test_callback_outputs_silence_on_render_error(mixer):
    output = AudioOutput(mixer)

    def broken(frames):
        raise RuntimeError("render failed")

    mixer.render = broken
    outdata = np.ones((32, 2), dtype=np.float32)
    output._audio_callback(outdata, 32, None, 0)
    assert np.all(outdata == 0.0)
    assert output.error_count == 1


def test_bad_device_fails_without_raising(mixer):
    output = AudioOutput(mixer, AudioOutputConfig(device=987654))
    assert not output.start()
    assert not output.is_running
    output.stop()
    assert output.get_status()['running'] is False
