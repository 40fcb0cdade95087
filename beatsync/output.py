"""
Audio Output Module
Pulls the mixer from the sounddevice real-time callback.
"""

from dataclasses import dataclass
from typing import Optional

import numpy as np
import sounddevice as sd

from .mixer import Mixer


@dataclass
class AudioOutputConfig:
    """Configuration for the output stream."""
    sample_rate: int = 44100
    buffer_size: int = 512  # ~11ms latency at 44100Hz
    channels: int = 2  # Stereo output
    dtype: str = 'float32'
    device: Optional[int] = None


class AudioOutput:
    """
    Owns the sounddevice OutputStream. The callback does nothing but ask the
    mixer for the next buffer.
    """

    def __init__(self, mixer: Mixer, config: Optional[AudioOutputConfig] = None):
        self.mixer = mixer
        self.config = config or AudioOutputConfig()
        self.stream: Optional[sd.OutputStream] = None
        self.current_device_id: Optional[int] = self.config.device
        self._running = False

        # Callback health
        self.callback_count = 0
        self.status_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> bool:
        """Open and start the output stream. Returns False if the device fails."""
        if self._running:
            return True

        stream_kwargs = {
            'samplerate': self.config.sample_rate,
            'blocksize': self.config.buffer_size,
            'channels': self.config.channels,
            'dtype': self.config.dtype,
            'callback': self._audio_callback
        }

        if self.current_device_id is not None:
            stream_kwargs['device'] = self.current_device_id

        try:
            self.stream = sd.OutputStream(**stream_kwargs)
            self.stream.start()
            self._running = True
            device_name = f"device {self.current_device_id}" if self.current_device_id is not None else "default device"
            print(f"AudioOutput: Started on {device_name}: {self.config.sample_rate}Hz, "
                  f"buffer={self.config.buffer_size} samples")
            return True
        except Exception as e:
            print(f"AudioOutput: Failed to start stream: {e}")
            self.stream = None
            self._running = False
            return False

    def stop(self):
        """Stop and close the output stream."""
        was_running = self._running
        self._running = False

        if self.stream:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception as e:
                print(f"AudioOutput: Error stopping stream: {e}")
            self.stream = None

        if was_running:
            print("AudioOutput: Stopped")

    def set_device(self, device_id: Optional[int]) -> bool:
        """Set the output device. Restarts the stream if running."""
        was_running = self._running
        if was_running:
            self.stop()

        self.current_device_id = device_id
        print(f"AudioOutput: Device set to: {device_id}")

        if was_running:
            return self.start()
        return True

    def _audio_callback(self, outdata: np.ndarray, frames: int,
                        time_info, status: sd.CallbackFlags) -> None:
        if status:
            self.status_count += 1
        self.callback_count += 1

        try:
            buffer = self.mixer.render(frames)
        except Exception:
            self.error_count += 1
            outdata.fill(0)
            return

        channels = outdata.shape[1]
        if buffer.shape[1] >= channels:
            outdata[:] = buffer[:, :channels]
        else:
            outdata.fill(0)
            outdata[:, :buffer.shape[1]] = buffer

    @staticmethod
    def list_output_devices() -> list:
        """List available audio output devices."""
        devices = sd.query_devices()
        output_devices = []
        for i, dev in enumerate(devices):
            if dev['max_output_channels'] > 0:
                output_devices.append({
                    'id': i,
                    'name': dev['name'],
                    'channels': dev['max_output_channels'],
                    'sample_rate': dev['default_samplerate'],
                    'type': 'output'
                })
        return output_devices

    @staticmethod
    def get_default_output_device() -> Optional[dict]:
        """Get the default output device, or None if there is none."""
        try:
            device_id = sd.default.device[1]  # [1] is output device
            if device_id is not None and device_id >= 0:
                dev = sd.query_devices(device_id)
                return {
                    'id': device_id,
                    'name': dev['name'],
                    'channels': dev['max_output_channels'],
                    'sample_rate': dev['default_samplerate']
                }
        except Exception as e:
            print(f"AudioOutput: No default output device: {e}")
        return None

    def get_status(self) -> dict:
        return {
            'running': self._running,
            'device': self.current_device_id,
            'sample_rate': self.config.sample_rate,
            'buffer_size': self.config.buffer_size,
            'callbacks': self.callback_count,
            'status_flags': self.status_count,
            'errors': self.error_count,
        }
