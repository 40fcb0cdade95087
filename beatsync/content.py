"""
Audio Content Module
Resolves block content references to audio streams and decodes them into
stereo float32 sample buffers at the engine sample rate.
"""

import io
import math
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np
import soundfile as sf
from scipy import signal

from .errors import ContentUnavailable


AudioStream = Union[str, Path, io.IOBase]


@dataclass
class AudioContent:
    """Decoded audio for one content reference."""
    content_ref: Any
    samples: np.ndarray  # (frames, 2) float32
    sample_rate: int

    @property
    def frames(self) -> int:
        return self.samples.shape[0]

    @property
    def duration_seconds(self) -> float:
        return self.frames / float(self.sample_rate)


def to_stereo_float32(audio: np.ndarray) -> np.ndarray:
    """Convert mono/multichannel int or float samples to (frames, 2) float32."""
    audio = np.asarray(audio)

    # Convert to float32 if needed
    if audio.dtype == np.int16:
        audio = audio.astype(np.float32) / 32768.0
    elif audio.dtype == np.int32:
        audio = audio.astype(np.float32) / 2147483648.0
    elif audio.dtype != np.float32:
        audio = audio.astype(np.float32)

    if audio.ndim == 1:
        audio = audio.reshape(-1, 1)
    if audio.shape[1] == 1:
        audio = np.repeat(audio, 2, axis=1)
    elif audio.shape[1] > 2:
        audio = audio[:, :2]
    return np.ascontiguousarray(audio, dtype=np.float32)


def resample(audio: np.ndarray, source_rate: int, target_rate: int) -> np.ndarray:
    """Polyphase resampling along the frame axis."""
    if source_rate == target_rate or audio.shape[0] == 0:
        return audio
    g = math.gcd(int(source_rate), int(target_rate))
    up, down = int(target_rate) // g, int(source_rate) // g
    return signal.resample_poly(audio, up, down, axis=0).astype(np.float32)


def decode_audio(stream: AudioStream, sample_rate: int) -> np.ndarray:
    """
    Decode an audio stream with soundfile.

    Args:
        stream: File path or binary file-like object
        sample_rate: Engine sample rate to resample to

    Returns:
        (frames, 2) float32 samples
    """
    audio, source_rate = sf.read(stream, dtype='float32', always_2d=True)
    audio = to_stereo_float32(audio)
    return resample(audio, source_rate, sample_rate)


def encode_wav(samples: np.ndarray, sample_rate: int) -> bytes:
    """Encode samples as an in-memory float WAV file."""
    buffer = io.BytesIO()
    sf.write(buffer, np.asarray(samples, dtype=np.float32), sample_rate,
             format='WAV', subtype='FLOAT')
    return buffer.getvalue()


# === Resolvers ===

class ContentResolver:
    """Maps a content reference to a decodable stream."""

    def resolve(self, content_ref: Any) -> AudioStream:
        raise NotImplementedError


class FileResolver(ContentResolver):
    """Resolves content references as file paths, optionally under a base directory."""

    def __init__(self, base_dir: Optional[str] = None):
        self.base_dir = Path(base_dir) if base_dir else None

    def resolve(self, content_ref: Any) -> AudioStream:
        path = Path(str(content_ref))
        if self.base_dir is not None and not path.is_absolute():
            path = self.base_dir / path
        if not path.is_file():
            raise ContentUnavailable(content_ref, f"file not found: {path}")
        return path


class MemoryResolver(ContentResolver):
    """Serves registered in-memory audio (encoded bytes or raw sample arrays)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._data: Dict[Any, bytes] = {}

    def register(self, content_ref: Any, data: Union[bytes, np.ndarray],
                 sample_rate: Optional[int] = None):
        if isinstance(data, np.ndarray):
            if not sample_rate:
                raise ValueError("sample_rate is required for raw sample arrays")
            data = encode_wav(data, sample_rate)
        with self._lock:
            self._data[content_ref] = bytes(data)

    def unregister(self, content_ref: Any) -> bool:
        with self._lock:
            return self._data.pop(content_ref, None) is not None

    def resolve(self, content_ref: Any) -> AudioStream:
        with self._lock:
            data = self._data.get(content_ref)
        if data is None:
            raise ContentUnavailable(content_ref, "not registered")
        return io.BytesIO(data)


class CallableResolver(ContentResolver):
    """Adapts a plain function (e.g. an HTTP fetch) to the resolver interface."""

    def __init__(self, func: Callable[[Any], AudioStream]):
        self._func = func

    def resolve(self, content_ref: Any) -> AudioStream:
        return self._func(content_ref)


# === Loader ===

class ContentLoader:
    """
    Resolves and decodes content, with an optional decoded-content cache.

    Any failure along the way is raised as ContentUnavailable. Nothing is
    retried here; retry policy belongs to the caller.
    """

    def __init__(self, resolver: Optional[ContentResolver] = None,
                 sample_rate: int = 44100, cache: bool = True):
        if resolver is not None and not isinstance(resolver, ContentResolver):
            resolver = CallableResolver(resolver)
        self.resolver = resolver or FileResolver()
        self.sample_rate = sample_rate
        self.cache_enabled = cache
        self._cache: Dict[Any, AudioContent] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _cache_key(content_ref: Any) -> Optional[Any]:
        try:
            hash(content_ref)
        except TypeError:
            return None
        return content_ref

    def get_cached(self, content_ref: Any) -> Optional[AudioContent]:
        key = self._cache_key(content_ref)
        if key is None:
            return None
        with self._lock:
            return self._cache.get(key)

    def load(self, content_ref: Any) -> AudioContent:
        """Resolve and decode content (blocking). Cached results are reused."""
        cached = self.get_cached(content_ref)
        if cached is not None:
            return cached

        try:
            stream = self.resolver.resolve(content_ref)
            samples = decode_audio(stream, self.sample_rate)
        except ContentUnavailable:
            raise
        except Exception as e:
            raise ContentUnavailable(content_ref, str(e)) from e

        if samples.shape[0] == 0:
            raise ContentUnavailable(content_ref, "no audio frames")

        content = AudioContent(content_ref=content_ref, samples=samples,
                               sample_rate=self.sample_rate)

        key = self._cache_key(content_ref)
        if self.cache_enabled and key is not None:
            with self._lock:
                content = self._cache.setdefault(key, content)
        return content

    def preload(self, content_refs: List[Any]) -> Dict[Any, Optional[ContentUnavailable]]:
        """Load several references; returns the error (or None) per reference."""
        results = {}
        for content_ref in content_refs:
            try:
                self.load(content_ref)
                results[content_ref] = None
            except ContentUnavailable as e:
                print(f"ContentLoader: Preload failed for {content_ref!r}: {e.reason}")
                results[content_ref] = e
        return results

    def evict(self, content_ref: Any) -> bool:
        key = self._cache_key(content_ref)
        if key is None:
            return False
        with self._lock:
            return self._cache.pop(key, None) is not None

    def retain(self, content_refs) -> List[Any]:
        """Evict every cached entry not in content_refs. Returns the evicted refs."""
        keep = {self._cache_key(ref) for ref in content_refs}
        with self._lock:
            stale = [key for key in self._cache if key not in keep]
            for key in stale:
                del self._cache[key]
        return stale

    def clear(self):
        with self._lock:
            self._cache.clear()

    @property
    def cached_count(self) -> int:
        with self._lock:
            return len(self._cache)
