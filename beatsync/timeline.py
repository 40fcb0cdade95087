"""
Timeline Module
Tracks and beat-positioned audio blocks, plus the in-memory store the
scheduler reads on every tick.
"""

import math
import threading
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional

from .errors import InvalidParameter


TIMELINE_START_BEAT = 1.0

TRACK_COLORS = [
    "blue", "purple", "pink", "orange", "green",
    "indigo", "teal", "amber", "cyan", "lime",
]


def generate_id(prefix: str = "id") -> str:
    """Generate a unique ID."""
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class Track:
    """A track on the timeline. Blocks refer to it by id."""
    id: str
    name: str
    color: str = "blue"

    @classmethod
    def create(cls, name: str, color: str = "blue") -> 'Track':
        return cls(id=generate_id("track"), name=name, color=color)


@dataclass(frozen=True)
class Block:
    """A span of audio content on a track, positioned in beats."""
    id: str
    track_id: str
    start_beat: float
    duration_beats: float
    content_ref: Any
    label: str = ""
    color: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise InvalidParameter("Block id must not be empty")
        if not self.track_id:
            raise InvalidParameter(f"Block {self.id}: track_id must not be empty")
        if not _is_number(self.start_beat) or not math.isfinite(self.start_beat):
            raise InvalidParameter(f"Block {self.id}: start_beat must be a finite number, "
                                   f"got {self.start_beat!r}")
        if self.start_beat < TIMELINE_START_BEAT:
            raise InvalidParameter(f"Block {self.id}: start_beat must be >= {TIMELINE_START_BEAT}, "
                                   f"got {self.start_beat}")
        if not _is_number(self.duration_beats) or not math.isfinite(self.duration_beats):
            raise InvalidParameter(f"Block {self.id}: duration_beats must be a finite number, "
                                   f"got {self.duration_beats!r}")
        if self.duration_beats <= 0:
            raise InvalidParameter(f"Block {self.id}: duration_beats must be > 0, "
                                   f"got {self.duration_beats}")
        if self.content_ref is None or (isinstance(self.content_ref, str) and not self.content_ref):
            raise InvalidParameter(f"Block {self.id}: content_ref is required")

    @classmethod
    def create(cls, track_id: str, start_beat: float, duration_beats: float,
               content_ref: Any, label: str = "", color: Optional[str] = None) -> 'Block':
        return cls(
            id=generate_id("block"),
            track_id=track_id,
            start_beat=start_beat,
            duration_beats=duration_beats,
            content_ref=content_ref,
            label=label,
            color=color,
        )

    @property
    def end_beat(self) -> float:
        """First beat after the block (exclusive end of its range)."""
        return self.start_beat + self.duration_beats

    def contains(self, beat: float) -> bool:
        """True if the beat lies in [start_beat, end_beat)."""
        return self.start_beat <= beat < self.end_beat

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'track_id': self.track_id,
            'start_beat': self.start_beat,
            'duration_beats': self.duration_beats,
            'content_ref': str(self.content_ref),
            'label': self.label,
            'color': self.color,
        }


class TimelineStore:
    """
    Holds tracks and blocks in memory.

    Blocks are immutable; edits swap in a new Block under the store lock, so
    readers on the scheduler thread always see a consistent snapshot.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._tracks: Dict[str, Track] = {}
        self._blocks: Dict[str, Block] = {}

    # === Tracks ===

    def add_track(self, name: str = None, color: str = None) -> Track:
        """Create and add a track."""
        with self._lock:
            index = len(self._tracks)
            track = Track.create(
                name or f"Track {index + 1}",
                color or TRACK_COLORS[index % len(TRACK_COLORS)],
            )
            self._tracks[track.id] = track
        return track

    def remove_track(self, track_id: str) -> bool:
        """Remove a track and every block on it."""
        with self._lock:
            if track_id not in self._tracks:
                return False
            del self._tracks[track_id]
            self._blocks = {k: b for k, b in self._blocks.items() if b.track_id != track_id}
        return True

    def get_track(self, track_id: str) -> Optional[Track]:
        with self._lock:
            return self._tracks.get(track_id)

    def list_tracks(self) -> List[Track]:
        with self._lock:
            return list(self._tracks.values())

    # === Blocks ===

    def add_block(self, block: Block) -> Block:
        """Insert a block. Its track must exist and its id must be new."""
        if not isinstance(block, Block):
            raise InvalidParameter(f"Expected a Block, got {type(block).__name__}")
        with self._lock:
            if block.track_id not in self._tracks:
                raise InvalidParameter(f"Unknown track {block.track_id} for block {block.id}")
            if block.id in self._blocks:
                raise InvalidParameter(f"Block {block.id} already exists")
            self._blocks[block.id] = block
        return block

    def create_block(self, track_id: str, start_beat: float, duration_beats: float,
                     content_ref: Any, label: str = "") -> Block:
        """Build a block with a fresh id and add it."""
        track = self.get_track(track_id)
        color = track.color if track else None
        return self.add_block(Block.create(track_id, start_beat, duration_beats,
                                           content_ref, label=label, color=color))

    def remove_block(self, block_id: str) -> bool:
        with self._lock:
            return self._blocks.pop(block_id, None) is not None

    def move_block(self, block_id: str, start_beat: float) -> Optional[Block]:
        """Move a block, never before the first beat of the timeline."""
        if not _is_number(start_beat) or not math.isfinite(start_beat):
            raise InvalidParameter(f"start_beat must be a finite number, got {start_beat!r}")
        with self._lock:
            block = self._blocks.get(block_id)
            if block is None:
                return None
            moved = replace(block, start_beat=max(TIMELINE_START_BEAT, start_beat))
            self._blocks[block_id] = moved
        return moved

    def set_block_content(self, block_id: str, content_ref: Any) -> Optional[Block]:
        """Point a block at new audio content."""
        with self._lock:
            block = self._blocks.get(block_id)
            if block is None:
                return None
            updated = replace(block, content_ref=content_ref)
            self._blocks[block_id] = updated
        return updated

    def get_block(self, block_id: str) -> Optional[Block]:
        with self._lock:
            return self._blocks.get(block_id)

    def list_blocks(self) -> List[Block]:
        with self._lock:
            return list(self._blocks.values())

    def blocks_for_track(self, track_id: str) -> List[Block]:
        with self._lock:
            return [b for b in self._blocks.values() if b.track_id == track_id]

    def blocks_at(self, beat: float) -> List[Block]:
        """All blocks whose range contains the beat."""
        with self._lock:
            return [b for b in self._blocks.values() if b.contains(beat)]

    def clear(self):
        with self._lock:
            self._tracks.clear()
            self._blocks.clear()
