"""Tests for tracks, blocks and the timeline store."""

import dataclasses

import pytest

from beatsync.errors import InvalidParameter
from beatsync.timeline import Block, TimelineStore, Track


def _block(**overrides):
    fields = dict(id="b1", track_id="t1", start_beat=1.0, duration_beats=4.0,
                  content_ref="tone")
    fields.update(overrides)
    return Block(**fields)


def test_block_range_is_half_open():
    block = _block(start_beat=2.0, duration_beats=4.0)
    assert block.end_beat == 6.0
    assert block.contains(2.0)
    assert block.contains(5.999)
    assert not block.contains(6.0)
    assert not block.contains(1.999)


@pytest.mark.parametrize("overrides", [
    dict(start_beat=0.5),
    dict(start_beat=float('nan')),
    dict(start_beat=float('inf')),
    dict(duration_beats=0),
    dict(duration_beats=-1.0),
    dict(duration_beats=float('nan')),
    dict(content_ref=""),
    dict(content_ref=None),
    dict(id=""),
    dict(track_id=""),
])
def test_invalid_blocks_are_rejected(overrides):
    with pytest.raises(InvalidParameter):
        _block(**overrides)


def test_blocks_are_immutable():
    block = _block()
    with pytest.raises(dataclasses.FrozenInstanceError):
        block.start_beat = 3.0


def test_track_create_gives_unique_ids():
    a = Track.create("Drums")
    b = Track.create("Drums")
    assert a.id != b.id


def test_store_requires_known_track_and_unique_id():
    store = TimelineStore()
    with pytest.raises(InvalidParameter):
        store.add_block(_block(track_id="missing"))

    track = store.add_track("Drums")
    store.add_block(_block(track_id=track.id))
    with pytest.raises(InvalidParameter):
        store.add_block(_block(track_id=track.id))


def test_track_defaults_cycle_names_and_colors():
    store = TimelineStore()
    first = store.add_track()
    second = store.add_track()
    assert first.name == "Track 1"
    assert second.name == "Track 2"
    assert first.color != second.color


def test_move_block_clamps_to_first_beat():
    store = TimelineStore()
    track = store.add_track("Bass")
    block = store.create_block(track.id, 3.0, 2.0, "tone")

    moved = store.move_block(block.id, -7.0)
    assert moved.start_beat == 1.0
    assert moved.id == block.id
    assert store.get_block(block.id) is moved
    # The old Block value is unchanged
    assert block.start_beat == 3.0

    assert store.move_block("nope", 2.0) is None
    with pytest.raises(InvalidParameter):
        store.move_block(block.id, float('nan'))


def test_set_block_content_swaps_reference():
    store = TimelineStore()
    track = store.add_track()
    block = store.create_block(track.id, 1.0, 4.0, "tone")
    updated = store.set_block_content(block.id, "tone2")
    assert updated.content_ref == "tone2"
    assert store.get_block(block.id).content_ref == "tone2"


def test_remove_track_removes_its_blocks():
    store = TimelineStore()
    keep = store.add_track("Keep")
    drop = store.add_track("Drop")
    kept = store.create_block(keep.id, 1.0, 4.0, "tone")
    store.create_block(drop.id, 1.0, 4.0, "tone")
    store.create_block(drop.id, 5.0, 4.0, "tone")

    assert store.remove_track(drop.id)
    assert not store.remove_track(drop.id)
    assert store.list_blocks() == [kept]
    assert store.blocks_for_track(drop.id) == []


def test_blocks_at_includes_overlaps():
    store = TimelineStore()
    track = store.add_track()
    a = store.create_block(track.id, 1.0, 4.0, "tone")
    b = store.create_block(track.id, 3.0, 4.0, "tone2")

    assert {blk.id for blk in store.blocks_at(3.5)} == {a.id, b.id}
    assert [blk.id for blk in store.blocks_at(6.0)] == [b.id]
    assert store.blocks_at(7.0) == []

    assert store.remove_block(a.id)
    assert not store.remove_block(a.id)
    store.clear()
    assert store.list_tracks() == []


def test_block_to_dict():
    block = _block(label="Intro")
    data = block.to_dict()
    assert data['start_beat'] == 1.0
    assert data['label'] == "Intro"
