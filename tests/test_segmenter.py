import io
import logging
import zlib

import numpy as np
import pytest

from vidup.frames import FRAME_SIZE, iter_frames
from vidup.models import SceneId
from vidup.segmenter import (SCENE_CHANGE_THRESHOLD, SceneSegmenter, crc32_accumulate,
                             scene_ids, segment_scenes)

from conftest import frame_stream, raw_frames


def _scenes(*values, repeat=1, frame_rate=10):
    return list(segment_scenes(iter_frames(frame_stream(*values, repeat=repeat)), frame_rate))


def test_identical_frames_make_one_scene() -> None:
    scenes = _scenes(0x80, repeat=10)
    assert len(scenes) == 1
    assert scenes[0].scene_id.duration_ms == 1000
    assert scenes[0].frame_count == 10


def test_black_frames_make_one_scene() -> None:
    # The first frame matches the initial zero frame, so no change event at all
    scenes = _scenes(0x00, repeat=10)
    assert [s.scene_id.duration_ms for s in scenes] == [1000]


def test_hard_cut_makes_two_scenes() -> None:
    stream = io.BytesIO(raw_frames(0x00, repeat=5) + raw_frames(0xF0, repeat=5))

    scenes = list(segment_scenes(iter_frames(stream), 10))

    assert len(scenes) == 2
    assert [s.scene_id.duration_ms for s in scenes] == [500, 500]
    assert sum(s.scene_id.duration_ms for s in scenes) == 1000
    assert [s.start_frame for s in scenes] == [0, 5]
    assert scenes[0].scene_id.hash != scenes[1].scene_id.hash


def test_small_change_is_not_a_cut() -> None:
    # 0x00 -> 0x40 is a distance of 4.0, below the threshold
    scenes = _scenes(0x00, 0x40, 0x00, 0x40)
    assert len(scenes) == 1


def test_cut_just_above_threshold() -> None:
    # 0x00 -> 0x50 is a distance of 5.0
    scenes = _scenes(0x00, 0x00, 0x50, 0x50)
    assert len(scenes) == 2


def test_empty_stream_is_one_empty_scene() -> None:
    assert scene_ids(iter([]), 30) == [SceneId(0, 0)]


def test_scene_hash_is_crc_of_its_frames() -> None:
    data = raw_frames(0x10, 0x20, 0x30)
    (scene,) = _scenes(0x10, 0x20, 0x30)
    assert scene.scene_id.hash == zlib.crc32(data)


def test_hash_resets_at_each_cut() -> None:
    first, second = _scenes(0x00, 0x00, 0xF0, 0xF0)
    assert second.scene_id.hash == zlib.crc32(raw_frames(0xF0, 0xF0))
    assert first.scene_id.hash == zlib.crc32(raw_frames(0x00, 0x00))


def test_frame_order_changes_hash() -> None:
    (forward,) = _scenes(0x00, 0x40)
    (backward,) = _scenes(0x40, 0x00)
    assert forward.scene_id.duration_ms == backward.scene_id.duration_ms
    assert forward.scene_id.hash != backward.scene_id.hash


def test_crc32_accumulate_is_incremental() -> None:
    acc = crc32_accumulate(0, b'abc')
    assert crc32_accumulate(acc, b'def') == zlib.crc32(b'abcdef')
    assert crc32_accumulate(0, b'') == 0


def _cutting_stream(seed=7, frames=300):
    rng = np.random.default_rng(seed)
    data = bytearray()
    value = 0
    for _ in range(frames):
        if rng.random() < 0.1:
            value = int(rng.integers(0, 256))
        data += bytes([value]) * FRAME_SIZE
    return bytes(data)


def test_segmentation_is_deterministic() -> None:
    data = _cutting_stream()
    first = scene_ids(iter_frames(io.BytesIO(data)), 30)
    second = scene_ids(iter_frames(io.BytesIO(data)), 30)
    assert first == second
    assert len(first) > 1


def test_durations_cover_the_stream() -> None:
    frame_rate = 30
    scenes = list(segment_scenes(iter_frames(io.BytesIO(_cutting_stream())), frame_rate))

    assert sum(s.frame_count for s in scenes) == 300
    total_ms = 300 * 1000 // frame_rate
    covered = sum(s.scene_id.duration_ms for s in scenes)
    # Each scene rounds down by less than one millisecond
    assert total_ms - len(scenes) < covered <= total_ms


def test_first_frame_snapshot() -> None:
    first, second = _scenes(0x00, 0xF0, 0xF0)
    assert np.all(first.first_frame == 0x00)
    assert np.all(second.first_frame == 0xF0)


def test_lower_threshold_splits_more() -> None:
    frames = list(iter_frames(frame_stream(0x00, 0x40, 0x00, 0x40)))
    assert len(list(segment_scenes(frames, 10))) == 1
    assert len(list(segment_scenes(frames, 10, threshold=3.0))) == 4


def test_segmenter_logs_frames(caplog) -> None:
    log = logging.getLogger("test.segmenter")
    segmenter = SceneSegmenter(10, log=log)
    with caplog.at_level(logging.DEBUG, logger="test.segmenter"):
        for frame in iter_frames(frame_stream(0x00, 0xF0)):
            segmenter.feed(frame)
    assert len(caplog.records) == 2
    assert "scene changed" in caplog.records[1].getMessage()


def test_segmenter_rejects_bad_use() -> None:
    with pytest.raises(ValueError):
        SceneSegmenter(0)

    segmenter = SceneSegmenter(10)
    segmenter.finish()
    with pytest.raises(RuntimeError):
        segmenter.feed(np.zeros(FRAME_SIZE, dtype=np.uint8))


def test_default_threshold() -> None:
    assert SCENE_CHANGE_THRESHOLD == 4.5
