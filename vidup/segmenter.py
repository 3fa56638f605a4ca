"""
Scene segmentation.

Consumes normalized frames in order, detects scene boundaries with the
change distance between consecutive frames and identifies each scene by a
CRC accumulated over its frames plus its duration.
"""

import logging
import zlib
from typing import Iterable, Iterator, List, Optional

import numpy as np

from .frames import FRAME_SIZE, change_distance
from .models import SceneId, SegmentedScene

logger = logging.getLogger(__name__)

SCENE_CHANGE_THRESHOLD = 4.5

# Hash of an empty buffer
HASH_SEED = 0


def crc32_accumulate(acc: int, data: bytes) -> int:
    """Fold data into a running CRC-32. Order sensitive."""
    return zlib.crc32(data, acc) & 0xFFFFFFFF


def frames_to_ms(frame_count: int, frame_rate: float) -> int:
    return int(frame_count * 1000 // frame_rate)


class SceneSegmenter:
    """
    Streaming scene detector. Feed frames one at a time, then call finish().

    One instance per stream; instances share no state.
    """

    def __init__(self, frame_rate: float,
                 threshold: float = SCENE_CHANGE_THRESHOLD,
                 log: Optional[logging.Logger] = None):
        if frame_rate <= 0:
            raise ValueError(f"frame rate must be positive, got {frame_rate}")
        self.frame_rate = frame_rate
        self.threshold = threshold
        self.log = log or logger

        self.index = 0
        self.scene_start = 0
        self.crc = HASH_SEED
        self.last_frame = np.zeros(FRAME_SIZE, dtype=np.uint8)
        self.first_frame: Optional[np.ndarray] = None
        self.finished = False

    def _complete_scene(self, end_index: int) -> SegmentedScene:
        frame_count = end_index - self.scene_start
        scene_id = SceneId(self.crc, frames_to_ms(frame_count, self.frame_rate))
        return SegmentedScene(scene_id, self.scene_start, frame_count, self.first_frame)

    def feed(self, frame: np.ndarray) -> Optional[SegmentedScene]:
        """Process one frame. Returns the scene it closed, if any."""
        if self.finished:
            raise RuntimeError("segmenter already finished")

        i = self.index
        error = change_distance(frame, self.last_frame)
        completed = None

        if error > self.threshold and i > 0:
            completed = self._complete_scene(i)
            self.log.debug("%8d (%6.1f): %6.1f: %08X scene changed",
                           i, i / self.frame_rate, error, self.crc)
            self.crc = HASH_SEED
            self.scene_start = i
            self.first_frame = frame.copy()
        else:
            self.log.debug("%8d (%6.1f): %6.1f: %08X",
                           i, i / self.frame_rate, error, self.crc)
            if i == 0:
                self.first_frame = frame.copy()

        self.crc = crc32_accumulate(self.crc, frame.tobytes())
        self.last_frame = frame
        self.index = i + 1
        return completed

    def finish(self) -> SegmentedScene:
        """Close the scene in progress. An empty stream yields one empty scene."""
        if self.finished:
            raise RuntimeError("segmenter already finished")
        self.finished = True
        return self._complete_scene(self.index)


def segment_scenes(frames: Iterable[np.ndarray], frame_rate: float,
                   threshold: float = SCENE_CHANGE_THRESHOLD,
                   log: Optional[logging.Logger] = None) -> Iterator[SegmentedScene]:
    """Yield every scene of a frame sequence, the last one included."""
    segmenter = SceneSegmenter(frame_rate, threshold=threshold, log=log)
    for frame in frames:
        scene = segmenter.feed(frame)
        if scene is not None:
            yield scene
    yield segmenter.finish()


def scene_ids(frames: Iterable[np.ndarray], frame_rate: float) -> List[SceneId]:
    return [scene.scene_id for scene in segment_scenes(frames, frame_rate)]
