"""
Data types shared by the segmenter, the scene store and the search commands.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Optional

import numpy as np


@dataclass(frozen=True, order=True)
class SceneId:
    """Content hash and duration of one scene. Equal only if both match."""
    hash: int
    duration_ms: int


@dataclass(frozen=True)
class Scene:
    scene_id: SceneId
    file_id: int


class FileStatus(IntEnum):
    NOT_ANALYZED = 0
    ANALYZED = 1


@dataclass
class FileEntry:
    id: int
    name: str
    status: FileStatus = FileStatus.NOT_ANALYZED

    @property
    def analyzed(self) -> bool:
        return self.status == FileStatus.ANALYZED


@dataclass(frozen=True)
class HashCount:
    """A scene identity and the number of distinct files containing it."""
    scene_id: SceneId
    count: int


@dataclass
class SegmentedScene:
    """One completed scene as emitted by the segmenter."""
    scene_id: SceneId
    start_frame: int
    frame_count: int
    first_frame: Optional[np.ndarray] = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class DuplicateMatch:
    file_id: int
    name: str
    shared_scenes: int


@dataclass
class DuplicateReport:
    file_id: int
    name: str
    matches: List[DuplicateMatch] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return bool(self.matches)


@dataclass(frozen=True)
class Relation:
    """Undirected edge between two files weighted by shared scene time."""
    file_a: int
    file_b: int
    name_a: str
    name_b: str
    duration_ms: int

    @property
    def seconds(self) -> float:
        return self.duration_ms / 1000.0
