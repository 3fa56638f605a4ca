"""
Analysis of one file's frame stream into stored scenes.

A file is registered first and flagged as analyzed only after every scene
has been appended, so an interrupted run leaves it not analyzed.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

from PIL import Image
from tqdm import tqdm

from .errors import FileAlreadyAnalyzed
from .frames import FRAME_HEIGHT, FRAME_WIDTH, iter_frames
from .models import Scene, SceneId, SegmentedScene
from .segmenter import SCENE_CHANGE_THRESHOLD, segment_scenes
from .store import SceneStore

logger = logging.getLogger(__name__)

DEFAULT_FRAME_RATE = 30


@dataclass
class AnalysisResult:
    name: str
    file_id: Optional[int]
    scene_ids: List[SceneId] = field(default_factory=list)
    dry_run: bool = False

    @property
    def scene_count(self) -> int:
        return len(self.scene_ids)


def dump_scene_frame(scene: SegmentedScene, index: int, directory: str) -> Optional[str]:
    """Save the first frame of a scene as a PNG for threshold tuning."""
    if scene.first_frame is None:
        return None
    os.makedirs(directory, exist_ok=True)
    image = Image.fromarray(scene.first_frame.reshape(FRAME_HEIGHT, FRAME_WIDTH))
    path = os.path.join(
        directory,
        f"{index:05d}_{scene.scene_id.hash:08X}_{scene.scene_id.duration_ms}ms.png")
    image.save(path)
    return path


def prepare_file_entry(store: SceneStore, name: str, force: bool = False,
                       dry_run: bool = False) -> Optional[int]:
    """
    Replace any existing entry for name with a fresh, not analyzed one.

    Raises FileAlreadyAnalyzed before touching anything if name is analyzed
    and force is not set. Returns the new file id, or None on a dry run.
    """
    entry = store.get_file_entry(name)
    if entry is not None:
        if entry.analyzed and not force:
            raise FileAlreadyAnalyzed(name)
        # Whatever state it is in, an existing entry is replaced
        if not dry_run:
            logger.info('Deleting previous analysis of "%s"', name)
            store.delete_file(entry.id)

    if dry_run:
        return None
    return store.register_file(name).id


def analyze_stream(store: Optional[SceneStore], name: str, stream: BinaryIO,
                   frame_rate: float = DEFAULT_FRAME_RATE,
                   force: bool = False,
                   dry_run: bool = False,
                   threshold: float = SCENE_CHANGE_THRESHOLD,
                   dump_dir: Optional[str] = None,
                   progress: bool = True) -> AnalysisResult:
    """
    Segment a raw frame stream and store its scenes under name.

    With dry_run the store is only read (if given) and nothing is written.
    """
    file_id = None
    if store is not None:
        file_id = prepare_file_entry(store, name, force=force, dry_run=dry_run)
    elif not dry_run:
        raise ValueError("a store is required unless dry_run is set")

    result = AnalysisResult(name, file_id, dry_run=dry_run)
    frames = tqdm(iter_frames(stream), desc=name, unit="frame",
                  disable=None if progress else True, leave=False)

    for index, scene in enumerate(segment_scenes(frames, frame_rate, threshold=threshold)):
        if not dry_run:
            store.append_scene(Scene(scene.scene_id, file_id))
        if dump_dir:
            dump_scene_frame(scene, index, dump_dir)
        result.scene_ids.append(scene.scene_id)

    if not dry_run:
        store.mark_file_analyzed(file_id)

    logger.info('Analyzed "%s": %d scenes', name, result.scene_count)
    return result


def delete_file(store: SceneStore, name: str) -> int:
    entry = store.require_file_entry(name)
    store.delete_file(entry.id)
    return entry.id


def file_scenes(store: SceneStore, name: str) -> List[Scene]:
    """Scenes of a named file in the order they were stored."""
    return store.scenes_of_file(store.require_file_entry(name).id)
