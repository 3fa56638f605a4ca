"""
Queries over stored scenes: duplicates of one file, and the strongest
relations between files across the whole library.
"""

import logging
from collections import Counter, defaultdict
from typing import Dict, List

from .models import DuplicateMatch, DuplicateReport, Relation, Scene, SceneId
from .store import SceneStore

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 10


def count_scenes_by_file(scenes: List[Scene]) -> List[tuple]:
    """Return (file_id, count) pairs, most shared first, ties by file id."""
    counts = Counter(scene.file_id for scene in scenes)
    return sorted(counts.items(), key=lambda item: (-item[1], item[0]))


def find_duplicates(store: SceneStore, file_id: int, limit: int = DEFAULT_LIMIT) -> DuplicateReport:
    """
    Rank other files by how many scenes they share with file_id.

    A file sharing the same scene identity several times with the target
    counts once per occurrence in the target. The target itself is never
    reported.
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")

    found_scenes: List[Scene] = []
    for scene in store.scenes_of_file(file_id):
        for other_id in store.files_sharing_scene_id(scene.scene_id):
            found_scenes.append(Scene(scene.scene_id, other_id))

    found_scenes = [s for s in found_scenes if s.file_id != file_id]

    report = DuplicateReport(file_id, store.file_name(file_id))
    for other_id, count in count_scenes_by_file(found_scenes)[:limit]:
        report.matches.append(DuplicateMatch(other_id, store.file_name(other_id), count))
    return report


def top_relations(store: SceneStore, limit: int = DEFAULT_LIMIT) -> List[Relation]:
    """
    Relations between the files holding the limit longest repeated scenes.

    Each unordered pair of files is reported once, weighted by the total
    duration of the seed scenes they share, heaviest first. Note that limit
    bounds the seed scenes, not the number of relations.
    """
    if limit < 1:
        raise ValueError(f"limit must be at least 1, got {limit}")

    found_scenes: List[Scene] = []
    for hash_count in store.top_repeated_scene_ids(limit):
        for other_id in store.files_sharing_scene_id(hash_count.scene_id):
            found_scenes.append(Scene(hash_count.scene_id, other_id))
        logger.debug("---- %8.1f seconds matched (%d files)",
                     hash_count.scene_id.duration_ms / 1000.0, hash_count.count)

    file_scenes: Dict[int, List[Scene]] = defaultdict(list)
    id_scenes: Dict[SceneId, List[Scene]] = defaultdict(list)
    for scene in found_scenes:
        file_scenes[scene.file_id].append(scene)
        id_scenes[scene.scene_id].append(scene)

    file_names = {fid: store.file_name(fid) for fid in sorted(file_scenes)}

    # Once a file has been extracted its relations are complete, so a later
    # file never adds the reverse direction.
    remaining = set(file_scenes)
    relation_map: Dict[int, Dict[int, int]] = {}
    for fid in sorted(file_scenes):
        remaining.discard(fid)
        relation = relation_map.setdefault(fid, {})

        for file_scene in file_scenes[fid]:
            for id_scene in id_scenes[file_scene.scene_id]:
                if id_scene.file_id not in remaining:
                    continue
                relation[id_scene.file_id] = (relation.get(id_scene.file_id, 0)
                                              + file_scene.scene_id.duration_ms)

    relations = []
    for fid in sorted(relation_map):
        for other_id, duration_ms in sorted(relation_map[fid].items()):
            relations.append(Relation(fid, other_id, file_names[fid],
                                      file_names[other_id], duration_ms))

    # Stable sort keeps (file_a, file_b) order among equal durations
    relations.sort(key=lambda r: r.duration_ms, reverse=True)
    return relations
