import io

import pytest

from vidup.frames import FRAME_SIZE
from vidup.models import Scene, SceneId
from vidup.store import MemorySceneStore, SqlSceneStore


def raw_frames(*values: int, repeat: int = 1) -> bytes:
    """A raw stream of uniform frames, one per value, each repeated."""
    return b''.join(bytes([v]) * FRAME_SIZE for v in values for _ in range(repeat))


def frame_stream(*values: int, repeat: int = 1) -> io.BytesIO:
    return io.BytesIO(raw_frames(*values, repeat=repeat))


def add_file(store, name, *scene_ids, analyzed=True):
    """Register name with the given (hash, duration_ms) scenes."""
    entry = store.register_file(name)
    for h, d in scene_ids:
        store.append_scene(Scene(SceneId(h, d), entry.id))
    if analyzed:
        store.mark_file_analyzed(entry.id)
    return entry.id


@pytest.fixture
def memory_store():
    return MemorySceneStore()


@pytest.fixture
def sql_store(tmp_path):
    store = SqlSceneStore(str(tmp_path / "scenes.db"))
    store.init()
    yield store
    store.close()


@pytest.fixture(params=["memory", "sql"])
def store(request, tmp_path):
    if request.param == "memory":
        yield MemorySceneStore()
        return
    store = SqlSceneStore(str(tmp_path / "scenes.db"))
    store.init()
    yield store
    store.close()
