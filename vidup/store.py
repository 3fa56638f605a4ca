"""
Scene store: files and the scenes found in them.

SqlSceneStore persists to any SQLAlchemy database (SQLite by default).
MemorySceneStore keeps everything in dicts and is used for tests.
"""

import logging
import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, List, Optional

from sqlalchemy import (BigInteger, Column, ForeignKey, Index, Integer, String,
                        create_engine, distinct, event, func)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from .errors import FileEntryNotFound, StorageError
from .models import FileEntry, FileStatus, HashCount, Scene, SceneId

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = os.getenv("VIDUP_DATABASE", "vidup.db")


class SceneStore(ABC):
    """Operations the analysis and search commands need from storage."""

    @abstractmethod
    def init(self) -> None:
        """Create the schema if it does not exist."""

    @abstractmethod
    def register_file(self, name: str) -> FileEntry:
        """Create a not-yet-analyzed entry. Names are unique."""

    @abstractmethod
    def get_file_entry(self, name: str) -> Optional[FileEntry]:
        ...

    @abstractmethod
    def file_name(self, file_id: int) -> str:
        ...

    @abstractmethod
    def list_files(self) -> List[FileEntry]:
        ...

    @abstractmethod
    def delete_file(self, file_id: int) -> None:
        """Delete a file and, by cascade, all of its scenes."""

    @abstractmethod
    def append_scene(self, scene: Scene) -> None:
        """Persist one scene. Durable once this returns."""

    @abstractmethod
    def mark_file_analyzed(self, file_id: int) -> None:
        ...

    @abstractmethod
    def scenes_of_file(self, file_id: int) -> List[Scene]:
        """Scenes of a file in insertion order."""

    @abstractmethod
    def files_sharing_scene_id(self, scene_id: SceneId) -> List[int]:
        """Distinct ids of the files containing scene_id, ascending."""

    @abstractmethod
    def top_repeated_scene_ids(self, limit: int) -> List[HashCount]:
        """
        Scene identities found in at least two files, longest first
        (ties by ascending hash), at most limit of them.
        """

    def require_file_entry(self, name: str) -> FileEntry:
        entry = self.get_file_entry(name)
        if entry is None:
            raise FileEntryNotFound(name)
        return entry

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()


class MemorySceneStore(SceneStore):

    def __init__(self):
        self.files: Dict[int, FileEntry] = {}
        self.scenes: List[Scene] = []
        self._next_id = 1

    def init(self) -> None:
        pass

    def register_file(self, name: str) -> FileEntry:
        if self.get_file_entry(name) is not None:
            raise StorageError(f"UNIQUE constraint failed: files.path ({name})")
        entry = FileEntry(self._next_id, name, FileStatus.NOT_ANALYZED)
        self._next_id += 1
        self.files[entry.id] = entry
        return FileEntry(entry.id, entry.name, entry.status)

    def get_file_entry(self, name: str) -> Optional[FileEntry]:
        for entry in self.files.values():
            if entry.name == name:
                return FileEntry(entry.id, entry.name, entry.status)
        return None

    def file_name(self, file_id: int) -> str:
        if file_id not in self.files:
            raise FileEntryNotFound(file_id)
        return self.files[file_id].name

    def list_files(self) -> List[FileEntry]:
        return [FileEntry(e.id, e.name, e.status) for e in self.files.values()]

    def delete_file(self, file_id: int) -> None:
        self.files.pop(file_id, None)
        self.scenes = [s for s in self.scenes if s.file_id != file_id]

    def append_scene(self, scene: Scene) -> None:
        if scene.file_id not in self.files:
            raise StorageError(f"FOREIGN KEY constraint failed: file {scene.file_id}")
        self.scenes.append(scene)

    def mark_file_analyzed(self, file_id: int) -> None:
        if file_id not in self.files:
            raise FileEntryNotFound(file_id)
        self.files[file_id].status = FileStatus.ANALYZED

    def scenes_of_file(self, file_id: int) -> List[Scene]:
        return [s for s in self.scenes if s.file_id == file_id]

    def files_sharing_scene_id(self, scene_id: SceneId) -> List[int]:
        return sorted({s.file_id for s in self.scenes if s.scene_id == scene_id})

    def top_repeated_scene_ids(self, limit: int) -> List[HashCount]:
        files_by_id: Dict[SceneId, set] = {}
        for scene in self.scenes:
            files_by_id.setdefault(scene.scene_id, set()).add(scene.file_id)

        repeated = [HashCount(scene_id, len(file_ids))
                    for scene_id, file_ids in files_by_id.items() if len(file_ids) > 1]
        repeated.sort(key=lambda hc: (-hc.scene_id.duration_ms, hc.scene_id.hash))
        return repeated[:max(limit, 0)]


# --- SQL ---

Base = declarative_base()


class FileRecord(Base):
    __tablename__ = "files"
    # File ids are never reused after a delete
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    path = Column(String, unique=True, nullable=False)
    status = Column(Integer, nullable=False, default=int(FileStatus.NOT_ANALYZED))

    def to_entry(self) -> FileEntry:
        return FileEntry(self.id, self.path, FileStatus(self.status))


class SceneRecord(Base):
    __tablename__ = "scenes"
    __table_args__ = (
        Index("scene_hash_duration", "hash", "duration_ms"),
        Index("scene_file_id", "file_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    hash = Column(BigInteger, nullable=False)
    duration_ms = Column(BigInteger, nullable=False)
    file_id = Column(Integer, ForeignKey("files.id", ondelete="CASCADE"), nullable=False)


def database_url(target: str) -> str:
    """Accept either a SQLAlchemy URL or a plain SQLite file path."""
    if "://" in target:
        return target
    return f"sqlite:///{target}"


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


class SqlSceneStore(SceneStore):

    def __init__(self, url: str = DEFAULT_DATABASE, echo: bool = False):
        self.url = database_url(url)
        try:
            self.engine: Engine = create_engine(self.url, echo=echo)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not open database {self.url}: {e}") from e
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @contextmanager
    def _session(self, what: str):
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.debug("%s failed", what, exc_info=True)
            raise StorageError(f"{what}: {e}") from e
        finally:
            db.close()

    def init(self) -> None:
        try:
            Base.metadata.create_all(bind=self.engine)
        except SQLAlchemyError as e:
            raise StorageError(f"CREATE TABLE: {e}") from e
        logger.info("Initialized scene store at %s", self.url)

    def register_file(self, name: str) -> FileEntry:
        with self._session("INSERT INTO files") as db:
            record = FileRecord(path=name, status=int(FileStatus.NOT_ANALYZED))
            db.add(record)
            db.flush()
            return record.to_entry()

    def get_file_entry(self, name: str) -> Optional[FileEntry]:
        with self._session("SELECT FROM files") as db:
            record = db.query(FileRecord).filter(FileRecord.path == name).first()
            return record.to_entry() if record else None

    def file_name(self, file_id: int) -> str:
        with self._session("SELECT path FROM files") as db:
            record = db.get(FileRecord, file_id)
            if record is None:
                raise FileEntryNotFound(file_id)
            return record.path

    def list_files(self) -> List[FileEntry]:
        with self._session("SELECT FROM files") as db:
            return [r.to_entry() for r in db.query(FileRecord).order_by(FileRecord.id)]

    def delete_file(self, file_id: int) -> None:
        with self._session("DELETE FROM files") as db:
            db.query(FileRecord).filter(FileRecord.id == file_id).delete(
                synchronize_session=False)

    def append_scene(self, scene: Scene) -> None:
        with self._session("INSERT INTO scenes") as db:
            db.add(SceneRecord(hash=scene.scene_id.hash,
                               duration_ms=scene.scene_id.duration_ms,
                               file_id=scene.file_id))

    def mark_file_analyzed(self, file_id: int) -> None:
        with self._session("UPDATE files") as db:
            updated = db.query(FileRecord).filter(FileRecord.id == file_id).update(
                {FileRecord.status: int(FileStatus.ANALYZED)}, synchronize_session=False)
            if not updated:
                raise FileEntryNotFound(file_id)

    def scenes_of_file(self, file_id: int) -> List[Scene]:
        with self._session("SELECT FROM scenes") as db:
            rows = (db.query(SceneRecord.hash, SceneRecord.duration_ms)
                    .filter(SceneRecord.file_id == file_id)
                    .order_by(SceneRecord.id)
                    .all())
            return [Scene(SceneId(h, d), file_id) for h, d in rows]

    def files_sharing_scene_id(self, scene_id: SceneId) -> List[int]:
        with self._session("SELECT DISTINCT file_id FROM scenes") as db:
            rows = (db.query(SceneRecord.file_id).distinct()
                    .filter(SceneRecord.hash == scene_id.hash,
                            SceneRecord.duration_ms == scene_id.duration_ms)
                    .order_by(SceneRecord.file_id)
                    .all())
            return [r[0] for r in rows]

    def top_repeated_scene_ids(self, limit: int) -> List[HashCount]:
        file_count = func.count(distinct(SceneRecord.file_id))
        with self._session("SELECT top hashes") as db:
            rows = (db.query(SceneRecord.hash, SceneRecord.duration_ms, file_count)
                    .group_by(SceneRecord.hash, SceneRecord.duration_ms)
                    .having(file_count > 1)
                    .order_by(SceneRecord.duration_ms.desc(), SceneRecord.hash)
                    .limit(max(limit, 0))
                    .all())
            return [HashCount(SceneId(h, d), count) for h, d, count in rows]

    def close(self) -> None:
        self.engine.dispose()


def open_store(target: Optional[str] = None) -> SceneStore:
    """Open the SQL store at target, or at $VIDUP_DATABASE."""
    return SqlSceneStore(target or DEFAULT_DATABASE)
