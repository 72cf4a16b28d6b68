# project_store.py
# ------------------------------------------------------------------------------------
#  Project records: scenes, frames and the clip JobStatusMap.
#  Two backends with the same surface:
#    * SqlProjectStore    -> SQLModel table (SQLite by default), used by the API
#    * MemoryProjectStore -> dict + lock, for scripts and tests
#  Clip writes are compare-and-swap on `clips_version`.
# ------------------------------------------------------------------------------------

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import Column, JSON, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import SQLModel, Field as SQLField, Session, create_engine

from errors import ProjectNotFoundError, StaleWriteError, StoreError


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Project(SQLModel, table=True):
    id: str = SQLField(primary_key=True, index=True)
    created_at: datetime = SQLField(default_factory=_now)
    updated_at: datetime = SQLField(default_factory=_now)
    scenes: Optional[Dict[str, Any]] = SQLField(default=None, sa_column=Column(JSON))
    frames: Optional[Dict[str, Any]] = SQLField(default=None, sa_column=Column(JSON))
    clips: Optional[Dict[str, str]] = SQLField(default=None, sa_column=Column(JSON))
    clips_version: int = 0

    def clone(self) -> "Project":
        return Project(
            id=self.id,
            created_at=self.created_at,
            updated_at=self.updated_at,
            scenes=copy.deepcopy(self.scenes),
            frames=copy.deepcopy(self.frames),
            clips=dict(self.clips) if self.clips is not None else None,
            clips_version=self.clips_version,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "scenes": self.scenes,
            "frames": self.frames,
            "clips": self.clips,
            "clips_version": self.clips_version,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


def new_project_id() -> str:
    return uuid.uuid4().hex


class SqlProjectStore:
    def __init__(self, database_url: str):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args)

    def init_db(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def create(self, project: Project) -> Project:
        try:
            with Session(self.engine) as session:
                session.add(project)
                session.commit()
                session.refresh(project)
                return project
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create project: {e}")

    def get(self, project_id: str) -> Project:
        try:
            with Session(self.engine) as session:
                project = session.get(Project, project_id)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to fetch project: {e}")
        if not project:
            raise ProjectNotFoundError(f"project {project_id} not found")
        return project

    def replace_frames(self, project_id: str, frames: Dict[str, Any]) -> None:
        try:
            with Session(self.engine) as session:
                project = session.get(Project, project_id)
                if not project:
                    raise ProjectNotFoundError(f"project {project_id} not found")
                project.frames = copy.deepcopy(frames)
                project.updated_at = _now()
                session.add(project)
                session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update project: {e}")

    def replace_clips(self, project_id: str, clips: Dict[str, str], *, expected_version: Optional[int] = None) -> int:
        """
        Replace the whole clip map. With expected_version, the write only lands if
        nobody else wrote since that version was read. Returns the new version.
        """
        try:
            with Session(self.engine) as session:
                stmt = update(Project).where(Project.id == project_id)
                if expected_version is not None:
                    stmt = stmt.where(Project.clips_version == expected_version)
                stmt = stmt.values(
                    clips=dict(clips),
                    clips_version=Project.clips_version + 1,
                    updated_at=_now(),
                )
                result = session.execute(stmt)
                if result.rowcount == 0:
                    session.rollback()
                    if session.get(Project, project_id) is None:
                        raise ProjectNotFoundError(f"project {project_id} not found")
                    raise StaleWriteError(f"clips for project {project_id} changed since version {expected_version}")
                session.commit()
                return session.get(Project, project_id).clips_version
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to update project: {e}")


class MemoryProjectStore:
    def __init__(self):
        self._projects: Dict[str, Project] = {}
        self._lock = threading.Lock()
        self.clip_writes = 0

    def init_db(self) -> None:
        pass

    def create(self, project: Project) -> Project:
        with self._lock:
            self._projects[project.id] = project.clone()
            return project.clone()

    def get(self, project_id: str) -> Project:
        with self._lock:
            project = self._projects.get(project_id)
            if not project:
                raise ProjectNotFoundError(f"project {project_id} not found")
            return project.clone()

    def replace_frames(self, project_id: str, frames: Dict[str, Any]) -> None:
        with self._lock:
            project = self._projects.get(project_id)
            if not project:
                raise ProjectNotFoundError(f"project {project_id} not found")
            project.frames = copy.deepcopy(frames)
            project.updated_at = _now()

    def replace_clips(self, project_id: str, clips: Dict[str, str], *, expected_version: Optional[int] = None) -> int:
        with self._lock:
            project = self._projects.get(project_id)
            if not project:
                raise ProjectNotFoundError(f"project {project_id} not found")
            if expected_version is not None and project.clips_version != expected_version:
                raise StaleWriteError(f"clips for project {project_id} changed since version {expected_version}")
            project.clips = dict(clips)
            project.clips_version += 1
            project.updated_at = _now()
            self.clip_writes += 1
            return project.clips_version
