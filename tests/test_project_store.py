from __future__ import annotations

import pytest

from errors import ProjectNotFoundError, StaleWriteError, StoreError
from project_store import MemoryProjectStore, Project, SqlProjectStore

from conftest import make_frames, make_scenes


@pytest.fixture(params=["memory", "sql"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryProjectStore()
    store = SqlProjectStore(f"sqlite:///{tmp_path / 'projects.db'}")
    store.init_db()
    return store


def _project(project_id="p1"):
    return Project(id=project_id, scenes=make_scenes(2), frames=make_frames(2))


def test_create_and_get_round_trip(any_store):
    any_store.create(_project())
    project = any_store.get("p1")
    assert project.scenes == make_scenes(2)
    assert project.frames == make_frames(2)
    assert project.clips is None
    assert project.clips_version == 0


def test_get_unknown_project(any_store):
    with pytest.raises(ProjectNotFoundError):
        any_store.get("nope")


def test_replace_clips_bumps_version(any_store):
    any_store.create(_project())
    assert any_store.replace_clips("p1", {"t1": "pending"}) == 1
    assert any_store.replace_clips("p1", {"t1": "https://cdn/a.mp4"}, expected_version=1) == 2
    project = any_store.get("p1")
    assert project.clips == {"t1": "https://cdn/a.mp4"}
    assert project.clips_version == 2


def test_replace_clips_with_stale_version_is_rejected(any_store):
    any_store.create(_project())
    any_store.replace_clips("p1", {"t1": "pending"})
    any_store.replace_clips("p1", {"t1": "failed"})
    with pytest.raises(StaleWriteError):
        any_store.replace_clips("p1", {"t1": "https://cdn/a.mp4"}, expected_version=1)
    assert any_store.get("p1").clips == {"t1": "failed"}


def test_replace_clips_unknown_project(any_store):
    with pytest.raises(ProjectNotFoundError):
        any_store.replace_clips("ghost", {"t1": "pending"}, expected_version=0)


def test_replace_frames(any_store):
    any_store.create(Project(id="p2", scenes=make_scenes(1)))
    any_store.replace_frames("p2", make_frames(1))
    assert any_store.get("p2").frames == make_frames(1)
    with pytest.raises(ProjectNotFoundError):
        any_store.replace_frames("ghost", {})


def test_memory_store_hands_out_copies():
    store = MemoryProjectStore()
    store.create(_project())
    project = store.get("p1")
    project.scenes["1"]["setting"] = "mutated"
    assert store.get("p1").scenes["1"]["setting"] == "a sunny park"


def test_sql_errors_become_store_errors(tmp_path):
    store = SqlProjectStore(f"sqlite:///{tmp_path / 'never-initialised.db'}")
    with pytest.raises(StoreError):
        store.get("p1")
