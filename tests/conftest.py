from __future__ import annotations

import base64
import json
from typing import Any, Dict, List

import httpx
import pytest

from pipeline import PipelineService
from project_store import MemoryProjectStore, Project
from runware_client import RunwareClient

RUNWARE_URL = "https://runware.test/v1"


class CountingTransport(httpx.MockTransport):
    def __init__(self, handler, owner: "FakeRunware"):
        super().__init__(handler)
        self._owner = owner

    async def aclose(self) -> None:
        self._owner.closed += 1


class FakeRunware:
    """Scriptable stand-in for the Runware REST API."""

    def __init__(self):
        # first-frame URL -> how videoInference answers for that scene
        self.plan: Dict[str, Dict[str, Any]] = {}
        # taskUUID -> task payload returned by status lookups
        self.tasks: Dict[str, Dict[str, Any]] = {}
        # taskUUID -> HTTP status to answer status lookups with
        self.status_errors: Dict[str, int] = {}
        self.by_frame: Dict[str, str] = {}
        self.requests: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.opened = 0
        self.closed = 0

    # ---- scripting helpers ----
    def complete(self, task_uuid: str, url: str) -> None:
        self.tasks[task_uuid] = {"taskUUID": task_uuid, "status": "success", "videoURL": url}

    def fail(self, task_uuid: str, reason: str = "content policy") -> None:
        self.tasks[task_uuid] = {"taskUUID": task_uuid, "status": "error", "error": reason}

    def handle_for(self, scene_key: str) -> str:
        return self.by_frame[frame_url(scene_key, "first")]

    # ---- transport ----
    def handler(self, request: httpx.Request) -> httpx.Response:
        tasks = json.loads(request.content)
        self.requests.extend(tasks)
        data = []
        for task in tasks:
            kind = task["taskType"]
            if kind == "videoInference":
                first = task["frameImages"][0]["inputImage"]
                plan = self.plan.get(first, {"kind": "pending"})
                if plan["kind"] == "reject":
                    return httpx.Response(plan.get("status", 400), json={"errors": [{"message": "rejected"}]})
                if plan["kind"] == "no_uuid":
                    return httpx.Response(200, json={"data": [{"taskType": kind}]})
                task_uuid = task["taskUUID"]
                self.by_frame[first] = task_uuid
                ack = {"taskType": kind, "taskUUID": task_uuid}
                if plan["kind"] == "complete":
                    ack.update(status="success", videoURL=plan["url"])
                    self.complete(task_uuid, plan["url"])
                else:
                    self.tasks[task_uuid] = {"taskUUID": task_uuid, "status": "processing"}
                data.append(ack)
            elif kind in ("getResponse", "getTaskStatus"):
                task_uuid = task["taskUUID"]
                self.status_calls.append(task_uuid)
                if task_uuid in self.status_errors:
                    return httpx.Response(self.status_errors[task_uuid], text="upstream unavailable")
                data.append(dict(self.tasks.get(task_uuid, {"taskUUID": task_uuid, "status": "processing"})))
            elif kind == "imageInference":
                payload = base64.b64encode(f"png:{task['positivePrompt']}".encode()).decode()
                data.append({"taskUUID": task["taskUUID"], "imageBase64Data": payload})
        return httpx.Response(200, json={"data": data})

    def client(self) -> RunwareClient:
        self.opened += 1
        return RunwareClient(
            api_key="test-key",
            base_url=RUNWARE_URL,
            transport=CountingTransport(self.handler, self),
        )


def frame_url(scene_key: str, which: str) -> str:
    return f"https://img.test/{scene_key}-{which}.png"


def make_scenes(count: int) -> Dict[str, Dict[str, Any]]:
    return {
        str(i): {
            "first_frame": f"scene {i} opening shot",
            "last_frame": f"scene {i} closing shot",
            "visual_action": f"action {i}",
            "setting": "a sunny park",
            "duration": "4s",
            "camera_motion": "slow pan",
        }
        for i in range(1, count + 1)
    }


def make_frames(count: int) -> Dict[str, Dict[str, str]]:
    return {
        str(i): {"first_frame": frame_url(str(i), "first"), "last_frame": frame_url(str(i), "last")}
        for i in range(1, count + 1)
    }


@pytest.fixture
def fake_runware() -> FakeRunware:
    return FakeRunware()


@pytest.fixture
def store() -> MemoryProjectStore:
    return MemoryProjectStore()


@pytest.fixture
def service(store, fake_runware) -> PipelineService:
    return PipelineService(
        store,
        client_factory=fake_runware.client,
        frame_store=lambda data, key: f"https://files.test/{key}",
        submit_options={"wait_s": 0},
    )


@pytest.fixture
def make_project(store):
    def _make(count: int = 3, *, frames: bool = True, clips: Dict[str, str] = None) -> Project:
        project = Project(
            id=f"proj-{count}",
            scenes=make_scenes(count),
            frames=make_frames(count) if frames else None,
            clips=clips,
        )
        return store.create(project)

    return _make
