from __future__ import annotations

import asyncio

import httpx
import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient
from tenacity import wait_none

import main
from errors import StoreError
from pipeline_client import PipelineAPIError, PipelineClient
from runware_client import RunwareClient

from conftest import RUNWARE_URL, frame_url, make_frames, make_scenes


@pytest.fixture
def api(monkeypatch, service):
    monkeypatch.setattr(main, "service", service)
    return TestClient(main.app)


def _create(api, count=3, frames=True):
    body = {"scenes": make_scenes(count)}
    if frames:
        body["frames"] = make_frames(count)
    r = api.post("/projects", json=body)
    assert r.status_code == 200
    return r.json()["project"]["id"]


def test_health(api):
    assert api.get("/health").json()["ok"] is True


def test_submit_then_refresh_over_http(api, fake_runware):
    fake_runware.plan[frame_url("1", "first")] = {"kind": "complete", "url": "https://cdn/x.mp4"}
    project_id = _create(api)

    submitted = api.post("/generate-clips", json={"project_id": project_id}).json()
    assert submitted["success"] is True
    assert (submitted["completed"], submitted["pending"], submitted["failed"]) == (1, 2, 0)

    fake_runware.complete(fake_runware.handle_for("2"), "https://cdn/y.mp4")
    refreshed = api.post("/check-clips-status", json={"project_id": project_id}).json()
    assert refreshed["success"] is True
    assert refreshed["changed"] is True
    assert (refreshed["completed"], refreshed["pending"]) == (2, 1)

    again = api.post("/check-clips-status", json={"project_id": project_id}).json()
    assert again["changed"] is False
    assert sum(d["already_processed"] for d in again["details"]) == 2

    stored = api.get(f"/projects/{project_id}").json()["project"]
    assert stored["clips"] == again["clips"]


def test_missing_project_id_uses_error_envelope(api, fake_runware):
    r = api.post("/generate-clips", json={})
    assert r.status_code == 400
    assert r.json() == {"success": False, "error": "project_id is required"}
    assert fake_runware.requests == []


def test_malformed_body_uses_error_envelope(api):
    r = api.post("/projects", json={"frames": {}})
    assert r.status_code == 400
    assert r.json()["success"] is False


def test_unknown_project_is_404(api):
    r = api.post("/check-clips-status", json={"project_id": "missing"})
    assert r.status_code == 404
    assert r.json()["success"] is False


def test_store_failure_is_request_level(api, monkeypatch, service):
    def _boom(project_id):
        raise StoreError("Failed to fetch project: disk gone")

    monkeypatch.setattr(service.store, "get", _boom)
    r = api.post("/check-clips-status", json={"project_id": "p"})
    assert r.status_code == 503
    assert r.json() == {"success": False, "error": "Failed to fetch project: disk gone"}


def test_generate_frames_endpoint(api):
    project_id = _create(api, count=1, frames=False)
    r = api.post("/generate-frames", json={"project_id": project_id})
    assert r.status_code == 200
    assert set(r.json()["frames"]["1"]) == {"first_frame", "last_frame"}


def test_generate_frames_network_failure_uses_error_envelope(api, monkeypatch, service):
    def _refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    monkeypatch.setattr(RunwareClient.run_tasks_with_retry.retry, "wait", wait_none())
    monkeypatch.setattr(
        service,
        "client_factory",
        lambda: RunwareClient(api_key="k", base_url=RUNWARE_URL, transport=httpx.MockTransport(_refuse)),
    )
    project_id = _create(api, count=1, frames=False)

    r = api.post("/generate-frames", json={"project_id": project_id})
    assert r.status_code == 502
    assert r.json()["success"] is False
    assert "connection refused" in r.json()["error"]


@pytest.mark.parametrize(
    "exc",
    [
        ClientError({"Error": {"Code": "AccessDenied", "Message": "denied"}}, "PutObject"),
        ValueError("key escapes the local storage dir"),
    ],
)
def test_generate_frames_storage_failure_uses_error_envelope(api, monkeypatch, service, exc):
    def _broken_store(data, key):
        raise exc

    monkeypatch.setattr(service, "frame_store", _broken_store)
    project_id = _create(api, count=1, frames=False)

    r = api.post("/generate-frames", json={"project_id": project_id})
    assert r.status_code == 503
    assert r.json()["success"] is False
    assert r.json()["error"].startswith("could not store frame")
    assert api.get(f"/projects/{project_id}").json()["project"]["frames"] is None


def test_unexpected_errors_use_error_envelope(monkeypatch, service):
    def _crash(project_id):
        raise RuntimeError("boom")

    monkeypatch.setattr(main, "service", service)
    monkeypatch.setattr(service, "get_project", _crash)
    client = TestClient(main.app, raise_server_exceptions=False)
    r = client.get("/projects/p1")
    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Internal server error"}


def test_local_files_are_served(api, monkeypatch, tmp_path):
    monkeypatch.setattr(main.settings, "local_dir", str(tmp_path))
    (tmp_path / "a.png").write_bytes(b"png")
    assert api.get("/files/local/a.png").content == b"png"
    assert api.get("/files/local/../secret").status_code == 404
    missing = api.get("/files/local/missing.png")
    assert missing.status_code == 404
    assert missing.json() == {"success": False, "error": "file not found"}


def test_client_watch_drives_refresh_until_done(monkeypatch, service, fake_runware, make_project):
    monkeypatch.setattr(main, "service", service)
    project = make_project(2)
    reports = []

    async def _go():
        transport = httpx.ASGITransport(app=main.app)
        async with PipelineClient("http://pipeline.test", transport=transport) as client:
            await client.generate_clips(project.id)
            handles = [fake_runware.handle_for("1"), fake_runware.handle_for("2")]

            async def _sleep(seconds):
                fake_runware.complete(handles[len(reports) - 1], f"https://cdn/{len(reports)}.mp4")
                await asyncio.sleep(0)

            watch = client.watch_clips(project.id, reports.append, interval_s=1, max_wait_s=60, sleep=_sleep)
            return await watch.wait()

    last = asyncio.run(_go())
    assert [r.completed for r in reports] == [0, 1, 2]
    assert last.all_done is True


def test_client_raises_on_error_envelope(monkeypatch, service):
    monkeypatch.setattr(main, "service", service)

    async def _go():
        transport = httpx.ASGITransport(app=main.app)
        async with PipelineClient("http://pipeline.test", transport=transport) as client:
            await client.check_clips_status("missing")

    with pytest.raises(PipelineAPIError):
        asyncio.run(_go())


def test_client_watch_stops_on_unknown_project(monkeypatch, service):
    monkeypatch.setattr(main, "service", service)
    reports = []
    sleeps = []

    async def _go():
        transport = httpx.ASGITransport(app=main.app)
        async with PipelineClient("http://pipeline.test", transport=transport) as client:

            async def _sleep(seconds):
                sleeps.append(seconds)

            return await client.watch_clips("missing", reports.append, interval_s=1, max_wait_s=60, sleep=_sleep).wait()

    assert asyncio.run(_go()) is None
    assert reports == []
    assert sleeps == []


def test_client_error_carries_http_status(monkeypatch, service):
    monkeypatch.setattr(main, "service", service)

    async def _go():
        transport = httpx.ASGITransport(app=main.app)
        async with PipelineClient("http://pipeline.test", transport=transport) as client:
            await client.check_clips_status("missing")

    with pytest.raises(PipelineAPIError) as info:
        asyncio.run(_go())
    assert info.value.status_code == 404
