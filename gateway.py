# gateway.py
# ------------------------------------------------------------------------------------
#  Clip submission (image pair -> video) against Runware videoInference.
#  - one RunwareClient per batch, always closed
#  - each unit isolated: a failed unit never aborts its siblings
#  - a short bounded wait after submit catches jobs that finish fast; everything
#    else is left "pending" for the status refresh to pick up
# ------------------------------------------------------------------------------------

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

from errors import InvalidRequestError, ProbeError, RunwareError, SubmissionError
from job_state import Completed, Failed, JobState, Pending, advance, is_terminal, is_url
from prober import StatusProber, normalize_task_status
from runware_client import RunwareClient
from settings import settings

logger = logging.getLogger(__name__)


@dataclass
class ClipRequest:
    scene_key: str
    first_frame_url: str
    last_frame_url: str
    prompt: str = ""
    duration: int = field(default_factory=lambda: settings.clip_duration_sec)
    width: int = field(default_factory=lambda: settings.clip_width)
    height: int = field(default_factory=lambda: settings.clip_height)
    fps: int = field(default_factory=lambda: settings.clip_fps)
    model: str = field(default_factory=lambda: settings.runware_video_model)
    output_format: str = "mp4"

    def to_task(self, task_uuid: str) -> Dict[str, Any]:
        return {
            "taskType": "videoInference",
            "taskUUID": task_uuid,
            "deliveryMethod": "async",
            "model": self.model,
            "duration": self.duration,
            "fps": self.fps,
            "outputFormat": self.output_format,
            "height": self.height,
            "width": self.width,
            "numberResults": 1,
            "includeCost": True,
            "outputQuality": 85,
            "providerSettings": {
                "google": {"generateAudio": True, "enhancePrompt": True},
            },
            "frameImages": [
                {"inputImage": self.first_frame_url, "frame": "first"},
                {"inputImage": self.last_frame_url, "frame": "last"},
            ],
            "positivePrompt": self.prompt,
        }


@dataclass
class SubmitOutcome:
    scene_key: str
    task_uuid: Optional[str] = None
    success: bool = False
    state: JobState = field(default_factory=Pending)
    error: Optional[str] = None

    @property
    def video_url(self) -> Optional[str]:
        return self.state.url if isinstance(self.state, Completed) else None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "scene_key": self.scene_key,
            "task_uuid": self.task_uuid,
            "success": self.success,
            "status": self.state.kind if self.success else "failed",
        }
        if self.video_url:
            out["video_url"] = self.video_url
        if self.error:
            out["error"] = self.error
        return out


# ---------- Building units from a project ----------
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)")


def _scene_duration(scene: Dict[str, Any]) -> int:
    raw = scene.get("duration")
    match = _DURATION_RE.search(str(raw)) if raw is not None else None
    if not match:
        return settings.clip_duration_sec
    seconds = int(round(float(match.group(1))))
    return max(settings.clip_min_duration_sec, min(settings.clip_max_duration_sec, seconds))


def _scene_prompt(scene: Dict[str, Any]) -> str:
    if scene.get("description"):
        return str(scene["description"])
    parts = [scene.get("visual_action"), scene.get("setting")]
    if scene.get("camera_motion"):
        parts.append(f"Camera: {scene['camera_motion']}")
    return ". ".join(str(p).strip().rstrip(".") for p in parts if p)


def build_clip_requests(scenes: Optional[Dict[str, Any]], frames: Optional[Dict[str, Any]]) -> List[ClipRequest]:
    if not frames:
        raise InvalidRequestError("frames are missing from project")
    if not scenes:
        raise InvalidRequestError("scenes are missing from project")

    units = []
    for scene_key, pair in frames.items():
        pair = pair or {}
        first, last = pair.get("first_frame"), pair.get("last_frame")
        if not first or not last:
            raise InvalidRequestError(f"scene {scene_key} is missing a first or last frame")
        scene = scenes.get(scene_key) or {}
        units.append(
            ClipRequest(
                scene_key=str(scene_key),
                first_frame_url=first,
                last_frame_url=last,
                prompt=_scene_prompt(scene),
                duration=_scene_duration(scene),
            )
        )
    return units


# ---------- Submission ----------
def _fast_path_state(ack: Dict[str, Any]) -> JobState:
    url = ack.get("videoURL") or ack.get("outputURL")
    if url and not is_url(url):
        logger.warning("Ignoring non-absolute output URL %r for task %s", url, ack.get("taskUUID"))
        return Pending()
    if url:
        return Completed(url)
    if not ack.get("status"):
        return Pending()
    try:
        return normalize_task_status(ack)
    except ProbeError:
        return Pending()


async def submit_clip(
    client: RunwareClient,
    unit: ClipRequest,
    *,
    wait_s: Optional[float] = None,
    probe_every_s: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Any] = asyncio.sleep,
) -> SubmitOutcome:
    """
    Submit one clip. Raises SubmissionError when the provider never accepted it.
    Otherwise returns the handle plus whatever state was observed within wait_s.
    """
    wait_s = settings.runware_submit_wait_sec if wait_s is None else wait_s
    probe_every_s = settings.runware_submit_probe_sec if probe_every_s is None else probe_every_s

    task_uuid = str(uuid.uuid4())
    try:
        result = await client.run_tasks_with_retry([unit.to_task(task_uuid)])
    except (RunwareError, httpx.HTTPError) as e:
        raise SubmissionError(f"scene {unit.scene_key}: {e}")

    for err in result["errors"]:
        if isinstance(err, dict):
            raise SubmissionError(f"scene {unit.scene_key}: {err.get('message') or err}")

    ack = next((t for t in result["data"] if isinstance(t, dict)), None)
    handle = (ack or {}).get("taskUUID") or (ack or {}).get("id")
    if not handle:
        raise SubmissionError(f"scene {unit.scene_key}: no taskUUID in response: {result}")

    state = _fast_path_state(ack)
    prober = StatusProber(client)
    deadline = clock() + wait_s
    while not is_terminal(state) and clock() < deadline:
        await sleep(max(0.0, min(probe_every_s, deadline - clock())))
        try:
            state = advance(state, await prober.probe(handle))
        except ProbeError as e:
            logger.debug("Fast-path probe for %s failed: %s", handle, e)

    if isinstance(state, Completed):
        logger.info("Scene %s video completed immediately: %s", unit.scene_key, state.url)
    elif isinstance(state, Failed):
        logger.warning("Scene %s video failed during submission: %s", unit.scene_key, state.reason)
    else:
        logger.info("Scene %s video initiated with task UUID %s", unit.scene_key, handle)
    return SubmitOutcome(scene_key=unit.scene_key, task_uuid=handle, success=True, state=state)


async def submit_batch(
    units: List[ClipRequest],
    *,
    client_factory: Callable[[], RunwareClient] = RunwareClient,
    **submit_kwargs: Any,
) -> List[SubmitOutcome]:
    """Submit all units concurrently over a single connection."""

    async def _one(client: RunwareClient, unit: ClipRequest) -> SubmitOutcome:
        try:
            return await submit_clip(client, unit, **submit_kwargs)
        except SubmissionError as e:
            logger.error("Failed to initiate video for scene %s: %s", unit.scene_key, e)
            return SubmitOutcome(scene_key=unit.scene_key, success=False, state=Failed(str(e)), error=str(e))

    async with client_factory() as client:
        return list(await asyncio.gather(*(_one(client, u) for u in units)))
