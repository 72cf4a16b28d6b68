# pipeline.py
# ------------------------------------------------------------------------------------
#  Request-level operations behind the API:
#    create_project  -> store scenes (and optionally ready-made frames)
#    generate_frames -> first/last keyframe per scene (Runware imageInference)
#    submit_clips    -> one videoInference per scene, persist the initial clip map
#    refresh_clips   -> one reconciliation pass, persist only if something changed
# ------------------------------------------------------------------------------------

import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from botocore.exceptions import BotoCoreError, ClientError

import storage
from errors import InvalidRequestError, RunwareError, StaleWriteError, StoreError
from gateway import build_clip_requests, submit_batch
from job_state import Completed, Failed, Pending, encode
from project_store import Project, new_project_id
from prober import StatusProber
from reconciler import ReconcileResult, has_pending, merge_onto, reconcile
from runware_client import RunwareClient
from settings import settings

logger = logging.getLogger(__name__)


def _require_project_id(project_id: Optional[str]) -> str:
    if not project_id or not str(project_id).strip():
        raise InvalidRequestError("project_id is required")
    return str(project_id).strip()


class PipelineService:
    def __init__(
        self,
        store,
        *,
        client_factory: Callable[[], RunwareClient] = RunwareClient,
        frame_store: Callable[[bytes, str], str] = storage.store_bytes,
        submit_options: Optional[Dict[str, Any]] = None,
        cas_attempts: Optional[int] = None,
    ):
        self.store = store
        self.client_factory = client_factory
        self.frame_store = frame_store
        self.submit_options = submit_options or {}
        self.cas_attempts = max(1, cas_attempts or settings.store_cas_attempts)

    # ---------- Projects ----------
    def create_project(self, scenes: Optional[Dict[str, Any]], frames: Optional[Dict[str, Any]] = None) -> Project:
        if not scenes or not isinstance(scenes, dict):
            raise InvalidRequestError("scenes are required")
        project = Project(id=new_project_id(), scenes=scenes, frames=frames)
        return self.store.create(project)

    def get_project(self, project_id: Optional[str]) -> Project:
        return self.store.get(_require_project_id(project_id))

    # ---------- Keyframes ----------
    async def generate_frames(self, project_id: Optional[str]) -> Dict[str, Any]:
        project_id = _require_project_id(project_id)
        project = self.store.get(project_id)
        scenes = project.scenes
        if not scenes:
            raise InvalidRequestError("scenes are missing from project")
        for scene_key, scene in scenes.items():
            if not (scene or {}).get("first_frame") or not (scene or {}).get("last_frame"):
                raise InvalidRequestError(f"scene {scene_key} has no first/last frame description")

        frames: Dict[str, Dict[str, str]] = {}
        async with self.client_factory() as client:
            for scene_key, scene in scenes.items():
                logger.info("Processing scene %s...", scene_key)
                urls = {}
                for which in ("first", "last"):
                    try:
                        data = await client.generate_image(scene[f"{which}_frame"])
                    except httpx.HTTPError as e:
                        raise RunwareError(f"image generation failed for scene {scene_key}: {e}")
                    key = f"{project_id}/scene-{scene_key}-{which}-{int(time.time() * 1000)}.png"
                    try:
                        urls[f"{which}_frame"] = self.frame_store(data, key)
                    except (BotoCoreError, ClientError, OSError, ValueError) as e:
                        raise StoreError(f"could not store frame {key}: {e}")
                frames[scene_key] = urls
                logger.info("Scene %s frames generated: %s", scene_key, urls)

        self.store.replace_frames(project_id, frames)
        logger.info("Successfully generated all frames for project %s", project_id)
        return {"success": True, "project_id": project_id, "frames": frames}

    # ---------- Clips: submit ----------
    async def submit_clips(self, project_id: Optional[str]) -> Dict[str, Any]:
        project_id = _require_project_id(project_id)
        project = self.store.get(project_id)
        units = build_clip_requests(project.scenes, project.frames)

        outcomes = await submit_batch(units, client_factory=self.client_factory, **self.submit_options)

        clips = {o.task_uuid: encode(o.state) for o in outcomes if o.success}
        self.store.replace_clips(project_id, clips)

        accepted = [o for o in outcomes if o.success]
        completed = sum(1 for o in accepted if isinstance(o.state, Completed))
        pending = sum(1 for o in accepted if isinstance(o.state, Pending))
        failed = sum(1 for o in outcomes if not o.success or isinstance(o.state, Failed))
        logger.info(
            "Video generation jobs initiated for %s: completed=%d pending=%d failed=%d",
            project_id, completed, pending, failed,
        )
        return {
            "success": True,
            "project_id": project_id,
            "total_clips": len(accepted),
            "completed": completed,
            "pending": pending,
            "failed": failed,
            "all_complete": pending == 0 and failed == 0,
            "clips": clips,
            "results": [o.to_dict() for o in outcomes],
        }

    # ---------- Clips: refresh ----------
    async def refresh_clips(self, project_id: Optional[str]) -> Dict[str, Any]:
        """Safe to call any number of times; writes only when a job moved."""
        project_id = _require_project_id(project_id)
        project = self.store.get(project_id)
        clips = project.clips or {}
        if not clips:
            raise InvalidRequestError("No clips found for this project")

        if has_pending(clips):
            async with self.client_factory() as client:
                result = await reconcile(clips, StatusProber(client))
        else:
            result = await reconcile(clips, None)

        if result.changed:
            result.clips, result.changed = self._write_reconciled(project_id, result, project.clips_version)
            if result.changed:
                logger.info("Updated project %s with new clip states", project_id)

        return {
            "success": True,
            "project_id": project_id,
            "total_clips": result.total,
            "completed": result.completed,
            "pending": result.pending,
            "failed": result.failed,
            "changed": result.changed,
            "clips": result.clips,
            "details": [d.to_dict() for d in result.details],
        }

    def _write_reconciled(self, project_id: str, result: ReconcileResult, version: int) -> Tuple[Dict[str, str], bool]:
        """Compare-and-swap the reconciled map. Returns the stored map and whether this pass wrote it."""
        clips = result.clips
        for attempt in range(1, self.cas_attempts + 1):
            try:
                self.store.replace_clips(project_id, clips, expected_version=version)
                return clips, True
            except StaleWriteError:
                if attempt == self.cas_attempts:
                    raise
                logger.info("Clips for %s changed during refresh, merging (attempt %d)", project_id, attempt)
                latest = self.store.get(project_id)
                merged = merge_onto(latest.clips or {}, result.observed())
                if merged == (latest.clips or {}):
                    return merged, False
                clips, version = merged, latest.clips_version
