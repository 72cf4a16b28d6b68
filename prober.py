# prober.py
import logging
from typing import Any, Dict, Optional

import httpx

from errors import ProbeError, RunwareError
from job_state import Completed, Failed, JobState, Pending, is_url
from runware_client import RunwareClient
from settings import settings

logger = logging.getLogger(__name__)

_COMPLETED = {"success", "completed", "succeeded", "done"}
_FAILED = {"error", "failed", "cancelled", "canceled"}
_PENDING = {"pending", "processing", "queued", "in_progress", "started", "running"}


def normalize_task_status(task: Dict[str, Any]) -> JobState:
    """
    Fold a provider task payload into Pending / Completed(url) / Failed(reason).
    Raises ProbeError for payloads we cannot interpret.
    """
    if not isinstance(task, dict):
        raise ProbeError(f"Invalid task payload: {task!r}")
    status = str(task.get("status") or "").lower()
    if status in _COMPLETED:
        url = task.get("videoURL") or task.get("outputURL") or task.get("imageURL") or task.get("url")
        if not url:
            raise ProbeError(f"no output URL in completed task: {task}")
        if not is_url(url):
            raise ProbeError(f"output URL is not absolute: {url!r}")
        return Completed(url)
    if status in _FAILED:
        return Failed(task.get("error") or task.get("message") or "Unknown error")
    if status in _PENDING:
        return Pending()
    raise ProbeError(f"unrecognized task status {status!r}")


class StatusProber:
    """Looks up the state of one task at a time over an open RunwareClient."""

    def __init__(self, client: RunwareClient, task_type: Optional[str] = None):
        self.client = client
        self.task_type = task_type or settings.runware_status_task_type

    async def probe(self, task_uuid: str) -> JobState:
        try:
            result = await self.client.run_tasks([{"taskType": self.task_type, "taskUUID": task_uuid}])
        except (RunwareError, httpx.HTTPError) as e:
            raise ProbeError(f"status check failed for {task_uuid}: {e}")

        for err in result["errors"]:
            if isinstance(err, dict) and err.get("taskUUID") == task_uuid:
                return Failed(err.get("message") or err.get("code") or "Unknown error")

        tasks = [t for t in result["data"] if isinstance(t, dict)]
        task = next((t for t in tasks if t.get("taskUUID") == task_uuid), tasks[0] if tasks else None)
        if task is None:
            # errors not tied to this task (auth, quota...) say nothing about the job itself
            raise ProbeError(f"Invalid response from Runware API for {task_uuid}: {result}")
        state = normalize_task_status(task)
        logger.debug("Status check for %s: %s", task_uuid, state.kind)
        return state
