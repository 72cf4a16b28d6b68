# pipeline_client.py
# Thin async client for the pipeline API, for callers that poll from outside
# the service (front ends, scripts).
import logging
from typing import Any, Dict, Optional

import httpx

from errors import PipelineError
from poller import PollHandle, PollScheduler, ProgressFn
from settings import settings

logger = logging.getLogger(__name__)


class PipelineAPIError(PipelineError):
    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class PipelineClient:
    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=(base_url or settings.public_base_url).rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "PipelineClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, path: str, project_id: str) -> Dict[str, Any]:
        r = await self._client.post(path, json={"project_id": project_id})
        try:
            data = r.json()
        except ValueError:
            raise PipelineAPIError(f"{path} returned {r.status_code}: {r.text[:200]}", r.status_code)
        if not data.get("success"):
            raise PipelineAPIError(data.get("error") or f"{path} failed with {r.status_code}", r.status_code)
        return data

    async def generate_frames(self, project_id: str) -> Dict[str, Any]:
        return await self._call("/generate-frames", project_id)

    async def generate_clips(self, project_id: str) -> Dict[str, Any]:
        return await self._call("/generate-clips", project_id)

    async def check_clips_status(self, project_id: str) -> Dict[str, Any]:
        return await self._call("/check-clips-status", project_id)

    def watch_clips(
        self,
        project_id: str,
        on_progress: ProgressFn,
        *,
        interval_s: Optional[float] = None,
        max_wait_s: Optional[float] = None,
        **scheduler_kwargs: Any,
    ) -> PollHandle:
        """Poll /check-clips-status until done; returns the cancel handle."""
        scheduler = PollScheduler(
            self.check_clips_status,
            interval_s=interval_s,
            max_wait_s=max_wait_s,
            **scheduler_kwargs,
        )
        return scheduler.schedule(project_id, on_progress)
