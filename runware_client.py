# runware_client.py
import base64
import logging
import uuid
from typing import Any, Dict, List, Optional

import httpx
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from errors import RunwareError
from settings import settings

logger = logging.getLogger(__name__)


class RunwareHTTPError(RunwareError):
    def __init__(self, upstream_status: int, body: str):
        super().__init__(f"Runware API error: {upstream_status} {body}")
        self.upstream_status = upstream_status
        self.body = body


def _is_retriable(exc: BaseException) -> bool:
    """Only transient upstream failures are worth another attempt (429, 5xx, network)."""
    if isinstance(exc, RunwareHTTPError):
        return exc.upstream_status == 429 or exc.upstream_status >= 500
    return isinstance(exc, httpx.TransportError)


def _headers(api_key: Optional[str] = None) -> Dict[str, str]:
    api_key = api_key or settings.runware_api_key
    if not api_key:
        raise RunwareError("RUNWARE_API_KEY environment variable is not set")
    return {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def _unwrap(body: Any) -> Dict[str, List[Dict[str, Any]]]:
    """
    Runware answers either {"data": [...], "errors": [...]} or a bare list of
    task results. Return both shapes as {"data": [...], "errors": [...]}.
    """
    if isinstance(body, list):
        return {"data": [t for t in body if isinstance(t, dict)], "errors": []}
    if isinstance(body, dict):
        data = body.get("data") or []
        errors = body.get("errors") or []
        if not isinstance(data, list) or not isinstance(errors, list):
            raise RunwareError(f"Invalid response from Runware API: {body}")
        return {"data": data, "errors": errors}
    raise RunwareError(f"Invalid response from Runware API: {body!r}")


class RunwareClient:
    """
    One HTTP connection to the Runware REST API.

    Open it once per batch and close it when the batch is done:

        async with RunwareClient() as client:
            await client.run_tasks([...])
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.runware_api_key
        self.base_url = (base_url or settings.runware_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.runware_timeout_sec
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "RunwareClient":
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout, connect=10.0),
            headers=_headers(self.api_key),
            transport=self._transport,
        )
        logger.info("Runware connection opened")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
            logger.info("Runware connection closed")
        except httpx.HTTPError as e:
            logger.warning("Error while closing Runware connection: %s", e)

    @property
    def is_open(self) -> bool:
        return self._client is not None

    async def run_tasks(self, tasks: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """POST a list of tasks and return the unwrapped {"data", "errors"} body."""
        if self._client is None:
            raise RunwareError("Runware client is not open")
        r = await self._client.post(self.base_url, json=tasks)
        if r.status_code >= 300:
            raise RunwareHTTPError(r.status_code, r.text)
        try:
            body = r.json()
        except ValueError:
            raise RunwareError(f"Invalid JSON from Runware API: {r.text[:200]}")
        return _unwrap(body)

    @retry(
        stop=stop_after_attempt(max(1, settings.runware_submit_attempts)),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception(_is_retriable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def run_tasks_with_retry(self, tasks: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
        """run_tasks with exponential backoff on 429/5xx/network errors."""
        return await self.run_tasks(tasks)

    async def generate_image(
        self,
        prompt: str,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        model: Optional[str] = None,
    ) -> bytes:
        """Generate one PNG with imageInference and return its bytes."""
        task = {
            "taskType": "imageInference",
            "taskUUID": str(uuid.uuid4()),
            "model": model or settings.runware_image_model,
            "positivePrompt": prompt,
            "width": width or settings.frame_width,
            "height": height or settings.frame_height,
            "numberResults": 1,
            "outputType": "base64Data",
            "outputFormat": "PNG",
        }
        result = await self.run_tasks_with_retry([task])
        if result["errors"]:
            raise RunwareError(f"image generation failed: {result['errors'][0]}")
        first = result["data"][0] if result["data"] else {}
        b64 = first.get("imageBase64Data") or first.get("imageBase64")
        if not b64:
            raise RunwareError(f"Invalid response from Runware API: {first}")
        try:
            return base64.b64decode(b64)
        except ValueError:
            raise RunwareError("image payload is not valid base64")
