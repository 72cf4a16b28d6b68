# poller.py
# ------------------------------------------------------------------------------------
#  Repeated clip status refresh until every job is terminal or the wall-clock
#  budget runs out. The loop only reads progress; giving up never touches job
#  state (a clip still pending at timeout stays "pending" in the store).
#
#      scheduler = PollScheduler(service.refresh_clips)
#      handle = scheduler.schedule(project_id, on_progress)
#      ...
#      handle.cancel()
# ------------------------------------------------------------------------------------

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from errors import PipelineError
from settings import settings

logger = logging.getLogger(__name__)

RefreshFn = Callable[[str], Awaitable[Dict[str, Any]]]
ProgressFn = Callable[["PollProgress"], Any]


def _gives_up(exc: Exception) -> bool:
    # a 4xx other than 409 fails the same way on every tick
    status = getattr(exc, "status_code", 500)
    return isinstance(exc, PipelineError) and 400 <= status < 500 and status != 409


@dataclass(frozen=True)
class PollProgress:
    completed: int
    total: int
    all_done: bool

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "PollProgress":
        completed = int(data.get("completed") or 0)
        total = int(data.get("total_clips") or 0)
        pending = int(data.get("pending") or 0)
        return cls(completed=completed, total=total, all_done=pending == 0)


class PollHandle:
    """Returned by PollScheduler.schedule(); the caller keeps it to cancel."""

    def __init__(self, project_id: str):
        self.project_id = project_id
        self.last_progress: Optional[PollProgress] = None
        self._cancelled = False
        self._task: Optional[asyncio.Task] = None

    def cancel(self) -> None:
        # no interruption of a refresh already in flight
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def wait(self) -> Optional[PollProgress]:
        if self._task is not None:
            await self._task
        return self.last_progress


class PollScheduler:
    def __init__(
        self,
        refresh: RefreshFn,
        *,
        interval_s: Optional[float] = None,
        max_wait_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.refresh = refresh
        self.interval_s = settings.poll_interval_sec if interval_s is None else interval_s
        self.max_wait_s = settings.poll_max_wait_sec if max_wait_s is None else max_wait_s
        self._clock = clock
        self._sleep = sleep

    async def poll_once(self, project_id: str) -> PollProgress:
        """One manual refresh; a no-op when nothing changed upstream."""
        return PollProgress.from_response(await self.refresh(project_id))

    def schedule(self, project_id: str, on_progress: ProgressFn) -> PollHandle:
        """Start the loop on the running event loop and return its handle."""
        handle = PollHandle(project_id)
        handle._task = asyncio.get_running_loop().create_task(self._run(handle, on_progress))
        return handle

    async def _run(self, handle: PollHandle, on_progress: ProgressFn) -> None:
        started = self._clock()
        attempt = 0
        while not handle.cancelled:
            attempt += 1
            try:
                progress = await self.poll_once(handle.project_id)
            except Exception as e:
                if _gives_up(e):
                    logger.error("Stopped polling %s: %s", handle.project_id, e)
                    return
                # store down, bad gateway: try again next tick
                logger.error("Error polling clip status for %s: %s", handle.project_id, e)
                progress = None

            if handle.cancelled:
                break
            if progress is not None:
                handle.last_progress = progress
                logger.info(
                    "Video generation progress for %s: %d/%d completed",
                    handle.project_id, progress.completed, progress.total,
                )
                result = on_progress(progress)
                if asyncio.iscoroutine(result):
                    await result
                if progress.all_done:
                    return

            elapsed = self._clock() - started
            if elapsed >= self.max_wait_s:
                logger.warning(
                    "Giving up polling %s after %.0fs (%d attempts); jobs left pending",
                    handle.project_id, elapsed, attempt,
                )
                return
            await self._sleep(self.interval_s)
        logger.info("Polling for %s cancelled", handle.project_id)
