# reconciler.py
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

from errors import ProbeError
from job_state import (
    Completed,
    Failed,
    JobState,
    Pending,
    advance,
    decode,
    encode,
    is_terminal,
    is_url,
)

logger = logging.getLogger(__name__)


class Prober(Protocol):
    async def probe(self, task_uuid: str) -> JobState: ...


@dataclass
class JobDetail:
    task_uuid: str
    state: JobState
    already_processed: bool
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_uuid": self.task_uuid,
            "status": self.state.kind,
            "video_url": self.state.url if isinstance(self.state, Completed) else None,
            "error": self.error or (self.state.reason if isinstance(self.state, Failed) else None),
            "already_processed": self.already_processed,
        }


@dataclass
class ReconcileResult:
    clips: Dict[str, str]
    changed: bool
    details: List[JobDetail] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.clips)

    def _count(self, kind: str) -> int:
        return sum(1 for value in self.clips.values() if decode(value).kind == kind)

    @property
    def completed(self) -> int:
        return self._count("completed")

    @property
    def pending(self) -> int:
        return self._count("pending")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def all_done(self) -> bool:
        return self.pending == 0

    def observed(self) -> Dict[str, JobState]:
        """Terminal states newly learned in this pass."""
        return {
            d.task_uuid: d.state
            for d in self.details
            if not d.already_processed and is_terminal(d.state)
        }


async def _probe_one(prober: Prober, task_uuid: str) -> JobDetail:
    try:
        state = await prober.probe(task_uuid)
    except ProbeError as e:
        logger.warning("Error checking status for job %s: %s", task_uuid, e)
        return JobDetail(task_uuid, Pending(), already_processed=False, error=str(e))
    if isinstance(state, Completed) and not is_url(state.url):
        logger.warning("Job %s reported a non-absolute URL %r, keeping it pending", task_uuid, state.url)
        return JobDetail(task_uuid, Pending(), already_processed=False, error=f"invalid output URL: {state.url!r}")
    return JobDetail(task_uuid, state, already_processed=False)


async def reconcile(clips: Dict[str, str], prober: Optional[Prober]) -> ReconcileResult:
    """
    One reconciliation pass over a JobStatusMap.

    Terminal entries are carried over untouched and never probed. Pending
    entries are probed concurrently and merged forward-only. `changed` is True
    iff at least one stored value differs afterwards.
    """
    current = {task_uuid: decode(value) for task_uuid, value in clips.items()}
    details: Dict[str, JobDetail] = {}
    candidates = []
    for task_uuid, state in current.items():
        if is_terminal(state):
            details[task_uuid] = JobDetail(task_uuid, state, already_processed=True)
        else:
            candidates.append(task_uuid)

    if candidates and prober is None:
        raise ValueError("pending jobs need a prober")

    probed = await asyncio.gather(*(_probe_one(prober, t) for t in candidates))

    updated: Dict[str, str] = {}
    changed = False
    for detail in probed:
        details[detail.task_uuid] = detail
    for task_uuid, state in current.items():
        new_state = advance(state, details[task_uuid].state)
        details[task_uuid].state = new_state
        updated[task_uuid] = encode(new_state)
        if updated[task_uuid] != clips[task_uuid]:
            changed = True

    logger.info(
        "Reconciled %d jobs (%d probed, changed=%s)", len(clips), len(candidates), changed
    )
    return ReconcileResult(clips=updated, changed=changed, details=[details[t] for t in clips])


def has_pending(clips: Dict[str, str]) -> bool:
    return any(not is_terminal(decode(value)) for value in clips.values())


def merge_onto(latest: Dict[str, str], observed: Dict[str, JobState]) -> Dict[str, str]:
    """
    Re-apply terminal observations onto a map that changed underneath us.
    Entries already terminal in `latest` win; new keys in `latest` are kept.
    """
    merged = dict(latest)
    for task_uuid, state in observed.items():
        if task_uuid in merged:
            merged[task_uuid] = encode(advance(decode(merged[task_uuid]), state))
    return merged
