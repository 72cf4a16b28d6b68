# job_state.py
# ------------------------------------------------------------------------------------
#  Job state for one provider task.
#  Stored form (JobStatusMap values):  "<absolute url>" | "pending" | "failed"
#  In-memory form:                      Pending() | Completed(url) | Failed(reason)
# ------------------------------------------------------------------------------------

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Union

logger = logging.getLogger(__name__)

PENDING = "pending"
FAILED = "failed"

_URL_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9+.\-]*://[^\s/][^\r\n]*")


@dataclass(frozen=True)
class Pending:
    kind: str = "pending"


@dataclass(frozen=True)
class Completed:
    url: str
    kind: str = "completed"


@dataclass(frozen=True)
class Failed:
    reason: Optional[str] = None
    kind: str = "failed"


JobState = Union[Pending, Completed, Failed]


def is_url(value: str) -> bool:
    return isinstance(value, str) and bool(_URL_RE.fullmatch(value))


def decode(value: str) -> JobState:
    """Read a stored map value. Unknown values are treated as still pending."""
    if value == FAILED:
        return Failed()
    if is_url(value):
        return Completed(value)
    if value != PENDING:
        logger.warning("Unrecognized job status value %r, treating as pending", value)
    return Pending()


def encode(state: JobState) -> str:
    if isinstance(state, Completed):
        return state.url
    if isinstance(state, Failed):
        return FAILED
    return PENDING


def is_terminal(state: JobState) -> bool:
    return isinstance(state, (Completed, Failed))


def advance(current: JobState, observed: JobState) -> JobState:
    """Apply an observation to a job. Terminal states never move again."""
    if is_terminal(current):
        return current
    return observed


def decode_map(clips: Optional[Dict[str, str]]) -> Dict[str, JobState]:
    return {job_id: decode(value) for job_id, value in (clips or {}).items()}


def encode_map(states: Dict[str, JobState]) -> Dict[str, str]:
    return {job_id: encode(state) for job_id, state in states.items()}
