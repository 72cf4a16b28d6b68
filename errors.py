# errors.py
# Request-level errors carry the HTTP status the API answers with.


class PipelineError(Exception):
    status_code = 500


class InvalidRequestError(PipelineError):
    """Missing or unusable input; raised before any provider call."""
    status_code = 400


class ProjectNotFoundError(PipelineError):
    status_code = 404


class StoreError(PipelineError):
    """Record store could not be read or written."""
    status_code = 503


class StaleWriteError(StoreError):
    """The stored clips changed since they were read (compare-and-swap miss)."""
    status_code = 409


class RunwareError(PipelineError):
    status_code = 502


class SubmissionError(RunwareError):
    """One unit could not be submitted; no task handle was obtained."""


class ProbeError(RunwareError):
    """A status lookup failed or returned something we cannot interpret.

    Transient: the job keeps its current state and is probed again later.
    """
