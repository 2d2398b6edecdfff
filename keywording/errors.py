"""
Exception taxonomy for the analysis pipeline.

TransientError and MalformedResponseError are retried by the backoff
controller; ValidationError only ever drops a single parsed item.
"""
from typing import Optional


class PipelineError(Exception):
    """Base class for pipeline errors"""


class TransientError(PipelineError):
    """Network or service unavailability (timeouts, 5xx, rate limits)"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitError(TransientError):
    """Service asked us to slow down (HTTP 429 or equivalent)"""

    def __init__(self, message: str, status: Optional[int] = 429):
        super().__init__(message, status=status)


class MalformedResponseError(PipelineError):
    """Service responded but nothing usable could be parsed"""


class ValidationError(PipelineError):
    """A parsed metadata item failed structural checks"""


class AnalysisServiceError(PipelineError):
    """Service rejected the request in a way retrying will not fix"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
