"""Error taxonomy for ingestion, extraction and graph persistence.

Connector and retry errors bubble up to the ingestor, which turns them into a
job status. Extraction and integrity errors are contained per event group by
the context processor.
"""
from typing import Optional


class IngestionError(Exception):
    """Base class for every error raised by the pipeline"""


class ConnectorError(IngestionError):
    """Failure talking to an external platform"""

    def __init__(
        self,
        platform: str,
        code: str,
        message: str,
        retryable: bool = False,
        retry_after: Optional[float] = None,
    ):
        super().__init__(f"{platform} {code}: {message}")
        self.platform = platform
        self.code = code
        self.message = message
        self.retryable = retryable
        self.retry_after = retry_after


class AuthError(ConnectorError):
    """Credential missing, invalid or expired. Never retried automatically."""

    def __init__(self, platform: str, message: str, code: str = "auth_error"):
        super().__init__(platform, code, message, retryable=False)


class FetchError(ConnectorError):
    """Non-retryable fetch failure (bad request, missing permission, ...)"""

    def __init__(self, platform: str, message: str, code: str = "fetch_error"):
        super().__init__(platform, code, message, retryable=False)


class RateLimitExceeded(ConnectorError):
    """Platform rate limit hit; retry_after carries the platform hint in seconds"""

    def __init__(self, platform: str, message: str, retry_after: Optional[float] = None):
        super().__init__(platform, "rate_limit", message, retryable=True, retry_after=retry_after)


class TransientFetchError(ConnectorError):
    """Network failure or 5xx response"""

    def __init__(self, platform: str, message: str, retry_after: Optional[float] = None):
        super().__init__(platform, "transient", message, retryable=True, retry_after=retry_after)


class NormalizationError(IngestionError):
    """Malformed platform payload; the event is dropped"""

    def __init__(self, event_id: str, message: str):
        super().__init__(f"cannot normalize event {event_id}: {message}")
        self.event_id = event_id


class ExtractionError(IngestionError):
    """Extraction capability failed or timed out for one event group"""

    def __init__(self, group_key: str, message: str):
        super().__init__(f"extraction failed for group {group_key}: {message}")
        self.group_key = group_key


class IntegrityError(IngestionError):
    """Graph constraint violation (missing endpoint, duplicate key)"""


class LeaseLostError(IngestionError):
    """The worker no longer owns the job lease, or the job was cancelled"""

    def __init__(self, job_id: str, message: str = "lease lost"):
        super().__init__(f"job {job_id}: {message}")
        self.job_id = job_id
