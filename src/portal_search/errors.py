"""Exception hierarchy shared by the pipeline, the search client, and ingestion."""

from __future__ import annotations


class PortalSearchError(Exception):
    """Base class for all errors raised by portal_search."""


class UpstreamError(PortalSearchError):
    """A remote dependency (AI provider or search backend) failed."""


class TransientUpstreamError(UpstreamError):
    """Network failure, 5xx, or rate limit. Eligible for retry."""


class PermanentUpstreamError(UpstreamError):
    """A 4xx-style rejection that retrying will not fix."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StageTimeoutError(PortalSearchError, TimeoutError):
    """A pipeline stage exceeded its time budget."""

    def __init__(self, stage: str, timeout_s: float) -> None:
        super().__init__(f"{stage} exceeded {timeout_s * 1000:.0f}ms budget")
        self.stage = stage
        self.timeout_s = timeout_s


class CircuitOpenError(PortalSearchError):
    """The circuit breaker rejected the call without invoking it."""

    def __init__(self, name: str, retry_in_s: float) -> None:
        super().__init__(f"circuit '{name}' is OPEN; next attempt in {retry_in_s:.1f}s")
        self.name = name
        self.retry_in_s = retry_in_s


class IngestionInProgressError(PortalSearchError):
    """Another ingestion run for the same source has not finished yet."""

    def __init__(self, source: str) -> None:
        super().__init__(f"ingestion for '{source}' is already running")
        self.source = source
