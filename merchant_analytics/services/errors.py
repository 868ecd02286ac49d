"""
Analytics Exceptions
====================

Custom exception types for the merchant analytics pipeline.

WHY THIS FILE EXISTS
--------------------
Each failure mode is handled differently by the orchestrator:
- A run already in flight is a user-facing conflict (HTTP 409)
- A processor we don't integrate with is skipped, not retried
- Missing processor credentials fail that merchant, not the run
- Network/5xx failures are retried with backoff
- Fan-out failures abort the run and mark the lock failed

RELATED FILES
-------------
- merchant_analytics/services/flow_orchestrator.py: Raises and absorbs these exceptions
- merchant_analytics/services/processors/: Calculators raise the processor errors
- merchant_analytics/routers/analytics.py: Maps RunConflictError to 409
"""

from typing import Optional


class AnalyticsError(Exception):
    """Base exception for all merchant analytics errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class RunConflictError(AnalyticsError):
    """
    Raised when a run is triggered for a user that already holds a lock.

    ATTRIBUTES:
        user_id: User whose lock is held
        status: Current lock status ("queued", "processing", ...) or None
                if the lock expired between the acquire and the read
    """

    def __init__(self, user_id: str, status: Optional[str]):
        self.user_id = user_id
        self.status = status
        super().__init__(
            f"An analytics job for this user is already in progress with status: {status or 'unknown'}."
        )


class ProcessorNotFoundError(AnalyticsError):
    """No integration exists for this processor. The merchant is skipped."""

    def __init__(self, processor_name: Optional[str]):
        self.processor_name = processor_name
        super().__init__(f"Processor integration not found for: {processor_name}")


class ProcessorConfigError(AnalyticsError):
    """
    Processor is known but its credentials or base URL are missing.

    Fails the merchant task (so it is visible in the job results) but never
    the run.
    """

    def __init__(self, message: str, processor_name: Optional[str] = None):
        super().__init__(message)
        self.processor_name = processor_name


class UpstreamError(AnalyticsError):
    """Transient failure talking to a processor API. Retried with backoff."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class OrchestrationError(AnalyticsError):
    """Fan-out failed (directory lookup, join record, enqueue)."""


class DownstreamError(AnalyticsError):
    """Salesforce rejected or failed a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
