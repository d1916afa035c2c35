"""Exception types shared across the sync pipeline."""


class HDBInsightsError(Exception):
    """Base class for application errors."""


class UpstreamError(HDBInsightsError):
    """An external API call failed.

    ``transient`` is True for timeouts, connection errors and 5xx responses,
    which are safe to retry on the next scheduled run.
    """

    def __init__(self, message: str, *, status_code: int | None = None, transient: bool) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient


class RateLimitedError(UpstreamError):
    """The upstream answered 429 Too Many Requests."""

    def __init__(self, message: str = "rate limited") -> None:
        super().__init__(message, status_code=429, transient=True)


class EnrichmentAuthError(HDBInsightsError):
    """OneMap token acquisition failed; enrichment cannot proceed."""


class SyncAlreadyRunningError(HDBInsightsError):
    """Another invocation holds the running claim for this sync kind."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"sync '{kind}' is already running")
        self.kind = kind


class SyncFailedError(HDBInsightsError):
    """A sync run ended in the failed state."""


def primary_error(group: ExceptionGroup[Exception]) -> Exception:
    """Pick the error a caller should act on from a failed task group.

    Auth failures win over rate limits, which win over anything else.
    """
    for kind in (EnrichmentAuthError, RateLimitedError):
        for exc in group.exceptions:
            if isinstance(exc, kind):
                return exc
    return group.exceptions[0]
