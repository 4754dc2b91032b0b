"""Error taxonomy for the sync engine.

Every error carries a stable ``code`` string. The message router and the
sync layer surface that code to callers instead of the exception itself.
"""


class SyncError(RuntimeError):
    """Base class for all engine errors."""

    code = "SYNC_ERROR"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.code)


class NoAuthError(SyncError):
    code = "NO_AUTH"


class AuthExpiredError(SyncError):
    code = "AUTH_EXPIRED"


class NoQueryIdError(SyncError):
    code = "NO_QUERY_ID"

    def __init__(self, operation: str):
        super().__init__(f"Could not resolve a query ID for {operation}")
        self.operation = operation


class ApiError(SyncError):
    """Non-2xx, non-auth HTTP response."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = status_code
        self.body = body
        super().__init__(f"API_ERROR_{status_code}: {body}")

    @property
    def code(self) -> str:  # type: ignore[override]
        return f"API_ERROR_{self.status_code}"


class RateLimitedError(ApiError):
    def __init__(self, body: str = "", retry_after: int | None = None):
        self.retry_after = retry_after
        super().__init__(429, body)


class NetworkError(SyncError):
    """The request never produced an HTTP response."""

    code = "NETWORK_ERROR"


class QueueAbortedError(SyncError):
    code = "QUEUE_ABORTED"

    def __init__(self, message: str = "Queue aborted"):
        super().__init__(message)


class DbWriteFailure(SyncError):
    code = "DB_WRITE_FAILURE"


class ResponseDecodeError(SyncError):
    code = "DECODE_ERROR"


class MissingTweetIdError(SyncError):
    code = "MISSING_TWEET_ID"


def error_code(exc: BaseException) -> str:
    """Stable error code for any exception raised inside the engine."""
    if isinstance(exc, SyncError):
        return exc.code
    return "UNKNOWN_ERROR"
