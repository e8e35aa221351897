class PipelineError(Exception):
    """Base error for item-level pipeline failures."""


class TransientError(PipelineError):
    """Raised for network errors, timeouts, 5xx and rate limiting; retried with backoff."""


class PermanentResourceError(PipelineError):
    """Raised when the upstream resource no longer exists (404/410); never retried."""


class MalformedPayloadError(PipelineError):
    """Raised when a payload cannot be parsed for its platform and event type."""


class RefreshRejected(PipelineError):
    """Raised by a platform token endpoint that refused the refresh token (invalid_grant)."""


class AuthError(PipelineError):
    """Base error for account credential failures."""

    def __init__(self, message: str, *, account_id: str | None = None) -> None:
        super().__init__(message)
        self.account_id = account_id


class AuthExpired(AuthError):
    """Raised when an account needs user re-authorization; sync for it halts."""


class TransientAuthError(AuthError):
    """Raised when a token refresh failed for a retryable reason."""
