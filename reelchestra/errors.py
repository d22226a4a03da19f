"""
Error classes for reelchestra.

Compile-time errors surface synchronously to whoever submitted the treatment:
- ValidationError: Malformed treatment or constraints (nothing persisted)
- PersistenceError: Ledger write failure (nothing persisted)
- PlaceholderResolutionError: A payload needing the manifest id could not be patched

Run-time errors enable retry classification at the worker boundary:
- TransientError: Safe to retry (rate limits, network issues, temporary failures)
- PermanentError: Do not retry (invalid input, rejected content, missing resources)

Processors raise these errors to signal retry behavior. The worker runtime
catches at the boundary, converts them into job outcomes and records them on
the job. They never crash the runtime.

Error handling contract:
- ProcessResult is success-only
- Errors are exceptions, not values
- A conflict clamp is not an error (warnings only)
"""

from typing import Any, Optional


class ReelchestraError(Exception):
    """Base exception for reelchestra."""
    pass


class ValidationError(ReelchestraError):
    """
    Treatment or constraints failed validation.

    Carries every problem found so the intake surface can return a
    structured error instead of the first failure only.
    """

    def __init__(self, message: str, errors: Optional[list[str]] = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the structured validation error shape."""
        return {
            "error": "validation_error",
            "message": str(self),
            "errors": self.errors,
        }


class PayloadValidationError(ValidationError):
    """A job payload does not match its job type's payload variant."""
    pass


class PersistenceError(ReelchestraError):
    """Ledger write failed; partial writes are never left behind."""
    pass


class PlaceholderResolutionError(ReelchestraError):
    """
    A job payload needed the manifest's own id and the post-insert patch failed.

    Never raised to the submitter. The message is recorded as a warning on the
    affected job so a stale reference is visible through the status query.
    """

    def __init__(self, job_id: str, message: str):
        self.job_id = job_id
        super().__init__(f"Job '{job_id}': manifest id could not be bound: {message}")


class InvalidTransitionError(ReelchestraError):
    """A job status change is not allowed by the job state machine."""

    def __init__(self, job_id: str, current: str, target: str):
        self.job_id = job_id
        self.current = current
        self.target = target
        super().__init__(f"Job '{job_id}': cannot transition {current} -> {target}")


class ClaimLostError(ReelchestraError):
    """
    A worker reported an outcome for a claim it no longer holds.

    Happens when the liveness sweep returned a hung job to the retry path
    before its original worker finished.
    """
    pass


class TransientError(ReelchestraError):
    """
    Transient error - safe to retry.

    Examples:
    - Rate limit exceeded
    - Network timeout
    - Provider temporarily unavailable
    - Connection reset

    The worker runtime retries jobs that raise TransientError according to
    the job's retry policy.
    """
    pass


class PermanentError(ReelchestraError):
    """
    Permanent error - do not retry.

    Examples:
    - Invalid input/parameters
    - Content rejected by the provider
    - Upstream output missing
    - Authorization failed (403)

    The worker runtime fails the job immediately, which blocks every job
    downstream of it.
    """
    pass


class TransientProviderError(TransientError):
    """A generation provider call failed in a way that may succeed on retry."""

    def __init__(self, provider: str, message: str, code: Optional[str] = None):
        self.provider = provider
        self.code = code
        super().__init__(f"{provider}: {message}")


class TerminalProviderError(PermanentError):
    """A generation provider call failed and retrying will not help."""

    def __init__(self, provider: str, message: str, code: Optional[str] = None):
        self.provider = provider
        self.code = code
        super().__init__(f"{provider}: {message}")
