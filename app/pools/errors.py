# app/pools/errors.py
from __future__ import annotations

from typing import Any, Optional


class PoolGrantError(Exception):
    """
    Base for every error the pool/disbursement core reports to callers.

    `code` is the stable discriminator clients switch on; `status_code` is the
    HTTP status the API surface renders it with.
    """

    code = "POOL_GRANT_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, code: str | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable

    def to_detail(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "retryable": self.retryable}


class ValidationError(PoolGrantError):
    code = "VALIDATION_ERROR"
    status_code = 422


class NotFoundError(PoolGrantError):
    code = "POOL_NOT_FOUND"
    status_code = 404


class StateConflictError(PoolGrantError):
    code = "STATE_CONFLICT"
    status_code = 409


class TransitionConflict(StateConflictError):
    """Raised by a GrantStore when a compare-and-transition finds another state."""

    def __init__(self, message: str, *, current: Any = None, code: str | None = None):
        super().__init__(message, code=code)
        self.current = current


class PoolNotAuthorizedError(StateConflictError):
    # The funder has not completed the interactive step yet; retry later.
    code = "POOL_NOT_AUTHORIZED"
    retryable = True


class ExhaustedGrantError(StateConflictError):
    code = "POOL_EXHAUSTED"


class CallbackVerificationError(PoolGrantError):
    code = "CALLBACK_VERIFICATION_FAILED"
    status_code = 400


class UpstreamAuthorizationError(PoolGrantError):
    code = "UPSTREAM_AUTHORIZATION_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, code=code, retryable=retryable)
        self.http_status = http_status


class AuthorizationStaleError(UpstreamAuthorizationError):
    # Continuation handle rejected: only a brand new pool grant helps.
    code = "AUTHORIZATION_STALE"
    status_code = 409
    retryable = False


class UnexpectedInteractionRequired(UpstreamAuthorizationError):
    code = "UNEXPECTED_INTERACTION_REQUIRED"
    retryable = False


class UpstreamResourceError(PoolGrantError):
    code = "UPSTREAM_RESOURCE_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message, code=code, retryable=retryable)
        self.http_status = http_status

    @property
    def outcome_unknown(self) -> bool:
        """True when the server may have acted on the request (no/late response)."""
        return self.http_status is None or self.http_status == 408 or self.http_status >= 500


class DisbursementInDoubtError(UpstreamResourceError):
    code = "DISBURSEMENT_IN_DOUBT"
    retryable = True


class DisbursementInProgressError(StateConflictError):
    # Another request holds this transaction_id; retry after it settles.
    code = "DISBURSEMENT_IN_PROGRESS"
    retryable = True
