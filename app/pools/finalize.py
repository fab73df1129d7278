# app/pools/finalize.py
from __future__ import annotations

import logging

from app.pools.errors import (
    AuthorizationStaleError,
    PoolNotAuthorizedError,
    StateConflictError,
    TransitionConflict,
    UpstreamAuthorizationError,
)
from app.pools.models import ContinuationHandle, GrantState, PoolGrantRecord
from app.pools.store import GrantStore
from app.providers.base import AuthorizationClient, Continuation
from services.redaction import fingerprint

logger = logging.getLogger("kanzu.pools")


class GrantFinalizer:
    """
    AUTHORIZED -> FINALIZED by continuing the grant with the interaction
    reference. A FINALIZED grant is returned as-is; its token is reused for
    every disbursement and the continuation is never called again.
    """

    def __init__(self, store: GrantStore, client: AuthorizationClient):
        self.store = store
        self.client = client

    def finalize(self, pool_id: str) -> PoolGrantRecord:
        record = self.store.get(pool_id)

        if record.state == GrantState.FINALIZED:
            return record
        if record.state in (GrantState.REQUESTED, GrantState.PENDING_AUTH):
            raise PoolNotAuthorizedError(f"Pool {pool_id} has not been authorized by the funder yet")
        if record.state == GrantState.EXPIRED:
            raise AuthorizationStaleError(f"Pool {pool_id} grant expired; request a new pool grant")
        if record.state != GrantState.AUTHORIZED:
            raise StateConflictError(f"Pool {pool_id} grant is {record.state.value}", code="POOL_GRANT_CLOSED")
        if record.continuation is None or not record.interact_ref:
            # AUTHORIZED always carries both; a record without them is corrupt
            raise StateConflictError(f"Pool {pool_id} has no continuation to finalize", code="POOL_GRANT_CLOSED")

        try:
            grant = self.client.continue_grant(
                Continuation(uri=record.continuation.uri, access_token=record.continuation.access_token),
                interact_ref=record.interact_ref,
            )
        except AuthorizationStaleError as exc:
            finalized = self._finalized_meanwhile(pool_id)
            if finalized is not None:
                return finalized
            self._expire(pool_id, exc)
            raise
        except UpstreamAuthorizationError as exc:
            finalized = self._finalized_meanwhile(pool_id)
            if finalized is not None:
                return finalized
            logger.warning("grant finalize failed pool_id=%s error=%s retryable=%s", pool_id, exc.code, exc.retryable)
            raise

        if not grant.is_finalized:
            raise UpstreamAuthorizationError(
                f"Pool {pool_id} grant continuation did not return an access token",
                code="GRANT_NOT_FINALIZED",
                retryable=True,
            )

        def _to_finalized(r: PoolGrantRecord) -> PoolGrantRecord:
            r.state = GrantState.FINALIZED
            r.access_token = grant.access_token
            if grant.continuation is not None:
                r.continuation = ContinuationHandle(
                    uri=grant.continuation.uri,
                    access_token=grant.continuation.access_token,
                )
            return r

        try:
            updated = self.store.compare_and_transition(pool_id, GrantState.AUTHORIZED, _to_finalized)
        except TransitionConflict as exc:
            if exc.current is not None and exc.current.state == GrantState.FINALIZED:
                return exc.current
            raise

        logger.info("grant finalized pool_id=%s token=%s", pool_id, fingerprint(updated.access_token))
        return updated

    def _finalized_meanwhile(self, pool_id: str) -> PoolGrantRecord | None:
        current = self.store.get(pool_id)
        return current if current.state == GrantState.FINALIZED else None

    def _expire(self, pool_id: str, exc: AuthorizationStaleError) -> None:
        def _to_expired(r: PoolGrantRecord) -> PoolGrantRecord:
            r.state = GrantState.EXPIRED
            r.last_error = exc.code
            return r

        try:
            self.store.compare_and_transition(pool_id, GrantState.AUTHORIZED, _to_expired)
        except TransitionConflict:
            pass
        logger.warning("grant continuation stale pool_id=%s http_status=%s", pool_id, exc.http_status)
