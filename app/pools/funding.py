# app/pools/funding.py
from __future__ import annotations

import logging
import secrets
from datetime import timedelta
from typing import Optional
from urllib.parse import urlencode

from app.pools.errors import PoolGrantError, StateConflictError, TransitionConflict, UpstreamAuthorizationError, ValidationError
from app.pools.models import (
    ContinuationHandle,
    GrantState,
    PoolGrantRecord,
    PoolGrantRequest,
    PoolGrantStarted,
    is_absolute_uri,
    utcnow,
)
from app.pools.store import GrantStore
from app.providers.base import AuthorizationClient
from services.redaction import fingerprint

logger = logging.getLogger("kanzu.pools")

# States a new grant request may replace; anything else is in flight or usable.
REPLACEABLE_STATES = (GrantState.EXPIRED, GrantState.FAILED)


def default_callback_uri(service_url: str, pool_id: str) -> Optional[str]:
    base = (service_url or "").strip().rstrip("/")
    if not base:
        return None
    return f"{base}/v1/grant-callback?{urlencode({'pool_id': pool_id})}"


def outgoing_payment_access(wallet_id: str, *, amount: int, asset_code: str, asset_scale: int) -> list[dict]:
    return [
        {
            "type": "outgoing-payment",
            "actions": ["read", "create", "list"],
            "identifier": wallet_id,
            "limits": {
                "debitAmount": {
                    "value": str(int(amount)),
                    "assetCode": asset_code,
                    "assetScale": int(asset_scale),
                }
            },
        }
    ]


class PoolFundingOrchestrator:
    """
    Takes a pool from "no grant" to PENDING_AUTH.

    The REQUESTED record is written before talking to the authorization
    server so a concurrent request for the same pool is rejected instead of
    racing a second interactive grant.
    """

    def __init__(
        self,
        store: GrantStore,
        client: AuthorizationClient,
        *,
        service_url: str = "",
        request_lease_seconds: int = 300,
    ):
        self.store = store
        self.client = client
        self.service_url = service_url
        self.request_lease_seconds = request_lease_seconds

    def request_pool_grant(self, pool_id: str, body: PoolGrantRequest) -> PoolGrantStarted:
        pool_id = (pool_id or "").strip()
        if not pool_id:
            raise ValidationError("pool_id is required")
        if body.callback_uri is not None and not is_absolute_uri(body.callback_uri):
            raise ValidationError("callback_uri must be an absolute http(s) URI")

        record = PoolGrantRecord(
            pool_id=pool_id,
            state=GrantState.REQUESTED,
            sender_wallet=body.sender_wallet_address.strip(),
            receiver_wallet=body.receiver_wallet_address.strip(),
            total_amount=int(body.amount),
            asset_code=body.asset_code,
            asset_scale=body.asset_scale,
            callback_uri=body.callback_uri or default_callback_uri(self.service_url, pool_id),
        )

        try:
            self._claim(record)
        except TransitionConflict as exc:
            existing: PoolGrantRecord = exc.current
            if exc.code == "DISBURSEMENTS_IN_DOUBT":
                raise StateConflictError(exc.message, code=exc.code) from exc
            if self._is_replay(existing, record):
                logger.info("pool grant replay pool_id=%s state=%s", pool_id, existing.state.value)
                return self._started(existing)
            raise StateConflictError(
                f"Pool {pool_id} already has a {existing.state.value} grant",
                code="POOL_GRANT_EXISTS",
            ) from exc

        logger.info(
            "pool grant requested pool_id=%s amount=%s sender=%s",
            pool_id,
            record.total_amount,
            record.sender_wallet,
        )

        try:
            return self._issue(record)
        except Exception as exc:
            self._fail(pool_id, exc)
            raise

    # ---------------------------
    # internals
    # ---------------------------

    def _claim(self, record: PoolGrantRecord) -> None:
        try:
            self.store.insert(record, replace_states=REPLACEABLE_STATES)
            return
        except TransitionConflict as exc:
            existing: PoolGrantRecord = exc.current
            if exc.code != "POOL_GRANT_EXISTS" or not self._abandoned_request(existing):
                raise

        # The earlier request died between writing REQUESTED and reaching PENDING_AUTH.
        logger.warning("stale pool grant request pool_id=%s since=%s", record.pool_id, existing.updated_at.isoformat())
        self._fail(record.pool_id, StateConflictError("request never reached the authorization server", code="STALE_REQUEST"))
        self.store.insert(record, replace_states=REPLACEABLE_STATES)

    def _abandoned_request(self, existing: PoolGrantRecord) -> bool:
        cutoff = utcnow() - timedelta(seconds=self.request_lease_seconds)
        return existing.state == GrantState.REQUESTED and existing.updated_at <= cutoff

    def _issue(self, record: PoolGrantRecord) -> PoolGrantStarted:
        sender = self.client.get_wallet_address(record.sender_wallet)
        receiver = self.client.get_wallet_address(record.receiver_wallet)

        if record.asset_code is not None and record.asset_code.upper() != sender.asset_code.upper():
            raise ValidationError(
                f"asset_code {record.asset_code} does not match sender wallet asset {sender.asset_code}"
            )
        if record.asset_scale is not None and int(record.asset_scale) != int(sender.asset_scale):
            raise ValidationError(
                f"asset_scale {record.asset_scale} does not match sender wallet scale {sender.asset_scale}"
            )

        interact: dict = {"start": ["redirect"]}
        client_nonce = None
        if record.callback_uri:
            client_nonce = secrets.token_urlsafe(24)
            interact["finish"] = {"method": "redirect", "uri": record.callback_uri, "nonce": client_nonce}

        grant = self.client.request_grant(
            sender.auth_server,
            access=outgoing_payment_access(
                sender.id,
                amount=record.total_amount,
                asset_code=sender.asset_code,
                asset_scale=sender.asset_scale,
            ),
            interact=interact,
        )
        if not grant.is_pending or grant.continuation is None:
            raise UpstreamAuthorizationError(
                "expected a pending interactive grant for the pool",
                code="UNEXPECTED_GRANT_RESPONSE",
                retryable=False,
            )

        def _to_pending(r: PoolGrantRecord) -> PoolGrantRecord:
            r.state = GrantState.PENDING_AUTH
            r.sender_wallet_id = sender.id
            r.receiver_wallet_id = receiver.id
            r.auth_server = sender.auth_server
            r.asset_code = sender.asset_code
            r.asset_scale = sender.asset_scale
            r.client_nonce = client_nonce
            r.finish_nonce = grant.interact_finish
            r.interact_redirect = grant.interact_redirect
            r.continuation = ContinuationHandle(uri=grant.continuation.uri, access_token=grant.continuation.access_token)
            return r

        updated = self.store.compare_and_transition(record.pool_id, GrantState.REQUESTED, _to_pending)
        logger.info(
            "pool grant pending pool_id=%s continuation=%s",
            updated.pool_id,
            fingerprint(grant.continuation.access_token),
        )
        return self._started(updated)

    def _fail(self, pool_id: str, exc: Exception) -> None:
        code = exc.code if isinstance(exc, PoolGrantError) else type(exc).__name__

        def _to_failed(r: PoolGrantRecord) -> PoolGrantRecord:
            r.state = GrantState.FAILED
            r.last_error = code
            return r

        try:
            self.store.compare_and_transition(pool_id, GrantState.REQUESTED, _to_failed)
        except TransitionConflict as conflict:
            # already past REQUESTED; that state stands
            logger.info("pool grant not marked failed pool_id=%s state=%s", pool_id, conflict.current.state.value)
        logger.warning("pool grant failed pool_id=%s error=%s", pool_id, code)

    @staticmethod
    def _is_replay(existing: PoolGrantRecord, requested: PoolGrantRecord) -> bool:
        if existing.state != GrantState.PENDING_AUTH or existing.interact_redirect is None:
            return False
        if requested.asset_code is not None and requested.asset_code.upper() != (existing.asset_code or "").upper():
            return False
        if requested.asset_scale is not None and requested.asset_scale != existing.asset_scale:
            return False
        return (
            existing.sender_wallet == requested.sender_wallet
            and existing.receiver_wallet == requested.receiver_wallet
            and existing.total_amount == requested.total_amount
            and existing.callback_uri == requested.callback_uri
        )

    @staticmethod
    def _started(record: PoolGrantRecord) -> PoolGrantStarted:
        return PoolGrantStarted(
            pool_id=record.pool_id,
            state=record.state,
            redirect_uri=record.interact_redirect or "",
            continuation_handle=fingerprint(record.continuation.uri if record.continuation else record.pool_id),
        )
