# app/pools/callback.py
from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from typing import Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from app.pools.errors import CallbackVerificationError, StateConflictError, TransitionConflict, ValidationError
from app.pools.models import GrantState, PoolGrantRecord
from app.pools.store import GrantStore

logger = logging.getLogger("kanzu.pools")


def interaction_hash(*, client_nonce: str, finish_nonce: str, interact_ref: str, grant_endpoint: str) -> str:
    """
    GNAP finish-redirect hash: sha-256 over the two nonces, the interaction
    reference and the grant endpoint, newline separated, base64 encoded.
    """
    base = f"{client_nonce}\n{finish_nonce}\n{interact_ref}\n{grant_endpoint}"
    return base64.b64encode(hashlib.sha256(base.encode("utf-8")).digest()).decode("ascii")


def _hash_matches(expected_b64: str, presented: str) -> bool:
    presented = (presented or "").strip()
    # some servers send base64url without padding
    candidates = (expected_b64, expected_b64.replace("+", "-").replace("/", "_").rstrip("="))
    return any(hmac.compare_digest(c, presented) for c in candidates)


def operator_redirect_url(base_url: str, pool_id: str) -> str:
    """
    Operator page the funder returns to. Only pool_id is caller-influenced,
    and it travels as an encoded query value.
    """
    parsed = urlparse(base_url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query = [(k, v) for k, v in query if k not in ("auth_complete", "pool_id")]
    query += [("auth_complete", "1"), ("pool_id", pool_id)]
    return urlunparse(parsed._replace(query=urlencode(query)))


class CallbackCorrelator:
    """Binds the out-of-band interaction completion to the pool's pending grant."""

    def __init__(self, store: GrantStore, *, require_hash: bool = True):
        self.store = store
        self.require_hash = require_hash

    def complete_interaction(
        self,
        pool_id: str,
        interact_ref: str,
        *,
        interact_hash: Optional[str] = None,
    ) -> PoolGrantRecord:
        pool_id = (pool_id or "").strip()
        interact_ref = (interact_ref or "").strip()
        if not pool_id or not interact_ref:
            raise ValidationError("pool_id and interact_ref are required")

        current = self.store.get(pool_id)
        if current.state != GrantState.PENDING_AUTH:
            raise self._not_pending(current)
        self._verify(current, interact_ref, interact_hash)

        def _authorize(r: PoolGrantRecord) -> PoolGrantRecord:
            r.interact_ref = interact_ref
            r.state = GrantState.AUTHORIZED
            return r

        try:
            updated = self.store.compare_and_transition(pool_id, GrantState.PENDING_AUTH, _authorize)
        except TransitionConflict as exc:
            raise self._not_pending(exc.current) from exc

        logger.info("grant callback authorized pool_id=%s", pool_id)
        return updated

    @staticmethod
    def _not_pending(current: Optional[PoolGrantRecord]) -> StateConflictError:
        state = current.state.value if current is not None else None
        pool_id = current.pool_id if current is not None else None
        logger.warning("grant callback rejected pool_id=%s state=%s", pool_id, state)
        return StateConflictError(
            f"Pool {pool_id} is {state}, not awaiting authorization",
            code="POOL_NOT_PENDING",
        )

    def _verify(self, record: PoolGrantRecord, interact_ref: str, presented: Optional[str]) -> None:
        if not record.client_nonce or not record.finish_nonce or not record.auth_server:
            # grant was issued without a finish clause; nothing to check against
            return
        if not presented:
            if self.require_hash:
                raise CallbackVerificationError("Missing interaction hash")
            return
        expected = interaction_hash(
            client_nonce=record.client_nonce,
            finish_nonce=record.finish_nonce,
            interact_ref=interact_ref,
            grant_endpoint=record.auth_server,
        )
        if not _hash_matches(expected, presented):
            logger.warning("grant callback hash mismatch pool_id=%s", record.pool_id)
            raise CallbackVerificationError("Interaction hash does not match")
