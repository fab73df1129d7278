# app/pools/repository.py
from __future__ import annotations

from collections.abc import Iterable
from typing import Any, Optional

from psycopg2.extras import RealDictCursor

from db import get_conn
from app.pools.errors import DisbursementInProgressError, NotFoundError, TransitionConflict
from app.pools.models import ContinuationHandle, DisbursementRecord, GrantState, PoolGrantRecord
from app.pools.store import (
    ExpectedState,
    Mutation,
    apply_mutation,
    claim_checkpoint,
    in_doubt_conflict,
    release_for,
    reserve_for,
    stamp_checkpoint,
)

GRANT_COLUMNS = (
    "pool_id",
    "grant_id",
    "state",
    "sender_wallet",
    "receiver_wallet",
    "sender_wallet_id",
    "receiver_wallet_id",
    "auth_server",
    "total_amount",
    "asset_code",
    "asset_scale",
    "disbursed_amount",
    "callback_uri",
    "client_nonce",
    "finish_nonce",
    "interact_redirect",
    "continue_uri",
    "continue_token",
    "interact_ref",
    "access_token",
    "last_error",
    "created_at",
    "updated_at",
)

DISBURSEMENT_COLUMNS = (
    "pool_id",
    "transaction_id",
    "recipient_wallet",
    "recipient_label",
    "amount",
    "request_hash",
    "status",
    "reserved",
    "grant_id",
    "version",
    "incoming_payment_id",
    "quote_id",
    "outgoing_payment_id",
    "last_error",
    "created_at",
    "updated_at",
)


# ==========================================================
# Row mapping
# ==========================================================

def _record_from_row(row: dict[str, Any]) -> PoolGrantRecord:
    data = dict(row)
    continue_uri = data.pop("continue_uri", None)
    continue_token = data.pop("continue_token", None)
    if continue_uri and continue_token:
        data["continuation"] = ContinuationHandle(uri=continue_uri, access_token=continue_token)
    data["state"] = GrantState(data["state"])
    return PoolGrantRecord.model_validate(data)


def _record_params(rec: PoolGrantRecord) -> tuple:
    data = rec.model_dump(exclude={"continuation"})
    data["state"] = rec.state.value
    data["continue_uri"] = rec.continuation.uri if rec.continuation else None
    data["continue_token"] = rec.continuation.access_token if rec.continuation else None
    return tuple(data[c] for c in GRANT_COLUMNS)


def _disbursement_params(rec: DisbursementRecord) -> tuple:
    data = rec.model_dump()
    data["status"] = rec.status.value
    return tuple(data[c] for c in DISBURSEMENT_COLUMNS)


_UPSERT_GRANT_SQL = f"""
    INSERT INTO app.pool_grants ({", ".join(GRANT_COLUMNS)})
    VALUES ({", ".join(["%s"] * len(GRANT_COLUMNS))})
    ON CONFLICT (pool_id) DO UPDATE SET
      {", ".join(f"{c} = EXCLUDED.{c}" for c in GRANT_COLUMNS if c != "pool_id")}
"""

_UPSERT_DISBURSEMENT_SQL = f"""
    INSERT INTO app.pool_disbursements ({", ".join(DISBURSEMENT_COLUMNS)})
    VALUES ({", ".join(["%s"] * len(DISBURSEMENT_COLUMNS))})
    ON CONFLICT (pool_id, transaction_id) DO UPDATE SET
      {", ".join(f"{c} = EXCLUDED.{c}" for c in DISBURSEMENT_COLUMNS if c not in ("pool_id", "transaction_id", "created_at"))}
"""

_INSERT_DISBURSEMENT_SQL = f"""
    INSERT INTO app.pool_disbursements ({", ".join(DISBURSEMENT_COLUMNS)})
    VALUES ({", ".join(["%s"] * len(DISBURSEMENT_COLUMNS))})
    ON CONFLICT (pool_id, transaction_id) DO NOTHING
"""


def _lock_grant(cur, pool_id: str) -> Optional[PoolGrantRecord]:
    cur.execute(
        f"SELECT {', '.join(GRANT_COLUMNS)} FROM app.pool_grants WHERE pool_id = %s FOR UPDATE",
        (pool_id,),
    )
    row = cur.fetchone()
    return _record_from_row(row) if row else None


def _select_disbursement(cur, pool_id: str, transaction_id: str, *, for_update: bool = False) -> Optional[DisbursementRecord]:
    cur.execute(
        f"""
        SELECT {', '.join(DISBURSEMENT_COLUMNS)}
        FROM app.pool_disbursements
        WHERE pool_id = %s AND transaction_id = %s
        {"FOR UPDATE" if for_update else ""}
        """,
        (pool_id, transaction_id),
    )
    row = cur.fetchone()
    return DisbursementRecord.model_validate(dict(row)) if row else None


class PostgresGrantStore:
    """
    GrantStore on Postgres.

    Each operation is one transaction (db.get_conn commits or rolls back), so a
    write either replaces the committed row or leaves it untouched. Row locks
    (SELECT ... FOR UPDATE) serialize writers on one pool only.
    """

    def get(self, pool_id: str) -> PoolGrantRecord:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {', '.join(GRANT_COLUMNS)} FROM app.pool_grants WHERE pool_id = %s",
                    (pool_id,),
                )
                row = cur.fetchone()
        if not row:
            raise NotFoundError(f"No grant for pool {pool_id}")
        return _record_from_row(row)

    def put(self, record: PoolGrantRecord) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_GRANT_SQL, _record_params(record))

    def insert(self, record: PoolGrantRecord, *, replace_states: Iterable[GrantState] = ()) -> PoolGrantRecord:
        replaceable = frozenset(replace_states)
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    INSERT INTO app.pool_grants ({", ".join(GRANT_COLUMNS)})
                    VALUES ({", ".join(["%s"] * len(GRANT_COLUMNS))})
                    ON CONFLICT (pool_id) DO NOTHING
                    """,
                    _record_params(record),
                )
                if cur.rowcount == 1:
                    return record

                existing = _lock_grant(cur, record.pool_id)
                if existing is not None and existing.state not in replaceable:
                    raise TransitionConflict(
                        f"Pool {record.pool_id} already has a {existing.state.value} grant",
                        current=existing,
                        code="POOL_GRANT_EXISTS",
                    )
                cur.execute(
                    """
                    SELECT 1 FROM app.pool_disbursements
                    WHERE pool_id = %s AND status = 'OUTGOING_PENDING'
                    LIMIT 1
                    """,
                    (record.pool_id,),
                )
                if existing is not None and cur.fetchone():
                    raise in_doubt_conflict(existing)
                cur.execute(_UPSERT_GRANT_SQL, _record_params(record))
                return record

    def compare_and_transition(self, pool_id: str, expected: ExpectedState, mutation: Mutation) -> PoolGrantRecord:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                current = _lock_grant(cur, pool_id)
                if current is None:
                    raise NotFoundError(f"No grant for pool {pool_id}")
                updated = apply_mutation(current, expected, mutation)
                cur.execute(_UPSERT_GRANT_SQL, _record_params(updated))
                return updated

    def get_disbursement(self, pool_id: str, transaction_id: str) -> Optional[DisbursementRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                return _select_disbursement(cur, pool_id, transaction_id)

    def put_disbursement(self, record: DisbursementRecord) -> None:
        stamp_checkpoint(record)
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(_UPSERT_DISBURSEMENT_SQL, _disbursement_params(record))

    def list_disbursements(self, pool_id: str) -> list[DisbursementRecord]:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"""
                    SELECT {', '.join(DISBURSEMENT_COLUMNS)}
                    FROM app.pool_disbursements
                    WHERE pool_id = %s
                    ORDER BY created_at
                    """,
                    (pool_id,),
                )
                return [DisbursementRecord.model_validate(dict(r)) for r in cur.fetchall()]

    def reserve_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                current = _lock_grant(cur, disbursement.pool_id)
                if current is None:
                    raise NotFoundError(f"No grant for pool {disbursement.pool_id}")
                stored = _select_disbursement(cur, disbursement.pool_id, disbursement.transaction_id, for_update=True)
                claim_checkpoint(stored, disbursement)
                updated = reserve_for(current, stored, disbursement)
                if updated is not current:
                    cur.execute(_UPSERT_GRANT_SQL, _record_params(updated))

                if stored is None:
                    cur.execute(_INSERT_DISBURSEMENT_SQL, _disbursement_params(disbursement))
                    if cur.rowcount != 1:
                        raise DisbursementInProgressError(
                            f"transaction_id {disbursement.transaction_id} is already being processed"
                        )
                else:
                    cur.execute(_UPSERT_DISBURSEMENT_SQL, _disbursement_params(disbursement))
                return updated

    def release_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord:
        with get_conn() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                current = _lock_grant(cur, disbursement.pool_id)
                if current is None:
                    raise NotFoundError(f"No grant for pool {disbursement.pool_id}")
                stored = _select_disbursement(cur, disbursement.pool_id, disbursement.transaction_id, for_update=True)
                updated = release_for(current, stored, disbursement)
                if updated is not current:
                    cur.execute(_UPSERT_GRANT_SQL, _record_params(updated))
                cur.execute(_UPSERT_DISBURSEMENT_SQL, _disbursement_params(disbursement))
                return updated

    def healthy(self) -> bool:
        try:
            with get_conn() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1;")
                    cur.fetchone()
            return True
        except Exception:
            return False
