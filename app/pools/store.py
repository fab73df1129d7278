# app/pools/store.py
from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from typing import Optional, Protocol, Union

from app.pools.errors import DisbursementInProgressError, ExhaustedGrantError, NotFoundError, TransitionConflict
from app.pools.models import DisbursementRecord, DisbursementStatus, GrantState, PoolGrantRecord, utcnow
from app.pools.state_machine import (
    assert_authorized_invariant,
    assert_finalized_invariant,
    assert_transition,
)

ExpectedState = Union[GrantState, Iterable[GrantState]]
Mutation = Callable[[PoolGrantRecord], PoolGrantRecord]


class GrantStore(Protocol):
    """
    Durable per-pool grant state.

    Writers on the same pool_id are serialized; different pools never contend.
    Readers only ever see the last committed record.
    """

    def get(self, pool_id: str) -> PoolGrantRecord: ...

    def put(self, record: PoolGrantRecord) -> None: ...

    def insert(self, record: PoolGrantRecord, *, replace_states: Iterable[GrantState] = ()) -> PoolGrantRecord: ...

    def compare_and_transition(
        self, pool_id: str, expected: ExpectedState, mutation: Mutation
    ) -> PoolGrantRecord: ...

    def get_disbursement(self, pool_id: str, transaction_id: str) -> Optional[DisbursementRecord]: ...

    def put_disbursement(self, record: DisbursementRecord) -> None: ...

    def list_disbursements(self, pool_id: str) -> list[DisbursementRecord]: ...

    def reserve_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord:
        """
        Counts `amount` against the pool grant and stores the checkpoint, in one
        atomic step. Raises DisbursementInProgressError when the stored
        checkpoint is not the version the caller loaded.
        """
        ...

    def release_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord: ...

    def healthy(self) -> bool: ...


def _expected_set(expected: ExpectedState) -> frozenset[GrantState]:
    if isinstance(expected, GrantState):
        return frozenset({expected})
    return frozenset(expected)


def apply_mutation(current: PoolGrantRecord, expected: ExpectedState, mutation: Mutation) -> PoolGrantRecord:
    """
    Shared compare-and-transition rules for every store backend.
    """
    allowed = _expected_set(expected)
    if current.state not in allowed:
        raise TransitionConflict(
            f"Pool {current.pool_id} is {current.state.value}, expected "
            + "|".join(sorted(s.value for s in allowed)),
            current=current,
        )

    updated = mutation(current.model_copy(deep=True))
    if updated.pool_id != current.pool_id:
        raise ValueError("mutation must not change pool_id")

    assert_transition(current.state, updated.state)
    assert_authorized_invariant(updated.state, updated.interact_ref)
    assert_finalized_invariant(updated.state, updated.access_token)

    # write-once fields
    if current.interact_ref is not None and updated.interact_ref != current.interact_ref:
        raise ValueError("Invariant violation: interact_ref is write-once")
    if current.access_token is not None and updated.access_token != current.access_token:
        raise ValueError("Invariant violation: access_token is write-once")

    updated.updated_at = utcnow()
    return updated


def apply_reservation(current: PoolGrantRecord, amount: int) -> PoolGrantRecord:
    if current.state != GrantState.FINALIZED:
        raise TransitionConflict(
            f"Pool {current.pool_id} is {current.state.value}, expected FINALIZED",
            current=current,
            code="POOL_NOT_FINALIZED",
        )
    if current.disbursed_amount + amount > current.total_amount:
        raise ExhaustedGrantError(
            f"Pool {current.pool_id} has {current.remaining_amount} remaining, cannot disburse {amount}"
        )
    updated = current.model_copy(deep=True)
    updated.disbursed_amount += amount
    updated.updated_at = utcnow()
    return updated


def apply_release(current: PoolGrantRecord, amount: int) -> PoolGrantRecord:
    updated = current.model_copy(deep=True)
    updated.disbursed_amount = max(0, current.disbursed_amount - amount)
    updated.updated_at = utcnow()
    return updated


def claim_checkpoint(stored: Optional[DisbursementRecord], disbursement: DisbursementRecord) -> None:
    """
    Only the caller that loaded the stored version of a checkpoint (or finds
    none stored) may reserve for it; everyone else is racing that caller.
    """
    if stored is not None and stored.version != disbursement.version:
        raise DisbursementInProgressError(
            f"transaction_id {disbursement.transaction_id} is already being processed"
        )


def reserve_for(
    current: PoolGrantRecord, stored: Optional[DisbursementRecord], disbursement: DisbursementRecord
) -> PoolGrantRecord:
    held = stored is not None and stored.reserved and stored.grant_id == current.grant_id
    updated = current if held else apply_reservation(current, disbursement.amount)
    disbursement.reserved = True
    disbursement.grant_id = current.grant_id
    stamp_checkpoint(disbursement)
    return updated


def release_for(
    current: PoolGrantRecord, stored: Optional[DisbursementRecord], disbursement: DisbursementRecord
) -> PoolGrantRecord:
    # a reservation only ever returns to the grant it was taken from
    holder = stored if stored is not None else disbursement
    updated = current
    if holder.reserved and holder.grant_id == current.grant_id:
        updated = apply_release(current, disbursement.amount)
    disbursement.reserved = False
    stamp_checkpoint(disbursement)
    return updated


def in_doubt_conflict(existing: PoolGrantRecord) -> TransitionConflict:
    return TransitionConflict(
        f"Pool {existing.pool_id} has disbursements with an unknown outcome; resolve them before a new grant",
        current=existing,
        code="DISBURSEMENTS_IN_DOUBT",
    )


def stamp_checkpoint(disbursement: DisbursementRecord) -> None:
    disbursement.version += 1
    disbursement.updated_at = utcnow()


class InMemoryGrantStore:
    """
    Process-local GrantStore for tests and local dev.

    Records are copied on the way in and out so callers never share state with
    the store; one lock per pool_id serializes writers.
    """

    def __init__(self) -> None:
        self._records: dict[str, PoolGrantRecord] = {}
        self._disbursements: dict[tuple[str, str], DisbursementRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock(self, pool_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(pool_id)
            if lock is None:
                lock = self._locks[pool_id] = threading.Lock()
            return lock

    def get(self, pool_id: str) -> PoolGrantRecord:
        rec = self._records.get(pool_id)
        if rec is None:
            raise NotFoundError(f"No grant for pool {pool_id}")
        return rec.model_copy(deep=True)

    def put(self, record: PoolGrantRecord) -> None:
        with self._lock(record.pool_id):
            self._records[record.pool_id] = record.model_copy(deep=True)

    def insert(self, record: PoolGrantRecord, *, replace_states: Iterable[GrantState] = ()) -> PoolGrantRecord:
        replaceable = frozenset(replace_states)
        with self._lock(record.pool_id):
            existing = self._records.get(record.pool_id)
            if existing is not None:
                if existing.state not in replaceable:
                    raise TransitionConflict(
                        f"Pool {record.pool_id} already has a {existing.state.value} grant",
                        current=existing.model_copy(deep=True),
                        code="POOL_GRANT_EXISTS",
                    )
                if any(
                    d.status == DisbursementStatus.OUTGOING_PENDING
                    for (pid, _), d in list(self._disbursements.items())
                    if pid == record.pool_id
                ):
                    raise in_doubt_conflict(existing.model_copy(deep=True))
            self._records[record.pool_id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def compare_and_transition(self, pool_id: str, expected: ExpectedState, mutation: Mutation) -> PoolGrantRecord:
        with self._lock(pool_id):
            current = self._records.get(pool_id)
            if current is None:
                raise NotFoundError(f"No grant for pool {pool_id}")
            updated = apply_mutation(current, expected, mutation)
            self._records[pool_id] = updated
            return updated.model_copy(deep=True)

    def get_disbursement(self, pool_id: str, transaction_id: str) -> Optional[DisbursementRecord]:
        rec = self._disbursements.get((pool_id, transaction_id))
        return rec.model_copy(deep=True) if rec is not None else None

    def put_disbursement(self, record: DisbursementRecord) -> None:
        with self._lock(record.pool_id):
            stamp_checkpoint(record)
            self._disbursements[(record.pool_id, record.transaction_id)] = record.model_copy(deep=True)

    def list_disbursements(self, pool_id: str) -> list[DisbursementRecord]:
        rows = [r.model_copy(deep=True) for (pid, _), r in list(self._disbursements.items()) if pid == pool_id]
        return sorted(rows, key=lambda r: r.created_at)

    def reserve_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord:
        key = (disbursement.pool_id, disbursement.transaction_id)
        with self._lock(disbursement.pool_id):
            current = self._records.get(disbursement.pool_id)
            if current is None:
                raise NotFoundError(f"No grant for pool {disbursement.pool_id}")
            stored = self._disbursements.get(key)
            claim_checkpoint(stored, disbursement)
            updated = reserve_for(current, stored, disbursement)
            self._records[current.pool_id] = updated
            self._disbursements[key] = disbursement.model_copy(deep=True)
            return updated.model_copy(deep=True)

    def release_spend(self, disbursement: DisbursementRecord) -> PoolGrantRecord:
        key = (disbursement.pool_id, disbursement.transaction_id)
        with self._lock(disbursement.pool_id):
            current = self._records.get(disbursement.pool_id)
            if current is None:
                raise NotFoundError(f"No grant for pool {disbursement.pool_id}")
            updated = release_for(current, self._disbursements.get(key), disbursement)
            self._records[current.pool_id] = updated
            self._disbursements[key] = disbursement.model_copy(deep=True)
            return updated.model_copy(deep=True)

    def healthy(self) -> bool:
        return True
