import threading

import pytest

from app.pools.errors import DisbursementInProgressError, ExhaustedGrantError, NotFoundError, TransitionConflict
from app.pools.models import DisbursementRecord, DisbursementStatus, GrantState, PoolGrantRecord
from app.pools.state_machine import InvalidTransition
from app.pools.store import InMemoryGrantStore


def _record(pool_id: str = "P1", state: GrantState = GrantState.REQUESTED, **kw) -> PoolGrantRecord:
    data = {
        "pool_id": pool_id,
        "state": state,
        "sender_wallet": "https://wallet.example/s",
        "receiver_wallet": "https://wallet.example/r",
        "total_amount": 1000,
    }
    data.update(kw)
    return PoolGrantRecord(**data)


def _finalized(store: InMemoryGrantStore, pool_id: str = "P1", total: int = 1000) -> None:
    store.put(
        _record(
            pool_id,
            GrantState.FINALIZED,
            total_amount=total,
            interact_ref="ref-1",
            access_token="tok-1",
        )
    )


def _checkpoint(tx: str, amount: int, pool_id: str = "P1") -> DisbursementRecord:
    return DisbursementRecord(
        pool_id=pool_id,
        transaction_id=tx,
        recipient_wallet="https://wallet.example/learner",
        amount=amount,
        request_hash=f"hash-{tx}",
    )


def test_get_unknown_pool_raises_not_found():
    with pytest.raises(NotFoundError):
        InMemoryGrantStore().get("nope")


def test_store_returns_copies():
    store = InMemoryGrantStore()
    store.put(_record())
    rec = store.get("P1")
    rec.state = GrantState.FAILED
    assert store.get("P1").state == GrantState.REQUESTED


def test_compare_and_transition_applies_mutation():
    store = InMemoryGrantStore()
    store.put(_record())

    def to_pending(r):
        r.state = GrantState.PENDING_AUTH
        r.interact_redirect = "https://auth.example/interact/1"
        return r

    updated = store.compare_and_transition("P1", GrantState.REQUESTED, to_pending)
    assert updated.state == GrantState.PENDING_AUTH
    assert store.get("P1").interact_redirect == "https://auth.example/interact/1"


def test_compare_and_transition_conflict_carries_current():
    store = InMemoryGrantStore()
    store.put(_record(state=GrantState.PENDING_AUTH))

    with pytest.raises(TransitionConflict) as exc:
        store.compare_and_transition("P1", GrantState.REQUESTED, lambda r: r)
    assert exc.value.current.state == GrantState.PENDING_AUTH


def test_compare_and_transition_rejects_illegal_move_and_keeps_record():
    store = InMemoryGrantStore()
    store.put(_record())

    def skip(r):
        r.state = GrantState.FINALIZED
        r.interact_ref = "ref"
        r.access_token = "tok"
        return r

    with pytest.raises(InvalidTransition):
        store.compare_and_transition("P1", GrantState.REQUESTED, skip)
    assert store.get("P1").state == GrantState.REQUESTED


def test_access_token_is_write_once():
    store = InMemoryGrantStore()
    _finalized(store)

    def swap(r):
        r.access_token = "tok-2"
        return r

    with pytest.raises(ValueError):
        store.compare_and_transition("P1", GrantState.FINALIZED, swap)
    assert store.get("P1").access_token == "tok-1"


def test_insert_rejects_live_grant_but_replaces_terminal():
    store = InMemoryGrantStore()
    store.put(_record(state=GrantState.PENDING_AUTH))

    with pytest.raises(TransitionConflict) as exc:
        store.insert(_record(), replace_states=(GrantState.EXPIRED, GrantState.FAILED))
    assert exc.value.code == "POOL_GRANT_EXISTS"

    store.put(_record(state=GrantState.EXPIRED))
    store.insert(_record(total_amount=5), replace_states=(GrantState.EXPIRED, GrantState.FAILED))
    assert store.get("P1").state == GrantState.REQUESTED
    assert store.get("P1").total_amount == 5


def test_reserve_spend_counts_against_total():
    store = InMemoryGrantStore()
    _finalized(store)

    store.reserve_spend(_checkpoint("TX1", 600))
    assert store.get("P1").disbursed_amount == 600

    with pytest.raises(ExhaustedGrantError):
        store.reserve_spend(_checkpoint("TX2", 401))
    assert store.get("P1").disbursed_amount == 600
    assert store.get_disbursement("P1", "TX2") is None


def test_reserve_spend_requires_finalized_grant():
    store = InMemoryGrantStore()
    store.put(_record(state=GrantState.PENDING_AUTH))
    with pytest.raises(TransitionConflict) as exc:
        store.reserve_spend(_checkpoint("TX1", 1))
    assert exc.value.code == "POOL_NOT_FINALIZED"


def test_reserve_is_not_doubled_for_same_transaction():
    store = InMemoryGrantStore()
    _finalized(store)
    cp = _checkpoint("TX1", 300)
    store.reserve_spend(cp)
    store.reserve_spend(cp)
    assert store.get("P1").disbursed_amount == 300
    assert store.get_disbursement("P1", "TX1").reserved is True


def test_release_spend_returns_headroom_once():
    store = InMemoryGrantStore()
    _finalized(store)
    cp = _checkpoint("TX1", 300)
    store.reserve_spend(cp)

    store.release_spend(cp)
    store.release_spend(cp)
    assert store.get("P1").disbursed_amount == 0
    assert store.get_disbursement("P1", "TX1").reserved is False


def test_concurrent_reservations_never_exceed_total():
    store = InMemoryGrantStore()
    _finalized(store, total=1000)
    errors = []

    def worker(i: int) -> None:
        try:
            store.reserve_spend(_checkpoint(f"TX{i}", 100))
        except ExhaustedGrantError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(25)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("P1").disbursed_amount == 1000
    assert len(errors) == 15


def test_list_disbursements_is_scoped_to_pool():
    store = InMemoryGrantStore()
    _finalized(store, "P1")
    _finalized(store, "P2")
    store.put_disbursement(_checkpoint("TX1", 1, "P1"))
    store.put_disbursement(_checkpoint("TX1", 1, "P2"))
    store.put_disbursement(_checkpoint("TX2", 1, "P1"))

    assert [d.transaction_id for d in store.list_disbursements("P1")] == ["TX1", "TX2"]
    assert len(store.list_disbursements("P2")) == 1


def test_reserve_rejects_caller_holding_an_older_checkpoint_version():
    store = InMemoryGrantStore()
    _finalized(store)
    first = _checkpoint("TX1", 300)
    racer = _checkpoint("TX1", 300)

    store.reserve_spend(first)
    with pytest.raises(DisbursementInProgressError) as exc:
        store.reserve_spend(racer)
    assert exc.value.code == "DISBURSEMENT_IN_PROGRESS"
    assert store.get("P1").disbursed_amount == 300

    loaded = store.get_disbursement("P1", "TX1")
    store.put_disbursement(first)
    with pytest.raises(DisbursementInProgressError):
        store.reserve_spend(loaded)


def test_reservation_is_never_released_into_a_later_grant():
    store = InMemoryGrantStore()
    _finalized(store)
    old = _checkpoint("TX1", 300)
    store.reserve_spend(old)
    old_grant = store.get("P1").grant_id

    _finalized(store)
    store.reserve_spend(_checkpoint("TX2", 200))
    assert store.get("P1").grant_id != old_grant

    store.release_spend(old)
    assert store.get("P1").disbursed_amount == 200
    assert store.get_disbursement("P1", "TX1").reserved is False


def test_insert_refuses_regrant_while_outgoing_payment_in_doubt():
    store = InMemoryGrantStore()
    store.put(_record(state=GrantState.EXPIRED))
    cp = _checkpoint("TX1", 1)
    cp.status = DisbursementStatus.OUTGOING_PENDING
    store.put_disbursement(cp)

    with pytest.raises(TransitionConflict) as exc:
        store.insert(_record(), replace_states=(GrantState.EXPIRED, GrantState.FAILED))
    assert exc.value.code == "DISBURSEMENTS_IN_DOUBT"
    assert store.get("P1").state == GrantState.EXPIRED
