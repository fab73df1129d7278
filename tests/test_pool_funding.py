from datetime import timedelta

import pytest
from pydantic import ValidationError as RequestValidationError

from app.pools.errors import (
    DisbursementInDoubtError,
    StateConflictError,
    UpstreamAuthorizationError,
    UpstreamResourceError,
    ValidationError,
)
from app.pools.funding import default_callback_uri, outgoing_payment_access
from app.pools.models import GrantState, PoolGrantRecord, utcnow
from tests.conftest import LEARNER_1, RECEIVER, SENDER, SERVICE_URL, finalized_pool, grant_request


def test_request_pool_grant_moves_to_pending_auth(pools):
    started = pools.funding.request_pool_grant("P1", grant_request(100000))

    assert started.state == GrantState.PENDING_AUTH
    assert started.redirect_uri.startswith("https://auth.wallet.example/interact/")
    assert started.continuation_handle

    rec = pools.store.get("P1")
    assert rec.state == GrantState.PENDING_AUTH
    assert rec.sender_wallet_id == SENDER
    assert rec.receiver_wallet_id == RECEIVER
    assert rec.auth_server == "https://auth.wallet.example/"
    assert rec.continuation is not None
    assert rec.interact_ref is None
    assert rec.access_token is None
    assert rec.asset_code == "USD" and rec.asset_scale == 2


def test_continuation_secret_not_returned(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    rec = pools.store.get("P1")
    dumped = started.model_dump_json()
    assert rec.continuation.access_token not in dumped
    assert rec.continuation.uri not in dumped


def test_grant_request_shape(pools):
    pools.funding.request_pool_grant("P1", grant_request(2500))
    grant = next(iter(pools.op.grants.values()))

    access = grant["access"][0]
    assert access["type"] == "outgoing-payment"
    assert access["actions"] == ["read", "create", "list"]
    assert access["identifier"] == SENDER
    assert access["limits"]["debitAmount"] == {"value": "2500", "assetCode": "USD", "assetScale": 2}

    finish = grant["interact"]["finish"]
    assert grant["interact"]["start"] == ["redirect"]
    assert finish["method"] == "redirect"
    assert finish["uri"] == f"{SERVICE_URL}/v1/grant-callback?pool_id=P1"
    assert finish["nonce"]


def test_caller_supplied_callback_uri_is_used(pools):
    pools.funding.request_pool_grant("P1", grant_request(callback_uri="https://lms.example/cb?pool=P1"))
    grant = next(iter(pools.op.grants.values()))
    assert grant["interact"]["finish"]["uri"] == "https://lms.example/cb?pool=P1"


def test_relative_callback_uri_rejected():
    with pytest.raises(RequestValidationError):
        grant_request(callback_uri="/v1/grant-callback")


def test_same_request_for_pending_pool_is_replayed(pools):
    first = pools.funding.request_pool_grant("P1", grant_request())
    second = pools.funding.request_pool_grant("P1", grant_request())
    assert second.redirect_uri == first.redirect_uri
    assert len(pools.op.grants) == 1


def test_different_request_for_live_pool_conflicts(pools):
    pools.funding.request_pool_grant("P1", grant_request(100))
    with pytest.raises(StateConflictError) as exc:
        pools.funding.request_pool_grant("P1", grant_request(200))
    assert exc.value.code == "POOL_GRANT_EXISTS"
    assert exc.value.status_code == 409


def test_expired_pool_can_be_regranted(pools):
    started = pools.funding.request_pool_grant("P1", grant_request(100))
    pools.store.compare_and_transition("P1", GrantState.PENDING_AUTH, lambda r: r.model_copy(update={"state": GrantState.EXPIRED}))

    again = pools.funding.request_pool_grant("P1", grant_request(300))
    assert again.redirect_uri != started.redirect_uri
    assert pools.store.get("P1").total_amount == 300


def test_unresolvable_wallet_fails_the_grant(pools):
    with pytest.raises(UpstreamResourceError) as exc:
        pools.funding.request_pool_grant(
            "P1", grant_request(sender_wallet_address="https://wallet.example/nobody")
        )
    assert exc.value.code == "WALLET_RESOLUTION_FAILED"
    rec = pools.store.get("P1")
    assert rec.state == GrantState.FAILED
    assert rec.last_error == "WALLET_RESOLUTION_FAILED"


def test_asset_mismatch_with_sender_wallet_is_rejected(pools):
    with pytest.raises(ValidationError):
        pools.funding.request_pool_grant("P1", grant_request(asset_code="EUR"))
    assert pools.store.get("P1").state == GrantState.FAILED


def test_authorization_server_error_marks_failed(pools):
    pools.op.fail_next("request_grant", UpstreamAuthorizationError("grant request rejected: HTTP 503", http_status=503, retryable=True))
    with pytest.raises(UpstreamAuthorizationError):
        pools.funding.request_pool_grant("P1", grant_request())
    assert pools.store.get("P1").state == GrantState.FAILED

    # a failed pool can be requested again
    started = pools.funding.request_pool_grant("P1", grant_request())
    assert started.state == GrantState.PENDING_AUTH


def test_empty_pool_id_rejected(pools):
    with pytest.raises(ValidationError):
        pools.funding.request_pool_grant("  ", grant_request())


def test_default_callback_uri():
    assert default_callback_uri("https://svc.example/", "pool 1") == "https://svc.example/v1/grant-callback?pool_id=pool+1"
    assert default_callback_uri("", "P1") is None


def test_outgoing_payment_access_limits():
    access = outgoing_payment_access("https://w.example/a", amount=10, asset_code="EUR", asset_scale=2)
    assert access[0]["limits"]["debitAmount"]["value"] == "10"


def test_different_callback_for_pending_pool_conflicts(pools):
    pools.funding.request_pool_grant("P1", grant_request(callback_uri="https://lms.example/cb/1"))
    with pytest.raises(StateConflictError) as exc:
        pools.funding.request_pool_grant("P1", grant_request(callback_uri="https://lms.example/cb/2"))
    assert exc.value.code == "POOL_GRANT_EXISTS"
    assert len(pools.op.grants) == 1


def test_different_asset_for_pending_pool_conflicts(pools):
    pools.funding.request_pool_grant("P1", grant_request(asset_code="USD", asset_scale=2))
    with pytest.raises(StateConflictError):
        pools.funding.request_pool_grant("P1", grant_request(asset_code="USD", asset_scale=3))

    again = pools.funding.request_pool_grant("P1", grant_request(asset_code="usd"))
    assert again.state == GrantState.PENDING_AUTH


def test_unexpected_error_marks_failed_and_pool_can_be_requested_again(pools):
    pools.op.fail_next("request_grant", RuntimeError("connection pool exhausted"))
    with pytest.raises(RuntimeError):
        pools.funding.request_pool_grant("P1", grant_request())

    rec = pools.store.get("P1")
    assert rec.state == GrantState.FAILED
    assert rec.last_error == "RuntimeError"

    started = pools.funding.request_pool_grant("P1", grant_request())
    assert started.state == GrantState.PENDING_AUTH


def test_request_left_behind_by_a_crash_is_replaced_after_lease(pools):
    abandoned = PoolGrantRecord(
        pool_id="P1",
        state=GrantState.REQUESTED,
        sender_wallet=SENDER,
        receiver_wallet=RECEIVER,
        total_amount=100,
        updated_at=utcnow() - timedelta(hours=1),
    )
    pools.store.put(abandoned)

    started = pools.funding.request_pool_grant("P1", grant_request(500))
    assert started.state == GrantState.PENDING_AUTH
    rec = pools.store.get("P1")
    assert rec.total_amount == 500
    assert rec.grant_id != abandoned.grant_id


def test_fresh_request_is_not_replaced(pools):
    pools.store.put(
        PoolGrantRecord(
            pool_id="P1",
            state=GrantState.REQUESTED,
            sender_wallet=SENDER,
            receiver_wallet=RECEIVER,
            total_amount=100,
        )
    )
    with pytest.raises(StateConflictError) as exc:
        pools.funding.request_pool_grant("P1", grant_request(500))
    assert exc.value.code == "POOL_GRANT_EXISTS"
    assert pools.store.get("P1").state == GrantState.REQUESTED


def test_regrant_refused_while_a_disbursement_is_in_doubt(pools):
    finalized_pool(pools, "P1", 10000)
    pools.op.drop_outgoing_response = True
    with pytest.raises(DisbursementInDoubtError):
        pools.disbursements.disburse("P1", LEARNER_1, 8000, "TX1")
    pools.op.drop_outgoing_response = False
    pools.store.compare_and_transition(
        "P1", GrantState.FINALIZED, lambda r: r.model_copy(update={"state": GrantState.EXPIRED})
    )

    with pytest.raises(StateConflictError) as exc:
        pools.funding.request_pool_grant("P1", grant_request(10000))
    assert exc.value.code == "DISBURSEMENTS_IN_DOUBT"
    assert pools.store.get("P1").state == GrantState.EXPIRED

    # reconciling on the old grant's token settles it and frees the pool
    settled = pools.disbursements.disburse("P1", LEARNER_1, 8000, "TX1")
    assert settled.status == "success"
    started = pools.funding.request_pool_grant("P1", grant_request(10000))
    assert started.state == GrantState.PENDING_AUTH
