import pytest

from app.pools.callback import (
    CallbackCorrelator,
    _hash_matches,
    interaction_hash,
    operator_redirect_url,
)
from app.pools.errors import CallbackVerificationError, NotFoundError, StateConflictError, ValidationError
from app.pools.models import GrantState
from tests.conftest import grant_request


def test_callback_authorizes_pending_grant(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    approval = pools.op.approve(started.redirect_uri)

    rec = pools.callbacks.complete_interaction("P1", approval["interact_ref"], interact_hash=approval["hash"])
    assert rec.state == GrantState.AUTHORIZED
    assert rec.interact_ref == approval["interact_ref"]
    assert rec.access_token is None


def test_double_callback_is_a_conflict_and_keeps_first_ref(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    approval = pools.op.approve(started.redirect_uri)
    pools.callbacks.complete_interaction("P1", approval["interact_ref"], interact_hash=approval["hash"])

    with pytest.raises(StateConflictError) as exc:
        pools.callbacks.complete_interaction("P1", "ref-other", interact_hash=approval["hash"])
    assert exc.value.code == "POOL_NOT_PENDING"
    assert pools.store.get("P1").interact_ref == approval["interact_ref"]


def test_callback_for_unknown_pool(pools):
    with pytest.raises(NotFoundError):
        pools.callbacks.complete_interaction("missing", "ref-1")


def test_callback_requires_pool_and_ref(pools):
    with pytest.raises(ValidationError):
        pools.callbacks.complete_interaction("P1", "")


def test_wrong_hash_rejected_and_grant_stays_pending(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    approval = pools.op.approve(started.redirect_uri)

    with pytest.raises(CallbackVerificationError):
        pools.callbacks.complete_interaction("P1", approval["interact_ref"], interact_hash="AAAA")
    assert pools.store.get("P1").state == GrantState.PENDING_AUTH


def test_missing_hash_rejected_when_required(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    approval = pools.op.approve(started.redirect_uri)
    with pytest.raises(CallbackVerificationError):
        pools.callbacks.complete_interaction("P1", approval["interact_ref"])


def test_missing_hash_allowed_when_not_required(pools):
    started = pools.funding.request_pool_grant("P1", grant_request())
    approval = pools.op.approve(started.redirect_uri)
    lenient = CallbackCorrelator(pools.store, require_hash=False)
    assert lenient.complete_interaction("P1", approval["interact_ref"]).state == GrantState.AUTHORIZED


def test_hash_accepts_base64url_without_padding():
    expected = interaction_hash(
        client_nonce="c", finish_nonce="f", interact_ref="r", grant_endpoint="https://auth.example/"
    )
    urlsafe = expected.replace("+", "-").replace("/", "_").rstrip("=")
    assert _hash_matches(expected, expected)
    assert _hash_matches(expected, urlsafe)
    assert not _hash_matches(expected, "nope")


def test_operator_redirect_url_appends_query():
    url = operator_redirect_url("https://operator.example/pools?tab=funding&pool_id=old", "P 1")
    assert url == "https://operator.example/pools?tab=funding&auth_complete=1&pool_id=P+1"
