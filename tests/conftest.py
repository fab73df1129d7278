# tests/conftest.py

from dataclasses import dataclass

import pytest
from fastapi.testclient import TestClient

from settings import settings
from main import create_app
from deps.pools import get_authorization_client, get_grant_store
from app.pools.callback import CallbackCorrelator
from app.pools.disbursement import DisbursementOrchestrator
from app.pools.finalize import GrantFinalizer
from app.pools.funding import PoolFundingOrchestrator
from app.pools.models import PoolGrantRequest
from app.pools.store import InMemoryGrantStore
from app.providers.mock import MockAuthorizationClient


SENDER = "https://wallet.example/pool-funder"
RECEIVER = "https://wallet.example/pool-receiver"
LEARNER_1 = "https://wallet.example/learner-1"
LEARNER_2 = "https://wallet.example/learner-2"
SERVICE_URL = "https://pools.example"


@dataclass
class Pools:
    store: InMemoryGrantStore
    op: MockAuthorizationClient
    funding: PoolFundingOrchestrator
    callbacks: CallbackCorrelator
    finalizer: GrantFinalizer
    disbursements: DisbursementOrchestrator


# ---------------------------
# Core fixtures
# ---------------------------

@pytest.fixture
def store() -> InMemoryGrantStore:
    return InMemoryGrantStore()


@pytest.fixture
def op() -> MockAuthorizationClient:
    client = MockAuthorizationClient()
    for url in (SENDER, RECEIVER, LEARNER_1, LEARNER_2):
        client.add_wallet(url)
    return client


@pytest.fixture
def pools(store, op) -> Pools:
    finalizer = GrantFinalizer(store, op)
    return Pools(
        store=store,
        op=op,
        funding=PoolFundingOrchestrator(store, op, service_url=SERVICE_URL),
        callbacks=CallbackCorrelator(store, require_hash=True),
        finalizer=finalizer,
        disbursements=DisbursementOrchestrator(store, op, finalizer, lease_seconds=120),
    )


def grant_request(amount: int = 100000, **overrides) -> PoolGrantRequest:
    body = {
        "sender_wallet_address": SENDER,
        "receiver_wallet_address": RECEIVER,
        "amount": amount,
    }
    body.update(overrides)
    return PoolGrantRequest(**body)


def authorize_pool(pools: Pools, pool_id: str, amount: int = 100000):
    """Request a pool grant and play the funder approving it."""
    started = pools.funding.request_pool_grant(pool_id, grant_request(amount))
    approval = pools.op.approve(started.redirect_uri)
    return pools.callbacks.complete_interaction(
        pool_id, approval["interact_ref"], interact_hash=approval["hash"]
    )


def finalized_pool(pools: Pools, pool_id: str, amount: int = 100000):
    authorize_pool(pools, pool_id, amount)
    return pools.finalizer.finalize(pool_id)


# ---------------------------
# API client
# ---------------------------

@pytest.fixture
def api_settings(monkeypatch):
    monkeypatch.setattr(settings, "ENV", "dev", raising=False)
    monkeypatch.setattr(settings, "SERVICE_URL", SERVICE_URL, raising=False)
    monkeypatch.setattr(settings, "OPERATOR_REDIRECT_URL", "https://operator.example/pools", raising=False)
    monkeypatch.setattr(settings, "SERVICE_API_KEY", "", raising=False)
    monkeypatch.setattr(settings, "CALLBACK_REQUIRE_HASH", True, raising=False)
    monkeypatch.setattr(settings, "AUTO_FINALIZE_ON_DISBURSE", True, raising=False)
    return settings


@pytest.fixture
def client(api_settings, store, op) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_grant_store] = lambda: store
    app.dependency_overrides[get_authorization_client] = lambda: op
    # Needed so tests can assert 500s instead of pytest re-raising server exceptions
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c
