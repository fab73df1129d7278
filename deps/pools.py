# deps/pools.py
from __future__ import annotations

from functools import lru_cache

from fastapi import Depends

from settings import settings
from app.pools.callback import CallbackCorrelator
from app.pools.disbursement import DisbursementOrchestrator
from app.pools.finalize import GrantFinalizer
from app.pools.funding import PoolFundingOrchestrator
from app.pools.store import GrantStore, InMemoryGrantStore
from app.providers.base import AuthorizationClient


@lru_cache(maxsize=1)
def get_grant_store() -> GrantStore:
    if settings.GRANT_STORE_BACKEND == "memory":
        return InMemoryGrantStore()

    from app.pools.repository import PostgresGrantStore
    return PostgresGrantStore()


@lru_cache(maxsize=1)
def get_authorization_client() -> AuthorizationClient:
    if settings.OP_CLIENT_MODE == "mock":
        from app.providers.mock import MockAuthorizationClient
        return MockAuthorizationClient()

    from app.providers.open_payments.client import OpenPaymentsClient
    from app.providers.open_payments.http import HttpClient
    from app.providers.open_payments.signing import signer_from_settings

    http = HttpClient(
        timeout_s=settings.OP_HTTP_TIMEOUT_S,
        signer=signer_from_settings(),
        debug=settings.OP_DEBUG_HTTP,
    )
    return OpenPaymentsClient(client_wallet_address=settings.OP_CLIENT_WALLET_ADDRESS_URL, http=http)


def get_funding_orchestrator(
    store: GrantStore = Depends(get_grant_store),
    client: AuthorizationClient = Depends(get_authorization_client),
) -> PoolFundingOrchestrator:
    return PoolFundingOrchestrator(
        store,
        client,
        service_url=settings.SERVICE_URL,
        request_lease_seconds=settings.GRANT_REQUEST_LEASE_SECONDS,
    )


def get_callback_correlator(store: GrantStore = Depends(get_grant_store)) -> CallbackCorrelator:
    return CallbackCorrelator(store, require_hash=settings.CALLBACK_REQUIRE_HASH)


def get_finalizer(
    store: GrantStore = Depends(get_grant_store),
    client: AuthorizationClient = Depends(get_authorization_client),
) -> GrantFinalizer:
    return GrantFinalizer(store, client)


def get_disbursement_orchestrator(
    store: GrantStore = Depends(get_grant_store),
    client: AuthorizationClient = Depends(get_authorization_client),
    finalizer: GrantFinalizer = Depends(get_finalizer),
) -> DisbursementOrchestrator:
    return DisbursementOrchestrator(
        store,
        client,
        finalizer,
        auto_finalize=settings.AUTO_FINALIZE_ON_DISBURSE,
        lease_seconds=settings.DISBURSEMENT_LEASE_SECONDS,
        incoming_description=settings.INCOMING_PAYMENT_DESCRIPTION,
        outgoing_description=settings.OUTGOING_PAYMENT_DESCRIPTION,
    )
