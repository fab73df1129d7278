# routes/pools.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import PlainTextResponse, RedirectResponse

from settings import settings
from deps.auth import require_service_key
from deps.pools import get_callback_correlator, get_finalizer, get_funding_orchestrator, get_grant_store
from app.pools.callback import CallbackCorrelator, operator_redirect_url
from app.pools.errors import PoolGrantError
from app.pools.finalize import GrantFinalizer
from app.pools.funding import PoolFundingOrchestrator
from app.pools.models import FinalizeResponse, PoolGrantRequest, PoolGrantStarted
from app.pools.store import GrantStore
from services.redaction import fingerprint

router = APIRouter(prefix="/v1", tags=["pools"])
logger = logging.getLogger("kanzu.pools.http")


@router.post(
    "/pools/{pool_id}/grant",
    response_model=PoolGrantStarted,
    status_code=201,
    dependencies=[Depends(require_service_key)],
)
def start_pool_grant(
    pool_id: str,
    body: PoolGrantRequest,
    funding: PoolFundingOrchestrator = Depends(get_funding_orchestrator),
):
    return funding.request_pool_grant(pool_id, body)


@router.get("/grant-callback", include_in_schema=False)
def grant_callback(
    pool_id: str = Query(default=""),
    interact_ref: str = Query(default=""),
    hash: str | None = Query(default=None),
    correlator: CallbackCorrelator = Depends(get_callback_correlator),
):
    # The funder's browser lands here: answer with a page, never JSON.
    try:
        correlator.complete_interaction(pool_id, interact_ref, interact_hash=hash)
    except PoolGrantError as exc:
        logger.warning("grant callback failed pool_id=%s error=%s", pool_id, exc.code)
        return PlainTextResponse(f"Authorization could not be completed: {exc.message}", status_code=exc.status_code)

    base = (settings.OPERATOR_REDIRECT_URL or "").strip()
    if not base:
        return PlainTextResponse("Authorization complete. You can close this window.")
    return RedirectResponse(operator_redirect_url(base, pool_id), status_code=303)


@router.post(
    "/pools/{pool_id}/finalize",
    response_model=FinalizeResponse,
    dependencies=[Depends(require_service_key)],
)
def finalize_pool_grant(
    pool_id: str,
    finalizer: GrantFinalizer = Depends(get_finalizer),
):
    record = finalizer.finalize(pool_id)
    return FinalizeResponse(
        pool_id=record.pool_id,
        state=record.state,
        token_handle=fingerprint(record.access_token),
    )


@router.get("/pools/{pool_id}", dependencies=[Depends(require_service_key)])
def get_pool(
    pool_id: str,
    store: GrantStore = Depends(get_grant_store),
):
    return store.get(pool_id).public_view()
