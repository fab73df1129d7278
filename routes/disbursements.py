# routes/disbursements.py
from __future__ import annotations

from fastapi import APIRouter, Depends, Header

from deps.auth import require_service_key
from deps.pools import get_disbursement_orchestrator, get_grant_store
from app.pools.disbursement import DisbursementOrchestrator
from app.pools.errors import ValidationError
from app.pools.models import DisbursementRequest, DisbursementResult
from app.pools.store import GrantStore

router = APIRouter(prefix="/v1", tags=["disbursements"], dependencies=[Depends(require_service_key)])


@router.post("/pools/{pool_id}/disbursements", response_model=DisbursementResult)
def create_disbursement(
    pool_id: str,
    body: DisbursementRequest,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    orchestrator: DisbursementOrchestrator = Depends(get_disbursement_orchestrator),
):
    transaction_id = (body.transaction_id or idempotency_key or "").strip()
    if not transaction_id:
        raise ValidationError("transaction_id (or Idempotency-Key header) is required")
    if body.transaction_id and idempotency_key and body.transaction_id.strip() != idempotency_key.strip():
        raise ValidationError("transaction_id and Idempotency-Key header disagree")

    return orchestrator.disburse(
        pool_id,
        body.recipient_wallet_address,
        body.amount,
        transaction_id,
        recipient_label=body.recipient_label,
    )


@router.get("/pools/{pool_id}/disbursements")
def list_disbursements(
    pool_id: str,
    store: GrantStore = Depends(get_grant_store),
):
    store.get(pool_id)
    items = []
    for d in store.list_disbursements(pool_id):
        items.append(
            {
                "transaction_id": d.transaction_id,
                "recipient_wallet": d.recipient_wallet,
                "recipient_label": d.recipient_label,
                "amount": d.amount,
                "status": d.status.value,
                "incoming_payment_id": d.incoming_payment_id,
                "quote_id": d.quote_id,
                "outgoing_payment_id": d.outgoing_payment_id,
                "orphaned_incoming_payment": d.orphaned_incoming_payment,
                "last_error": d.last_error,
                "created_at": d.created_at.isoformat(),
                "updated_at": d.updated_at.isoformat(),
            }
        )
    return {"pool_id": pool_id, "disbursements": items}
