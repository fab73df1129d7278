# app/pools/models.py
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field, field_validator

from services.redaction import fingerprint


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GrantState(str, Enum):
    REQUESTED = "REQUESTED"
    PENDING_AUTH = "PENDING_AUTH"
    AUTHORIZED = "AUTHORIZED"
    FINALIZED = "FINALIZED"
    EXPIRED = "EXPIRED"
    FAILED = "FAILED"


class DisbursementStatus(str, Enum):
    STARTED = "STARTED"
    INCOMING_CREATED = "INCOMING_CREATED"
    QUOTED = "QUOTED"
    OUTGOING_PENDING = "OUTGOING_PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


def is_absolute_uri(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ==========================================================
# Persisted records
# ==========================================================

class ContinuationHandle(BaseModel):
    """GNAP continuation: URI plus the access token needed to call it. Secret."""

    uri: str
    access_token: str


class PoolGrantRecord(BaseModel):
    pool_id: str
    # new on every (re)grant of the pool; checkpoints reserve against it
    grant_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    state: GrantState = GrantState.REQUESTED

    sender_wallet: str
    receiver_wallet: str
    sender_wallet_id: Optional[str] = None
    receiver_wallet_id: Optional[str] = None
    # grant endpoint of the sender's authorization server
    auth_server: Optional[str] = None

    total_amount: int = Field(gt=0)
    asset_code: Optional[str] = None
    asset_scale: Optional[int] = None
    # includes amounts reserved by in-flight disbursements
    disbursed_amount: int = 0

    callback_uri: Optional[str] = None
    client_nonce: Optional[str] = None
    finish_nonce: Optional[str] = None
    interact_redirect: Optional[str] = None
    continuation: Optional[ContinuationHandle] = None
    interact_ref: Optional[str] = None
    access_token: Optional[str] = None

    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def remaining_amount(self) -> int:
        return max(0, self.total_amount - self.disbursed_amount)

    def public_view(self) -> dict[str, Any]:
        """Record without credentials, safe for API responses and logs."""
        return {
            "pool_id": self.pool_id,
            "state": self.state.value,
            "sender_wallet": self.sender_wallet,
            "receiver_wallet": self.receiver_wallet,
            "total_amount": self.total_amount,
            "disbursed_amount": self.disbursed_amount,
            "remaining_amount": self.remaining_amount,
            "asset_code": self.asset_code,
            "asset_scale": self.asset_scale,
            "interact_redirect": self.interact_redirect,
            "authorized": self.interact_ref is not None,
            "token_handle": fingerprint(self.access_token),
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


class DisbursementRecord(BaseModel):
    pool_id: str
    transaction_id: str
    recipient_wallet: str
    recipient_label: Optional[str] = None
    amount: int = Field(gt=0)
    request_hash: str
    status: DisbursementStatus = DisbursementStatus.STARTED
    # True while `amount` is counted in the disbursed_amount of grant `grant_id`
    reserved: bool = False
    grant_id: Optional[str] = None
    # bumped on every write; 0 until first stored
    version: int = 0

    incoming_payment_id: Optional[str] = None
    quote_id: Optional[str] = None
    outgoing_payment_id: Optional[str] = None

    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def orphaned_incoming_payment(self) -> bool:
        return self.status == DisbursementStatus.FAILED and bool(self.incoming_payment_id) and not self.outgoing_payment_id


# ==========================================================
# API contracts
# ==========================================================

class PoolGrantRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    sender_wallet_address: str = Field(min_length=1)
    receiver_wallet_address: str = Field(min_length=1)
    amount: int = Field(gt=0)
    asset_code: Optional[str] = Field(default=None, min_length=3, max_length=3)
    asset_scale: Optional[int] = Field(default=None, ge=0, le=255)
    callback_uri: Optional[str] = None

    @field_validator("callback_uri")
    @classmethod
    def _callback_must_be_absolute(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        if not is_absolute_uri(v):
            raise ValueError("callback_uri must be an absolute http(s) URI")
        return v


class PoolGrantStarted(BaseModel):
    pool_id: str
    state: GrantState
    redirect_uri: str
    # Non-secret reference to the stored continuation; the secret stays server-side.
    continuation_handle: str


class FinalizeResponse(BaseModel):
    pool_id: str
    state: GrantState
    token_handle: str


class DisbursementRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    recipient_wallet_address: str = Field(min_length=1)
    amount: int = Field(gt=0)
    transaction_id: Optional[str] = Field(default=None, min_length=1, max_length=200)
    recipient_label: Optional[str] = Field(default=None, max_length=200)


class DisbursementResult(BaseModel):
    status: str = "success"
    pool_id: str
    transaction_id: str
    disbursement_id: str
    outgoing_payment_id: str
    incoming_payment_id: str
    quote_id: str
    amount: int

    @classmethod
    def from_record(cls, rec: DisbursementRecord) -> "DisbursementResult":
        return cls(
            pool_id=rec.pool_id,
            transaction_id=rec.transaction_id,
            disbursement_id=rec.outgoing_payment_id or "",
            outgoing_payment_id=rec.outgoing_payment_id or "",
            incoming_payment_id=rec.incoming_payment_id or "",
            quote_id=rec.quote_id or "",
            amount=rec.amount,
        )
