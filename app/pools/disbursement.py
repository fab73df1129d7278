# app/pools/disbursement.py
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

from app.pools.errors import (
    AuthorizationStaleError,
    DisbursementInDoubtError,
    DisbursementInProgressError,
    NotFoundError,
    PoolGrantError,
    PoolNotAuthorizedError,
    StateConflictError,
    UnexpectedInteractionRequired,
    UpstreamResourceError,
    ValidationError,
)
from app.pools.finalize import GrantFinalizer
from app.pools.models import (
    DisbursementRecord,
    DisbursementResult,
    DisbursementStatus,
    GrantState,
    PoolGrantRecord,
    utcnow,
)
from app.pools.store import GrantStore
from app.providers.base import AuthorizationClient, GrantResult, PaymentResource, WalletAddress
from services.idempotency import disbursement_hash

logger = logging.getLogger("kanzu.disbursements")

IN_FLIGHT_STATUSES = (
    DisbursementStatus.STARTED,
    DisbursementStatus.INCOMING_CREATED,
    DisbursementStatus.QUOTED,
)

INCOMING_PAYMENT_ACCESS = [{"type": "incoming-payment", "actions": ["read", "complete", "create"]}]
QUOTE_ACCESS = [{"type": "quote", "actions": ["create", "read"]}]


class DisbursementOrchestrator:
    """
    Executes one disbursement from a pool grant:

      1. usable (FINALIZED) pool grant, finalizing lazily when allowed
      2. reserve `amount` against the pool's remaining headroom
      3. resolve sender + recipient wallets
      4-5. incoming-payment sub-grant, incoming payment on the recipient side
      6-7. quote sub-grant, quote on the sender side
      8. outgoing payment with the pool token (moves value)

    Every step is checkpointed under (pool_id, transaction_id). Failures
    before step 8 release the reservation and may be retried from scratch.
    Once step 8 has been attempted, a retry reconciles against the sender's
    outgoing payments instead of blindly creating another one.
    """

    def __init__(
        self,
        store: GrantStore,
        client: AuthorizationClient,
        finalizer: GrantFinalizer,
        *,
        auto_finalize: bool = True,
        lease_seconds: int = 120,
        incoming_description: str = "Learning reward",
        outgoing_description: str = "Pool disbursement",
    ):
        self.store = store
        self.client = client
        self.finalizer = finalizer
        self.auto_finalize = auto_finalize
        self.lease_seconds = lease_seconds
        self.incoming_description = incoming_description
        self.outgoing_description = outgoing_description

    def disburse(
        self,
        pool_id: str,
        recipient_wallet: str,
        amount: int,
        transaction_id: str,
        *,
        recipient_label: Optional[str] = None,
    ) -> DisbursementResult:
        pool_id = (pool_id or "").strip()
        recipient_wallet = (recipient_wallet or "").strip()
        transaction_id = (transaction_id or "").strip()
        if not pool_id or not recipient_wallet or not transaction_id:
            raise ValidationError("pool_id, recipient_wallet and transaction_id are required")
        if isinstance(amount, bool) or int(amount) <= 0:
            raise ValidationError("amount must be a positive integer")
        amount = int(amount)

        record = self.store.get(pool_id)
        req_hash = disbursement_hash(pool_id=pool_id, recipient_wallet=recipient_wallet, amount=amount)

        existing = self.store.get_disbursement(pool_id, transaction_id)
        if existing is not None:
            if existing.request_hash != req_hash:
                raise StateConflictError(
                    f"transaction_id {transaction_id} was already used with a different recipient or amount",
                    code="IDEMPOTENCY_CONFLICT",
                )
            if existing.status == DisbursementStatus.COMPLETED:
                logger.info("disbursement replay pool_id=%s transaction_id=%s", pool_id, transaction_id)
                return DisbursementResult.from_record(existing)
            if existing.status == DisbursementStatus.OUTGOING_PENDING:
                return self._resume_outgoing(record, existing)
            if existing.status in IN_FLIGHT_STATUSES and self._lease_active(existing):
                raise DisbursementInProgressError(f"transaction_id {transaction_id} is already being processed")

        record = self._usable_grant(record)

        orphan = None
        if existing is not None:
            if existing.incoming_payment_id:
                orphan = existing.model_copy()
            checkpoint = existing
            checkpoint.status = DisbursementStatus.STARTED
            checkpoint.incoming_payment_id = None
            checkpoint.quote_id = None
            checkpoint.last_error = None
            checkpoint.recipient_label = recipient_label or checkpoint.recipient_label
        else:
            checkpoint = DisbursementRecord(
                pool_id=pool_id,
                transaction_id=transaction_id,
                recipient_wallet=recipient_wallet,
                recipient_label=recipient_label,
                amount=amount,
                request_hash=req_hash,
            )

        # step 2: headroom check, reservation and checkpoint claim are one atomic store operation
        updated = self.store.reserve_spend(checkpoint)
        if orphan is not None:
            self._log_orphan(orphan)
        logger.info(
            "disbursement started pool_id=%s transaction_id=%s amount=%s remaining=%s",
            pool_id,
            transaction_id,
            amount,
            updated.remaining_amount,
        )

        try:
            sender = self._prepare(record, checkpoint)
        except PoolGrantError as exc:
            self._abandon(checkpoint, exc)
            raise

        return self._send_outgoing(record, checkpoint, sender)

    # ==========================================================
    # Steps 1, 3-7
    # ==========================================================

    def _usable_grant(self, record: PoolGrantRecord) -> PoolGrantRecord:
        if record.state == GrantState.FINALIZED:
            return record
        if record.state in (GrantState.REQUESTED, GrantState.PENDING_AUTH):
            raise PoolNotAuthorizedError(f"Pool {record.pool_id} has not been authorized by the funder yet")
        if record.state == GrantState.AUTHORIZED:
            if self.auto_finalize:
                return self.finalizer.finalize(record.pool_id)
            raise StateConflictError(f"Pool {record.pool_id} grant is not finalized", code="POOL_NOT_FINALIZED")
        if record.state == GrantState.EXPIRED:
            raise AuthorizationStaleError(f"Pool {record.pool_id} grant expired; request a new pool grant")
        raise StateConflictError(f"Pool {record.pool_id} grant is {record.state.value}", code="POOL_GRANT_CLOSED")

    def _prepare(self, record: PoolGrantRecord, checkpoint: DisbursementRecord) -> WalletAddress:
        # step 3
        sender = self.client.get_wallet_address(record.sender_wallet)
        recipient = self.client.get_wallet_address(checkpoint.recipient_wallet)
        self._check_asset(record, recipient)

        # steps 4-5
        incoming_grant = self.client.request_grant(recipient.auth_server, access=INCOMING_PAYMENT_ACCESS)
        self._require_non_interactive(incoming_grant, "incoming-payment")
        incoming = self.client.create_incoming_payment(
            recipient.resource_server,
            incoming_grant.access_token,
            wallet_address=recipient.id,
            amount=checkpoint.amount,
            asset_code=recipient.asset_code,
            asset_scale=recipient.asset_scale,
            metadata=self._incoming_metadata(checkpoint),
        )
        checkpoint.incoming_payment_id = incoming.id
        checkpoint.status = DisbursementStatus.INCOMING_CREATED
        self.store.put_disbursement(checkpoint)

        # steps 6-7
        quote_grant = self.client.request_grant(sender.auth_server, access=QUOTE_ACCESS)
        self._require_non_interactive(quote_grant, "quote")
        quote = self.client.create_quote(
            sender.resource_server,
            quote_grant.access_token,
            wallet_address=sender.id,
            receiver=incoming.id,
        )
        checkpoint.quote_id = quote.id
        checkpoint.status = DisbursementStatus.QUOTED
        self.store.put_disbursement(checkpoint)
        return sender

    @staticmethod
    def _check_asset(record: PoolGrantRecord, recipient: WalletAddress) -> None:
        if record.asset_code is None or record.asset_scale is None:
            return
        if recipient.asset_code != record.asset_code or int(recipient.asset_scale) != int(record.asset_scale):
            raise ValidationError(
                f"recipient asset {recipient.asset_code}/{recipient.asset_scale} does not match "
                f"pool asset {record.asset_code}/{record.asset_scale}",
                code="ASSET_MISMATCH",
            )

    @staticmethod
    def _require_non_interactive(grant: GrantResult, kind: str) -> None:
        if not grant.is_finalized:
            raise UnexpectedInteractionRequired(f"{kind} grant requires interaction; disbursements cannot prompt a user")

    # ==========================================================
    # Step 8
    # ==========================================================

    def _send_outgoing(
        self,
        record: PoolGrantRecord,
        checkpoint: DisbursementRecord,
        sender: WalletAddress,
        *,
        resend: bool = False,
    ) -> DisbursementResult:
        # durable before the value-moving call
        checkpoint.status = DisbursementStatus.OUTGOING_PENDING
        self.store.put_disbursement(checkpoint)

        try:
            outgoing = self.client.create_outgoing_payment(
                sender.resource_server,
                record.access_token or "",
                wallet_address=sender.id,
                quote_id=checkpoint.quote_id or "",
                metadata=self._outgoing_metadata(checkpoint),
            )
        except UpstreamResourceError as exc:
            # A rejected resend may mean the quote was already spent by the first attempt.
            if resend or exc.outcome_unknown:
                raise self._hold_in_doubt(checkpoint, exc) from exc
            self._abandon(checkpoint, exc)
            raise
        except PoolGrantError as exc:
            raise self._hold_in_doubt(checkpoint, exc) from exc

        return self._complete(checkpoint, outgoing)

    def _resume_outgoing(self, record: PoolGrantRecord, checkpoint: DisbursementRecord) -> DisbursementResult:
        if not record.access_token or (checkpoint.grant_id and checkpoint.grant_id != record.grant_id):
            raise DisbursementInDoubtError(
                f"Pool {record.pool_id} has no token for the grant behind transaction {checkpoint.transaction_id}"
            )

        try:
            sender = self.client.get_wallet_address(record.sender_wallet)
            existing = self._find_outgoing(record, sender, checkpoint)
        except PoolGrantError as exc:
            raise DisbursementInDoubtError(
                f"Could not reconcile transaction {checkpoint.transaction_id}: {exc.message}",
                http_status=getattr(exc, "http_status", None),
            ) from exc

        if existing is not None:
            logger.info(
                "disbursement reconciled pool_id=%s transaction_id=%s outgoing_payment_id=%s",
                checkpoint.pool_id,
                checkpoint.transaction_id,
                existing.id,
            )
            return self._complete(checkpoint, existing)

        # Not on the server: the same quote is single-use, so re-sending it cannot double pay.
        logger.info(
            "disbursement resend pool_id=%s transaction_id=%s quote_id=%s",
            checkpoint.pool_id,
            checkpoint.transaction_id,
            checkpoint.quote_id,
        )
        return self._send_outgoing(record, checkpoint, sender, resend=True)

    def abandon_in_doubt(self, pool_id: str, transaction_id: str, *, reason: str) -> DisbursementRecord:
        """
        Operator action for a transaction confirmed by hand to have moved no value.

        Marks the OUTGOING_PENDING checkpoint FAILED and returns its reservation.
        """
        checkpoint = self.store.get_disbursement(pool_id, transaction_id)
        if checkpoint is None:
            raise NotFoundError(f"No disbursement {transaction_id} for pool {pool_id}", code="DISBURSEMENT_NOT_FOUND")
        if checkpoint.status != DisbursementStatus.OUTGOING_PENDING:
            raise StateConflictError(
                f"Disbursement {transaction_id} is {checkpoint.status.value}, expected OUTGOING_PENDING",
                code="DISBURSEMENT_NOT_IN_DOUBT",
            )
        checkpoint.status = DisbursementStatus.FAILED
        checkpoint.last_error = f"ABANDONED: {reason}"
        self.store.release_spend(checkpoint)
        logger.warning(
            "in-doubt disbursement abandoned pool_id=%s transaction_id=%s reason=%s",
            pool_id,
            transaction_id,
            reason,
        )
        return checkpoint

    def _find_outgoing(
        self, record: PoolGrantRecord, sender: WalletAddress, checkpoint: DisbursementRecord
    ) -> Optional[PaymentResource]:
        payments = self.client.list_outgoing_payments(
            sender.resource_server,
            record.access_token or "",
            wallet_address=sender.id,
        )
        for p in payments:
            md = p.metadata or {}
            if md.get("transactionId") == checkpoint.transaction_id and md.get("poolId") == checkpoint.pool_id:
                return p
        return None

    def _complete(self, checkpoint: DisbursementRecord, outgoing: PaymentResource) -> DisbursementResult:
        checkpoint.outgoing_payment_id = outgoing.id
        checkpoint.status = DisbursementStatus.COMPLETED
        checkpoint.last_error = None
        self.store.put_disbursement(checkpoint)
        logger.info(
            "disbursement completed pool_id=%s transaction_id=%s outgoing_payment_id=%s",
            checkpoint.pool_id,
            checkpoint.transaction_id,
            outgoing.id,
        )
        return DisbursementResult.from_record(checkpoint)

    # ==========================================================
    # helpers
    # ==========================================================

    def _abandon(self, checkpoint: DisbursementRecord, exc: PoolGrantError) -> None:
        checkpoint.status = DisbursementStatus.FAILED
        checkpoint.last_error = f"{exc.code}: {exc.message}"
        self.store.release_spend(checkpoint)
        logger.warning(
            "disbursement failed pool_id=%s transaction_id=%s error=%s retryable=%s",
            checkpoint.pool_id,
            checkpoint.transaction_id,
            exc.code,
            exc.retryable,
        )
        if checkpoint.incoming_payment_id:
            self._log_orphan(checkpoint)

    def _hold_in_doubt(self, checkpoint: DisbursementRecord, exc: PoolGrantError) -> DisbursementInDoubtError:
        # Reservation stays and the checkpoint stays OUTGOING_PENDING until reconciled.
        checkpoint.last_error = f"{exc.code}: {exc.message}"
        self.store.put_disbursement(checkpoint)
        logger.error(
            "disbursement in doubt pool_id=%s transaction_id=%s error=%s",
            checkpoint.pool_id,
            checkpoint.transaction_id,
            exc.code,
        )
        return DisbursementInDoubtError(
            f"Outgoing payment outcome unknown for transaction {checkpoint.transaction_id}; retry with the same transaction_id",
            http_status=getattr(exc, "http_status", None),
        )

    @staticmethod
    def _log_orphan(checkpoint: DisbursementRecord) -> None:
        logger.warning(
            "orphaned incoming payment pool_id=%s transaction_id=%s incoming_payment_id=%s",
            checkpoint.pool_id,
            checkpoint.transaction_id,
            checkpoint.incoming_payment_id,
        )

    def _lease_active(self, checkpoint: DisbursementRecord) -> bool:
        return checkpoint.updated_at > utcnow() - timedelta(seconds=self.lease_seconds)

    def _incoming_metadata(self, checkpoint: DisbursementRecord) -> dict[str, str]:
        description = self.incoming_description
        if checkpoint.recipient_label:
            description = f"{description} for {checkpoint.recipient_label}"
        return {
            "description": description,
            "poolId": checkpoint.pool_id,
            "transactionId": checkpoint.transaction_id,
        }

    def _outgoing_metadata(self, checkpoint: DisbursementRecord) -> dict[str, str]:
        return {
            "description": self.outgoing_description,
            "poolId": checkpoint.pool_id,
            "transactionId": checkpoint.transaction_id,
        }
