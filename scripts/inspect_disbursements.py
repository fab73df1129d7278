# scripts/inspect_disbursements.py
from __future__ import annotations

import argparse
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.pools.models import DisbursementStatus  # noqa: E402
from app.pools.store import GrantStore  # noqa: E402


def needs_attention(store: GrantStore, pool_id: str) -> list[dict]:
    """
    Checkpoints an operator should look at: step 8 outcome unknown, or an
    incoming payment left behind by a failed disbursement.
    """
    rows = []
    for d in store.list_disbursements(pool_id):
        if d.status == DisbursementStatus.OUTGOING_PENDING:
            reason = "in_doubt"
        elif d.orphaned_incoming_payment:
            reason = "orphaned_incoming_payment"
        else:
            continue
        rows.append(
            {
                "transaction_id": d.transaction_id,
                "reason": reason,
                "status": d.status.value,
                "amount": d.amount,
                "reserved": d.reserved,
                "incoming_payment_id": d.incoming_payment_id,
                "quote_id": d.quote_id,
                "last_error": d.last_error,
                "updated_at": d.updated_at.isoformat(),
            }
        )
    return rows


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="List disbursements of a pool that need operator attention.")
    parser.add_argument("pool_id")
    parser.add_argument(
        "--abandon",
        metavar="TRANSACTION_ID",
        help="mark an in-doubt transaction FAILED after confirming no payment left the sender wallet",
    )
    parser.add_argument("--reason", default="", help="required with --abandon")
    args = parser.parse_args(argv)
    if args.abandon and not args.reason.strip():
        parser.error("--abandon requires --reason")

    from deps.pools import get_authorization_client, get_disbursement_orchestrator, get_finalizer, get_grant_store

    store = get_grant_store()
    if args.abandon:
        client = get_authorization_client()
        orchestrator = get_disbursement_orchestrator(store, client, get_finalizer(store, client))
        d = orchestrator.abandon_in_doubt(args.pool_id, args.abandon, reason=args.reason.strip())
        print(f"abandoned transaction_id={d.transaction_id} amount={d.amount} status={d.status.value}")

    pool = store.get(args.pool_id).public_view()
    print(
        f"pool={pool['pool_id']} state={pool['state']} "
        f"disbursed={pool['disbursed_amount']}/{pool['total_amount']}"
    )
    rows = needs_attention(store, args.pool_id)
    if not rows:
        print("No disbursements need attention.")
        return 0
    for r in rows:
        print(r)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
