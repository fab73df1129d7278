from __future__ import annotations

import json
import hashlib
from typing import Any


def request_hash(payload: dict[str, Any]) -> str:
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def disbursement_hash(*, pool_id: str, recipient_wallet: str, amount: int) -> str:
    """
    Identity of a disbursement's logical content.

    A transaction_id replayed with a different recipient or amount is a
    conflict, never a silent retry.
    """
    return request_hash(
        {
            "pool_id": pool_id,
            "recipient_wallet": (recipient_wallet or "").strip(),
            "amount": int(amount),
        }
    )
