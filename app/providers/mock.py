# app/providers/mock.py
from __future__ import annotations

import itertools
import threading
from typing import Any, Optional
from urllib.parse import urlparse

from app.pools.callback import interaction_hash
from app.pools.errors import AuthorizationStaleError, UpstreamAuthorizationError, UpstreamResourceError
from app.providers.base import Continuation, GrantResult, PaymentResource, WalletAddress
from app.providers.open_payments.client import normalize_wallet_address_url


class MockAuthorizationClient:
    """
    Test/dev stand-in for Open Payments servers.

    Simulates interactive grants (pending -> funder approval -> continuation),
    auto-finalized sub-grants and resource creation, and lets tests script
    failures:
    - fail_next(op, exc) raises `exc` on the next call of `op`.
    - drop_outgoing_response=True creates the outgoing payment and then
      raises as if the response were lost in transit.
    """

    def __init__(self, *, interactive_subgrants: bool = False, single_use_continuation: bool = True):
        self.interactive_subgrants = interactive_subgrants
        self.single_use_continuation = single_use_continuation
        self.drop_outgoing_response = False

        self.wallets: dict[str, WalletAddress] = {}
        self.grants: dict[str, dict[str, Any]] = {}
        self.incoming_payments: dict[str, dict[str, Any]] = {}
        self.quotes: dict[str, dict[str, Any]] = {}
        self.outgoing_payments: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []

        self._failures: dict[str, list[Exception]] = {}
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    # ---------------------------
    # Scripting helpers
    # ---------------------------

    def add_wallet(self, url: str, *, asset_code: str = "USD", asset_scale: int = 2) -> WalletAddress:
        wid = normalize_wallet_address_url(url)
        parsed = urlparse(wid)
        origin = f"{parsed.scheme}://{parsed.netloc}"
        wallet = WalletAddress(
            id=wid,
            asset_code=asset_code,
            asset_scale=asset_scale,
            auth_server=f"{parsed.scheme}://auth.{parsed.netloc}/",
            resource_server=origin,
        )
        self.wallets[wid] = wallet
        return wallet

    def fail_next(self, op: str, exc: Exception) -> None:
        self._failures.setdefault(op, []).append(exc)

    def approve(self, redirect_uri: str) -> dict[str, str]:
        """Plays the funder: approves the pending grant behind `redirect_uri`."""
        grant = self._grant_by(redirect=redirect_uri)
        grant["interact_ref"] = f"ref-{grant['id']}"
        finish = (grant.get("interact") or {}).get("finish") or {}
        return {
            "interact_ref": grant["interact_ref"],
            "hash": interaction_hash(
                client_nonce=finish.get("nonce", ""),
                finish_nonce=grant["finish_nonce"],
                interact_ref=grant["interact_ref"],
                grant_endpoint=grant["auth_server"],
            ),
            "callback_uri": finish.get("uri", ""),
        }

    def expire(self, redirect_uri: str) -> None:
        self._grant_by(redirect=redirect_uri)["expired"] = True

    def created(self, kind: str) -> int:
        return {
            "incoming_payment": len(self.incoming_payments),
            "quote": len(self.quotes),
            "outgoing_payment": len(self.outgoing_payments),
        }[kind]

    def _grant_by(self, *, redirect: Optional[str] = None, continue_uri: Optional[str] = None) -> dict[str, Any]:
        for g in self.grants.values():
            if redirect is not None and g["redirect"] == redirect:
                return g
            if continue_uri is not None and g["continue_uri"] == continue_uri:
                return g
        raise KeyError(redirect or continue_uri)

    def _maybe_fail(self, op: str) -> None:
        self.calls.append(op)
        queue = self._failures.get(op)
        if queue:
            raise queue.pop(0)

    def _next(self) -> int:
        with self._lock:
            return next(self._seq)

    # ---------------------------
    # AuthorizationClient
    # ---------------------------

    def get_wallet_address(self, url: str) -> WalletAddress:
        self._maybe_fail("get_wallet_address")
        wallet = self.wallets.get(normalize_wallet_address_url(url))
        if wallet is None:
            raise UpstreamResourceError(
                f"wallet address lookup failed: HTTP 404 for {url}",
                code="WALLET_RESOLUTION_FAILED",
                http_status=404,
                retryable=False,
            )
        return wallet

    def request_grant(
        self,
        auth_server: str,
        *,
        access: list[dict[str, Any]],
        interact: Optional[dict[str, Any]] = None,
    ) -> GrantResult:
        self._maybe_fail("request_grant")
        n = self._next()
        kind = access[0]["type"] if access else "unknown"

        if interact is None and not self.interactive_subgrants:
            return GrantResult(access_token=f"tok-{kind}-{n}", response={"mock": True})

        gid = str(n)
        grant = {
            "id": gid,
            "auth_server": auth_server,
            "access": access,
            "interact": interact,
            "redirect": f"{auth_server}interact/{gid}",
            "finish_nonce": f"finish-{gid}",
            "continue_uri": f"{auth_server}continue/{gid}",
            "continue_token": f"cont-{gid}",
            "interact_ref": None,
            "used": False,
            "expired": False,
        }
        self.grants[gid] = grant
        return GrantResult(
            continuation=Continuation(uri=grant["continue_uri"], access_token=grant["continue_token"], wait=1),
            interact_redirect=grant["redirect"],
            interact_finish=grant["finish_nonce"],
            response={"mock": True},
        )

    def continue_grant(self, continuation: Continuation, *, interact_ref: Optional[str] = None) -> GrantResult:
        self._maybe_fail("continue_grant")
        try:
            grant = self._grant_by(continue_uri=continuation.uri)
        except KeyError:
            raise AuthorizationStaleError("continuation rejected: HTTP 404", http_status=404)

        if continuation.access_token != grant["continue_token"]:
            raise AuthorizationStaleError("continuation rejected: HTTP 401", http_status=401)
        if grant["expired"] or (grant["used"] and self.single_use_continuation):
            raise AuthorizationStaleError("continuation rejected: HTTP 400 invalid_continuation", http_status=400)
        if grant["interact_ref"] is None or interact_ref != grant["interact_ref"]:
            raise UpstreamAuthorizationError(
                "grant continuation failed: HTTP 400 invalid_request",
                http_status=400,
                retryable=False,
            )

        grant["used"] = True
        grant["continue_token"] = f"cont-{grant['id']}-rotated"
        return GrantResult(
            access_token=f"tok-outgoing-payment-{grant['id']}",
            continuation=Continuation(uri=grant["continue_uri"], access_token=grant["continue_token"]),
            response={"mock": True},
        )

    def create_incoming_payment(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        amount: int,
        asset_code: str,
        asset_scale: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentResource:
        self._maybe_fail("create_incoming_payment")
        rid = f"{resource_server}/incoming-payments/{self._next()}"
        self.incoming_payments[rid] = {
            "walletAddress": wallet_address,
            "incomingAmount": {"value": str(amount), "assetCode": asset_code, "assetScale": asset_scale},
            "metadata": metadata or {},
        }
        return PaymentResource(id=rid, metadata=metadata or {})

    def create_quote(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        receiver: str,
    ) -> PaymentResource:
        self._maybe_fail("create_quote")
        if receiver not in self.incoming_payments:
            raise UpstreamResourceError("quote create failed: HTTP 400 invalid receiver", http_status=400, retryable=False)
        rid = f"{resource_server}/quotes/{self._next()}"
        self.quotes[rid] = {"walletAddress": wallet_address, "receiver": receiver, "used": False}
        return PaymentResource(id=rid)

    def create_outgoing_payment(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        quote_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentResource:
        self._maybe_fail("create_outgoing_payment")
        quote = self.quotes.get(quote_id)
        if quote is None or quote["used"]:
            raise UpstreamResourceError("outgoing_payment create failed: HTTP 400 invalid quote", http_status=400, retryable=False)
        quote["used"] = True
        rid = f"{resource_server}/outgoing-payments/{self._next()}"
        self.outgoing_payments[rid] = {"walletAddress": wallet_address, "quoteId": quote_id, "metadata": metadata or {}}
        if self.drop_outgoing_response:
            raise UpstreamResourceError("outgoing_payment create failed: ReadTimeout", retryable=True)
        return PaymentResource(id=rid, metadata=metadata or {})

    def list_outgoing_payments(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
    ) -> list[PaymentResource]:
        self._maybe_fail("list_outgoing_payments")
        return [
            PaymentResource(id=rid, metadata=p["metadata"])
            for rid, p in self.outgoing_payments.items()
            if p["walletAddress"] == wallet_address
        ]
