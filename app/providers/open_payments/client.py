# app/providers/open_payments/client.py
from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from app.pools.errors import AuthorizationStaleError, UpstreamAuthorizationError, UpstreamResourceError
from app.providers.base import Continuation, GrantResult, PaymentResource, WalletAddress
from app.providers.open_payments.http import HttpClient, HttpResponse, is_retryable_http, is_stale_grant_http

logger = logging.getLogger("kanzu.open_payments")

LIST_PAGE_SIZE = 100
LIST_MAX_PAGES = 20


def normalize_wallet_address_url(value: str) -> str:
    """Accepts payment pointers ($host/path) as well as https URLs."""
    v = (value or "").strip()
    if v.startswith("$"):
        return "https://" + v[1:]
    return v


def _gnap(token: str) -> dict[str, str]:
    return {"Authorization": f"GNAP {token}"}


def _error_code(resp: HttpResponse) -> Optional[str]:
    payload = resp.json if isinstance(resp.json, dict) else {}
    err = payload.get("error")
    if isinstance(err, dict):
        return err.get("code")
    if isinstance(err, str):
        return err
    return None


def _parse_grant(payload: dict[str, Any]) -> GrantResult:
    access_token = (payload.get("access_token") or {}).get("value")
    cont = payload.get("continue") or {}
    continuation = None
    if cont.get("uri") and (cont.get("access_token") or {}).get("value"):
        continuation = Continuation(
            uri=cont["uri"],
            access_token=cont["access_token"]["value"],
            wait=cont.get("wait"),
        )
    interact = payload.get("interact") or {}
    return GrantResult(
        access_token=access_token,
        continuation=continuation,
        interact_redirect=interact.get("redirect"),
        interact_finish=interact.get("finish"),
        response=payload,
    )


def _parse_resource(resp: HttpResponse, *, kind: str) -> PaymentResource:
    payload = resp.json if isinstance(resp.json, dict) else {}
    rid = payload.get("id")
    if not rid:
        raise UpstreamResourceError(
            f"{kind} response missing id",
            http_status=resp.status_code,
            retryable=False,
        )
    return PaymentResource(id=rid, metadata=payload.get("metadata") or {}, response=payload)


class OpenPaymentsClient:
    """
    AuthorizationClient speaking the Open Payments (GNAP) JSON API over httpx.

    Request signing is delegated to the HttpClient's signer; this class only
    knows the request/response shapes and how to classify failures.
    """

    def __init__(self, *, client_wallet_address: str, http: HttpClient):
        self.client_wallet_address = normalize_wallet_address_url(client_wallet_address)
        self.http = http

    # ---------------------------
    # Wallet addresses
    # ---------------------------

    def get_wallet_address(self, url: str) -> WalletAddress:
        target = normalize_wallet_address_url(url)
        try:
            resp = self.http.get(target)
        except httpx.HTTPError as exc:
            raise UpstreamResourceError(f"wallet address lookup failed: {type(exc).__name__}", retryable=True) from exc

        payload = resp.json if isinstance(resp.json, dict) else None
        if resp.status_code != 200 or payload is None:
            raise UpstreamResourceError(
                f"wallet address lookup failed: HTTP {resp.status_code}",
                code="WALLET_RESOLUTION_FAILED",
                http_status=resp.status_code,
                retryable=is_retryable_http(resp.status_code),
            )
        try:
            return WalletAddress(
                id=payload["id"],
                asset_code=payload["assetCode"],
                asset_scale=int(payload["assetScale"]),
                auth_server=payload["authServer"],
                resource_server=payload["resourceServer"],
                public_name=payload.get("publicName"),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamResourceError(
                f"wallet address {target} returned an incomplete document",
                code="WALLET_RESOLUTION_FAILED",
                http_status=resp.status_code,
                retryable=False,
            ) from exc

    # ---------------------------
    # Grants
    # ---------------------------

    def request_grant(
        self,
        auth_server: str,
        *,
        access: list[dict[str, Any]],
        interact: Optional[dict[str, Any]] = None,
    ) -> GrantResult:
        body: dict[str, Any] = {
            "access_token": {"access": access},
            "client": self.client_wallet_address,
        }
        if interact is not None:
            body["interact"] = interact

        try:
            resp = self.http.post(auth_server, json_body=body)
        except httpx.HTTPError as exc:
            raise UpstreamAuthorizationError(f"grant request failed: {type(exc).__name__}", retryable=True) from exc

        logger.info(
            "grant request status=%s auth_server=%s access_types=%s",
            resp.status_code,
            auth_server,
            ",".join(a.get("type", "") for a in access),
        )
        if resp.status_code not in (200, 201) or not isinstance(resp.json, dict):
            raise UpstreamAuthorizationError(
                f"grant request rejected: HTTP {resp.status_code} {_error_code(resp) or ''}".strip(),
                http_status=resp.status_code,
                retryable=is_retryable_http(resp.status_code),
            )
        return _parse_grant(resp.json)

    def continue_grant(self, continuation: Continuation, *, interact_ref: Optional[str] = None) -> GrantResult:
        body: dict[str, Any] = {}
        if interact_ref:
            body["interact_ref"] = interact_ref

        try:
            resp = self.http.post(continuation.uri, headers=_gnap(continuation.access_token), json_body=body)
        except httpx.HTTPError as exc:
            raise UpstreamAuthorizationError(f"grant continuation failed: {type(exc).__name__}", retryable=True) from exc

        logger.info("grant continue status=%s", resp.status_code)
        if resp.status_code in (200, 201) and isinstance(resp.json, dict):
            return _parse_grant(resp.json)

        err = _error_code(resp)
        if is_stale_grant_http(resp.status_code, err):
            raise AuthorizationStaleError(
                f"continuation rejected: HTTP {resp.status_code} {err or ''}".strip(),
                http_status=resp.status_code,
            )
        raise UpstreamAuthorizationError(
            f"grant continuation failed: HTTP {resp.status_code} {err or ''}".strip(),
            http_status=resp.status_code,
            retryable=is_retryable_http(resp.status_code),
        )

    # ---------------------------
    # Resources
    # ---------------------------

    def _create(self, url: str, access_token: str, body: dict[str, Any], *, kind: str) -> PaymentResource:
        try:
            resp = self.http.post(url, headers=_gnap(access_token), json_body=body)
        except httpx.HTTPError as exc:
            # No response observed: the server may or may not have created it.
            raise UpstreamResourceError(f"{kind} create failed: {type(exc).__name__}", retryable=True) from exc

        logger.info("%s create status=%s", kind, resp.status_code)
        if resp.status_code not in (200, 201):
            raise UpstreamResourceError(
                f"{kind} create failed: HTTP {resp.status_code} {_error_code(resp) or ''}".strip(),
                http_status=resp.status_code,
                retryable=is_retryable_http(resp.status_code),
            )
        return _parse_resource(resp, kind=kind)

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
        body = {
            "walletAddress": wallet_address,
            "incomingAmount": {
                "value": str(int(amount)),
                "assetCode": asset_code,
                "assetScale": int(asset_scale),
            },
            "metadata": metadata or {},
        }
        return self._create(f"{resource_server.rstrip('/')}/incoming-payments", access_token, body, kind="incoming_payment")

    def create_quote(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        receiver: str,
    ) -> PaymentResource:
        body = {"walletAddress": wallet_address, "receiver": receiver, "method": "ilp"}
        return self._create(f"{resource_server.rstrip('/')}/quotes", access_token, body, kind="quote")

    def create_outgoing_payment(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        quote_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentResource:
        body = {"walletAddress": wallet_address, "quoteId": quote_id, "metadata": metadata or {}}
        return self._create(
            f"{resource_server.rstrip('/')}/outgoing-payments", access_token, body, kind="outgoing_payment"
        )

    def list_outgoing_payments(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
    ) -> list[PaymentResource]:
        url = f"{resource_server.rstrip('/')}/outgoing-payments"
        out: list[PaymentResource] = []
        cursor: Optional[str] = None

        for _ in range(LIST_MAX_PAGES):
            params: dict[str, Any] = {"wallet-address": wallet_address, "first": LIST_PAGE_SIZE}
            if cursor:
                params["cursor"] = cursor
            try:
                resp = self.http.get(url, headers=_gnap(access_token), params=params)
            except httpx.HTTPError as exc:
                raise UpstreamResourceError(f"outgoing payment list failed: {type(exc).__name__}", retryable=True) from exc

            if resp.status_code != 200 or not isinstance(resp.json, dict):
                raise UpstreamResourceError(
                    f"outgoing payment list failed: HTTP {resp.status_code}",
                    http_status=resp.status_code,
                    retryable=is_retryable_http(resp.status_code),
                )

            for item in resp.json.get("result") or []:
                if isinstance(item, dict) and item.get("id"):
                    out.append(PaymentResource(id=item["id"], metadata=item.get("metadata") or {}, response=item))

            page = resp.json.get("pagination") or {}
            if not page.get("hasNextPage") or not page.get("endCursor"):
                return out
            cursor = page["endCursor"]

        # a partial listing cannot prove a payment is absent
        raise UpstreamResourceError(
            f"outgoing payment list truncated after {LIST_MAX_PAGES} pages",
            code="OUTGOING_LIST_TRUNCATED",
            retryable=False,
        )
