# app/providers/base.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol


@dataclass(frozen=True)
class WalletAddress:
    id: str
    asset_code: str
    asset_scale: int
    auth_server: str
    resource_server: str
    public_name: Optional[str] = None


@dataclass(frozen=True)
class Continuation:
    uri: str
    access_token: str
    wait: Optional[int] = None


@dataclass(frozen=True)
class GrantResult:
    """
    Authorization server answer to a grant request or continuation.

    Pending grants carry interaction + continuation; finalized grants carry
    an access token.
    """

    access_token: Optional[str] = None
    continuation: Optional[Continuation] = None
    interact_redirect: Optional[str] = None
    interact_finish: Optional[str] = None
    response: Optional[dict[str, Any]] = None

    @property
    def is_finalized(self) -> bool:
        return bool(self.access_token)

    @property
    def is_pending(self) -> bool:
        return not self.access_token and self.interact_redirect is not None


@dataclass(frozen=True)
class PaymentResource:
    """Incoming payment, quote or outgoing payment as created on a resource server."""

    id: str
    metadata: dict[str, Any] = field(default_factory=dict)
    response: Optional[dict[str, Any]] = None


class AuthorizationClient(Protocol):
    """
    Capability the pool core depends on to talk to Open Payments servers.

    Implementations raise UpstreamAuthorizationError (or AuthorizationStaleError)
    for authorization server failures and UpstreamResourceError for resource
    server failures.
    """

    def get_wallet_address(self, url: str) -> WalletAddress: ...

    def request_grant(
        self,
        auth_server: str,
        *,
        access: list[dict[str, Any]],
        interact: Optional[dict[str, Any]] = None,
    ) -> GrantResult: ...

    def continue_grant(self, continuation: Continuation, *, interact_ref: Optional[str] = None) -> GrantResult: ...

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
    ) -> PaymentResource: ...

    def create_quote(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        receiver: str,
    ) -> PaymentResource: ...

    def create_outgoing_payment(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
        quote_id: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> PaymentResource: ...

    def list_outgoing_payments(
        self,
        resource_server: str,
        access_token: str,
        *,
        wallet_address: str,
    ) -> list[PaymentResource]: ...
