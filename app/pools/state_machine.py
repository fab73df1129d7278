# app/pools/state_machine.py
from __future__ import annotations

from app.pools.models import GrantState


class InvalidTransition(Exception):
    pass


ALLOWED: dict[GrantState, set[GrantState]] = {
    GrantState.REQUESTED: {GrantState.PENDING_AUTH, GrantState.FAILED, GrantState.EXPIRED},
    GrantState.PENDING_AUTH: {GrantState.AUTHORIZED, GrantState.FAILED, GrantState.EXPIRED},
    GrantState.AUTHORIZED: {GrantState.FINALIZED, GrantState.FAILED, GrantState.EXPIRED},
    GrantState.FINALIZED: {GrantState.FAILED, GrantState.EXPIRED},
    GrantState.EXPIRED: set(),
    GrantState.FAILED: set(),
}

TERMINAL_STATES = frozenset({GrantState.EXPIRED, GrantState.FAILED})


def assert_transition(old: GrantState, new: GrantState) -> None:
    if old == new:
        # field-only update (e.g. spend reservation on a FINALIZED grant)
        return
    if new not in ALLOWED.get(old, set()):
        raise InvalidTransition(f"Illegal pool grant transition: {old.value} -> {new.value}")


def assert_finalized_invariant(state: GrantState, access_token: str | None) -> None:
    """
    Invariant: a FINALIZED grant MUST carry its access token.
    """
    if state == GrantState.FINALIZED and not access_token:
        raise ValueError("Invariant violation: state=FINALIZED requires access_token")


def assert_authorized_invariant(state: GrantState, interact_ref: str | None) -> None:
    if state in (GrantState.AUTHORIZED, GrantState.FINALIZED) and not interact_ref:
        raise ValueError(f"Invariant violation: state={state.value} requires interact_ref")
