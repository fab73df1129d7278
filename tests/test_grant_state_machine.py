import pytest

from app.pools.models import GrantState
from app.pools.state_machine import (
    InvalidTransition,
    assert_authorized_invariant,
    assert_finalized_invariant,
    assert_transition,
)


def test_valid_transitions():
    assert_transition(GrantState.REQUESTED, GrantState.PENDING_AUTH)
    assert_transition(GrantState.PENDING_AUTH, GrantState.AUTHORIZED)
    assert_transition(GrantState.AUTHORIZED, GrantState.FINALIZED)


def test_any_live_state_can_fail_or_expire():
    for state in (GrantState.REQUESTED, GrantState.PENDING_AUTH, GrantState.AUTHORIZED, GrantState.FINALIZED):
        assert_transition(state, GrantState.FAILED)
        assert_transition(state, GrantState.EXPIRED)


def test_same_state_is_a_field_update():
    assert_transition(GrantState.FINALIZED, GrantState.FINALIZED)


def test_invalid_transition_skipping_states():
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.PENDING_AUTH, GrantState.FINALIZED)
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.REQUESTED, GrantState.AUTHORIZED)


def test_no_backwards_transitions():
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.FINALIZED, GrantState.AUTHORIZED)
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.AUTHORIZED, GrantState.PENDING_AUTH)


def test_terminal_states_cannot_transition():
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.EXPIRED, GrantState.PENDING_AUTH)
    with pytest.raises(InvalidTransition):
        assert_transition(GrantState.FAILED, GrantState.REQUESTED)


def test_finalized_requires_access_token():
    with pytest.raises(ValueError):
        assert_finalized_invariant(GrantState.FINALIZED, None)
    assert_finalized_invariant(GrantState.FINALIZED, "tok")
    assert_finalized_invariant(GrantState.AUTHORIZED, None)


def test_authorized_requires_interact_ref():
    with pytest.raises(ValueError):
        assert_authorized_invariant(GrantState.AUTHORIZED, None)
    with pytest.raises(ValueError):
        assert_authorized_invariant(GrantState.FINALIZED, "")
    assert_authorized_invariant(GrantState.PENDING_AUTH, None)
