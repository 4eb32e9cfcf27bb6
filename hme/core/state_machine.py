"""
Popup phases and the transition table between them.

Pure lookup, no I/O. Each phase has its own action literal so that a static
checker rejects a (phase, action) pair the table does not define; the runtime
guard in transition() only fires for callers that bypass typing.
"""
from enum import Enum
from typing import Dict, Literal, Mapping, Optional, Tuple, TypeGuard, Union, get_args, overload

from hme.icloud.errors import IllegalTransition


class Phase(str, Enum):
    # Interaction Surface: Sign-in form
    # Session: empty, or remembered but unverified
    SIGNED_OUT = "SignedOut"

    # Interaction Surface: 2FA code entry
    # Session: credentials accepted, second factor pending
    SIGNED_IN = "SignedIn"

    # Interaction Surface: Address generator
    # Session: authenticated (webservices + dsInfo present)
    VERIFIED = "Verified"

    # Interaction Surface: Address manager
    # Session: authenticated
    VERIFIED_AND_MANAGING = "VerifiedAndManaging"


SignedOutAction = Literal["SUCCESSFUL_SIGN_IN"]
SignedInAction = Literal["SUCCESSFUL_VERIFICATION", "SUCCESSFUL_SIGN_OUT"]
VerifiedAction = Literal["MANAGE", "SUCCESSFUL_SIGN_OUT"]
VerifiedAndManagingAction = Literal["GENERATE", "SUCCESSFUL_SIGN_OUT"]

Action = Union[SignedOutAction, SignedInAction, VerifiedAction, VerifiedAndManagingAction]

INITIAL_PHASE = Phase.SIGNED_OUT

TRANSITIONS: Mapping[Phase, Mapping[str, Phase]] = {
    Phase.SIGNED_OUT: {
        "SUCCESSFUL_SIGN_IN": Phase.SIGNED_IN,
    },
    Phase.SIGNED_IN: {
        "SUCCESSFUL_VERIFICATION": Phase.VERIFIED,
        "SUCCESSFUL_SIGN_OUT": Phase.SIGNED_OUT,
    },
    Phase.VERIFIED: {
        "MANAGE": Phase.VERIFIED_AND_MANAGING,
        "SUCCESSFUL_SIGN_OUT": Phase.SIGNED_OUT,
    },
    Phase.VERIFIED_AND_MANAGING: {
        "GENERATE": Phase.VERIFIED,
        "SUCCESSFUL_SIGN_OUT": Phase.SIGNED_OUT,
    },
}

# Phases that require an authenticated session to be consistent
VERIFIED_PHASES = (Phase.VERIFIED, Phase.VERIFIED_AND_MANAGING)


@overload
def transition(phase: Literal[Phase.SIGNED_OUT], action: SignedOutAction) -> Phase: ...
@overload
def transition(phase: Literal[Phase.SIGNED_IN], action: SignedInAction) -> Phase: ...
@overload
def transition(phase: Literal[Phase.VERIFIED], action: VerifiedAction) -> Phase: ...
@overload
def transition(phase: Literal[Phase.VERIFIED_AND_MANAGING], action: VerifiedAndManagingAction) -> Phase: ...
def transition(phase: Phase, action: str) -> Phase:
    """Next phase for a legal (phase, action) pair."""
    try:
        return TRANSITIONS[phase][action]
    except KeyError:
        raise IllegalTransition(phase, action) from None


def _signed_out_action(action: str) -> TypeGuard[SignedOutAction]:
    return action in get_args(SignedOutAction)


def _signed_in_action(action: str) -> TypeGuard[SignedInAction]:
    return action in get_args(SignedInAction)


def _verified_action(action: str) -> TypeGuard[VerifiedAction]:
    return action in get_args(VerifiedAction)


def _managing_action(action: str) -> TypeGuard[VerifiedAndManagingAction]:
    return action in get_args(VerifiedAndManagingAction)


def next_phase(phase: Phase, action: str) -> Phase:
    """
    transition() for a phase only known at runtime. Both sides are narrowed to
    a matching overload first, so every call below is statically checked.
    """
    if phase is Phase.SIGNED_OUT and _signed_out_action(action):
        return transition(phase, action)
    if phase is Phase.SIGNED_IN and _signed_in_action(action):
        return transition(phase, action)
    if phase is Phase.VERIFIED and _verified_action(action):
        return transition(phase, action)
    if phase is Phase.VERIFIED_AND_MANAGING and _managing_action(action):
        return transition(phase, action)
    raise IllegalTransition(phase, action)


def legal_actions(phase: Phase) -> Tuple[str, ...]:
    return tuple(TRANSITIONS[phase].keys())


def is_legal(phase: Phase, action: str) -> bool:
    return action in TRANSITIONS.get(phase, {})


def parse_phase(raw: Optional[str]) -> Phase:
    """Persisted phase value -> Phase. Unknown or missing values rest at SIGNED_OUT."""
    if raw is None:
        return INITIAL_PHASE
    try:
        return Phase(raw)
    except ValueError:
        return INITIAL_PHASE


def edges() -> Dict[Tuple[Phase, str], Phase]:
    """Flattened view of the table, handy for audits and tests."""
    return {(p, a): nxt for p, actions in TRANSITIONS.items() for a, nxt in actions.items()}
