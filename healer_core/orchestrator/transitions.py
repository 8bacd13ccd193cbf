from typing import Dict, FrozenSet

from ..exceptions import InvalidTransition
from ..schemas.incident import TERMINAL_STATES, IncidentState

S = IncidentState

LEGAL_TRANSITIONS: Dict[IncidentState, FrozenSet[IncidentState]] = {
    S.NEW: frozenset({S.DISCOVERY}),
    S.DISCOVERY: frozenset({S.BASELINE}),
    S.BASELINE: frozenset({S.BACKUP}),
    S.BACKUP: frozenset({S.OBSERVABILITY}),
    S.OBSERVABILITY: frozenset({S.FIX_ATTEMPT}),
    S.FIX_ATTEMPT: frozenset({S.VERIFY, S.ESCALATED}),
    S.VERIFY: frozenset({S.FIXED, S.FIX_ATTEMPT, S.ROLLBACK}),
    S.ROLLBACK: frozenset({S.ESCALATED}),
    S.FIXED: frozenset(),
    S.ESCALATED: frozenset(),
}


def is_legal(from_state: IncidentState, to_state: IncidentState, failure: bool = False) -> bool:
    if from_state in TERMINAL_STATES:
        return False
    if to_state in LEGAL_TRANSITIONS[from_state]:
        return True
    # A failed phase may always hand off to a human
    return failure and to_state == S.ESCALATED


def check_transition(from_state: IncidentState, to_state: IncidentState, failure: bool = False):
    """Raise InvalidTransition unless from_state -> to_state is allowed."""
    if is_legal(from_state, to_state, failure):
        return
    if from_state in TERMINAL_STATES:
        message = f"Incident is {from_state.value}; terminal incidents cannot change state"
    else:
        message = f"Illegal transition {from_state.value} -> {to_state.value}"
    raise InvalidTransition(message, from_state=from_state.value, to_state=to_state.value)
