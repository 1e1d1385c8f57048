"""Action planning for (observed, desired) state pairs."""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Tuple

from ..errors import TransitionError
from ..models import Action, DesiredState, ObservedStatus, Verb

_O = ObservedStatus
_D = DesiredState

# Verb sequences per (observed, desired). STOP entries are (verb, force).
TRANSITIONS: Dict[Tuple[ObservedStatus, DesiredState], Tuple[Tuple[Verb, bool], ...]] = {
    (_O.ABSENT, _D.RUNNING): ((Verb.CREATE, False), (Verb.START, False)),
    (_O.ABSENT, _D.STOPPED): (),
    (_O.ABSENT, _D.ABSENT): (),
    (_O.CREATED, _D.RUNNING): ((Verb.START, False),),
    (_O.CREATED, _D.STOPPED): (),
    (_O.CREATED, _D.ABSENT): ((Verb.REMOVE, False),),
    (_O.RUNNING, _D.RUNNING): (),
    (_O.RUNNING, _D.STOPPED): ((Verb.STOP, False),),
    (_O.RUNNING, _D.ABSENT): ((Verb.STOP, True), (Verb.REMOVE, False)),
    (_O.STOPPED, _D.RUNNING): ((Verb.START, False),),
    (_O.STOPPED, _D.STOPPED): (),
    (_O.STOPPED, _D.ABSENT): ((Verb.REMOVE, False),),
}

# Observed statuses that satisfy each desired state
TERMINAL: Dict[DesiredState, FrozenSet[ObservedStatus]] = {
    _D.RUNNING: frozenset({_O.RUNNING}),
    _D.STOPPED: frozenset({_O.STOPPED, _O.CREATED, _O.ABSENT}),
    _D.ABSENT: frozenset({_O.ABSENT}),
}


def plan(service: str, observed: ObservedStatus, desired: DesiredState) -> List[Action]:
    """Return the action sequence taking ``observed`` to ``desired``.

    Raises TransitionError for UNKNOWN, which never gets an action.
    """
    if observed is ObservedStatus.UNKNOWN:
        raise TransitionError(f"{service}: runtime state unknown, refusing to act")
    steps = TRANSITIONS[(observed, desired)]
    return [Action(service=service, verb=verb, force=force) for verb, force in steps]


def is_converged(observed: ObservedStatus, desired: DesiredState) -> bool:
    return observed in TERMINAL[desired]


__all__ = ["TERMINAL", "TRANSITIONS", "is_converged", "plan"]
