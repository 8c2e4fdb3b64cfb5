"""Forward-only state lattices for escrows, trade legs and listeners.

Uses python-statemachine to define which transitions are legal. The
reconciler never loads a row to fire an event on it; instead it asks the
machine which *source* states an event may leave from and puts that set in
the UPDATE's WHERE clause. Terminal states have no outgoing transitions, so a
replayed or late event matches zero rows and becomes a no-op.

Escrow lattice:
    CREATED   -> FUNDED                                   (deposit)
    FUNDED    -> DISPUTED                                 (open_dispute)
    CREATED | FUNDED | DISPUTED -> RELEASED               (release)
    CREATED | FUNDED | DISPUTED -> CANCELLED              (cancel)
    CREATED | FUNDED | DISPUTED -> AUTO_CANCELLED         (auto_cancel)
    FUNDED | DISPUTED -> RESOLVED                         (resolve)

Trade-leg lattice adds FIAT_PAID between FUNDED and DISPUTED and has no
AUTO_CANCELLED (an auto-cancelled escrow leaves its leg CANCELLED).

Listener lifecycle:
    STOPPED -> STARTING -> MONITORING | DEGRADED -> STOPPED
"""

from __future__ import annotations

from functools import lru_cache

from statemachine import State, StateMachine
from statemachine.exceptions import TransitionNotAllowed


class _StartAt:
    """Mixin that starts a machine at a stored status string."""

    def __init__(self, current_state: str | None = None) -> None:
        if current_state is None:
            super().__init__()
            return
        valid_values = {s.value for s in self.states}
        if current_state not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(f"Unknown state '{current_state}'. Valid states: {valid}")
        super().__init__(start_value=current_state)

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the enum)."""
        return str(self.current_state.value)


class EscrowStateMachine(_StartAt, StateMachine):
    """Lattice guarding the `escrows.state` column.

    Usage:
        sm = EscrowStateMachine("FUNDED")
        sm.release()
        sm.status  # "RELEASED"
    """

    # --- States ---
    CREATED = State("CREATED", initial=True)
    FUNDED = State("FUNDED")
    DISPUTED = State("DISPUTED")
    RELEASED = State("RELEASED", final=True)
    RESOLVED = State("RESOLVED", final=True)
    CANCELLED = State("CANCELLED", final=True)
    AUTO_CANCELLED = State("AUTO_CANCELLED", final=True)

    # --- Transitions ---
    deposit = CREATED.to(FUNDED)
    open_dispute = FUNDED.to(DISPUTED)
    release = CREATED.to(RELEASED) | FUNDED.to(RELEASED) | DISPUTED.to(RELEASED)
    cancel = CREATED.to(CANCELLED) | FUNDED.to(CANCELLED) | DISPUTED.to(CANCELLED)
    auto_cancel = (
        CREATED.to(AUTO_CANCELLED) | FUNDED.to(AUTO_CANCELLED) | DISPUTED.to(AUTO_CANCELLED)
    )
    resolve = FUNDED.to(RESOLVED) | DISPUTED.to(RESOLVED)


class LegStateMachine(_StartAt, StateMachine):
    """Lattice guarding the `trades.legN_state` columns."""

    CREATED = State("CREATED", initial=True)
    FUNDED = State("FUNDED")
    FIAT_PAID = State("FIAT_PAID")
    DISPUTED = State("DISPUTED")
    RELEASED = State("RELEASED", final=True)
    RESOLVED = State("RESOLVED", final=True)
    CANCELLED = State("CANCELLED", final=True)

    deposit = CREATED.to(FUNDED)
    mark_fiat_paid = CREATED.to(FIAT_PAID) | FUNDED.to(FIAT_PAID)
    open_dispute = CREATED.to(DISPUTED) | FUNDED.to(DISPUTED) | FIAT_PAID.to(DISPUTED)
    release = (
        CREATED.to(RELEASED)
        | FUNDED.to(RELEASED)
        | FIAT_PAID.to(RELEASED)
        | DISPUTED.to(RELEASED)
    )
    cancel = (
        CREATED.to(CANCELLED)
        | FUNDED.to(CANCELLED)
        | FIAT_PAID.to(CANCELLED)
        | DISPUTED.to(CANCELLED)
    )
    resolve = (
        CREATED.to(RESOLVED)
        | FUNDED.to(RESOLVED)
        | FIAT_PAID.to(RESOLVED)
        | DISPUTED.to(RESOLVED)
    )


class ListenerStateMachine(_StartAt, StateMachine):
    """Lifecycle of a single network's event listener."""

    STOPPED = State("STOPPED", initial=True)
    STARTING = State("STARTING")
    MONITORING = State("MONITORING")
    DEGRADED = State("DEGRADED")

    begin = STOPPED.to(STARTING)
    monitor = STARTING.to(MONITORING)
    degrade = STARTING.to(DEGRADED)
    halt = STARTING.to(STOPPED) | MONITORING.to(STOPPED) | DEGRADED.to(STOPPED)


@lru_cache(maxsize=None)
def allowed_sources(machine_cls: type[StateMachine], event_name: str) -> frozenset[str]:
    """Return every state value from which `event_name` may fire.

    Raises:
        ValueError: If the machine defines no such event.
    """
    template = machine_cls()
    if not callable(getattr(template, event_name, None)):
        raise ValueError(f"Unknown event '{event_name}' for {machine_cls.__name__}")

    sources = set()
    for state in template.states:
        sm = machine_cls(state.value)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed:
            continue
        sources.add(str(state.value))
    return frozenset(sources)


@lru_cache(maxsize=None)
def transition_target(machine_cls: type[StateMachine], event_name: str) -> str:
    """Return the single state that `event_name` leads to."""
    targets = {
        validate_transition(machine_cls, source, event_name)
        for source in allowed_sources(machine_cls, event_name)
    }
    if len(targets) != 1:
        raise ValueError(f"Event '{event_name}' does not have a single target: {targets}")
    return targets.pop()


def validate_transition(
    machine_cls: type[StateMachine], current_state: str, event_name: str
) -> str:
    """Fire `event_name` from `current_state` and return the resulting state.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the state or event name is unknown.
    """
    sm = machine_cls(current_state)
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(f"Unknown event '{event_name}'")
    event_method()
    return sm.status
