"""
Workflow -- declarative state machines for payment processes.

Responsibility:
    Frozen declarations of states, transitions and guards, plus the single
    lookup every service uses to move an entity between states.  Modules
    declare their graphs in ``<module>/workflows.py``; services call
    ``Workflow.next_state`` and never assign a status that is not declared.

Architecture position:
    Kernel > Domain.  Pure data and lookup, no I/O.

Failure modes:
    - InvalidTransitionError when no declared transition matches the
      current state, action and satisfied guards.
"""

from dataclasses import dataclass

from payment_kernel.exceptions import InvalidTransitionError


@dataclass(frozen=True)
class Guard:
    """
    A named condition that must hold for a transition.

    Contract:
        The service evaluates the condition and passes the names of the
        guards that hold to ``Workflow.next_state``.
    """
    name: str
    description: str


@dataclass(frozen=True)
class Transition:
    """A valid edge in a workflow graph."""
    from_state: str
    to_state: str
    action: str
    guard: Guard | None = None
    posts_entry: bool = False


@dataclass(frozen=True)
class Workflow:
    """
    A state machine definition.

    Contract:
        ``initial_state`` and every transition endpoint are members of
        ``states``.  When several transitions share a ``from_state`` and
        ``action``, the first whose guard is absent or satisfied wins, so
        guarded edges are declared before their unguarded fallback.
    """
    name: str
    description: str
    initial_state: str
    states: tuple[str, ...]
    transitions: tuple[Transition, ...]
    terminal_states: tuple[str, ...] = ()

    def __post_init__(self):
        if self.initial_state not in self.states:
            raise ValueError(f"{self.name}: initial state {self.initial_state!r} not declared")
        for t in self.transitions:
            if t.from_state not in self.states or t.to_state not in self.states:
                raise ValueError(
                    f"{self.name}: transition {t.from_state}->{t.to_state} uses undeclared state"
                )

    def allowed_actions(self, from_state: str) -> tuple[str, ...]:
        state = str(getattr(from_state, "value", from_state))
        return tuple(dict.fromkeys(t.action for t in self.transitions if t.from_state == state))

    def transition_for(
        self,
        from_state: str,
        action: str,
        satisfied: frozenset[str] = frozenset(),
    ) -> Transition:
        state = str(getattr(from_state, "value", from_state))
        for t in self.transitions:
            if t.from_state != state or t.action != action:
                continue
            if t.guard is None or t.guard.name in satisfied:
                return t
        raise InvalidTransitionError(self.name, state, action)

    def next_state(
        self,
        from_state: str,
        action: str,
        satisfied: frozenset[str] = frozenset(),
    ) -> str:
        return self.transition_for(from_state, action, satisfied).to_state

    def is_terminal(self, state: str) -> bool:
        return str(getattr(state, "value", state)) in self.terminal_states
