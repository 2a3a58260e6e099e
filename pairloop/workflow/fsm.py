"""
Phase state machine for a pair-mode run, using the transitions library.

Phases:
    initializing -> review <-> execute <-> consensus -> completed | error

`paused` is reachable from any active phase (review, execute, consensus)
and `resume` returns to whichever phase was interrupted.

Usage:
    from pairloop.workflow.fsm import PhaseFSM

    fsm = PhaseFSM("run-1")
    fsm.begin_review()
    fsm.pause()
    fsm.resume()        # back to review
    fsm.advance("begin_execute")   # raises InvalidPhaseTransition if not allowed
"""

import logging
from typing import Callable, Optional

from transitions import Machine, MachineError

logger = logging.getLogger(__name__)


PHASES = [
    "initializing",
    "review",
    "execute",
    "consensus",
    "paused",
    "completed",
    "error",
]

ACTIVE_PHASES = ["review", "execute", "consensus"]
TERMINAL_PHASES = ["completed", "error"]

TRANSITIONS = [
    # Reviewer warms up before the executor touches anything
    {"trigger": "begin_review", "source": "initializing", "dest": "review"},
    {"trigger": "begin_review", "source": "execute", "dest": "review"},
    {"trigger": "begin_review", "source": "consensus", "dest": "review"},

    {"trigger": "begin_execute", "source": "initializing", "dest": "execute"},
    {"trigger": "begin_execute", "source": "review", "dest": "execute"},
    {"trigger": "begin_execute", "source": "consensus", "dest": "execute"},

    {"trigger": "begin_consensus", "source": "review", "dest": "consensus"},
    {"trigger": "begin_consensus", "source": "execute", "dest": "consensus"},

    # Pause from any active phase; resume goes back where we were
    {"trigger": "pause", "source": ACTIVE_PHASES, "dest": "paused"},
    {"trigger": "resume", "source": "paused", "dest": "review", "conditions": "resumes_to_review"},
    {"trigger": "resume", "source": "paused", "dest": "execute", "conditions": "resumes_to_execute"},
    {"trigger": "resume", "source": "paused", "dest": "consensus", "conditions": "resumes_to_consensus"},

    {"trigger": "finish", "source": ACTIVE_PHASES, "dest": "completed"},
    {"trigger": "fail", "source": ["initializing", "paused"] + ACTIVE_PHASES, "dest": "error"},

    {"trigger": "reset", "source": TERMINAL_PHASES, "dest": "initializing"},
]


def _build_trigger_lookup() -> dict[tuple[str, str], str]:
    """Build lookup from (source, dest) -> trigger name."""
    lookup: dict[tuple[str, str], str] = {}
    for t in TRANSITIONS:
        sources = t["source"] if isinstance(t["source"], list) else [t["source"]]
        for source in sources:
            key = (source, t["dest"])
            if key not in lookup:
                lookup[key] = t["trigger"]
    return lookup


TRIGGER_FOR = _build_trigger_lookup()


class InvalidPhaseTransition(Exception):
    """Requested phase change is not allowed from the current phase."""

    def __init__(self, from_phase: str, trigger: str, run_id: str = ""):
        self.from_phase = from_phase
        self.trigger = trigger
        self.run_id = run_id
        super().__init__(f"Cannot {trigger} from phase '{from_phase}'" + (f" ({run_id})" if run_id else ""))


class PhaseFSM:
    """Phase machine for one pair-mode run.

    Phases live only in memory; the PRD file is the durable record of progress.
    """

    def __init__(
        self,
        run_id: str = "pair",
        on_transition: Optional[Callable[[str, str, str], None]] = None,
    ):
        """
        Args:
            run_id: Label used in log lines
            on_transition: Optional callback(from_phase, to_phase, trigger) called after transitions
        """
        self.run_id = run_id
        self.on_transition = on_transition
        self.paused_from: Optional[str] = None

        self.machine = Machine(
            model=self,
            states=PHASES,
            transitions=TRANSITIONS,
            initial="initializing",
            auto_transitions=False,
            send_event=True,
            after_state_change="on_state_change",
        )

    @property
    def phase(self) -> str:
        return self.state

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_PHASES

    def resumes_to_review(self, event) -> bool:
        return self.paused_from == "review"

    def resumes_to_execute(self, event) -> bool:
        return self.paused_from == "execute"

    def resumes_to_consensus(self, event) -> bool:
        return self.paused_from == "consensus"

    def on_state_change(self, event) -> None:
        """Callback after any transition. Remembers the interrupted phase and logs."""
        from_phase = event.transition.source
        to_phase = event.transition.dest
        trigger = event.event.name

        if to_phase == "paused":
            self.paused_from = from_phase
        elif from_phase == "paused":
            self.paused_from = None

        logger.info(f"[FSM] {self.run_id}: {from_phase} -> {to_phase} ({trigger})")

        if self.on_transition:
            self.on_transition(from_phase, to_phase, trigger)

    def advance(self, trigger: str) -> str:
        """Fire a trigger by name, raising InvalidPhaseTransition if it can't fire.

        Returns:
            The phase after the transition
        """
        from_phase = self.state
        try:
            moved = self.trigger(trigger)
        except (MachineError, AttributeError):
            raise InvalidPhaseTransition(from_phase, trigger, self.run_id) from None
        if not moved:
            raise InvalidPhaseTransition(from_phase, trigger, self.run_id)
        return self.state

    def move_to(self, phase: str) -> str:
        """Move to a phase by destination name. No-op if already there."""
        if self.state == phase:
            return self.state
        trigger = TRIGGER_FOR.get((self.state, phase))
        if trigger is None:
            raise InvalidPhaseTransition(self.state, f"move to '{phase}'", self.run_id)
        return self.advance(trigger)

    def can(self, trigger: str) -> bool:
        """Check if a trigger can be executed in current phase."""
        return trigger in self.machine.get_triggers(self.state)

    def get_available_triggers(self) -> list[str]:
        return self.machine.get_triggers(self.state)
