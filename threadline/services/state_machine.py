from enum import Enum


class ReplyState(str, Enum):
    ADMITTED = "admitted"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    ESCALATED = "escalated"
    REPLYING = "replying"
    REPLIED = "replied"
    FAILED = "failed"


VALID_TRANSITIONS = {
    ReplyState.ADMITTED: [ReplyState.EVALUATING],
    ReplyState.EVALUATING: [ReplyState.SKIPPED, ReplyState.ESCALATED, ReplyState.REPLYING],
    # SKIPPED when the ledger reports the reply was already sent
    ReplyState.REPLYING: [ReplyState.REPLIED, ReplyState.FAILED, ReplyState.SKIPPED],
    ReplyState.ESCALATED: [],
    ReplyState.SKIPPED: [],
    ReplyState.REPLIED: [],
    ReplyState.FAILED: [],
}

TERMINAL_STATES = frozenset({ReplyState.SKIPPED, ReplyState.ESCALATED, ReplyState.REPLIED, ReplyState.FAILED})

# Audit-log decision written for each terminal state
DECISION_BY_STATE = {
    ReplyState.SKIPPED: "skipped",
    ReplyState.ESCALATED: "notified_human",
    ReplyState.REPLIED: "replied",
    ReplyState.FAILED: "failed",
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: ReplyState, to_state: ReplyState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: ReplyState, to_state: ReplyState) -> bool:
    """Check if transition is valid."""
    allowed = VALID_TRANSITIONS.get(from_state, [])
    return to_state in allowed


def transition(from_state: ReplyState, to_state: ReplyState) -> ReplyState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


def is_terminal(state: ReplyState) -> bool:
    return state in TERMINAL_STATES


class ReplyStateTracker:
    """Walks one inbound message through the pipeline states."""

    def __init__(self):
        self.state = ReplyState.ADMITTED
        self.history = [ReplyState.ADMITTED]

    def advance(self, to_state: ReplyState) -> ReplyState:
        self.state = transition(self.state, to_state)
        self.history.append(self.state)
        return self.state

    @property
    def decision(self) -> str:
        return DECISION_BY_STATE.get(self.state, "processing")
