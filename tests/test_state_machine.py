import pytest

from threadline.services.state_machine import (
    InvalidTransitionError,
    ReplyState,
    ReplyStateTracker,
    can_transition,
    is_terminal,
    transition,
)


class TestValidTransitions:
    def test_admitted_to_evaluating(self):
        assert transition(ReplyState.ADMITTED, ReplyState.EVALUATING) == ReplyState.EVALUATING

    @pytest.mark.parametrize("target", [ReplyState.SKIPPED, ReplyState.ESCALATED, ReplyState.REPLYING])
    def test_evaluating_outcomes(self, target):
        assert transition(ReplyState.EVALUATING, target) == target

    def test_replying_to_replied(self):
        assert transition(ReplyState.REPLYING, ReplyState.REPLIED) == ReplyState.REPLIED

    def test_replying_to_failed(self):
        assert transition(ReplyState.REPLYING, ReplyState.FAILED) == ReplyState.FAILED

    def test_replying_to_skipped_on_duplicate_send(self):
        assert can_transition(ReplyState.REPLYING, ReplyState.SKIPPED)


class TestInvalidTransitions:
    def test_admitted_cannot_reply_directly(self):
        with pytest.raises(InvalidTransitionError):
            transition(ReplyState.ADMITTED, ReplyState.REPLYING)

    def test_evaluating_cannot_finish_as_replied(self):
        with pytest.raises(InvalidTransitionError):
            transition(ReplyState.EVALUATING, ReplyState.REPLIED)

    @pytest.mark.parametrize(
        "terminal", [ReplyState.SKIPPED, ReplyState.ESCALATED, ReplyState.REPLIED, ReplyState.FAILED]
    )
    def test_terminal_states_have_no_exits(self, terminal):
        assert is_terminal(terminal)
        with pytest.raises(InvalidTransitionError):
            transition(terminal, ReplyState.EVALUATING)

    def test_error_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            transition(ReplyState.REPLIED, ReplyState.FAILED)
        assert "replied -> failed" in str(exc_info.value)


class TestReplyStateTracker:
    def test_starts_admitted(self):
        tracker = ReplyStateTracker()
        assert tracker.state == ReplyState.ADMITTED
        assert tracker.decision == "processing"

    def test_records_history_and_decision(self):
        tracker = ReplyStateTracker()
        tracker.advance(ReplyState.EVALUATING)
        tracker.advance(ReplyState.ESCALATED)

        assert tracker.history == [ReplyState.ADMITTED, ReplyState.EVALUATING, ReplyState.ESCALATED]
        assert tracker.decision == "notified_human"

    def test_invalid_advance_keeps_state(self):
        tracker = ReplyStateTracker()
        with pytest.raises(InvalidTransitionError):
            tracker.advance(ReplyState.REPLIED)
        assert tracker.state == ReplyState.ADMITTED
