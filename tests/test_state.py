"""Stage sequence and transition rules."""

import pytest

from hlspipe.orchestrator.state import (
    all_completed,
    can_transition_item,
    can_transition_stage,
    check_stage_transition,
    current_step,
    InvalidTransitionError,
    last_completed_step,
    pending_steps,
    stage_sequence,
)


class TestStageSequence:

    def test_batch_ladder(self):
        assert stage_sequence(["240p", "360p", "480p", "720p"]) == [
            "download",
            "compress_240p",
            "compress_360p",
            "compress_480p",
            "compress_720p",
            "hls_generation",
            "upload",
            "cleanup",
        ]

    def test_pending_steps_keep_order(self):
        stages = stage_sequence(["240p"])
        assert list(pending_steps(stages)) == stages
        assert set(pending_steps(stages).values()) == {"pending"}


class TestTransitions:

    @pytest.mark.parametrize(
        "current, new, allowed",
        [
            ("pending", "processing", True),
            ("processing", "completed", True),
            ("processing", "failed", True),
            ("failed", "processing", True),
            ("pending", "completed", False),
            ("pending", "failed", False),
            ("completed", "processing", False),
            ("completed", "pending", False),
        ],
    )
    def test_stage_rules(self, current, new, allowed):
        assert can_transition_stage(current, new) is allowed

    def test_failed_item_is_terminal(self):
        assert not can_transition_item("failed", "processing")
        assert not can_transition_item("completed", "processing")
        assert can_transition_item("pending", "processing")

    def test_check_raises_value_error(self):
        with pytest.raises(ValueError, match="compress_240p"):
            check_stage_transition("compress_240p", "pending", "completed")
        with pytest.raises(InvalidTransitionError):
            check_stage_transition("upload", "completed", "failed")


class TestStepQueries:

    def test_all_completed(self):
        assert all_completed({"download": "completed", "cleanup": "completed"})
        assert not all_completed({"download": "completed", "cleanup": "failed"})
        assert not all_completed({})

    def test_last_completed_ignores_cleanup_after_failure(self):
        steps = {
            "download": "completed",
            "compress_240p": "completed",
            "compress_360p": "failed",
            "hls_generation": "pending",
            "upload": "pending",
            "cleanup": "completed",
        }
        assert last_completed_step(steps) == "compress_240p"

    def test_last_completed_when_nothing_done(self):
        assert last_completed_step({"download": "failed", "cleanup": "completed"}) is None

    def test_current_step(self):
        assert current_step({"download": "completed", "compress_240p": "processing"}) == "compress_240p"
        assert current_step({"download": "pending"}) is None
