"""Tests for the iteration controller."""

import pytest

from fidelity.cancellation import CancellationToken
from fidelity.config import IterationSettings
from fidelity.controller import IterationController
from fidelity.errors import OperationCancelledError, TerminalStateError
from fidelity.models import (
    Category,
    Discrepancy,
    FidelityScore,
    IterationState,
    IterationStatus,
    Severity,
)


def scored(total: int) -> FidelityScore:
    return FidelityScore(total=total, breakdown={})


def run(controller: IterationController, totals: list[int]) -> list[IterationStatus]:
    return [controller.record(scored(t)).status for t in totals]


class TestIterationController:
    """Tests for the refinement state machine."""

    def test_initial_state(self) -> None:
        """New controller is running with an empty history."""
        controller = IterationController()
        assert controller.status is IterationStatus.RUNNING
        assert controller.state.iteration == 0
        assert controller.state.history == []

    def test_converges_at_threshold(self) -> None:
        """Score at the convergence threshold converges."""
        controller = IterationController()
        decision = controller.record(scored(95))
        assert decision.status is IterationStatus.CONVERGED
        assert decision.iteration == 1
        assert not decision.should_continue
        assert decision.actions == []
        assert "95" in decision.reason

    def test_running_below_threshold_returns_ranked_actions(self) -> None:
        """Score below the threshold keeps running and hands out ranked findings."""
        low = Discrepancy(Category.COLOR, Severity.LOW, "delta_e")
        high = Discrepancy(Category.STRUCTURE, Severity.HIGH, "ssim")
        controller = IterationController()
        decision = controller.record(scored(60), [low, high])
        assert decision.status is IterationStatus.RUNNING
        assert decision.should_continue
        assert decision.actions == [high, low]

    def test_history_is_appended_with_iteration_numbers(self) -> None:
        """Every score is appended with its iteration number."""
        controller = IterationController()
        run(controller, [50, 60, 70])
        assert [s.total for s in controller.state.history] == [50, 60, 70]
        assert [s.iteration for s in controller.state.history] == [1, 2, 3]
        assert controller.state.iteration == 3

    def test_max_iterations(self) -> None:
        """Loop stops once the budget is used up."""
        controller = IterationController(IterationSettings(max_iterations=3))
        statuses = run(controller, [10, 20, 30])
        assert statuses == [
            IterationStatus.RUNNING,
            IterationStatus.RUNNING,
            IterationStatus.MAX_ITERATIONS_REACHED,
        ]

    def test_never_exceeds_budget(self) -> None:
        """History never grows past the budget."""
        controller = IterationController(IterationSettings(max_iterations=4))
        for total in range(10, 100, 10):
            if controller.status.terminal:
                break
            controller.record(scored(total))
        assert len(controller.state.history) == 4

    def test_convergence_checked_before_budget(self) -> None:
        """Converging on the last allowed iteration still converges."""
        controller = IterationController(IterationSettings(max_iterations=1))
        assert controller.record(scored(99)).status is IterationStatus.CONVERGED

    def test_stall_escalates(self) -> None:
        """Flat scores stall and escalate."""
        controller = IterationController()
        statuses = run(controller, [60, 60, 60])
        assert statuses[-1] is IterationStatus.ESCALATED
        assert controller.state.status_trail == [
            IterationStatus.RUNNING,
            IterationStatus.STALLED,
            IterationStatus.ESCALATED,
        ]

    def test_regression_counts_as_stall(self) -> None:
        """Falling scores count as no improvement."""
        controller = IterationController()
        assert run(controller, [70, 65, 64])[-1] is IterationStatus.ESCALATED

    def test_single_flat_step_keeps_running(self) -> None:
        """One flat step between improvements is not a stall."""
        controller = IterationController()
        assert run(controller, [60, 60, 61, 61]) == [IterationStatus.RUNNING] * 4

    def test_custom_stall_window(self) -> None:
        """Longer stall window needs more flat steps."""
        controller = IterationController(IterationSettings(stall_window=3))
        statuses = run(controller, [50, 50, 50, 50])
        assert statuses == [IterationStatus.RUNNING] * 3 + [IterationStatus.ESCALATED]

    def test_record_after_terminal_raises(self) -> None:
        """Recording after the loop finished raises TerminalStateError."""
        controller = IterationController()
        controller.record(scored(100))
        with pytest.raises(TerminalStateError):
            controller.record(scored(100))
        assert len(controller.state.history) == 1

    def test_cancelled_record_leaves_history_untouched(self) -> None:
        """Cancelled token prevents the append."""
        controller = IterationController()
        token = CancellationToken()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            controller.record(scored(50), cancel_token=token)
        assert controller.state.history == []
        assert controller.state.iteration == 0

    def test_resume_from_state(self) -> None:
        """Controller resumed from a state continues its history."""
        controller = IterationController()
        run(controller, [50, 50])
        restored = IterationState.from_dict(controller.state.to_dict())
        resumed = IterationController.from_state(restored)
        assert resumed.next_iteration == 3
        assert resumed.record(scored(50)).status is IterationStatus.ESCALATED
