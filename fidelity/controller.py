"""Iteration controller.

A small state machine over the refinement loop::

    Running ──► Converged
       │
       ├──────► MaxIterationsReached
       │
       └──────► Stalled ──► Escalated

Every status other than Running is terminal.  Each completed score is
appended to the history and then checked, in order, against the convergence
threshold, the iteration budget and the stall rule.  A stall is escalated to
a human straight away; the controller never guesses a fix itself.

The iteration budget is a hard cap: every iteration is assumed to be
expensive for the external orchestrator (regenerate code, re-capture the
screenshot), so there is no backoff.
"""

from dataclasses import dataclass, field, replace

from fidelity.cancellation import CancellationToken, check_cancelled
from fidelity.config import IterationSettings, ScoreWeights
from fidelity.errors import TerminalStateError
from fidelity.models import Discrepancy, FidelityScore, IterationState, IterationStatus
from fidelity.scorer import rank_discrepancies


@dataclass
class IterationDecision:
    """Outcome of recording one score.

    Attributes:
        status: Status after the score was recorded.
        iteration: Number of completed iterations.
        actions: Findings ranked by estimated score impact, for the external
            fix-applying collaborator.  Empty once the loop is terminal.
        reason: Why the loop stopped, empty while it is running.
    """

    status: IterationStatus
    iteration: int
    actions: list[Discrepancy] = field(default_factory=list)
    reason: str = ""

    @property
    def should_continue(self) -> bool:
        return self.status is IterationStatus.RUNNING


class IterationController:
    """Tracks score history across refinement attempts."""

    def __init__(
        self,
        settings: IterationSettings | None = None,
        weights: ScoreWeights | None = None,
        state: IterationState | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            settings: Convergence threshold, iteration budget and stall window.
            weights: Score weights used to rank findings.
            state: Previously persisted state to resume from.  A fresh state
                (Running, iteration 0, empty history) is used when omitted.
        """
        self.settings = settings or IterationSettings()
        self.settings.validate()
        self.weights = weights or ScoreWeights()
        self.state = state or IterationState()

    @classmethod
    def from_state(
        cls,
        state: IterationState,
        settings: IterationSettings | None = None,
        weights: ScoreWeights | None = None,
    ) -> "IterationController":
        return cls(settings=settings, weights=weights, state=state)

    @property
    def status(self) -> IterationStatus:
        return self.state.status

    @property
    def next_iteration(self) -> int:
        return self.state.iteration + 1

    def _transition(self, status: IterationStatus) -> None:
        self.state.status = status
        self.state.status_trail.append(status)

    def _is_stalled(self) -> bool:
        window = self.settings.stall_window
        history = self.state.history
        if len(history) <= window:
            return False
        recent = [s.total for s in history[-(window + 1) :]]
        return all(later - earlier <= 0 for earlier, later in zip(recent, recent[1:]))

    def record(
        self,
        score: FidelityScore,
        discrepancies: list[Discrepancy] | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> IterationDecision:
        """Record a fully completed score and advance the state machine.

        Args:
            score: Score of the iteration that just finished.  Its
                ``iteration`` field is set to the controller's count.
            discrepancies: Findings of that iteration, ranked into the
                decision's actions while the loop keeps running.
            cancel_token: Optional token; a cancelled iteration leaves the
                history untouched.

        Returns:
            :class:`IterationDecision` describing the new status.

        Raises:
            TerminalStateError: If the loop already reached a terminal status.
            OperationCancelledError: If the token was cancelled.
        """
        if self.state.status.terminal:
            msg = (
                f"Cannot record iteration {self.next_iteration}: "
                f"loop already finished with status {self.state.status.value!r}"
            )
            raise TerminalStateError(msg)
        check_cancelled(cancel_token, "score recording")

        iteration = self.next_iteration
        self.state.history.append(replace(score, iteration=iteration))
        self.state.iteration = iteration

        if score.total >= self.settings.convergence_threshold:
            self._transition(IterationStatus.CONVERGED)
            reason = (
                f"Score {score.total} reached the convergence threshold "
                f"{self.settings.convergence_threshold}"
            )
        elif iteration >= self.settings.max_iterations:
            self._transition(IterationStatus.MAX_ITERATIONS_REACHED)
            reason = f"Iteration budget of {self.settings.max_iterations} exhausted"
        elif self._is_stalled():
            self._transition(IterationStatus.STALLED)
            self._transition(IterationStatus.ESCALATED)
            recent = [s.total for s in self.state.history[-(self.settings.stall_window + 1) :]]
            reason = (
                f"No improvement over {self.settings.stall_window} consecutive iterations "
                f"(scores {recent}); escalating for human review"
            )
        else:
            return IterationDecision(
                status=IterationStatus.RUNNING,
                iteration=iteration,
                actions=rank_discrepancies(discrepancies or [], self.weights),
            )

        return IterationDecision(status=self.state.status, iteration=iteration, reason=reason)
