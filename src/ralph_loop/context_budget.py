"""Context budget policy: estimate context use and force rotation.

The agent's own signal is advisory. Once the running estimate reaches the
rotate threshold, a CONTINUE becomes ROTATE regardless of what the agent
reported.
"""

from dataclasses import dataclass
from typing import Callable

from ralph_loop.execution_state import AgentOutcome, Signal
from ralph_loop.log import get_logger

logger = get_logger(__name__)

BYTES_PER_TOKEN = 4

# Maps one invocation's outcome to the tokens it consumed.
Estimator = Callable[[AgentOutcome], int]


def bytes_estimator(outcome: AgentOutcome) -> int:
    """Approximate tokens as transcript bytes / 4."""
    return max(0, outcome.context_size) // BYTES_PER_TOKEN


def fixed_estimator(tokens: int) -> Estimator:
    """Estimator that charges a constant amount per invocation."""
    def _estimate(outcome: AgentOutcome) -> int:
        return tokens
    return _estimate


@dataclass
class BudgetDecision:
    estimate: int
    warned: bool = False  # crossed WARN during this update
    rotate: bool = False


class ContextBudgetMonitor:
    """Running context estimate for the current agent session."""

    def __init__(
        self,
        warn_threshold: int,
        rotate_threshold: int,
        estimator: Estimator = bytes_estimator,
        estimate: int = 0,
        warned: bool = False,
    ):
        if warn_threshold >= rotate_threshold:
            raise ValueError(
                f"warn_threshold ({warn_threshold}) must be below "
                f"rotate_threshold ({rotate_threshold})"
            )
        self.warn_threshold = warn_threshold
        self.rotate_threshold = rotate_threshold
        self.estimator = estimator
        self.estimate = max(0, estimate)
        self._warned = warned

    @property
    def warned(self) -> bool:
        return self._warned

    @property
    def should_rotate(self) -> bool:
        return self.estimate >= self.rotate_threshold

    def update(self, outcome: AgentOutcome) -> BudgetDecision:
        """Add one invocation's consumption. The estimate never decreases here."""
        consumed = max(0, int(self.estimator(outcome)))
        self.estimate += consumed

        crossed_warn = False
        if self.estimate >= self.warn_threshold and not self._warned:
            self._warned = True
            crossed_warn = True
            logger.warning(
                f"Context estimate {self.estimate} passed WARN_THRESHOLD "
                f"{self.warn_threshold}; rotation at {self.rotate_threshold}"
            )

        return BudgetDecision(
            estimate=self.estimate,
            warned=crossed_warn,
            rotate=self.should_rotate,
        )

    def apply(self, signal: Signal, decision: BudgetDecision) -> Signal:
        """Upgrade CONTINUE to ROTATE when the budget is spent."""
        if decision.rotate and signal == Signal.CONTINUE:
            logger.info(
                f"Context estimate {decision.estimate} >= ROTATE_THRESHOLD "
                f"{self.rotate_threshold}; forcing rotation"
            )
            return Signal.ROTATE
        return signal

    def reset(self) -> None:
        """Start a fresh session budget."""
        self.estimate = 0
        self._warned = False
