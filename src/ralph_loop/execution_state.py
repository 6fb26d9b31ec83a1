"""Data types shared by the iteration loop and the parallel coordinator."""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple


class Signal(str, Enum):
    """Result of one agent invocation."""
    CONTINUE = "CONTINUE"
    ROTATE = "ROTATE"
    GUTTER = "GUTTER"
    CONFIG_ERROR = "CONFIG_ERROR"


class TerminalState(str, Enum):
    COMPLETE = "COMPLETE"
    GUTTER = "GUTTER"
    CONFIG_ERROR = "CONFIG_ERROR"
    MAX_ITER = "MAX_ITER"
    # Not a transition: the termination flag was already set, nothing ran.
    TERMINATED = "TERMINATED"


class UnitStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"
    MERGE_CONFLICT = "MERGE_CONFLICT"


@dataclass
class AgentOutcome:
    """What one agent invocation produced."""
    signal: Signal
    session_id: Optional[str] = None  # None forces a fresh context next time
    raw_log: Optional[Path] = None
    context_size: int = 0  # transcript size in bytes
    exit_code: Optional[int] = None
    detail: Optional[str] = None


@dataclass
class ProgressEntry:
    iteration: int
    message: str
    timestamp: str


@dataclass
class Guardrail:
    trigger: str
    instruction: str
    added_at_iteration: int
    added_at: Optional[str] = None


@dataclass
class ExternalState:
    """Snapshot of the out-of-workspace record for one workspace."""
    workspace: str
    iteration: int = 1
    session_id: Optional[str] = None
    context_estimate: int = 0
    terminated: bool = False
    progress_log: List[ProgressEntry] = field(default_factory=list)
    guardrails: List[Guardrail] = field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


@dataclass
class LoopResult:
    """Outcome of a Controller run (one or more steps)."""
    terminal: Optional[TerminalState] = None  # None: stopped by a step limit
    iterations_run: int = 0
    invocations: int = 0
    final_iteration: int = 0
    task_status: Optional[str] = None
    last_signal: Optional[Signal] = None
    error_log: Optional[Path] = None
    detail: Optional[str] = None


@dataclass
class ParallelUnit:
    index: int
    branch: str
    base_branch: str
    worktree: Optional[Path] = None
    assigned_items: List[str] = field(default_factory=list)
    item_keys: List[Tuple[str, int]] = field(default_factory=list)
    status: UnitStatus = UnitStatus.PENDING
    loop_result: Optional[LoopResult] = None
    merged: bool = False
    error: Optional[str] = None


@dataclass
class ParallelSummary:
    units: List[ParallelUnit]
    integration_branch: str
    pr_url: Optional[str] = None

    def count(self, status: UnitStatus) -> int:
        return sum(1 for unit in self.units if unit.status == status)

    @property
    def done(self) -> int:
        return self.count(UnitStatus.DONE)

    @property
    def failed(self) -> int:
        return self.count(UnitStatus.FAILED)

    @property
    def merge_conflicts(self) -> int:
        return self.count(UnitStatus.MERGE_CONFLICT)

    @property
    def merged(self) -> int:
        return sum(1 for unit in self.units if unit.merged)
