"""Iteration Controller - the Ralph loop state machine.

    INIT -> RUNNING <-> RUNNING -> COMPLETE | GUTTER | CONFIG_ERROR | MAX_ITER

Each step:
    a. refuse if the termination flag is set
    b. MAX_ITER once this run has used max_iterations iterations
    c. build the context prefix and invoke the agent (retries owned here)
    d. the context budget may upgrade CONTINUE to ROTATE
    e. re-run the checklist oracle; COMPLETE wins over any signal
    f. dispatch on the signal
"""

import time
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from ralph_loop.agent_invoker import AgentConfigError, AgentInvoker, AgentInvokerError
from ralph_loop.config import RunConfig
from ralph_loop.constants import COMPLETE
from ralph_loop.context_budget import ContextBudgetMonitor, Estimator, bytes_estimator
from ralph_loop.execution_state import (
    AgentOutcome,
    LoopResult,
    ProgressEntry,
    Signal,
    TerminalState,
)
from ralph_loop.external_state import ExternalStateStore
from ralph_loop.guardrails import GuardrailRegistry
from ralph_loop.log import get_logger
from ralph_loop.task_spec import TaskSpec, TaskSpecError, check_task_complete, load_task_spec

logger = get_logger(__name__)

RECENT_PROGRESS_ENTRIES = 10

SIGNAL_INSTRUCTIONS = """## Signals
- If your context is getting long or confused, finish your current edit, commit, and print <ralph>ROTATE</ralph>. A fresh session will pick up from the files.
- If you are stuck and cannot make progress without a human (missing credentials, broken environment, contradictory requirements), print <ralph>GUTTER</ralph> with a one-line reason.
- Otherwise just keep working. Completion is decided by the checklist, not by you saying so."""


def build_context_prefix(
    spec: TaskSpec,
    iteration: int,
    task_file: str,
    guardrails_text: str,
    progress: List[ProgressEntry],
) -> str:
    """
    Build the prompt injected at the start of every invocation.

    Guardrails come first so that they are never cut off by a long task.
    """
    sections = [f"# Ralph iteration {iteration}"]

    sections.append(
        "You are an autonomous coding agent. Nothing is remembered between sessions; "
        "the files in this repository are your memory."
    )

    if guardrails_text:
        sections.append(f"## Guardrails (read before doing anything)\n\n{guardrails_text}")

    sections.append(
        f"## Task\n\n{spec.description or '(see task file)'}\n\n"
        f"Task file: `{task_file}` ({spec.done}/{spec.total} criteria done).\n"
        f"Work through the unchecked criteria in order. When a criterion is done and "
        f"verified, change its `[ ]` to `[x]` in the task file and commit with git."
    )

    if spec.test_command:
        sections.append(
            f"## Verification\n\nRun `{spec.test_command}` before checking off a criterion."
        )

    recent = progress[-RECENT_PROGRESS_ENTRIES:]
    if recent:
        lines = "\n".join(f"- iteration {e.iteration}: {e.message}" for e in recent)
        sections.append(f"## Recent progress\n\n{lines}")

    sections.append(SIGNAL_INSTRUCTIONS)
    return "\n\n".join(sections) + "\n"


class IterationController:
    """Drives one agent invocation per iteration for a single workspace."""

    def __init__(
        self,
        workspace: Path,
        config: RunConfig,
        invoker: AgentInvoker,
        store: Optional[ExternalStateStore] = None,
        estimator: Estimator = bytes_estimator,
        task_path: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.workspace = Path(workspace).resolve()
        self.config = config
        self.invoker = invoker
        self.store = store or ExternalStateStore(config.state_home, self.workspace)
        self.registry = GuardrailRegistry(self.store)
        self.estimator = estimator
        self.task_path = task_path or (self.workspace / config.task_file)
        self.sleep = sleep

        self.phase = "INIT"
        self.terminal: Optional[TerminalState] = None
        self.iteration = 0
        self.session_id: Optional[str] = None
        self.monitor: Optional[ContextBudgetMonitor] = None
        self.iterations_run = 0
        self.invocations = 0
        self.task_status: Optional[str] = None
        self.last_signal: Optional[Signal] = None
        self.detail: Optional[str] = None

    # --- lifecycle ---

    def start(self) -> None:
        """INIT -> RUNNING: load external state into the controller."""
        state = self.store.init()
        self.iteration = state.iteration
        self.session_id = state.session_id
        self.monitor = ContextBudgetMonitor(
            warn_threshold=self.config.warn_threshold,
            rotate_threshold=self.config.rotate_threshold,
            estimator=self.estimator,
            estimate=state.context_estimate,
            warned=self.store.context_warned(),
        )
        self.phase = "RUNNING"

    @property
    def is_terminal(self) -> bool:
        return self.terminal is not None

    def result(self) -> LoopResult:
        return LoopResult(
            terminal=self.terminal,
            iterations_run=self.iterations_run,
            invocations=self.invocations,
            final_iteration=self.iteration,
            task_status=self.task_status,
            last_signal=self.last_signal,
            error_log=self.store.error_log,
            detail=self.detail,
        )

    def _finish(self, terminal: TerminalState, message: str, record: bool = True) -> TerminalState:
        self.terminal = terminal
        self.phase = terminal.value
        if record:
            self.store.append_progress(
                self.iteration, f"**Session {self.iteration} ended** - {message}"
            )
            self.store.sync_mirror()

        if terminal in (TerminalState.GUTTER, TerminalState.CONFIG_ERROR):
            logger.error(
                f"{terminal.value} in iteration {self.iteration}: {message} "
                f"(diagnostics: {self.store.error_log})"
            )
        elif terminal == TerminalState.COMPLETE:
            logger.info(f"COMPLETE after iteration {self.iteration}")
        else:
            logger.warning(f"{terminal.value}: {message}")
        return terminal

    # --- step phases ---

    def check_guards(self) -> Optional[TerminalState]:
        """Steps (a) and (b). Returns a terminal state if the loop must stop."""
        if self.store.is_terminated():
            reason = self.store.termination_reason() or "termination flag set"
            self.detail = f"Refusing to run: {reason}. Clear it with 'ralph clear'."
            logger.warning(self.detail)
            return self._finish(TerminalState.TERMINATED, self.detail, record=False)

        if self.iterations_run >= self.config.max_iterations:
            self.detail = f"Max iterations ({self.config.max_iterations}) reached"
            return self._finish(TerminalState.MAX_ITER, f"⚠️ {self.detail}")

        return None

    def _load_spec(self) -> TaskSpec:
        return load_task_spec(self.task_path)

    def _call_agent(self, prefix: str) -> AgentOutcome:
        """Invoke with the configured retry budget. Never raises agent errors."""
        attempts = 1 + self.config.invoke_retries
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            try:
                return self.invoker.invoke(
                    prefix, self.session_id, timeout=self.config.agent_timeout
                )
            except AgentConfigError as e:
                return AgentOutcome(signal=Signal.CONFIG_ERROR, detail=str(e))
            except AgentInvokerError as e:
                last_error = e
                logger.warning(
                    f"Agent invocation failed (attempt {attempt}/{attempts}) "
                    f"in iteration {self.iteration}: {e}"
                )
                if attempt < attempts:
                    self.sleep(min(2 ** attempt, 30))

        return AgentOutcome(
            signal=Signal.GUTTER,
            detail=f"Agent invocation failed {attempts} time(s): {last_error}",
        )

    def invoke_agent(self) -> Tuple[Signal, AgentOutcome]:
        """Steps (c) and (d). Returns the effective signal and the raw outcome."""
        try:
            spec = self._load_spec()
        except TaskSpecError as e:
            outcome = AgentOutcome(signal=Signal.CONFIG_ERROR, detail=str(e))
            self.last_signal = Signal.CONFIG_ERROR
            return Signal.CONFIG_ERROR, outcome

        state = self.store.read()
        prefix = build_context_prefix(
            spec=spec,
            iteration=self.iteration,
            task_file=self.config.task_file,
            guardrails_text=self.registry.render(),
            progress=state.progress_log,
        )

        mode = "resuming session" if self.session_id else "fresh context"
        self.store.append_progress(
            self.iteration,
            f"**Session {self.iteration} started** ({mode}, {spec.done}/{spec.total} criteria done)",
        )
        self.store.sync_mirror()
        logger.info(f"Iteration {self.iteration}: invoking agent ({mode})")

        outcome = self._call_agent(prefix)
        self.iterations_run += 1
        self.invocations += 1

        self.session_id = outcome.session_id
        decision = self.monitor.update(outcome)
        signal = self.monitor.apply(outcome.signal, decision)
        self.last_signal = signal

        self.store.write(
            session_id=self.session_id,
            context_estimate=self.monitor.estimate,
            warned=self.monitor.warned,
        )
        return signal, outcome

    def judge(self, signal: Signal, outcome: AgentOutcome) -> Optional[TerminalState]:
        """Steps (e) and (f). Returns a terminal state or None to loop."""
        n = self.iteration
        self.detail = outcome.detail

        try:
            self.task_status = check_task_complete(self.task_path)
        except TaskSpecError as e:
            self.detail = str(e)
            return self._finish(TerminalState.CONFIG_ERROR, f"❌ CONFIG_ERROR ({e})")

        if self.task_status == COMPLETE:
            return self._finish(TerminalState.COMPLETE, "✅ TASK COMPLETE")

        if signal == Signal.ROTATE:
            self.store.append_progress(n, f"**Session {n} ended** - 🔄 Context rotation")
            self.session_id = None
            self.monitor.reset()
            self._advance(session_id=None, context_estimate=0, warned=False)
            logger.info("Rotating to fresh context")
            return None

        if signal == Signal.GUTTER:
            reason = outcome.detail or "agent reported GUTTER"
            self.registry.add(
                trigger=f"Iteration {n} ended in GUTTER: {reason}",
                instruction=(
                    "Do not repeat the approach that led here. Read errors.log and the "
                    "progress log, then try a different strategy or stop and explain."
                ),
                iteration=n,
            )
            self.store.terminate(f"GUTTER in iteration {n}: {reason}")
            return self._finish(TerminalState.GUTTER, f"🚨 GUTTER ({reason})")

        if signal == Signal.CONFIG_ERROR:
            reason = outcome.detail or "invalid runtime configuration"
            return self._finish(TerminalState.CONFIG_ERROR, f"❌ CONFIG_ERROR ({reason})")

        self.store.append_progress(n, f"**Session {n} ended** - continuing ({self.task_status})")
        self._advance(session_id=self.session_id)
        return None

    def _advance(self, **delta) -> None:
        self.iteration += 1
        self.store.write(iteration=self.iteration, **delta)
        self.store.sync_mirror()

    def step(self) -> Optional[TerminalState]:
        """Run exactly one iteration. Returns the terminal state, if reached."""
        if self.is_terminal:
            return self.terminal
        if self.phase == "INIT":
            self.start()

        terminal = self.check_guards()
        if terminal is not None:
            return terminal

        signal, outcome = self.invoke_agent()
        return self.judge(signal, outcome)

    def run(self, limit: Optional[int] = None) -> LoopResult:
        """
        Loop until a terminal state, or until `limit` steps have run.

        Holds the workspace lock for the whole run.

        Raises:
            StateLockedError: If another controller owns this workspace
        """
        with self.store.locked():
            if self.phase == "INIT":
                self.start()
            steps = 0
            while not self.is_terminal:
                terminal = self.step()
                steps += 1
                if terminal is not None:
                    break
                if limit is not None and steps >= limit:
                    break
                if self.config.iteration_delay:
                    self.sleep(self.config.iteration_delay)
        return self.result()


def run_ralph_loop(
    workspace: Path,
    config: RunConfig,
    invoker: AgentInvoker,
    estimator: Estimator = bytes_estimator,
    limit: Optional[int] = None,
) -> LoopResult:
    """Run the sequential loop on a workspace and return the result."""
    controller = IterationController(workspace, config, invoker, estimator=estimator)
    return controller.run(limit=limit)
