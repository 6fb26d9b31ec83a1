"""Parallel Coordinator: fan out controllers onto isolated branches, merge back.

Phases:
    1. Setup   - partition open criteria into at most max_parallel units, one
                 git worktree + branch per unit, each with its own external state
    2. Run     - one IterationController per unit on a bounded thread pool
    3. Merge   - DONE units merged one at a time, in branch-creation order
    4. Report  - check off merged criteria, clean up, optionally open a PR

One unit's failure never cancels its siblings; a conflicting merge only marks
that unit MERGE_CONFLICT.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from ralph_loop.agent_invoker import AgentInvoker, build_invoker
from ralph_loop.config import RunConfig
from ralph_loop.constants import EXIT_ERROR, EXIT_OK, MIRROR_DIR
from ralph_loop.context_budget import Estimator, bytes_estimator
from ralph_loop.execution_loop import IterationController
from ralph_loop.execution_state import (
    ParallelSummary,
    ParallelUnit,
    TerminalState,
    UnitStatus,
)
from ralph_loop.external_state import ExternalStateStore
from ralph_loop.git_ops import GitError, GitRepo, open_pull_request
from ralph_loop.log import attach_error_log, detach_handler, get_logger
from ralph_loop.task_spec import (
    ItemKey,
    TaskSpec,
    item_keys,
    load_task_spec,
    mark_items_done,
    render_unit_task,
)

logger = get_logger(__name__)

UNIT_TASK_FILE = f"{MIRROR_DIR}/task.md"

# Builds the invoker for one unit from its worktree and state store
InvokerFactory = Callable[[Path, ExternalStateStore], AgentInvoker]

T = TypeVar("T")


class ParallelError(RuntimeError):
    """Parallel mode cannot start."""
    pass


def partition_items(items: List[T], max_parallel: int) -> List[List[T]]:
    """Round-robin items into at most max_parallel non-empty groups."""
    if max_parallel < 1:
        raise ValueError("max_parallel must be at least 1")
    n_groups = min(max_parallel, len(items))
    groups: List[List[T]] = [[] for _ in range(n_groups)]
    for i, item in enumerate(items):
        groups[i % n_groups].append(item)
    return groups


class ParallelCoordinator:
    """Runs one Ralph loop per unit branch and merges the results."""

    def __init__(
        self,
        workspace: Path,
        config: RunConfig,
        invoker_factory: InvokerFactory,
        max_parallel: int,
        base_branch: Optional[str] = None,
        integration_branch: Optional[str] = None,
        open_pr: bool = False,
        retain_branches: bool = False,
        estimator: Estimator = bytes_estimator,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        self.workspace = Path(workspace).resolve()
        self.config = config
        self.unit_config = config.with_overrides(task_file=UNIT_TASK_FILE)
        self.invoker_factory = invoker_factory
        self.max_parallel = max_parallel
        self.base_branch = base_branch
        self.integration_branch = integration_branch or None
        self.open_pr = open_pr
        self.retain_branches = retain_branches
        self.estimator = estimator
        self.sleep = sleep

        self.repo = GitRepo(self.workspace)
        self.store = ExternalStateStore(config.state_home, self.workspace)
        self.stamp = datetime.now().strftime("%Y%m%d%H%M%S-%f")
        self._merge_lock = threading.Lock()

    # --- phase 1: setup ---

    def _preflight(self) -> TaskSpec:
        if not self.repo.is_repo():
            raise ParallelError(f"Parallel mode needs a git repository: {self.workspace}")
        if self.repo.has_uncommitted_changes(exclude=[MIRROR_DIR]):
            raise ParallelError(
                f"Workspace has uncommitted changes: {self.workspace}\n"
                f"  Commit or stash them before running in parallel."
            )
        if self.base_branch is None:
            self.base_branch = self.repo.current_branch()
        if not self.repo.branch_exists(self.base_branch):
            raise ParallelError(f"Base branch does not exist: {self.base_branch}")

        spec = load_task_spec(self.workspace / self.config.task_file)
        if spec.total == 0:
            raise ParallelError(
                "Task file has no checklist items; nothing to split across agents."
            )
        return spec

    def _create_unit(self, index: int, keys: List[ItemKey], spec: TaskSpec) -> ParallelUnit:
        items = [text for text, _ in keys]
        unit = ParallelUnit(
            index=index,
            branch=f"ralph/parallel-{self.stamp}-{index}",
            base_branch=self.base_branch,
            assigned_items=items,
            item_keys=keys,
        )
        worktree = self.store.worktrees_dir / f"{self.stamp}-{index}"
        try:
            self.repo.add_worktree(worktree, unit.branch, self.base_branch)
        except GitError as e:
            unit.status = UnitStatus.FAILED
            unit.error = str(e)
            logger.error(f"Unit {index}: could not create worktree: {e}")
            return unit

        unit.worktree = worktree
        task_file = worktree / UNIT_TASK_FILE
        task_file.parent.mkdir(parents=True, exist_ok=True)
        (task_file.parent / ".gitignore").write_text("*\n", encoding="utf-8")
        task_file.write_text(
            render_unit_task(spec, items, f"Parallel unit {index}"), encoding="utf-8"
        )
        logger.info(f"Unit {index}: {unit.branch} with {len(items)} criteria at {worktree}")
        return unit

    # --- phase 2: run ---

    def _run_unit(self, unit: ParallelUnit) -> ParallelUnit:
        unit.status = UnitStatus.RUNNING
        try:
            unit_store = ExternalStateStore(self.config.state_home, unit.worktree)
            invoker = self.invoker_factory(unit.worktree, unit_store)
            controller = IterationController(
                unit.worktree,
                self.unit_config,
                invoker,
                store=unit_store,
                estimator=self.estimator,
                sleep=self.sleep,
            )
            unit.loop_result = controller.run()
            GitRepo(unit.worktree).commit_all(
                f"ralph: parallel unit {unit.index} work", exclude=[MIRROR_DIR]
            )
        except Exception as e:
            unit.status = UnitStatus.FAILED
            unit.error = f"{type(e).__name__}: {e}"
            logger.error(f"Unit {unit.index} failed: {unit.error}")
            return unit

        terminal = unit.loop_result.terminal
        if terminal == TerminalState.COMPLETE:
            unit.status = UnitStatus.DONE
        else:
            unit.status = UnitStatus.FAILED
            unit.error = f"ended in {terminal.value if terminal else 'no terminal state'}"
        logger.info(f"Unit {unit.index}: {unit.status.value}")
        return unit

    def _run_units(self, units: List[ParallelUnit]) -> None:
        runnable = [u for u in units if u.status == UnitStatus.PENDING]
        if not runnable:
            return
        with ThreadPoolExecutor(max_workers=self.max_parallel) as executor:
            futures = {executor.submit(self._run_unit, unit): unit for unit in runnable}
            for future in as_completed(futures):
                unit = futures[future]
                # _run_unit records its own failures; this only sees crashes
                exc = future.exception()
                if exc is not None:
                    unit.status = UnitStatus.FAILED
                    unit.error = str(exc)

    # --- phase 3: merge ---

    def _prepare_integration(self) -> str:
        target = self.integration_branch or self.base_branch
        if self.integration_branch and not self.repo.branch_exists(self.integration_branch):
            self.repo.create_branch(self.integration_branch, self.base_branch)
        self.repo.checkout(target)
        return target

    def _merge_units(self, units: List[ParallelUnit], target: str) -> None:
        """Merge DONE units into target one at a time, in creation order."""
        with self._merge_lock:
            for unit in sorted(units, key=lambda u: u.index):
                if unit.status != UnitStatus.DONE:
                    continue
                try:
                    merged = self.repo.merge(
                        unit.branch, f"Merge {unit.branch} (ralph parallel unit {unit.index})"
                    )
                except GitError as e:
                    unit.status = UnitStatus.FAILED
                    unit.error = str(e)
                    logger.error(f"Unit {unit.index}: merge failed: {e}")
                    continue
                if merged:
                    unit.merged = True
                    logger.info(f"Merged {unit.branch} into {target}")
                else:
                    unit.status = UnitStatus.MERGE_CONFLICT
                    unit.error = f"merge conflict with {target}"
                    logger.warning(f"{unit.branch} conflicts with {target}; skipped")

    def _check_off_merged(self, units: List[ParallelUnit]) -> int:
        keys = [key for u in units if u.merged for key in u.item_keys]
        if not keys:
            return 0
        task_path = self.workspace / self.config.task_file
        text, changed = mark_items_done(task_path.read_text(encoding="utf-8"), keys)
        if changed:
            task_path.write_text(text, encoding="utf-8")
            self.repo.commit_all(
                f"ralph: check off {changed} criteria from parallel run", exclude=[MIRROR_DIR]
            )
        return changed

    # --- phase 4: cleanup ---

    def _cleanup(self, units: List[ParallelUnit]) -> None:
        for unit in units:
            if unit.worktree is not None:
                self.repo.remove_worktree(unit.worktree)
            if unit.merged and not self.retain_branches:
                try:
                    self.repo.delete_branch(unit.branch, force=True)
                except GitError as e:
                    logger.warning(f"Could not delete {unit.branch}: {e}")

    def _maybe_open_pr(self, summary: ParallelSummary) -> None:
        if not (self.open_pr and self.integration_branch):
            return
        if summary.merged == 0:
            logger.warning("No unit merged successfully; not opening a pull request")
            return
        try:
            self.repo.push(self.integration_branch)
        except GitError as e:
            logger.warning(f"Push failed, not opening a pull request: {e}")
            return
        summary.pr_url = open_pull_request(
            self.repo,
            base=self.base_branch,
            head=self.integration_branch,
            title=f"Ralph parallel run {self.stamp}",
        )

    # --- entry point ---

    def run(self) -> ParallelSummary:
        """
        Run the whole parallel flow.

        Raises:
            ParallelError: If the workspace is not a clean git repo or has no criteria
            StateLockedError: If another controller owns this workspace
        """
        self.store.init()
        with self.store.locked():
            spec = self._preflight()
            start_branch = self.repo.current_branch()
            open_items = [
                key for key, item in zip(item_keys(spec.checklist), spec.checklist)
                if not item.done
            ]
            target = self.integration_branch or self.base_branch

            if not open_items:
                logger.info("All criteria are already checked; nothing to run")
                return ParallelSummary(units=[], integration_branch=target)

            groups = partition_items(open_items, self.max_parallel)
            units = [self._create_unit(i, group, spec) for i, group in enumerate(groups, 1)]

            try:
                self._run_units(units)
                target = self._prepare_integration()
                self._merge_units(units, target)
                self._check_off_merged(units)
            finally:
                self._cleanup(units)
                if self.repo.current_branch() != start_branch:
                    self.repo.checkout(start_branch)

            summary = ParallelSummary(units=units, integration_branch=target)
            self._maybe_open_pr(summary)

            message = (
                f"Parallel run {self.stamp}: {summary.done} DONE, {summary.failed} FAILED, "
                f"{summary.merge_conflicts} MERGE_CONFLICT ({summary.merged} merged into {target})"
            )
            self.store.append_progress(self.store.read().iteration, message)
            self.store.sync_mirror()
            logger.info(message)
            return summary


def exit_code_for_summary(summary: ParallelSummary) -> int:
    """0 only when every unit finished DONE and merged."""
    if all(unit.status == UnitStatus.DONE and unit.merged for unit in summary.units):
        return EXIT_OK
    return EXIT_ERROR


def default_invoker_factory(config: RunConfig) -> InvokerFactory:
    """Production invokers, one per unit worktree."""
    def _factory(worktree: Path, store: ExternalStateStore) -> AgentInvoker:
        return build_invoker(config, worktree, store.transcripts_dir)
    return _factory


def run_parallel_tasks(
    workspace: Path,
    config: RunConfig,
    max_parallel: int,
    base_branch: Optional[str] = None,
    integration_branch: Optional[str] = None,
    open_pr: bool = False,
    retain_branches: bool = False,
    invoker_factory: Optional[InvokerFactory] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ParallelSummary:
    """
    Main entry point for parallel mode: run the coordinator and print a summary.

    Diagnostics from every unit go to the main workspace's errors.log.
    """
    coordinator = ParallelCoordinator(
        workspace,
        config,
        invoker_factory or default_invoker_factory(config),
        max_parallel,
        base_branch=base_branch,
        integration_branch=integration_branch,
        open_pr=open_pr,
        retain_branches=retain_branches,
        sleep=sleep,
    )
    handler = attach_error_log(coordinator.store.error_log, secrets=[config.api_key])
    try:
        summary = coordinator.run()
    finally:
        detach_handler(handler)

    print("Parallel run finished.")
    print(f"  DONE:           {summary.done}")
    print(f"  FAILED:         {summary.failed}")
    print(f"  MERGE_CONFLICT: {summary.merge_conflicts}")
    print(f"  Merged into:    {summary.integration_branch} ({summary.merged} unit(s))")
    for unit in summary.units:
        line = f"    #{unit.index} {unit.branch}: {unit.status.value}"
        if unit.error:
            line += f" ({unit.error[:80]})"
        print(line)
    if summary.pr_url:
        print(f"  PR:             {summary.pr_url}")

    return summary
