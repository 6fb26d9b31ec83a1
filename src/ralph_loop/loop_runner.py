"""Thin runner for the sequential loop.

Resolves the run configuration once, runs the controller, writes a report.
Branch checkout and pull requests are optional extras around the loop.
"""

import shutil
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from ralph_loop.agent_invoker import AgentInvoker, build_invoker
from ralph_loop.config import RunConfig, load_config
from ralph_loop.constants import (
    COMPLETE,
    EXIT_CONFIG_ERROR,
    EXIT_GUTTER,
    EXIT_MAX_ITER,
    EXIT_OK,
    EXIT_TERMINATED,
    TASK_FILE,
)
from ralph_loop.context_budget import Estimator, bytes_estimator
from ralph_loop.execution_loop import IterationController
from ralph_loop.execution_state import LoopResult, TerminalState
from ralph_loop.external_state import ExternalStateStore
from ralph_loop.git_ops import GitError, GitRepo, open_pull_request
from ralph_loop.log import attach_error_log, detach_handler, get_logger
from ralph_loop.task_spec import TaskSpec, load_task_spec

logger = get_logger(__name__)

EXIT_CODES = {
    TerminalState.COMPLETE: EXIT_OK,
    TerminalState.GUTTER: EXIT_GUTTER,
    TerminalState.CONFIG_ERROR: EXIT_CONFIG_ERROR,
    TerminalState.MAX_ITER: EXIT_MAX_ITER,
    TerminalState.TERMINATED: EXIT_TERMINATED,
}


def exit_code_for(terminal: Optional[TerminalState]) -> int:
    """Process exit code for a run. A run stopped by --once exits 0."""
    if terminal is None:
        return EXIT_OK
    return EXIT_CODES[terminal]


def check_prerequisites(
    workspace: Path,
    config: RunConfig,
    require_git: bool = False,
    check_agent: bool = True,
) -> List[str]:
    """
    Check that a workspace can be run.

    Returns:
        A list of problems (empty if ready)
    """
    problems = []

    if not workspace.is_dir():
        problems.append(f"Workspace does not exist: {workspace}")
        return problems

    task_path = workspace / config.task_file
    if not task_path.exists():
        problems.append(
            f"No {config.task_file} in {workspace}. Create one with 'ralph setup' "
            f"or write it by hand (frontmatter plus a checklist)."
        )

    if require_git and not GitRepo(workspace).is_repo():
        problems.append(f"Not a git repository: {workspace}")

    if check_agent and not config.agent_url and shutil.which(config.agent_command) is None:
        problems.append(
            f"Agent command not found on PATH: {config.agent_command} "
            f"(install cursor-agent, set RALPH_AGENT_COMMAND, or set RALPH_AGENT_URL)"
        )

    return problems


def resolve_run_config(
    workspace: Path,
    env: Optional[Dict[str, str]] = None,
    task_file: str = TASK_FILE,
    **overrides: Any,
) -> Tuple[RunConfig, TaskSpec]:
    """
    Resolve configuration once: CLI overrides > environment > task frontmatter > defaults.

    Raises:
        TaskSpecError: If the task document is missing or malformed
        ConfigError: If the resulting configuration is invalid
    """
    spec = load_task_spec(workspace / task_file)
    config = load_config(env=env, task_max_iterations=spec.max_iterations)
    if task_file != config.task_file:
        overrides["task_file"] = task_file
    return config.with_overrides(**overrides), spec


def write_run_report(
    store: ExternalStateStore,
    result: LoopResult,
    config: RunConfig,
    start_time: datetime,
    end_time: datetime,
    extra: Optional[Dict[str, Any]] = None,
) -> Path:
    """
    Write a structured run report under the state directory.

    Filename: run_{timestamp}.json
    """
    report = {
        "workspace": str(store.workspace),
        "mode": "sequential",
        "terminal": result.terminal.value if result.terminal else None,
        "task_status": result.task_status,
        "last_signal": result.last_signal.value if result.last_signal else None,
        "iterations_run": result.iterations_run,
        "invocations": result.invocations,
        "final_iteration": result.final_iteration,
        "model": config.model,
        "max_iterations": config.max_iterations,
        "detail": result.detail,
        "error_log": str(result.error_log) if result.error_log else None,
        "start_time": start_time.isoformat(),
        "end_time": end_time.isoformat(),
        "duration_seconds": (end_time - start_time).total_seconds(),
    }
    if extra:
        report.update(extra)

    return store.write_report(report, f"run_{end_time.strftime('%Y%m%d_%H%M%S_%f')}")


def _checkout_work_branch(repo: GitRepo, branch: str) -> str:
    """Switch to `branch`, creating it from HEAD if needed. Returns the previous branch."""
    previous = repo.current_branch()
    if previous == branch:
        return previous
    if repo.branch_exists(branch):
        repo.checkout(branch)
    else:
        repo.checkout(branch, create_from=previous)
    logger.info(f"Working on branch {branch} (from {previous})")
    return previous


def run_loop(
    workspace: Path,
    config: RunConfig,
    invoker: Optional[AgentInvoker] = None,
    once: bool = False,
    branch: Optional[str] = None,
    open_pr: bool = False,
    pr_base: Optional[str] = None,
    use_graph: bool = True,
    estimator: Estimator = bytes_estimator,
    sleep: Callable[[float], None] = time.sleep,
) -> LoopResult:
    """
    Main entry point: run the sequential loop on a workspace and write a report.

    Args:
        workspace: Directory holding the task file
        config: Resolved run configuration
        invoker: Agent invoker (default: built from config)
        once: Stop after a single iteration
        branch: Work on this git branch (created from HEAD if missing)
        open_pr: Push the branch and open a PR when the task completes
        pr_base: PR target branch (default: the branch checked out before `branch`)
        use_graph: If True, run through the LangGraph harness (default: True)
        estimator: Context-size estimator for the budget monitor
        sleep: Delay function between iterations

    Returns:
        LoopResult of the run

    Raises:
        TaskSpecError: If the task document is missing or malformed
        StateLockedError: If another controller owns this workspace
        GitError: If the branch cannot be checked out
    """
    workspace = Path(workspace).resolve()
    task_path = workspace / config.task_file
    store = ExternalStateStore(config.state_home, workspace)
    state = store.init()

    spec = load_task_spec(task_path)
    if spec.status == COMPLETE:
        print(f"Task already complete ({spec.done}/{spec.total} criteria). Nothing to do.")
        return LoopResult(
            terminal=TerminalState.COMPLETE,
            final_iteration=state.iteration,
            task_status=COMPLETE,
            error_log=store.error_log,
        )

    repo = GitRepo(workspace)
    base_branch = None
    if branch or open_pr:
        if not repo.is_repo():
            raise GitError(["rev-parse"], -1, f"{workspace} is not a git repository")
        base_branch = repo.current_branch()
        if branch:
            base_branch = _checkout_work_branch(repo, branch)
        base_branch = pr_base or base_branch

    if invoker is None:
        invoker = build_invoker(config, workspace, store.transcripts_dir)

    handler = attach_error_log(store.error_log, secrets=[config.api_key])
    start_time = datetime.now()
    try:
        controller = IterationController(
            workspace,
            config,
            invoker,
            store=store,
            estimator=estimator,
            task_path=task_path,
            sleep=sleep,
        )
        limit = 1 if once else None
        if use_graph:
            from ralph_loop.execution_graph import run_loop_graph
            result = run_loop_graph(controller, limit=limit)
        else:
            result = controller.run(limit=limit)
    finally:
        detach_handler(handler)
    end_time = datetime.now()

    pr_url = None
    if open_pr and result.terminal == TerminalState.COMPLETE:
        head = repo.current_branch()
        if head == base_branch:
            logger.warning(f"Already on {head}; pass --branch to open a pull request")
        else:
            try:
                repo.push(head)
                pr_url = open_pull_request(repo, base=base_branch, head=head)
            except GitError as e:
                logger.warning(f"Push failed, not opening a pull request: {e}")

    report_path = write_run_report(
        store,
        result,
        config,
        start_time,
        end_time,
        extra={"branch": branch, "pr_url": pr_url},
    )

    print("Run finished.")
    print(f"  Terminal:   {result.terminal.value if result.terminal else 'stopped (--once)'}")
    print(f"  Status:     {result.task_status}")
    print(f"  Iterations: {result.iterations_run} (now at {result.final_iteration})")
    if pr_url:
        print(f"  PR:         {pr_url}")
    if result.terminal in (TerminalState.GUTTER, TerminalState.CONFIG_ERROR):
        print(f"  Errors:     {result.error_log}")
    print(f"  Report:     {report_path}")

    return result
