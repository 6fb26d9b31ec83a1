"""Interactive setup: show the task, ask how to run it, then run it.

Questions are asked through a UserInterface (gum or plain prompts). The
answers become overrides on the resolved RunConfig; nothing is exported to
the environment.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ralph_loop.agent_invoker import AgentInvoker
from ralph_loop.config import RunConfig, load_config, model_value_invalid_reason
from ralph_loop.constants import (
    COMPLETE,
    DEFAULT_MAX_PARALLEL,
    EXIT_ERROR,
    EXIT_MAX_ITER,
    EXIT_OK,
    MODELS,
)
from ralph_loop.execution_state import TerminalState
from ralph_loop.external_state import ExternalStateStore
from ralph_loop.git_ops import GitRepo
from ralph_loop.loop_runner import check_prerequisites, exit_code_for, resolve_run_config, run_loop
from ralph_loop.parallel import InvokerFactory, exit_code_for_summary, run_parallel_tasks
from ralph_loop.task_spec import TaskSpec
from ralph_loop.ui import UserInterface, select_interface

OPTION_CURRENT_BRANCH = "Commit to current branch"
OPTION_SINGLE_FIRST = "Run single iteration first"
OPTION_NEW_BRANCH = "Work on new branch"
OPTION_OPEN_PR = "Open PR when complete"
OPTION_PARALLEL = "Run in parallel mode"

SETUP_OPTIONS = [
    OPTION_CURRENT_BRANCH,
    OPTION_SINGLE_FIRST,
    OPTION_NEW_BRANCH,
    OPTION_OPEN_PR,
    OPTION_PARALLEL,
]

CUSTOM_MODEL = "Custom..."
TASK_PREVIEW_LINES = 30


@dataclass
class SetupChoices:
    """Answers collected by interactive setup."""
    model: str
    max_iterations: int
    run_single_first: bool = False
    branch: Optional[str] = None
    open_pr: bool = False
    parallel: bool = False
    max_parallel: int = DEFAULT_MAX_PARALLEL


# =============================================================================
# QUESTIONS
# =============================================================================

def select_model(ui: UserInterface, current: str) -> str:
    """
    Pick a model from the known list, keep the current one, or type one.

    A malformed answer keeps the current model.
    """
    keep_label = f"Keep current ({current})"
    options = [keep_label] + [m for m in MODELS if m != current] + [CUSTOM_MODEL]

    selected = ui.choose("Select model:", options, default=keep_label)
    if selected is None or selected == keep_label:
        selected = current
    elif selected == CUSTOM_MODEL:
        selected = ui.ask("Enter model name", default=current, placeholder="model name")

    reason = model_value_invalid_reason(selected)
    if reason:
        ui.say(f"Invalid model selection ({reason}). Keeping current model.")
        return current
    return selected


def _ask_positive_int(ui: UserInterface, header: str, current: int) -> int:
    raw = ui.ask(header, default=str(current), placeholder=str(current))
    try:
        value = int(raw)
    except ValueError:
        ui.say(f"Not a number: {raw!r}. Using {current}.")
        return current
    if value < 1:
        ui.say(f"Must be at least 1. Using {current}.")
        return current
    return value


def ask_max_iterations(ui: UserInterface, current: int) -> int:
    return _ask_positive_int(ui, "Max iterations:", current)


def ask_max_parallel(ui: UserInterface, current: int = DEFAULT_MAX_PARALLEL) -> int:
    return _ask_positive_int(ui, "Max parallel agents:", current)


def ask_branch(ui: UserInterface) -> Optional[str]:
    branch = ui.ask("Branch name:", placeholder="feature/my-feature").strip()
    return branch or None


def collect_choices(ui: UserInterface, config: RunConfig) -> SetupChoices:
    """Ask every setup question, in order."""
    choices = SetupChoices(
        model=select_model(ui, config.model),
        max_iterations=0,
    )
    ui.say(f"✓ Model: {choices.model}")

    choices.max_iterations = ask_max_iterations(ui, config.max_iterations)
    ui.say(f"✓ Max iterations: {choices.max_iterations}")

    for option in ui.choose_many("Options (space to select, enter to confirm):", SETUP_OPTIONS):
        if option == OPTION_CURRENT_BRANCH:
            ui.say("✓ Will commit to current branch")
        elif option == OPTION_SINGLE_FIRST:
            choices.run_single_first = True
            ui.say("✓ Will run single iteration first")
        elif option == OPTION_NEW_BRANCH:
            choices.branch = ask_branch(ui)
            ui.say(f"✓ Branch: {choices.branch}")
        elif option == OPTION_OPEN_PR:
            choices.open_pr = True
            ui.say("✓ Will open PR when complete")
        elif option == OPTION_PARALLEL:
            choices.parallel = True
            choices.max_parallel = ask_max_parallel(ui)
            ui.say(f"✓ Parallel mode: {choices.max_parallel} agents")

    # Sequential PRs need a branch; in parallel mode the integration branch is optional
    if choices.open_pr and not choices.parallel and not choices.branch:
        ui.say("")
        ui.say("⚠️  Opening PR requires a branch. Please specify a branch name:")
        choices.branch = ask_branch(ui)
        ui.say(f"✓ Branch: {choices.branch}")

    return choices


def summary_lines(choices: SetupChoices) -> List[str]:
    lines = [
        "Summary:",
        f"  • Model:      {choices.model}",
        f"  • Iterations: {choices.max_iterations} max",
    ]
    if choices.branch:
        lines.append(f"  • Branch:     {choices.branch}")
    if choices.open_pr:
        lines.append("  • Open PR:    Yes")
    if choices.run_single_first and not choices.parallel:
        lines.append("  • Test first: Yes (single iteration)")
    if choices.parallel:
        lines.append(f"  • Parallel:   {choices.max_parallel} agents")
    return lines


def print_task_summary(ui: UserInterface, spec: TaskSpec, task_path: Path) -> None:
    rule = "─" * 65
    ui.say("📋 Task Summary:")
    ui.say(rule)
    preview = task_path.read_text(encoding="utf-8").splitlines()[:TASK_PREVIEW_LINES]
    for line in preview:
        ui.say(line)
    ui.say(rule)
    ui.say("")
    ui.say(
        f"Progress: {spec.done} / {spec.total} criteria complete ({spec.remaining} remaining)"
    )
    ui.say("")


# =============================================================================
# FLOW
# =============================================================================

def _run_sequential(
    ui: UserInterface,
    workspace: Path,
    config: RunConfig,
    choices: SetupChoices,
    invoker: Optional[AgentInvoker],
    use_graph: bool,
    sleep: Callable[[float], None],
) -> int:
    pr_base = None
    if choices.branch and choices.open_pr:
        pr_base = GitRepo(workspace).current_branch()

    if choices.run_single_first:
        ui.say("")
        ui.say("🧪 Running single iteration first...")
        ui.say("")
        result = run_loop(
            workspace, config, invoker=invoker, once=True,
            branch=choices.branch, use_graph=use_graph, sleep=sleep,
        )
        if result.terminal is not None:
            if result.terminal == TerminalState.COMPLETE:
                ui.say("🎉 Task completed in single iteration!")
            return exit_code_for(result.terminal)

        ui.say("")
        ui.say("Single iteration complete. Review the changes.")
        ui.say("")
        if not ui.confirm("Continue with full loop?"):
            ui.say("Stopped after single iteration.")
            return EXIT_OK

        remaining = config.max_iterations - result.iterations_run
        if remaining < 1:
            ui.say("⚠️  Max iterations reached.")
            return EXIT_MAX_ITER
        config = config.with_overrides(max_iterations=remaining)

    result = run_loop(
        workspace, config, invoker=invoker, branch=choices.branch,
        open_pr=choices.open_pr, pr_base=pr_base, use_graph=use_graph, sleep=sleep,
    )
    return exit_code_for(result.terminal)


def run_setup(
    workspace: Path,
    ui: Optional[UserInterface] = None,
    env: Optional[Dict[str, str]] = None,
    invoker: Optional[AgentInvoker] = None,
    invoker_factory: Optional[InvokerFactory] = None,
    use_graph: bool = True,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """
    Main entry point: check prerequisites, show the task, ask, confirm, run.

    Args:
        workspace: Directory holding RALPH_TASK.md
        ui: Prompt implementation (default: gum if installed, else plain)
        env: Environment mapping (default: os.environ after .env)
        invoker: Agent invoker for sequential runs (default: from config)
        invoker_factory: Per-unit invoker factory for parallel runs
        use_graph: Run the sequential loop through the LangGraph harness
        sleep: Delay function between iterations

    Returns:
        Process exit code

    Raises:
        ConfigError: If the environment configuration is invalid
        TaskSpecError: If the task document is malformed
    """
    ui = ui or select_interface()
    workspace = Path(workspace).resolve()

    ui.say("")
    ui.header("🐛 Ralph Wiggum: Autonomous Development Loop")
    ui.say("")
    if ui.name == "gum":
        ui.say("  Using gum for enhanced UI ✨")
    else:
        ui.say("  💡 Install gum for a better experience: https://github.com/charmbracelet/gum#installation")
    ui.say("")

    problems = check_prerequisites(
        workspace,
        load_config(env=env),
        require_git=True,
        check_agent=invoker is None and invoker_factory is None,
    )
    if problems:
        for problem in problems:
            ui.say(f"❌ {problem}")
        return EXIT_ERROR

    config, spec = resolve_run_config(workspace, env=env)
    store = ExternalStateStore(config.state_home, workspace)
    store.init()
    store.sync_mirror()

    ui.say(f"Workspace: {workspace}")
    ui.say("")
    print_task_summary(ui, spec, workspace / config.task_file)

    if spec.status == COMPLETE:
        ui.say("🎉 Task already complete! All criteria are checked.")
        return EXIT_OK

    ui.say("Configure your Ralph session:")
    ui.say("")
    choices = collect_choices(ui, config)
    config = config.with_overrides(model=choices.model, max_iterations=choices.max_iterations)

    ui.say("")
    ui.say("─" * 65)
    for line in summary_lines(choices):
        ui.say(line)
    ui.say("─" * 65)
    ui.say("")

    if not ui.confirm("Start Ralph loop?"):
        ui.say("Aborted.")
        return EXIT_OK

    if choices.parallel:
        summary = run_parallel_tasks(
            workspace,
            config,
            choices.max_parallel,
            integration_branch=choices.branch,
            open_pr=choices.open_pr,
            invoker_factory=invoker_factory,
            sleep=sleep,
        )
        return exit_code_for_summary(summary)

    return _run_sequential(ui, workspace, config, choices, invoker, use_graph, sleep)
