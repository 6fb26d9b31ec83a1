"""CLI entrypoint for the Ralph loop."""

import shutil
from pathlib import Path
from typing import Optional

import click
from dotenv import load_dotenv

from ralph_loop.config import ConfigError, load_config
from ralph_loop.constants import (
    DEFAULT_MAX_PARALLEL,
    EXIT_CONFIG_ERROR,
    EXIT_ERROR,
    EXIT_OK,
)

# Load .env file on CLI startup
load_dotenv()


def _workspace_path(workspace: str) -> Path:
    path = Path(workspace).expanduser().resolve()
    if not path.is_dir():
        click.echo(f"Error: workspace is not a directory: {path}", err=True)
        raise SystemExit(EXIT_ERROR)
    return path


def _state_home() -> Path:
    try:
        return load_config().state_home
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)


@click.group()
@click.version_option(package_name="ralph-loop")
def cli():
    """Ralph - run a coding agent in a loop until the checklist is done."""
    pass


@cli.command()
def check_config():
    """Check the runtime configuration (environment and .env)."""
    try:
        config = load_config()
    except ConfigError as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)

    click.echo("Configuration loaded successfully!")
    click.echo(f"  Model:            {config.model}")
    click.echo(f"  Max iterations:   {config.max_iterations}")
    click.echo(f"  Warn threshold:   {config.warn_threshold}")
    click.echo(f"  Rotate threshold: {config.rotate_threshold}")
    if config.agent_url:
        click.echo(f"  Agent endpoint:   {config.agent_url}")
    else:
        found = shutil.which(config.agent_command)
        click.echo(f"  Agent command:    {config.agent_command} ({found or 'NOT FOUND on PATH'})")
    click.echo(f"  CURSOR_API_KEY:   {'[set]' if config.api_key else '[not set]'}")
    click.echo(f"  State home:       {config.state_home}")
    click.echo(f"  gum:              {'found' if shutil.which('gum') else 'not installed (plain prompts)'}")


# =============================================================================
# LOOP COMMANDS
# =============================================================================

@cli.command("run")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
@click.option("--once", is_flag=True, help="Run a single iteration and stop")
@click.option("--model", default=None, help="Model override (default: RALPH_MODEL)")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration cap for this run (default: MAX_ITERATIONS or task frontmatter)",
)
@click.option("--branch", default=None, help="Work on this branch (created if missing)")
@click.option("--open-pr", is_flag=True, help="Push the branch and open a PR when complete")
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
def run_cmd(
    workspace: str,
    once: bool,
    model: Optional[str],
    max_iterations: Optional[int],
    branch: Optional[str],
    open_pr: bool,
    no_trace: bool,
):
    """Run the loop on WORKSPACE until the task checklist is complete.

    WORKSPACE: Directory containing RALPH_TASK.md (default: current directory)

    \b
    Exit codes:
        0  COMPLETE (or stopped by --once)
        2  GUTTER (stuck; see errors.log)
        3  CONFIG_ERROR
        4  MAX_ITER
        5  refused: termination flag is set (see 'ralph clear')
    """
    from ralph_loop.external_state import StateLockedError
    from ralph_loop.git_ops import GitError
    from ralph_loop.loop_runner import (
        check_prerequisites,
        exit_code_for,
        resolve_run_config,
        run_loop,
    )
    from ralph_loop.task_spec import TaskSpecError

    ws = _workspace_path(workspace)

    if open_pr and not branch:
        click.echo("Error: --open-pr requires --branch.", err=True)
        raise SystemExit(EXIT_ERROR)

    try:
        config, spec = resolve_run_config(ws, model=model, max_iterations=max_iterations)
    except (ConfigError, TaskSpecError) as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)

    problems = check_prerequisites(ws, config, require_git=bool(branch))
    if problems:
        for problem in problems:
            click.echo(f"Error: {problem}", err=True)
        raise SystemExit(EXIT_ERROR)

    click.echo(f"Running Ralph on: {ws}")
    click.echo(f"  Model: {config.model}, max iterations: {config.max_iterations}")
    click.echo(f"  Criteria: {spec.done}/{spec.total} done")
    if not no_trace:
        click.echo(f"  (LangGraph tracing enabled)")
    click.echo()

    try:
        result = run_loop(
            ws,
            config,
            once=once,
            branch=branch,
            open_pr=open_pr,
            use_graph=not no_trace,
        )
    except TaskSpecError as e:
        click.echo(f"Task error: {e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)
    except StateLockedError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    except GitError as e:
        click.echo(f"Git error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    except KeyboardInterrupt:
        click.echo("\nInterrupted. State is saved; run again to resume.")
        raise SystemExit(EXIT_ERROR)

    raise SystemExit(exit_code_for(result.terminal))


@cli.command("parallel")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
@click.option(
    "--max-parallel",
    type=click.IntRange(min=1),
    default=DEFAULT_MAX_PARALLEL,
    show_default=True,
    help="Maximum number of agents running at once",
)
@click.option("--base-branch", default=None, help="Branch to fork units from (default: current)")
@click.option(
    "--integration-branch",
    default=None,
    help="Branch to merge units into (default: the base branch)",
)
@click.option("--open-pr", is_flag=True, help="Open a PR from the integration branch")
@click.option("--retain-branches", is_flag=True, help="Keep unit branches after merging")
@click.option("--model", default=None, help="Model override (default: RALPH_MODEL)")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Iteration cap per unit",
)
def parallel_cmd(
    workspace: str,
    max_parallel: int,
    base_branch: Optional[str],
    integration_branch: Optional[str],
    open_pr: bool,
    retain_branches: bool,
    model: Optional[str],
    max_iterations: Optional[int],
):
    """Split the checklist across agents on separate branches, then merge.

    WORKSPACE: Clean git repository containing RALPH_TASK.md

    Exits 0 only when every unit finished and merged.
    """
    from ralph_loop.external_state import StateLockedError
    from ralph_loop.git_ops import GitError
    from ralph_loop.loop_runner import check_prerequisites, resolve_run_config
    from ralph_loop.parallel import ParallelError, exit_code_for_summary, run_parallel_tasks
    from ralph_loop.task_spec import TaskSpecError

    ws = _workspace_path(workspace)

    try:
        config, spec = resolve_run_config(ws, model=model, max_iterations=max_iterations)
    except (ConfigError, TaskSpecError) as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)

    problems = check_prerequisites(ws, config, require_git=True)
    if problems:
        for problem in problems:
            click.echo(f"Error: {problem}", err=True)
        raise SystemExit(EXIT_ERROR)

    click.echo(f"Running Ralph in parallel on: {ws}")
    click.echo(f"  {spec.remaining} open criteria, up to {max_parallel} agents")
    click.echo()

    try:
        summary = run_parallel_tasks(
            ws,
            config,
            max_parallel,
            base_branch=base_branch,
            integration_branch=integration_branch,
            open_pr=open_pr,
            retain_branches=retain_branches,
        )
    except (ParallelError, StateLockedError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    except GitError as e:
        click.echo(f"Git error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    except TaskSpecError as e:
        click.echo(f"Task error: {e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)
    except KeyboardInterrupt:
        click.echo("\nInterrupted. Unit branches are kept for inspection.")
        raise SystemExit(EXIT_ERROR)

    raise SystemExit(exit_code_for_summary(summary))


@cli.command("setup")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
@click.option("--plain", is_flag=True, help="Use plain prompts even if gum is installed")
@click.option(
    "--no-trace",
    is_flag=True,
    help="Disable LangGraph tracing (run without graph wrapper)",
)
def setup_cmd(workspace: str, plain: bool, no_trace: bool):
    """Interactive setup: pick model, iterations and options, then run.

    WORKSPACE: Directory containing RALPH_TASK.md (default: current directory)
    """
    from ralph_loop.external_state import StateLockedError
    from ralph_loop.git_ops import GitError
    from ralph_loop.parallel import ParallelError
    from ralph_loop.setup_flow import run_setup
    from ralph_loop.task_spec import TaskSpecError
    from ralph_loop.ui import select_interface

    ws = _workspace_path(workspace)

    try:
        code = run_setup(
            ws,
            ui=select_interface(prefer_gum=not plain),
            use_graph=not no_trace,
        )
    except (ConfigError, TaskSpecError) as e:
        click.echo(f"Configuration error:\n{e}", err=True)
        raise SystemExit(EXIT_CONFIG_ERROR)
    except (ParallelError, StateLockedError, GitError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    except (KeyboardInterrupt, click.Abort):
        click.echo("\nSetup cancelled.")
        raise SystemExit(EXIT_ERROR)

    raise SystemExit(code)


# =============================================================================
# STATE COMMANDS
# =============================================================================

@cli.command("status")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
@click.option("--progress", "progress_lines", default=5, help="Progress entries to show")
def status_cmd(workspace: str, progress_lines: int):
    """Show where the loop stands for WORKSPACE.

    Read-only. Displays the task checklist, loop state and the latest run.
    """
    from ralph_loop.observe import print_summary

    print_summary(
        workspace=_workspace_path(workspace),
        state_home=_state_home(),
        progress_lines=progress_lines,
    )


@cli.command("stop")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
@click.option("--reason", default="stopped by operator", help="Recorded with the flag")
def stop_cmd(workspace: str, reason: str):
    """Set the termination flag; a running loop stops at the next iteration."""
    from ralph_loop.external_state import ExternalStateStore

    store = ExternalStateStore(_state_home(), _workspace_path(workspace))
    store.init()
    store.terminate(reason)
    click.echo(f"Termination flag set for {store.workspace}")
    click.echo("  A running loop exits before its next iteration.")
    click.echo("  Run 'ralph clear' to allow runs again.")


@cli.command("clear")
@click.argument("workspace", default=".", type=click.Path(file_okay=False))
def clear_cmd(workspace: str):
    """Clear the termination flag so the loop may run again."""
    from ralph_loop.external_state import ExternalStateStore

    store = ExternalStateStore(_state_home(), _workspace_path(workspace))
    if store.clear_termination():
        click.echo(f"Termination flag cleared for {store.workspace}")
    else:
        click.echo(f"No termination flag set for {store.workspace}")


@cli.group()
def guardrail():
    """Guardrail commands."""
    pass


@guardrail.command("add")
@click.argument("trigger")
@click.argument("instruction")
@click.option(
    "--workspace",
    default=".",
    type=click.Path(file_okay=False),
    help="Workspace the guardrail applies to",
)
def guardrail_add(trigger: str, instruction: str, workspace: str):
    """Add a guardrail: when TRIGGER happens, follow INSTRUCTION.

    Guardrails are shown to the agent at the top of every later iteration.
    This works while a loop is running on the workspace: the loop does not
    need to stop, and picks the guardrail up at its next iteration.
    """
    from ralph_loop.external_state import ExternalStateStore
    from ralph_loop.guardrails import GuardrailRegistry

    store = ExternalStateStore(_state_home(), _workspace_path(workspace))
    state = store.init()
    try:
        added = GuardrailRegistry(store).add(trigger, instruction, state.iteration)
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(EXIT_ERROR)
    store.sync_mirror()

    click.echo(f"Guardrail added (iteration {added.added_at_iteration}):")
    click.echo(f"  Trigger:     {added.trigger}")
    click.echo(f"  Instruction: {added.instruction}")


@guardrail.command("list")
@click.option(
    "--workspace",
    default=".",
    type=click.Path(file_okay=False),
    help="Workspace to list guardrails for",
)
def guardrail_list(workspace: str):
    """List guardrails in the order they were added."""
    from ralph_loop.external_state import ExternalStateStore
    from ralph_loop.guardrails import render_guardrails

    store = ExternalStateStore(_state_home(), _workspace_path(workspace))
    guardrails = store.read_guardrails()
    if not guardrails:
        click.echo("No guardrails.")
        raise SystemExit(EXIT_OK)
    click.echo(render_guardrails(guardrails))


if __name__ == "__main__":
    cli()
