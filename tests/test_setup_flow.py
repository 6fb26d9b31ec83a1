"""Tests for interactive setup, driven by a scripted UserInterface."""

from typing import List, Optional

import pytest

from conftest import requires_git
from ralph_loop.agent_invoker import ScriptedAgentInvoker
from ralph_loop.config import RunConfig
from ralph_loop.constants import DEFAULT_MODEL, EXIT_ERROR, EXIT_MAX_ITER, EXIT_OK
from ralph_loop.execution_state import AgentOutcome, Signal
from ralph_loop.parallel import UNIT_TASK_FILE
from ralph_loop.setup_flow import (
    CUSTOM_MODEL,
    OPTION_NEW_BRANCH,
    OPTION_OPEN_PR,
    OPTION_PARALLEL,
    OPTION_SINGLE_FIRST,
    SetupChoices,
    collect_choices,
    run_setup,
    select_model,
    summary_lines,
)
from ralph_loop.ui import UserInterface

CONTINUE = AgentOutcome(signal=Signal.CONTINUE, session_id="sess-1")


class FakeInterface(UserInterface):
    """Answers questions from queues; records everything said."""

    name = "fake"

    def __init__(
        self,
        choose: Optional[List[Optional[str]]] = None,
        choose_many: Optional[List[List[str]]] = None,
        ask: Optional[List[str]] = None,
        confirm: Optional[List[bool]] = None,
    ):
        self.choose_answers = list(choose or [])
        self.choose_many_answers = list(choose_many or [])
        self.ask_answers = list(ask or [])
        self.confirm_answers = list(confirm or [])
        self.said: List[str] = []
        self.asked: List[str] = []

    @property
    def output(self) -> str:
        return "\n".join(self.said)

    def header(self, text: str) -> None:
        self.said.append(text)

    def say(self, text: str = "") -> None:
        self.said.append(text)

    def choose(self, header, options, default=None):
        self.asked.append(header)
        return self.choose_answers.pop(0) if self.choose_answers else default

    def choose_many(self, header, options):
        self.asked.append(header)
        return self.choose_many_answers.pop(0) if self.choose_many_answers else []

    def ask(self, header, default="", placeholder=""):
        self.asked.append(header)
        return self.ask_answers.pop(0) if self.ask_answers else default

    def confirm(self, message, default=False):
        self.asked.append(message)
        return self.confirm_answers.pop(0) if self.confirm_answers else default


@pytest.fixture
def env(state_home):
    return {
        "RALPH_STATE_HOME": str(state_home),
        "RALPH_ITERATION_DELAY": "0",
        "RALPH_INVOKE_RETRIES": "0",
    }


def check_off_all(task):
    def _step(index, prefix, session):
        task.write_text(task.read_text().replace("[ ]", "[x]"))
        return CONTINUE
    return _step


# =============================================================================
# QUESTIONS
# =============================================================================

class TestSelectModel:

    def test_keep_current(self):
        assert select_model(FakeInterface(), "composer-1") == "composer-1"

    def test_pick_listed(self):
        ui = FakeInterface(choose=["gpt-5.2-high"])
        assert select_model(ui, DEFAULT_MODEL) == "gpt-5.2-high"

    def test_custom(self):
        ui = FakeInterface(choose=[CUSTOM_MODEL], ask=["my-model-1"])
        assert select_model(ui, DEFAULT_MODEL) == "my-model-1"

    def test_invalid_custom_keeps_current(self):
        ui = FakeInterface(choose=[CUSTOM_MODEL], ask=["two words"])
        assert select_model(ui, DEFAULT_MODEL) == DEFAULT_MODEL
        assert "Invalid model selection" in ui.output

    def test_cancel_keeps_current(self):
        ui = FakeInterface(choose=[None])
        assert select_model(ui, "composer-1") == "composer-1"


class TestCollectChoices:

    def test_defaults(self):
        choices = collect_choices(FakeInterface(), RunConfig())
        assert choices.model == DEFAULT_MODEL
        assert choices.max_iterations == RunConfig().max_iterations
        assert (choices.branch, choices.open_pr, choices.parallel) == (None, False, False)

    def test_bad_iterations_keeps_current(self):
        ui = FakeInterface(ask=["lots"])
        choices = collect_choices(ui, RunConfig(max_iterations=8))
        assert choices.max_iterations == 8
        assert "Not a number" in ui.output

    def test_options(self):
        ui = FakeInterface(
            choose_many=[[OPTION_SINGLE_FIRST, OPTION_NEW_BRANCH, OPTION_PARALLEL]],
            ask=["5", "feature/x", "4"],
        )
        choices = collect_choices(ui, RunConfig())
        assert choices.max_iterations == 5
        assert choices.run_single_first is True
        assert choices.branch == "feature/x"
        assert choices.parallel is True
        assert choices.max_parallel == 4

    def test_pr_without_branch_asks_for_one(self):
        ui = FakeInterface(choose_many=[[OPTION_OPEN_PR]], ask=["10", "feature/pr"])
        choices = collect_choices(ui, RunConfig())
        assert choices.open_pr is True
        assert choices.branch == "feature/pr"
        assert "requires a branch" in ui.output

    def test_parallel_pr_does_not_need_branch(self):
        ui = FakeInterface(choose_many=[[OPTION_OPEN_PR, OPTION_PARALLEL]], ask=["10", "2"])
        choices = collect_choices(ui, RunConfig())
        assert choices.branch is None

    def test_summary_lines(self):
        lines = summary_lines(SetupChoices(
            model="m", max_iterations=3, run_single_first=True, branch="b", open_pr=True,
        ))
        text = "\n".join(lines)
        assert "Branch:     b" in text
        assert "Open PR:    Yes" in text
        assert "Test first: Yes" in text


# =============================================================================
# FLOW
# =============================================================================

@requires_git
class TestRunSetup:
    """End to end with a scripted agent in a throwaway repo."""

    def test_full_run(self, git_workspace, env):
        task = git_workspace / "RALPH_TASK.md"
        invoker = ScriptedAgentInvoker([check_off_all(task)])
        ui = FakeInterface(ask=["5"], confirm=[True])

        code = run_setup(git_workspace, ui=ui, env=env, invoker=invoker)

        assert code == EXIT_OK
        assert invoker.call_count == 1
        assert "Progress: 0 / 2 criteria complete (2 remaining)" in ui.output
        assert "Iterations: 5 max" in ui.output

    def test_declined(self, git_workspace, env):
        invoker = ScriptedAgentInvoker()
        ui = FakeInterface(confirm=[False])

        assert run_setup(git_workspace, ui=ui, env=env, invoker=invoker) == EXIT_OK
        assert invoker.call_count == 0
        assert "Aborted." in ui.output

    def test_already_complete(self, git_workspace, write_task, env):
        write_task(git_workspace, "- [x] done\n")
        ui = FakeInterface()

        assert run_setup(git_workspace, ui=ui, env=env, invoker=ScriptedAgentInvoker()) == EXIT_OK
        assert "already complete" in ui.output
        assert ui.asked == []

    def test_single_first_then_full_loop(self, git_workspace, env):
        invoker = ScriptedAgentInvoker(default=CONTINUE)
        ui = FakeInterface(choose_many=[[OPTION_SINGLE_FIRST]], ask=["3"], confirm=[True, True])

        code = run_setup(git_workspace, ui=ui, env=env, invoker=invoker)

        assert code == EXIT_MAX_ITER
        assert invoker.call_count == 3
        assert "Continue with full loop?" in ui.asked

    def test_single_first_then_stop(self, git_workspace, env):
        invoker = ScriptedAgentInvoker(default=CONTINUE)
        ui = FakeInterface(choose_many=[[OPTION_SINGLE_FIRST]], confirm=[True, False])

        assert run_setup(git_workspace, ui=ui, env=env, invoker=invoker) == EXIT_OK
        assert invoker.call_count == 1
        assert "Stopped after single iteration." in ui.output

    def test_parallel(self, git_workspace, env):
        def factory(worktree, store):
            return ScriptedAgentInvoker([check_off_all(worktree / UNIT_TASK_FILE)])

        ui = FakeInterface(choose_many=[[OPTION_PARALLEL]], ask=["5", "2"], confirm=[True])

        code = run_setup(git_workspace, ui=ui, env=env, invoker_factory=factory)

        assert code == EXIT_OK
        assert "[ ]" not in (git_workspace / "RALPH_TASK.md").read_text()

    def test_not_a_repo(self, workspace, write_task, env):
        write_task(workspace)
        ui = FakeInterface()

        assert run_setup(workspace, ui=ui, env=env, invoker=ScriptedAgentInvoker()) == EXIT_ERROR
        assert "Not a git repository" in ui.output
