"""CLI tests: click's CliRunner against a fake agent executable."""

import pytest
from click.testing import CliRunner

from conftest import requires_posix
from ralph_loop.cli import cli
from ralph_loop.external_state import ExternalStateStore

COMPLETING_AGENT = r"""
sed 's/\[ \]/[x]/g' RALPH_TASK.md > RALPH_TASK.md.tmp && mv RALPH_TASK.md.tmp RALPH_TASK.md
echo '{"type":"system","session_id":"sess-1"}'
echo '{"type":"result","result":"all done"}'
"""

IDLE_AGENT = """
echo '{"type":"system","session_id":"sess-1"}'
echo '{"type":"result","result":"still working"}'
"""

STUCK_AGENT = """
echo '{"type":"result","result":"cannot reach the database <ralph>GUTTER</ralph>"}'
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_env(monkeypatch, state_home):
    monkeypatch.setenv("RALPH_STATE_HOME", str(state_home))
    monkeypatch.setenv("RALPH_ITERATION_DELAY", "0")
    monkeypatch.setenv("RALPH_INVOKE_RETRIES", "0")
    for name in ("RALPH_MODEL", "MODEL", "MAX_ITERATIONS", "RALPH_AGENT_URL",
                 "WARN_THRESHOLD", "ROTATE_THRESHOLD"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def use_agent(monkeypatch, make_script, cli_env):
    def _use(body: str):
        agent = make_script("fake-agent", body)
        monkeypatch.setenv("RALPH_AGENT_COMMAND", str(agent))
        return agent
    return _use


# =============================================================================
# CONFIG
# =============================================================================

class TestCheckConfig:

    def test_ok(self, runner, cli_env):
        result = runner.invoke(cli, ["check-config"])
        assert result.exit_code == 0
        assert "Configuration loaded successfully!" in result.output

    def test_invalid(self, runner, cli_env, monkeypatch):
        monkeypatch.setenv("WARN_THRESHOLD", "lots")
        result = runner.invoke(cli, ["check-config"])
        assert result.exit_code == 3
        assert "WARN_THRESHOLD must be an integer" in result.output


# =============================================================================
# RUN
# =============================================================================

@requires_posix
class TestRunCommand:

    def test_complete(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(COMPLETING_AGENT)

        result = runner.invoke(cli, ["run", str(workspace), "--no-trace"])

        assert result.exit_code == 0, result.output
        assert "Running Ralph on" in result.output
        assert "Terminal:   COMPLETE" in result.output
        assert "[ ]" not in (workspace / "RALPH_TASK.md").read_text()

    def test_once(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(IDLE_AGENT)

        result = runner.invoke(cli, ["run", str(workspace), "--once"])

        assert result.exit_code == 0, result.output
        assert "stopped (--once)" in result.output

    def test_max_iterations(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(IDLE_AGENT)

        result = runner.invoke(cli, ["run", str(workspace), "--max-iterations", "2"])

        assert result.exit_code == 4, result.output
        assert "max iterations: 2" in result.output

    def test_gutter_then_refused_then_cleared(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(STUCK_AGENT)

        first = runner.invoke(cli, ["run", str(workspace), "--no-trace"])
        assert first.exit_code == 2, first.output

        status = runner.invoke(cli, ["status", str(workspace)])
        assert "TERMINATED" in status.output

        second = runner.invoke(cli, ["run", str(workspace), "--no-trace"])
        assert second.exit_code == 5, second.output

        cleared = runner.invoke(cli, ["clear", str(workspace)])
        assert "Termination flag cleared" in cleared.output

        guardrails = runner.invoke(cli, ["guardrail", "list", "--workspace", str(workspace)])
        assert "ended in GUTTER" in guardrails.output

    def test_missing_task(self, runner, workspace, use_agent):
        use_agent(IDLE_AGENT)
        result = runner.invoke(cli, ["run", str(workspace)])
        assert result.exit_code == 3
        assert "not found" in result.output

    def test_missing_agent(self, runner, workspace, write_task, cli_env, monkeypatch):
        write_task(workspace)
        monkeypatch.setenv("RALPH_AGENT_COMMAND", "definitely-not-an-agent-xyz")
        result = runner.invoke(cli, ["run", str(workspace)])
        assert result.exit_code == 1
        assert "Agent command not found" in result.output

    def test_open_pr_requires_branch(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(IDLE_AGENT)
        result = runner.invoke(cli, ["run", str(workspace), "--open-pr"])
        assert result.exit_code == 1
        assert "--open-pr requires --branch" in result.output

    def test_invalid_max_iterations(self, runner, workspace, write_task, use_agent):
        write_task(workspace)
        use_agent(IDLE_AGENT)
        result = runner.invoke(cli, ["run", str(workspace), "--max-iterations", "0"])
        assert result.exit_code == 2

    def test_workspace_must_exist(self, runner, tmp_path, cli_env):
        result = runner.invoke(cli, ["run", str(tmp_path / "missing")])
        assert result.exit_code == 1


# =============================================================================
# STATE COMMANDS
# =============================================================================

class TestStateCommands:

    def test_status_without_state(self, runner, workspace, write_task, cli_env):
        write_task(workspace)
        result = runner.invoke(cli, ["status", str(workspace)])
        assert result.exit_code == 0
        assert "No loop state yet" in result.output

    def test_stop_and_clear(self, runner, workspace, cli_env):
        stopped = runner.invoke(cli, ["stop", str(workspace), "--reason", "lunch"])
        assert stopped.exit_code == 0
        assert "Termination flag set" in stopped.output

        status = runner.invoke(cli, ["status", str(workspace)])
        assert "lunch" in status.output

        assert "cleared" in runner.invoke(cli, ["clear", str(workspace)]).output
        assert "No termination flag" in runner.invoke(cli, ["clear", str(workspace)]).output

    def test_guardrail_add_and_list(self, runner, workspace, cli_env):
        empty = runner.invoke(cli, ["guardrail", "list", "--workspace", str(workspace)])
        assert "No guardrails." in empty.output

        added = runner.invoke(cli, [
            "guardrail", "add", "npm test hangs", "Run with --ci", "--workspace", str(workspace),
        ])
        assert added.exit_code == 0, added.output
        assert "Guardrail added (iteration 1):" in added.output
        assert (workspace / ".ralph" / "guardrails.md").exists()

        listed = runner.invoke(cli, ["guardrail", "list", "--workspace", str(workspace)])
        assert "npm test hangs" in listed.output
        assert "Run with --ci" in listed.output

    def test_guardrail_add_while_loop_holds_lock(self, runner, workspace, state_home, cli_env):
        store = ExternalStateStore(state_home, workspace)
        store.init()
        with store.locked():
            added = runner.invoke(cli, [
                "guardrail", "add", "migrations fail", "Reset the dev db", "--workspace", str(workspace),
            ])
            assert added.exit_code == 0, added.output
            assert store.lock_file.exists()
        assert [g.trigger for g in store.read_guardrails()] == ["migrations fail"]

    def test_guardrail_blank(self, runner, workspace, cli_env):
        result = runner.invoke(cli, ["guardrail", "add", " ", "x", "--workspace", str(workspace)])
        assert result.exit_code == 1
        assert "must not be empty" in result.output
