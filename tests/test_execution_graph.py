"""Tests for the LangGraph trace harness: same semantics as IterationController.run()."""

import pytest

from ralph_loop.agent_invoker import ScriptedAgentInvoker
from ralph_loop.execution_graph import build_loop_graph, run_loop_graph
from ralph_loop.execution_loop import IterationController
from ralph_loop.execution_state import AgentOutcome, Signal, TerminalState
from ralph_loop.external_state import ExternalStateStore, StateLockedError

CONTINUE = AgentOutcome(signal=Signal.CONTINUE, session_id="sess-1")


@pytest.fixture
def task(workspace, write_task):
    return write_task(workspace)


@pytest.fixture
def store(state_home, workspace):
    return ExternalStateStore(state_home, workspace)


def check_off_all(task, signal=Signal.CONTINUE):
    def _step(index, prefix, session):
        task.write_text(task.read_text().replace("[ ]", "[x]"))
        return AgentOutcome(signal=signal, session_id="sess-1")
    return _step


class TestGraphShape:

    def test_nodes(self):
        graph = build_loop_graph()
        assert {"start", "guard", "invoke", "judge", "pause"} <= set(graph.nodes)


class TestGraphRun:
    """Each scenario mirrors one in test_execution_loop."""

    def test_complete(self, workspace, task, make_config):
        controller = IterationController(
            workspace, make_config(), ScriptedAgentInvoker([CONTINUE, check_off_all(task)])
        )
        result = run_loop_graph(controller)
        assert result.terminal == TerminalState.COMPLETE
        assert result.invocations == 2

    def test_complete_wins_over_gutter(self, workspace, task, make_config, store):
        controller = IterationController(
            workspace, make_config(), ScriptedAgentInvoker([check_off_all(task, Signal.GUTTER)])
        )
        assert run_loop_graph(controller).terminal == TerminalState.COMPLETE
        assert store.is_terminated() is False

    def test_max_iterations(self, workspace, task, make_config, store):
        invoker = ScriptedAgentInvoker(default=CONTINUE)
        controller = IterationController(workspace, make_config(max_iterations=3), invoker)

        result = run_loop_graph(controller)

        assert result.terminal == TerminalState.MAX_ITER
        assert invoker.call_count == 3
        assert store.read().iteration == 4

    def test_gutter(self, workspace, task, make_config, store):
        controller = IterationController(
            workspace, make_config(), ScriptedAgentInvoker([AgentOutcome(Signal.GUTTER)])
        )
        assert run_loop_graph(controller).terminal == TerminalState.GUTTER
        assert store.is_terminated() is True
        assert len(store.read_guardrails()) == 1

    def test_terminated(self, workspace, task, make_config, store):
        store.init()
        store.terminate("halt")
        invoker = ScriptedAgentInvoker(default=CONTINUE)

        result = run_loop_graph(IterationController(workspace, make_config(), invoker))

        assert result.terminal == TerminalState.TERMINATED
        assert invoker.call_count == 0

    def test_limit_stops_without_terminal(self, workspace, task, make_config):
        invoker = ScriptedAgentInvoker(default=CONTINUE)
        controller = IterationController(workspace, make_config(), invoker)

        result = run_loop_graph(controller, limit=1)

        assert result.terminal is None
        assert invoker.call_count == 1
        assert result.final_iteration == 2

    def test_pause_between_iterations(self, workspace, task, make_config):
        sleeps = []
        controller = IterationController(
            workspace,
            make_config(max_iterations=2, iteration_delay=1.5),
            ScriptedAgentInvoker(default=CONTINUE),
            sleep=sleeps.append,
        )
        run_loop_graph(controller)
        assert sleeps == [1.5, 1.5]

    def test_lock_held(self, workspace, task, make_config, store):
        store.acquire_lock()
        try:
            controller = IterationController(
                workspace, make_config(), ScriptedAgentInvoker(default=CONTINUE)
            )
            with pytest.raises(StateLockedError):
                run_loop_graph(controller)
        finally:
            store.release_lock()
