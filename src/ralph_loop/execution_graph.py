"""LangGraph wrapper for the iteration controller - trace harness only.

This wraps the IterationController's step phases in a LangGraph StateGraph
so that each phase is visible as a node in LangGraph Studio.

NO new orchestration logic. Same semantics as IterationController.run(),
just structured visibility.
"""

from typing import Any, Optional
from typing_extensions import TypedDict

from langgraph.graph import StateGraph, END

from ralph_loop.execution_loop import IterationController
from ralph_loop.execution_state import LoopResult


class LoopGraphState(TypedDict):
    """State for the loop graph."""
    signal: Optional[str]
    terminal: Optional[str]
    steps: int
    limit: Optional[int]
    # Controller reference (passed through state)
    controller: Any
    outcome: Any


# --- Graph Nodes ---

def node_start(state: LoopGraphState) -> LoopGraphState:
    """INIT -> RUNNING."""
    controller: IterationController = state["controller"]
    if controller.phase == "INIT":
        controller.start()
    return {**state}


def node_guard(state: LoopGraphState) -> LoopGraphState:
    """Termination flag and iteration budget checks."""
    controller: IterationController = state["controller"]
    terminal = controller.check_guards()
    return {**state, "terminal": terminal.value if terminal else None}


def node_invoke(state: LoopGraphState) -> LoopGraphState:
    """Invoke the agent; the context budget may upgrade the signal."""
    controller: IterationController = state["controller"]
    signal, outcome = controller.invoke_agent()
    return {**state, "signal": signal.value, "outcome": outcome}


def node_judge(state: LoopGraphState) -> LoopGraphState:
    """Completion oracle, then dispatch on the signal."""
    controller: IterationController = state["controller"]
    signal = controller.last_signal
    terminal = controller.judge(signal, state["outcome"])
    return {
        **state,
        "terminal": terminal.value if terminal else None,
        "steps": state["steps"] + 1,
    }


def node_pause(state: LoopGraphState) -> LoopGraphState:
    """Delay between iterations."""
    controller: IterationController = state["controller"]
    if controller.config.iteration_delay:
        controller.sleep(controller.config.iteration_delay)
    return {**state}


# --- Conditional Edges ---

def after_guard(state: LoopGraphState) -> str:
    if state["terminal"]:
        return "end"
    return "invoke"


def after_judge(state: LoopGraphState) -> str:
    if state["terminal"]:
        return "end"
    if state["limit"] is not None and state["steps"] >= state["limit"]:
        return "end"
    return "pause"


# --- Graph Builder ---

def build_loop_graph() -> StateGraph:
    """
    Build the loop graph.

    Flow:
        start -> guard -> (terminal?) -> end
                       -> invoke -> judge -> (terminal or limit?) -> end
                                          -> pause -> guard
    """
    graph = StateGraph(LoopGraphState)

    graph.add_node("start", node_start)
    graph.add_node("guard", node_guard)
    graph.add_node("invoke", node_invoke)
    graph.add_node("judge", node_judge)
    graph.add_node("pause", node_pause)

    graph.set_entry_point("start")

    graph.add_edge("start", "guard")
    graph.add_conditional_edges(
        "guard",
        after_guard,
        {
            "end": END,
            "invoke": "invoke",
        }
    )
    graph.add_edge("invoke", "judge")
    graph.add_conditional_edges(
        "judge",
        after_judge,
        {
            "end": END,
            "pause": "pause",
        }
    )
    graph.add_edge("pause", "guard")

    return graph


def run_loop_graph(controller: IterationController, limit: Optional[int] = None) -> LoopResult:
    """
    Run the loop graph and return the controller's result.

    This is the traced equivalent of IterationController.run().
    """
    compiled = build_loop_graph().compile()

    initial_state: LoopGraphState = {
        "signal": None,
        "terminal": None,
        "steps": 0,
        "limit": limit,
        "controller": controller,
        "outcome": None,
    }

    # Four nodes per iteration plus start/guard overhead
    budget = limit if limit is not None else controller.config.max_iterations
    recursion_limit = 4 * (budget + 2) + 10

    with controller.store.locked():
        if not controller.is_terminal:
            compiled.invoke(initial_state, config={"recursion_limit": recursion_limit})

    return controller.result()


# Pre-compiled graph for Studio discovery
loop_graph = build_loop_graph().compile()
