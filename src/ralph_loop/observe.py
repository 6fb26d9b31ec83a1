"""Read-only status surface for a workspace.

Reads the external state and run reports. Never writes, never takes the lock.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from ralph_loop.constants import COMPLETE, TASK_FILE
from ralph_loop.external_state import ExternalStateStore
from ralph_loop.task_spec import TaskSpecError, load_task_spec


def format_duration(seconds: float) -> str:
    """Format duration in human-readable form."""
    if seconds < 1:
        return f"{seconds*1000:.0f}ms"
    elif seconds < 60:
        return f"{seconds:.1f}s"
    else:
        mins = int(seconds // 60)
        secs = seconds % 60
        return f"{mins}m {secs:.0f}s"


def summarize_workspace(
    workspace: Path,
    state_home: Path,
    task_file: str = TASK_FILE,
) -> Dict[str, Any]:
    """
    Collect everything `ralph status` shows into one dict.

    Keys: workspace, state_dir, initialized, iteration, session_id,
    context_estimate, terminated, termination_reason, task_status, done,
    total, open_items, task_error, guardrails, progress, latest_report,
    report_count.
    """
    store = ExternalStateStore(state_home, workspace)
    summary: Dict[str, Any] = {
        "workspace": str(store.workspace),
        "state_dir": str(store.root),
        "initialized": store.exists(),
        "iteration": None,
        "session_id": None,
        "context_estimate": None,
        "terminated": store.is_terminated(),
        "termination_reason": store.termination_reason(),
        "task_status": None,
        "done": 0,
        "total": 0,
        "open_items": [],
        "task_error": None,
        "guardrails": [],
        "progress": [],
        "latest_report": None,
        "report_count": 0,
    }

    if summary["initialized"]:
        state = store.read()
        summary.update(
            iteration=state.iteration,
            session_id=state.session_id,
            context_estimate=state.context_estimate,
            guardrails=state.guardrails,
            progress=state.progress_log,
        )
        reports = store.list_reports()
        summary["report_count"] = len(reports)
        summary["latest_report"] = reports[0] if reports else None

    try:
        spec = load_task_spec(store.workspace / task_file)
    except TaskSpecError as e:
        summary["task_error"] = str(e)
    else:
        summary.update(
            task_status=spec.status,
            done=spec.done,
            total=spec.total,
            open_items=[item.text for item in spec.open_items],
        )

    return summary


def print_summary(
    workspace: Path,
    state_home: Path,
    task_file: str = TASK_FILE,
    progress_lines: int = 5,
) -> None:
    """
    Print a human-readable summary of a workspace's loop state.

    Goal: know where the loop stands in under 30 seconds.
    """
    s = summarize_workspace(workspace, state_home, task_file)

    print("=" * 60)
    print(f"RALPH STATUS: {s['workspace']}")
    print("=" * 60)
    print()

    print("TASK")
    print("-" * 40)
    if s["task_error"]:
        print(f"  ✗ {s['task_error'].splitlines()[0]}")
    else:
        print(f"  Status:      {s['task_status']}")
        print(f"  Criteria:    {s['done']}/{s['total']} done")
        for text in s["open_items"][:5]:
            print(f"    [ ] {text[:60]}")
        if len(s["open_items"]) > 5:
            print(f"    ... and {len(s['open_items']) - 5} more")
    print()

    if not s["initialized"]:
        print("No loop state yet. Run 'ralph run' to start.")
        print(f"  State dir:   {s['state_dir']}")
        print()
        return

    print("LOOP STATE")
    print("-" * 40)
    print(f"  Iteration:   {s['iteration']}")
    print(f"  Session:     {s['session_id'] or '(fresh context next)'}")
    print(f"  Context:     ~{s['context_estimate']} tokens")
    print(f"  State dir:   {s['state_dir']}")
    if s["terminated"]:
        print(f"  ✗ TERMINATED: {s['termination_reason']}")
        print("    Clear with 'ralph clear' once the cause is fixed.")
    print()

    if s["guardrails"]:
        print("GUARDRAILS")
        print("-" * 40)
        print(f"  Count:       {len(s['guardrails'])}")
        latest = s["guardrails"][-1]
        print(f"  Latest:      {latest.trigger[:50]}")
        print()

    if s["progress"]:
        print("RECENT PROGRESS")
        print("-" * 40)
        for entry in s["progress"][-progress_lines:]:
            print(f"  {entry.timestamp[:19]}  #{entry.iteration}  {entry.message[:60]}")
        print()

    report: Optional[Dict[str, Any]] = s["latest_report"]
    if report:
        print("LATEST RUN")
        print("-" * 40)
        print(f"  Terminal:    {report.get('terminal') or 'stopped early'}")
        print(f"  Iterations:  {report.get('iterations_run')}")
        print(f"  Duration:    {format_duration(report.get('duration_seconds', 0))}")
        print(f"  Time:        {report.get('start_time', '')[:19]}")
        print(f"  Runs total:  {s['report_count']}")
        print()

    print("VERDICT")
    print("-" * 40)
    if s["task_status"] == COMPLETE:
        print("  ✓ COMPLETE - All criteria checked")
    elif s["terminated"]:
        print("  ✗ STOPPED - Needs a human before the next run")
    elif s["task_error"]:
        print("  ? UNKNOWN - Task file unreadable")
    else:
        print(f"  ◐ IN PROGRESS - {s['total'] - s['done']} criteria remaining")
    print()
