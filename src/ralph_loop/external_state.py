"""Durable loop state kept outside the workspace.

The agent has full write access to the workspace, so the canonical record
(iteration, context estimate, progress, guardrails, termination flag) lives
under a state home keyed by a hash of the workspace path:

    <state_home>/<hash>/
        state.json        iteration, session_id, timestamps
        context.json      context_estimate, warned
        progress.md       canonical progress log
        guardrails.json   ordered guardrails
        TERMINATED        termination marker
        errors.log        diagnostics
        reports/          run reports
        worktrees/        parallel-mode worktrees
        .lock             single-writer lock (owning PID)

A read-only mirror of progress and guardrails is projected into
<workspace>/.ralph/ for the agent. The mirror is always overwritten from the
canonical copy and never read back.
"""

import hashlib
import json
import os
import re
import tempfile
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

from ralph_loop.constants import MIRROR_DIR
from ralph_loop.execution_state import ExternalState, Guardrail, ProgressEntry
from ralph_loop.guardrails import render_guardrails
from ralph_loop.log import get_logger

logger = get_logger(__name__)

STATE_FILE = "state.json"
CONTEXT_FILE = "context.json"
PROGRESS_FILE = "progress.md"
GUARDRAILS_FILE = "guardrails.json"
TERMINATED_FILE = "TERMINATED"
ERRORS_FILE = "errors.log"
LOCK_FILE = ".lock"

PROGRESS_HEADER = "# Progress Log\n\n"
PROGRESS_LINE = re.compile(
    r"^- (?P<timestamp>\S+) \| iteration (?P<iteration>\d+) \| (?P<message>.*)$"
)

_UNSET = object()


class StateLockedError(RuntimeError):
    """Raised when another live controller owns the workspace state."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def workspace_hash(workspace: Path) -> str:
    """Stable key for a workspace: sha256 of its resolved path, 16 hex chars."""
    resolved = str(Path(workspace).expanduser().resolve())
    return hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:16]


def _atomic_write(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def _write_json(path: Path, data: Any) -> None:
    _atomic_write(path, json.dumps(data, ensure_ascii=False, indent=2) + "\n")


def _read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    return json.loads(path.read_text(encoding="utf-8"))


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ExternalStateStore:
    """Single-writer store for one workspace's loop state."""

    def __init__(self, state_home: Path, workspace: Path):
        self.workspace = Path(workspace).expanduser().resolve()
        self.key = workspace_hash(self.workspace)
        self.root = Path(state_home).expanduser() / self.key

    # --- paths ---

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILE

    @property
    def context_file(self) -> Path:
        return self.root / CONTEXT_FILE

    @property
    def progress_file(self) -> Path:
        return self.root / PROGRESS_FILE

    @property
    def guardrails_file(self) -> Path:
        return self.root / GUARDRAILS_FILE

    @property
    def terminated_file(self) -> Path:
        return self.root / TERMINATED_FILE

    @property
    def error_log(self) -> Path:
        return self.root / ERRORS_FILE

    @property
    def lock_file(self) -> Path:
        return self.root / LOCK_FILE

    @property
    def reports_dir(self) -> Path:
        return self.root / "reports"

    @property
    def transcripts_dir(self) -> Path:
        return self.root / "transcripts"

    @property
    def worktrees_dir(self) -> Path:
        return self.root / "worktrees"

    @property
    def mirror_dir(self) -> Path:
        return self.workspace / MIRROR_DIR

    def exists(self) -> bool:
        return self.state_file.exists()

    # --- lifecycle ---

    def init(self) -> ExternalState:
        """
        Create the external record if absent.

        Idempotent: existing files are left untouched, so iteration and
        guardrails survive repeated calls.
        """
        self.root.mkdir(parents=True, exist_ok=True)
        now = _now()

        if not self.state_file.exists():
            _write_json(self.state_file, {
                "workspace": str(self.workspace),
                "iteration": 1,
                "session_id": None,
                "created_at": now,
                "updated_at": now,
            })
            logger.info(f"Initialized external state for {self.workspace} at {self.root}")
        if not self.context_file.exists():
            _write_json(self.context_file, {"context_estimate": 0, "warned": False})
        if not self.progress_file.exists():
            _atomic_write(self.progress_file, PROGRESS_HEADER)
        if not self.guardrails_file.exists():
            _write_json(self.guardrails_file, [])

        return self.read()

    def read(self) -> ExternalState:
        """Load the full state. Raises FileNotFoundError before init()."""
        if not self.state_file.exists():
            raise FileNotFoundError(
                f"No external state for {self.workspace}. Run init first."
            )
        state = _read_json(self.state_file, {})
        context = _read_json(self.context_file, {})

        return ExternalState(
            workspace=state.get("workspace", str(self.workspace)),
            iteration=int(state.get("iteration", 1)),
            session_id=state.get("session_id"),
            context_estimate=int(context.get("context_estimate", 0)),
            terminated=self.is_terminated(),
            progress_log=self.read_progress(),
            guardrails=self.read_guardrails(),
            created_at=state.get("created_at"),
            updated_at=state.get("updated_at"),
        )

    def write(
        self,
        iteration: Optional[int] = None,
        session_id: Any = _UNSET,
        context_estimate: Optional[int] = None,
        warned: Optional[bool] = None,
    ) -> None:
        """Apply a delta to the scalar fields. Unspecified fields are kept."""
        if iteration is not None or session_id is not _UNSET:
            state = _read_json(self.state_file, {"workspace": str(self.workspace)})
            if iteration is not None:
                state["iteration"] = iteration
            if session_id is not _UNSET:
                state["session_id"] = session_id
            state["updated_at"] = _now()
            _write_json(self.state_file, state)

        if context_estimate is not None or warned is not None:
            context = _read_json(self.context_file, {"context_estimate": 0, "warned": False})
            if context_estimate is not None:
                context["context_estimate"] = context_estimate
            if warned is not None:
                context["warned"] = warned
            _write_json(self.context_file, context)

    def context_warned(self) -> bool:
        return bool(_read_json(self.context_file, {}).get("warned", False))

    # --- progress log ---

    def append_progress(self, iteration: int, message: str) -> ProgressEntry:
        entry = ProgressEntry(
            iteration=iteration,
            message=" ".join(message.split()),
            timestamp=_now(),
        )
        existing = (
            self.progress_file.read_text(encoding="utf-8")
            if self.progress_file.exists()
            else PROGRESS_HEADER
        )
        line = f"- {entry.timestamp} | iteration {entry.iteration} | {entry.message}\n"
        _atomic_write(self.progress_file, existing + line)
        return entry

    def read_progress(self) -> List[ProgressEntry]:
        if not self.progress_file.exists():
            return []
        entries = []
        for line in self.progress_file.read_text(encoding="utf-8").splitlines():
            match = PROGRESS_LINE.match(line)
            if match:
                entries.append(ProgressEntry(
                    iteration=int(match.group("iteration")),
                    message=match.group("message"),
                    timestamp=match.group("timestamp"),
                ))
        return entries

    # --- guardrails ---

    def read_guardrails(self) -> List[Guardrail]:
        return [Guardrail(**item) for item in _read_json(self.guardrails_file, [])]

    def append_guardrail(self, guardrail: Guardrail) -> None:
        items = _read_json(self.guardrails_file, [])
        items.append(asdict(guardrail))
        _write_json(self.guardrails_file, items)

    # --- termination flag ---

    def terminate(self, reason: str) -> None:
        """Set the flag. Further iterations are refused until it is cleared."""
        self.root.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.terminated_file, f"{_now()} {reason}\n")
        logger.warning(f"Workspace {self.workspace} terminated: {reason}")

    def clear_termination(self) -> bool:
        """Remove the flag. Returns True if one was set."""
        if self.terminated_file.exists():
            self.terminated_file.unlink()
            logger.info(f"Cleared termination flag for {self.workspace}")
            return True
        return False

    def is_terminated(self) -> bool:
        return self.terminated_file.exists()

    def termination_reason(self) -> Optional[str]:
        if not self.terminated_file.exists():
            return None
        return self.terminated_file.read_text(encoding="utf-8").strip()

    # --- single-writer lock ---

    def acquire_lock(self) -> None:
        """
        Take the single-writer lock for this workspace.

        A lock left by a dead process is reclaimed.

        Raises:
            StateLockedError: If a live process holds the lock
        """
        self.root.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                holder = self._lock_holder()
                if holder is not None and _pid_alive(holder):
                    raise StateLockedError(
                        f"Workspace {self.workspace} is already being run by PID {holder}.\n"
                        f"  Lock: {self.lock_file}"
                    )
                logger.warning(f"Reclaiming stale lock {self.lock_file} (PID {holder})")
                self.lock_file.unlink(missing_ok=True)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(f"{os.getpid()}\n{_now()}\n")
            return
        raise StateLockedError(f"Could not acquire lock {self.lock_file}")

    def release_lock(self) -> None:
        if self._lock_holder() == os.getpid():
            self.lock_file.unlink(missing_ok=True)

    def _lock_holder(self) -> Optional[int]:
        try:
            first = self.lock_file.read_text().splitlines()[0]
            return int(first.strip())
        except (FileNotFoundError, IndexError, ValueError):
            return None

    @contextmanager
    def locked(self) -> Generator[None, None, None]:
        self.acquire_lock()
        try:
            yield
        finally:
            self.release_lock()

    # --- workspace mirror ---

    def sync_mirror(self) -> None:
        """Project progress and guardrails into <workspace>/.ralph/ (overwrite)."""
        self.mirror_dir.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.mirror_dir / ".gitignore", "*\n")

        progress = (
            self.progress_file.read_text(encoding="utf-8")
            if self.progress_file.exists()
            else PROGRESS_HEADER
        )
        notice = "<!-- Read-only copy. Edits here are overwritten by the loop. -->\n"
        _atomic_write(self.mirror_dir / PROGRESS_FILE, notice + progress)

        guardrails = render_guardrails(self.read_guardrails())
        _atomic_write(
            self.mirror_dir / "guardrails.md",
            notice + "# Guardrails\n\n" + (guardrails or "_None yet._\n"),
        )

    # --- reports ---

    def write_report(self, report: Dict[str, Any], name: str) -> Path:
        path = self.reports_dir / f"{name}.json"
        _write_json(path, report)
        return path

    def list_reports(self) -> List[Dict[str, Any]]:
        reports = []
        if not self.reports_dir.exists():
            return reports
        for f in self.reports_dir.glob("*.json"):
            try:
                data = json.loads(f.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError):
                logger.warning(f"Skipping unreadable report {f}")
                continue
            data["_report_file"] = str(f)
            reports.append(data)
        reports.sort(key=lambda r: r.get("start_time", ""), reverse=True)
        return reports


def init_state(state_home: Path, workspace: Path) -> ExternalStateStore:
    """Create (or reuse) the external record for a workspace."""
    store = ExternalStateStore(state_home, workspace)
    store.init()
    return store
