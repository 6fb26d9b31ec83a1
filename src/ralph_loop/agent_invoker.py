"""Agent invoker interface and implementations.

The coding agent is an opaque collaborator: it receives a context prefix and
an optional session id to resume, and comes back with a signal. The agent
reports a signal by printing a sigil anywhere in its output:

    <ralph>ROTATE</ralph>    context is getting messy, start fresh
    <ralph>GUTTER</ralph>    stuck, needs a human

No sigil means CONTINUE. Completion is never taken from the agent; the
Controller re-reads the task checklist instead.
"""

import json
import os
import re
import subprocess
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import httpx

from ralph_loop.execution_state import AgentOutcome, Signal
from ralph_loop.log import get_logger

logger = get_logger(__name__)

SIGIL_PATTERN = re.compile(r"<ralph>\s*(ROTATE|GUTTER|CONTINUE)\s*</ralph>", re.IGNORECASE)

MODEL_ERROR_PATTERN = re.compile(
    r"(invalid|unknown|unsupported|unrecognized)\s+model"
    r"|model\b.{0,60}\b(not found|not available|does not exist|is invalid)",
    re.IGNORECASE,
)


class AgentInvokerError(Exception):
    """Invocation failed; the Controller may retry."""
    pass


class AgentConfigError(AgentInvokerError):
    """Invocation cannot succeed with the current configuration. Never retried."""
    pass


def parse_signal(text: str) -> Signal:
    """Return the last sigil in the agent output, CONTINUE if there is none."""
    matches = SIGIL_PATTERN.findall(text or "")
    if not matches:
        return Signal.CONTINUE
    return Signal(matches[-1].upper())


def _save_transcript(transcripts_dir: Optional[Path], content: str, suffix: str) -> Optional[Path]:
    if transcripts_dir is None:
        return None
    transcripts_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    path = transcripts_dir / f"{stamp}.{suffix}"
    path.write_text(content, encoding="utf-8")
    return path


# =============================================================================
# INTERFACE
# =============================================================================

class AgentInvoker(ABC):
    """Abstract interface for coding-agent invocations."""

    @abstractmethod
    def invoke(
        self,
        context_prefix: str,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AgentOutcome:
        """
        Run the agent once.

        Args:
            context_prefix: Full prompt for this iteration (guardrails, progress, task)
            session_id: Session to resume; None starts a fresh context
            timeout: Seconds before the invocation is abandoned

        Returns:
            AgentOutcome with the signal, the session id to resume next time,
            and the transcript size

        Raises:
            AgentConfigError: Configuration problem, retrying is pointless
            AgentInvokerError: Any other failure (process, network, timeout)
        """
        pass


# =============================================================================
# cursor-agent CLI
# =============================================================================

def parse_stream(stdout: str) -> Tuple[Optional[str], str]:
    """
    Read a stream-json transcript.

    Returns:
        (session_id, concatenated assistant/result text)
    """
    session_id = None
    texts: List[str] = []

    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            texts.append(line)
            continue
        if not isinstance(event, dict):
            continue

        if event.get("session_id"):
            session_id = event["session_id"]

        kind = event.get("type")
        if kind == "assistant":
            content = (event.get("message") or {}).get("content") or []
            for part in content:
                if isinstance(part, dict) and part.get("type") == "text":
                    texts.append(part.get("text", ""))
        elif kind == "result" and isinstance(event.get("result"), str):
            texts.append(event["result"])

    return session_id, "\n".join(texts)


class CursorAgentInvoker(AgentInvoker):
    """Runs the cursor-agent CLI in the workspace."""

    def __init__(
        self,
        workspace: Path,
        model: str,
        command: str = "cursor-agent",
        api_key: Optional[str] = None,
        transcripts_dir: Optional[Path] = None,
        default_timeout: float = 1800.0,
    ):
        self.workspace = Path(workspace)
        self.model = model
        self.command = command
        self.api_key = api_key
        self.transcripts_dir = transcripts_dir
        self.default_timeout = default_timeout

    def build_command(self, context_prefix: str, session_id: Optional[str]) -> List[str]:
        cmd = [
            self.command,
            "-p",
            "--force",
            "--output-format", "stream-json",
            "--model", self.model,
        ]
        if session_id:
            cmd += ["--resume", session_id]
        cmd.append(context_prefix)
        return cmd

    def invoke(
        self,
        context_prefix: str,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AgentOutcome:
        timeout = timeout or self.default_timeout
        env = dict(os.environ)
        if self.api_key:
            env["CURSOR_API_KEY"] = self.api_key

        try:
            result = subprocess.run(
                self.build_command(context_prefix, session_id),
                cwd=self.workspace,
                capture_output=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                env=env,
            )
        except FileNotFoundError:
            raise AgentConfigError(
                f"Agent command not found: {self.command}. "
                f"Install cursor-agent or set RALPH_AGENT_COMMAND."
            )
        except subprocess.TimeoutExpired:
            raise AgentInvokerError(f"Agent timed out after {timeout}s")

        transcript = _save_transcript(
            self.transcripts_dir,
            result.stdout + (f"\n--- stderr ---\n{result.stderr}" if result.stderr else ""),
            "jsonl",
        )
        found_session, text = parse_stream(result.stdout)

        if result.returncode != 0:
            combined = f"{result.stderr}\n{text}"
            tail = result.stderr.strip()[-500:] or text.strip()[-500:]
            if MODEL_ERROR_PATTERN.search(combined):
                return AgentOutcome(
                    signal=Signal.CONFIG_ERROR,
                    session_id=None,
                    raw_log=transcript,
                    context_size=len(result.stdout.encode("utf-8")),
                    exit_code=result.returncode,
                    detail=f"Agent rejected model '{self.model}': {tail}",
                )
            raise AgentInvokerError(
                f"Agent exited with code {result.returncode}: {tail}"
            )

        return AgentOutcome(
            signal=parse_signal(text),
            session_id=found_session or session_id,
            raw_log=transcript,
            context_size=len(result.stdout.encode("utf-8")),
            exit_code=result.returncode,
        )


# =============================================================================
# Remote agent-hosting endpoint
# =============================================================================

class HttpAgentInvoker(AgentInvoker):
    """Posts the prompt to a remote agent-hosting endpoint.

    Request:  POST {base_url}/invoke  {"prompt", "model", "session_id", "workspace"}
    Response: {"session_id": str, "output": str, "signal": optional str}
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        workspace: Optional[Path] = None,
        transcripts_dir: Optional[Path] = None,
        default_timeout: float = 1800.0,
    ):
        if not api_key:
            raise AgentConfigError("CURSOR_API_KEY is required for the remote agent.")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.workspace = workspace
        self.transcripts_dir = transcripts_dir
        self.default_timeout = default_timeout

    def _make_request(self, payload: dict, timeout: float) -> dict:
        """Make HTTP request to the agent endpoint."""
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        with httpx.Client(timeout=timeout) as client:
            response = client.post(
                f"{self.base_url}/invoke",
                headers=headers,
                json=payload,
            )
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError:
                raise AgentInvokerError(
                    f"Agent endpoint returned non-JSON body: {response.text[:200]!r}"
                )
            if not isinstance(data, dict):
                raise AgentInvokerError(
                    f"Agent endpoint returned {type(data).__name__}, expected an object"
                )
            return data

    def invoke(
        self,
        context_prefix: str,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AgentOutcome:
        timeout = timeout or self.default_timeout
        payload: Dict[str, Any] = {
            "prompt": context_prefix,
            "model": self.model,
            "session_id": session_id,
        }
        if self.workspace is not None:
            payload["workspace"] = str(self.workspace)

        try:
            data = self._make_request(payload, timeout)
        except httpx.HTTPStatusError as e:
            try:
                error_msg = e.response.json().get("error", {}).get("message", str(e))
            except Exception:
                error_msg = e.response.text or str(e)
            status = e.response.status_code
            if status in (401, 403):
                raise AgentConfigError(f"Agent endpoint rejected credentials: {error_msg}")
            if status == 400 and MODEL_ERROR_PATTERN.search(error_msg):
                raise AgentConfigError(f"Agent endpoint rejected model: {error_msg}")
            raise AgentInvokerError(f"Agent API error ({status}): {error_msg}")
        except httpx.TimeoutException:
            raise AgentInvokerError(f"Agent request timed out after {timeout}s")
        except httpx.RequestError as e:
            raise AgentInvokerError(f"Network error: {e}")

        output = data.get("output") or ""
        transcript = _save_transcript(self.transcripts_dir, json.dumps(data, indent=2), "json")

        reported = str(data.get("signal") or "").upper()
        if reported in Signal.__members__:
            signal = Signal(reported)
        else:
            signal = parse_signal(output)

        return AgentOutcome(
            signal=signal,
            session_id=data.get("session_id") or session_id,
            raw_log=transcript,
            context_size=len(output.encode("utf-8")),
            detail=data.get("detail"),
        )


# =============================================================================
# Test double
# =============================================================================

ScriptStep = Union[AgentOutcome, Exception, Callable[[int, str, Optional[str]], AgentOutcome]]


class ScriptedAgentInvoker(AgentInvoker):
    """Returns scripted outcomes in order and records every call.

    A script step may be an AgentOutcome, an exception instance (raised), or
    a callable (call_index, context_prefix, session_id) -> AgentOutcome used
    to simulate the agent editing the workspace.
    """

    def __init__(
        self,
        script: Optional[List[ScriptStep]] = None,
        default: Optional[AgentOutcome] = None,
    ):
        self.script = list(script or [])
        self.default = default
        self.calls: List[Tuple[str, Optional[str]]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def invoke(
        self,
        context_prefix: str,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> AgentOutcome:
        index = len(self.calls)
        self.calls.append((context_prefix, session_id))

        if self.script:
            step = self.script.pop(0)
        elif self.default is not None:
            step = self.default
        else:
            raise AgentInvokerError(f"Scripted agent has no outcome for call {index + 1}")

        if isinstance(step, Exception):
            raise step
        if callable(step) and not isinstance(step, AgentOutcome):
            return step(index, context_prefix, session_id)
        return step


def build_invoker(config, workspace: Path, transcripts_dir: Optional[Path] = None) -> AgentInvoker:
    """Pick the production invoker for a RunConfig."""
    if config.agent_url:
        return HttpAgentInvoker(
            base_url=config.agent_url,
            api_key=config.api_key,
            model=config.model,
            workspace=workspace,
            transcripts_dir=transcripts_dir,
            default_timeout=config.agent_timeout,
        )
    return CursorAgentInvoker(
        workspace=workspace,
        model=config.model,
        command=config.agent_command,
        api_key=config.api_key,
        transcripts_dir=transcripts_dir,
        default_timeout=config.agent_timeout,
    )
