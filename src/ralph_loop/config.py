"""Runtime configuration for the Ralph loop.

Everything the loop needs from the environment is read once here and frozen
into a RunConfig. The Controller and Coordinator receive that value; nothing
downstream reads os.environ.
"""

import os
import re
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from ralph_loop.constants import (
    DEFAULT_AGENT_COMMAND,
    DEFAULT_AGENT_TIMEOUT_S,
    DEFAULT_INVOKE_RETRIES,
    DEFAULT_ITERATION_DELAY_S,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_ROTATE_THRESHOLD,
    DEFAULT_STATE_HOME,
    DEFAULT_WARN_THRESHOLD,
    TASK_FILE,
)


@dataclass(frozen=True)
class RunConfig:
    """Immutable run configuration, resolved once at startup."""

    model: str = DEFAULT_MODEL
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    warn_threshold: int = DEFAULT_WARN_THRESHOLD
    rotate_threshold: int = DEFAULT_ROTATE_THRESHOLD
    api_key: Optional[str] = None
    agent_url: Optional[str] = None
    agent_command: str = DEFAULT_AGENT_COMMAND
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT_S
    invoke_retries: int = DEFAULT_INVOKE_RETRIES
    iteration_delay: float = DEFAULT_ITERATION_DELAY_S
    state_home: Path = Path(DEFAULT_STATE_HOME).expanduser()
    task_file: str = TASK_FILE

    def with_overrides(self, **overrides) -> "RunConfig":
        """Return a copy with the non-None overrides applied, then re-validated."""
        values = {k: v for k, v in overrides.items() if v is not None}
        if not values:
            return self
        updated = replace(self, **values)
        problems = validate_config(updated)
        if problems:
            raise ConfigError(_format_problems(problems))
        return updated


class ConfigError(Exception):
    """Raised when runtime configuration is missing or invalid."""
    pass


def model_value_invalid_reason(value: Optional[str]) -> Optional[str]:
    """
    Explain why a model identifier is unusable.

    Returns:
        A short reason string, or None if the value looks like a model id.
    """
    if value is None or not value.strip():
        return "empty model name"
    if value != value.strip() or re.search(r"\s", value):
        return "model name contains whitespace"
    if value.startswith("-"):
        return "model name looks like a command-line flag"
    if any(not ch.isprintable() for ch in value):
        return "model name contains control characters"
    if len(value) > 100:
        return "model name is too long"
    return None


def validate_config(config: RunConfig) -> List[str]:
    """Return a list of human-readable problems with a config (empty if valid)."""
    problems = []

    reason = model_value_invalid_reason(config.model)
    if reason:
        problems.append(f"RALPH_MODEL: {reason}")

    if config.max_iterations < 1:
        problems.append("MAX_ITERATIONS must be at least 1")
    if config.warn_threshold < 1:
        problems.append("WARN_THRESHOLD must be positive")
    if config.rotate_threshold < 1:
        problems.append("ROTATE_THRESHOLD must be positive")
    if config.warn_threshold >= config.rotate_threshold:
        problems.append(
            f"WARN_THRESHOLD ({config.warn_threshold}) must be below "
            f"ROTATE_THRESHOLD ({config.rotate_threshold})"
        )
    if config.agent_timeout <= 0:
        problems.append("RALPH_AGENT_TIMEOUT must be positive")
    if config.invoke_retries < 0:
        problems.append("RALPH_INVOKE_RETRIES must not be negative")
    if config.iteration_delay < 0:
        problems.append("RALPH_ITERATION_DELAY must not be negative")
    if not config.agent_command.strip():
        problems.append("RALPH_AGENT_COMMAND must not be empty")

    return problems


def _format_problems(problems: List[str]) -> str:
    lines = "\n".join(f"  - {p}" for p in problems)
    return (
        f"Invalid runtime configuration:\n{lines}\n"
        f"Fix the environment (or .env file) and try again."
    )


def _parse_int(env: Dict[str, str], name: str, default: int, problems: List[str]) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        problems.append(f"{name} must be an integer (got {raw!r})")
        return default


def _parse_float(env: Dict[str, str], name: str, default: float, problems: List[str]) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        problems.append(f"{name} must be a number (got {raw!r})")
        return default


def load_config(
    env: Optional[Dict[str, str]] = None,
    task_max_iterations: Optional[int] = None,
    use_dotenv: bool = True,
) -> RunConfig:
    """
    Resolve the run configuration from the environment.

    Args:
        env: Mapping to read instead of os.environ (tests pass a dict)
        task_max_iterations: max_iterations from the task frontmatter, used
                             when MAX_ITERATIONS is not set
        use_dotenv: Load a .env file into os.environ first

    Returns:
        A validated, frozen RunConfig

    Raises:
        ConfigError: If any value is missing or invalid. All problems are
                     reported together.
    """
    if env is None:
        if use_dotenv:
            load_dotenv()
        env = dict(os.environ)

    problems: List[str] = []

    model = env.get("RALPH_MODEL") or env.get("MODEL") or DEFAULT_MODEL
    default_iterations = task_max_iterations or DEFAULT_MAX_ITERATIONS
    state_home = env.get("RALPH_STATE_HOME") or DEFAULT_STATE_HOME

    config = RunConfig(
        model=model,
        max_iterations=_parse_int(env, "MAX_ITERATIONS", default_iterations, problems),
        warn_threshold=_parse_int(env, "WARN_THRESHOLD", DEFAULT_WARN_THRESHOLD, problems),
        rotate_threshold=_parse_int(env, "ROTATE_THRESHOLD", DEFAULT_ROTATE_THRESHOLD, problems),
        api_key=env.get("CURSOR_API_KEY") or None,
        agent_url=env.get("RALPH_AGENT_URL") or None,
        agent_command=env.get("RALPH_AGENT_COMMAND") or DEFAULT_AGENT_COMMAND,
        agent_timeout=_parse_float(env, "RALPH_AGENT_TIMEOUT", DEFAULT_AGENT_TIMEOUT_S, problems),
        invoke_retries=_parse_int(env, "RALPH_INVOKE_RETRIES", DEFAULT_INVOKE_RETRIES, problems),
        iteration_delay=_parse_float(env, "RALPH_ITERATION_DELAY", DEFAULT_ITERATION_DELAY_S, problems),
        state_home=Path(state_home).expanduser(),
    )

    problems.extend(validate_config(config))

    if config.agent_url and not config.api_key:
        problems.append("CURSOR_API_KEY is required when RALPH_AGENT_URL is set")

    if problems:
        raise ConfigError(_format_problems(problems))

    return config
