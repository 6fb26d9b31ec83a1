"""Logging helpers with secret redaction."""

import logging
import re
from pathlib import Path
from typing import Iterable, List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_REDACTIONS = [
    re.compile(r"Bearer\s+[A-Za-z0-9\-_.]+"),
    re.compile(r"key_[A-Za-z0-9]{16,}"),
]


def redact(text: str, extra_secrets: Optional[Iterable[str]] = None) -> str:
    """Redact known secret patterns and explicit secrets from text."""
    redacted = text
    for pattern in _REDACTIONS:
        redacted = pattern.sub("[REDACTED]", redacted)
    if extra_secrets:
        for secret in extra_secrets:
            if secret:
                redacted = redacted.replace(secret, "[REDACTED]")
    return redacted


class RedactingFilter(logging.Filter):
    """Scrub secrets from every record before a handler formats it."""

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self.secrets: List[str] = [s for s in (secrets or []) if s]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        record.msg = redact(message, self.secrets)
        record.args = None
        return True


def get_logger(name: str) -> logging.Logger:
    """Return a logger under the ralph_loop namespace, configured once."""
    root = logging.getLogger("ralph_loop")
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler.addFilter(RedactingFilter())
        root.addHandler(handler)
        root.setLevel(logging.INFO)
    if name == "ralph_loop" or name.startswith("ralph_loop."):
        return logging.getLogger(name)
    return logging.getLogger(f"ralph_loop.{name}")


def attach_error_log(
    path: Path,
    secrets: Optional[Iterable[str]] = None,
    level: int = logging.WARNING,
) -> logging.Handler:
    """
    Send WARNING and above to a diagnostics file (the workspace's errors.log).

    Returns the handler so the caller can detach it with detach_handler().
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(RedactingFilter(secrets))
    get_logger("ralph_loop").addHandler(handler)
    return handler


def detach_handler(handler: logging.Handler) -> None:
    get_logger("ralph_loop").removeHandler(handler)
    handler.close()
