"""Guardrails: corrective instructions carried into every later iteration.

Guardrails are append-only. Automation never edits, reorders or prunes them;
an operator removes one by hand-editing guardrails.json in the state home.
"""

from datetime import datetime, timezone
from typing import List

from ralph_loop.execution_state import Guardrail


def render_guardrails(guardrails: List[Guardrail]) -> str:
    """Render guardrails as markdown, in insertion order."""
    if not guardrails:
        return ""
    blocks = []
    for number, g in enumerate(guardrails, 1):
        blocks.append(
            f"### Sign {number} (added in iteration {g.added_at_iteration})\n"
            f"- **Trigger:** {g.trigger}\n"
            f"- **Instruction:** {g.instruction}\n"
        )
    return "\n".join(blocks)


class GuardrailRegistry:
    """Append-only guardrail log backed by an ExternalStateStore."""

    def __init__(self, store):
        self.store = store

    def add(self, trigger: str, instruction: str, iteration: int) -> Guardrail:
        """
        Append a guardrail.

        Raises:
            ValueError: If trigger or instruction is blank, or iteration < 1
        """
        trigger = " ".join(trigger.split())
        instruction = " ".join(instruction.split())
        if not trigger:
            raise ValueError("Guardrail trigger must not be empty")
        if not instruction:
            raise ValueError("Guardrail instruction must not be empty")
        if iteration < 1:
            raise ValueError("Guardrail iteration must be at least 1")

        guardrail = Guardrail(
            trigger=trigger,
            instruction=instruction,
            added_at_iteration=iteration,
            added_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
        )
        self.store.append_guardrail(guardrail)
        return guardrail

    def all(self) -> List[Guardrail]:
        return self.store.read_guardrails()

    def render(self) -> str:
        return render_guardrails(self.all())
