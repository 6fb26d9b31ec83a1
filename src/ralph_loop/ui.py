"""Terminal prompts for interactive setup.

Two renditions of the same questions: `gum` when it is installed, plain
click prompts otherwise. The choice is made once by select_interface().
"""

import shutil
import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

import click


class UserInterface(ABC):
    """The questions interactive setup asks."""

    name = "abstract"

    @abstractmethod
    def header(self, text: str) -> None:
        pass

    def say(self, text: str = "") -> None:
        click.echo(text)

    @abstractmethod
    def choose(self, header: str, options: List[str], default: Optional[str] = None) -> Optional[str]:
        """Pick one option. Returns None if the user cancelled."""
        pass

    @abstractmethod
    def choose_many(self, header: str, options: List[str]) -> List[str]:
        """Pick any number of options, in option order."""
        pass

    @abstractmethod
    def ask(self, header: str, default: str = "", placeholder: str = "") -> str:
        """Free-text input. Empty input returns the default."""
        pass

    @abstractmethod
    def confirm(self, message: str, default: bool = False) -> bool:
        pass


# =============================================================================
# gum
# =============================================================================

class GumInterface(UserInterface):
    """Prompts rendered by charmbracelet/gum."""

    name = "gum"

    def __init__(self, binary: str = "gum"):
        self.binary = binary

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        # stdin/stderr stay on the terminal; only the answer is captured
        return subprocess.run(
            [self.binary, *args],
            stdout=subprocess.PIPE,
            text=True,
        )

    def header(self, text: str) -> None:
        subprocess.run(
            [self.binary, "style", "--border", "double", "--padding", "0 2",
             "--border-foreground", "212", text]
        )

    def choose(self, header: str, options: List[str], default: Optional[str] = None) -> Optional[str]:
        args = ["choose", "--header", header]
        if default in options:
            args += ["--selected", default]
        result = self._run(*args, *options)
        answer = result.stdout.strip()
        if result.returncode != 0 or not answer:
            return None
        return answer

    def choose_many(self, header: str, options: List[str]) -> List[str]:
        result = self._run("choose", "--no-limit", "--header", header, *options)
        if result.returncode != 0:
            return []
        picked = {line.strip() for line in result.stdout.splitlines() if line.strip()}
        return [opt for opt in options if opt in picked]

    def ask(self, header: str, default: str = "", placeholder: str = "") -> str:
        result = self._run(
            "input", "--header", header, "--placeholder", placeholder or default, "--value", default
        )
        answer = result.stdout.strip() if result.returncode == 0 else ""
        return answer or default

    def confirm(self, message: str, default: bool = False) -> bool:
        args = ["confirm", message]
        if not default:
            args.append("--default=false")
        return subprocess.run([self.binary, *args]).returncode == 0


# =============================================================================
# plain prompts
# =============================================================================

class PromptInterface(UserInterface):
    """Numbered menus and click prompts; works on any terminal."""

    name = "plain"

    def header(self, text: str) -> None:
        rule = "═" * 67
        click.echo(rule)
        click.echo(text)
        click.echo(rule)

    def _menu(self, header: str, options: List[str]) -> None:
        click.echo(header)
        for i, opt in enumerate(options, 1):
            click.echo(f"  {i}) {opt}")

    def choose(self, header: str, options: List[str], default: Optional[str] = None) -> Optional[str]:
        self._menu(header, options)
        default_index = options.index(default) + 1 if default in options else 1
        choice = click.prompt(
            "Choice",
            default=default_index,
            type=click.IntRange(1, len(options)),
            show_default=True,
        )
        return options[choice - 1]

    def choose_many(self, header: str, options: List[str]) -> List[str]:
        self._menu(f"{header} (numbers separated by spaces, Enter to skip)", options)
        raw = click.prompt("Select options", default="", show_default=False)
        picked = set()
        for token in raw.replace(",", " ").split():
            if token.isdigit() and 1 <= int(token) <= len(options):
                picked.add(int(token) - 1)
        return [options[i] for i in sorted(picked)]

    def ask(self, header: str, default: str = "", placeholder: str = "") -> str:
        answer = click.prompt(header, default=default, show_default=bool(default))
        return str(answer).strip() or default

    def confirm(self, message: str, default: bool = False) -> bool:
        return click.confirm(message, default=default)


def select_interface(prefer_gum: bool = True) -> UserInterface:
    """gum if installed (and wanted), plain prompts otherwise."""
    if prefer_gum and shutil.which("gum"):
        return GumInterface()
    return PromptInterface()
