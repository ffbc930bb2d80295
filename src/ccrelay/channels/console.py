"""Terminal renderer used by ``ccrelay ask``."""

from __future__ import annotations

from rich.console import Console
from rich.markdown import Markdown


class ConsoleRenderer:
    """Renders relay output to the terminal with Rich."""

    name = "console"

    def __init__(self, console: Console | None = None, *, markdown: bool = True) -> None:
        self.console = console or Console()
        self.markdown = markdown
        self._placeholders = 0

    async def create_placeholder(self, channel_id: str, text: str) -> int:
        self.console.print(f"[dim]{text}[/dim]")
        self._placeholders += 1
        return self._placeholders

    async def edit(self, handle: int, text: str) -> None:
        self._print(text)

    async def delete(self, handle: int) -> None:
        return None

    async def send(self, channel_id: str, text: str) -> None:
        self._print(text)

    def _print(self, text: str) -> None:
        if self.markdown:
            self.console.print(Markdown(text))
        else:
            self.console.print(text, markup=False, highlight=False)
