"""Terminal output: a waiting spinner, buffered markdown responses and listings."""

from __future__ import annotations

import sys
import time
from typing import Any

from rich.console import Console
from rich.markup import escape
from rich.status import Status

from ..models import Model, Notice, Tool

# Status lines go to stderr so piped one-shot output only carries responses
console = Console(stderr=True)
_out = Console()

_pending: list[str] = []

_status: Status | None = None
_started_at = 0.0
_last_tick = 0.0

_NOTICE_STYLES = {
    "info": "grey62",
    "warning": "yellow",
    "error": "red",
}


def _format_tokens(n: int) -> str:
    """Compact token count, e.g. 950, 1.2k, 128k."""
    if n < 1000:
        return str(n)
    k = n / 1000
    return f"{k:.0f}k" if k >= 10 else f"{k:.1f}k"


def start_thinking() -> None:
    global _status, _started_at, _last_tick
    _started_at = _last_tick = time.monotonic()
    _status = Status("[dim]Waiting for model...[/dim]", console=console, spinner="dots")
    _status.start()


def update_thinking() -> None:
    """Refresh the elapsed timer, at most once a second."""
    global _last_tick
    if _status is None:
        return
    now = time.monotonic()
    if now - _last_tick < 1.0:
        return
    _last_tick = now
    _status.update(f"[dim]Waiting for model...[/dim] [grey62]{now - _started_at:.0f}s[/grey62]")


def stop_thinking() -> float:
    """Hide the spinner and return how long it was shown."""
    global _status
    if _status is None:
        return 0.0
    _status.stop()
    _status = None
    return time.monotonic() - _started_at


def is_thinking() -> bool:
    return _status is not None


def render_token(content: str) -> None:
    _pending.append(content)


def render_response_end() -> None:
    """Print everything collected by ``render_token`` as one markdown block."""
    text = "".join(_pending)
    _pending.clear()
    if text.strip():
        render_markdown(text)


def render_newline() -> None:
    sys.stdout.write("\n")
    sys.stdout.flush()


def render_markdown(text: str) -> None:
    from rich.markdown import Markdown
    from rich.padding import Padding

    _out.print(Padding(Markdown(text), (0, 2, 0, 2)))


# --- Notices and messages ---


def render_notice(notice: Notice) -> None:
    style = _NOTICE_STYLES.get(notice.kind, "grey62")
    console.print(f"[{style}]  ● {escape(notice.message)}[/{style}]", highlight=False)


def render_error(message: str) -> None:
    console.print(f"\n[red bold]Error:[/red bold] {escape(message)}")


def render_info(message: str) -> None:
    console.print(f"[grey62]{escape(message)}[/grey62]\n")


# --- Welcome and listings ---


def render_welcome(model: str | None, model_count: int, tool_count: int, hello_message: str) -> None:
    console.print(f"\n [bold]natter[/bold] [dim]─[/dim] {escape(model or 'no model selected')}")
    console.print(f" [dim]{model_count} models · {tool_count} tools[/dim]\n")
    render_markdown(hello_message)


def render_help() -> None:
    console.print()
    console.print(" [bold]Conversations[/bold]  /new · /list [QUERY] · /resume N|ID · /title TEXT · /delete")
    console.print(" [bold]Models[/bold]         /models · /model ID")
    console.print(" [bold]Context[/bold]        /compact · /code")
    console.print(" [bold]Tools[/bold]          /tools")
    console.print(" [bold]Input[/bold]          Alt+Enter newline")
    console.print(" [bold]Exit[/bold]           /quit · Ctrl+D · Ctrl+C to cancel a response")
    console.print()


def render_tools(tools: list[Tool]) -> None:
    if not tools:
        console.print("\n[grey62]No tools available.[/grey62]\n")
        return
    console.print("\n[bold]Available tools:[/bold]")
    for tool in sorted(tools, key=lambda t: t.name):
        desc = tool.description or ""
        if len(desc) > 60:
            desc = desc[:60] + "..."
        provider = f" [grey62]({escape(tool.provider)})[/grey62]"
        if desc:
            console.print(f"  - {escape(tool.name)}{provider} [dim]{escape(desc)}[/dim]")
        else:
            console.print(f"  - {escape(tool.name)}{provider}")
    console.print()


def render_models(models: list[Model], current: str | None) -> None:
    if not models:
        console.print("\n[grey62]No models available.[/grey62]\n")
        return

    from rich.table import Table

    table = Table(title="Models", show_header=True, header_style="bold")
    table.add_column("", width=1)
    table.add_column("Model", style="cyan")
    table.add_column("Connection")
    for model in models:
        marker = "[green]●[/green]" if model.id == current else ""
        table.add_row(marker, model.id, model.provider)

    console.print()
    console.print(table)
    console.print()


def render_conversations(conversations: list[dict[str, Any]]) -> None:
    if not conversations:
        console.print("[grey62]No conversations[/grey62]\n")
        return
    console.print("\n[bold]Recent conversations:[/bold]")
    for i, c in enumerate(conversations):
        msg_count = c.get("message_count", 0)
        console.print(
            f"  {i + 1}. {escape(c['title'])} ({msg_count} msgs) [grey62]{c['id'][:8]}...[/grey62]"
        )
    console.print("  Use [bold]/resume <number>[/bold] or [bold]/resume <id>[/bold]\n")


def render_codeblocks(blocks: list[str]) -> None:
    if not blocks:
        console.print("[grey62]No code blocks in the last response[/grey62]\n")
        return
    from rich.syntax import Syntax

    for i, block in enumerate(blocks, 1):
        console.print(f"\n[bold]Block {i}[/bold]")
        _out.print(Syntax(block, "text", line_numbers=False, word_wrap=True))
    console.print()


# --- Usage ---


def render_usage_footer(
    context_tokens: int,
    prompt_tokens: int,
    completion_tokens: int,
    elapsed: float = 0.0,
    max_context: int | None = None,
) -> None:
    """Render a compact footer with token usage for the last exchange."""
    color = "grey62"
    if max_context:
        pct_full = min(100, (context_tokens / max_context) * 100)
        if pct_full > 75:
            color = "red"
        elif pct_full > 50:
            color = "yellow"
        parts = [f"{_format_tokens(context_tokens)}/{_format_tokens(max_context)} ({pct_full:.0f}%)"]
    else:
        parts = [f"{_format_tokens(context_tokens)} ctx"]
    parts.append(f"{_format_tokens(prompt_tokens)} in")
    parts.append(f"{_format_tokens(completion_tokens)} out")
    if elapsed > 0:
        parts.append(f"{elapsed:.1f}s")

    console.print(f"[{color}]  ▪ {' · '.join(parts)}[/{color}]")
