"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.syntax import Syntax
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Turn structure ----------------------------------------------------------


def turn_header(n: int, max_n: int, token_est: int) -> None:
    limit = str(max_n) if max_n > 0 else "∞"
    _console.print(Rule(f"Turn {n}/{limit} (~{token_est} tokens)", style="cyan"))


def finished(reason: str) -> None:
    if reason in ("STOP", "MAX_TOKENS"):
        style = "green" if reason == "STOP" else "yellow"
    else:
        style = "bold red"
    _console.print(Text(f"  finish_reason={reason}", style=style))


def completion(turns: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(Text(f"  ✓ Agent finished: {turns} turns", style="bold green"))
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, outcome={outcome}", style="bold red")
        )


def compressed(before: int, after: int) -> None:
    line = Text()
    line.append("  ↻ History compressed: ", style="cyan")
    line.append(f"~{before} -> ~{after} tokens", style="dim")
    _console.print(line)


def cancelled(msg: str = "Request cancelled.") -> None:
    _console.print(Text(f"  ⊘ {msg}", style="yellow"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, description: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    for line in description.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def tool_cancelled(name: str) -> None:
    _console.print(Text(f"  ⊘ {name} cancelled", style="yellow"))


# -- Confirmations -----------------------------------------------------------


def confirmation_title(title: str) -> None:
    _console.print(Text(f"  ? {title}", style="bold yellow"))


def diff(file_diff: str) -> None:
    if not file_diff:
        _console.print(Text("    (no changes)", style="dim"))
        return
    _console.print(Syntax(file_diff, "diff", theme="ansi_dark", background_color="default"))


def command(cmd: str) -> None:
    _console.print(Text(f"    $ {cmd}", style="bold"))


# -- Assistant text ----------------------------------------------------------


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("helm interactive mode. Type /help for commands, /exit to quit.", style="dim")
    )
