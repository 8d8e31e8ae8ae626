"""Command-line entry point: the agent loop, confirmations and the REPL."""

import argparse
import asyncio
import json
import logging
import os
import platform
import shlex
import signal
import subprocess
import sys
import tempfile
import urllib.error
import urllib.request
import uuid
from datetime import datetime
from importlib import metadata
from pathlib import Path
from typing import Any, Awaitable, Callable

from . import fmt
from .cancellation import CancellationToken
from .client import AgentClient
from .config import (
    _UNSET,
    PROVIDERS,
    ApprovalMode,
    Config,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
)
from .content import user_content
from .file_tools import EditFileTool, GrepTool, ListFilesTool, ReadFileTool, WriteFileTool
from .report import AgentError, ConfigError, Telemetry, set_error_report_dir
from .scheduler import CoreToolScheduler, ToolCallStatus
from .shell import ShellTool
from .tools import (
    EditConfirmation,
    ExecConfirmation,
    FileDiff,
    ToolConfirmationOutcome,
    ToolRegistry,
)
from .transport import LiteLLMTransport
from .turn import EventType

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = """\
You are helm, a coding agent working inside a project directory. You read, \
search and edit files and run shell commands through the tools you are given.

- Inspect before you change: read the relevant files and search the tree first.
- Prefer small, targeted edits with edit_file over rewriting whole files.
- Explain shell commands that modify the system before running them.
- When the task is done, answer with a short summary of what you changed."""

MAX_PREVIEW = 120

_IS_WINDOWS = platform.system() == "Windows"


# ---------------------------------------------------------------------------
# Setup helpers
# ---------------------------------------------------------------------------


def discover_model(base_url: str, verbose: bool) -> str | None:
    """Query LM Studio's native API to find the currently loaded LLM."""
    url = f"{base_url}/api/v1/models"
    if verbose:
        fmt.model_info(f"Querying {url} for loaded models...")

    try:
        with urllib.request.urlopen(urllib.request.Request(url), timeout=10) as resp:
            data = json.loads(resp.read().decode())
    except urllib.error.URLError as e:
        raise AgentError(f"could not connect to LM Studio at {base_url}: {e}")
    except json.JSONDecodeError as e:
        raise AgentError(f"invalid JSON from {url}: {e}")

    # "data" is the OpenAI-compatible key, "models" the native one
    for entry in data.get("data") or data.get("models") or []:
        if entry.get("type") == "llm" and entry.get("loaded_instances"):
            model_key = entry.get("id", entry.get("key"))
            if verbose:
                fmt.model_info(f"Discovered loaded model: {model_key}")
            return model_key
    return None


def resolve_provider(config: Config, verbose: bool) -> None:
    """Fill in the model and API key the provider needs, or raise ConfigError."""
    provider = config.provider
    if provider == "lmstudio":
        if not config.get_model():
            model = discover_model(config.base_url or "http://127.0.0.1:1234", verbose)
            if not model:
                raise AgentError(
                    "no loaded LLM found in LM Studio. "
                    "Load a model in LM Studio or use --model to specify one."
                )
            config.set_model(model)
            config.model_switched_during_session = False
        elif verbose:
            fmt.model_info(f"Using user-specified model: {config.get_model()}")
        return

    if not config.get_model():
        raise ConfigError(f"--model is required when --provider is {provider}")
    if provider == "huggingface":
        if "/" not in config.get_model().removeprefix("huggingface/"):
            raise ConfigError(
                "HuggingFace model must be in org/model format (e.g. zai-org/GLM-5)"
            )
        config.api_key = config.api_key or os.environ.get("HF_TOKEN")
        if not config.api_key:
            raise ConfigError("--api-key or HF_TOKEN env var required for huggingface provider")
    elif provider == "openrouter":
        config.api_key = config.api_key or os.environ.get("OPENROUTER_API_KEY")
        if not config.api_key:
            raise ConfigError(
                "--api-key or OPENROUTER_API_KEY env var required for openrouter provider"
            )


def build_system_prompt(config: Config) -> str | None:
    """The system instruction sent with every turn, or None when disabled."""
    if config.system_prompt == "":
        return None
    content = config.system_prompt or DEFAULT_SYSTEM_PROMPT
    now = datetime.now().astimezone()
    return (
        f"{content}\n\nWorking directory: {config.base_dir}"
        f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )


def build_registry(config: Config) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (
        ReadFileTool(config),
        ListFilesTool(config),
        GrepTool(config),
        WriteFileTool(config),
        EditFileTool(config),
        ShellTool(config),
    ):
        registry.register(tool)
    return registry


# ---------------------------------------------------------------------------
# Tool call rendering and confirmations
# ---------------------------------------------------------------------------

ConfirmCallback = Callable[[Any], Awaitable[tuple[ToolConfirmationOutcome, dict | None]]]


async def deny_all(call) -> tuple[ToolConfirmationOutcome, dict | None]:
    return ToolConfirmationOutcome.CANCEL, None


def _preview(display: str | FileDiff | None) -> str:
    if isinstance(display, FileDiff):
        return display.file_name
    if not display:
        return ""
    first = display.strip().splitlines()[0] if display.strip() else ""
    if len(first) > MAX_PREVIEW:
        first = first[:MAX_PREVIEW] + "..."
    return first


class ToolCallRenderer:
    """Scheduler observer: prints status changes and answers approval requests.

    Approval requests are handed to *confirm*, whose outcome is fed back
    through the call's ``on_confirm`` handler.
    """

    def __init__(self, confirm: ConfirmCallback = deny_all, verbose: bool = True):
        self.confirm = confirm
        self.verbose = verbose
        self._seen: dict[str, ToolCallStatus] = {}
        self._tasks: set[asyncio.Task] = set()

    def on_update(self, calls: list) -> None:
        for call in calls:
            if self._seen.get(call.call_id) is call.status:
                continue
            self._seen[call.call_id] = call.status
            name = call.request.name
            if call.status is ToolCallStatus.AWAITING_APPROVAL:
                task = asyncio.ensure_future(self._resolve(call))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            elif not self.verbose:
                continue
            elif call.status is ToolCallStatus.EXECUTING:
                fmt.tool_call(name, call.tool.describe(call.request.args))
            elif call.status is ToolCallStatus.SUCCESS:
                fmt.tool_result(
                    name, (call.duration_ms or 0) / 1000, _preview(call.response.result_display)
                )
            elif call.status is ToolCallStatus.ERROR:
                fmt.tool_error(name, call.response.error or "failed")
            elif call.status is ToolCallStatus.CANCELLED:
                fmt.tool_cancelled(name)

    def on_complete(self, calls: list) -> None:
        self._seen.clear()

    async def _resolve(self, call) -> None:
        try:
            outcome, payload = await self.confirm(call)
        except Exception:
            logger.warning("confirmation for %s failed", call.call_id, exc_info=True)
            outcome, payload = ToolConfirmationOutcome.CANCEL, None
        await call.confirmation_details.on_confirm(outcome, payload)


async def _edit_in_editor(content: str, file_name: str) -> str | None:
    """Open $EDITOR on *content*; returns the edited text or None if aborted."""
    editor = os.environ.get("VISUAL") or os.environ.get("EDITOR") or "vi"
    suffix = Path(file_name).suffix
    fd, path = tempfile.mkstemp(prefix="helm-edit-", suffix=suffix)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        proc = await asyncio.to_thread(subprocess.run, [*shlex.split(editor), path])
        if proc.returncode != 0:
            fmt.warning(f"editor exited with code {proc.returncode}, change discarded")
            return None
        return Path(path).read_text(encoding="utf-8")
    finally:
        os.unlink(path)


class ConfirmationPrompter:
    """Asks the user about one waiting tool call at a time."""

    def __init__(self):
        self._lock = asyncio.Lock()

    async def __call__(self, call) -> tuple[ToolConfirmationOutcome, dict | None]:
        details = call.confirmation_details
        async with self._lock:
            if not sys.stdin.isatty():
                fmt.warning(f"{call.request.name} needs approval but stdin is not a terminal; denied")
                return ToolConfirmationOutcome.CANCEL, None

            fmt.confirmation_title(details.title)
            editable = isinstance(details, EditConfirmation)
            if editable:
                fmt.diff(details.file_diff)
            elif isinstance(details, ExecConfirmation):
                fmt.command(details.command)
            else:
                fmt.info(details.prompt)
                for url in details.urls:
                    fmt.info(f"  {url}")

            choices = "[y] once  [a] always  [m] modify  [n] deny" if editable else (
                "[y] once  [a] always  [n] deny"
            )
            from prompt_toolkit import PromptSession

            session = PromptSession()
            while True:
                try:
                    answer = await session.prompt_async(f"  {choices} > ")
                except (EOFError, KeyboardInterrupt):
                    return ToolConfirmationOutcome.CANCEL, None

                answer = answer.strip().lower()
                if answer in ("y", "yes"):
                    return ToolConfirmationOutcome.PROCEED_ONCE, None
                if answer in ("a", "always"):
                    return ToolConfirmationOutcome.PROCEED_ALWAYS, None
                if answer in ("", "n", "no"):
                    return ToolConfirmationOutcome.CANCEL, None
                if answer in ("m", "modify") and editable:
                    edited = await _edit_in_editor(details.new_content, details.file_name)
                    if edited is not None:
                        return ToolConfirmationOutcome.MODIFY_WITH_EDITOR, {"new_content": edited}
                    continue
                fmt.warning(f"unrecognized answer {answer!r}")


def _add_signal_handler(loop: asyncio.AbstractEventLoop, sig: int, callback: Any) -> bool:
    """Add a signal handler, returning False where the loop doesn't support it."""
    if _IS_WINDOWS:
        return False
    try:
        loop.add_signal_handler(sig, callback)
        return True
    except NotImplementedError:
        return False


def _remove_signal_handler(loop: asyncio.AbstractEventLoop, sig: int) -> None:
    if _IS_WINDOWS:
        return
    try:
        loop.remove_signal_handler(sig)
    except NotImplementedError:
        pass


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------


def build_agent(
    config: Config,
    telemetry: Telemetry,
    *,
    confirm: ConfirmCallback = deny_all,
    verbose: bool = True,
    transport: LiteLLMTransport | None = None,
) -> tuple[AgentClient, CoreToolScheduler]:
    """Wire a client and a scheduler sharing one registry and telemetry."""
    registry = build_registry(config)
    client = AgentClient(
        config,
        transport or LiteLLMTransport(config),
        registry,
        telemetry,
        system_instruction=build_system_prompt(config),
    )
    renderer = ToolCallRenderer(confirm, verbose)
    scheduler = CoreToolScheduler(
        registry,
        config,
        on_tool_calls_update=renderer.on_update,
        on_all_tool_calls_complete=renderer.on_complete,
        telemetry=telemetry,
    )
    return client, scheduler


async def run_agent_loop(
    client: AgentClient,
    scheduler: CoreToolScheduler,
    request,
    token: CancellationToken,
    *,
    prompt_id: str = "",
    verbose: bool = True,
) -> tuple[str | None, str]:
    """Run one user request until the model yields, feeding tool results back.

    Returns ``(answer, outcome)`` where outcome is ``"ok"``, ``"max_turns"``
    or ``"cancelled"``. Model errors raise AgentError.
    """
    prompt_id = prompt_id or uuid.uuid4().hex[:12]
    answer: str | None = None
    while True:
        if verbose:
            model = client.config.get_model()
            fmt.turn_header(
                client.session_turn_count + 1,
                client.config.max_session_turns,
                client.transport.count_tokens(model, client.get_history()),
            )
        texts: list[str] = []
        tool_requests = []
        async for event in client.send_message_stream(request, token, prompt_id):
            if event.type is EventType.CONTENT:
                texts.append(event.value)
            elif event.type is EventType.TOOL_CALL_REQUEST:
                tool_requests.append(event.value)
            elif event.type is EventType.CHAT_COMPRESSED:
                if verbose:
                    fmt.compressed(
                        event.value["original_token_count"], event.value["new_token_count"]
                    )
            elif event.type is EventType.FINISHED:
                if verbose and event.value != "STOP":
                    fmt.finished(event.value)
            elif event.type is EventType.USER_CANCELLED:
                return "".join(texts) or answer, "cancelled"
            elif event.type is EventType.MAX_SESSION_TURNS:
                return "".join(texts) or answer, "max_turns"
            elif event.type is EventType.ERROR:
                raise AgentError(event.value["message"])

        if texts:
            answer = "".join(texts)
            if verbose and tool_requests:
                fmt.assistant_text(answer)
        if not tool_requests:
            return answer, "ok"

        batch = await scheduler.schedule(tool_requests, token)
        completed = await batch.wait()
        parts = [p for call in completed for p in call.response.response_parts]
        all_cancelled = all(c.status is ToolCallStatus.CANCELLED for c in completed)
        if token.cancelled or all_cancelled:
            # The calls still need answers in the history for the next request.
            client.add_history(user_content(parts))
            return answer, "cancelled"
        request = parts


async def run_with_interrupt(coro_fn, token: CancellationToken):
    """Await ``coro_fn()`` with Ctrl-C wired to *token*."""
    loop = asyncio.get_running_loop()
    installed = _add_signal_handler(loop, signal.SIGINT, token.cancel)
    try:
        return await coro_fn()
    finally:
        if installed:
            _remove_signal_handler(loop, signal.SIGINT)


async def _accept_fallback(current: str, fallback: str, error: BaseException) -> bool:
    fmt.warning(f"persistent rate limiting on {current}; switching to {fallback}")
    return True


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser.

    Options that a config file may set default to ``_UNSET`` so
    ``apply_config_to_args`` can tell them apart from explicit values.
    """
    parser = argparse.ArgumentParser(
        prog="helm",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A coding agent with approval-gated tools and multi-provider LLM support.",
    )
    parser.add_argument("--version", action="store_true", help="Print the version and exit.")
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a template config file (global, or helm.toml with --project) and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/helm.toml instead of the global file.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--provider",
        choices=list(PROVIDERS),
        default=_UNSET,
        help="LLM provider (default: lmstudio).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--fallback-model",
        default=_UNSET,
        help="Model to switch to after persistent rate limiting.",
    )
    parser.add_argument(
        "--api-key", default=_UNSET, help="API key for the provider (overrides env var)."
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens (default: 32768).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window size; compression triggers relative to it.",
    )
    parser.add_argument(
        "--temperature", type=float, default=_UNSET, help="Sampling temperature."
    )
    parser.add_argument(
        "--top-p", type=float, default=_UNSET, help="Top-p (nucleus) sampling."
    )
    parser.add_argument(
        "--seed", type=int, default=_UNSET, help="Random seed (model support varies)."
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum model turns for the whole session, -1 for no limit (default: 100).",
    )
    parser.add_argument(
        "--approval-mode",
        choices=[m.value for m in ApprovalMode],
        default=_UNSET,
        help="Which tool calls need approval (default: default).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Run every tool call without asking (same as --approval-mode yolo).",
    )
    parser.add_argument(
        "--allowed-commands",
        default=_UNSET,
        help='Comma-separated shell commands that never ask (e.g. "ls,git").',
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt", default=_UNSET, help="Replace the default system prompt."
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Omit the system instruction entirely.",
    )

    parser.add_argument(
        "--base-dir",
        default=".",
        help="Directory the file and shell tools work in (default: current directory).",
    )
    parser.add_argument(
        "--report",
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the final answer.",
    )
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging on stderr."
    )
    return parser


def _init_config(args) -> None:
    if args.project:
        path = Path(args.base_dir).resolve() / "helm.toml"
    else:
        path = global_config_dir() / "config.toml"
    if path.exists():
        raise ConfigError(f"{path} already exists; not overwriting")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(generate_config(project=args.project), encoding="utf-8")
    print(path)


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("helm-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        try:
            _init_config(args)
        except ConfigError as e:
            fmt.error(str(e))
            sys.exit(1)
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        apply_config_to_args(args, load_config(Path(args.base_dir)))
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)

    args.verbose = not args.quiet
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    fmt.init(color=args.color, no_color=args.no_color)

    if (
        args.max_context_tokens is not None
        and args.max_output_tokens is not None
        and args.max_output_tokens > args.max_context_tokens
    ):
        parser.error(
            "--max-output-tokens must be <= --max-context-tokens when both are specified."
        )

    telemetry = Telemetry()
    config = Config.from_args(args)

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not args.report:
            return
        telemetry.finalize(
            task=args.question or "",
            model=config.get_model() or "unknown",
            provider=config.provider,
            settings={
                "temperature": config.temperature,
                "top_p": config.top_p,
                "seed": config.seed,
                "max_turns": config.max_session_turns,
                "max_output_tokens": config.max_output_tokens,
                "max_context_tokens": config.max_context_tokens,
                "approval_mode": config.approval_mode.value,
                "allowed_commands": sorted(config.allowed_commands),
                "fallback_model": config.fallback_model,
                "model_switched": config.model_switched_during_session,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=client_turns(),
            error_message=error_message,
        )
        try:
            telemetry.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    state: dict = {}

    def client_turns() -> int:
        client = state.get("client")
        return client.session_turn_count if client else 0

    try:
        exit_code = asyncio.run(_run_main(args, config, telemetry, state, _write_report))
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        fmt.cancelled("Interrupted.")
        sys.exit(130)
    sys.exit(exit_code)


_EXIT_CODES = {"ok": 0, "max_turns": 2, "cancelled": 130}


async def _run_main(args, config: Config, telemetry: Telemetry, state: dict, _write_report) -> int:
    set_error_report_dir(config.error_report_dir)
    resolve_provider(config, args.verbose)
    config.fallback_handler = _accept_fallback

    client, scheduler = build_agent(
        config, telemetry, confirm=ConfirmationPrompter(), verbose=args.verbose
    )
    state["client"] = client

    if not args.repl:
        token = CancellationToken()
        answer, outcome = await run_with_interrupt(
            lambda: run_agent_loop(
                client, scheduler, args.question, token, verbose=args.verbose
            ),
            token,
        )
        if answer is not None:
            print(answer)
        exit_code = _EXIT_CODES[outcome]
        _write_report(
            "success" if outcome == "ok" else outcome, answer=answer, exit_code=exit_code
        )
        if args.verbose:
            fmt.completion(client.session_turn_count, outcome)
        if outcome == "max_turns":
            fmt.warning("session turn limit reached, agent stopped.")
        return exit_code

    if args.question:
        await _ask(client, scheduler, args.question, args.verbose)
    await repl_loop(client, scheduler, base_dir=config.base_dir, verbose=args.verbose)
    return 0


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


async def _ask(client: AgentClient, scheduler: CoreToolScheduler, question: str, verbose: bool) -> None:
    token = CancellationToken()
    try:
        answer, outcome = await run_with_interrupt(
            lambda: run_agent_loop(client, scheduler, question, token, verbose=verbose),
            token,
        )
    except AgentError as e:
        fmt.error(str(e))
        return
    if answer is not None:
        print(answer)
    if outcome == "cancelled":
        fmt.cancelled()
    elif outcome == "max_turns":
        fmt.warning("session turn limit reached; use /clear to start over.")


def _repl_help() -> None:
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation\n"
        "  /compress          Summarize the conversation history now\n"
        "  /approval [mode]   Show or set the approval mode (default, auto_edit, yolo)\n"
        "  /model [name]      Show or switch the model\n"
        "  /exit, /quit       Exit the REPL"
    )


async def _repl_compress(client: AgentClient) -> None:
    token = CancellationToken()
    try:
        result = await run_with_interrupt(
            lambda: client.try_compress_chat(force=True, token=token), token
        )
    except AgentError as e:
        fmt.error(f"compression failed: {e}")
        return
    if result is None:
        fmt.info("nothing to compress")
    else:
        fmt.compressed(result["original_token_count"], result["new_token_count"])


def _repl_approval(config: Config, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"approval mode: {config.approval_mode.value}")
        return
    try:
        config.set_approval_mode(arg)
    except ValueError:
        fmt.warning(
            f"unknown approval mode {arg!r} (expected {', '.join(m.value for m in ApprovalMode)})"
        )
        return
    fmt.info(f"approval mode set to {config.approval_mode.value}")


def _repl_model(config: Config, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"model: {config.get_model()}")
        return
    config.set_model(arg)
    fmt.info(f"model set to {arg}")


async def repl_loop(
    client: AgentClient,
    scheduler: CoreToolScheduler,
    *,
    base_dir: str,
    verbose: bool,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".helm", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "helm> ")])

    if verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)
            break

        line = line.strip()
        if not line:
            continue
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
        elif cmd == "/clear":
            dropped = len(client.get_history())
            client.reset_chat()
            fmt.info(f"context cleared ({dropped} entries removed)")
        elif cmd == "/compress":
            await _repl_compress(client)
        elif cmd == "/approval":
            _repl_approval(client.config, cmd_arg)
        elif cmd == "/model":
            _repl_model(client.config, cmd_arg)
        else:
            await _ask(client, scheduler, line, verbose)


if __name__ == "__main__":
    main()
