"""The run_shell_command tool."""

import asyncio
import logging
import os
import shlex
import signal
import sys

from .config import Config
from .tools import (
    BaseTool,
    ExecConfirmation,
    ToolConfirmationOutcome,
    ToolError,
    ToolResult,
)

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for the process to die after SIGKILL


def root_command(command: str) -> str | None:
    """Return the basename of the first word of *command*, or None."""
    try:
        words = shlex.split(command)
    except ValueError:
        words = command.split()
    # Skip leading VAR=value assignments
    for word in words:
        if "=" in word and not word.startswith(("=", "/", ".")):
            continue
        return os.path.basename(word)
    return None


def _kill_process_group(proc: asyncio.subprocess.Process) -> None:
    """Kill the process and everything it spawned (start_new_session=True)."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    try:
        proc.kill()
    except ProcessLookupError:
        pass  # already dead


def _truncate(output: str) -> str:
    data = output.encode("utf-8")
    if len(data) <= MAX_OUTPUT_BYTES:
        return output
    head = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")
    return head + f"\n[output truncated at {MAX_OUTPUT_BYTES // 1024}KB]"


class ShellTool(BaseTool):
    name = "run_shell_command"
    description = (
        "Run a shell command in the base directory and return its combined "
        "stdout/stderr and exit code."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {"type": "string", "description": "The command line to run with /bin/sh."},
            "description": {"type": "string", "description": "Short explanation shown to the user."},
        },
        "required": ["command"],
    }

    def __init__(self, config: Config):
        self.config = config
        self.allowlist: set[str] = set(config.allowed_commands)

    def validate(self, args: dict) -> str | None:
        error = super().validate(args)
        if error:
            return error
        if not args["command"].strip():
            return "Command cannot be empty."
        if root_command(args["command"]) is None:
            return "Could not identify command root to obtain permission from user."
        return None

    def describe(self, args: dict) -> str:
        desc = args.get("description")
        return f"{args['command']} ({desc})" if desc else args["command"]

    async def should_confirm(self, args: dict, token) -> ExecConfirmation | None:
        root = root_command(args["command"])
        if root in self.allowlist:
            return None

        async def on_confirm(outcome: ToolConfirmationOutcome, payload: dict | None = None):
            if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
                self.allowlist.add(root)

        return ExecConfirmation(
            title="Confirm Shell Command",
            command=args["command"],
            root_command=root,
            on_confirm=on_confirm,
        )

    async def execute(self, args: dict, token) -> ToolResult:
        command = args["command"]
        timeout = self.config.shell_timeout
        if token.cancelled:
            return ToolResult(content="Command was cancelled by user before it could start.")

        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self.config.base_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        communicate = asyncio.ensure_future(proc.communicate())
        cancelled = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {communicate, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            cancelled.cancel()

        if communicate not in done:
            logger.debug("killing process group %d for %r", proc.pid, command)
            _kill_process_group(proc)
            try:
                await asyncio.wait_for(communicate, _KILL_WAIT_TIMEOUT)
            except asyncio.TimeoutError:
                communicate.cancel()
            if token.cancelled:
                return ToolResult(
                    content="Command was cancelled by user before it could complete.",
                    display="Command cancelled by user.",
                )
            message = f"command timed out after {timeout}s: {command}"
            return ToolResult(
                content=f"error: {message}",
                display=message,
                error=ToolError(message),
            )

        stdout, _ = communicate.result()
        output = _truncate(stdout.decode("utf-8", errors="replace"))
        content = "\n".join(
            [
                f"Command: {command}",
                f"Directory: {self.config.base_dir}",
                f"Output: {output.rstrip() or '(empty)'}",
                f"Exit Code: {proc.returncode}",
            ]
        )
        display = output.rstrip() or f"(no output, exit code {proc.returncode})"
        return ToolResult(content=content, display=display)
