"""Built-in file tools: read, list, grep, write and edit.

All paths are confined to the configured base directory. Writes and edits
ask for approval with a unified diff unless the session auto-approves edits.
"""

import base64
import difflib
import fnmatch
import mimetypes
import os
import re
from pathlib import Path, PurePosixPath, PureWindowsPath

from .config import ApprovalMode, Config
from .edit import EditError, apply_edit
from .tools import (
    BaseTool,
    EditConfirmation,
    FileDiff,
    ModifiableTool,
    ToolConfirmationOutcome,
    ToolError,
    ToolErrorType,
    ToolResult,
)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
MAX_LINE_LENGTH = 2000
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_LIST_RESULTS = 100
MAX_GREP_MATCHES = 100

_INLINE_MIME_PREFIXES = ("image/",)
_INLINE_MIME_TYPES = {"application/pdf"}


def safe_resolve(file_path: str, base_dir: str) -> Path:
    """Resolve *file_path* against *base_dir*, refusing anything outside it.

    Raises:
        ValueError: If the resolved path escapes the base directory.
    """
    base = Path(base_dir).resolve()
    if Path(file_path).is_absolute():
        resolved = Path(file_path).resolve()
    else:
        resolved = (base / file_path).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(
            f"Path {file_path!r} resolves to {resolved}, "
            f"which is outside base directory {base}"
        )
    return resolved


def _relative(path: Path, base_dir: str) -> str:
    try:
        return str(path.relative_to(Path(base_dir).resolve()))
    except ValueError:
        return str(path)


def _failure(message: str, error_type=ToolErrorType.EXECUTION_FAILED) -> ToolResult:
    return ToolResult(
        content=f"error: {message}",
        display=message,
        error=ToolError(message, error_type),
    )


def _check_pattern(pattern: str) -> str | None:
    if PurePosixPath(pattern).is_absolute() or PureWindowsPath(pattern).is_absolute():
        return f"pattern {pattern!r} must be relative, not absolute"
    if ".." in PurePosixPath(pattern).parts or ".." in PureWindowsPath(pattern).parts:
        return f"pattern {pattern!r} must not contain '..'"
    return None


def _is_binary(path: Path) -> bool:
    with open(path, "rb") as f:
        return b"\x00" in f.read(BINARY_CHECK_BYTES)


def _walk_files(root: Path):
    for dirpath, dirs, files in os.walk(root):
        dirs[:] = [d for d in dirs if d != ".git"]
        for filename in files:
            yield Path(dirpath) / filename


def make_diff(file_name: str, original: str, new: str) -> str:
    return "".join(
        difflib.unified_diff(
            original.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=f"{file_name} (current)",
            tofile=f"{file_name} (proposed)",
        )
    )


class ReadFileTool(BaseTool):
    name = "read_file"
    description = (
        "Read a file. Text files come back with line numbers; use offset/limit "
        "to page through long files. Images and PDFs are returned as binary content."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to read."},
            "offset": {
                "type": "integer",
                "minimum": 1,
                "description": "1-based line number to start reading from. Defaults to 1.",
            },
            "limit": {
                "type": "integer",
                "minimum": 1,
                "description": "Maximum number of lines to return. Defaults to 2000.",
            },
        },
        "required": ["file_path"],
    }

    def __init__(self, config: Config):
        self.config = config

    def describe(self, args: dict) -> str:
        return args.get("file_path", "")

    async def execute(self, args: dict, token) -> ToolResult:
        file_path = args["file_path"]
        try:
            resolved = safe_resolve(file_path, self.config.base_dir)
        except ValueError as exc:
            return _failure(str(exc))
        if not resolved.is_file():
            return _failure(f"file does not exist: {file_path}")

        mime, _ = mimetypes.guess_type(resolved.name)
        if mime and (mime.startswith(_INLINE_MIME_PREFIXES) or mime in _INLINE_MIME_TYPES):
            data = base64.b64encode(resolved.read_bytes()).decode("ascii")
            return ToolResult(
                content={"inline_data": {"mime_type": mime, "data": data}},
                display=f"Read {mime} file: {file_path}",
            )

        try:
            if _is_binary(resolved):
                return _failure(f"binary file detected: {file_path}")
            text = resolved.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            return _failure(f"failed to decode {file_path} as UTF-8: {exc}")
        except OSError as exc:
            return _failure(str(exc))

        lines = text.splitlines()
        start = args.get("offset", 1) - 1
        selected = lines[start : start + args.get("limit", 2000)]

        out = []
        total_bytes = 0
        for i, line in enumerate(selected, start=start + 1):
            numbered = f"{i}: {line[:MAX_LINE_LENGTH]}"
            total_bytes += len(numbered.encode("utf-8")) + 1
            if total_bytes > MAX_OUTPUT_BYTES:
                break
            out.append(numbered)

        remaining = len(lines) - (start + len(out))
        result = "\n".join(out)
        if remaining > 0:
            result += f"\n[{remaining} more lines, use offset={start + len(out) + 1} to continue]"
        return ToolResult(content=result, display=f"Read {len(out)} lines from {file_path}")


class ListFilesTool(BaseTool):
    name = "list_files"
    description = (
        "Recursively list files under a directory matching a glob pattern, "
        "newest first."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern, e.g. '**/*.py'."},
            "path": {"type": "string", "description": "Directory to search. Defaults to the base directory."},
        },
        "required": ["pattern"],
    }

    def __init__(self, config: Config):
        self.config = config

    def validate(self, args: dict) -> str | None:
        return super().validate(args) or _check_pattern(args["pattern"])

    def describe(self, args: dict) -> str:
        return f"{args.get('pattern')} in {args.get('path', '.')}"

    async def execute(self, args: dict, token) -> ToolResult:
        pattern = args["pattern"]
        path = args.get("path", ".")
        try:
            root = safe_resolve(path, self.config.base_dir)
        except ValueError as exc:
            return _failure(str(exc))
        if not root.is_dir():
            return _failure(f"path is not a directory: {path}")

        matched = [
            f for f in root.glob(pattern)
            if f.is_file() and ".git" not in f.relative_to(root).parts
        ]
        if not matched:
            return ToolResult(content="No files matched the pattern.", display="No files found")

        matched.sort(key=lambda f: f.stat().st_mtime, reverse=True)
        shown = [_relative(f, self.config.base_dir) for f in matched[:MAX_LIST_RESULTS]]
        result = "\n".join(shown)
        if len(matched) > MAX_LIST_RESULTS:
            result += (
                f"\n(Results truncated: showing first {MAX_LIST_RESULTS} results. "
                "Use a more specific pattern or path.)"
            )
        return ToolResult(content=result, display=f"Found {len(matched)} file(s)")


class GrepTool(BaseTool):
    name = "grep"
    description = "Search file contents for a regular expression."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Python regular expression."},
            "path": {"type": "string", "description": "Directory to search. Defaults to the base directory."},
            "include": {"type": "string", "description": "Only search file names matching this glob."},
        },
        "required": ["pattern"],
    }

    def __init__(self, config: Config):
        self.config = config

    def validate(self, args: dict) -> str | None:
        error = super().validate(args)
        if error:
            return error
        try:
            re.compile(args["pattern"])
        except re.error as exc:
            return f"invalid regex {args['pattern']!r}: {exc}"
        if "include" in args:
            return _check_pattern(args["include"])
        return None

    def describe(self, args: dict) -> str:
        return f"/{args.get('pattern')}/ in {args.get('path', '.')}"

    async def execute(self, args: dict, token) -> ToolResult:
        regex = re.compile(args["pattern"])
        path = args.get("path", ".")
        include = args.get("include")
        try:
            root = safe_resolve(path, self.config.base_dir)
        except ValueError as exc:
            return _failure(str(exc))
        if not root.is_dir():
            return _failure(f"path is not a directory: {path}")

        matches: list[tuple[float, str, int, str]] = []
        for filepath in _walk_files(root):
            if token.cancelled:
                break
            if include and not fnmatch.fnmatch(filepath.name, include):
                continue
            try:
                if _is_binary(filepath):
                    continue
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            rel = _relative(filepath, self.config.base_dir)
            mtime = filepath.stat().st_mtime
            for line_no, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    matches.append((-mtime, rel, line_no, line[:MAX_LINE_LENGTH]))

        if not matches:
            return ToolResult(content="No matches found.", display="No matches found")

        matches.sort()
        out = [f"Found {len(matches)} matches"]
        current = None
        for _, rel, line_no, line in matches[:MAX_GREP_MATCHES]:
            if rel != current:
                out.append(f"\n{rel}:")
                current = rel
            out.append(f"  Line {line_no}: {line}")
        if len(matches) > MAX_GREP_MATCHES:
            out.append(
                f"(Results truncated: showing first {MAX_GREP_MATCHES} matches. "
                "Use a more specific pattern or path.)"
            )
        return ToolResult(content="\n".join(out), display=f"Found {len(matches)} match(es)")


class _EditingTool(ModifiableTool):
    """Shared approval flow for tools that change a file's content."""

    def __init__(self, config: Config):
        self.config = config

    def describe(self, args: dict) -> str:
        return args.get("file_path", "")

    def compute_change(self, args: dict) -> tuple[Path, str | None, str]:
        """Return (path, current content or None, proposed content)."""
        raise NotImplementedError

    async def should_confirm(self, args: dict, token) -> EditConfirmation | None:
        if self.config.approval_mode in (ApprovalMode.AUTO_EDIT, ApprovalMode.YOLO):
            return None
        try:
            path, original, proposed = self.compute_change(args)
        except (ValueError, OSError):
            # execute() reports the same problem as a tool error
            return None

        async def on_confirm(outcome: ToolConfirmationOutcome, payload: dict | None = None):
            if outcome == ToolConfirmationOutcome.PROCEED_ALWAYS:
                self.config.set_approval_mode(ApprovalMode.AUTO_EDIT)

        rel = _relative(path, self.config.base_dir)
        return EditConfirmation(
            title=f"Confirm {'Edit' if original is not None else 'Write'}: {rel}",
            file_name=path.name,
            file_path=str(path),
            file_diff=make_diff(path.name, original or "", proposed),
            original_content=original,
            new_content=proposed,
            on_confirm=on_confirm,
        )

    async def execute(self, args: dict, token) -> ToolResult:
        try:
            path, original, proposed = self.compute_change(args)
        except EditError as exc:
            return _failure(f"{exc} in {args['file_path']}")
        except (ValueError, OSError) as exc:
            return _failure(str(exc))

        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(proposed, encoding="utf-8")
        rel = _relative(path, self.config.base_dir)
        if original is None:
            summary = f"Created {rel} ({len(proposed.encode('utf-8'))} bytes)"
        else:
            summary = f"Updated {rel}"
        return ToolResult(
            content=summary,
            display=FileDiff(
                file_diff=make_diff(path.name, original or "", proposed),
                file_name=path.name,
                original_content=original,
                new_content=proposed,
            ),
        )


class WriteFileTool(_EditingTool):
    name = "write_file"
    description = (
        "Create or overwrite a file with the given content, creating parent "
        "directories as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to write."},
            "content": {"type": "string", "description": "The full content to write."},
        },
        "required": ["file_path", "content"],
    }

    def compute_change(self, args):
        path = safe_resolve(args["file_path"], self.config.base_dir)
        if path.is_dir():
            raise ValueError(f"path is a directory: {args['file_path']}")
        original = path.read_text(encoding="utf-8") if path.exists() else None
        return path, original, args["content"]

    def apply_modification(self, args: dict, new_content: str) -> dict:
        return {**args, "content": new_content}


class EditFileTool(_EditingTool):
    name = "edit_file"
    description = (
        "Replace old_string with new_string in an existing file. old_string must "
        "match expected_replacements times (default 1). Use write_file to create files."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file to edit."},
            "old_string": {"type": "string", "description": "The exact text to replace."},
            "new_string": {"type": "string", "description": "The replacement text."},
            "expected_replacements": {
                "type": "integer",
                "minimum": 1,
                "description": "How many occurrences to replace. Defaults to 1.",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    def compute_change(self, args):
        path = safe_resolve(args["file_path"], self.config.base_dir)
        if not path.is_file():
            raise ValueError(f"file does not exist: {args['file_path']}")
        original = path.read_text(encoding="utf-8")
        proposed = apply_edit(
            original,
            args["old_string"],
            args["new_string"],
            args.get("expected_replacements", 1),
        )
        return path, original, proposed

    def apply_modification(self, args: dict, new_content: str) -> dict:
        # The user rewrote the whole file: turn the edit into a full replacement.
        path = safe_resolve(args["file_path"], self.config.base_dir)
        current = path.read_text(encoding="utf-8")
        return {
            "file_path": args["file_path"],
            "old_string": current,
            "new_string": new_content,
            "expected_replacements": 1,
        }
