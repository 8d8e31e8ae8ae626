"""Configuration file loading, merging and the runtime Config object.

Reads TOML config from ~/.config/helm/config.toml (global) and
<base_dir>/helm.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable

from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


class ApprovalMode(str, Enum):
    DEFAULT = "default"
    AUTO_EDIT = "auto_edit"
    YOLO = "yolo"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "fallback_model": str,
    "api_key": str,
    "base_url": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "top_p": (int, float),
    "seed": int,
    "max_turns": int,
    "approval_mode": str,
    "yolo": bool,
    "allowed_commands": list,
    "system_prompt": str,
    "no_system_prompt": bool,
    "compression_threshold": (int, float),
    "compression_preserve": (int, float),
    "retry_attempts": int,
    "retry_initial_delay": (int, float),
    "retry_max_delay": (int, float),
    "shell_timeout": int,
    "error_report_dir": str,
    "color": bool,
    "quiet": bool,
}

_LIST_OF_STR_KEYS = {"allowed_commands"}

_FRACTION_KEYS = {"compression_threshold", "compression_preserve"}

PROVIDERS = ("lmstudio", "huggingface", "openrouter", "generic")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "lmstudio",
    "model": None,
    "fallback_model": None,
    "api_key": None,
    "base_url": None,
    "max_output_tokens": 32768,
    "max_context_tokens": None,
    "temperature": None,
    "top_p": None,
    "seed": None,
    "max_turns": 100,
    "approval_mode": ApprovalMode.DEFAULT.value,
    "yolo": False,
    "allowed_commands": None,
    "system_prompt": None,
    "no_system_prompt": False,
    "compression_threshold": 0.7,
    "compression_preserve": 0.3,
    "retry_attempts": 5,
    "retry_initial_delay": 5.0,
    "retry_max_delay": 30.0,
    "shell_timeout": 120,
    "error_report_dir": None,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "helm"
    return Path.home() / ".config" / "helm"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types and ranges in a parsed config dict.

    Raises ConfigError for mismatches, prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is an int subclass; only accept it where bool is expected.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, got {type(elem).__name__}"
                    )

        if key in _FRACTION_KEYS and not 0 < value < 1:
            raise ConfigError(f"{source}: {key!r} must be between 0 and 1")

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}"
        )
    if "approval_mode" in config:
        try:
            ApprovalMode(config["approval_mode"])
        except ValueError:
            raise ConfigError(
                f"{source}: 'approval_mode' must be one of "
                f"{', '.join(m.value for m in ApprovalMode)}"
            )

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate one TOML file. Returns an empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}

    if "error_report_dir" in known:
        p = Path(known["error_report_dir"]).expanduser()
        if not p.is_absolute():
            p = path.parent / p
        known["error_report_dir"] = str(p)
    return known


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict holding only the keys that were set in a file.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "helm.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    merged = {**global_config, **project_config}

    # Re-check mutual exclusion; the two keys may come from different files.
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Fill argparse values the CLI left unset from config, then from defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # One config key drives the --color / --no-color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)

    if isinstance(args.allowed_commands, str):
        args.allowed_commands = [
            c.strip() for c in args.allowed_commands.split(",") if c.strip()
        ]


def config_to_session_kwargs(config: dict) -> dict:
    """Convert a config dict to Session constructor kwargs."""
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        elif key == "max_turns":
            kwargs["max_session_turns"] = value
        else:
            kwargs[key] = value
    return kwargs


FallbackHandler = Callable[[str, str, BaseException], Awaitable[bool]]


class Config:
    """Resolved runtime settings shared by the client, scheduler and tools.

    The model and the approval mode are mutable for the lifetime of a session:
    a rate-limit fallback swaps the model and a "proceed always" answer can
    switch edits to auto-approval. Readers must call ``get_model()`` on every
    request instead of caching it.
    """

    def __init__(
        self,
        *,
        model: str | None,
        provider: str = "lmstudio",
        fallback_model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int | None = 32768,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        top_p: float | None = None,
        seed: int | None = None,
        max_session_turns: int = 100,
        approval_mode: ApprovalMode | str = ApprovalMode.DEFAULT,
        allowed_commands: list[str] | tuple = (),
        system_prompt: str | None = None,
        compression_threshold: float = 0.7,
        compression_preserve: float = 0.3,
        retry_attempts: int = 5,
        retry_initial_delay: float = 5.0,
        retry_max_delay: float = 30.0,
        shell_timeout: int = 120,
        base_dir: str = ".",
        error_report_dir: str | None = None,
    ):
        self._model = model
        self.provider = provider
        self.fallback_model = fallback_model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.top_p = top_p
        self.seed = seed
        self.max_session_turns = max_session_turns
        self._approval_mode = ApprovalMode(approval_mode)
        self.allowed_commands = list(allowed_commands or ())
        self.system_prompt = system_prompt
        self.compression_threshold = compression_threshold
        self.compression_preserve = compression_preserve
        self.retry_attempts = retry_attempts
        self.retry_initial_delay = retry_initial_delay
        self.retry_max_delay = retry_max_delay
        self.shell_timeout = shell_timeout
        self.base_dir = str(Path(base_dir).resolve())
        self.error_report_dir = error_report_dir
        self.model_switched_during_session = False
        self.fallback_handler: FallbackHandler | None = None

    def get_model(self) -> str | None:
        return self._model

    def set_model(self, model: str) -> None:
        if model != self._model:
            self._model = model
            self.model_switched_during_session = True

    @property
    def approval_mode(self) -> ApprovalMode:
        return self._approval_mode

    def set_approval_mode(self, mode: ApprovalMode | str) -> None:
        self._approval_mode = ApprovalMode(mode)

    def generation_config(self) -> dict:
        """Sampling parameters for the transport, omitting unset ones."""
        params = {
            "max_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "seed": self.seed,
        }
        return {k: v for k, v in params.items() if v is not None}

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        mode = ApprovalMode.YOLO if args.yolo else ApprovalMode(args.approval_mode)
        if args.no_system_prompt:
            system_prompt = ""
        else:
            system_prompt = args.system_prompt
        return cls(
            model=args.model,
            provider=args.provider,
            fallback_model=args.fallback_model,
            api_key=args.api_key,
            base_url=args.base_url,
            max_output_tokens=args.max_output_tokens,
            max_context_tokens=args.max_context_tokens,
            temperature=args.temperature,
            top_p=args.top_p,
            seed=args.seed,
            max_session_turns=args.max_turns,
            approval_mode=mode,
            allowed_commands=args.allowed_commands or (),
            system_prompt=system_prompt,
            compression_threshold=args.compression_threshold,
            compression_preserve=args.compression_preserve,
            retry_attempts=args.retry_attempts,
            retry_initial_delay=args.retry_initial_delay,
            retry_max_delay=args.retry_max_delay,
            shell_timeout=args.shell_timeout,
            base_dir=args.base_dir,
            error_report_dir=args.error_report_dir,
        )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# helm configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/helm.toml' if project else '~/.config/helm/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "lmstudio"          # "lmstudio" | "huggingface" | "openrouter" | "generic"',
        '# model = "qwen/qwen3-235b-a22b"',
        '# fallback_model = "qwen/qwen3-30b-a3b"   # used after repeated rate limiting',
        '# api_key = "sk-or-..."            # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 32768",
        "# max_context_tokens = 131072",
        "# temperature = 0.7",
        "# top_p = 1.0",
        "# seed = 42",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 100                 # session-wide model turns, -1 for no limit",
        '# approval_mode = "default"       # "default" | "auto_edit" | "yolo"',
        '# allowed_commands = ["ls", "git"]   # shell commands that never ask',
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        "# shell_timeout = 120",
        "",
        "# --- History compression ---",
        "# compression_threshold = 0.7",
        "# compression_preserve = 0.3",
        "",
        "# --- Retries ---",
        "# retry_attempts = 5",
        "# retry_initial_delay = 5.0",
        "# retry_max_delay = 30.0",
        "",
        "# --- Diagnostics ---",
        '# error_report_dir = "/tmp/helm-errors"',
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
