"""Tests for helm.config: TOML config file loading, merging, and CLI integration."""

import argparse
import tomllib
import types
from pathlib import Path

import pytest

from helm.config import (
    _UNSET,
    ApprovalMode,
    Config,
    ConfigError,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    global_config_dir,
    load_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _write_toml(path, content):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def _make_args(**overrides):
    """Build a namespace mimicking build_parser() with _UNSET sentinels."""
    defaults = {
        "provider": _UNSET,
        "model": _UNSET,
        "fallback_model": _UNSET,
        "api_key": _UNSET,
        "base_url": _UNSET,
        "max_output_tokens": _UNSET,
        "max_context_tokens": _UNSET,
        "temperature": _UNSET,
        "top_p": _UNSET,
        "seed": _UNSET,
        "max_turns": _UNSET,
        "approval_mode": _UNSET,
        "yolo": _UNSET,
        "allowed_commands": _UNSET,
        "system_prompt": _UNSET,
        "no_system_prompt": _UNSET,
        "color": _UNSET,
        "no_color": _UNSET,
        "quiet": _UNSET,
        "base_dir": ".",
    }
    defaults.update(overrides)
    return argparse.Namespace(**defaults)


@pytest.fixture
def no_global(tmp_path, monkeypatch):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))


# ===========================================================================
# Config loading
# ===========================================================================


class TestLoadConfig:
    def test_missing_files_returns_empty(self, tmp_path, no_global):
        assert load_config(tmp_path) == {}

    def test_global_only(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global_cfg"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "helm" / "config.toml", 'provider = "openrouter"\n')
        result = load_config(tmp_path / "project")
        assert result["provider"] == "openrouter"

    def test_project_only(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "max_turns = 42\n")
        assert load_config(tmp_path)["max_turns"] == 42

    def test_project_overrides_global(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "helm" / "config.toml", "max_turns = 10\nseed = 7\n")
        _write_toml(tmp_path / "helm.toml", "max_turns = 50\n")
        result = load_config(tmp_path)
        assert result["max_turns"] == 50
        assert result["seed"] == 7

    def test_unknown_keys_warn(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "helm.toml", 'unknown_key = "hi"\n')
        result = load_config(tmp_path)
        assert "unknown_key" not in result
        assert "unknown config key" in capsys.readouterr().err

    def test_wrong_type_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", 'max_turns = "not a number"\n')
        with pytest.raises(ConfigError, match="max_turns.*expected int.*got str"):
            load_config(tmp_path)

    def test_invalid_toml_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "invalid = [\n")
        with pytest.raises(ConfigError, match="invalid TOML"):
            load_config(tmp_path)

    def test_generate_config_is_valid_toml(self):
        content = generate_config()
        # Extract only the commented-out key=value lines (skip header comments)
        lines = []
        for line in content.splitlines():
            stripped = line.lstrip("# ").strip()
            if "=" in stripped and not stripped.startswith("--"):
                lines.append(stripped)
        parsed = tomllib.loads("\n".join(lines))
        assert parsed["provider"] == "lmstudio"
        assert parsed["approval_mode"] == "default"

    def test_generate_config_project_flag(self):
        assert "Project config" in generate_config(project=True)
        assert "Global config" in generate_config(project=False)


# ===========================================================================
# Value validation
# ===========================================================================


class TestValidation:
    def test_mixed_type_list(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", 'allowed_commands = ["ls", 42]\n')
        with pytest.raises(ConfigError, match=r"allowed_commands\[1\]"):
            load_config(tmp_path)

    def test_empty_list_is_valid(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "allowed_commands = []\n")
        assert load_config(tmp_path)["allowed_commands"] == []

    def test_toml_int_for_float_field(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "temperature = 1\n")
        assert load_config(tmp_path)["temperature"] == 1

    def test_bool_for_int_field_raises(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "max_turns = true\n")
        with pytest.raises(ConfigError, match="got bool"):
            load_config(tmp_path)

    def test_unknown_provider(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", 'provider = "acme"\n')
        with pytest.raises(ConfigError, match="'provider' must be one of"):
            load_config(tmp_path)

    def test_unknown_approval_mode(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", 'approval_mode = "sometimes"\n')
        with pytest.raises(ConfigError, match="approval_mode"):
            load_config(tmp_path)

    def test_fraction_out_of_range(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "compression_threshold = 1.5\n")
        with pytest.raises(ConfigError, match="between 0 and 1"):
            load_config(tmp_path)

    def test_error_report_dir_relative_to_config(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", 'error_report_dir = "errors"\n')
        assert load_config(tmp_path)["error_report_dir"] == str(tmp_path.resolve() / "errors")


class TestMutualExclusion:
    def test_same_file(self, tmp_path, no_global):
        _write_toml(
            tmp_path / "helm.toml",
            'system_prompt = "hello"\nno_system_prompt = true\n',
        )
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)

    def test_cross_file_conflict(self, tmp_path, monkeypatch):
        global_dir = tmp_path / "global"
        monkeypatch.setenv("XDG_CONFIG_HOME", str(global_dir))
        _write_toml(global_dir / "helm" / "config.toml", 'system_prompt = "hello"\n')
        _write_toml(tmp_path / "helm.toml", "no_system_prompt = true\n")
        with pytest.raises(ConfigError, match="mutually exclusive"):
            load_config(tmp_path)


# ===========================================================================
# apply_config_to_args
# ===========================================================================


class TestApplyConfigToArgs:
    def test_config_fills_unset(self):
        args = _make_args()
        apply_config_to_args(args, {"max_turns": 42, "provider": "openrouter"})
        assert args.max_turns == 42
        assert args.provider == "openrouter"

    def test_cli_beats_config(self):
        args = _make_args(max_turns=200)
        apply_config_to_args(args, {"max_turns": 42})
        assert args.max_turns == 200

    def test_sentinel_resolves_to_default(self):
        args = _make_args()
        apply_config_to_args(args, {})
        assert args.max_turns == 100
        assert args.provider == "lmstudio"
        assert args.approval_mode == "default"
        assert args.yolo is False
        assert args.quiet is False
        assert args.allowed_commands is None

    def test_store_const_flag_present_beats_config(self):
        args = _make_args(yolo=True)
        apply_config_to_args(args, {"yolo": False})
        assert args.yolo is True

    def test_color_config_false(self):
        args = _make_args()
        apply_config_to_args(args, {"color": False})
        assert args.color is False
        assert args.no_color is True

    def test_color_cli_overrides_config(self):
        args = _make_args(color=True)
        apply_config_to_args(args, {"color": False})
        assert args.color is True

    def test_allowed_commands_string_is_split(self):
        args = _make_args(allowed_commands="ls, git,,make")
        apply_config_to_args(args, {})
        assert args.allowed_commands == ["ls", "git", "make"]


class TestConfigToSessionKwargs:
    def test_renamed_and_dropped_keys(self):
        kwargs = config_to_session_kwargs(
            {"provider": "openrouter", "max_turns": 50, "quiet": True, "color": True}
        )
        assert kwargs == {
            "provider": "openrouter",
            "max_session_turns": 50,
            "verbose": False,
        }


# ===========================================================================
# Config object
# ===========================================================================


class TestConfig:
    def test_from_args_yolo_overrides_mode(self, tmp_path):
        args = _make_args(yolo=True, base_dir=str(tmp_path))
        apply_config_to_args(args, {"model": "m", "approval_mode": "auto_edit"})
        config = Config.from_args(args)
        assert config.approval_mode is ApprovalMode.YOLO
        assert config.get_model() == "m"
        assert config.base_dir == str(tmp_path.resolve())

    def test_no_system_prompt_is_empty_string(self):
        args = _make_args(no_system_prompt=True)
        apply_config_to_args(args, {})
        assert Config.from_args(args).system_prompt == ""

    def test_set_model_marks_switch(self):
        config = Config(model="a")
        config.set_model("a")
        assert config.model_switched_during_session is False
        config.set_model("b")
        assert config.get_model() == "b"
        assert config.model_switched_during_session is True

    def test_generation_config_omits_unset(self):
        config = Config(model="m", max_output_tokens=100, temperature=0.5)
        assert config.generation_config() == {"max_tokens": 100, "temperature": 0.5}


# ===========================================================================
# --init-config
# ===========================================================================


class TestInitConfig:
    def test_writes_project_config(self, tmp_path):
        from helm.agent import _init_config

        _init_config(types.SimpleNamespace(project=True, base_dir=str(tmp_path)))
        assert "Project config" in (tmp_path / "helm.toml").read_text()

    def test_refuses_overwrite(self, tmp_path, monkeypatch):
        from helm.agent import _init_config

        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        cfg = tmp_path / "xdg" / "helm" / "config.toml"
        cfg.parent.mkdir(parents=True, exist_ok=True)
        cfg.write_text("existing\n")

        with pytest.raises(ConfigError, match="already exists"):
            _init_config(types.SimpleNamespace(project=False, base_dir="."))
        assert cfg.read_text() == "existing\n"


# ===========================================================================
# Security: api_key warning
# ===========================================================================


class TestApiKeyWarning:
    def test_api_key_in_git_repo_warns(self, tmp_path, no_global, capsys):
        (tmp_path / ".git").mkdir()
        _write_toml(tmp_path / "helm.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "api_key" in capsys.readouterr().err

    def test_api_key_without_git_no_warning(self, tmp_path, no_global, capsys):
        _write_toml(tmp_path / "helm.toml", 'api_key = "sk-secret"\n')
        load_config(tmp_path)
        assert "api_key" not in capsys.readouterr().err


class TestGlobalConfigDir:
    def test_respects_xdg(self, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", "/custom/xdg")
        assert global_config_dir() == Path("/custom/xdg/helm")

    def test_default_home(self, monkeypatch):
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert global_config_dir() == Path.home() / ".config" / "helm"


# ===========================================================================
# Integration: full CLI → config → resolution
# ===========================================================================


class TestCLIIntegration:
    def test_parse_load_apply(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "max_turns = 42\nyolo = true\n")

        from helm.agent import build_parser

        args = build_parser().parse_args(["--base-dir", str(tmp_path), "question"])
        apply_config_to_args(args, load_config(tmp_path))

        assert args.max_turns == 42
        assert args.yolo is True
        assert args.provider == "lmstudio"

    def test_cli_flag_overrides_config(self, tmp_path, no_global):
        _write_toml(tmp_path / "helm.toml", "max_turns = 42\n")

        from helm.agent import build_parser

        args = build_parser().parse_args(["--max-turns", "200", "question"])
        apply_config_to_args(args, load_config(tmp_path))
        assert args.max_turns == 200

    def test_config_error_exits_one(self, tmp_path, no_global, monkeypatch):
        _write_toml(tmp_path / "helm.toml", 'max_turns = "oops"\n')

        from helm import agent

        monkeypatch.setattr("sys.argv", ["helm", "--base-dir", str(tmp_path), "question"])
        with pytest.raises(SystemExit) as exc_info:
            agent.main()
        assert exc_info.value.code == 1
