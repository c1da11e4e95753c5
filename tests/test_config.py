"""Tests for config loading."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from taskloop.config import (
	_ENV_DENYLIST,
	DEFAULT_PLAN_FILE,
	ConfigError,
	LoopConfig,
	dumps_default_config,
	load_config,
	load_config_or_default,
	validate_config,
	worker_subprocess_env,
)


@pytest.fixture()
def full_config(tmp_path: Path) -> Path:
	toml = tmp_path / "taskloop.toml"
	toml.write_text("""\
[target]
path = "project"
plan_file = "PLAN.json"

[worker]
command = "my-agent --json"
model = "opus"
extra_env_keys = ["OPENAI_BASE_URL"]

[supervisor]
poll_interval = 2
idle_timeout = 120
absolute_timeout = 3600
kill_grace_seconds = 5

[scheduler]
max_iterations = 50
max_parallel = 4
max_failures = 2
max_cost_usd = 10.5
auto_commit = false

[liveness]
skip_dirs = [".git", "build"]
extensions = [".py"]

[logging]
level = "DEBUG"
json_format = true
""")
	return toml


class TestLoadConfig:
	def test_full(self, full_config: Path) -> None:
		cfg = load_config(full_config)
		assert cfg.target.path == str(full_config.parent.resolve() / "project")
		assert cfg.target.plan_file == "PLAN.json"
		assert cfg.worker.command == ["my-agent", "--json"]
		assert cfg.worker.model == "opus"
		assert cfg.supervisor.poll_interval == 2.0
		assert isinstance(cfg.supervisor.poll_interval, float)
		assert cfg.supervisor.absolute_timeout == 3600.0
		assert cfg.scheduler.max_parallel == 4
		assert cfg.scheduler.max_cost_usd == 10.5
		assert cfg.scheduler.auto_commit is False
		assert cfg.liveness.skip_dirs == [".git", "build"]
		assert cfg.logging.json_format is True

	def test_defaults(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text("")
		cfg = load_config(toml)
		assert cfg.target.plan_file == DEFAULT_PLAN_FILE
		assert cfg.supervisor.poll_interval == 5.0
		assert cfg.supervisor.idle_timeout == 300.0
		assert cfg.supervisor.absolute_timeout == 0.0
		assert cfg.scheduler.max_parallel == 3
		assert cfg.scheduler.max_failures == 3
		assert cfg.scheduler.max_signs_in_prompt == 5

	def test_missing_file(self, tmp_path: Path) -> None:
		with pytest.raises(FileNotFoundError):
			load_config(tmp_path / "nope.toml")

	def test_invalid_toml(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text("[target\npath=")
		with pytest.raises(tomllib.TOMLDecodeError):
			load_config(toml)

	def test_wrong_type(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text('[scheduler]\nmax_parallel = "lots"\n')
		with pytest.raises(ConfigError, match="scheduler.max_parallel"):
			load_config(toml)

	def test_bool_must_be_bool(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text('[scheduler]\nauto_commit = "yes"\n')
		with pytest.raises(ConfigError):
			load_config(toml)

	def test_unknown_keys_ignored(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text("[scheduler]\nflux_capacitor = 1\n")
		assert load_config(toml).scheduler.max_parallel == 3

	def test_or_default_without_file(self, tmp_path: Path) -> None:
		cfg = load_config_or_default(tmp_path / "taskloop.toml")
		assert cfg.target.resolved_path == tmp_path.resolve()

	def test_default_config_round_trips(self, tmp_path: Path) -> None:
		toml = tmp_path / "taskloop.toml"
		toml.write_text(dumps_default_config("."))
		cfg = load_config(toml)
		assert cfg.target.resolved_path == tmp_path.resolve()
		assert cfg.worker.command[0] == "claude"


class TestWorkerConfig:
	def test_argv_adds_model_and_tools(self) -> None:
		cfg = LoopConfig()
		cfg.worker.model = "sonnet"
		cfg.worker.allowed_tools = "Read,Edit"
		argv = cfg.worker.argv()
		assert argv[:2] == ["claude", "-p"]
		assert argv[-4:] == ["--model", "sonnet", "--allowedTools", "Read,Edit"]

	def test_argv_is_a_copy(self) -> None:
		cfg = LoopConfig()
		cfg.worker.argv().append("--oops")
		assert "--oops" not in cfg.worker.command


class TestWorkerEnv:
	def test_allowlist_and_denylist(self, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("HOME", "/home/test")
		monkeypatch.setenv("ANTHROPIC_API_KEY", "secret")
		monkeypatch.setenv("RANDOM_VAR", "x")
		env = worker_subprocess_env()
		assert env["HOME"] == "/home/test"
		assert "ANTHROPIC_API_KEY" not in env
		assert "RANDOM_VAR" not in env

	def test_extra_keys(self, monkeypatch: pytest.MonkeyPatch) -> None:
		monkeypatch.setenv("MY_TOKEN_URL", "http://x")
		monkeypatch.setenv("GITHUB_TOKEN", "ghp")
		cfg = LoopConfig()
		cfg.worker.extra_env_keys = ["MY_TOKEN_URL", "GITHUB_TOKEN"]
		env = worker_subprocess_env(cfg)
		assert env["MY_TOKEN_URL"] == "http://x"
		assert "GITHUB_TOKEN" not in env
		assert "GITHUB_TOKEN" in _ENV_DENYLIST


class TestValidateConfig:
	def test_valid(self, tmp_path: Path) -> None:
		(tmp_path / ".git").mkdir()
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path)
		cfg.worker.command = ["sh", "-c", "true"]
		assert validate_config(cfg) == []

	def test_missing_target(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path / "nope")
		cfg.worker.command = ["sh"]
		errors = [m for lvl, m in validate_config(cfg) if lvl == "error"]
		assert any("does not exist" in m for m in errors)

	def test_non_git_is_warning(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path)
		cfg.worker.command = ["sh"]
		issues = validate_config(cfg)
		assert ("warning", f"target.path is not a git repository, rollback commits disabled: {tmp_path.resolve()}") in issues

	def test_missing_executable(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path)
		cfg.worker.command = ["definitely-not-a-real-binary-xyz"]
		assert any("not found on PATH" in m for _, m in validate_config(cfg))

	def test_bad_numbers(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path)
		cfg.worker.command = ["sh"]
		cfg.scheduler.max_parallel = 0
		cfg.scheduler.max_failures = 0
		cfg.supervisor.poll_interval = 0
		errors = [m for lvl, m in validate_config(cfg) if lvl == "error"]
		assert len(errors) == 3

	def test_denylisted_extra_key_warns(self, tmp_path: Path) -> None:
		cfg = LoopConfig()
		cfg.target.path = str(tmp_path)
		cfg.worker.command = ["sh"]
		cfg.worker.extra_env_keys = ["ANTHROPIC_API_KEY"]
		assert any("denylisted" in m for lvl, m in validate_config(cfg) if lvl == "warning")
