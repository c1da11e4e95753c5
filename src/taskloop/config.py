"""TOML configuration loader for taskloop."""

from __future__ import annotations

import os
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG = "taskloop.toml"
DEFAULT_PLAN_FILE = "TASKLOOP_PLAN.json"
RUNTIME_DIR = ".taskloop"


class ConfigError(ValueError):
	"""Raised when a config value cannot be coerced to its expected type."""


@dataclass
class TargetConfig:
	"""Managed project settings."""

	path: str = "."
	plan_file: str = DEFAULT_PLAN_FILE

	@property
	def resolved_path(self) -> Path:
		return Path(os.path.expanduser(self.path)).resolve()


@dataclass
class WorkerConfig:
	"""How a worker process is started."""

	command: list[str] = field(default_factory=lambda: [
		"claude", "-p",
		"--output-format", "json",
		"--dangerously-skip-permissions",
	])
	model: str = ""
	allowed_tools: str = ""
	extra_env_keys: list[str] = field(default_factory=list)

	def argv(self) -> list[str]:
		"""Full argv for one worker, including optional model/tool flags."""
		cmd = list(self.command)
		if self.model:
			cmd.extend(["--model", self.model])
		if self.allowed_tools:
			cmd.extend(["--allowedTools", self.allowed_tools])
		return cmd


@dataclass
class SupervisorConfig:
	"""Process supervision settings. A timeout of 0 disables that policy."""

	poll_interval: float = 5.0
	idle_timeout: float = 300.0
	absolute_timeout: float = 0.0
	kill_grace_seconds: float = 10.0
	log_dir: str = f"{RUNTIME_DIR}/logs"


@dataclass
class SchedulerConfig:
	"""Scheduling loop settings. Budgets of 0 are unlimited."""

	max_iterations: int = 20
	max_parallel: int = 3
	max_failures: int = 3
	max_wall_time_seconds: int = 0
	max_cost_usd: float = 0.0
	auto_commit: bool = True
	run_gates: bool = True
	gate_timeout: int = 300
	archive_on_complete: bool = False
	max_signs_in_prompt: int = 5


@dataclass
class LivenessConfig:
	"""Source-tree scanning used for idle detection."""

	skip_dirs: list[str] = field(default_factory=lambda: [
		".git", ".hg", ".svn", RUNTIME_DIR, "__pycache__", ".venv", "venv",
		"node_modules", ".mypy_cache", ".ruff_cache", ".pytest_cache", ".tox",
	])
	# Empty means every file counts as a source file.
	extensions: list[str] = field(default_factory=list)


@dataclass
class LoggingConfig:
	"""Logging settings."""

	level: str = "INFO"
	json_format: bool = False
	event_stream: bool = True


@dataclass
class LoopConfig:
	"""Top-level taskloop configuration."""

	target: TargetConfig = field(default_factory=TargetConfig)
	worker: WorkerConfig = field(default_factory=WorkerConfig)
	supervisor: SupervisorConfig = field(default_factory=SupervisorConfig)
	scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
	liveness: LivenessConfig = field(default_factory=LivenessConfig)
	logging: LoggingConfig = field(default_factory=LoggingConfig)

	@property
	def runtime_dir(self) -> Path:
		return self.target.resolved_path / RUNTIME_DIR

	@property
	def log_dir(self) -> Path:
		return self.target.resolved_path / self.supervisor.log_dir


def _coerce(value: Any, kind: type, key: str) -> Any:
	try:
		if kind is bool:
			if isinstance(value, bool):
				return value
			raise TypeError(f"expected bool, got {type(value).__name__}")
		if kind is list:
			if not isinstance(value, list):
				raise TypeError(f"expected list, got {type(value).__name__}")
			return [str(v) for v in value]
		return kind(value)
	except (TypeError, ValueError) as exc:
		raise ConfigError(f"Invalid value for {key}: {value!r} ({exc})") from exc


def _apply(obj: Any, data: dict[str, Any], section: str) -> Any:
	"""Copy known keys from a TOML table onto a config dataclass."""
	for key, value in data.items():
		if not hasattr(obj, key):
			continue
		current = getattr(obj, key)
		kind = type(current)
		setattr(obj, key, _coerce(value, kind, f"{section}.{key}"))
	return obj


def _build_target(data: dict[str, Any]) -> TargetConfig:
	return _apply(TargetConfig(), data, "target")


def _build_worker(data: dict[str, Any]) -> WorkerConfig:
	wc = WorkerConfig()
	if "command" in data:
		command = data["command"]
		if isinstance(command, str):
			command = command.split()
		wc.command = _coerce(command, list, "worker.command")
	if "model" in data:
		wc.model = str(data["model"])
	if "allowed_tools" in data:
		wc.allowed_tools = str(data["allowed_tools"])
	if "extra_env_keys" in data:
		wc.extra_env_keys = _coerce(data["extra_env_keys"], list, "worker.extra_env_keys")
	return wc


def _build_supervisor(data: dict[str, Any]) -> SupervisorConfig:
	return _apply(SupervisorConfig(), data, "supervisor")


def _build_scheduler(data: dict[str, Any]) -> SchedulerConfig:
	return _apply(SchedulerConfig(), data, "scheduler")


def _build_liveness(data: dict[str, Any]) -> LivenessConfig:
	return _apply(LivenessConfig(), data, "liveness")


def _build_logging(data: dict[str, Any]) -> LoggingConfig:
	return _apply(LoggingConfig(), data, "logging")


_ENV_ALLOWLIST = {
	# System essentials
	"HOME", "USER", "LOGNAME", "SHELL", "LANG", "LC_ALL", "LC_CTYPE",
	"TERM", "TMPDIR", "TMP", "TEMP", "XDG_RUNTIME_DIR",
	"XDG_CONFIG_HOME", "XDG_DATA_HOME", "XDG_CACHE_HOME",
	"PATH", "PWD", "SHLVL",
	# Worker auth via config dir, not raw API keys
	"CLAUDE_CONFIG_DIR",
	# Toolchains the worker may invoke
	"VIRTUAL_ENV", "PYTHONPATH", "NODE_PATH", "NPM_CONFIG_PREFIX",
	# Git identity for worker commits
	"GIT_AUTHOR_NAME", "GIT_AUTHOR_EMAIL",
	"GIT_COMMITTER_NAME", "GIT_COMMITTER_EMAIL",
	"PYTHONIOENCODING", "PYTHONUTF8",
}

# Never passed to workers, even if listed in extra_env_keys
_ENV_DENYLIST = {
	"ANTHROPIC_API_KEY", "CLAUDECODE",
	"AWS_SECRET_ACCESS_KEY", "AWS_SESSION_TOKEN",
	"GITHUB_TOKEN", "GH_TOKEN", "GITLAB_TOKEN",
	"NPM_TOKEN", "PYPI_TOKEN",
	"DATABASE_URL", "REDIS_URL",
}


def worker_subprocess_env(config: LoopConfig | None = None) -> dict[str, str]:
	"""Build a restricted environment for worker subprocesses.

	Only allowlisted system variables plus the configured extras pass through.
	Denylisted secrets are always stripped.
	"""
	allowed = set(_ENV_ALLOWLIST)
	if config is not None:
		allowed |= set(config.worker.extra_env_keys)
	return {
		k: v for k, v in os.environ.items()
		if k in allowed and k not in _ENV_DENYLIST
	}


def load_config(path: str | Path) -> LoopConfig:
	"""Load a taskloop.toml config file.

	Raises:
		FileNotFoundError: If the config file doesn't exist.
		tomllib.TOMLDecodeError: If the file is not valid TOML.
		ConfigError: If a value has the wrong type.
	"""
	config_path = Path(path)
	if not config_path.exists():
		raise FileNotFoundError(f"Config file not found: {config_path}")

	with open(config_path, "rb") as f:
		data = tomllib.load(f)

	lc = LoopConfig()
	if "target" in data:
		lc.target = _build_target(data["target"])
	if "worker" in data:
		lc.worker = _build_worker(data["worker"])
	if "supervisor" in data:
		lc.supervisor = _build_supervisor(data["supervisor"])
	if "scheduler" in data:
		lc.scheduler = _build_scheduler(data["scheduler"])
	if "liveness" in data:
		lc.liveness = _build_liveness(data["liveness"])
	if "logging" in data:
		lc.logging = _build_logging(data["logging"])

	# Relative target paths are resolved against the config file location
	if not Path(os.path.expanduser(lc.target.path)).is_absolute():
		lc.target.path = str(config_path.parent.resolve() / lc.target.path)
	return lc


def load_config_or_default(path: str | Path) -> LoopConfig:
	"""Load the config if present, otherwise defaults rooted at the config's directory."""
	config_path = Path(path)
	if config_path.exists():
		return load_config(config_path)
	lc = LoopConfig()
	lc.target.path = str(config_path.parent.resolve())
	return lc


def validate_config(config: LoopConfig) -> list[tuple[str, str]]:
	"""Semantic validation of a loaded LoopConfig.

	Returns a list of (level, message) tuples where level is 'error' or 'warning'.
	"""
	issues: list[tuple[str, str]] = []

	target_path = config.target.resolved_path
	if not target_path.is_dir():
		issues.append(("error", f"target.path does not exist: {target_path}"))
	elif not (target_path / ".git").is_dir():
		issues.append(("warning", f"target.path is not a git repository, rollback commits disabled: {target_path}"))

	if not config.worker.command:
		issues.append(("error", "worker.command must not be empty"))
	elif shutil.which(config.worker.command[0]) is None:
		issues.append(("error", f"worker executable not found on PATH: {config.worker.command[0]}"))

	sv = config.supervisor
	if sv.poll_interval <= 0:
		issues.append(("error", f"supervisor.poll_interval must be positive: {sv.poll_interval}"))
	if sv.idle_timeout < 0 or sv.absolute_timeout < 0:
		issues.append(("error", "supervisor timeouts must not be negative"))
	if 0 < sv.idle_timeout < sv.poll_interval:
		issues.append(("warning", f"idle_timeout ({sv.idle_timeout}s) is shorter than poll_interval"))

	sc = config.scheduler
	if sc.max_parallel < 1:
		issues.append(("error", f"scheduler.max_parallel must be at least 1: {sc.max_parallel}"))
	elif sc.max_parallel > 8:
		issues.append(("warning", f"max_parallel is high: {sc.max_parallel}"))
	if sc.max_iterations < 1:
		issues.append(("error", f"scheduler.max_iterations must be at least 1: {sc.max_iterations}"))
	if sc.max_failures < 1:
		issues.append(("error", f"scheduler.max_failures must be at least 1: {sc.max_failures}"))

	leaked = set(config.worker.extra_env_keys) & _ENV_DENYLIST
	for key in sorted(leaked):
		issues.append(("warning", f"worker.extra_env_keys contains denylisted key {key}, it will be stripped"))

	return issues


def dumps_default_config(target_path: str = ".") -> str:
	"""Render a commented default taskloop.toml."""
	sv = SupervisorConfig()
	sc = SchedulerConfig()
	return f"""\
[target]
path = "{target_path}"
plan_file = "{DEFAULT_PLAN_FILE}"

[worker]
command = ["claude", "-p", "--output-format", "json", "--dangerously-skip-permissions"]
# model = "sonnet"
# allowed_tools = "Bash,Edit,Read,Write,Glob,Grep"

[supervisor]
poll_interval = {sv.poll_interval}
idle_timeout = {sv.idle_timeout}  # 0 disables
absolute_timeout = {sv.absolute_timeout}  # 0 disables
kill_grace_seconds = {sv.kill_grace_seconds}

[scheduler]
max_iterations = {sc.max_iterations}
max_parallel = {sc.max_parallel}
max_failures = {sc.max_failures}
auto_commit = true
run_gates = true

[logging]
level = "INFO"
"""
