"""Shared pytest fixtures and factory functions for taskloop tests."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from taskloop.backends.base import WorkerBackend, WorkerHandle
from taskloop.config import LoopConfig
from taskloop.models import Checkpoint, Plan


@pytest.fixture()
def config(tmp_path: Path) -> LoopConfig:
	"""LoopConfig rooted at tmp_path with fast polling and no git commits."""
	cfg = LoopConfig()
	cfg.target.path = str(tmp_path)
	cfg.supervisor.poll_interval = 0.01
	cfg.supervisor.idle_timeout = 0.0
	cfg.supervisor.kill_grace_seconds = 0.5
	cfg.scheduler.auto_commit = False
	return cfg


def make_checkpoint(**overrides: Any) -> Checkpoint:
	"""Create a Checkpoint with sensible defaults, overridable via kwargs."""
	defaults: dict[str, Any] = {
		"id": "cp1",
		"description": "Test checkpoint",
	}
	defaults.update(overrides)
	return Checkpoint(**defaults)


def make_plan(*checkpoints: Checkpoint, **overrides: Any) -> Plan:
	"""Create a Plan holding the given checkpoints."""
	defaults: dict[str, Any] = {
		"title": "Test plan",
		"checkpoints": list(checkpoints),
	}
	defaults.update(overrides)
	return Plan(**defaults)


def result_json(
	text: str = "All done. CHECKPOINT_COMPLETE",
	subtype: str = "success",
	is_error: bool = False,
	cost: float = 0.01,
	input_tokens: int = 100,
	output_tokens: int = 50,
) -> str:
	"""A single structured worker result, as the default worker prints it."""
	return json.dumps({
		"type": "result",
		"subtype": subtype,
		"is_error": is_error,
		"result": text,
		"total_cost_usd": cost,
		"usage": {"input_tokens": input_tokens, "output_tokens": output_tokens},
	})


class FakeMonitor:
	"""SourceTreeMonitor returning a settable mtime."""

	def __init__(self, mtime: float = 1.0) -> None:
		self.mtime = mtime
		self.calls = 0

	def latest_mtime(self, root: Path) -> float:
		self.calls += 1
		return self.mtime


@dataclass
class FakeRun:
	"""Script for one fake worker run."""

	output: str = field(default_factory=result_json)
	exit_code: int = 0
	polls: int = 1
	hang: bool = False
	spawn_error: bool = False


class FakeBackend(WorkerBackend):
	"""Scripted WorkerBackend. Each spawn consumes the next script for its checkpoint."""

	def __init__(self, scripts: dict[str, list[FakeRun]] | None = None, default: FakeRun | None = None) -> None:
		self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
		self.default = default or FakeRun()
		self.spawned: list[str] = []
		self.prompts: dict[str, list[str]] = {}
		self.killed: list[str] = []
		self.running: set[str] = set()
		self.max_concurrent = 0
		self._runs: dict[str, FakeRun] = {}
		self._polls: dict[str, int] = {}
		self._checkpoints: dict[str, str] = {}
		self.cleaned_up = False

	async def spawn(
		self,
		worker_id: str,
		workspace_path: str,
		command: list[str],
		stdin_path: Path,
		log_path: Path,
	) -> WorkerHandle:
		cp_id = log_path.name.split("-iter")[0]
		queue = self.scripts.get(cp_id)
		script = queue.pop(0) if queue else self.default
		if script.spawn_error:
			raise FileNotFoundError(f"No such file or directory: {command[0]}")
		log_path.write_text(script.output)
		self.spawned.append(cp_id)
		self.prompts.setdefault(cp_id, []).append(stdin_path.read_text())
		self._runs[worker_id] = script
		self._polls[worker_id] = script.polls
		self._checkpoints[worker_id] = cp_id
		self.running.add(worker_id)
		self.max_concurrent = max(self.max_concurrent, len(self.running))
		return WorkerHandle(worker_id=worker_id, pid=None, workspace_path=workspace_path, log_path=log_path)

	async def check_status(self, handle: WorkerHandle) -> str:
		wid = handle.worker_id
		if wid not in self.running:
			return "failed" if handle.exit_code else "completed"
		script = self._runs[wid]
		if script.hang:
			return "running"
		self._polls[wid] -= 1
		if self._polls[wid] > 0:
			return "running"
		self.running.discard(wid)
		handle.exit_code = script.exit_code
		return "completed" if script.exit_code == 0 else "failed"

	async def kill(self, handle: WorkerHandle, grace_seconds: float) -> None:
		if handle.worker_id in self.running:
			self.running.discard(handle.worker_id)
			self.killed.append(self._checkpoints[handle.worker_id])
			handle.exit_code = -15

	async def cleanup(self) -> None:
		self.cleaned_up = True
