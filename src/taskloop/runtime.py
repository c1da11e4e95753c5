"""Runtime registry: which controller and workers are live for a directory.

The running loop rewrites ``.taskloop/runtime.json`` whenever its set of
workers changes. ``taskloop cancel`` in another process reads it to stop the
controller and any worker process groups it left behind.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path

from taskloop.models import _now_iso

logger = logging.getLogger(__name__)

RUNTIME_FILE = "runtime.json"


@dataclass
class WorkerEntry:
	run_id: str
	checkpoint_id: str
	pid: int
	log_path: str = ""


@dataclass
class RuntimeInfo:
	controller_pid: int
	started: str = field(default_factory=_now_iso)
	workers: list[WorkerEntry] = field(default_factory=list)


class RuntimeRegistry:
	"""Read and write the runtime file under a runtime directory."""

	def __init__(self, runtime_dir: Path) -> None:
		self.path = runtime_dir / RUNTIME_FILE

	def write(self, info: RuntimeInfo) -> None:
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
			tmp = self.path.with_suffix(".tmp")
			tmp.write_text(json.dumps(asdict(info), indent=2), encoding="utf-8")
			os.replace(tmp, self.path)
		except OSError as exc:
			logger.warning("Failed to write runtime file %s: %s", self.path, exc)

	def read(self) -> RuntimeInfo | None:
		if not self.path.exists():
			return None
		try:
			data = json.loads(self.path.read_text(encoding="utf-8"))
			return RuntimeInfo(
				controller_pid=int(data["controller_pid"]),
				started=str(data.get("started", "")),
				workers=[WorkerEntry(**w) for w in data.get("workers", [])],
			)
		except (OSError, ValueError, KeyError, TypeError) as exc:
			logger.warning("Ignoring unreadable runtime file %s: %s", self.path, exc)
			return None

	def clear(self) -> None:
		self.path.unlink(missing_ok=True)


def _pid_alive(pid: int) -> bool:
	"""Check if a PID is alive."""
	try:
		os.kill(pid, 0)
		return True
	except (OSError, ProcessLookupError):
		return False


def _signal_group(pgid: int, sig: signal.Signals) -> bool:
	try:
		os.killpg(pgid, sig)
		return True
	except (ProcessLookupError, PermissionError):
		return False


def _wait_for_exit(pids: list[int], timeout: float) -> list[int]:
	"""Wait up to *timeout* for pids to exit. Returns the survivors."""
	deadline = time.monotonic() + timeout
	alive = [p for p in pids if _pid_alive(p)]
	while alive and time.monotonic() < deadline:
		time.sleep(0.2)
		alive = [p for p in alive if _pid_alive(p)]
	return alive


def terminate_recorded(registry: RuntimeRegistry, grace_seconds: float = 10.0) -> dict[str, list[int]]:
	"""Stop the recorded controller, then every recorded worker process group.

	The controller gets SIGTERM first so it can cancel cooperatively and reset
	its checkpoints. Worker groups that survive are signalled directly:
	SIGTERM, then SIGKILL after the grace period.
	"""
	info = registry.read()
	stopped: dict[str, list[int]] = {"controller": [], "workers": []}
	if info is None:
		return stopped

	if info.controller_pid != os.getpid() and _pid_alive(info.controller_pid):
		try:
			os.kill(info.controller_pid, signal.SIGTERM)
			stopped["controller"].append(info.controller_pid)
		except ProcessLookupError:
			pass
		if _wait_for_exit([info.controller_pid], grace_seconds):
			logger.warning("Controller %d still running after %.1fs", info.controller_pid, grace_seconds)

	worker_pids = [w.pid for w in info.workers if _pid_alive(w.pid)]
	for pid in worker_pids:
		if _signal_group(pid, signal.SIGTERM):
			stopped["workers"].append(pid)
	for pid in _wait_for_exit(worker_pids, grace_seconds):
		logger.warning("Worker group %d ignored SIGTERM, sending SIGKILL", pid)
		_signal_group(pid, signal.SIGKILL)

	if not _pid_alive(info.controller_pid):
		registry.clear()
	return stopped
