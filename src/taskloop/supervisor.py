"""Process supervisor: spawn workers, watch liveness, kill what stalls.

The supervisor owns every running worker. It never blocks waiting on one:
``poll`` inspects status, wall time and source-tree activity and returns
immediately. ``terminate`` is the one kill path, shared by the absolute
timeout, the idle timeout and cancellation.
"""

from __future__ import annotations

import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from taskloop.backends.base import WorkerBackend, WorkerHandle
from taskloop.config import LoopConfig
from taskloop.liveness import NO_ACTIVITY, SourceTreeMonitor
from taskloop.models import Checkpoint, _new_id

logger = logging.getLogger(__name__)

KILL_IDLE = "idle"
KILL_TIMEOUT = "timeout"
KILL_CANCELLED = "cancelled"
KILL_FAILED = "kill-failed"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorkerSpawnError(Exception):
	"""The worker process could not be started."""


class WorkerKillError(Exception):
	"""The worker process could not be signalled."""


@dataclass
class WorkerRun:
	"""One attempt at one checkpoint. Lives only in memory."""

	checkpoint_id: str
	run_id: str
	handle: WorkerHandle
	log_path: Path
	prompt_path: Path
	iteration: int
	started_at: float
	last_activity: float
	last_mtime: float = NO_ACTIVITY

	@property
	def pid(self) -> int | None:
		return self.handle.pid


@dataclass(frozen=True)
class Alive:
	pass


@dataclass(frozen=True)
class Completed:
	exit_code: int | None


@dataclass(frozen=True)
class Killed:
	reason: str


PollResult = Alive | Completed | Killed


def _safe_name(value: str) -> str:
	return _UNSAFE_CHARS.sub("_", value).strip("_") or "checkpoint"


class Supervisor:
	"""Spawn and monitor worker processes for one managed directory."""

	def __init__(
		self,
		config: LoopConfig,
		backend: WorkerBackend,
		monitor: SourceTreeMonitor,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.config = config
		self.backend = backend
		self.monitor = monitor
		self._clock = clock
		self.root = config.target.resolved_path

	def scan(self) -> float:
		"""Latest source-tree mtime, or NO_ACTIVITY if it cannot be read."""
		try:
			return self.monitor.latest_mtime(self.root)
		except OSError as exc:
			logger.warning("Source tree scan failed: %s", exc)
			return NO_ACTIVITY

	async def spawn(self, checkpoint: Checkpoint, instructions: str, iteration: int) -> WorkerRun:
		"""Start a worker for *checkpoint*.

		Raises:
			WorkerSpawnError: the prompt could not be written or the process failed to start.
		"""
		run_id = _new_id()
		stem = f"{_safe_name(checkpoint.id)}-iter{iteration}-{run_id}"
		log_dir = self.config.log_dir
		prompt_path = log_dir / f"{stem}.prompt.md"
		log_path = log_dir / f"{stem}.log"

		try:
			log_dir.mkdir(parents=True, exist_ok=True)
			prompt_path.write_text(instructions, encoding="utf-8")
			handle = await self.backend.spawn(
				run_id,
				str(self.root),
				self.config.worker.argv(),
				prompt_path,
				log_path,
			)
		except OSError as exc:
			raise WorkerSpawnError(
				f"Failed to start worker for checkpoint {checkpoint.id}: {exc}"
			) from exc

		now = self._clock()
		run = WorkerRun(
			checkpoint_id=checkpoint.id,
			run_id=run_id,
			handle=handle,
			log_path=log_path,
			prompt_path=prompt_path,
			iteration=iteration,
			started_at=now,
			last_activity=now,
			last_mtime=self.scan(),
		)
		logger.info(
			"Spawned worker for %s (iteration %d, run %s, pid %s), log: %s",
			checkpoint.id, iteration, run_id, handle.pid, log_path,
		)
		return run

	async def poll(self, run: WorkerRun, latest_mtime: float | None = None) -> PollResult:
		"""Inspect one run without waiting on it.

		*latest_mtime* lets callers share one tree scan across several runs.
		"""
		status = await self.backend.check_status(run.handle)
		if status != "running":
			return Completed(run.handle.exit_code)

		now = self._clock()
		timeout = self.config.supervisor.absolute_timeout
		if timeout > 0 and now - run.started_at > timeout:
			await self.terminate(run, KILL_TIMEOUT)
			return Killed(KILL_TIMEOUT)

		mtime = self.scan() if latest_mtime is None else latest_mtime
		if mtime > run.last_mtime:
			run.last_mtime = mtime
			run.last_activity = now
			return Alive()

		idle = self.config.supervisor.idle_timeout
		if idle > 0 and now - run.last_activity > idle:
			await self.terminate(run, KILL_IDLE)
			return Killed(KILL_IDLE)
		return Alive()

	async def terminate(self, run: WorkerRun, reason: str) -> None:
		"""Kill the run's whole process group.

		Raises:
			WorkerKillError: the group could not be signalled.
		"""
		logger.warning(
			"Terminating worker for %s (run %s, pid %s): %s",
			run.checkpoint_id, run.run_id, run.pid, reason,
		)
		try:
			await self.backend.kill(run.handle, self.config.supervisor.kill_grace_seconds)
		except OSError as exc:
			raise WorkerKillError(
				f"Failed to kill worker for {run.checkpoint_id} (pid {run.pid}): {exc}"
			) from exc

	async def cleanup(self) -> None:
		await self.backend.cleanup()
