"""Local backend -- runs workers as subprocesses in their own process group."""

from __future__ import annotations

import asyncio
import logging
import os
import signal
from pathlib import Path

from taskloop.backends.base import WorkerBackend, WorkerHandle
from taskloop.config import LoopConfig, worker_subprocess_env

logger = logging.getLogger(__name__)


class LocalBackend(WorkerBackend):
	"""Execute workers as local subprocesses.

	Each worker starts a new session so its pid is also its process group id;
	kills go to the whole group and take any grandchildren with them.
	"""

	def __init__(self, config: LoopConfig | None = None) -> None:
		self._config = config
		self._processes: dict[str, asyncio.subprocess.Process] = {}

	async def spawn(
		self,
		worker_id: str,
		workspace_path: str,
		command: list[str],
		stdin_path: Path,
		log_path: Path,
	) -> WorkerHandle:
		log_path.parent.mkdir(parents=True, exist_ok=True)
		# The child holds its own copies of both descriptors after exec
		with open(stdin_path, "rb") as stdin_file, open(log_path, "wb") as log_file:
			proc = await asyncio.create_subprocess_exec(
				*command,
				cwd=workspace_path,
				stdin=stdin_file,
				stdout=log_file,
				stderr=asyncio.subprocess.STDOUT,
				env=worker_subprocess_env(self._config),
				start_new_session=True,
			)
		self._processes[worker_id] = proc
		logger.debug("Spawned worker %s (pid %d): %s", worker_id, proc.pid, command[0])
		return WorkerHandle(
			worker_id=worker_id,
			pid=proc.pid,
			workspace_path=workspace_path,
			log_path=log_path,
		)

	async def check_status(self, handle: WorkerHandle) -> str:
		proc = self._processes.get(handle.worker_id)
		if proc is not None:
			if proc.returncode is None:
				return "running"
			# Finished processes are forgotten; the handle keeps the exit code
			handle.exit_code = proc.returncode
			del self._processes[handle.worker_id]
		return "completed" if handle.exit_code == 0 else "failed"

	async def kill(self, handle: WorkerHandle, grace_seconds: float) -> None:
		proc = self._processes.get(handle.worker_id)
		if proc is None or handle.pid is None:
			return

		_signal_group(handle.pid, signal.SIGTERM)
		if proc.returncode is None:
			try:
				await asyncio.wait_for(proc.wait(), timeout=grace_seconds)
			except asyncio.TimeoutError:
				logger.warning(
					"Worker %s ignored SIGTERM for %.1fs, sending SIGKILL",
					handle.worker_id, grace_seconds,
				)
		# Leader may be gone while children linger in the group
		_signal_group(handle.pid, signal.SIGKILL)
		if proc.returncode is None:
			await proc.wait()
		handle.exit_code = proc.returncode
		self._processes.pop(handle.worker_id, None)

	async def cleanup(self) -> None:
		for worker_id, proc in list(self._processes.items()):
			if proc.returncode is None:
				await self.kill(WorkerHandle(worker_id=worker_id, pid=proc.pid), grace_seconds=1.0)
		self._processes.clear()


def _signal_group(pgid: int, sig: signal.Signals) -> None:
	try:
		os.killpg(pgid, sig)
	except ProcessLookupError:
		pass
