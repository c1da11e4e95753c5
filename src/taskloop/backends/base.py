"""Worker backend interface: how a supervisor starts, polls and stops a process."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path


@dataclass
class WorkerHandle:
	worker_id: str
	pid: int | None = None
	workspace_path: str = ""
	log_path: Path | None = None
	exit_code: int | None = None


class WorkerBackend(ABC):
	"""Runs worker processes for one supervisor. Implementations never block on a worker."""

	@abstractmethod
	async def spawn(
		self,
		worker_id: str,
		workspace_path: str,
		command: list[str],
		stdin_path: Path,
		log_path: Path,
	) -> WorkerHandle:
		"""Start a worker reading stdin_path, writing combined output to log_path.

		Raises OSError when the process cannot be started.
		"""

	@abstractmethod
	async def check_status(self, handle: WorkerHandle) -> str:
		"""Check worker status: running/completed/failed. Sets handle.exit_code once exited."""

	@abstractmethod
	async def kill(self, handle: WorkerHandle, grace_seconds: float) -> None:
		"""Stop the worker and every process it started."""

	@abstractmethod
	async def cleanup(self) -> None:
		"""Kill anything still running and release resources."""
