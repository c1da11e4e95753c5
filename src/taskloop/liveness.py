"""Source-tree change detection used for worker idle detection."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

NO_ACTIVITY = 0.0


class SourceTreeMonitor(Protocol):
	"""Anything that can report the most recent modification time under a root."""

	def latest_mtime(self, root: Path) -> float:
		...


class MtimeScanner:
	"""Walk the tree and return the newest file mtime.

	Directories in ``skip_dirs`` are pruned and ``skip_files`` (paths relative
	to the scanned root) are ignored, so files the controller itself rewrites
	never count as worker activity. When ``extensions`` is non-empty only files
	with those suffixes count. Returns ``NO_ACTIVITY`` when no matching file
	exists.
	"""

	def __init__(
		self,
		skip_dirs: list[str] | None = None,
		extensions: list[str] | None = None,
		skip_files: list[str] | None = None,
	) -> None:
		self.skip_dirs = set(skip_dirs or [])
		self.extensions = {
			ext if ext.startswith(".") else f".{ext}"
			for ext in (extensions or [])
		}
		self.skip_files = list(skip_files or [])

	def latest_mtime(self, root: Path) -> float:
		ignored = {os.path.normpath(os.path.join(root, name)) for name in self.skip_files}
		latest = NO_ACTIVITY
		for dirpath, dirnames, filenames in os.walk(root, onerror=self._on_error):
			dirnames[:] = [d for d in dirnames if d not in self.skip_dirs]
			for name in filenames:
				if self.extensions and os.path.splitext(name)[1] not in self.extensions:
					continue
				path = os.path.normpath(os.path.join(dirpath, name))
				if path in ignored:
					continue
				try:
					mtime = os.stat(path).st_mtime
				except OSError:
					# Deleted between listing and stat
					continue
				if mtime > latest:
					latest = mtime
		return latest

	@staticmethod
	def _on_error(exc: OSError) -> None:
		logger.debug("Skipping unreadable path during scan: %s", exc)
