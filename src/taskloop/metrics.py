"""Logging setup and timing helpers for taskloop."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

# Passed through `extra=` by the loop
_CONTEXT_FIELDS = ("checkpoint_id", "run_id", "iteration")

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Timer:
	"""Measure the wall time of a ``with`` block into ``elapsed``."""

	def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
		self._clock = clock
		self.started: float | None = None
		self.elapsed = 0.0

	def __enter__(self) -> Timer:
		self.started = self._clock()
		return self

	def __exit__(self, *exc: object) -> None:
		if self.started is not None:
			self.elapsed = self._clock() - self.started


def format_duration(seconds: float) -> str:
	"""Render seconds as ``1h02m03s`` / ``2m03s`` / ``3.4s``."""
	if seconds < 60:
		return f"{seconds:.1f}s"
	minutes, secs = divmod(int(seconds), 60)
	hours, minutes = divmod(minutes, 60)
	if hours:
		return f"{hours}h{minutes:02d}m{secs:02d}s"
	return f"{minutes}m{secs:02d}s"


def _context(record: logging.LogRecord) -> dict[str, Any]:
	return {
		key: getattr(record, key)
		for key in _CONTEXT_FIELDS
		if getattr(record, key, None) is not None
	}


class _TextFormatter(logging.Formatter):
	"""Plain lines, with ``key=value`` loop context appended when present."""

	def __init__(self) -> None:
		super().__init__(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

	def format(self, record: logging.LogRecord) -> str:
		line = super().format(record)
		context = _context(record)
		if context:
			line += " [" + " ".join(f"{k}={v}" for k, v in context.items()) + "]"
		return line


class _JsonFormatter(logging.Formatter):
	"""One JSON object per record."""

	def format(self, record: logging.LogRecord) -> str:
		data: dict[str, Any] = {
			"ts": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		data.update(_context(record))
		if record.exc_info and record.exc_info[1]:
			data["exception"] = f"{type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
		return json.dumps(data, default=str)


def setup_logging(level: str = "INFO", json_format: bool = False, log_file: Path | None = None) -> logging.Logger:
	"""Configure the ``taskloop`` logger once per process.

	Args:
		level: Log level name. Unknown names fall back to INFO.
		json_format: Emit JSON lines instead of plain text.
		log_file: Also write every record to this file.
	"""
	logger = logging.getLogger("taskloop")
	logger.setLevel(getattr(logging, level.upper(), logging.INFO))
	if logger.handlers:
		return logger

	formatter: logging.Formatter = _JsonFormatter() if json_format else _TextFormatter()
	handlers: list[logging.Handler] = [logging.StreamHandler()]
	if log_file is not None:
		log_file.parent.mkdir(parents=True, exist_ok=True)
		handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
	for handler in handlers:
		handler.setFormatter(formatter)
		logger.addHandler(handler)
	return logger
