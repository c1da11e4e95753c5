"""Tests for logging setup and timing helpers."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from taskloop.metrics import Timer, _JsonFormatter, _TextFormatter, format_duration, setup_logging


def _record(msg: str = "Checkpoint %s done", **extra: object) -> logging.LogRecord:
	record = logging.LogRecord("taskloop.loop", logging.INFO, __file__, 1, msg, ("a",), None)
	for key, value in extra.items():
		setattr(record, key, value)
	return record


class TestFormatDuration:
	@pytest.mark.parametrize(("seconds", "expected"), [
		(3.42, "3.4s"),
		(123, "2m03s"),
		(3723, "1h02m03s"),
	])
	def test_format(self, seconds: float, expected: str) -> None:
		assert format_duration(seconds) == expected


class TestTimer:
	def test_uses_clock(self) -> None:
		ticks = iter([10.0, 12.5])
		with Timer(clock=lambda: next(ticks)) as timer:
			pass
		assert timer.started == 10.0
		assert timer.elapsed == 2.5


class TestFormatters:
	def test_json_includes_context(self) -> None:
		data = json.loads(_JsonFormatter().format(_record(checkpoint_id="a", iteration=3)))
		assert data["msg"] == "Checkpoint a done"
		assert data["level"] == "INFO"
		assert data["checkpoint_id"] == "a"
		assert data["iteration"] == 3
		assert "run_id" not in data

	def test_text_appends_context(self) -> None:
		line = _TextFormatter().format(_record(checkpoint_id="a", run_id="r1"))
		assert line.endswith("Checkpoint a done [checkpoint_id=a run_id=r1]")

	def test_text_without_context(self) -> None:
		assert _TextFormatter().format(_record()).endswith("taskloop.loop: Checkpoint a done")


class TestSetupLogging:
	@pytest.fixture(autouse=True)
	def _reset_handlers(self):
		logger = logging.getLogger("taskloop")
		saved, level = list(logger.handlers), logger.level
		logger.handlers.clear()
		yield
		for handler in logger.handlers:
			handler.close()
		logger.handlers[:] = saved
		logger.setLevel(level)

	def test_json_handler(self) -> None:
		logger = setup_logging("DEBUG", json_format=True)
		assert logger.level == logging.DEBUG
		assert isinstance(logger.handlers[0].formatter, _JsonFormatter)

	def test_idempotent(self) -> None:
		setup_logging()
		setup_logging()
		assert len(logging.getLogger("taskloop").handlers) == 1

	def test_log_file(self, tmp_path: Path) -> None:
		log_file = tmp_path / ".taskloop" / "taskloop.log"
		logger = setup_logging(log_file=log_file)
		logging.getLogger("taskloop.loop").info("hello from the loop")
		for handler in logger.handlers:
			handler.flush()
		assert "hello from the loop" in log_file.read_text()
