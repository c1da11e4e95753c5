"""JSONL event stream: one line per loop event, for post-run analysis.

Records are written with ``seq`` numbers that restart at 1 for every loop
run, so ``loop_started`` always carries ``seq == 1``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import IO, Any

from taskloop.models import _now_iso

logger = logging.getLogger(__name__)


@dataclass
class LoopEvent:
	event_type: str
	checkpoint_id: str = ""
	run_id: str = ""
	iteration: int = 0
	details: dict[str, Any] = field(default_factory=dict)
	input_tokens: int = 0
	output_tokens: int = 0
	cost_usd: float = 0.0
	seq: int = 0
	timestamp: str = field(default_factory=_now_iso)

	def to_json(self) -> str:
		return json.dumps(asdict(self), separators=(",", ":"), default=str)


class EventStream:
	"""Append-only writer for ``LoopEvent`` records.

	Emitting while closed is a no-op, so callers never need to check whether
	the stream was enabled.
	"""

	def __init__(self, path: Path) -> None:
		self._path = path
		self._handle: IO[str] | None = None
		self._seq = 0

	@property
	def path(self) -> Path:
		return self._path

	def __enter__(self) -> EventStream:
		self.open()
		return self

	def __exit__(self, *exc: object) -> None:
		self.close()

	def open(self) -> None:
		if self._handle is not None:
			return
		self._path.parent.mkdir(parents=True, exist_ok=True)
		self._handle = self._path.open("a", encoding="utf-8")
		self._seq = 0

	def close(self) -> None:
		if self._handle is None:
			return
		self._handle.close()
		self._handle = None

	def emit(
		self,
		event_type: str,
		*,
		checkpoint_id: str = "",
		run_id: str = "",
		iteration: int = 0,
		details: dict[str, Any] | None = None,
		input_tokens: int = 0,
		output_tokens: int = 0,
		cost_usd: float = 0.0,
	) -> LoopEvent | None:
		if self._handle is None:
			return None
		self._seq += 1
		event = LoopEvent(
			event_type=event_type,
			checkpoint_id=checkpoint_id,
			run_id=run_id,
			iteration=iteration,
			details=dict(details or {}),
			input_tokens=input_tokens,
			output_tokens=output_tokens,
			cost_usd=cost_usd,
			seq=self._seq,
		)
		try:
			self._handle.write(event.to_json() + "\n")
			self._handle.flush()
		except OSError as exc:
			logger.warning("Failed to write event %s to %s: %s", event_type, self._path, exc)
		return event


def read_events(path: Path, event_type: str | None = None) -> list[dict[str, Any]]:
	"""Well-formed records from *path*, optionally only those of one type.

	Truncated or hand-edited lines are skipped.
	"""
	if not path.exists():
		return []
	events: list[dict[str, Any]] = []
	with path.open(encoding="utf-8") as f:
		for line in f:
			if not line.strip():
				continue
			try:
				record = json.loads(line)
			except json.JSONDecodeError:
				continue
			if not isinstance(record, dict):
				continue
			if event_type is None or record.get("event_type") == event_type:
				events.append(record)
	return events
