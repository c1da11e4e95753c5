"""Durable single-file storage for the plan.

The plan file is the only persistence mechanism: there is no index or
journal. Every save is a full-document rewrite through a temp file and
``os.replace`` so a crash never leaves a half-written plan behind. There is
no locking; callers serialize access and re-load right before each mutation
so hand edits made between ticks are not clobbered.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskloop.config import DEFAULT_PLAN_FILE, RUNTIME_DIR
from taskloop.models import COMPLETE, IN_PROGRESS, PENDING, Checkpoint, Plan, _now_iso
from taskloop.readiness import find_cycle

logger = logging.getLogger(__name__)


class PlanError(Exception):
	"""Base class for plan store errors."""


class PlanNotFoundError(PlanError):
	"""No plan file exists in the managed directory."""


class PlanCorruptError(PlanError):
	"""The plan file exists but cannot be parsed or fails schema validation."""


class PlanConfigError(PlanError):
	"""The plan parses but its checkpoint graph is invalid."""


class PlanStoreIOError(PlanError):
	"""Reading or writing the plan file failed at the OS level."""


def validate_plan(plan: Plan) -> list[str]:
	"""Return graph problems: duplicate ids, unknown or self dependencies, cycles."""
	problems: list[str] = []
	seen: set[str] = set()
	for cp in plan.checkpoints:
		if cp.id in seen:
			problems.append(f"duplicate checkpoint id: {cp.id}")
		seen.add(cp.id)

	for cp in plan.checkpoints:
		for dep in cp.depends_on:
			if dep == cp.id:
				problems.append(f"checkpoint {cp.id} depends on itself")
			elif dep not in seen:
				problems.append(f"checkpoint {cp.id} depends on unknown id: {dep}")

	cycle = find_cycle(plan)
	if cycle and len(cycle) > 2:
		problems.append("dependency cycle: " + " -> ".join(cycle))
	return problems


class PlanStore:
	"""Load and save the plan for one managed directory."""

	def __init__(self, project_path: str | Path, filename: str = DEFAULT_PLAN_FILE) -> None:
		self.project_path = Path(project_path)
		self.path = self.project_path / filename

	def exists(self) -> bool:
		return self.path.is_file()

	def load(self) -> Plan:
		"""Read, parse and validate the plan.

		Raises:
			PlanNotFoundError: no plan file.
			PlanCorruptError: unparsable JSON or schema mismatch.
			PlanConfigError: invalid dependency graph.
			PlanStoreIOError: the file could not be read.
		"""
		if not self.path.exists():
			raise PlanNotFoundError(f"No plan found at {self.path}")
		try:
			raw = self.path.read_text(encoding="utf-8")
		except OSError as exc:
			raise PlanStoreIOError(f"Failed to read {self.path}: {exc}") from exc

		try:
			data = json.loads(raw)
		except json.JSONDecodeError as exc:
			raise PlanCorruptError(f"Plan file {self.path} is not valid JSON: {exc}") from exc
		if not isinstance(data, dict):
			raise PlanCorruptError(f"Plan file {self.path} must contain a JSON object")

		try:
			plan = Plan.model_validate(data)
		except ValidationError as exc:
			raise PlanCorruptError(f"Plan file {self.path} does not match the plan schema: {exc}") from exc

		problems = validate_plan(plan)
		if problems:
			raise PlanConfigError("; ".join(problems))
		return plan

	def save(self, plan: Plan) -> Plan:
		"""Rewrite the whole plan file atomically."""
		payload = json.dumps(plan.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"
		try:
			self.path.parent.mkdir(parents=True, exist_ok=True)
			fd, tmp_name = tempfile.mkstemp(
				prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent),
			)
			try:
				with os.fdopen(fd, "w", encoding="utf-8") as f:
					f.write(payload)
					f.flush()
					os.fsync(f.fileno())
				os.replace(tmp_name, self.path)
			except BaseException:
				Path(tmp_name).unlink(missing_ok=True)
				raise
		except OSError as exc:
			raise PlanStoreIOError(f"Failed to write {self.path}: {exc}") from exc
		return plan

	def create(self, title: str, checkpoints: list[dict[str, Any] | Checkpoint]) -> Plan:
		"""Create a new plan. Checkpoints without an id get ``checkpoint-N``.

		Every checkpoint starts pending; the scheduling loop decides what runs first.
		"""
		built: list[Checkpoint] = []
		for idx, raw in enumerate(checkpoints):
			if isinstance(raw, Checkpoint):
				data = raw.model_dump()
			else:
				data = dict(raw)
			data.setdefault("id", f"checkpoint-{idx + 1}")
			data["status"] = PENDING
			data.pop("started", None)
			data.pop("completed", None)
			try:
				built.append(Checkpoint.model_validate(data))
			except ValidationError as exc:
				raise PlanConfigError(f"Invalid checkpoint #{idx + 1}: {exc}") from exc

		plan = Plan(title=title, status=PENDING, checkpoints=built, signs=[])
		problems = validate_plan(plan)
		if problems:
			raise PlanConfigError("; ".join(problems))
		logger.info("Created plan %r with %d checkpoints", title, len(built))
		return self.save(plan)

	def add_checkpoint(self, checkpoint: Checkpoint, position: str = "auto") -> Plan:
		"""Insert a checkpoint into the existing plan.

		Positions: ``auto`` (after the last dependency, else after the current
		in-progress checkpoint, else at the end), ``end``, ``next`` (after the
		in-progress checkpoint) or the id of a checkpoint to insert after.
		"""
		plan = self.load()
		if plan.checkpoint(checkpoint.id) is not None:
			raise PlanConfigError(f"duplicate checkpoint id: {checkpoint.id}")

		new_cp = checkpoint.model_copy(update={"status": PENDING, "started": None, "completed": None})
		idx = _insert_position(plan.checkpoints, new_cp, position)
		plan.checkpoints.insert(idx, new_cp)
		if plan.status == COMPLETE:
			plan.status = IN_PROGRESS

		problems = validate_plan(plan)
		if problems:
			raise PlanConfigError("; ".join(problems))
		logger.info("Added checkpoint %s at position %d", new_cp.id, idx)
		return self.save(plan)

	def archive(self, reason: str = "archived") -> Path | None:
		"""Move the plan file into the archive directory. Returns the new path."""
		if not self.path.exists():
			return None
		archive_dir = self.project_path / RUNTIME_DIR / "archive"
		stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
		target = archive_dir / f"{stamp}-{reason}-{self.path.name}"
		try:
			archive_dir.mkdir(parents=True, exist_ok=True)
			os.replace(self.path, target)
		except OSError as exc:
			raise PlanStoreIOError(f"Failed to archive {self.path}: {exc}") from exc
		logger.info("Archived plan to %s", target)
		return target


def _index_of(checkpoints: list[Checkpoint], checkpoint_id: str) -> int | None:
	for i, cp in enumerate(checkpoints):
		if cp.id == checkpoint_id:
			return i
	return None


def _in_progress_index(checkpoints: list[Checkpoint]) -> int | None:
	for i, cp in enumerate(checkpoints):
		if cp.status == IN_PROGRESS:
			return i
	return None


def _insert_position(checkpoints: list[Checkpoint], checkpoint: Checkpoint, position: str) -> int:
	end = len(checkpoints)
	if position == "end":
		return end
	if position == "next":
		idx = _in_progress_index(checkpoints)
		return idx + 1 if idx is not None else end
	if position != "auto":
		idx = _index_of(checkpoints, position)
		return idx + 1 if idx is not None else end

	if checkpoint.depends_on:
		dep_indices = [
			i for i in (_index_of(checkpoints, dep) for dep in checkpoint.depends_on)
			if i is not None
		]
		return max(dep_indices) + 1 if dep_indices else end
	idx = _in_progress_index(checkpoints)
	return idx + 1 if idx is not None else end


def stamp_started(checkpoint: Checkpoint) -> None:
	checkpoint.status = IN_PROGRESS
	checkpoint.started = _now_iso()
	checkpoint.completed = None


def reset_checkpoint(checkpoint: Checkpoint) -> None:
	checkpoint.status = PENDING
	checkpoint.started = None
	checkpoint.completed = None
