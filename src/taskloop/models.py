"""Data models for taskloop plan state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

PlanStatus = Literal["pending", "in-progress", "complete", "stuck"]
CheckpointStatus = Literal["pending", "in-progress", "done", "failed"]
Severity = Literal["error", "warning", "info"]

PENDING = "pending"
IN_PROGRESS = "in-progress"
DONE = "done"
FAILED = "failed"
COMPLETE = "complete"
STUCK = "stuck"


def _now_iso() -> str:
	return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
	return uuid4().hex[:12]


class Checkpoint(BaseModel):
	"""One independently-verifiable unit of work."""

	model_config = ConfigDict(extra="ignore", validate_assignment=True)

	id: str
	description: str
	status: CheckpointStatus = "pending"
	file: str | None = None
	acceptance: str | None = None
	gates: list[str] = Field(default_factory=list)
	depends_on: list[str] = Field(default_factory=list)
	started: str | None = None
	completed: str | None = None

	@field_validator("id")
	@classmethod
	def _id_not_blank(cls, value: str) -> str:
		value = value.strip()
		if not value:
			raise ValueError("checkpoint id must not be empty")
		return value


class Sign(BaseModel):
	"""An immutable record of one failure or learning."""

	model_config = ConfigDict(extra="ignore", frozen=True)

	checkpoint: str | None = None
	iteration: int = 0
	timestamp: str = Field(default_factory=_now_iso)
	issue: str
	fix: str = ""
	severity: Severity = "error"


class Plan(BaseModel):
	"""The checkpoint graph plus metadata for one task."""

	model_config = ConfigDict(extra="ignore", validate_assignment=True)

	title: str
	status: PlanStatus = "pending"
	checkpoints: list[Checkpoint] = Field(default_factory=list)
	signs: list[Sign] = Field(default_factory=list)
	created: str = Field(default_factory=_now_iso)
	completed_summary: str | None = None

	def checkpoint(self, checkpoint_id: str) -> Checkpoint | None:
		"""Look up a checkpoint by id."""
		for cp in self.checkpoints:
			if cp.id == checkpoint_id:
				return cp
		return None

	def require(self, checkpoint_id: str) -> Checkpoint:
		cp = self.checkpoint(checkpoint_id)
		if cp is None:
			raise KeyError(f"Unknown checkpoint: {checkpoint_id}")
		return cp

	def status_of(self, checkpoint_id: str) -> str | None:
		cp = self.checkpoint(checkpoint_id)
		return cp.status if cp is not None else None

	def ids(self) -> list[str]:
		return [cp.id for cp in self.checkpoints]


# -- Worker result schema --


class UsageSchema(BaseModel, extra="ignore"):
	"""Token usage block reported by the worker."""

	input_tokens: int = 0
	output_tokens: int = 0


class WorkerResultSchema(BaseModel, extra="ignore"):
	"""Pydantic schema for the worker's terminal structured result."""

	type: str = "result"
	subtype: str = ""
	is_error: bool = False
	result: str = ""
	total_cost_usd: float = 0.0
	usage: UsageSchema = Field(default_factory=UsageSchema)
	session_id: str | None = None
