"""Post-run review: what each checkpoint cost and where it ended up."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from taskloop.metrics import format_duration
from taskloop.models import DONE, FAILED, PENDING, Plan
from taskloop.rollback import CheckpointCommit
from taskloop.signs import signs_summary


@dataclass
class CheckpointReport:
	id: str
	description: str
	status: str
	duration_seconds: float | None = None
	errors: int = 0
	warnings: int = 0
	runs: int = 0
	cost_usd: float = 0.0
	commit: str | None = None


@dataclass
class RunReport:
	title: str
	status: str
	checkpoints: list[CheckpointReport] = field(default_factory=list)
	done: int = 0
	pending: int = 0
	failed: int = 0
	total_runs: int = 0
	total_cost_usd: float = 0.0
	input_tokens: int = 0
	output_tokens: int = 0
	signs: dict[str, Any] = field(default_factory=dict)

	def to_dict(self) -> dict[str, Any]:
		return asdict(self)


def _duration(started: str | None, completed: str | None) -> float | None:
	if not started or not completed:
		return None
	try:
		return (datetime.fromisoformat(completed) - datetime.fromisoformat(started)).total_seconds()
	except ValueError:
		return None


def build_report(
	plan: Plan,
	commits: list[CheckpointCommit] | None = None,
	events: list[dict[str, Any]] | None = None,
) -> RunReport:
	"""Combine plan state, rollback commits and the event stream into one report."""
	# Newest commit wins since history is listed newest first
	commit_by_id: dict[str, str] = {}
	for commit in commits or []:
		commit_by_id.setdefault(commit.checkpoint_id, commit.sha)

	runs: dict[str, int] = {}
	costs: dict[str, float] = {}
	input_tokens = output_tokens = 0
	for event in events or []:
		if event.get("event_type") != "worker_finished":
			continue
		cp_id = str(event.get("checkpoint_id", ""))
		runs[cp_id] = runs.get(cp_id, 0) + 1
		costs[cp_id] = costs.get(cp_id, 0.0) + float(event.get("cost_usd", 0.0) or 0.0)
		input_tokens += int(event.get("input_tokens", 0) or 0)
		output_tokens += int(event.get("output_tokens", 0) or 0)

	report = RunReport(title=plan.title, status=plan.status, signs=signs_summary(plan))
	for cp in plan.checkpoints:
		cp_signs = [s for s in plan.signs if s.checkpoint == cp.id]
		report.checkpoints.append(CheckpointReport(
			id=cp.id,
			description=cp.description,
			status=cp.status,
			duration_seconds=_duration(cp.started, cp.completed),
			errors=sum(1 for s in cp_signs if s.severity == "error"),
			warnings=sum(1 for s in cp_signs if s.severity == "warning"),
			runs=runs.get(cp.id, 0),
			cost_usd=costs.get(cp.id, 0.0),
			commit=commit_by_id.get(cp.id),
		))

	report.done = sum(1 for cp in plan.checkpoints if cp.status == DONE)
	report.failed = sum(1 for cp in plan.checkpoints if cp.status == FAILED)
	report.pending = sum(1 for cp in plan.checkpoints if cp.status == PENDING)
	report.total_runs = sum(runs.values())
	report.total_cost_usd = sum(costs.values())
	report.input_tokens = input_tokens
	report.output_tokens = output_tokens
	return report


def render_text(report: RunReport) -> str:
	lines = [
		f"Plan: {report.title} [{report.status}]",
		f"Checkpoints: {report.done} done, {report.pending} pending, {report.failed} failed",
		f"Runs: {report.total_runs}  Cost: ${report.total_cost_usd:.2f}  "
		f"Tokens: {report.input_tokens} in / {report.output_tokens} out",
		"",
		f"{'ID':<20} {'Status':<12} {'Runs':>4} {'Err':>4} {'Time':>9}  Commit",
		"-" * 64,
	]
	for cp in report.checkpoints:
		duration = format_duration(cp.duration_seconds) if cp.duration_seconds is not None else "-"
		commit = cp.commit[:10] if cp.commit else "-"
		lines.append(f"{cp.id[:20]:<20} {cp.status:<12} {cp.runs:>4} {cp.errors:>4} {duration:>9}  {commit}")

	recent = report.signs.get("recent", [])
	if recent:
		lines.append("")
		lines.append("Recent signs:")
		for sign in recent:
			where = sign.get("checkpoint") or "plan"
			lines.append(f"  [{sign.get('severity')}] {where}: {sign.get('issue')}")
	return "\n".join(lines)


def render_json(report: RunReport) -> str:
	return json.dumps(report.to_dict(), indent=2)
