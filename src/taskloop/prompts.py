"""Worker instructions for a single checkpoint attempt."""

from __future__ import annotations

from typing import Any

from taskloop import readiness
from taskloop.gates import parse_gates
from taskloop.models import DONE, Checkpoint, Plan
from taskloop.result import BLOCKED_MARKER, COMPLETE_MARKER
from taskloop.signs import format_signs, recent_signs

CHECKPOINT_PROMPT_TEMPLATE = """\
# {title}

You are working on one focused checkpoint of a larger plan. Complete this ONE task, then exit.

## Current Checkpoint: {checkpoint_id}
**Task:** {description}
{details}
## Already Done
{completed_block}

## Plan State
{progress}
- Ready: {ready_block}
- Waiting: {blocked_block}

## Instructions
1. Inspect the current state of the project before changing anything
2. Implement the checkpoint task and nothing else
3. Verify the acceptance criteria and gates yourself
4. Do NOT edit {plan_file}; progress is recorded for you
5. When the acceptance criteria are met, output {complete_marker}
6. If you cannot proceed, output {blocked_marker}: <reason>
{signs_block}"""


def completed_summary(plan: Plan) -> str:
	"""``id: description`` of every done checkpoint, joined on one line."""
	done = [cp for cp in plan.checkpoints if cp.status == DONE]
	return "; ".join(f"{cp.id}: {cp.description}" for cp in done)


def context_for_iteration(plan: Plan, max_signs: int = 5, checkpoint_id: str | None = None) -> dict[str, Any]:
	"""A compact view of the plan for one iteration.

	With *checkpoint_id*, recent signs are limited to that checkpoint and
	plan-wide ones.
	"""
	return {
		"title": plan.title,
		"status": plan.status,
		"completed_summary": plan.completed_summary or completed_summary(plan),
		"active_checkpoints": [cp for cp in plan.checkpoints if cp.status != DONE],
		"ready": [cp.id for cp in readiness.ready(plan)],
		"blocked": [
			{"id": cp.id, "waiting_on": blockers}
			for cp, blockers in readiness.blocked(plan)
		],
		"recent_signs": recent_signs(plan, max_signs, checkpoint_id=checkpoint_id),
	}


def _details(checkpoint: Checkpoint) -> str:
	lines: list[str] = []
	if checkpoint.file:
		lines.append(f"**File:** {checkpoint.file}")
	if checkpoint.acceptance:
		lines.append(f"**Acceptance Criteria:** {checkpoint.acceptance}")
	gates = parse_gates(checkpoint.gates)
	if gates:
		lines.append("**Gates:**")
		for gate in gates:
			how = "run after you finish" if gate.runnable else "check yourself"
			lines.append(f"- [{gate.kind}] {gate.body} ({how})")
	return "\n".join(lines) + "\n" if lines else ""


def build_instructions(
	plan: Plan,
	checkpoint: Checkpoint,
	max_signs: int = 5,
	plan_file: str = "the plan file",
) -> str:
	"""Render the instructions passed to a worker on stdin."""
	context = context_for_iteration(plan, max_signs, checkpoint_id=checkpoint.id)
	open_count = len(context["active_checkpoints"])
	done_count = len(plan.checkpoints) - open_count
	others_ready = [cp_id for cp_id in context["ready"] if cp_id != checkpoint.id]
	waiting = [
		f"{entry['id']} (after {', '.join(entry['waiting_on'])})"
		for entry in context["blocked"]
	]
	signs_text = format_signs(context["recent_signs"])
	signs_block = f"\n## Previous Learnings (Signs)\n{signs_text}\n" if signs_text else ""
	return CHECKPOINT_PROMPT_TEMPLATE.format(
		title=plan.title,
		checkpoint_id=checkpoint.id,
		description=checkpoint.description,
		details=_details(checkpoint),
		completed_block=context["completed_summary"] or "Nothing yet.",
		progress=f"{done_count}/{len(plan.checkpoints)} checkpoints done, {open_count} open.",
		ready_block=", ".join(others_ready) or "none",
		blocked_block="; ".join(waiting) or "none",
		plan_file=plan_file,
		complete_marker=COMPLETE_MARKER,
		blocked_marker=BLOCKED_MARKER,
		signs_block=signs_block,
	)
