"""Signs: recorded failures and learnings that steer future workers.

Signs are append-only and live inside the plan. Only ``error`` signs count
toward a checkpoint's failure total; supervisor detections (idle or timeout
kills) are recorded as ``warning`` so stuck-detection never burns the retry
budget that worker-reported failures use.
"""

from __future__ import annotations

import logging
from typing import Any

from taskloop.models import FAILED, Plan, Severity, Sign, _now_iso

logger = logging.getLogger(__name__)

SMALLER_SCOPE_FIX = "Checkpoint may need smaller scope"
BLOCKED_FIX = "Needs resolution"


def record_sign(
	plan: Plan,
	checkpoint_id: str | None,
	iteration: int,
	issue: str,
	fix: str = "",
	severity: Severity = "error",
) -> Sign:
	"""Append a sign to the plan (in memory) and return it."""
	sign = Sign(
		checkpoint=checkpoint_id,
		iteration=iteration,
		timestamp=_now_iso(),
		issue=issue,
		fix=fix,
		severity=severity,
	)
	plan.signs.append(sign)
	logger.info(
		"Sign recorded [%s] checkpoint=%s: %s",
		severity, checkpoint_id or "-", issue[:200],
	)
	return sign


def failure_count(plan: Plan, checkpoint_id: str) -> int:
	"""Number of error-severity signs attributed to *checkpoint_id*."""
	return sum(
		1 for s in plan.signs
		if s.checkpoint == checkpoint_id and s.severity == "error"
	)


def should_skip(plan: Plan, checkpoint_id: str, max_failures: int) -> bool:
	return failure_count(plan, checkpoint_id) >= max_failures


def skip_checkpoint(plan: Plan, checkpoint_id: str, iteration: int, max_failures: int) -> Sign:
	"""Mark a checkpoint failed (terminal) and record the explaining sign."""
	cp = plan.require(checkpoint_id)
	count = failure_count(plan, checkpoint_id)
	cp.status = FAILED
	cp.completed = None
	logger.warning(
		"Skipping checkpoint %s after %d failures (max %d)",
		checkpoint_id, count, max_failures,
	)
	return record_sign(
		plan,
		checkpoint_id,
		iteration,
		issue=f"Skipped after {count} failed attempts (limit {max_failures})",
		fix="Review the signs for this checkpoint, split or clarify it, then reset it to pending",
		severity="error",
	)


def recent_signs(plan: Plan, limit: int = 5, checkpoint_id: str | None = None) -> list[Sign]:
	"""Most recent signs first, optionally restricted to one checkpoint and plan-wide signs."""
	selected = [
		s for s in reversed(plan.signs)
		if checkpoint_id is None or s.checkpoint in (checkpoint_id, None)
	]
	return selected[:limit]


def signs_summary(plan: Plan, limit: int = 5) -> dict[str, Any]:
	"""Totals by severity plus the most recent signs."""
	return {
		"total": len(plan.signs),
		"errors": sum(1 for s in plan.signs if s.severity == "error"),
		"warnings": sum(1 for s in plan.signs if s.severity == "warning"),
		"recent": [s.model_dump() for s in recent_signs(plan, limit)],
	}


def format_signs(signs: list[Sign]) -> str:
	"""Render signs as a markdown block for worker instructions."""
	if not signs:
		return ""
	lines: list[str] = []
	for s in signs:
		header = f"- [{s.severity}] iteration {s.iteration}"
		if s.checkpoint:
			header += f", checkpoint {s.checkpoint}"
		lines.append(header)
		lines.append(f"  Issue: {s.issue}")
		if s.fix:
			lines.append(f"  Fix: {s.fix}")
	return "\n".join(lines)
