"""Tests for signs: failure memory and the skip policy."""

from __future__ import annotations

from taskloop.models import FAILED
from taskloop.signs import (
	SMALLER_SCOPE_FIX,
	failure_count,
	format_signs,
	recent_signs,
	record_sign,
	should_skip,
	signs_summary,
	skip_checkpoint,
)

from conftest import make_checkpoint, make_plan


class TestFailureCount:
	def test_counts_only_errors_for_checkpoint(self) -> None:
		plan = make_plan(make_checkpoint(id="X"), make_checkpoint(id="Y", description="y"))
		record_sign(plan, "X", 1, "boom")
		record_sign(plan, "X", 2, "idle", fix=SMALLER_SCOPE_FIX, severity="warning")
		record_sign(plan, "Y", 3, "other")
		record_sign(plan, None, 4, "plan-wide")
		assert failure_count(plan, "X") == 1
		assert failure_count(plan, "Y") == 1

	def test_warning_does_not_trigger_skip(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		for i in range(5):
			record_sign(plan, "X", i, "idle", severity="warning")
		assert not should_skip(plan, "X", 3)


class TestSkipPolicy:
	def test_skip_at_threshold(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		record_sign(plan, "X", 1, "fail 1")
		record_sign(plan, "X", 2, "fail 2")
		assert not should_skip(plan, "X", 3)
		record_sign(plan, "X", 3, "fail 3")
		assert should_skip(plan, "X", 3)

	def test_skip_marks_failed_and_records_sign(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		for i in range(3):
			record_sign(plan, "X", i, f"fail {i}")
		sign = skip_checkpoint(plan, "X", iteration=4, max_failures=3)
		assert plan.require("X").status == FAILED
		assert plan.signs[-1] == sign
		assert "Skipped after 3" in sign.issue
		assert len(plan.signs) == 4


class TestRecentSigns:
	def test_most_recent_first_and_capped(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		for i in range(8):
			record_sign(plan, "X", i, f"issue {i}")
		recent = recent_signs(plan, limit=5)
		assert [s.iteration for s in recent] == [7, 6, 5, 4, 3]

	def test_filter_keeps_plan_wide(self) -> None:
		plan = make_plan(make_checkpoint(id="X"), make_checkpoint(id="Y", description="y"))
		record_sign(plan, "X", 1, "x issue")
		record_sign(plan, "Y", 2, "y issue")
		record_sign(plan, None, 3, "general")
		recent = recent_signs(plan, checkpoint_id="X")
		assert [s.issue for s in recent] == ["general", "x issue"]


class TestRendering:
	def test_summary_counts(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		record_sign(plan, "X", 1, "e")
		record_sign(plan, "X", 2, "w", severity="warning")
		summary = signs_summary(plan)
		assert summary["total"] == 2
		assert summary["errors"] == 1
		assert summary["warnings"] == 1
		assert summary["recent"][0]["issue"] == "w"

	def test_format_signs(self) -> None:
		plan = make_plan(make_checkpoint(id="X"))
		record_sign(plan, "X", 2, "tests fail", fix="run pytest first")
		text = format_signs(plan.signs)
		assert "[error] iteration 2, checkpoint X" in text
		assert "Issue: tests fail" in text
		assert "Fix: run pytest first" in text

	def test_format_empty(self) -> None:
		assert format_signs([]) == ""
