"""Tests for worker instructions."""

from __future__ import annotations

from taskloop.models import DONE
from taskloop.prompts import build_instructions, completed_summary, context_for_iteration
from taskloop.result import BLOCKED_MARKER, COMPLETE_MARKER
from taskloop.signs import record_sign

from conftest import make_checkpoint, make_plan


def _plan():
	return make_plan(
		make_checkpoint(id="schema", description="Define the schema", status=DONE),
		make_checkpoint(
			id="api", description="Expose the API", depends_on=["schema"],
			file="src/api.py", acceptance="GET /items returns 200",
			gates=["pytest tests/test_api.py", "judge: responses are paginated"],
		),
		make_checkpoint(id="ui", description="Render items", depends_on=["api"]),
		title="Item service",
	)


class TestCompletedSummary:
	def test_only_done(self) -> None:
		assert completed_summary(_plan()) == "schema: Define the schema"

	def test_nothing_done(self) -> None:
		assert completed_summary(make_plan(make_checkpoint())) == ""


class TestContext:
	def test_compact_view(self) -> None:
		context = context_for_iteration(_plan())
		assert context["ready"] == ["api"]
		assert context["blocked"] == [{"id": "ui", "waiting_on": ["api"]}]
		assert [cp.id for cp in context["active_checkpoints"]] == ["api", "ui"]
		assert context["completed_summary"] == "schema: Define the schema"

	def test_signs_scoped_to_checkpoint(self) -> None:
		plan = _plan()
		record_sign(plan, "api", 1, "api issue")
		record_sign(plan, "ui", 2, "ui issue")
		issues = [s.issue for s in context_for_iteration(plan, checkpoint_id="api")["recent_signs"]]
		assert issues == ["api issue"]
		assert len(context_for_iteration(plan)["recent_signs"]) == 2

	def test_stored_summary_preferred(self) -> None:
		plan = _plan()
		plan.completed_summary = "schema done earlier"
		assert context_for_iteration(plan)["completed_summary"] == "schema done earlier"


class TestBuildInstructions:
	def test_contents(self) -> None:
		plan = _plan()
		text = build_instructions(plan, plan.require("api"), plan_file="PLAN.json")
		assert text.startswith("# Item service")
		assert "## Current Checkpoint: api" in text
		assert "**Task:** Expose the API" in text
		assert "**File:** src/api.py" in text
		assert "**Acceptance Criteria:** GET /items returns 200" in text
		assert "- [cmd] pytest tests/test_api.py (run after you finish)" in text
		assert "- [judge] responses are paginated (check yourself)" in text
		assert "schema: Define the schema" in text
		assert "Do NOT edit PLAN.json" in text
		assert COMPLETE_MARKER in text
		assert f"{BLOCKED_MARKER}: <reason>" in text
		assert "Signs" not in text

	def test_signs_for_this_checkpoint_only(self) -> None:
		plan = _plan()
		record_sign(plan, "api", 1, "tests import the wrong module", fix="use src layout")
		record_sign(plan, "ui", 2, "ui specific problem")
		record_sign(plan, None, 3, "plan-wide lesson")
		text = build_instructions(plan, plan.require("api"))
		assert "## Previous Learnings (Signs)" in text
		assert "tests import the wrong module" in text
		assert "plan-wide lesson" in text
		assert "ui specific problem" not in text

	def test_sign_limit(self) -> None:
		plan = _plan()
		for i in range(4):
			record_sign(plan, "api", i, f"issue number {i}")
		text = build_instructions(plan, plan.require("api"), max_signs=2)
		assert "issue number 3" in text
		assert "issue number 2" in text
		assert "issue number 1" not in text

	def test_first_checkpoint(self) -> None:
		plan = make_plan(make_checkpoint())
		assert "Nothing yet." in build_instructions(plan, plan.require("cp1"))

	def test_plan_state_lists_ready_and_waiting(self) -> None:
		plan = make_plan(
			make_checkpoint(id="schema", description="Define the schema", status=DONE),
			make_checkpoint(id="api", description="Expose the API", depends_on=["schema"]),
			make_checkpoint(id="cli", description="Add the CLI", depends_on=["schema"]),
			make_checkpoint(id="ui", description="Render items", depends_on=["api", "cli"]),
		)
		text = build_instructions(plan, plan.require("api"))
		assert "## Plan State" in text
		assert "1/4 checkpoints done, 3 open." in text
		assert "- Ready: cli" in text
		assert "- Waiting: ui (after api, cli)" in text

	def test_plan_state_when_nothing_else_is_open(self) -> None:
		plan = make_plan(make_checkpoint())
		text = build_instructions(plan, plan.require("cp1"))
		assert "- Ready: none" in text
		assert "- Waiting: none" in text
