"""Tests for dependency-aware readiness resolution."""

from __future__ import annotations

from taskloop import readiness
from taskloop.models import DONE, FAILED, IN_PROGRESS

from conftest import make_checkpoint, make_plan


def _abc_plan():
	return make_plan(
		make_checkpoint(id="A", description="a"),
		make_checkpoint(id="B", description="b"),
		make_checkpoint(id="C", description="c", depends_on=["A", "B"]),
	)


class TestReady:
	def test_no_dependencies_all_ready(self) -> None:
		plan = make_plan(
			make_checkpoint(id="x", description="x"),
			make_checkpoint(id="y", description="y"),
		)
		assert [cp.id for cp in readiness.ready(plan)] == ["x", "y"]

	def test_dependent_waits_for_all_dependencies(self) -> None:
		plan = _abc_plan()
		assert [cp.id for cp in readiness.ready(plan)] == ["A", "B"]

		plan.require("A").status = DONE
		assert [cp.id for cp in readiness.ready(plan)] == ["B"]

		plan.require("B").status = DONE
		assert [cp.id for cp in readiness.ready(plan)] == ["C"]

	def test_ready_is_subset_of_pending_with_done_deps(self) -> None:
		plan = _abc_plan()
		plan.require("A").status = DONE
		plan.require("B").status = IN_PROGRESS
		for cp in readiness.ready(plan):
			assert cp.status == "pending"
			assert all(plan.status_of(d) == DONE for d in cp.depends_on)

	def test_failed_dependency_never_satisfies(self) -> None:
		plan = _abc_plan()
		plan.require("A").status = DONE
		plan.require("B").status = FAILED
		assert readiness.ready(plan) == []

	def test_idempotent(self) -> None:
		plan = _abc_plan()
		first = [cp.id for cp in readiness.ready(plan)]
		second = [cp.id for cp in readiness.ready(plan)]
		assert first == second
		assert all(cp.status == "pending" for cp in plan.checkpoints)

	def test_creation_order_preserved(self) -> None:
		plan = make_plan(
			make_checkpoint(id="z", description="z"),
			make_checkpoint(id="a", description="a"),
		)
		assert [cp.id for cp in readiness.ready(plan)] == ["z", "a"]


class TestBlocked:
	def test_reports_unmet_dependencies(self) -> None:
		plan = _abc_plan()
		plan.require("A").status = DONE
		blocked = readiness.blocked(plan)
		assert len(blocked) == 1
		cp, waiting = blocked[0]
		assert cp.id == "C"
		assert waiting == ["B"]


class TestCompletion:
	def test_all_complete(self) -> None:
		plan = _abc_plan()
		assert not readiness.all_complete(plan)
		for cp in plan.checkpoints:
			cp.status = DONE
		assert readiness.all_complete(plan)

	def test_empty_plan_is_complete(self) -> None:
		assert readiness.all_complete(make_plan())

	def test_current_checkpoint_prefers_in_progress(self) -> None:
		plan = _abc_plan()
		plan.require("B").status = IN_PROGRESS
		assert readiness.current_checkpoint(plan).id == "B"

	def test_current_checkpoint_falls_back_to_ready(self) -> None:
		assert readiness.current_checkpoint(_abc_plan()).id == "A"


class TestGraph:
	def test_dependency_order(self) -> None:
		plan = make_plan(
			make_checkpoint(id="C", description="c", depends_on=["A", "B"]),
			make_checkpoint(id="A", description="a"),
			make_checkpoint(id="B", description="b", depends_on=["A"]),
		)
		assert readiness.dependency_order(plan) == ["A", "B", "C"]

	def test_find_cycle(self) -> None:
		plan = make_plan(
			make_checkpoint(id="A", description="a", depends_on=["C"]),
			make_checkpoint(id="B", description="b", depends_on=["A"]),
			make_checkpoint(id="C", description="c", depends_on=["B"]),
		)
		cycle = readiness.find_cycle(plan)
		assert cycle is not None
		assert cycle[0] == cycle[-1]
		assert set(cycle) == {"A", "B", "C"}

	def test_acyclic_has_no_cycle(self) -> None:
		assert readiness.find_cycle(_abc_plan()) is None
