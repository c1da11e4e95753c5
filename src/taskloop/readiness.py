"""Dependency-aware readiness resolution over plan state.

Every function here is a pure function of the plan: no I/O, no mutation.
The scheduling loop re-queries these against freshly loaded plan state on
every tick, which is the only mechanism ordering dependents after their
dependencies.
"""

from __future__ import annotations

from collections import deque

from taskloop.models import DONE, IN_PROGRESS, PENDING, Checkpoint, Plan


def dependencies_met(plan: Plan, checkpoint: Checkpoint) -> bool:
	"""True when every dependency of *checkpoint* is done."""
	return all(plan.status_of(dep) == DONE for dep in checkpoint.depends_on)


def ready(plan: Plan) -> list[Checkpoint]:
	"""Pending checkpoints whose dependencies are all done, in creation order."""
	return [
		cp for cp in plan.checkpoints
		if cp.status == PENDING and dependencies_met(plan, cp)
	]


def blocked(plan: Plan) -> list[tuple[Checkpoint, list[str]]]:
	"""Pending checkpoints with unmet dependencies, paired with the blockers."""
	result: list[tuple[Checkpoint, list[str]]] = []
	for cp in plan.checkpoints:
		if cp.status != PENDING:
			continue
		blockers = [dep for dep in cp.depends_on if plan.status_of(dep) != DONE]
		if blockers:
			result.append((cp, blockers))
	return result


def in_progress(plan: Plan) -> list[Checkpoint]:
	return [cp for cp in plan.checkpoints if cp.status == IN_PROGRESS]


def all_complete(plan: Plan) -> bool:
	"""True when every checkpoint is done. An empty plan is trivially complete."""
	return all(cp.status == DONE for cp in plan.checkpoints)


def current_checkpoint(plan: Plan) -> Checkpoint | None:
	"""The in-progress checkpoint, or the first ready one if none is running."""
	running = in_progress(plan)
	if running:
		return running[0]
	candidates = ready(plan)
	return candidates[0] if candidates else None


def find_cycle(plan: Plan) -> list[str] | None:
	"""Return one dependency cycle as a list of ids, or None if the graph is acyclic.

	Unknown dependency ids are ignored here; they are reported separately.
	"""
	known = set(plan.ids())
	graph = {cp.id: [d for d in cp.depends_on if d in known] for cp in plan.checkpoints}
	visiting: set[str] = set()
	visited: set[str] = set()
	stack: list[str] = []

	def visit(node: str) -> list[str] | None:
		visiting.add(node)
		stack.append(node)
		for dep in graph[node]:
			if dep in visiting:
				return stack[stack.index(dep):] + [dep]
			if dep not in visited:
				found = visit(dep)
				if found:
					return found
		visiting.discard(node)
		visited.add(node)
		stack.pop()
		return None

	for cp_id in graph:
		if cp_id not in visited:
			found = visit(cp_id)
			if found:
				return found
	return None


def dependency_order(plan: Plan) -> list[str]:
	"""Checkpoint ids in topological order (Kahn), ties broken by creation order.

	Checkpoints caught in a cycle are omitted.
	"""
	known = set(plan.ids())
	in_degree = {
		cp.id: len([d for d in cp.depends_on if d in known])
		for cp in plan.checkpoints
	}
	dependents: dict[str, list[str]] = {cp_id: [] for cp_id in in_degree}
	for cp in plan.checkpoints:
		for dep in cp.depends_on:
			if dep in dependents:
				dependents[dep].append(cp.id)

	queue = deque(cp_id for cp_id, deg in in_degree.items() if deg == 0)
	order: list[str] = []
	while queue:
		node = queue.popleft()
		order.append(node)
		for child in dependents[node]:
			in_degree[child] -= 1
			if in_degree[child] == 0:
				queue.append(child)
	return order
