"""Scheduling loop: drive workers through the checkpoint graph until done.

Each tick polls active runs, applies finished outcomes to a freshly loaded
plan, then fills free slots with ready checkpoints. The plan file is the
only shared state and this loop is its only writer while it runs.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable
from dataclasses import dataclass, field, replace

from taskloop import readiness
from taskloop.backends.local import LocalBackend
from taskloop.config import DEFAULT_CONFIG, LoopConfig
from taskloop.event_stream import EventStream
from taskloop.gates import first_failure, parse_gates, run_gates
from taskloop.liveness import MtimeScanner
from taskloop.metrics import Timer
from taskloop.models import COMPLETE, DONE, FAILED, IN_PROGRESS, PENDING, STUCK, Checkpoint, Plan, Sign, _now_iso
from taskloop.plan_store import PlanError, PlanStore, reset_checkpoint, stamp_started
from taskloop.prompts import build_instructions, completed_summary
from taskloop.result import CostMetrics, Outcome, classify_log
from taskloop.rollback import commit_checkpoint
from taskloop.runtime import RuntimeInfo, RuntimeRegistry, WorkerEntry
from taskloop.signs import BLOCKED_FIX, SMALLER_SCOPE_FIX, record_sign, recent_signs, should_skip, skip_checkpoint
from taskloop.supervisor import KILL_CANCELLED, KILL_FAILED, Alive, Completed, Killed, PollResult, Supervisor, WorkerKillError, WorkerRun, WorkerSpawnError

logger = logging.getLogger(__name__)

STATUS_COMPLETE = "complete"
STATUS_STUCK = "stuck"
STATUS_MAX_ITERATIONS = "max-iterations"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class LoopState:
	"""Accumulators for one run of the loop. Replaced, never mutated."""

	iteration: int = 0
	input_tokens: int = 0
	output_tokens: int = 0
	cost_usd: float = 0.0
	completed: int = 0
	failed_attempts: int = 0
	kills: int = 0
	skipped: int = 0
	reconciled: int = 0
	started_at: float = 0.0

	def add_cost(self, cost: CostMetrics) -> LoopState:
		return replace(
			self,
			input_tokens=self.input_tokens + cost.input_tokens,
			output_tokens=self.output_tokens + cost.output_tokens,
			cost_usd=self.cost_usd + cost.cost_usd,
		)


@dataclass
class LoopResult:
	status: str
	iterations: int = 0
	cost_usd: float = 0.0
	input_tokens: int = 0
	output_tokens: int = 0
	elapsed_seconds: float = 0.0
	completed: int = 0
	skipped: int = 0
	unresolved: list[str] = field(default_factory=list)
	recent_signs: list[Sign] = field(default_factory=list)
	reason: str = ""

	def to_dict(self) -> dict[str, object]:
		return {
			"status": self.status,
			"reason": self.reason,
			"iterations": self.iterations,
			"cost_usd": round(self.cost_usd, 4),
			"input_tokens": self.input_tokens,
			"output_tokens": self.output_tokens,
			"elapsed_seconds": round(self.elapsed_seconds, 2),
			"completed": self.completed,
			"skipped": self.skipped,
			"unresolved": self.unresolved,
			"recent_signs": [s.model_dump() for s in self.recent_signs],
		}


class Scheduler:
	"""Run the checkpoint plan for one managed directory."""

	def __init__(
		self,
		config: LoopConfig,
		store: PlanStore | None = None,
		supervisor: Supervisor | None = None,
		events: EventStream | None = None,
		runtime: RuntimeRegistry | None = None,
		clock: Callable[[], float] = time.monotonic,
	) -> None:
		self.config = config
		self.root = config.target.resolved_path
		self.store = store or PlanStore(self.root, config.target.plan_file)
		self.supervisor = supervisor or Supervisor(
			config,
			LocalBackend(config),
			MtimeScanner(
				config.liveness.skip_dirs,
				config.liveness.extensions,
				skip_files=[config.target.plan_file, DEFAULT_CONFIG],
			),
			clock=clock,
		)
		self.events = events
		self.runtime = runtime
		self._clock = clock
		self._active: dict[str, WorkerRun] = {}
		self._cancel_event = asyncio.Event()
		self._run_started = False

	@property
	def active(self) -> dict[str, WorkerRun]:
		return dict(self._active)

	@property
	def cancelled(self) -> bool:
		return self._cancel_event.is_set()

	def cancel(self) -> None:
		"""Ask the loop to stop. Active workers are killed on the next tick."""
		if not self._cancel_event.is_set():
			logger.warning("Cancellation requested")
		self._cancel_event.set()

	# -- entry points --

	async def run_parallel(self, max_parallel: int | None = None) -> LoopResult:
		"""Keep up to *max_parallel* workers busy until the plan terminates."""
		slots = max_parallel or self.config.scheduler.max_parallel
		state = LoopState(started_at=self._clock())
		try:
			plan = self.store.load()
		except PlanError as exc:
			return self._error(state, str(exc))

		logger.info("Starting parallel loop for %r with %d slots", plan.title, slots)
		try:
			state = self._begin(plan, state)
			while True:
				if self.cancelled:
					return await self._cancel_active(state)

				polled = await self._poll_active()
				finished = [(run, res) for run, res in polled if not isinstance(res, Alive)]
				if finished:
					state = await self._collect(finished, state)

				plan = self.store.load()
				if not self._active and readiness.all_complete(plan):
					return await self._finish(plan, state, STATUS_COMPLETE)

				exhausted = self._budget_exhausted(state)
				if not exhausted and not self.cancelled:
					plan, state = await self._fill_slots(plan, state, slots)

				if not self._active:
					if exhausted:
						return await self._finish(plan, state, STATUS_MAX_ITERATIONS, self._budget_reason(state))
					if readiness.all_complete(plan):
						return await self._finish(plan, state, STATUS_COMPLETE)
					if readiness.in_progress(plan):
						state = self._reconcile(plan, state)
						continue
					if not readiness.ready(plan):
						return await self._finish(plan, state, STATUS_STUCK, self._stuck_reason(plan))

				await self._sleep()
		except PlanError as exc:
			await self._terminate_all(KILL_CANCELLED)
			return self._error(state, str(exc))
		finally:
			await self._end()

	async def run_sequential(self) -> LoopResult:
		"""Run one checkpoint at a time, resuming an interrupted one first."""
		state = LoopState(started_at=self._clock())
		try:
			plan = self.store.load()
		except PlanError as exc:
			return self._error(state, str(exc))

		resume = readiness.current_checkpoint(plan)
		resume_id = resume.id if resume is not None else None
		logger.info("Starting sequential loop for %r", plan.title)
		try:
			state = self._begin(plan, state)
			while True:
				if self.cancelled:
					return await self._cancel_active(state)

				if self._active:
					run = next(iter(self._active.values()))
					result = await self._wait(run)
					if result is None:
						return await self._cancel_active(state)
					state = await self._collect([(run, result)], state)
					if run.checkpoint_id in self._active:
						# Kill failed and the process still holds the only slot
						await self._sleep()
					continue

				plan = self.store.load()
				if readiness.all_complete(plan):
					return await self._finish(plan, state, STATUS_COMPLETE)
				if self._budget_exhausted(state):
					return await self._finish(plan, state, STATUS_MAX_ITERATIONS, self._budget_reason(state))
				if readiness.in_progress(plan):
					state = self._reconcile(plan, state)
					continue

				candidates = readiness.ready(plan)
				if not candidates:
					return await self._finish(plan, state, STATUS_STUCK, self._stuck_reason(plan))
				checkpoint = next((cp for cp in candidates if cp.id == resume_id), candidates[0])
				resume_id = None

				if should_skip(plan, checkpoint.id, self.config.scheduler.max_failures):
					state = self._skip(plan, checkpoint, state)
					continue

				plan, state = await self._start(plan, checkpoint, state)
				if checkpoint.id not in self._active:
					await self._sleep()
		except PlanError as exc:
			await self._terminate_all(KILL_CANCELLED)
			return self._error(state, str(exc))
		finally:
			await self._end()

	# -- lifecycle --

	def _begin(self, plan: Plan, state: LoopState) -> LoopState:
		self._run_started = True
		if self.events is not None:
			self.events.open()
		state = self._reconcile(plan, state)
		plan.status = IN_PROGRESS
		self.store.save(plan)
		self._write_runtime()
		self._emit("loop_started", details={"title": plan.title, "checkpoints": len(plan.checkpoints)})
		return state

	async def _end(self) -> None:
		if not self._run_started:
			return
		if self._active:
			await self._terminate_all(KILL_CANCELLED)
		await self.supervisor.cleanup()
		if self.runtime is not None:
			self.runtime.clear()
		if self.events is not None:
			self.events.close()
		self._run_started = False

	def _reconcile(self, plan: Plan, state: LoopState) -> LoopState:
		"""Reset in-progress checkpoints that have no live run back to pending."""
		orphans = [cp for cp in readiness.in_progress(plan) if cp.id not in self._active]
		if not orphans:
			return state
		for cp in orphans:
			logger.info("Reconciling orphaned checkpoint %s to pending", cp.id)
			reset_checkpoint(cp)
		self.store.save(plan)
		self._emit("reconciled", details={"checkpoints": [cp.id for cp in orphans]})
		return replace(state, reconciled=state.reconciled + len(orphans))

	async def _finish(self, plan: Plan, state: LoopState, status: str, reason: str = "") -> LoopResult:
		if status == STATUS_COMPLETE:
			plan.status = COMPLETE
		elif status == STATUS_STUCK:
			plan.status = STUCK
		plan.completed_summary = completed_summary(plan) or None
		self.store.save(plan)

		logger.info("Loop finished: %s%s", status, f" ({reason})" if reason else "")
		result = self._result(plan, state, status, reason)
		self._emit(
			"loop_finished",
			details={"status": status, "reason": reason, "unresolved": result.unresolved},
			input_tokens=state.input_tokens,
			output_tokens=state.output_tokens,
			cost_usd=state.cost_usd,
		)
		if status == STATUS_COMPLETE and self.config.scheduler.archive_on_complete:
			self.store.archive("complete")
		return result

	def _result(self, plan: Plan | None, state: LoopState, status: str, reason: str = "") -> LoopResult:
		return LoopResult(
			status=status,
			iterations=state.iteration,
			cost_usd=state.cost_usd,
			input_tokens=state.input_tokens,
			output_tokens=state.output_tokens,
			elapsed_seconds=self._clock() - state.started_at,
			completed=state.completed,
			skipped=state.skipped,
			unresolved=[cp.id for cp in plan.checkpoints if cp.status != DONE] if plan else [],
			recent_signs=recent_signs(plan, self.config.scheduler.max_signs_in_prompt) if plan else [],
			reason=reason,
		)

	def _error(self, state: LoopState, message: str) -> LoopResult:
		logger.error("Loop aborted: %s", message)
		self._emit("loop_error", details={"error": message})
		return self._result(None, state, STATUS_ERROR, message)

	async def _cancel_active(self, state: LoopState) -> LoopResult:
		cancelled_ids = list(self._active)
		await self._terminate_all(KILL_CANCELLED)
		plan: Plan | None = None
		try:
			plan = self.store.load()
			for cp_id in cancelled_ids:
				cp = plan.checkpoint(cp_id)
				if cp is not None and cp.status == IN_PROGRESS:
					reset_checkpoint(cp)
			plan.status = PENDING
			self.store.save(plan)
		except PlanError as exc:
			logger.warning("Could not reset plan after cancel: %s", exc)
		self._emit("loop_cancelled", details={"checkpoints": cancelled_ids})
		return self._result(plan, state, STATUS_ERROR, "cancelled")

	async def _terminate_all(self, reason: str) -> None:
		for cp_id, run in list(self._active.items()):
			try:
				await self.supervisor.terminate(run, reason)
			except WorkerKillError as exc:
				logger.error("%s", exc)
			self._active.pop(cp_id, None)
		self._write_runtime()

	# -- per tick --

	async def _poll_active(self) -> list[tuple[WorkerRun, PollResult]]:
		"""Poll every active run against a single scan of the source tree."""
		runs = list(self._active.values())
		if not runs:
			return []
		mtime = self.supervisor.scan()
		polled: list[tuple[WorkerRun, PollResult]] = []
		for run in runs:
			try:
				result = await self.supervisor.poll(run, latest_mtime=mtime)
			except WorkerKillError as exc:
				logger.error("%s", exc)
				result = Killed(KILL_FAILED)
			polled.append((run, result))
		return polled

	async def _wait(self, run: WorkerRun) -> PollResult | None:
		"""Poll a single run until it ends. Returns None if cancelled first."""
		while True:
			try:
				result = await self.supervisor.poll(run)
			except WorkerKillError as exc:
				logger.error("%s", exc)
				result = Killed(KILL_FAILED)
			if not isinstance(result, Alive):
				return result
			await self._sleep()
			if self.cancelled:
				return None

	async def _fill_slots(self, plan: Plan, state: LoopState, slots: int) -> tuple[Plan, LoopState]:
		max_failures = self.config.scheduler.max_failures
		for checkpoint in readiness.ready(plan):
			if len(self._active) >= slots or self._budget_exhausted(state):
				break
			if checkpoint.id in self._active:
				continue
			if should_skip(plan, checkpoint.id, max_failures):
				state = self._skip(plan, checkpoint, state)
				continue
			plan, state = await self._start(plan, checkpoint, state)
		return plan, state

	def _skip(self, plan: Plan, checkpoint: Checkpoint, state: LoopState) -> LoopState:
		skip_checkpoint(plan, checkpoint.id, state.iteration, self.config.scheduler.max_failures)
		self.store.save(plan)
		self._emit("checkpoint_skipped", checkpoint_id=checkpoint.id, iteration=state.iteration)
		return replace(state, skipped=state.skipped + 1)

	async def _start(self, plan: Plan, checkpoint: Checkpoint, state: LoopState) -> tuple[Plan, LoopState]:
		"""Mark *checkpoint* in progress and spawn its worker."""
		state = replace(state, iteration=state.iteration + 1)
		iteration = state.iteration
		stamp_started(checkpoint)
		self.store.save(plan)

		instructions = build_instructions(
			plan, checkpoint,
			max_signs=self.config.scheduler.max_signs_in_prompt,
			plan_file=self.config.target.plan_file,
		)
		try:
			run = await self.supervisor.spawn(checkpoint, instructions, iteration)
		except WorkerSpawnError as exc:
			logger.error("%s", exc, extra={"checkpoint_id": checkpoint.id, "iteration": iteration})
			record_sign(
				plan, checkpoint.id, iteration,
				issue=str(exc),
				fix="Check worker.command and that the executable is installed",
			)
			reset_checkpoint(checkpoint)
			self.store.save(plan)
			self._emit("spawn_failed", checkpoint_id=checkpoint.id, iteration=iteration, details={"error": str(exc)})
			return plan, replace(state, failed_attempts=state.failed_attempts + 1)

		self._active[checkpoint.id] = run
		self._write_runtime()
		self._emit(
			"worker_spawned",
			checkpoint_id=checkpoint.id,
			run_id=run.run_id,
			iteration=iteration,
			details={"pid": run.pid, "log": str(run.log_path)},
		)
		return plan, state

	async def _collect(self, finished: list[tuple[WorkerRun, PollResult]], state: LoopState) -> LoopState:
		"""Apply finished runs to a freshly loaded plan, then commit completions."""
		plan = self.store.load()
		to_commit: list[Checkpoint] = []
		for run, result in finished:
			if isinstance(result, Killed) and result.reason == KILL_FAILED:
				state = self._kill_failed(plan, run, state)
				continue
			self._active.pop(run.checkpoint_id, None)
			state, committed = await self._apply_outcome(plan, run, result, state)
			if committed is not None:
				to_commit.append(committed)
		self.store.save(plan)
		self._write_runtime()

		if self.config.scheduler.auto_commit:
			for cp in to_commit:
				await commit_checkpoint(self.root, cp)
		return state

	def _kill_failed(self, plan: Plan, run: WorkerRun, state: LoopState) -> LoopState:
		"""Count a failed kill as a failed attempt.

		The run keeps its slot and its checkpoint stays in progress while the
		process may still be alive; the kill is retried on the next poll. Once
		the checkpoint reaches the failure limit the run is abandoned and the
		checkpoint skipped, so it is never respawned next to the survivor.
		"""
		cp_id = run.checkpoint_id
		state = replace(state, failed_attempts=state.failed_attempts + 1)
		self._emit("kill_failed", checkpoint_id=cp_id, run_id=run.run_id, iteration=run.iteration, details={"pid": run.pid})
		cp = plan.checkpoint(cp_id)
		if cp is None or cp.status == DONE:
			self._active.pop(cp_id, None)
			return state

		record_sign(
			plan, cp_id, run.iteration,
			issue=f"Worker could not be killed (pid {run.pid})",
			fix="Stop the worker process by hand and check its permissions",
		)
		max_failures = self.config.scheduler.max_failures
		if should_skip(plan, cp_id, max_failures):
			logger.error(
				"Abandoning worker for %s (pid %s), it may still be running",
				cp_id, run.pid, extra={"checkpoint_id": cp_id, "run_id": run.run_id},
			)
			self._active.pop(cp_id, None)
			skip_checkpoint(plan, cp_id, state.iteration, max_failures)
			state = replace(state, skipped=state.skipped + 1)
		return state

	async def _apply_outcome(
		self, plan: Plan, run: WorkerRun, result: PollResult, state: LoopState,
	) -> tuple[LoopState, Checkpoint | None]:
		killed_reason = result.reason if isinstance(result, Killed) else None
		exit_code = result.exit_code if isinstance(result, Completed) else None
		outcome = classify_log(run.log_path, exit_code=exit_code, killed_reason=killed_reason)
		state = state.add_cost(outcome.cost)
		cp_id = run.checkpoint_id
		log_extra = {"checkpoint_id": cp_id, "run_id": run.run_id, "iteration": run.iteration}
		self._emit_outcome(run, outcome)

		cp = plan.checkpoint(cp_id)
		if cp is None:
			logger.warning("Checkpoint %s vanished from the plan while running", cp_id, extra=log_extra)
			return state, None
		if cp.status == DONE:
			logger.info("Checkpoint %s was marked done outside the loop", cp_id, extra=log_extra)
			return state, None

		if outcome.tool_calls:
			logger.info("Worker for %s made %d tool calls", cp_id, outcome.tool_calls, extra=log_extra)

		if outcome.killed:
			record_sign(
				plan, cp_id, run.iteration,
				issue=f"Worker killed ({outcome.killed_reason}) before finishing",
				fix=SMALLER_SCOPE_FIX,
				severity="warning",
			)
			reset_checkpoint(cp)
			return replace(state, kills=state.kills + 1), None

		if outcome.blocked_reason is not None:
			record_sign(plan, cp_id, run.iteration, issue=outcome.blocked_reason, fix=BLOCKED_FIX)
			reset_checkpoint(cp)
			return replace(state, failed_attempts=state.failed_attempts + 1), None

		if not outcome.succeeded:
			record_sign(
				plan, cp_id, run.iteration,
				issue=outcome.diagnostic or "Worker failed without a diagnostic",
				fix=f"Inspect the worker log at {run.log_path}",
			)
			reset_checkpoint(cp)
			return replace(state, failed_attempts=state.failed_attempts + 1), None

		if not outcome.checkpoint_complete:
			logger.info("Worker for %s ended without completing it, will continue", cp_id, extra=log_extra)
			reset_checkpoint(cp)
			return state, None

		if self.config.scheduler.run_gates and cp.gates:
			with Timer() as timer:
				results = await run_gates(parse_gates(cp.gates), self.root, self.config.scheduler.gate_timeout)
			failed = first_failure(results)
			logger.info("Gates for %s ran in %.1fs", cp_id, timer.elapsed, extra=log_extra)
			if failed is not None:
				tail = failed.output.strip()[-500:]
				record_sign(
					plan, cp_id, run.iteration,
					issue=f"Gate failed (exit {failed.returncode}): {failed.gate.raw}\n{tail}".rstrip(),
					fix="Make this gate pass before reporting completion",
				)
				reset_checkpoint(cp)
				return replace(state, failed_attempts=state.failed_attempts + 1), None

		cp.status = DONE
		cp.completed = _now_iso()
		plan.completed_summary = completed_summary(plan)
		logger.info("Checkpoint %s done", cp_id, extra=log_extra)
		self._emit("checkpoint_done", checkpoint_id=cp_id, run_id=run.run_id, iteration=run.iteration)
		return replace(state, completed=state.completed + 1), cp

	# -- helpers --

	def _budget_exhausted(self, state: LoopState) -> bool:
		return bool(self._budget_reason(state))

	def _budget_reason(self, state: LoopState) -> str:
		sc = self.config.scheduler
		if state.iteration >= sc.max_iterations:
			return f"iteration limit {sc.max_iterations} reached"
		if sc.max_wall_time_seconds > 0 and self._clock() - state.started_at >= sc.max_wall_time_seconds:
			return f"wall time limit {sc.max_wall_time_seconds}s reached"
		if sc.max_cost_usd > 0 and state.cost_usd >= sc.max_cost_usd:
			return f"cost limit ${sc.max_cost_usd:.2f} reached"
		return ""

	def _stuck_reason(self, plan: Plan) -> str:
		failed = [cp.id for cp in plan.checkpoints if cp.status == FAILED]
		waiting = [cp.id for cp, _ in readiness.blocked(plan)]
		parts = []
		if failed:
			parts.append("failed: " + ", ".join(failed))
		if waiting:
			parts.append("blocked: " + ", ".join(waiting))
		return "; ".join(parts) or "no checkpoint can make progress"

	async def _sleep(self) -> None:
		try:
			await asyncio.wait_for(self._cancel_event.wait(), timeout=self.config.supervisor.poll_interval)
		except asyncio.TimeoutError:
			pass

	def _write_runtime(self) -> None:
		if self.runtime is None:
			return
		self.runtime.write(RuntimeInfo(
			controller_pid=os.getpid(),
			workers=[
				WorkerEntry(run_id=r.run_id, checkpoint_id=r.checkpoint_id, pid=r.pid, log_path=str(r.log_path))
				for r in self._active.values()
				if r.pid is not None
			],
		))

	def _emit(self, event_type: str, **kwargs: object) -> None:
		if self.events is not None:
			self.events.emit(event_type, **kwargs)  # type: ignore[arg-type]

	def _emit_outcome(self, run: WorkerRun, outcome: Outcome) -> None:
		self._emit(
			"worker_finished",
			checkpoint_id=run.checkpoint_id,
			run_id=run.run_id,
			iteration=run.iteration,
			details={
				"succeeded": outcome.succeeded,
				"complete": outcome.checkpoint_complete,
				"blocked": outcome.blocked_reason,
				"killed": outcome.killed_reason,
				"diagnostic": outcome.diagnostic,
				"tool_calls": outcome.tool_calls,
			},
			input_tokens=outcome.cost.input_tokens,
			output_tokens=outcome.cost.output_tokens,
			cost_usd=outcome.cost.cost_usd,
		)
