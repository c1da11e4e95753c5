"""CLI interface for taskloop."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import tomllib
from dataclasses import asdict
from pathlib import Path
from typing import Any

from taskloop import readiness
from taskloop.config import (
	DEFAULT_CONFIG,
	ConfigError,
	LoopConfig,
	dumps_default_config,
	load_config_or_default,
	validate_config,
)
from taskloop.event_stream import EventStream, read_events
from taskloop.loop import STATUS_COMPLETE, LoopResult, Scheduler
from taskloop.metrics import format_duration, setup_logging
from taskloop.models import DONE, IN_PROGRESS, Checkpoint
from taskloop.plan_store import PlanError, PlanStore, reset_checkpoint
from taskloop.report import build_report, render_json, render_text
from taskloop.rollback import list_checkpoint_commits
from taskloop.runtime import RuntimeRegistry, _pid_alive, terminate_recorded
from taskloop.signs import format_signs, record_sign, signs_summary

EVENTS_FILE = "events.jsonl"
CONTROLLER_LOG = "taskloop.log"

_STATUS_ICONS = {"done": "+", "in-progress": ">", "pending": " ", "failed": "x"}


def build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(
		prog="taskloop",
		description="taskloop - run a checkpoint plan through autonomous workers",
	)
	sub = parser.add_subparsers(dest="command")

	# taskloop init
	init = sub.add_parser("init", help="Write a default taskloop.toml")
	init.add_argument("path", nargs="?", default=".")

	# taskloop new
	new = sub.add_parser("new", help="Create a plan from a JSON checkpoint list")
	new.add_argument("--config", default=DEFAULT_CONFIG)
	new.add_argument("--title", required=True)
	new.add_argument("--from", dest="source", required=True, help="JSON file with a list of checkpoints")
	new.add_argument("--force", action="store_true", help="Overwrite an existing plan")

	# taskloop add
	add = sub.add_parser("add", help="Add a checkpoint to the plan")
	add.add_argument("--config", default=DEFAULT_CONFIG)
	add.add_argument("id")
	add.add_argument("description")
	add.add_argument("--file", default=None)
	add.add_argument("--acceptance", default=None)
	add.add_argument("--gate", action="append", default=[], dest="gates")
	add.add_argument("--depends-on", action="append", default=[], dest="depends_on")
	add.add_argument(
		"--position", default="auto",
		help="auto, end, next, or the id of the checkpoint to insert after",
	)

	# taskloop status
	status = sub.add_parser("status", help="Show plan status")
	status.add_argument("--config", default=DEFAULT_CONFIG)
	status.add_argument("--json", action="store_true", dest="json_output")

	# taskloop run
	run = sub.add_parser("run", help="Run the plan until it completes or gets stuck")
	run.add_argument("--config", default=DEFAULT_CONFIG)
	mode = run.add_mutually_exclusive_group()
	mode.add_argument("--parallel", type=int, default=None, metavar="N", help="Max concurrent workers")
	mode.add_argument("--sequential", action="store_true", help="One checkpoint at a time")
	run.add_argument("--max-iterations", type=int, default=None)

	# taskloop sign
	sign = sub.add_parser("sign", help="Record a learning for future workers")
	sign.add_argument("--config", default=DEFAULT_CONFIG)
	sign.add_argument("issue")
	sign.add_argument("fix")
	sign.add_argument("--checkpoint", default=None)
	sign.add_argument("--severity", choices=["error", "warning", "info"], default="info")

	# taskloop cancel
	cancel = sub.add_parser("cancel", help="Stop a running loop and its workers")
	cancel.add_argument("--config", default=DEFAULT_CONFIG)
	cancel.add_argument("--keep-plan", action="store_true", help="Do not archive the plan")

	# taskloop review
	review = sub.add_parser("review", help="Post-run report")
	review.add_argument("--config", default=DEFAULT_CONFIG)
	review.add_argument("--json", action="store_true", dest="json_output")

	# taskloop validate
	validate = sub.add_parser("validate", help="Validate config and plan")
	validate.add_argument("--config", default=DEFAULT_CONFIG)

	return parser


def _load(args: argparse.Namespace) -> LoopConfig:
	return load_config_or_default(args.config)


def _store(config: LoopConfig) -> PlanStore:
	return PlanStore(config.target.resolved_path, config.target.plan_file)


def cmd_init(args: argparse.Namespace) -> int:
	"""Initialize a taskloop config."""
	target = Path(args.path).resolve()
	config_path = target / DEFAULT_CONFIG

	if config_path.exists():
		print(f"Config already exists: {config_path}")
		return 1

	target.mkdir(parents=True, exist_ok=True)
	config_path.write_text(dumps_default_config("."))
	print(f"Created {config_path}")
	return 0


def _read_checkpoint_source(path: Path) -> list[dict[str, Any]]:
	data = json.loads(path.read_text(encoding="utf-8"))
	if isinstance(data, dict):
		data = data.get("checkpoints", [])
	if not isinstance(data, list):
		raise ValueError("expected a JSON list of checkpoints")
	items: list[dict[str, Any]] = []
	for item in data:
		if isinstance(item, str):
			items.append({"description": item})
		elif isinstance(item, dict):
			items.append(item)
		else:
			raise ValueError(f"unsupported checkpoint entry: {item!r}")
	return items


def cmd_new(args: argparse.Namespace) -> int:
	"""Create a new plan."""
	config = _load(args)
	store = _store(config)
	if store.exists() and not args.force:
		print(f"Plan already exists: {store.path} (use --force to replace it)")
		return 1

	try:
		checkpoints = _read_checkpoint_source(Path(args.source))
	except (OSError, ValueError) as exc:
		print(f"Error: cannot read {args.source}: {exc}")
		return 1

	try:
		plan = store.create(args.title, checkpoints)
	except PlanError as exc:
		print(f"Error: {exc}")
		return 1
	print(f"Created plan {plan.title!r} with {len(plan.checkpoints)} checkpoints at {store.path}")
	return 0


def cmd_add(args: argparse.Namespace) -> int:
	"""Add a checkpoint."""
	config = _load(args)
	store = _store(config)
	try:
		checkpoint = Checkpoint(
			id=args.id,
			description=args.description,
			file=args.file,
			acceptance=args.acceptance,
			gates=args.gates,
			depends_on=args.depends_on,
		)
		plan = store.add_checkpoint(checkpoint, position=args.position)
	except (PlanError, ValueError) as exc:
		print(f"Error: {exc}")
		return 1
	print(f"Added {checkpoint.id} ({len(plan.checkpoints)} checkpoints)")
	return 0


def cmd_status(args: argparse.Namespace) -> int:
	"""Show current plan status."""
	config = _load(args)
	try:
		plan = _store(config).load()
	except PlanError as exc:
		print(f"Error: {exc}")
		return 1

	ready = [cp.id for cp in readiness.ready(plan)]
	blocked = {cp.id: deps for cp, deps in readiness.blocked(plan)}
	runtime = RuntimeRegistry(config.runtime_dir).read()
	running = runtime is not None and _pid_alive(runtime.controller_pid)

	if args.json_output:
		data = {
			"title": plan.title,
			"status": plan.status,
			"checkpoints": [cp.model_dump() for cp in plan.checkpoints],
			"ready": ready,
			"blocked": blocked,
			"signs": signs_summary(plan),
			"controller_running": running,
			"workers": [asdict(w) for w in runtime.workers] if runtime and running else [],
		}
		print(json.dumps(data, indent=2))
		return 0

	done = sum(1 for cp in plan.checkpoints if cp.status == DONE)
	print(f"Plan: {plan.title} [{plan.status}] {done}/{len(plan.checkpoints)} done")
	for cp in plan.checkpoints:
		icon = _STATUS_ICONS.get(cp.status, "?")
		deps = f" (after {', '.join(cp.depends_on)})" if cp.depends_on else ""
		print(f"  [{icon}] {cp.id}: {cp.description}{deps}")
	print(f"\nReady: {', '.join(ready) or '-'}")
	for cp_id, deps in blocked.items():
		print(f"Blocked: {cp_id} waiting on {', '.join(deps)}")
	if running and runtime is not None:
		print(f"\nLoop running (pid {runtime.controller_pid}) with {len(runtime.workers)} worker(s)")
	summary = signs_summary(plan)
	if summary["total"]:
		print(f"\nSigns: {summary['total']} ({summary['errors']} errors, {summary['warnings']} warnings)")
	return 0


def _print_result(result: LoopResult) -> None:
	print(f"\nStatus: {result.status}" + (f" ({result.reason})" if result.reason else ""))
	print(f"Iterations: {result.iterations}  Elapsed: {format_duration(result.elapsed_seconds)}")
	print(
		f"Cost: ${result.cost_usd:.2f}  Tokens: {result.input_tokens} in / {result.output_tokens} out"
	)
	if result.unresolved:
		print(f"Unresolved: {', '.join(result.unresolved)}")
	if result.recent_signs:
		print("\nRecent signs:")
		print(format_signs(result.recent_signs))


async def _run_scheduler(scheduler: Scheduler, sequential: bool) -> LoopResult:
	loop = asyncio.get_running_loop()
	for sig in (signal.SIGINT, signal.SIGTERM):
		loop.add_signal_handler(sig, scheduler.cancel)
	try:
		if sequential:
			return await scheduler.run_sequential()
		return await scheduler.run_parallel()
	finally:
		for sig in (signal.SIGINT, signal.SIGTERM):
			loop.remove_signal_handler(sig)


def cmd_run(args: argparse.Namespace) -> int:
	"""Run the plan."""
	config = _load(args)
	if args.parallel is not None:
		config.scheduler.max_parallel = args.parallel
	if args.max_iterations is not None:
		config.scheduler.max_iterations = args.max_iterations
	issues = validate_config(config)
	errors = [msg for lvl, msg in issues if lvl == "error"]
	for msg in errors:
		print(f"[ERROR] {msg}")
	if errors:
		return 1
	setup_logging(config.logging.level, config.logging.json_format, config.runtime_dir / CONTROLLER_LOG)

	registry = RuntimeRegistry(config.runtime_dir)
	existing = registry.read()
	if existing is not None and existing.controller_pid != os.getpid() and _pid_alive(existing.controller_pid):
		print(f"A loop is already running for this directory (pid {existing.controller_pid})")
		return 1

	events = EventStream(config.runtime_dir / EVENTS_FILE) if config.logging.event_stream else None
	scheduler = Scheduler(config, events=events, runtime=registry)
	result = asyncio.run(_run_scheduler(scheduler, args.sequential))
	_print_result(result)
	return 0 if result.status == STATUS_COMPLETE else 1


def cmd_sign(args: argparse.Namespace) -> int:
	"""Record a sign by hand."""
	config = _load(args)
	store = _store(config)
	try:
		plan = store.load()
		if args.checkpoint is not None:
			plan.require(args.checkpoint)
		record_sign(plan, args.checkpoint, iteration=0, issue=args.issue, fix=args.fix, severity=args.severity)
		store.save(plan)
	except (PlanError, KeyError) as exc:
		print(f"Error: {exc}")
		return 1
	print(f"Recorded sign ({len(plan.signs)} total)")
	return 0


def cmd_cancel(args: argparse.Namespace) -> int:
	"""Stop the running loop and every worker it started."""
	config = _load(args)
	store = _store(config)
	stopped = terminate_recorded(RuntimeRegistry(config.runtime_dir), config.supervisor.kill_grace_seconds)
	if stopped["controller"] or stopped["workers"]:
		print(f"Stopped controller {stopped['controller'] or '-'} and {len(stopped['workers'])} worker group(s)")
	else:
		print("No running loop found")

	if not store.exists():
		return 0
	try:
		plan = store.load()
		for cp in plan.checkpoints:
			if cp.status == IN_PROGRESS:
				reset_checkpoint(cp)
		store.save(plan)
		if not args.keep_plan:
			archived = store.archive("cancelled")
			print(f"Archived plan to {archived}")
	except PlanError as exc:
		print(f"Error: {exc}")
		return 1
	return 0


def cmd_review(args: argparse.Namespace) -> int:
	"""Show the post-run report."""
	config = _load(args)
	try:
		plan = _store(config).load()
	except PlanError as exc:
		print(f"Error: {exc}")
		return 1
	commits = asyncio.run(list_checkpoint_commits(config.target.resolved_path))
	events = read_events(config.runtime_dir / EVENTS_FILE)
	report = build_report(plan, commits, events)
	print(render_json(report) if args.json_output else render_text(report))
	return 0


def cmd_validate(args: argparse.Namespace) -> int:
	"""Validate config and plan."""
	config = _load(args)
	issues = validate_config(config)
	order: list[str] = []
	try:
		order = readiness.dependency_order(_store(config).load())
	except PlanError as exc:
		issues.append(("error", f"plan: {exc}"))

	errors = [(lvl, msg) for lvl, msg in issues if lvl == "error"]
	warnings = [(lvl, msg) for lvl, msg in issues if lvl == "warning"]

	for level, msg in issues:
		print(f"[{level.upper()}] {msg}")

	if not issues:
		print("Config and plan OK")
	if order:
		print("Run order: " + " -> ".join(order))

	print(f"\n{len(errors)} error(s), {len(warnings)} warning(s)")
	return 1 if errors else 0


COMMANDS = {
	"init": cmd_init,
	"new": cmd_new,
	"add": cmd_add,
	"status": cmd_status,
	"run": cmd_run,
	"sign": cmd_sign,
	"cancel": cmd_cancel,
	"review": cmd_review,
	"validate": cmd_validate,
}


def main(argv: list[str] | None = None) -> int:
	parser = build_parser()
	args = parser.parse_args(argv)

	if args.command is None:
		parser.print_help()
		return 0

	handler = COMMANDS.get(args.command)
	if handler is None:
		print(f"Unknown command: {args.command}")
		return 1

	try:
		return handler(args)
	except (ConfigError, tomllib.TOMLDecodeError) as exc:
		print(f"Error: invalid config {getattr(args, 'config', DEFAULT_CONFIG)}: {exc}")
		return 1


if __name__ == "__main__":
	sys.exit(main())
