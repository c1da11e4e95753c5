"""Checkpoint gates: verification steps attached to a checkpoint.

A gate string is either a command (``cmd:`` prefix or no prefix) that is run
in the project directory after the worker reports completion, or a manual
gate (``judge:``, ``chrome:``, ``repl:``) that is only shown to the worker as
part of its instructions.
"""

from __future__ import annotations

import asyncio
import logging
import shlex
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

COMMAND = "cmd"
MANUAL_KINDS = ("judge", "chrome", "repl")


@dataclass(frozen=True)
class Gate:
	kind: str
	body: str
	raw: str

	@property
	def runnable(self) -> bool:
		return self.kind == COMMAND


@dataclass(frozen=True)
class GateResult:
	gate: Gate
	passed: bool
	returncode: int
	output: str = ""


def parse_gate(raw: str) -> Gate:
	text = raw.strip()
	prefix, sep, rest = text.partition(":")
	kind = prefix.strip().lower()
	if sep and kind in MANUAL_KINDS + (COMMAND,):
		return Gate(kind=kind, body=rest.strip(), raw=text)
	return Gate(kind=COMMAND, body=text, raw=text)


def parse_gates(raw_gates: list[str]) -> list[Gate]:
	return [parse_gate(g) for g in raw_gates if g and g.strip()]


async def _run_command(cmd: str, cwd: Path, timeout: int) -> tuple[int, str]:
	"""Run one command and capture combined output."""
	try:
		argv = shlex.split(cmd)
	except ValueError as exc:
		return -1, f"Invalid command {cmd!r}: {exc}"
	try:
		proc = await asyncio.create_subprocess_exec(
			*argv,
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
			cwd=str(cwd),
		)
	except (FileNotFoundError, PermissionError):
		return -1, f"Command not found: {cmd}"
	try:
		stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
	except asyncio.TimeoutError:
		try:
			proc.kill()
			await proc.wait()
		except ProcessLookupError:
			pass
		return -1, f"Command timed out after {timeout}s"
	return proc.returncode if proc.returncode is not None else -1, stdout.decode("utf-8", errors="replace")


async def run_gates(gates: list[Gate], cwd: Path, timeout: int = 300) -> list[GateResult]:
	"""Run every command gate in order, stopping at the first failure.

	Manual gates are not executed and produce no result.
	"""
	results: list[GateResult] = []
	for gate in gates:
		if not gate.runnable:
			logger.debug("Skipping manual gate %s", gate.raw)
			continue
		if not gate.body:
			continue
		returncode, output = await _run_command(gate.body, cwd, timeout)
		result = GateResult(gate=gate, passed=returncode == 0, returncode=returncode, output=output)
		results.append(result)
		if not result.passed:
			logger.info("Gate failed (rc=%d): %s", returncode, gate.body)
			break
		logger.info("Gate passed: %s", gate.body)
	return results


def first_failure(results: list[GateResult]) -> GateResult | None:
	for result in results:
		if not result.passed:
			return result
	return None
