"""Interpret a worker's terminal output.

Workers emit either one structured result object or a line-delimited stream
whose last ``result`` record is authoritative. ``parse_output`` resolves the
shape once into a tagged union; ``classify`` turns any shape into the single
``Outcome`` the rest of the system consumes.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from taskloop.models import WorkerResultSchema

logger = logging.getLogger(__name__)

COMPLETE_MARKER = "CHECKPOINT_COMPLETE"
BLOCKED_MARKER = "CHECKPOINT_BLOCKED"
_BLOCKED_RE = re.compile(rf"{BLOCKED_MARKER}:?[ \t]*(.*)", re.IGNORECASE)


@dataclass(frozen=True)
class CostMetrics:
	"""Additive usage telemetry for one or more runs."""

	input_tokens: int = 0
	output_tokens: int = 0
	cost_usd: float = 0.0

	def __add__(self, other: CostMetrics) -> CostMetrics:
		return CostMetrics(
			input_tokens=self.input_tokens + other.input_tokens,
			output_tokens=self.output_tokens + other.output_tokens,
			cost_usd=self.cost_usd + other.cost_usd,
		)


@dataclass(frozen=True)
class ToolInvocation:
	"""A tool call seen in stream output. Informational only."""

	name: str
	input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SingleResult:
	payload: WorkerResultSchema


@dataclass(frozen=True)
class StreamResult:
	payload: WorkerResultSchema
	tool_invocations: tuple[ToolInvocation, ...] = ()
	record_count: int = 0


@dataclass(frozen=True)
class NoResult:
	reason: str
	tool_invocations: tuple[ToolInvocation, ...] = ()


WorkerOutput = SingleResult | StreamResult | NoResult


@dataclass(frozen=True)
class Outcome:
	"""Classified result of one worker run."""

	succeeded: bool
	checkpoint_complete: bool
	blocked_reason: str | None = None
	killed_reason: str | None = None
	diagnostic: str = ""
	summary: str = ""
	cost: CostMetrics = field(default_factory=CostMetrics)
	tool_calls: int = 0

	@property
	def killed(self) -> bool:
		return self.killed_reason is not None


def _find_balanced(text: str, open_char: str = "{", close_char: str = "}") -> str | None:
	"""Find the first balanced substring between open_char and close_char."""
	start = text.find(open_char)
	if start == -1:
		return None
	depth = 0
	in_string = False
	escape = False
	for i in range(start, len(text)):
		ch = text[i]
		if escape:
			escape = False
			continue
		if ch == "\\":
			if in_string:
				escape = True
			continue
		if ch == '"':
			in_string = not in_string
			continue
		if in_string:
			continue
		if ch == open_char:
			depth += 1
		elif ch == close_char:
			depth -= 1
			if depth == 0:
				return text[start:i + 1]
	return None


def _json_records(text: str) -> list[dict[str, Any]]:
	records: list[dict[str, Any]] = []
	for raw_line in text.splitlines():
		line = raw_line.strip()
		if not (line.startswith("{") and line.endswith("}")):
			continue
		try:
			parsed = json.loads(line)
		except json.JSONDecodeError:
			continue
		if isinstance(parsed, dict):
			records.append(parsed)
	return records


def _tool_invocations(records: list[dict[str, Any]]) -> tuple[ToolInvocation, ...]:
	calls: list[ToolInvocation] = []
	for record in records:
		if record.get("type") != "assistant":
			continue
		message = record.get("message")
		content = message.get("content") if isinstance(message, dict) else None
		if not isinstance(content, list):
			continue
		for item in content:
			if isinstance(item, dict) and item.get("type") == "tool_use":
				tool_input = item.get("input")
				calls.append(ToolInvocation(
					name=str(item.get("name", "")),
					input=tool_input if isinstance(tool_input, dict) else {},
				))
	return tuple(calls)


def _validate(raw: dict[str, Any]) -> WorkerResultSchema | None:
	try:
		return WorkerResultSchema.model_validate(raw)
	except ValidationError as exc:
		logger.warning("Worker result failed schema validation: %s", exc)
		return None


def parse_output(text: str) -> WorkerOutput:
	"""Resolve raw worker output into one of the known shapes."""
	if not text or not text.strip():
		return NoResult("Worker produced no output")

	stripped = text.strip()
	records = _json_records(stripped)

	if len(records) > 1:
		tools = _tool_invocations(records)
		results = [r for r in records if r.get("type") == "result"]
		if not results:
			return NoResult("No result record found in stream output", tools)
		payload = _validate(results[-1])
		if payload is None:
			return NoResult("Stream result record does not match the result schema", tools)
		return StreamResult(payload=payload, tool_invocations=tools, record_count=len(records))

	candidate: Any = None
	try:
		candidate = json.loads(stripped)
	except json.JSONDecodeError:
		if records:
			candidate = records[0]
		else:
			# Combined stderr may surround the object with noise
			fragment = _find_balanced(stripped)
			if fragment:
				try:
					candidate = json.loads(fragment)
				except json.JSONDecodeError:
					candidate = None

	if not isinstance(candidate, dict):
		snippet = stripped[:200].replace("\n", " ")
		return NoResult(f"Unparsable worker output: {snippet}")
	payload = _validate(candidate)
	if payload is None:
		return NoResult("Worker result does not match the result schema")
	return SingleResult(payload=payload)


def extract_blocked_reason(text: str) -> str | None:
	"""Reason following the blocked marker, or None when the marker is absent."""
	match = _BLOCKED_RE.search(text or "")
	if match is None:
		return None
	reason = match.group(1).strip()
	return reason or "No reason given"


def has_complete_marker(text: str) -> bool:
	return COMPLETE_MARKER in (text or "").upper()


def classify(
	output: WorkerOutput,
	exit_code: int | None = None,
	killed_reason: str | None = None,
) -> Outcome:
	"""Classify a parsed worker output into an Outcome."""
	tools = output.tool_invocations if isinstance(output, (StreamResult, NoResult)) else ()
	payload = output.payload if isinstance(output, (SingleResult, StreamResult)) else None
	cost = CostMetrics()
	if payload is not None:
		cost = CostMetrics(
			input_tokens=payload.usage.input_tokens,
			output_tokens=payload.usage.output_tokens,
			cost_usd=payload.total_cost_usd,
		)

	if killed_reason is not None:
		return Outcome(
			succeeded=False,
			checkpoint_complete=False,
			killed_reason=killed_reason,
			diagnostic=f"Worker killed: {killed_reason}",
			cost=cost,
			tool_calls=len(tools),
		)

	if payload is None:
		assert isinstance(output, NoResult)
		diagnostic = output.reason
		if exit_code not in (None, 0):
			diagnostic += f" (exit code {exit_code})"
		return Outcome(
			succeeded=False,
			checkpoint_complete=False,
			diagnostic=diagnostic,
			tool_calls=len(tools),
		)

	text = payload.result
	succeeded = not payload.is_error and payload.subtype.lower() == "success"
	blocked_reason = extract_blocked_reason(text)
	complete = blocked_reason is None and has_complete_marker(text)

	diagnostic = ""
	if not succeeded:
		diagnostic = f"Worker reported {'error' if payload.is_error else 'status'} {payload.subtype or 'unknown'!r}"
		if text:
			diagnostic += f": {text[:300]}"

	return Outcome(
		succeeded=succeeded,
		checkpoint_complete=complete,
		blocked_reason=blocked_reason,
		diagnostic=diagnostic,
		summary=text[:500],
		cost=cost,
		tool_calls=len(tools),
	)


def classify_log(log_path: Path, exit_code: int | None = None, killed_reason: str | None = None) -> Outcome:
	"""Read a run's log file and classify it. A missing log counts as empty output."""
	try:
		text = log_path.read_text(encoding="utf-8", errors="replace")
	except FileNotFoundError:
		text = ""
	except OSError as exc:
		logger.warning("Failed to read worker log %s: %s", log_path, exc)
		text = ""
	return classify(parse_output(text), exit_code=exit_code, killed_reason=killed_reason)
