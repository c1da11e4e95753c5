"""Version-control rollback points: one commit per completed checkpoint.

Every failure here is logged and swallowed. A project that is not a git
repository, has nothing to commit or rejects the commit still gets its
checkpoint marked done.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from taskloop.models import Checkpoint

logger = logging.getLogger(__name__)

COMMIT_PREFIX = "taskloop: checkpoint"


@dataclass(frozen=True)
class CheckpointCommit:
	sha: str
	checkpoint_id: str
	subject: str
	timestamp: str


def commit_message(checkpoint: Checkpoint) -> str:
	return f"{COMMIT_PREFIX} {checkpoint.id} - {checkpoint.description}"


async def _run_git(cwd: Path, *args: str) -> tuple[bool, str]:
	"""Run a git command in *cwd*."""
	try:
		proc = await asyncio.create_subprocess_exec(
			"git", *args,
			cwd=str(cwd),
			stdout=asyncio.subprocess.PIPE,
			stderr=asyncio.subprocess.STDOUT,
		)
	except OSError as exc:
		return (False, str(exc))
	stdout, _ = await proc.communicate()
	output = stdout.decode(errors="replace") if stdout else ""
	return (proc.returncode == 0, output)


async def commit_checkpoint(project_path: Path, checkpoint: Checkpoint) -> bool:
	"""Stage everything and commit. Returns True only if a commit was created."""
	ok, output = await _run_git(project_path, "add", "-A")
	if not ok:
		logger.debug("git add failed for %s: %s", checkpoint.id, output.strip())
		return False
	ok, output = await _run_git(project_path, "commit", "--no-verify", "-m", commit_message(checkpoint))
	if not ok:
		logger.debug("git commit skipped for %s: %s", checkpoint.id, output.strip())
		return False
	logger.info("Created rollback commit for checkpoint %s", checkpoint.id)
	return True


async def list_checkpoint_commits(project_path: Path, limit: int = 200) -> list[CheckpointCommit]:
	"""Checkpoint commits found in history, newest first."""
	ok, output = await _run_git(
		project_path, "log", f"-n{limit}", f"--grep={COMMIT_PREFIX}", "--fixed-strings",
		"--format=%H%x09%cI%x09%s",
	)
	if not ok:
		logger.debug("git log failed: %s", output.strip())
		return []

	commits: list[CheckpointCommit] = []
	for line in output.splitlines():
		parts = line.split("\t", 2)
		if len(parts) != 3:
			continue
		sha, timestamp, subject = parts
		if not subject.startswith(COMMIT_PREFIX):
			continue
		remainder = subject[len(COMMIT_PREFIX):].strip()
		checkpoint_id = remainder.split(" - ", 1)[0].strip()
		commits.append(CheckpointCommit(sha=sha, checkpoint_id=checkpoint_id, subject=subject, timestamp=timestamp))
	return commits
