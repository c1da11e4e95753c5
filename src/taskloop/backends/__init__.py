"""Worker execution backends for taskloop."""

from __future__ import annotations

from taskloop.backends.base import WorkerBackend, WorkerHandle
from taskloop.backends.local import LocalBackend

__all__ = [
	"LocalBackend",
	"WorkerBackend",
	"WorkerHandle",
]
