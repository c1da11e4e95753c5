"""taskloop: run a checkpoint plan through supervised autonomous workers."""
