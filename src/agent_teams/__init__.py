"""Mission orchestration: goal decomposition, worker assignment, review and recovery."""

__version__ = "0.1.0"
