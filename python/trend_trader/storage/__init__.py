"""Storage layer for the trend-trader system.

Uses SQLite for the settled order journal.
"""

from .execution_store import ExecutionStore

__all__ = [
    "ExecutionStore",
]
