"""File-change-triggered task runner.

This package watches glob-selected files, batches bursts of changes per target
and runs the target's tasks, interrupting or queueing work as new changes
arrive.
"""

__version__ = "0.1.0"
