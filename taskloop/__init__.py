"""taskloop: a ReAct task-execution engine over pluggable model providers."""

__version__ = "0.2.0"
