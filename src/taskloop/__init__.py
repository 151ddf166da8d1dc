"""taskloop: run an autonomous coding agent over a task list, one task per iteration."""

__version__ = "0.1.0"
