"""ralph: run an autonomous coding agent until the backlog is done."""

__version__ = "1.2.0"
