"""Codex dispatch job for OrgX initiatives."""

__version__ = "0.1.0"
