"""Octoloop: orchestration core for an interactive coding-agent runtime."""

__version__ = "0.1.0"

__all__ = ["__version__"]
