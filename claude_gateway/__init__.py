"""OpenAI-compatible HTTP gateway for the Claude Code CLI."""

__version__ = "0.1.0"
