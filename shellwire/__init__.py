"""Persistent interactive shell sessions with framed command execution."""

__version__ = "0.3.0"
