"""Stdio and streamable HTTP transports for Model Context Protocol servers."""

__version__ = "0.1.0"