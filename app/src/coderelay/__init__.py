"""Coderelay — durable sessions and streaming queries for CLI coding agents."""

__version__ = "0.1.0"
