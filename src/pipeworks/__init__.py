"""Filesystem-backed multi-agent work pipeline."""

__version__ = "0.3.0"
