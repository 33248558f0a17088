"""Resumable bulk object migration between storage backends."""

__version__ = "0.1.0"
