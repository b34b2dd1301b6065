"""Dispatches development workflow stages to external workers and gates their output."""

__version__ = "0.1.0"
