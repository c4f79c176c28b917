"""Cadence: task graphs, session hierarchies and crash-tolerant state for phased workflows."""

__version__ = "0.1.0"

__all__ = ["__version__"]
