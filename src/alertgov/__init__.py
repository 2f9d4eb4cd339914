"""Alert governance and adaptive suppression engine."""

__version__ = "0.1.0"
