"""Task coordination and deadline escalation engine."""

__version__ = "0.1.0"
