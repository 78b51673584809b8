"""Task coordination: routing, assignment, lifecycle and deadline escalation."""
