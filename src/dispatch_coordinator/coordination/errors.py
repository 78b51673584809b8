"""Error taxonomy for coordination operations."""

from __future__ import annotations


class CoordinationError(RuntimeError):
    """Base class for rejected coordination operations."""


class RoutingFailure(CoordinationError):
    """Router timed out, was cancelled, or returned output of the wrong shape."""


class AuthorizationError(CoordinationError):
    """Actor is not allowed to perform the operation on this task."""


class NotFoundError(CoordinationError):
    """Unknown task or executor id."""


class InvalidStateError(CoordinationError):
    """Operation not allowed from the task's current status."""
