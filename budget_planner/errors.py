from __future__ import annotations


class ValidationError(ValueError):
    """Raised when a value or operation input is rejected at construction time."""


class NotFoundError(LookupError):
    pass


class ProjectionCancelled(Exception):
    pass
