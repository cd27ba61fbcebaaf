"""
Domain exceptions raised by the service layer.

Each carries the HTTP status it maps to; main.py registers a single handler
that turns them into {"detail": ...} responses.
"""

from typing import Any, Dict


class MomentumError(Exception):
    """Base class for every service-layer error."""

    http_status: int = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        return {"detail": self.message, "error": self.__class__.__name__}


class NotFoundError(MomentumError):
    http_status = 404


class InvalidStateError(MomentumError):
    """The record exists but is not in a state that allows the operation."""

    http_status = 400


class UnsubscribedError(MomentumError):
    http_status = 409


class RateLimitExceededError(MomentumError):
    http_status = 429
