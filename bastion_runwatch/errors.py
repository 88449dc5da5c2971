"""Error types raised by bastion-runwatch."""

from __future__ import annotations

from typing import Any


class RunwatchError(Exception):
    """Base class for all bastion-runwatch errors."""


class ConfigError(RunwatchError, ValueError):
    """Raised when configuration values cannot be parsed."""


class MalformedEventError(RunwatchError, ValueError):
    """Raised when an event payload is missing required fields."""


class ApiError(RunwatchError):
    """Raised when the hub answers with an unexpected HTTP status."""

    def __init__(
        self,
        status: int,
        message: str,
        body: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.body = body
        self.request_id = request_id

    @property
    def code(self) -> str | None:
        """Machine-readable error code from the response body, if any."""
        if self.body and isinstance(self.body.get("error"), str):
            return self.body["error"]
        return None

    def __str__(self) -> str:
        if self.request_id:
            return f"{self.message} (HTTP {self.status}, request {self.request_id})"
        return f"{self.message} (HTTP {self.status})"
