"""User-facing CLI error types with actionable messages."""

from ..events import EventLevel


class CliUsageError(ValueError):
    """Base class for user-facing CLI configuration and usage errors."""


class MissingHubUrlError(CliUsageError):
    """Raised when no hub URL was configured."""

    def __init__(self) -> None:
        super().__init__(
            "Missing hub URL. Pass --hub, set BASTION_HUB_URL, or add hub_url to "
            "~/.config/bastion-runwatch/config.yaml."
        )


class InvalidLevelError(CliUsageError):
    """Raised when --level is not a known event level."""

    def __init__(self, value: str) -> None:
        allowed = "|".join(level.value for level in EventLevel)
        super().__init__(f"Invalid --level '{value}'. Allowed values: {allowed}.")
