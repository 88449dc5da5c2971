"""CLI package for bastion-runwatch."""

from .errors import CliUsageError, InvalidLevelError, MissingHubUrlError
from .state import app

# Import subcommand modules so their @app.command() decorators register
from . import commands as _commands  # noqa: F401


def cli() -> None:
    """CLI entrypoint."""
    app(prog_name="bastion-runwatch")


__all__ = [
    "CliUsageError",
    "InvalidLevelError",
    "MissingHubUrlError",
    "app",
    "cli",
]


if __name__ == "__main__":
    cli()
