"""Shared CLI state: console, app, logging setup."""

from __future__ import annotations

import logging

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler

# Pick up BASTION_* variables from a local .env before options are resolved
load_dotenv()

# Rich console for all output
console = Console()

LOG_LEVELS = ("debug", "info", "warning", "error")

# Typer app
app = typer.Typer(
    name="bastion-runwatch",
    help="Follow Bastion backup runs and restore operations from the terminal.",
    epilog=(
        "Examples:\n"
        "  bastion-runwatch watch run_123\n"
        "  bastion-runwatch watch op_456 --operation\n"
        "  bastion-runwatch events run_123 --level error\n"
        "  bastion-runwatch progress run_123 --hub https://hub.example.com"
    ),
    add_completion=False,
)


def configure_logging(level: str) -> None:
    """Route library logging through a RichHandler at ``level``."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False, rich_tracebacks=True)],
        force=True,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))
