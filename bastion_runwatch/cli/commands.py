"""Commands: watch, events, progress, version."""

from __future__ import annotations

import asyncio
import json
from typing import Annotated

import httpx
import typer
from rich.live import Live

from ..api import HubClient
from ..config import RunwatchConfig
from ..errors import ApiError, ConfigError, MalformedEventError
from ..events import EventLevel, filter_events, find_first_event_seq, is_terminal_status
from ..orchestrator import RunDetailOrchestrator, RunDetailView
from ..progress import ProgressSnapshot, derive_operation_progress, derive_progress
from ..stream import StreamState
from ..summary import SOURCE_CONSISTENCY_KIND, parse_run_summary
from .errors import CliUsageError, InvalidLevelError, MissingHubUrlError
from .formatting import (
    _get_version,
    _markup,
    render_detail,
    render_events_table,
    render_operation_progress,
    render_progress,
    render_summary,
)
from .state import LOG_LEVELS, app, configure_logging, console
from .theme import THEME

HubOption = Annotated[
    str | None,
    typer.Option("--hub", help="Hub base URL (env: BASTION_HUB_URL)"),
]
SessionOption = Annotated[
    str | None,
    typer.Option("--session", help="Hub session cookie value (env: BASTION_SESSION)"),
]
ConfigOption = Annotated[
    str | None,
    typer.Option("--config", help="Path to a runwatch YAML config file"),
]
LogLevelOption = Annotated[
    str,
    typer.Option("--log-level", help=f"Logging level: {'|'.join(LOG_LEVELS)}"),
]
OperationOption = Annotated[
    bool,
    typer.Option("--operation", "-o", help="Treat the id as a restore/verify operation"),
]

RECOVERABLE = (ApiError, httpx.HTTPError, ConfigError, MalformedEventError, CliUsageError)


def _load_config(config_path: str | None, hub: str | None, session: str | None) -> RunwatchConfig:
    config = RunwatchConfig.load(config_path=config_path, hub_url=hub, session_token=session)
    if not config.hub_url:
        raise MissingHubUrlError()
    return config


def _validate_level(level: str | None) -> str | None:
    if level is None:
        return None
    normalized = level.strip().lower()
    if normalized not in {lvl.value for lvl in EventLevel}:
        raise InvalidLevelError(level)
    return normalized


def _fail(exc: Exception) -> typer.Exit:
    console.print(_markup(str(exc), THEME.error))
    return typer.Exit(1)


def watch_finished(view: RunDetailView) -> bool:
    """True once nothing else can change: terminal status, no poll, no feed."""
    if view.polling:
        return False
    if view.status is None:
        # polling gave up before any status arrived
        return True
    if not view.status.is_terminal:
        return False
    return view.connection is StreamState.DISCONNECTED


async def _watch(
    target_id: str,
    *,
    config: RunwatchConfig,
    operation: bool,
    tail: int,
    level: str | None,
    kind: str | None,
    query: str | None,
) -> RunDetailView:
    async with HubClient.from_config(config) as client:
        orchestrator = RunDetailOrchestrator(client, config=config)
        orchestrator.set_filters(query=query, level=level, kind=kind)
        with Live(
            render_detail(orchestrator.view(), tail=tail),
            console=console,
            refresh_per_second=4,
            transient=False,
        ) as live:
            unsubscribe = orchestrator.subscribe(
                lambda orch: live.update(render_detail(orch.view(), tail=tail))
            )
            try:
                if operation:
                    await orchestrator.open_operation(target_id)
                else:
                    await orchestrator.open(target_id)
                while True:
                    view = orchestrator.view()
                    live.update(render_detail(view, tail=tail))
                    if watch_finished(view):
                        return view
                    await asyncio.sleep(0.25)
            finally:
                unsubscribe()
                await orchestrator.close()


@app.command()
def watch(
    target_id: Annotated[str, typer.Argument(help="Run id (or operation id with --operation)")],
    operation: OperationOption = False,
    tail: Annotated[int, typer.Option("--tail", "-n", help="Events to keep on screen")] = 20,
    level: Annotated[str | None, typer.Option("--level", help="Only show this level")] = None,
    kind: Annotated[str | None, typer.Option("--kind", help="Only show this event kind")] = None,
    query: Annotated[str | None, typer.Option("--query", "-q", help="Text filter")] = None,
    hub: HubOption = None,
    session: SessionOption = None,
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "warning",
) -> None:
    """Follow a run or operation live until it finishes."""
    configure_logging(log_level)
    try:
        config = _load_config(config_path, hub, session)
        level = _validate_level(level)
        view = asyncio.run(
            _watch(
                target_id,
                config=config,
                operation=operation,
                tail=tail,
                level=level,
                kind=kind,
                query=query,
            )
        )
    except KeyboardInterrupt:
        console.print(_markup("Stopped watching", THEME.muted))
        raise typer.Exit(130)
    except (*RECOVERABLE, FileNotFoundError) as exc:
        raise _fail(exc) from exc

    if view.status is None:
        console.print(_markup(f"Could not load status for {target_id}", THEME.error))
        raise typer.Exit(1)
    if view.status.status != "success":
        raise typer.Exit(1)


async def _fetch_events(client: HubClient, target_id: str, operation: bool):
    if operation:
        return await client.list_operation_events(target_id)
    return await client.list_run_events(target_id)


@app.command()
def events(
    target_id: Annotated[str, typer.Argument(help="Run id (or operation id with --operation)")],
    operation: OperationOption = False,
    level: Annotated[str | None, typer.Option("--level", help="Only show this level")] = None,
    kind: Annotated[str | None, typer.Option("--kind", help="Only show this event kind")] = None,
    query: Annotated[str | None, typer.Option("--query", "-q", help="Text filter")] = None,
    as_json: Annotated[bool, typer.Option("--json", help="Print events as JSON lines")] = False,
    hub: HubOption = None,
    session: SessionOption = None,
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "warning",
) -> None:
    """Print the recorded event history of a run or operation."""
    configure_logging(log_level)

    async def _run():
        async with HubClient.from_config(config) as client:
            return await _fetch_events(client, target_id, operation)

    try:
        config = _load_config(config_path, hub, session)
        level = _validate_level(level)
        history = asyncio.run(_run())
    except (*RECOVERABLE, FileNotFoundError) as exc:
        raise _fail(exc) from exc

    shown = filter_events(history, query=query, level=level, kind=kind)
    if as_json:
        for event in shown:
            console.print_json(json.dumps(event.to_dict()))
        return
    if not shown:
        console.print("[dim]No matching events[/dim]")
        return
    console.print(render_events_table(shown, title=f"{target_id} ({len(shown)}/{len(history)})"))


@app.command()
def progress(
    target_id: Annotated[str, typer.Argument(help="Run id (or operation id with --operation)")],
    operation: OperationOption = False,
    hub: HubOption = None,
    session: SessionOption = None,
    config_path: ConfigOption = None,
    log_level: LogLevelOption = "warning",
) -> None:
    """Show the current progress summary of a run or operation."""
    configure_logging(log_level)

    async def _run():
        async with HubClient.from_config(config) as client:
            if operation:
                status = await client.get_operation(target_id)
            else:
                status = await client.get_run(target_id)
            history = await _fetch_events(client, target_id, operation)
            return status, history

    try:
        config = _load_config(config_path, hub, session)
        status, history = asyncio.run(_run())
    except (*RECOVERABLE, FileNotFoundError) as exc:
        raise _fail(exc) from exc

    snapshot = ProgressSnapshot.from_dict(status.progress)
    color = THEME.success if status.status == "success" else (
        THEME.error if is_terminal_status(status.status) else THEME.accent
    )
    console.print(f"{_markup(target_id, THEME.accent)}  {_markup(status.status, color)}")
    if operation:
        console.print(
            render_operation_progress(
                derive_operation_progress(
                    snapshot,
                    history,
                    status=status.status,
                    started_at=status.started_at,
                    ended_at=status.ended_at,
                )
            )
        )
    else:
        console.print(
            render_progress(
                derive_progress(
                    snapshot,
                    history,
                    run_status=status.status,
                    run_started_at=status.started_at,
                    run_ended_at=status.ended_at,
                )
            )
        )
        summary_panel = render_summary(
            parse_run_summary(status.extra.get("summary")),
            first_consistency_seq=find_first_event_seq(
                history, lambda event: event.kind == SOURCE_CONSISTENCY_KIND
            ),
        )
        if summary_panel is not None:
            console.print(summary_panel)
    if status.error:
        console.print(_markup(status.error, THEME.error))


@app.command()
def version() -> None:
    """Print the installed version."""
    console.print(f"bastion-runwatch {_get_version()}")
