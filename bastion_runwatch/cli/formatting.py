"""Rendering helpers for run details, progress and event tables."""

from __future__ import annotations

import importlib.metadata
from datetime import datetime, timezone

from rich.console import Group, RenderableType
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..events import Event
from ..follow import DisabledReason, FollowState
from ..orchestrator import RunDetailView
from ..progress import (
    OperationProgressView,
    ProgressView,
    format_bytes,
    format_duration,
    format_rate,
    round_percent,
)
from ..stream import StreamState
from ..summary import SOURCE_CONSISTENCY_KIND, RunSummary
from .theme import THEME

BAR_WIDTH = 40

STATUS_COLORS = {
    "queued": THEME.muted,
    "running": THEME.accent,
    "success": THEME.success,
    "failed": THEME.error,
    "rejected": THEME.error,
}

LEVEL_COLORS = {
    "debug": THEME.debug,
    "info": THEME.primary,
    "warn": THEME.warning,
    "error": THEME.error,
}

CONNECTION_COLORS = {
    StreamState.LIVE: THEME.success,
    StreamState.CONNECTING: THEME.secondary,
    StreamState.RECONNECTING: THEME.warning,
    StreamState.ERROR: THEME.error,
    StreamState.DISCONNECTED: THEME.muted,
}

STEP_MARKS = {"finish": "✔", "process": "●", "error": "✖", "wait": "○"}


def _markup(text: str, color: str) -> str:
    """Wrap text in Rich markup with the given color, escaping special chars."""
    return f"[{color}]{escape(text)}[/{color}]"


def _get_version() -> str:
    """Return the installed package version or 'dev' if not installed."""
    try:
        return importlib.metadata.version("bastion-runwatch")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def format_timestamp(ts: int | None) -> str:
    """Format an epoch-seconds timestamp as UTC wall-clock time."""
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def connection_label(state: StreamState, countdown: int | None = None) -> str:
    if state is StreamState.RECONNECTING and countdown is not None:
        return f"reconnecting in {countdown}s"
    return state.value


def follow_label(state: FollowState) -> str:
    """Footer text for follow mode, including the unseen-events badge."""
    if state.enabled:
        return "following latest"
    label = "paused" if state.disabled_reason is DisabledReason.MANUAL else "scrolled away"
    if state.unseen_count:
        noun = "event" if state.unseen_count == 1 else "events"
        return f"{label} · {state.unseen_count} new {noun}"
    return label


def progress_bar(percent: float | None, width: int = BAR_WIDTH, failed: bool = False) -> Text:
    """Block bar for a 0..100 percentage; dim when unknown."""
    bar = Text()
    if percent is None:
        bar.append("░" * width, style="dim")
        return bar
    filled = int(width * max(0.0, min(100.0, percent)) / 100.0)
    bar.append("█" * filled, style=THEME.error if failed else THEME.success)
    bar.append("░" * (width - filled), style="dim")
    return bar


def render_events_table(events: list[Event], *, title: str | None = None) -> Table:
    table = Table(title=title, border_style=THEME.border, expand=True)
    table.add_column("seq", justify="right", style=THEME.muted, no_wrap=True)
    table.add_column("time", style=THEME.muted, no_wrap=True)
    table.add_column("level", no_wrap=True)
    table.add_column("kind", style=THEME.secondary, no_wrap=True)
    table.add_column("message", style=THEME.primary)
    for event in events:
        color = LEVEL_COLORS.get(event.level, THEME.primary)
        table.add_row(
            str(event.sequence),
            format_timestamp(event.timestamp),
            _markup(event.level, color),
            escape(event.kind),
            escape(event.message),
        )
    return table


def render_progress(view: ProgressView) -> Panel:
    """Overall bar, optional stage bar, step indicator and timing lines."""
    failed = view.failure_stage is not None
    lines: list[RenderableType] = []

    overall = Text("overall ", style=f"bold {THEME.accent}")
    overall.append_text(progress_bar(view.overall_percent, failed=failed))
    pct = view.overall_percent_display
    overall.append(f" {pct}%" if pct is not None else " -")
    lines.append(overall)

    if view.show_stage_bar and view.display_stage:
        stage_line = Text(f"{view.display_stage:<8}", style=THEME.secondary)
        stage_line.append_text(progress_bar(view.current_stage_percent, failed=failed))
        stage_pct = round_percent(view.current_stage_percent)
        stage_line.append(f" {stage_pct}%" if stage_pct is not None else " -")
        lines.append(stage_line)

    steps = Text()
    for i, step in enumerate(view.steps):
        if i:
            steps.append("  ─  ", style="dim")
        color = {
            "finish": THEME.success,
            "process": THEME.accent,
            "error": THEME.error,
        }.get(step.status, THEME.muted)
        steps.append(f"{STEP_MARKS.get(step.status, '○')} {step.stage}", style=color)
        duration = view.durations.get(step.stage)
        if duration is not None:
            steps.append(f" {format_duration(duration)}", style=THEME.muted)
    lines.append(steps)

    details = [f"total {format_duration(view.total_duration)}"]
    if view.rate_bps is not None:
        suffix = " avg" if view.rate_is_final else ""
        details.append(f"rate {format_rate(view.rate_bps)}{suffix}")
    if view.peak_rate_bps is not None:
        details.append(f"peak {format_rate(view.peak_rate_bps)}")
    if view.eta_seconds is not None:
        details.append(f"eta {format_duration(view.eta_seconds)}")
    if view.transfer_total_bytes is not None:
        details.append(
            f"uploaded {format_bytes(view.transfer_done_bytes)} / "
            f"{format_bytes(view.transfer_total_bytes)}"
        )
    if view.source_total is not None:
        details.append(
            f"source {view.source_total.files} files, {format_bytes(view.source_total.bytes)}"
        )
    if view.failure_stage:
        details.append(f"failed during {view.failure_stage}")
    lines.append(Text("  ".join(details), style=THEME.muted))

    return Panel(Group(*lines), title="Progress", border_style=THEME.border)


def render_operation_progress(view: OperationProgressView) -> Panel:
    line = Text(f"{view.stage or 'progress':<8} ", style=THEME.secondary)
    line.append_text(progress_bar(view.percent))
    pct = round_percent(view.percent)
    line.append(f" {pct}%" if pct is not None else " -")

    details: list[str] = []
    if view.done is not None:
        moved = format_bytes(view.done.bytes)
        if view.total is not None:
            moved += f" / {format_bytes(view.total.bytes)}"
        details.append(moved)
    if view.rate_bps is not None:
        details.append(f"rate {format_rate(view.rate_bps)}" + (" avg" if view.rate_is_final else ""))
    if view.eta_seconds is not None:
        details.append(f"eta {format_duration(view.eta_seconds)}")
    body = Group(line, Text("  ".join(details), style=THEME.muted)) if details else line
    return Panel(body, title="Progress", border_style=THEME.border)


def _count(value: int | float | None) -> str:
    if value is None:
        return "-"
    return str(int(value)) if float(value).is_integer() else f"{value:g}"


def render_summary(summary: RunSummary, *, first_consistency_seq: int | None = None) -> Panel | None:
    """Target, counters and the source consistency breakdown; None when empty."""
    lines: list[RenderableType] = []
    if summary.target_type or summary.target_location:
        lines.append(
            Text(f"target {summary.target_type or '-'}  {summary.target_location or ''}".rstrip())
        )
    counts = [
        f"{label} {_count(value)}"
        for label, value in (
            ("entries", summary.entries_count),
            ("parts", summary.parts_count),
            ("warnings", summary.warnings_total),
            ("errors", summary.errors_total),
        )
        if value is not None
    ]
    if counts:
        lines.append(Text("  ".join(counts), style=THEME.muted))
    if summary.sqlite_path:
        snapshot = f" ({summary.sqlite_snapshot_name})" if summary.sqlite_snapshot_name else ""
        lines.append(Text(f"sqlite {summary.sqlite_path}{snapshot}", style=THEME.muted))
    if summary.vaultwarden_data_dir:
        db = f" db {summary.vaultwarden_db}" if summary.vaultwarden_db else ""
        lines.append(Text(f"vaultwarden {summary.vaultwarden_data_dir}{db}", style=THEME.muted))

    report = summary.consistency
    if report is not None and report.total:
        lines.append(
            Text(
                f"source changed: {_count(report.total)} "
                f"(changed {_count(report.changed_total)}, replaced {_count(report.replaced_total)}, "
                f"deleted {_count(report.deleted_total)}, read errors {_count(report.read_error_total)})",
                style=THEME.warning,
            )
        )
        for sample in report.sample:
            line = Text(f"  {sample.path}", style=THEME.primary)
            line.append(f"  {sample.reason}", style=THEME.secondary)
            if sample.error:
                line.append(f"  {sample.error}", style=THEME.error)
            lines.append(line)
        if report.sample_truncated:
            lines.append(Text("  (sample truncated)", style="dim"))
        if first_consistency_seq is not None:
            lines.append(
                Text(
                    f"first {SOURCE_CONSISTENCY_KIND} event: #{first_consistency_seq} "
                    f"(--kind {SOURCE_CONSISTENCY_KIND})",
                    style=THEME.muted,
                )
            )

    if not lines:
        return None
    return Panel(Group(*lines), title="Summary", border_style=THEME.border)


def render_header(view: RunDetailView) -> Text:
    header = Text()
    header.append(f"{view.target_kind or 'run'} ", style=THEME.muted)
    header.append(view.target_id or "-", style=f"bold {THEME.accent}")
    status = view.status.status if view.status else "loading"
    header.append("  ")
    header.append(status, style=STATUS_COLORS.get(status, THEME.muted))
    if view.summary is not None and view.summary.source_changed:
        header.append(
            f"  source changed: {_count(view.summary.consistency_changed_total)}",
            style=f"bold {THEME.warning}",
        )
    if view.status and view.status.started_at is not None:
        header.append(f"  started {format_timestamp(view.status.started_at)}", style=THEME.muted)
    if view.target_kind != "operation":
        header.append("  feed: ", style=THEME.muted)
        header.append(
            connection_label(view.connection, view.reconnect_countdown),
            style=CONNECTION_COLORS.get(view.connection, THEME.muted),
        )
    return header


def render_detail(view: RunDetailView, *, tail: int = 20) -> Group:
    """Full watch screen: header, progress panel, recent events, footer."""
    parts: list[RenderableType] = [render_header(view)]
    if view.status and view.status.error:
        parts.append(Text(view.status.error, style=THEME.error))
    if view.backfill_error:
        parts.append(Text(f"event history unavailable: {view.backfill_error}", style=THEME.warning))
    if view.progress is not None:
        parts.append(render_progress(view.progress))
    elif view.operation_progress is not None:
        parts.append(render_operation_progress(view.operation_progress))
    if view.summary is not None:
        summary_panel = render_summary(
            view.summary, first_consistency_seq=view.first_consistency_seq
        )
        if summary_panel is not None:
            parts.append(summary_panel)

    shown = view.events[-tail:] if tail > 0 else view.events
    title = f"Events ({len(view.events)}/{view.total_events})"
    parts.append(render_events_table(shown, title=title))
    parts.append(Text(follow_label(view.follow), style=THEME.muted))
    return Group(*parts)
