"""Progress analytics derived from snapshots and the event history.

Everything here is a pure function of its inputs so views can recompute it
on every render and tests can pin exact numbers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any

from .events import FAILED_STATUSES, Event, is_terminal_status

STAGES = ("scan", "packaging", "upload", "complete")
STEP_STAGES = ("scan", "packaging", "upload")
STAGE_WEIGHTS = {"scan": 5.0, "packaging": 45.0, "upload": 50.0}
END_MARKER_KINDS = ("complete", "failed")
FAILURE_STAGE_PREFERENCE = ("upload", "packaging", "scan")


@dataclass(frozen=True, slots=True)
class ProgressUnits:
    """Files/dirs/bytes triple."""

    files: int = 0
    dirs: int = 0
    bytes: int = 0

    @classmethod
    def from_dict(cls, data: Any) -> ProgressUnits | None:
        if not isinstance(data, dict):
            return None
        return cls(
            files=_as_int(data.get("files")) or 0,
            dirs=_as_int(data.get("dirs")) or 0,
            bytes=_as_int(data.get("bytes")) or 0,
        )


@dataclass(frozen=True, slots=True)
class TransferDetail:
    """Upload-stage detail block."""

    source_total: ProgressUnits | None = None
    transfer_total_bytes: int | None = None
    transfer_done_bytes: int | None = None


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    """Latest known point-in-time progress; replaced by every push/poll."""

    stage: str
    ts: int | None = None
    done: ProgressUnits | None = None
    total: ProgressUnits | None = None
    rate_bps: int | None = None
    eta_seconds: int | None = None
    detail: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: Any) -> ProgressSnapshot | None:
        if not isinstance(data, dict) or not data.get("stage"):
            return None
        detail = data.get("detail")
        return cls(
            stage=str(data["stage"]),
            ts=_as_int(data.get("ts")),
            done=ProgressUnits.from_dict(data.get("done")),
            total=ProgressUnits.from_dict(data.get("total")),
            rate_bps=_as_int(data.get("rate_bps")),
            eta_seconds=_as_int(data.get("eta_seconds")),
            detail=detail if isinstance(detail, dict) else None,
        )

    @property
    def transfer(self) -> TransferDetail | None:
        """Transfer block from ``detail.backup``, ``detail.transfer`` or a flat detail."""
        if not self.detail:
            return None
        block: Any = None
        for key in ("backup", "transfer"):
            if isinstance(self.detail.get(key), dict):
                block = self.detail[key]
                break
        if block is None and (
            "transfer_total_bytes" in self.detail or "source_total" in self.detail
        ):
            block = self.detail
        if block is None:
            return None
        return TransferDetail(
            source_total=ProgressUnits.from_dict(block.get("source_total")),
            transfer_total_bytes=_as_int(block.get("transfer_total_bytes")),
            transfer_done_bytes=_as_int(block.get("transfer_done_bytes")),
        )


@dataclass(frozen=True, slots=True)
class StageStep:
    """Step-indicator entry for one stage."""

    stage: str
    status: str  # wait | process | finish | error
    percent: float | None = None


@dataclass(frozen=True, slots=True)
class ProgressView:
    """Everything a progress panel needs to render."""

    stage: str | None
    display_stage: str | None
    overall_percent: float | None
    stage_percent: dict[str, float | None]
    show_stage_bar: bool
    steps: list[StageStep]
    durations: dict[str, int | None]
    total_duration: int | None
    rate_bps: float | None
    rate_is_final: bool
    peak_rate_bps: float | None
    eta_seconds: int | None
    failure_stage: str | None
    source_total: ProgressUnits | None
    transfer_done_bytes: int | None
    transfer_total_bytes: int | None

    @property
    def overall_percent_display(self) -> int | None:
        return round_percent(self.overall_percent)

    @property
    def current_stage_percent(self) -> float | None:
        if self.display_stage is None:
            return None
        return self.stage_percent.get(self.display_stage)


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value):
        return int(value)
    return None


def _ratio(done: int | None, total: int | None) -> float | None:
    if done is None or total is None or total <= 0:
        return None
    return max(0.0, min(1.0, done / total))


def round_percent(value: float | None) -> int | None:
    """Round half up, so 27.5 displays as 28."""
    if value is None:
        return None
    return int(math.floor(value + 0.5))


def stage_index(stage: str | None) -> int:
    """Position of ``stage`` in the pipeline, -1 for unknown stages."""
    if stage in STAGES:
        return STAGES.index(stage)
    return -1


def transfer_totals(snapshot: ProgressSnapshot | None) -> tuple[int | None, int | None]:
    """Return ``(done, total)`` transfer bytes for the upload stage.

    Prefers the explicit transfer block; older agents only report the
    top-level done/total while uploading.
    """
    if snapshot is None:
        return None, None
    transfer = snapshot.transfer
    if transfer and transfer.transfer_total_bytes is not None:
        return transfer.transfer_done_bytes, transfer.transfer_total_bytes
    if snapshot.stage in ("upload", "complete") and snapshot.total is not None:
        done = snapshot.done.bytes if snapshot.done else None
        return done, snapshot.total.bytes
    return None, None


def stage_ratios(snapshot: ProgressSnapshot | None) -> dict[str, float | None]:
    """Fractional completion (0..1) per stage, None when unknown."""
    ratios: dict[str, float | None] = {s: None for s in STEP_STAGES}
    if snapshot is None:
        return ratios
    idx = stage_index(snapshot.stage)
    done_bytes = snapshot.done.bytes if snapshot.done else None
    total_bytes = snapshot.total.bytes if snapshot.total else None

    if snapshot.stage == "scan":
        ratios["scan"] = _ratio(done_bytes, total_bytes)
    elif idx > 0:
        ratios["scan"] = 1.0

    if snapshot.stage == "packaging":
        ratios["packaging"] = _ratio(done_bytes, total_bytes)
    elif idx > STAGES.index("packaging"):
        transfer = snapshot.transfer
        known_total = snapshot.total is not None or (
            transfer is not None and transfer.source_total is not None
        )
        ratios["packaging"] = 1.0 if known_total else None

    if snapshot.stage == "complete":
        ratios["upload"] = 1.0
    elif snapshot.stage == "upload":
        ratios["upload"] = _ratio(*transfer_totals(snapshot))
    return ratios


def overall_fraction(stage: str | None, ratios: dict[str, float | None]) -> float | None:
    """Weighted overall completion in percent for the current stage."""
    if stage == "complete":
        return 100.0
    idx = stage_index(stage)
    if idx < 0:
        return None
    completed = sum(STAGE_WEIGHTS[s] for s in STEP_STAGES[:idx])
    current = ratios.get(stage) or 0.0
    return completed + STAGE_WEIGHTS[stage] * current


def first_boundary_events(events: list[Event]) -> dict[str, int]:
    """Timestamp of the first event of each boundary kind.

    End markers (``complete``/``failed``) collapse into ``end``.
    """
    boundaries: dict[str, int] = {}
    for event in events:
        kind = event.kind
        if kind in STEP_STAGES and kind not in boundaries:
            boundaries[kind] = event.timestamp
        elif kind in END_MARKER_KINDS and "end" not in boundaries:
            boundaries["end"] = event.timestamp
    return boundaries


def stage_durations(
    events: list[Event],
    *,
    snapshot: ProgressSnapshot | None = None,
    run_status: str | None = None,
    run_started_at: int | None = None,
    run_ended_at: int | None = None,
) -> tuple[dict[str, int | None], int | None]:
    """Per-stage and total durations in seconds.

    Stage starts come from the first boundary event of each kind; the scan
    stage falls back to the run start. A stage ends where the next known
    stage starts, else at the end marker or run end. The stage still in
    flight ends at the latest snapshot timestamp while the run is running.
    """
    boundaries = first_boundary_events(events)
    starts: dict[str, int | None] = {
        "scan": boundaries.get("scan", run_started_at),
        "packaging": boundaries.get("packaging"),
        "upload": boundaries.get("upload"),
    }
    end_marker = boundaries.get("end", run_ended_at)
    running = not is_terminal_status(run_status)
    now = snapshot.ts if (snapshot is not None and running) else None

    durations: dict[str, int | None] = {}
    for i, stage in enumerate(STEP_STAGES):
        start = starts[stage]
        if start is None:
            durations[stage] = None
            continue
        end: int | None = None
        for later in STEP_STAGES[i + 1 :]:
            if starts[later] is not None:
                end = starts[later]
                break
        if end is None:
            end = end_marker
        if end is None:
            end = now
        durations[stage] = end - start if end is not None and end >= start else None

    total_start = run_started_at if run_started_at is not None else starts["scan"]
    total_end = end_marker if end_marker is not None else now
    total = None
    if total_start is not None and total_end is not None and total_end >= total_start:
        total = total_end - total_start
    return durations, total


def failure_stage(
    events: list[Event],
    *,
    snapshot: ProgressSnapshot | None = None,
    run_status: str | None = None,
    run_ended_at: int | None = None,
) -> str | None:
    """Stage a failed/rejected run most likely died in."""
    if run_status not in FAILED_STATUSES:
        return None
    cutoff = run_ended_at
    if cutoff is None and snapshot is not None:
        cutoff = snapshot.ts

    best: tuple[int, int] | None = None  # (ts, -preference)
    best_stage: str | None = None
    for event in events:
        if event.kind not in FAILURE_STAGE_PREFERENCE:
            continue
        if cutoff is not None and event.timestamp > cutoff:
            continue
        key = (event.timestamp, -FAILURE_STAGE_PREFERENCE.index(event.kind))
        if best is None or key > best:
            best = key
            best_stage = event.kind
    if best_stage is not None:
        return best_stage
    if snapshot is not None and snapshot.stage in STEP_STAGES:
        return snapshot.stage
    return None


def update_peak_rate(previous: float | None, snapshot: ProgressSnapshot | None) -> float | None:
    """Fold the live rate of ``snapshot`` into the running peak."""
    if snapshot is None or not snapshot.rate_bps or snapshot.rate_bps <= 0:
        return previous
    if previous is None or snapshot.rate_bps > previous:
        return float(snapshot.rate_bps)
    return previous


def derive_progress(
    snapshot: ProgressSnapshot | None,
    events: list[Event] | None = None,
    *,
    run_status: str | None = None,
    run_started_at: int | None = None,
    run_ended_at: int | None = None,
    peak_rate_bps: float | None = None,
) -> ProgressView:
    """Build the progress view-model for one run."""
    events = events or []
    stage = snapshot.stage if snapshot else None
    ratios = stage_ratios(snapshot)
    boundaries = first_boundary_events(events)

    succeeded = run_status == "success" and run_ended_at is not None
    upload_done = ratios.get("upload") is not None and ratios["upload"] >= 1.0

    display_stage = stage
    if stage == "complete" or upload_done or succeeded:
        display_stage = "complete"

    overall = 100.0 if display_stage == "complete" else overall_fraction(stage, ratios)
    if display_stage == "complete":
        ratios = {s: 1.0 for s in STEP_STAGES}

    stage_percent = {s: (r * 100.0 if r is not None else None) for s, r in ratios.items()}
    stage_percent["complete"] = 100.0 if display_stage == "complete" else None

    failed_in = failure_stage(
        events, snapshot=snapshot, run_status=run_status, run_ended_at=run_ended_at
    )
    current_idx = stage_index(display_stage)
    steps: list[StageStep] = []
    for i, step_stage in enumerate(STEP_STAGES):
        pct = stage_percent.get(step_stage)
        if failed_in == step_stage:
            status = "error"
        elif (pct is not None and pct >= 100.0) or succeeded or (0 <= i < current_idx):
            status = "finish"
        elif step_stage == display_stage:
            status = "process"
        else:
            status = "wait"
        steps.append(StageStep(stage=step_stage, status=status, percent=pct))

    durations, total_duration = stage_durations(
        events,
        snapshot=snapshot,
        run_status=run_status,
        run_started_at=run_started_at,
        run_ended_at=run_ended_at,
    )

    transfer_done, transfer_total = transfer_totals(snapshot)
    finished = is_terminal_status(run_status) or display_stage == "complete"

    rate: float | None = None
    rate_is_final = False
    if snapshot is not None and snapshot.rate_bps and snapshot.rate_bps > 0:
        rate = float(snapshot.rate_bps)
    elif finished and transfer_total:
        end = boundaries.get("end")
        if end is None:
            end = run_ended_at
        if end is None and snapshot is not None:
            end = snapshot.ts
        start = boundaries.get("upload", run_started_at)
        if end is not None and start is not None and end > start:
            rate = transfer_total / (end - start)
            rate_is_final = True

    peak = update_peak_rate(peak_rate_bps, snapshot)
    surfaced_peak = peak if peak is not None and peak > (rate or 0.0) else None

    eta = None
    if snapshot is not None and not finished:
        eta = snapshot.eta_seconds

    source_total: ProgressUnits | None = None
    if snapshot is not None:
        transfer = snapshot.transfer
        if transfer is not None and transfer.source_total is not None:
            source_total = transfer.source_total
        elif snapshot.stage != "upload":
            source_total = snapshot.total

    return ProgressView(
        stage=stage,
        display_stage=display_stage,
        overall_percent=overall,
        stage_percent=stage_percent,
        show_stage_bar=display_stage is not None and display_stage != "complete",
        steps=steps,
        durations=durations,
        total_duration=total_duration,
        rate_bps=rate,
        rate_is_final=rate_is_final,
        peak_rate_bps=surfaced_peak,
        eta_seconds=eta,
        failure_stage=failed_in,
        source_total=source_total,
        transfer_done_bytes=transfer_done,
        transfer_total_bytes=transfer_total,
    )


@dataclass(frozen=True, slots=True)
class OperationProgressView:
    """Progress of a restore/verify operation (single-stage)."""

    stage: str | None
    percent: float | None
    done: ProgressUnits | None
    total: ProgressUnits | None
    rate_bps: float | None
    rate_is_final: bool
    eta_seconds: int | None


def derive_operation_progress(
    snapshot: ProgressSnapshot | None,
    events: list[Event] | None = None,
    *,
    status: str | None = None,
    started_at: int | None = None,
    ended_at: int | None = None,
) -> OperationProgressView:
    """Operation counterpart of derive_progress.

    Without a live rate, a finished operation reports the average over the
    span from its first ``progress_snapshot`` event (or start) to its end
    marker (or end).
    """
    events = events or []
    finished = is_terminal_status(status)
    done = snapshot.done if snapshot else None
    total = snapshot.total if snapshot else None

    percent = None
    if finished and status == "success":
        percent = 100.0
    elif done is not None and total is not None:
        ratio = _ratio(done.bytes, total.bytes)
        percent = ratio * 100.0 if ratio is not None else None

    rate: float | None = None
    rate_is_final = False
    if snapshot is not None and snapshot.rate_bps and snapshot.rate_bps > 0:
        rate = float(snapshot.rate_bps)
    elif finished:
        moved = total.bytes if total is not None else (done.bytes if done else 0)
        start = next((e.timestamp for e in events if e.kind == "progress_snapshot"), started_at)
        end = first_boundary_events(events).get("end", ended_at)
        if moved and start is not None and end is not None and end > start:
            rate = moved / (end - start)
            rate_is_final = True

    return OperationProgressView(
        stage=snapshot.stage if snapshot else None,
        percent=percent,
        done=done,
        total=total,
        rate_bps=rate,
        rate_is_final=rate_is_final,
        eta_seconds=None if finished or snapshot is None else snapshot.eta_seconds,
    )


_BYTE_UNITS = ("B", "KB", "MB", "GB", "TB", "PB")


def format_bytes(value: float | None) -> str:
    """Format a byte count with binary units ("100 B", "1.5 KB")."""
    if value is None:
        return "-"
    size = float(value)
    unit = 0
    while size >= 1024 and unit < len(_BYTE_UNITS) - 1:
        size /= 1024
        unit += 1
    if unit == 0:
        return f"{int(size)} B"
    return f"{size:.1f} {_BYTE_UNITS[unit]}"


def format_rate(bytes_per_sec: float | None) -> str:
    if bytes_per_sec is None:
        return "-"
    return f"{format_bytes(bytes_per_sec)}/s"


def format_duration(seconds: int | None) -> str:
    """Format seconds as "10s", "1m 10s" or "1h 2m"."""
    if seconds is None:
        return "-"
    secs = max(0, int(seconds))
    if secs < 60:
        return f"{secs}s"
    if secs < 3600:
        return f"{secs // 60}m {secs % 60}s"
    return f"{secs // 3600}h {(secs % 3600) // 60}m"
