"""Run summary parsing, including the source consistency report.

A finished run's status carries a free-form ``summary`` object written by
the agent. Only the parts the watcher displays are extracted here; anything
with an unexpected shape is treated as absent rather than as an error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

SOURCE_CONSISTENCY_KIND = "source_consistency"


def _as_record(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _as_str(value: Any) -> str | None:
    return value if isinstance(value, str) and value.strip() else None


def _as_number(value: Any) -> int | float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


@dataclass(frozen=True, slots=True)
class ConsistencySample:
    path: str
    reason: str
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ConsistencyReport:
    """Files that changed under the agent while the source was being read."""

    version: int | float | None
    changed_total: int | float = 0
    replaced_total: int | float = 0
    deleted_total: int | float = 0
    read_error_total: int | float = 0
    sample_truncated: bool = False
    sample: list[ConsistencySample] = field(default_factory=list)

    @property
    def total(self) -> int | float:
        return self.changed_total + self.replaced_total + self.deleted_total + self.read_error_total

    @classmethod
    def from_dict(cls, value: Any) -> ConsistencyReport | None:
        data = _as_record(value)
        if data is None:
            return None
        samples: list[ConsistencySample] = []
        raw_samples = data.get("sample")
        for item in raw_samples if isinstance(raw_samples, list) else []:
            entry = _as_record(item)
            if entry is None:
                continue
            path = _as_str(entry.get("path"))
            reason = _as_str(entry.get("reason"))
            if not path or not reason:
                continue
            samples.append(ConsistencySample(path, reason, _as_str(entry.get("error"))))
        truncated = data.get("sample_truncated")
        return cls(
            version=_as_number(data.get("v")),
            changed_total=_as_number(data.get("changed_total")) or 0,
            replaced_total=_as_number(data.get("replaced_total")) or 0,
            deleted_total=_as_number(data.get("deleted_total")) or 0,
            read_error_total=_as_number(data.get("read_error_total")) or 0,
            sample_truncated=truncated if isinstance(truncated, bool) else False,
            sample=samples,
        )


@dataclass(frozen=True, slots=True)
class RunSummary:
    target_type: str | None = None
    target_location: str | None = None
    entries_count: int | float | None = None
    parts_count: int | float | None = None
    warnings_total: int | float | None = None
    errors_total: int | float | None = None
    consistency: ConsistencyReport | None = None
    sqlite_path: str | None = None
    sqlite_snapshot_name: str | None = None
    vaultwarden_data_dir: str | None = None
    vaultwarden_db: str | None = None

    @property
    def consistency_changed_total(self) -> int | float | None:
        """Sum of all consistency counters, or None without a report."""
        return self.consistency.total if self.consistency is not None else None

    @property
    def source_changed(self) -> bool:
        return bool(self.consistency_changed_total)


def parse_run_summary(summary: Any) -> RunSummary:
    """Extract the displayable fields of a run's ``summary`` object.

    The consistency report comes from ``filesystem.consistency`` and falls
    back to ``vaultwarden.consistency``.
    """
    data = _as_record(summary)
    if data is None:
        return RunSummary()

    target = _as_record(data.get("target")) or {}
    filesystem = _as_record(data.get("filesystem")) or {}
    sqlite = _as_record(data.get("sqlite")) or {}
    vaultwarden = _as_record(data.get("vaultwarden")) or {}

    consistency = ConsistencyReport.from_dict(filesystem.get("consistency"))
    if consistency is None:
        consistency = ConsistencyReport.from_dict(vaultwarden.get("consistency"))

    return RunSummary(
        target_type=_as_str(target.get("type")),
        target_location=_as_str(target.get("run_dir")) or _as_str(target.get("run_url")),
        entries_count=_as_number(data.get("entries_count")),
        parts_count=_as_number(data.get("parts")),
        warnings_total=_as_number(filesystem.get("warnings_total")),
        errors_total=_as_number(filesystem.get("errors_total")),
        consistency=consistency,
        sqlite_path=_as_str(sqlite.get("path")),
        sqlite_snapshot_name=_as_str(sqlite.get("snapshot_name")),
        vaultwarden_data_dir=_as_str(vaultwarden.get("data_dir")),
        vaultwarden_db=_as_str(vaultwarden.get("db")),
    )
