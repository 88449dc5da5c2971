"""bastion-runwatch: live run and operation monitoring for the Bastion hub."""

__version__ = "0.1.0"

from .api import HubClient, SessionProvider, StaticSessionProvider
from .buffer import EventLogBuffer
from .config import RunwatchConfig
from .errors import ApiError, ConfigError, MalformedEventError, RunwatchError
from .events import Event, RunStatusSnapshot, filter_events, unique_event_kinds
from .follow import FollowScrollController, FollowState
from .orchestrator import RunDetailOrchestrator, RunDetailView, TargetKind
from .progress import ProgressSnapshot, ProgressView, derive_operation_progress, derive_progress
from .stream import ReconnectingEventStream, StreamState
from .summary import ConsistencyReport, RunSummary, parse_run_summary

__all__ = [
    "__version__",
    "HubClient",
    "SessionProvider",
    "StaticSessionProvider",
    "EventLogBuffer",
    "RunwatchConfig",
    "RunwatchError",
    "ApiError",
    "ConfigError",
    "MalformedEventError",
    "Event",
    "RunStatusSnapshot",
    "filter_events",
    "unique_event_kinds",
    "FollowScrollController",
    "FollowState",
    "RunDetailOrchestrator",
    "RunDetailView",
    "TargetKind",
    "ProgressSnapshot",
    "ProgressView",
    "derive_progress",
    "derive_operation_progress",
    "ReconnectingEventStream",
    "StreamState",
    "ConsistencyReport",
    "RunSummary",
    "parse_run_summary",
]
