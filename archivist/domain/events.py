"""Domain events for the library scan pipeline.

Events flow through the EventBus so the scheduler stays independent of
whatever renders progress (CLI progress bar, tests, a future GUI).

See `infrastructure/event_bus.py` for the pub/sub mechanism.
"""

from pathlib import Path
from pydantic import BaseModel
from .models import ScanProgress


class Event(BaseModel):
    """Base class for all domain events."""

    pass


class DiscoveryStarted(Event):
    """Emitted when the directory walk begins."""

    directory: Path


class DiscoveryFinished(Event):
    """Emitted after the walk, before any probing."""

    directory: Path
    files_found: int
    cancelled: bool = False


class ScanProgressUpdated(Event):
    """Carries a snapshot of the scan progress after every state change."""

    progress: ScanProgress


class ScanFinished(Event):
    """Emitted once per scan with the terminal progress snapshot."""

    progress: ScanProgress
    records_count: int


class ScanCancelRequested(Event):
    """Asks the running scan to stop (Ctrl+C in the CLI)."""

    pass
