"""
Refresh Coordination

Owns the process-wide refresh status and the single-flight guard.
The coordinator is passed explicitly to whatever needs to read or mutate it;
external callers only ever see snapshots.
"""
import logging
import time
from dataclasses import asdict, dataclass

from epg_indexer.services.fetch_types import ProgressEvent, RefreshPhase


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RefreshStatus:
    """Progress and outcome of the current or last refresh."""
    running: bool = False
    phase: RefreshPhase = "idle"
    current: int = 0
    total: int = 0
    last_run: int | None = None  # epoch milliseconds
    last_error: str | None = None

    def to_dict(self) -> dict:
        return asdict(self)


class RefreshCoordinator:
    """
    Coordinates EPG refreshes so that at most one runs at a time.

    `try_begin()` is a compare-and-set on the running flag: it performs no
    await between the check and the set, so two tasks on the same event loop
    can never both enter.
    """

    def __init__(self) -> None:
        self._status = RefreshStatus()

    def try_begin(self, total: int) -> bool:
        """
        Mark a refresh as started.

        Args:
            total: Number of sources about to be refreshed

        Returns:
            False if a refresh is already running (nothing is changed)
        """
        if self._status.running:
            logger.warning("EPG refresh already in progress, skipping this request")
            return False

        self._status.running = True
        self._status.phase = "start"
        self._status.current = 0
        self._status.total = total
        self._status.last_error = None
        return True

    def on_progress(self, event: ProgressEvent) -> None:
        """Progress callback handed to the refresh pipeline."""
        if not self._status.running:
            return
        self._status.phase = event.phase
        if event.phase == "download":
            if event.index is not None:
                self._status.current = event.index
            if event.total is not None:
                self._status.total = event.total

    def finish(self, error: str | None = None) -> None:
        """Mark the running refresh as resolved, recording a structural error if any."""
        self._status.running = False
        self._status.phase = "idle"
        self._status.last_run = int(time.time() * 1000)
        self._status.last_error = error

    def is_running(self) -> bool:
        return self._status.running

    def snapshot(self) -> RefreshStatus:
        """Return a copy of the current status."""
        return RefreshStatus(**self._status.to_dict())


# Global singleton instance
_coordinator: RefreshCoordinator | None = None


def get_refresh_coordinator() -> RefreshCoordinator:
    """
    Get or create the global refresh coordinator singleton.

    Returns:
        The global RefreshCoordinator instance
    """
    global _coordinator
    if _coordinator is None:
        _coordinator = RefreshCoordinator()
    return _coordinator


def reset_refresh_coordinator() -> None:
    """
    Reset the refresh coordinator (mainly for testing).

    WARNING: Only use this in test environments!
    """
    global _coordinator
    _coordinator = None
