"""Incremental library scan: directory walk, mtime diff, bounded probe pool.

Coordinates the DirectoryWalker and a stream probe (FFprobeAdapter) to turn
a directory into MediaFileRecords while re-probing as little as possible.

Key responsibilities:
- Walk the tree once and size the work queue
- Reuse records from a prior snapshot when the file's mtime <= scanned_at
- Run at most `concurrency` probes at a time from a shared queue
- Report a ScanProgress snapshot after every state change
- Support cooperative cancellation (and kill in-flight ffprobe processes)
- Partition failures per file; only total failure fails the scan
"""

import concurrent.futures
import logging
import queue
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from archivist.domain.events import (
    DiscoveryFinished,
    DiscoveryStarted,
    ScanCancelRequested,
    ScanFinished,
    ScanProgressUpdated,
)
from archivist.domain.models import (
    FileError,
    MediaFileRecord,
    PriorEntry,
    ScanProgress,
    ScanResult,
    ScanStatus,
)
from archivist.exceptions import DirectoryAccessError, ProbeCancelledError, ScanInProgressError
from archivist.infrastructure.event_bus import EventBus
from archivist.infrastructure.file_scanner import DirectoryWalker

ProgressSink = Callable[[ScanProgress], None]

DEFAULT_CONCURRENCY = 4


def snapshot_from_library(records: Iterable[MediaFileRecord]) -> Dict[Path, PriorEntry]:
    """Builds the prior snapshot for an incremental scan from a stored library."""
    return {record.path: PriorEntry(scanned_at=record.scanned_at, record=record) for record in records}


class IncrementalScanScheduler:
    """Scans one directory at a time with a bounded pool of probe workers.

    One scheduler owns one scan slot: `scan()` refuses to start while another
    scan is running on the same instance, and `cancel()` only affects the scan
    currently in flight. Progress, the error list and the result list are
    guarded by a single lock; sinks are called under that lock so snapshots
    arrive in emission order.

    Args:
        walker: DirectoryWalker used to enumerate candidate files.
        probe: Object with `probe(path, cancel_event=None) -> MediaFileRecord`.
        concurrency: Maximum number of concurrent probes.
        event_bus: Optional EventBus for progress and discovery events.
    """

    def __init__(
        self,
        walker: DirectoryWalker,
        probe,
        concurrency: int = DEFAULT_CONCURRENCY,
        event_bus: Optional[EventBus] = None,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.walker = walker
        self.probe = probe
        self.concurrency = concurrency
        self.event_bus = event_bus
        self.logger = logging.getLogger(__name__)

        self._scan_slot = threading.Lock()
        # Guards slot acquisition together with the swap of _cancel_event
        self._cancel_lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._state_lock = threading.Lock()

        # Per-scan state, reset by scan()
        self._progress = ScanProgress()
        self._records: List[MediaFileRecord] = []
        self._sink: Optional[ProgressSink] = None

        if self.event_bus is not None:
            self.event_bus.subscribe(ScanCancelRequested, self._on_cancel_requested)

    # ------------------------------------------------------------------ control

    def cancel(self) -> None:
        """Requests cancellation of the running scan (no-op when idle)."""
        with self._cancel_lock:
            event = self._cancel_event
            running = self._scan_slot.locked()
        if running:
            self.logger.info("Scan cancellation requested")
        event.set()

    def _on_cancel_requested(self, event: ScanCancelRequested) -> None:
        self.cancel()

    @property
    def is_running(self) -> bool:
        return self._scan_slot.locked()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # ---------------------------------------------------------------- progress

    def _emit_locked(self) -> None:
        """Publishes a snapshot; caller holds _state_lock."""
        snapshot = self._progress.model_copy(deep=True)
        if self._sink is not None:
            self._sink(snapshot)
        if self.event_bus is not None:
            self.event_bus.publish(ScanProgressUpdated(progress=snapshot))

    def _finish_locked(self, status: ScanStatus, error_message: Optional[str] = None) -> ScanProgress:
        self._progress.transition(status)
        self._progress.completed_at = time.time()
        self._progress.current_file = None
        if error_message:
            self._progress.error_message = error_message
        self._emit_locked()
        return self._progress.model_copy(deep=True)

    # ------------------------------------------------------------------ worker

    def _should_reuse(self, path: Path, entry: Optional[PriorEntry]) -> bool:
        if entry is None:
            return False
        # mtime == scanned_at counts as unchanged
        return path.stat().st_mtime <= entry.scanned_at

    def _worker(self, work: "queue.Queue[Path]", prior: Mapping[Path, PriorEntry]) -> None:
        while not self._cancel_event.is_set():
            try:
                path = work.get_nowait()
            except queue.Empty:
                return

            with self._state_lock:
                self._progress.current_file = path

            entry = prior.get(path)
            record: Optional[MediaFileRecord] = None
            skipped = False
            error: Optional[str] = None
            try:
                if self._should_reuse(path, entry):
                    record = entry.record
                    skipped = True
                else:
                    record = self.probe.probe(path, cancel_event=self._cancel_event)
                    if entry is not None:
                        record.id = entry.record.id
            except ProbeCancelledError:
                self.logger.debug(f"Probe cancelled: {path}")
                return
            except Exception as e:
                error = str(e) or e.__class__.__name__
                self.logger.warning(f"Probe failed for {path}: {error}")

            with self._state_lock:
                if error is not None:
                    self._progress.error_count += 1
                    self._progress.errors.append(FileError(path=path, error=error))
                else:
                    self._records.append(record)
                    if skipped:
                        self._progress.skipped_count += 1
                        self.logger.debug(f"Unchanged, reusing record: {path}")
                self._progress.processed_count += 1
                self._emit_locked()

    # -------------------------------------------------------------------- scan

    def scan(
        self,
        root: Path,
        prior: Optional[Mapping[Path, PriorEntry]] = None,
        progress_sink: Optional[ProgressSink] = None,
    ) -> ScanResult:
        """Scans `root` and returns the records plus the terminal progress.

        Raises ScanInProgressError if this scheduler is already scanning.
        """
        with self._cancel_lock:
            if not self._scan_slot.acquire(blocking=False):
                raise ScanInProgressError("A scan is already running on this scheduler")
            # Fresh event per scan; cancel() picks it up under _cancel_lock
            self._cancel_event = threading.Event()
        try:
            return self._run_scan(Path(root), prior or {}, progress_sink)
        finally:
            with self._state_lock:
                self._sink = None
            self._scan_slot.release()

    def _run_scan(self, root: Path, prior: Mapping[Path, PriorEntry], progress_sink: Optional[ProgressSink]) -> ScanResult:
        with self._state_lock:
            self._progress = ScanProgress()
            self._records = []
            self._sink = progress_sink
            self._progress.transition(ScanStatus.SCANNING)
            self._progress.started_at = time.time()
            self._emit_locked()

        self.logger.info(f"Scan started: {root} (concurrency={self.concurrency}, prior={len(prior)})")
        if self.event_bus is not None:
            self.event_bus.publish(DiscoveryStarted(directory=root))

        try:
            candidates = self.walker.walk(root, cancel_event=self._cancel_event)
        except (DirectoryAccessError, OSError) as e:
            self.logger.error(f"Scan failed: {e}")
            with self._state_lock:
                final = self._finish_locked(ScanStatus.ERROR, str(e))
            return self._result(final)

        cancelled_during_walk = self._cancel_event.is_set()
        if self.event_bus is not None:
            self.event_bus.publish(DiscoveryFinished(
                directory=root,
                files_found=len(candidates),
                cancelled=cancelled_during_walk,
            ))

        if cancelled_during_walk:
            self.logger.info(f"Scan cancelled during discovery ({len(candidates)} files seen)")
            with self._state_lock:
                final = self._finish_locked(ScanStatus.CANCELLED)
            return self._result(final)

        with self._state_lock:
            self._progress.total_count = len(candidates)
            self._emit_locked()

        work: "queue.Queue[Path]" = queue.Queue()
        for path in candidates:
            work.put(path)

        workers = min(self.concurrency, len(candidates))
        if workers:
            with concurrent.futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe") as executor:
                futures = [executor.submit(self._worker, work, prior) for _ in range(workers)]
                for future in concurrent.futures.as_completed(futures):
                    # _worker handles per-file errors itself; anything here is a bug
                    future.result()

        with self._state_lock:
            if self._cancel_event.is_set():
                final = self._finish_locked(ScanStatus.CANCELLED)
            elif self._progress.error_count > 0 and not self._records:
                final = self._finish_locked(
                    ScanStatus.ERROR,
                    f"All {self._progress.error_count} files failed to scan",
                )
            else:
                final = self._finish_locked(ScanStatus.COMPLETED)

        self.logger.info(
            f"Scan {final.status.value}: processed={final.processed_count}/{final.total_count}, "
            f"skipped={final.skipped_count}, errors={final.error_count}, records={len(self._records)}"
        )
        return self._result(final)

    def _result(self, final: ScanProgress) -> ScanResult:
        with self._state_lock:
            records = list(self._records)
        if self.event_bus is not None:
            self.event_bus.publish(ScanFinished(progress=final, records_count=len(records)))
        return ScanResult(records=records, progress=final)
