import os
import threading
import time
import pytest
from pathlib import Path
from unittest.mock import MagicMock, patch
from archivist.domain.events import (
    DiscoveryFinished,
    DiscoveryStarted,
    ScanCancelRequested,
    ScanFinished,
    ScanProgressUpdated,
)
from archivist.domain.models import PriorEntry, ScanStatus
from archivist.exceptions import ProbeCancelledError, ScanInProgressError
from archivist.infrastructure.file_scanner import DirectoryWalker
from archivist.pipeline.scan_scheduler import IncrementalScanScheduler, snapshot_from_library


def _scheduler(probe, concurrency=2, event_bus=None, extensions=None):
    return IncrementalScanScheduler(
        walker=DirectoryWalker(extensions=extensions),
        probe=probe,
        concurrency=concurrency,
        event_bus=event_bus,
    )


def _set_mtime(path: Path, mtime: float):
    os.utime(path, (mtime, mtime))


def test_scan_new_files_completes(library_dir, stub_probe):
    result = _scheduler(stub_probe).scan(library_dir)

    assert result.progress.status == ScanStatus.COMPLETED
    names = sorted(r.filename for r in result.records)
    # notes.txt is not media, .hidden is never entered
    assert names == ["movie_a.mkv", "movie_b.mp4", "show_s01e01.mkv"]
    assert result.progress.total_count == 3
    assert result.progress.processed_count == 3
    assert result.progress.skipped_count == 0
    assert result.progress.error_count == 0
    assert result.progress.current_file is None
    assert result.progress.started_at <= result.progress.completed_at


def test_scanned_at_within_scan_window(library_dir, stub_probe):
    before = time.time()
    result = _scheduler(stub_probe).scan(library_dir)
    after = time.time()

    for record in result.records:
        assert before <= record.scanned_at <= after


def test_unchanged_file_reuses_prior_record(library_dir, make_record, probe_factory):
    target = library_dir / "movie_a.mkv"
    _set_mtime(target, 1_000_000.0)
    prior_record = make_record(target, scanned_at=2_000_000.0)
    prior = {target: PriorEntry(scanned_at=2_000_000.0, record=prior_record)}

    probe = probe_factory(forbidden=[target])
    result = _scheduler(probe).scan(library_dir, prior=prior)

    reused = [r for r in result.records if r.path == target]
    assert len(reused) == 1
    assert reused[0] is prior_record
    assert result.progress.skipped_count == 1
    assert target not in probe.calls


def test_mtime_equal_to_scanned_at_counts_as_unchanged(library_dir, make_record, probe_factory):
    target = library_dir / "movie_b.mp4"
    _set_mtime(target, 1_500_000.0)
    stamp = target.stat().st_mtime
    prior_record = make_record(target, scanned_at=stamp)
    prior = {target: PriorEntry(scanned_at=stamp, record=prior_record)}

    probe = probe_factory(forbidden=[target])
    result = _scheduler(probe).scan(library_dir, prior=prior)

    assert any(r is prior_record for r in result.records)
    assert result.progress.skipped_count == 1


def test_modified_file_is_reprobed_and_keeps_id(library_dir, make_record, stub_probe):
    target = library_dir / "movie_a.mkv"
    prior_record = make_record(target, scanned_at=1_000.0, duration=1.0)
    _set_mtime(target, 2_000.0)
    prior = {target: PriorEntry(scanned_at=1_000.0, record=prior_record)}

    result = _scheduler(stub_probe).scan(library_dir, prior=prior)

    fresh = [r for r in result.records if r.path == target][0]
    assert fresh is not prior_record
    assert fresh.id == prior_record.id
    assert fresh.duration == 60.0
    assert fresh.scanned_at > 2_000.0
    assert target in stub_probe.calls
    assert result.progress.skipped_count == 0


def test_prior_entries_for_vanished_files_are_dropped(library_dir, make_record, stub_probe):
    gone = library_dir / "deleted.mkv"
    prior = {gone: PriorEntry(scanned_at=time.time(), record=make_record(gone))}

    result = _scheduler(stub_probe).scan(library_dir, prior=prior)

    assert gone not in {r.path for r in result.records}
    assert len(result.records) == 3


def test_snapshot_from_library(make_record, tmp_path):
    a = make_record(tmp_path / "a.mkv", scanned_at=10.0)
    b = make_record(tmp_path / "b.mkv", scanned_at=20.0)

    snapshot = snapshot_from_library([a, b])

    assert set(snapshot) == {a.path, b.path}
    assert snapshot[a.path].scanned_at == 10.0
    assert snapshot[b.path].record is b


def test_partial_failure_still_completes(many_media_files, probe_factory):
    root, files = many_media_files
    probe = probe_factory(fail={"clip03.mkv", "clip07.mkv"})

    result = _scheduler(probe, concurrency=3).scan(root)

    assert result.progress.status == ScanStatus.COMPLETED
    assert result.progress.error_count == 2
    assert {e.path.name for e in result.progress.errors} == {"clip03.mkv", "clip07.mkv"}
    assert all("Invalid data" in e.error for e in result.progress.errors)
    assert len(result.records) == 10


def test_all_files_failing_is_error(many_media_files, probe_factory):
    root, files = many_media_files
    probe = probe_factory(fail={f.name for f in files})

    result = _scheduler(probe).scan(root)

    assert result.progress.status == ScanStatus.ERROR
    assert result.progress.error_count == len(files)
    assert result.progress.error_message == f"All {len(files)} files failed to scan"
    assert result.records == []


def test_counts_add_up(many_media_files, make_record, probe_factory):
    root, files = many_media_files
    _set_mtime(files[0], 100.0)
    _set_mtime(files[1], 100.0)
    prior = {
        files[0]: PriorEntry(scanned_at=200.0, record=make_record(files[0], scanned_at=200.0)),
        files[1]: PriorEntry(scanned_at=200.0, record=make_record(files[1], scanned_at=200.0)),
    }
    probe = probe_factory(fail={"clip05.mkv"})

    result = _scheduler(probe, concurrency=4).scan(root, prior=prior)
    progress = result.progress

    assert progress.processed_count == progress.total_count == len(files)
    assert progress.skipped_count == 2
    assert progress.error_count == 1
    assert len(result.records) + progress.error_count == progress.processed_count
    assert progress.skipped_count + progress.error_count <= progress.processed_count


def test_concurrency_bound_is_respected(many_media_files, probe_factory):
    root, files = many_media_files
    probe = probe_factory(delay=0.02)

    result = _scheduler(probe, concurrency=3).scan(root)

    assert result.progress.status == ScanStatus.COMPLETED
    assert len(probe.calls) == len(files)
    assert 1 <= probe.max_in_flight <= 3


def test_concurrency_one_probes_sequentially(many_media_files, probe_factory):
    root, _ = many_media_files
    probe = probe_factory(delay=0.005)

    _scheduler(probe, concurrency=1).scan(root)

    assert probe.max_in_flight == 1


def test_invalid_concurrency_rejected(stub_probe):
    with pytest.raises(ValueError):
        _scheduler(stub_probe, concurrency=0)


def test_progress_snapshots_are_monotonic(many_media_files, probe_factory):
    root, _ = many_media_files
    snapshots = []
    probe = probe_factory(fail={"clip02.mkv"})

    _scheduler(probe, concurrency=4).scan(root, progress_sink=snapshots.append)

    assert snapshots[0].status == ScanStatus.SCANNING
    assert snapshots[-1].status == ScanStatus.COMPLETED
    for earlier, later in zip(snapshots, snapshots[1:]):
        assert later.processed_count >= earlier.processed_count
        assert later.error_count >= earlier.error_count
        assert later.skipped_count >= earlier.skipped_count
    statuses = [s.status for s in snapshots]
    assert statuses.count(ScanStatus.COMPLETED) == 1
    assert statuses.index(ScanStatus.COMPLETED) == len(statuses) - 1


def test_progress_snapshots_are_copies(many_media_files, stub_probe):
    root, _ = many_media_files
    snapshots = []

    _scheduler(stub_probe).scan(root, progress_sink=snapshots.append)

    assert snapshots[0].processed_count == 0
    assert len({id(s) for s in snapshots}) == len(snapshots)


def test_empty_directory_completes_with_zero_total(tmp_path, stub_probe):
    result = _scheduler(stub_probe).scan(tmp_path)

    assert result.progress.status == ScanStatus.COMPLETED
    assert result.progress.total_count == 0
    assert result.records == []
    assert stub_probe.calls == []


def test_only_unreadable_subdirectories_completes_with_zero_total(tmp_path, stub_probe):
    def fake_walk(top, onerror=None, **kwargs):
        yield top, ["locked_a", "locked_b"], []
        for name in ["locked_a", "locked_b"]:
            err = PermissionError(13, "Permission denied")
            err.filename = os.path.join(top, name)
            onerror(err)

    with patch("archivist.infrastructure.file_scanner.os.walk", side_effect=fake_walk):
        result = _scheduler(stub_probe).scan(tmp_path)

    assert result.progress.status == ScanStatus.COMPLETED
    assert result.progress.total_count == 0
    assert result.progress.error_count == 0
    assert result.records == []
    assert stub_probe.calls == []


def test_missing_root_is_error(tmp_path, stub_probe):
    result = _scheduler(stub_probe).scan(tmp_path / "nope")

    assert result.progress.status == ScanStatus.ERROR
    assert "Not a directory" in result.progress.error_message
    assert result.records == []


def test_file_vanishing_before_probe_is_per_file_error(many_media_files, make_record, probe_factory):
    root, files = many_media_files
    victim = files[4]

    def remove_victim(path):
        # First probe removes another file the scheduler has not reached yet
        if victim.exists():
            victim.unlink()

    prior = {victim: PriorEntry(scanned_at=time.time(), record=make_record(victim))}
    probe = probe_factory(on_probe=remove_victim)

    result = _scheduler(probe, concurrency=1).scan(root, prior=prior)

    assert result.progress.status == ScanStatus.COMPLETED
    assert [e.path for e in result.progress.errors] == [victim]
    assert len(result.records) == len(files) - 1


def test_cancel_mid_scan_stops_and_reports_cancelled(many_media_files, probe_factory):
    root, files = many_media_files
    holder = {}

    def cancel_after_three(path):
        if len(holder["probe"].calls) == 3:
            holder["scheduler"].cancel()

    probe = probe_factory(on_probe=cancel_after_three)
    scheduler = _scheduler(probe, concurrency=1)
    holder.update(probe=probe, scheduler=scheduler)

    result = scheduler.scan(root)

    assert result.progress.status == ScanStatus.CANCELLED
    assert len(probe.calls) == 3
    assert result.progress.processed_count == 3
    assert result.progress.processed_count < result.progress.total_count
    assert scheduler.cancelled


def test_cancelled_probe_is_not_counted(many_media_files, probe_factory):
    root, _ = many_media_files
    holder = {}

    def cancel_and_abort(path):
        holder["scheduler"].cancel()
        raise ProbeCancelledError(f"ffprobe terminated for {path}")

    probe = probe_factory(on_probe=cancel_and_abort)
    scheduler = _scheduler(probe, concurrency=1)
    holder["scheduler"] = scheduler

    result = scheduler.scan(root)

    assert result.progress.status == ScanStatus.CANCELLED
    assert result.progress.processed_count == 0
    assert result.progress.error_count == 0
    assert result.records == []


def test_cancel_during_enumeration(tmp_path, stub_probe):
    walker = MagicMock()
    scheduler = IncrementalScanScheduler(walker=walker, probe=stub_probe, concurrency=2)

    def walk(root, cancel_event=None):
        scheduler.cancel()
        return [tmp_path / "a.mkv"]

    walker.walk.side_effect = walk

    result = scheduler.scan(tmp_path)

    assert result.progress.status == ScanStatus.CANCELLED
    assert result.progress.total_count is None
    assert result.records == []
    assert stub_probe.calls == []


def test_cancel_right_after_scan_starts_is_honoured(library_dir, stub_probe):
    scheduler = _scheduler(stub_probe)
    run_scan = scheduler._run_scan

    def cancel_then_run(*args, **kwargs):
        # Slot is already taken at this point
        assert scheduler.is_running
        scheduler.cancel()
        return run_scan(*args, **kwargs)

    scheduler._run_scan = cancel_then_run

    result = scheduler.scan(library_dir)

    assert result.progress.status == ScanStatus.CANCELLED
    assert result.records == []
    assert stub_probe.calls == []
    assert scheduler.cancelled


def test_cancel_when_idle_does_not_poison_next_scan(library_dir, stub_probe):
    scheduler = _scheduler(stub_probe)
    scheduler.cancel()

    result = scheduler.scan(library_dir)

    assert result.progress.status == ScanStatus.COMPLETED
    assert len(result.records) == 3


def test_second_concurrent_scan_is_rejected(many_media_files, probe_factory):
    root, _ = many_media_files
    started = threading.Event()
    release = threading.Event()

    def block(path):
        started.set()
        release.wait(5)

    probe = probe_factory(on_probe=block)
    scheduler = _scheduler(probe, concurrency=1)
    outcome = {}

    thread = threading.Thread(target=lambda: outcome.update(result=scheduler.scan(root)))
    thread.start()
    try:
        assert started.wait(5)
        assert scheduler.is_running
        with pytest.raises(ScanInProgressError):
            scheduler.scan(root)
    finally:
        release.set()
        thread.join(10)

    assert outcome["result"].progress.status == ScanStatus.COMPLETED
    assert not scheduler.is_running


def test_scheduler_can_scan_again(library_dir, stub_probe):
    scheduler = _scheduler(stub_probe)
    first = scheduler.scan(library_dir)
    prior = snapshot_from_library(first.records)

    second = scheduler.scan(library_dir, prior=prior)

    assert second.progress.status == ScanStatus.COMPLETED
    assert second.progress.skipped_count == 3
    assert {r.id for r in second.records} == {r.id for r in first.records}


def test_events_are_published(library_dir, stub_probe, event_bus):
    seen = []
    for event_type in (DiscoveryStarted, DiscoveryFinished, ScanProgressUpdated, ScanFinished):
        event_bus.subscribe(event_type, seen.append)

    _scheduler(stub_probe, event_bus=event_bus).scan(library_dir)

    assert isinstance(seen[0], ScanProgressUpdated)
    assert seen[0].progress.status == ScanStatus.SCANNING
    discovery = [e for e in seen if isinstance(e, DiscoveryFinished)]
    assert len(discovery) == 1
    assert discovery[0].files_found == 3
    assert not discovery[0].cancelled
    assert isinstance(seen[-1], ScanFinished)
    assert seen[-1].records_count == 3
    assert seen[-1].progress.status == ScanStatus.COMPLETED


def test_cancel_requested_event_cancels_scan(many_media_files, probe_factory, event_bus):
    root, _ = many_media_files

    def request_cancel(path):
        event_bus.publish(ScanCancelRequested())

    probe = probe_factory(on_probe=request_cancel)
    scheduler = _scheduler(probe, concurrency=1, event_bus=event_bus)

    result = scheduler.scan(root)

    assert result.progress.status == ScanStatus.CANCELLED
    assert len(probe.calls) == 1
