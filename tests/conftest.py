import threading
import time
import pytest
import yaml
from pathlib import Path
from archivist.config.models import AppConfig
from archivist.domain.models import AudioStream, MediaFileRecord, VideoStream
from archivist.exceptions import ProbeError
from archivist.infrastructure.event_bus import EventBus

# ============================================================================
# Record / Probe Helpers
# ============================================================================

def build_record(path: Path, scanned_at: float = None, **overrides) -> MediaFileRecord:
    """Builds a MediaFileRecord the way FFprobeAdapter would for `path`."""
    data = dict(
        path=path,
        filename=path.name,
        directory=path.parent,
        extension=path.suffix.lower(),
        size_bytes=path.stat().st_size if path.exists() else 0,
        duration=60.0,
        container="matroska,webm",
        bitrate=4_000_000,
        video_streams=[VideoStream(index=0, codec="h264", width=1920, height=1080, resolution="1080p")],
        audio_streams=[AudioStream(index=1, codec="aac", channels=2, channel_type="Stereo", language="eng")],
        scanned_at=time.time() if scanned_at is None else scanned_at,
    )
    data.update(overrides)
    return MediaFileRecord(**data)


class StubProbe:
    """Stands in for FFprobeAdapter.

    Args:
        fail: file names whose probe raises ProbeError
        forbidden: paths that must never be probed (fails the test)
        delay: seconds each probe "runs"
        on_probe: optional callback invoked with the path before probing
    """

    def __init__(self, fail=(), forbidden=(), delay: float = 0.0, on_probe=None):
        self.fail = set(fail)
        self.forbidden = {Path(p) for p in forbidden}
        self.delay = delay
        self.on_probe = on_probe
        self.calls = []
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def probe(self, path: Path, cancel_event=None) -> MediaFileRecord:
        if path in self.forbidden:
            pytest.fail(f"probe called for unchanged file {path}")
        with self._lock:
            self.calls.append(path)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.on_probe:
                self.on_probe(path)
            if self.delay:
                time.sleep(self.delay)
            if path.name in self.fail:
                raise ProbeError(f"ffprobe exited with code 1 for {path}: Invalid data")
            return build_record(path)
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture
def stub_probe():
    """Returns a StubProbe that succeeds for every file."""
    return StubProbe()

@pytest.fixture
def probe_factory():
    """Returns the StubProbe class for tests that need custom behaviour."""
    return StubProbe

@pytest.fixture
def make_record():
    """Returns build_record."""
    return build_record

# ============================================================================
# Configuration Fixtures
# ============================================================================

@pytest.fixture
def sample_config(tmp_path):
    """Returns a sample AppConfig object for testing."""
    return AppConfig(
        general={
            "debug": False,
            "library_path": str(tmp_path / "data" / "library.json"),
        },
        scan={
            "concurrency": 2,
            "extensions": [".mkv", ".mp4"],
        },
        subtitles={
            "policy": "basename",
        },
    )

@pytest.fixture
def config_yaml_path(tmp_path):
    """Creates a temporary YAML config file."""
    conf_dir = tmp_path / "conf"
    conf_dir.mkdir()
    conf_file = conf_dir / "archivist.yaml"

    content = {
        'general': {
            'debug': False,
            'library_path': str(tmp_path / "data" / "library.json"),
            'ffprobe_path': 'ffprobe',
        },
        'scan': {
            'concurrency': 3,
            'extensions': ['mkv', 'mp4', '.AVI'],
        },
        'subtitles': {
            'policy': 'folder',
            'extensions': ['srt', 'ass'],
        },
    }

    with open(conf_file, 'w') as f:
        yaml.dump(content, f)

    return conf_file

# ============================================================================
# EventBus Fixtures
# ============================================================================

@pytest.fixture
def event_bus():
    """Returns a fresh EventBus instance."""
    return EventBus()

# ============================================================================
# File System Fixtures
# ============================================================================

@pytest.fixture
def library_dir(tmp_path):
    """Creates a small media tree.

    library/
        movie_a.mkv, movie_b.mp4, notes.txt
        Show/show_s01e01.mkv, Show/show_s01e01.en.srt
        .hidden/secret.mkv
    """
    root = tmp_path / "library"
    root.mkdir()
    (root / "movie_a.mkv").write_bytes(b"a" * 100)
    (root / "movie_b.mp4").write_bytes(b"b" * 200)
    (root / "notes.txt").write_text("not media")
    show = root / "Show"
    show.mkdir()
    (show / "show_s01e01.mkv").write_bytes(b"c" * 300)
    (show / "show_s01e01.en.srt").write_text("1\n00:00:01,000 --> 00:00:02,000\nHi\n")
    hidden = root / ".hidden"
    hidden.mkdir()
    (hidden / "secret.mkv").write_bytes(b"d" * 10)
    return root

@pytest.fixture
def many_media_files(tmp_path):
    """Creates a flat directory with 12 .mkv files."""
    root = tmp_path / "many"
    root.mkdir()
    files = []
    for i in range(12):
        f = root / f"clip{i:02d}.mkv"
        f.write_bytes(b"x" * (i + 1))
        files.append(f)
    return root, files


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (integration tests with real ffprobe)"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )
