import logging
import os
import threading
from pathlib import Path
from typing import Iterable, List, Generator, Optional

from archivist.domain.classifier import SUPPORTED_EXTENSIONS, is_supported_media, normalize_extensions
from archivist.exceptions import DirectoryAccessError

logger = logging.getLogger(__name__)


class DirectoryWalker:
    """Recursively finds media files, skipping hidden and unreadable directories."""

    def __init__(self, extensions: Optional[Iterable[str]] = None):
        self.extensions = normalize_extensions(extensions) if extensions is not None else SUPPORTED_EXTENSIONS

    @staticmethod
    def _on_walk_error(error: OSError) -> None:
        logger.debug(f"Skipping unreadable directory {error.filename}: {error.strerror}")

    def iter_walk(self, root_dir: Path, cancel_event: Optional[threading.Event] = None) -> Generator[Path, None, None]:
        """Yields absolute media file paths; stops at the next directory once cancelled."""
        root_dir = Path(root_dir).absolute()
        if not root_dir.is_dir():
            raise DirectoryAccessError(f"Not a directory: {root_dir}")

        for root, dirs, files in os.walk(str(root_dir), onerror=self._on_walk_error):
            if cancel_event is not None and cancel_event.is_set():
                return

            root_path = Path(root)

            # Ensure deterministic traversal and never descend into hidden dirs
            dirs[:] = sorted(d for d in dirs if not d.startswith("."))
            files.sort()

            for file_name in files:
                file_path = root_path / file_name
                # Broken symlinks, FIFOs and sockets are listed as files by os.walk
                if is_supported_media(file_name, self.extensions) and file_path.is_file():
                    yield file_path

    def walk(self, root_dir: Path, cancel_event: Optional[threading.Event] = None) -> List[Path]:
        """Collects iter_walk into a list; a cancelled walk returns what it found so far."""
        return list(self.iter_walk(root_dir, cancel_event))
