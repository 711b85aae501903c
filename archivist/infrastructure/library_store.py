import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError

from archivist.domain.models import MediaFileRecord
from archivist.exceptions import LibraryStoreError


class LibraryDocument(BaseModel):
    """On-disk layout of the library file."""
    media_library: List[MediaFileRecord] = Field(default_factory=list)
    last_scan_path: Optional[Path] = None
    last_scan_at: Optional[float] = None


class LibraryStore:
    """JSON-file persistence for the scanned library.

    Writes go to a temp file in the same directory and are swapped in with
    os.replace, so a crash never leaves a half-written library behind.
    """

    def __init__(self, path: Path):
        self.path = Path(path).expanduser()
        self.logger = logging.getLogger(__name__)

    def load_document(self) -> LibraryDocument:
        if not self.path.exists():
            return LibraryDocument()
        try:
            return LibraryDocument.model_validate_json(self.path.read_text(encoding="utf-8"))
        except (OSError, ValidationError, ValueError) as e:
            raise LibraryStoreError(f"Cannot read library {self.path}: {e}") from e

    def _write_document(self, document: LibraryDocument) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".library-", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(document.model_dump_json(indent=2))
            os.replace(tmp_name, self.path)
        except OSError as e:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise LibraryStoreError(f"Cannot write library {self.path}: {e}") from e

    def load(self) -> List[MediaFileRecord]:
        return self.load_document().media_library

    def save(self, records: Iterable[MediaFileRecord], scan_path: Optional[Path] = None) -> None:
        document = self.load_document()
        document.media_library = list(records)
        document.last_scan_at = time.time()
        if scan_path is not None:
            document.last_scan_path = Path(scan_path)
        self._write_document(document)
        self.logger.info(f"Library saved: {len(document.media_library)} records -> {self.path}")

    def remove_paths(self, paths: Iterable[Path]) -> int:
        """Drops records for the given paths; returns how many were removed."""
        to_remove = {Path(p) for p in paths}
        document = self.load_document()
        kept = [record for record in document.media_library if record.path not in to_remove]
        removed = len(document.media_library) - len(kept)
        if removed:
            document.media_library = kept
            self._write_document(document)
        return removed

    def update_paths(self, renames: Dict[Path, Path]) -> int:
        """Points renamed records at their new location, keeping their ids."""
        document = self.load_document()
        updated = 0
        for record in document.media_library:
            new_path = renames.get(record.path)
            if new_path is None:
                continue
            new_path = Path(new_path)
            record.path = new_path
            record.filename = new_path.name
            record.directory = new_path.parent
            record.extension = new_path.suffix.lower()
            updated += 1
        if updated:
            self._write_document(document)
        return updated

    def clear(self) -> None:
        document = self.load_document()
        document.media_library = []
        document.last_scan_at = None
        self._write_document(document)

    @property
    def last_scan_path(self) -> Optional[Path]:
        return self.load_document().last_scan_path
