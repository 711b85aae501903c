"""Rename, move and delete operations for library files.

Single-item operations raise on failure. Batch operations never raise for a
single item: each item is attempted exactly once and its failure is recorded
in the returned BatchResult / DeleteResult.
"""

import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from archivist.domain.models import BatchResult, DeleteResult, FileError, RenameItem, RenameOutcome
from archivist.pipeline.subtitles import SubtitleAssociator


class FileOpEngine:
    """Filesystem operations with subtitle-aware renames.

    Args:
        subtitles: SubtitleAssociator used by rename_with_satellites.
    """

    def __init__(self, subtitles: Optional[SubtitleAssociator] = None):
        self.subtitles = subtitles or SubtitleAssociator()
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _require_exists(path: Path) -> None:
        if not os.path.lexists(path):
            raise FileNotFoundError(f"No such file or directory: '{path}'")

    # ------------------------------------------------------------ single items

    def rename_primary(self, old_path: Path, new_path: Path) -> Path:
        """Renames one file, creating the destination directory first.

        Renaming a path onto itself is a no-op. An existing destination is never
        replaced: FileExistsError is raised unless it is the same file (a
        case-only rename). Other OSError (not found, permission, cross-device)
        propagates unchanged.
        """
        old_path, new_path = Path(old_path), Path(new_path)
        new_path.parent.mkdir(parents=True, exist_ok=True)
        self._require_exists(old_path)
        if old_path == new_path:
            return new_path
        if os.path.lexists(new_path) and not (new_path.exists() and os.path.samefile(old_path, new_path)):
            raise FileExistsError(f"Destination already exists: '{new_path}'")
        os.rename(old_path, new_path)
        self.logger.info(f"Renamed: {old_path} -> {new_path}")
        return new_path

    def move_file(self, source_path: Path, dest_dir: Path) -> Path:
        """Moves a file into `dest_dir` keeping its name; returns the new path."""
        source_path, dest_dir = Path(source_path), Path(dest_dir)
        return self.rename_primary(source_path, dest_dir / source_path.name)

    def rename_with_satellites(self, old_path: Path, new_path: Path) -> RenameOutcome:
        """Renames a media file and the subtitles that belong to it.

        Subtitles are discovered before the primary rename. A failing primary
        rename raises; a failing subtitle rename is logged and reported in
        `failed_subtitles` while the remaining subtitles are still attempted.
        """
        old_path, new_path = Path(old_path), Path(new_path)
        plan = self.subtitles.plan_rename(old_path, new_path, self.subtitles.find_subtitles(old_path))

        self.rename_primary(old_path, new_path)
        outcome = RenameOutcome(new_path=new_path)

        for subtitle, target in plan.items():
            try:
                self.rename_primary(subtitle, target)
                outcome.renamed_subtitles.append(target)
            except OSError as e:
                self.logger.warning(f"Subtitle rename failed: {subtitle} -> {target}: {e}")
                outcome.failed_subtitles.append(FileError(path=subtitle, error=str(e)))

        return outcome

    def delete_file(self, file_path: Path) -> None:
        file_path = Path(file_path)
        self._require_exists(file_path)
        file_path.unlink()
        self.logger.info(f"Deleted: {file_path}")

    def delete_folder(self, folder_path: Path) -> None:
        """Removes an empty directory; fails if it still has entries."""
        folder_path = Path(folder_path)
        self._require_exists(folder_path)
        folder_path.rmdir()
        self.logger.info(f"Deleted folder: {folder_path}")

    def rename_folder(self, old_path: Path, new_path: Path) -> Path:
        old_path, new_path = Path(old_path), Path(new_path)
        self._require_exists(old_path)
        new_path.parent.mkdir(parents=True, exist_ok=True)
        if old_path != new_path:
            os.rename(old_path, new_path)
            self.logger.info(f"Renamed folder: {old_path} -> {new_path}")
        return new_path

    # ----------------------------------------------------------------- batches

    def batch_rename(self, items: Sequence[RenameItem]) -> BatchResult:
        result = BatchResult()
        for item in items:
            try:
                self.rename_primary(item.old_path, item.new_path)
                result.success_count += 1
            except OSError as e:
                result.record_failure(item.old_path, e)
        self._log_batch("rename", result)
        return result

    def batch_move(self, source_paths: Sequence[Path], dest_dir: Path) -> BatchResult:
        result = BatchResult()
        for source_path in source_paths:
            try:
                self.move_file(source_path, dest_dir)
                result.success_count += 1
            except OSError as e:
                result.record_failure(Path(source_path), e)
        self._log_batch("move", result)
        return result

    def batch_delete(self, file_paths: Sequence[Path], delete_parent_folders: bool = False) -> DeleteResult:
        """Deletes files, then optionally their (now empty) parent folders.

        Folder removal is non-recursive and accounted in folders_deleted /
        folder_errors only.
        """
        result = DeleteResult()
        parent_folders: List[Path] = []

        for file_path in file_paths:
            file_path = Path(file_path)
            try:
                self.delete_file(file_path)
                result.success_count += 1
                if delete_parent_folders and file_path.parent not in parent_folders:
                    parent_folders.append(file_path.parent)
            except OSError as e:
                result.record_failure(file_path, e)

        for folder in parent_folders:
            try:
                self.delete_folder(folder)
                result.folders_deleted += 1
            except OSError as e:
                self.logger.debug(f"Parent folder kept: {folder}: {e}")
                result.folder_errors.append(FileError(path=folder, error=str(e)))

        self._log_batch("delete", result)
        return result

    def delete_empty_folders(self, folder_paths: Iterable[Path]) -> DeleteResult:
        """Tries to remove each folder; non-empty or missing folders are reported."""
        result = DeleteResult()
        for folder in folder_paths:
            try:
                self.delete_folder(Path(folder))
                result.folders_deleted += 1
            except OSError as e:
                result.folder_errors.append(FileError(path=Path(folder), error=str(e)))
        return result

    def _log_batch(self, action: str, result: BatchResult) -> None:
        self.logger.info(f"Batch {action}: ok={result.success_count}, failed={result.failed_count}")
        for entry in result.errors:
            self.logger.warning(f"Batch {action} failed for {entry.path}: {entry.error}")
