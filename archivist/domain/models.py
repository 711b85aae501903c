import uuid
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


def new_record_id() -> str:
    return uuid.uuid4().hex


class ScanStatus(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


# Forward-only: a scan never returns to an earlier state
_ALLOWED_TRANSITIONS: Dict[ScanStatus, frozenset] = {
    ScanStatus.IDLE: frozenset({ScanStatus.SCANNING}),
    ScanStatus.SCANNING: frozenset({ScanStatus.COMPLETED, ScanStatus.CANCELLED, ScanStatus.ERROR}),
    ScanStatus.COMPLETED: frozenset(),
    ScanStatus.CANCELLED: frozenset(),
    ScanStatus.ERROR: frozenset(),
}


class VideoStream(BaseModel):
    index: int
    codec: str
    width: int = 0
    height: int = 0
    aspect_ratio: Optional[str] = None
    frame_rate: Optional[float] = None
    bitrate: Optional[int] = None
    profile: Optional[str] = None
    resolution: str = "Unknown"


class AudioStream(BaseModel):
    index: int
    codec: str
    channels: int = 0
    channel_type: str = "Unknown"
    language: Optional[str] = None
    title: Optional[str] = None
    bitrate: Optional[int] = None
    sample_rate: Optional[int] = None
    is_default: bool = False


class SubtitleStream(BaseModel):
    index: int
    codec: str
    language: Optional[str] = None
    title: Optional[str] = None
    is_forced: bool = False
    is_default: bool = False


class MediaFileRecord(BaseModel):
    id: str = Field(default_factory=new_record_id)
    path: Path
    filename: str
    directory: Path
    extension: str
    size_bytes: int = 0
    duration: Optional[float] = None
    container: Optional[str] = None
    bitrate: Optional[int] = None
    video_streams: List[VideoStream] = Field(default_factory=list)
    audio_streams: List[AudioStream] = Field(default_factory=list)
    subtitle_streams: List[SubtitleStream] = Field(default_factory=list)
    scanned_at: float


class PriorEntry(BaseModel):
    """One entry of a prior library snapshot, keyed by path."""
    scanned_at: float
    record: MediaFileRecord


class FileError(BaseModel):
    path: Path
    error: str


class ScanProgress(BaseModel):
    status: ScanStatus = ScanStatus.IDLE
    processed_count: int = 0
    total_count: Optional[int] = None
    error_count: int = 0
    skipped_count: int = 0
    errors: List[FileError] = Field(default_factory=list)
    current_file: Optional[Path] = None
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error_message: Optional[str] = None

    def transition(self, status: ScanStatus) -> None:
        """Moves to `status`, rejecting any backwards or sideways step."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(f"Invalid scan status transition: {self.status.value} -> {status.value}")
        self.status = status

    @property
    def is_terminal(self) -> bool:
        return not _ALLOWED_TRANSITIONS[self.status]


class ScanResult(BaseModel):
    records: List[MediaFileRecord] = Field(default_factory=list)
    progress: ScanProgress


class RenameItem(BaseModel):
    old_path: Path
    new_path: Path


class BatchResult(BaseModel):
    success_count: int = 0
    failed_count: int = 0
    errors: List[FileError] = Field(default_factory=list)

    def record_failure(self, path: Path, error: Exception) -> None:
        self.failed_count += 1
        self.errors.append(FileError(path=path, error=str(error)))


class DeleteResult(BatchResult):
    folders_deleted: int = 0
    folder_errors: List[FileError] = Field(default_factory=list)


class RenameOutcome(BaseModel):
    new_path: Path
    renamed_subtitles: List[Path] = Field(default_factory=list)
    failed_subtitles: List[FileError] = Field(default_factory=list)
