from typing import List, Optional, Sequence

from pydantic import BaseModel, Field, model_validator

from archivist.domain.classifier import RESOLUTION_CATEGORIES
from archivist.domain.models import MediaFileRecord

SORT_CHOICES = ("filename", "size", "duration", "resolution", "bitrate")

# Ascending resolution order runs Unknown, SD, 720p, 1080p, 4K
_RESOLUTION_RANK = {name: idx for idx, name in enumerate(RESOLUTION_CATEGORIES)}


class LibraryFilter(BaseModel):
    resolutions: List[str] = Field(default_factory=list)
    audio_channels: List[str] = Field(default_factory=list)
    audio_languages: List[str] = Field(default_factory=list)
    video_codecs: List[str] = Field(default_factory=list)
    min_bitrate_mbps: Optional[float] = Field(default=None, ge=0)
    max_bitrate_mbps: Optional[float] = Field(default=None, ge=0)
    search: Optional[str] = None

    @model_validator(mode="after")
    def validate_bitrate_bounds(self):
        if (
            self.min_bitrate_mbps is not None
            and self.max_bitrate_mbps is not None
            and self.min_bitrate_mbps > self.max_bitrate_mbps
        ):
            raise ValueError("min_bitrate_mbps must be <= max_bitrate_mbps")
        return self


def _matches_any(wanted: List[str], present: Sequence[Optional[str]]) -> bool:
    if not wanted:
        return True
    present_set = {p for p in present if p}
    return any(w in present_set for w in wanted)


def matches(record: MediaFileRecord, flt: LibraryFilter) -> bool:
    if not _matches_any(flt.resolutions, [s.resolution for s in record.video_streams]):
        return False
    if not _matches_any(flt.audio_channels, [s.channel_type for s in record.audio_streams]):
        return False
    if not _matches_any(flt.audio_languages, [s.language for s in record.audio_streams]):
        return False
    if not _matches_any(flt.video_codecs, [s.codec for s in record.video_streams]):
        return False

    if flt.min_bitrate_mbps is not None or flt.max_bitrate_mbps is not None:
        if not record.bitrate:
            return False
        if flt.min_bitrate_mbps is not None and record.bitrate < flt.min_bitrate_mbps * 1_000_000:
            return False
        if flt.max_bitrate_mbps is not None and record.bitrate > flt.max_bitrate_mbps * 1_000_000:
            return False

    if flt.search and flt.search.strip():
        query = flt.search.strip().lower()
        if query not in record.filename.lower() and query not in str(record.path).lower():
            return False

    return True


def filter_records(records: Sequence[MediaFileRecord], flt: Optional[LibraryFilter] = None) -> List[MediaFileRecord]:
    if flt is None:
        return list(records)
    return [r for r in records if matches(r, flt)]


def sort_records(records: Sequence[MediaFileRecord], sort_by: str = "filename", descending: bool = False) -> List[MediaFileRecord]:
    if sort_by == "filename":
        key = lambda r: (r.filename.lower(), str(r.path))
    elif sort_by == "size":
        key = lambda r: (r.size_bytes, r.filename.lower(), str(r.path))
    elif sort_by == "duration":
        key = lambda r: (r.duration or 0.0, r.filename.lower(), str(r.path))
    elif sort_by == "resolution":
        def key(r: MediaFileRecord):
            resolution = r.video_streams[0].resolution if r.video_streams else "Unknown"
            return (-_RESOLUTION_RANK.get(resolution, len(_RESOLUTION_RANK)), r.filename.lower(), str(r.path))
    elif sort_by == "bitrate":
        key = lambda r: (r.bitrate or 0, r.filename.lower(), str(r.path))
    else:
        allowed = ", ".join(SORT_CHOICES)
        raise ValueError(f"Unsupported sort '{sort_by}'. Use one of: {allowed}.")
    return sorted(records, key=key, reverse=descending)
