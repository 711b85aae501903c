from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from archivist.domain.classifier import SUPPORTED_EXTENSIONS, SUBTITLE_EXTENSIONS, SUBTITLE_MODIFIERS


class SubtitlePolicy(str, Enum):
    """Which sibling subtitle files follow a renamed media file."""
    BASENAME = "basename"  # only subtitles sharing the media file's base name
    FOLDER = "folder"      # every subtitle in the directory


def _normalize_extension_list(v: List[str]) -> List[str]:
    normalized = []
    for ext in v:
        ext = ext.strip().lower()
        if not ext:
            continue
        normalized.append(ext if ext.startswith(".") else f".{ext}")
    if not normalized:
        raise ValueError("extensions must contain at least one entry")
    return normalized


class GeneralConfig(BaseModel):
    debug: bool = False
    log_path: Optional[str] = None
    library_path: str = "~/.archivist/library.json"
    ffprobe_path: str = "ffprobe"
    kill_probes_on_cancel: bool = True


class ScanConfig(BaseModel):
    concurrency: int = Field(default=4, gt=0, le=64)
    extensions: List[str] = Field(default_factory=lambda: sorted(SUPPORTED_EXTENSIONS))

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, v: List[str]) -> List[str]:
        return _normalize_extension_list(v)


class SubtitleConfig(BaseModel):
    policy: SubtitlePolicy = SubtitlePolicy.BASENAME
    extensions: List[str] = Field(default_factory=lambda: sorted(SUBTITLE_EXTENSIONS))
    modifiers: List[str] = Field(default_factory=lambda: sorted(SUBTITLE_MODIFIERS))

    @field_validator("extensions")
    @classmethod
    def validate_extensions(cls, v: List[str]) -> List[str]:
        return _normalize_extension_list(v)

    @field_validator("modifiers")
    @classmethod
    def lowercase_modifiers(cls, v: List[str]) -> List[str]:
        return [m.strip().lower() for m in v if m.strip()]


class AppConfig(BaseModel):
    general: GeneralConfig = Field(default_factory=GeneralConfig)
    scan: ScanConfig = Field(default_factory=ScanConfig)
    subtitles: SubtitleConfig = Field(default_factory=SubtitleConfig)
