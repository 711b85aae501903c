"""Filename classification and stream categorisation helpers.

Everything here is pure: no filesystem access, no logging.
"""

from pathlib import PurePath
from typing import Iterable, FrozenSet, Optional, Union

SUPPORTED_EXTENSIONS: FrozenSet[str] = frozenset({
    ".mkv", ".mp4", ".avi", ".mov", ".wmv", ".flv", ".webm",
    ".m4v", ".mpg", ".mpeg", ".ts", ".m2ts", ".vob", ".divx",
})

SUBTITLE_EXTENSIONS: FrozenSet[str] = frozenset({
    ".srt", ".sub", ".ass", ".ssa", ".vtt", ".idx",
})

SUBTITLE_MODIFIERS: FrozenSet[str] = frozenset({"forced", "sdh", "cc", "default", "hi"})

RESOLUTION_CATEGORIES = ("4K", "1080p", "720p", "SD", "Unknown")
CHANNEL_TYPES = ("Mono", "Stereo", "5.1", "7.1", "Atmos", "Unknown")


def normalize_extensions(extensions: Iterable[str]) -> FrozenSet[str]:
    """Lower-cases extensions and makes sure each one starts with a dot."""
    return frozenset(
        (ext if ext.startswith(".") else f".{ext}").lower() for ext in extensions
    )


def _extension(filename: Union[str, PurePath]) -> str:
    return PurePath(filename).suffix.lower()


def is_supported_media(filename: Union[str, PurePath], extensions: Optional[Iterable[str]] = None) -> bool:
    allowed = SUPPORTED_EXTENSIONS if extensions is None else normalize_extensions(extensions)
    ext = _extension(filename)
    return bool(ext) and ext in allowed


def is_subtitle(filename: Union[str, PurePath], extensions: Optional[Iterable[str]] = None) -> bool:
    allowed = SUBTITLE_EXTENSIONS if extensions is None else normalize_extensions(extensions)
    ext = _extension(filename)
    return bool(ext) and ext in allowed


def categorize_resolution(width: int, height: int) -> str:
    pixels = max(width, height)
    if pixels >= 2160:
        return "4K"
    if pixels >= 1080:
        return "1080p"
    if pixels >= 720:
        return "720p"
    if pixels > 0:
        return "SD"
    return "Unknown"


def categorize_channels(channels: int, codec: Optional[str] = None) -> str:
    # Atmos usually rides on TrueHD or E-AC-3 with an object-audio profile
    if codec and ("atmos" in codec.lower() or "truehd" in codec.lower()):
        if channels >= 6:
            return "Atmos"
    if channels >= 8:
        return "7.1"
    if channels >= 6:
        return "5.1"
    if channels == 2:
        return "Stereo"
    if channels == 1:
        return "Mono"
    return "Unknown"
