import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from archivist.config.models import SubtitlePolicy
from archivist.domain.classifier import (
    SUBTITLE_EXTENSIONS,
    SUBTITLE_MODIFIERS,
    is_subtitle,
    is_supported_media,
    normalize_extensions,
)

logger = logging.getLogger(__name__)


class SubtitleAssociator:
    """Finds the subtitle files that belong to a media file and plans their new names."""

    def __init__(
        self,
        extensions: Optional[Iterable[str]] = None,
        policy: SubtitlePolicy = SubtitlePolicy.BASENAME,
        modifiers: Optional[Iterable[str]] = None,
    ):
        self.extensions = normalize_extensions(extensions) if extensions is not None else SUBTITLE_EXTENSIONS
        self.policy = SubtitlePolicy(policy)
        self.modifiers = frozenset(m.lower() for m in modifiers) if modifiers is not None else SUBTITLE_MODIFIERS

    @staticmethod
    def _stem_matches(subtitle_stem: str, media_stem: str) -> bool:
        return subtitle_stem == media_stem or subtitle_stem.startswith(media_stem + ".")

    def _belongs_to(self, subtitle: Path, media_stem: str, sibling_stems: Iterable[str]) -> bool:
        if self.policy is SubtitlePolicy.FOLDER:
            return True
        stem = subtitle.stem.lower()
        media_stem = media_stem.lower()
        if not self._stem_matches(stem, media_stem):
            return False
        # "Movie.Extended.en.srt" goes with "Movie.Extended.mkv", not "Movie.mkv"
        return not any(
            len(other) > len(media_stem) and self._stem_matches(stem, other)
            for other in sibling_stems
        )

    def find_subtitles(self, media_path: Path) -> List[Path]:
        """Returns the subtitle files next to `media_path`, sorted by name.

        An unreadable directory yields an empty list.
        """
        media_path = Path(media_path)
        try:
            entries = list(media_path.parent.iterdir())
        except OSError as e:
            logger.debug(f"Cannot list {media_path.parent} for subtitles: {e}")
            return []

        sibling_stems = [entry.stem.lower() for entry in entries if is_supported_media(entry.name)]
        subtitles = [
            entry for entry in entries
            if is_subtitle(entry.name, self.extensions)
            and entry.is_file()
            and self._belongs_to(entry, media_path.stem, sibling_stems)
        ]
        subtitles.sort(key=lambda p: p.name)
        return subtitles

    def suffix_for(self, subtitle_path: Path) -> str:
        """Language/track tags at the end of the subtitle's base name.

        "Movie.forced.en.srt" -> ".forced.en", "Movie.srt" -> "".
        """
        parts = Path(subtitle_path).stem.split(".")
        suffix_parts: List[str] = []
        # parts[0] is always part of the title
        for part in reversed(parts[1:]):
            lowered = part.lower()
            if (part.isalpha() and len(part) <= 3) or lowered in self.modifiers:
                suffix_parts.insert(0, part)
            else:
                break
        return "." + ".".join(suffix_parts) if suffix_parts else ""

    def plan_rename(
        self,
        old_media_path: Path,
        new_media_path: Path,
        subtitle_paths: Sequence[Path],
    ) -> Dict[Path, Path]:
        """Maps each subtitle to `<new stem><suffix><ext>` in the new media directory.

        Names are compared case-insensitively. A name already planned, or
        still held by another subtitle in the new directory, gets `.2`, `.3`,
        ... between the suffix and the extension.
        """
        new_media_path = Path(new_media_path)
        new_stem = new_media_path.stem
        new_dir = new_media_path.parent
        subtitle_paths = [Path(s) for s in subtitle_paths]

        # Subtitles are renamed one by one, so their current names stay occupied
        held_names = {s.name.lower() for s in subtitle_paths if s.parent == new_dir}
        used_names = set()
        plan: Dict[Path, Path] = {}
        for subtitle in subtitle_paths:
            ext = subtitle.suffix
            suffix = self.suffix_for(subtitle)
            own_name = subtitle.name.lower() if subtitle.parent == new_dir else None

            def is_free(name: str) -> bool:
                lowered = name.lower()
                if lowered in used_names:
                    return False
                return lowered not in held_names or lowered == own_name

            new_name = f"{new_stem}{suffix}{ext}"
            index = 2
            while not is_free(new_name):
                new_name = f"{new_stem}{suffix}.{index}{ext}"
                index += 1
            used_names.add(new_name.lower())

            plan[subtitle] = new_dir / new_name
            logger.debug(f"Subtitle plan for {Path(old_media_path).name}: {subtitle.name} -> {new_name}")
        return plan
