import json
import logging
import subprocess
import threading
import time
from pathlib import Path
from typing import Dict, Any, List, Optional

from archivist.domain.classifier import categorize_channels, categorize_resolution
from archivist.domain.models import AudioStream, MediaFileRecord, SubtitleStream, VideoStream
from archivist.exceptions import ProbeCancelledError, ProbeError


class FFprobeAdapter:
    """Wrapper around ffprobe that turns its JSON output into a MediaFileRecord."""

    POLL_INTERVAL_S = 0.2
    TERMINATE_GRACE_S = 2.0

    def __init__(self, ffprobe_path: str = "ffprobe", kill_on_cancel: bool = True):
        self.ffprobe_path = ffprobe_path
        self.kill_on_cancel = kill_on_cancel
        self.logger = logging.getLogger(__name__)

    @staticmethod
    def _to_float(value: Any) -> Optional[float]:
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _to_int(value: Any) -> Optional[int]:
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @classmethod
    def _parse_frame_rate(cls, value: Any) -> Optional[float]:
        if not value:
            return None
        text = str(value)
        if "/" not in text:
            rate = cls._to_float(text)
            return round(rate, 2) if rate else None
        num_text, den_text = text.split("/", 1)
        num = cls._to_float(num_text)
        den = cls._to_float(den_text)
        if num is None or not den:
            return None
        return round(num / den, 2)

    @classmethod
    def _parse_duration_tag(cls, value: Any) -> Optional[float]:
        """Parses Matroska-style DURATION tags ("01:02:03.500") or plain seconds."""
        if value is None:
            return None
        text = str(value).strip()
        if not text:
            return None
        seconds = cls._to_float(text)
        if seconds is not None:
            return seconds
        parts = text.split(":")
        if len(parts) not in (2, 3):
            return None
        try:
            parts_f = [float(p) for p in parts]
        except ValueError:
            return None
        if len(parts_f) == 2:
            minutes, secs = parts_f
            return minutes * 60 + secs
        hours, minutes, secs = parts_f
        return hours * 3600 + minutes * 60 + secs

    def _build_command(self, file_path: Path) -> List[str]:
        return [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            str(file_path),
        ]

    def _run(self, file_path: Path, cancel_event: Optional[threading.Event]) -> str:
        try:
            process = subprocess.Popen(
                self._build_command(file_path),
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            raise ProbeError(f"Failed to spawn ffprobe ({self.ffprobe_path}): {e}") from e

        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.POLL_INTERVAL_S)
                break
            except subprocess.TimeoutExpired:
                if cancel_event is not None and self.kill_on_cancel and cancel_event.is_set():
                    self._terminate(process)
                    raise ProbeCancelledError(f"ffprobe cancelled for {file_path}")

        if process.returncode != 0:
            detail = (stderr or "").strip()
            raise ProbeError(f"ffprobe exited with code {process.returncode} for {file_path}: {detail}")
        return stdout

    def _terminate(self, process: subprocess.Popen) -> None:
        process.terminate()
        try:
            process.communicate(timeout=self.TERMINATE_GRACE_S)
        except subprocess.TimeoutExpired:
            process.kill()
            process.communicate()

    def get_stream_info(self, file_path: Path, cancel_event: Optional[threading.Event] = None) -> Dict[str, Any]:
        """Executes ffprobe and returns its parsed JSON document."""
        output = self._run(file_path, cancel_event)
        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise ProbeError(f"Failed to parse ffprobe output for {file_path}: {e}") from e
        if not isinstance(data, dict) or not isinstance(data.get("format"), dict):
            raise ProbeError(f"ffprobe output for {file_path} has no format section")
        return data

    def _parse_video_stream(self, stream: Dict[str, Any]) -> VideoStream:
        width = self._to_int(stream.get("width")) or 0
        height = self._to_int(stream.get("height")) or 0
        return VideoStream(
            index=self._to_int(stream.get("index")) or 0,
            codec=stream.get("codec_name") or "unknown",
            width=width,
            height=height,
            aspect_ratio=stream.get("display_aspect_ratio"),
            frame_rate=self._parse_frame_rate(stream.get("r_frame_rate")),
            bitrate=self._to_int(stream.get("bit_rate")),
            profile=stream.get("profile"),
            resolution=categorize_resolution(width, height),
        )

    def _parse_audio_stream(self, stream: Dict[str, Any]) -> AudioStream:
        channels = self._to_int(stream.get("channels")) or 0
        codec = stream.get("codec_name") or "unknown"
        tags = stream.get("tags") or {}
        disposition = stream.get("disposition") or {}
        return AudioStream(
            index=self._to_int(stream.get("index")) or 0,
            codec=codec,
            channels=channels,
            channel_type=categorize_channels(channels, codec),
            language=tags.get("language"),
            title=tags.get("title"),
            bitrate=self._to_int(stream.get("bit_rate")),
            sample_rate=self._to_int(stream.get("sample_rate")),
            is_default=disposition.get("default") == 1,
        )

    def _parse_subtitle_stream(self, stream: Dict[str, Any]) -> SubtitleStream:
        tags = stream.get("tags") or {}
        disposition = stream.get("disposition") or {}
        return SubtitleStream(
            index=self._to_int(stream.get("index")) or 0,
            codec=stream.get("codec_name") or "unknown",
            language=tags.get("language"),
            title=tags.get("title"),
            is_forced=disposition.get("forced") == 1,
            is_default=disposition.get("default") == 1,
        )

    def _resolve_duration(self, fmt: Dict[str, Any], streams: List[Dict[str, Any]]) -> Optional[float]:
        # format.duration, then format tags, then the first stream that knows
        duration = self._to_float(fmt.get("duration"))
        if duration and duration > 0:
            return duration
        tags = fmt.get("tags") or {}
        duration = self._parse_duration_tag(tags.get("DURATION") or tags.get("duration"))
        if duration and duration > 0:
            return duration
        for stream in streams:
            duration = self._to_float(stream.get("duration"))
            if not duration:
                stream_tags = stream.get("tags") or {}
                duration = self._parse_duration_tag(stream_tags.get("DURATION"))
            if duration and duration > 0:
                return duration
        return None

    def probe(self, file_path: Path, cancel_event: Optional[threading.Event] = None) -> MediaFileRecord:
        """Probes one file. Raises ProbeError (or ProbeCancelledError) on failure."""
        data = self.get_stream_info(file_path, cancel_event)
        fmt = data["format"]
        streams = sorted(
            (s for s in data.get("streams") or [] if isinstance(s, dict)),
            key=lambda s: self._to_int(s.get("index")) or 0,
        )

        size_bytes = self._to_int(fmt.get("size"))
        if size_bytes is None:
            try:
                size_bytes = file_path.stat().st_size
            except OSError:
                size_bytes = 0

        record = MediaFileRecord(
            path=file_path,
            filename=file_path.name,
            directory=file_path.parent,
            extension=file_path.suffix.lower(),
            size_bytes=size_bytes,
            duration=self._resolve_duration(fmt, streams),
            container=fmt.get("format_name"),
            bitrate=self._to_int(fmt.get("bit_rate")),
            video_streams=[self._parse_video_stream(s) for s in streams if s.get("codec_type") == "video"],
            audio_streams=[self._parse_audio_stream(s) for s in streams if s.get("codec_type") == "audio"],
            subtitle_streams=[self._parse_subtitle_stream(s) for s in streams if s.get("codec_type") == "subtitle"],
            scanned_at=time.time(),
        )
        self.logger.debug(
            f"Probed {file_path.name}: container={record.container}, "
            f"video={len(record.video_streams)}, audio={len(record.audio_streams)}, "
            f"subs={len(record.subtitle_streams)}"
        )
        return record
