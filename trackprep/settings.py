import os
import tempfile
from dataclasses import dataclass, field
from typing import Tuple

from .models.specs import Mp3Spec


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


DEFAULT_MIME_TYPES = ("audio/wav", "audio/x-wav", "audio/wave", "audio/vnd.wave")


@dataclass(frozen=True)
class PipelineConfig:
    max_duration_sec: float = 720.0
    segment_seconds: int = 10
    mp3: Mp3Spec = field(default_factory=Mp3Spec)
    segment_concurrency: int = 3
    prepare_concurrency: int = 4
    wav_segments: bool = True
    wav_segment_max_mb: float = 4.3
    wav_segment_concurrency: int = 2
    wav_prepare_concurrency: int = 3
    hwaccel: bool = True
    max_file_mb: int = 200
    allowed_mime_types: Tuple[str, ...] = DEFAULT_MIME_TYPES
    process_timeout_sec: float = 1200.0
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    work_dir: str = tempfile.gettempdir()
    storage_dir: str = os.path.join(tempfile.gettempdir(), "trackprep-storage")
    task_ttl_minutes: int = 60
    tag_comment: str = "Processed with TrackPrep"
    log_level: str = "INFO"
    log_dir: str = "logs"
    debug: bool = False

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024

    @property
    def wav_segment_max_bytes(self) -> int:
        return int(self.wav_segment_max_mb * 1024 * 1024)

    @classmethod
    def from_env(cls) -> "PipelineConfig":
        work_dir = os.getenv("WORK_DIR", tempfile.gettempdir())
        mimes = os.getenv("ALLOWED_MIME_TYPES")
        return cls(
            max_duration_sec=float(os.getenv("MAX_DURATION_SEC", "720")),
            segment_seconds=int(os.getenv("SEGMENT_SECONDS", "10")),
            mp3=Mp3Spec(
                sr=int(os.getenv("MP3_SAMPLE_RATE", "44100")),
                channels=int(os.getenv("MP3_CHANNELS", "2")),
                bitrate=os.getenv("MP3_BITRATE", "192k"),
            ),
            segment_concurrency=int(os.getenv("SEGMENT_CONCURRENCY", "3")),
            prepare_concurrency=int(os.getenv("PREPARE_CONCURRENCY", "4")),
            wav_segments=_env_bool("WAV_SEGMENTS", "true"),
            wav_segment_max_mb=float(os.getenv("WAV_SEGMENT_MAX_MB", "4.3")),
            wav_segment_concurrency=int(os.getenv("WAV_SEGMENT_CONCURRENCY", "2")),
            wav_prepare_concurrency=int(os.getenv("WAV_PREPARE_CONCURRENCY", "3")),
            hwaccel=_env_bool("HWACCEL", "true"),
            max_file_mb=int(os.getenv("MAX_FILE_MB", "200")),
            allowed_mime_types=tuple(m.strip() for m in mimes.split(",") if m.strip()) if mimes else DEFAULT_MIME_TYPES,
            process_timeout_sec=float(os.getenv("PROCESS_TIMEOUT_SEC", "1200")),
            ffmpeg_bin=os.getenv("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin=os.getenv("FFPROBE_BIN", "ffprobe"),
            work_dir=work_dir,
            storage_dir=os.getenv("STORAGE_DIR", os.path.join(work_dir, "trackprep-storage")),
            task_ttl_minutes=int(os.getenv("TASK_TTL_MINUTES", "60")),
            tag_comment=os.getenv("TAG_COMMENT", "Processed with TrackPrep"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            log_dir=os.getenv("LOG_DIR", "logs"),
            debug=_env_bool("DEBUG", "false"),
        )
