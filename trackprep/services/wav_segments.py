"""Size-capped PCM WAV chunks of the source, plus the manifest describing them.

The chunks let a client re-upload or play the lossless source piecewise.
Chunk length is derived from the source byte rate so that no chunk exceeds
``max_bytes`` (4.3 MB by default), but it is never shorter than five seconds.
"""
import json
import logging
import math
import threading
import wave
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from ..errors import (
    DurationProbeError,
    ProcessCancelledError,
    ProcessError,
    SegmentationError,
    TaskCancelled,
    ValidationError,
)
from ..models.specs import PcmSpec
from ..models.task import SegmentDescriptor
from ..utils.concurrency import ProgressCounter, bounded_map
from .ffmpeg import DURATION_EPSILON, MIN_DURATION, Transcoder, error_details
from .process import ProcessRunner

logger = logging.getLogger(__name__)

MAX_WAV_SEGMENT_BYTES = int(4.3 * 1024 * 1024)
MIN_WAV_SEGMENT_SECONDS = 5
MANIFEST_NAME = "wav_manifest.json"
OUTPUT_BITS = 16


def wav_segment_name(index: int) -> str:
    return f"wav_segment_{index:03d}.wav"


@dataclass
class WavFormat:
    duration: float
    bit_rate: int
    sample_rate: int = 44100
    channels: int = 2
    bits_per_sample: int = 16

    @property
    def bytes_per_second(self) -> float:
        return self.bit_rate / 8


@dataclass
class WavSegmentation:
    segments: List[SegmentDescriptor]
    manifest: Optional[str] = None


def _int(value, default: int) -> int:
    try:
        return int(float(value)) or default
    except (TypeError, ValueError):
        return default


def probe_wav_format(
    path: Path,
    runner: ProcessRunner,
    ffprobe: str = "ffprobe",
    cancel: Optional[threading.Event] = None,
) -> WavFormat:
    try:
        proc = runner.run(
            ffprobe,
            [
                "-v", "error",
                "-show_entries", "format=duration,bit_rate,size",
                "-show_entries", "stream=codec_name,codec_type,sample_rate,channels,bits_per_sample",
                "-of", "json",
                str(path),
            ],
            cancel=cancel,
        )
    except ProcessCancelledError as e:
        raise TaskCancelled("Processing cancelled") from e
    except ProcessError as e:
        raise DurationProbeError("Could not read the WAV format", details=error_details(e)) from e

    try:
        info = json.loads(proc.stdout or "{}")
    except ValueError as e:
        raise DurationProbeError("Could not read the WAV format", details=proc.stdout[:500]) from e
    if not isinstance(info, dict):
        raise DurationProbeError("Could not read the WAV format", details=proc.stdout[:500])

    fmt = info.get("format") or {}
    stream = next((s for s in info.get("streams") or [] if s.get("codec_type") == "audio"), {})
    try:
        duration = float(fmt.get("duration"))
    except (TypeError, ValueError):
        duration = 0.0
    if duration <= DURATION_EPSILON:
        duration = MIN_DURATION
    sample_rate = _int(stream.get("sample_rate"), 44100)
    channels = _int(stream.get("channels"), 2)
    bits = _int(stream.get("bits_per_sample"), 16)
    bit_rate = _int(fmt.get("bit_rate"), sample_rate * channels * bits)
    return WavFormat(duration, bit_rate, sample_rate, channels, bits)


def wav_segment_seconds(fmt: WavFormat, max_bytes: int = MAX_WAV_SEGMENT_BYTES) -> int:
    return max(MIN_WAV_SEGMENT_SECONDS, math.floor(max_bytes / fmt.bytes_per_second))


class WavSegmenter:
    """Cut the source WAV into chunks of at most ``max_bytes`` each."""

    def __init__(
        self,
        transcoder: Transcoder,
        max_bytes: int = MAX_WAV_SEGMENT_BYTES,
        concurrency: int = 2,
        ffprobe: str = "ffprobe",
    ):
        self.transcoder = transcoder
        self.max_bytes = max_bytes
        self.concurrency = concurrency
        self.ffprobe = ffprobe

    def split(
        self,
        src: Path,
        out_dir: Path,
        on_progress: Optional[Callable[[int, int], None]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> WavSegmentation:
        fmt = probe_wav_format(src, self.transcoder.runner, self.ffprobe, cancel=cancel)
        length = wav_segment_seconds(fmt, self.max_bytes)
        total = max(1, math.ceil(fmt.duration / length))
        output_args = PcmSpec(fmt.sample_rate, fmt.channels).ffmpeg_args()
        counter = ProgressCounter(total)
        logger.info("Cutting %.2fs of WAV into %d chunks of %ds", fmt.duration, total, length)

        plan = []
        for i in range(total):
            start = i * length
            plan.append((
                SegmentDescriptor(i, wav_segment_name(i), Path(out_dir) / wav_segment_name(i)),
                start,
                min(length, fmt.duration - start) if i == total - 1 else length,
            ))

        def make(item):
            desc, start, seconds = item
            try:
                self.transcoder.trim(src, desc.path, start, seconds, cancel=cancel, output_args=output_args)
            except ProcessCancelledError as e:
                raise TaskCancelled("Processing cancelled") from e
            except ProcessError as e:
                raise SegmentationError(
                    desc.index, f"Failed to create WAV segment {desc.index}", details=error_details(e)
                ) from e
            done = counter.increment()
            if on_progress is not None:
                on_progress(done, total)
            return {"start": start, "duration": seconds, "fileName": desc.name}

        entries = bounded_map(make, plan, self.concurrency, cancel=cancel)
        manifest = {
            "originalFile": Path(src).name,
            "totalDuration": fmt.duration,
            "format": {
                "sampleRate": fmt.sample_rate,
                "channels": fmt.channels,
                "bitsPerSample": OUTPUT_BITS,
            },
            "segments": entries,
        }
        return WavSegmentation([desc for desc, _, _ in plan], json.dumps(manifest, indent=2))


def join_wav_parts(parts: Sequence[Path], dst: Path) -> Dict[str, Any]:
    """Concatenate client-cut WAV chunks into ``dst``.

    All chunks must share channel count, sample width and rate.
    """
    if not parts:
        raise ValidationError("No WAV segments provided")
    params = None
    try:
        with wave.open(str(dst), "wb") as out:
            for part in parts:
                with wave.open(str(part), "rb") as chunk:
                    p = (chunk.getnchannels(), chunk.getsampwidth(), chunk.getframerate())
                    if params is None:
                        params = p
                        out.setnchannels(p[0])
                        out.setsampwidth(p[1])
                        out.setframerate(p[2])
                    elif p != params:
                        raise ValidationError(
                            "WAV segments must share one format", details=f"{part.name}: {p} != {params}"
                        )
                    out.writeframes(chunk.readframes(chunk.getnframes()))
    except (wave.Error, EOFError) as e:
        raise ValidationError("WAV segments must be PCM WAV files", details=str(e)) from e
    return {"channels": params[0], "sampleWidth": params[1], "sampleRate": params[2]}
