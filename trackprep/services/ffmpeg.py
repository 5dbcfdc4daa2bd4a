import logging
import os
import re
import threading
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import (
    DurationProbeError,
    ProcessCancelledError,
    ProcessError,
    ProcessExitError,
    TaskCancelled,
    TranscodeError,
)
from ..models import specs
from .process import ProcessRunner

logger = logging.getLogger(__name__)

DURATION_RE = re.compile(r"Duration:\s*(\d+):(\d+):(\d+(?:\.\d+)?)")
TIME_RE = re.compile(r"time=\s*(\d+):(\d+):(\d+(?:\.\d+)?)")

# Probes at or under the epsilon report the floor duration instead of failing,
# so very short or malformed clips still go through the pipeline.
DURATION_EPSILON = 0.01
MIN_DURATION = 0.5

ProgressCallback = Callable[[float, float, float], None]


def hms_to_seconds(hours: str, minutes: str, seconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def error_details(exc: BaseException) -> str:
    if isinstance(exc, ProcessExitError) and exc.stderr:
        return exc.stderr[-2000:]
    return str(exc)


def probe_duration(
    path: Path,
    runner: ProcessRunner,
    ffprobe: str = "ffprobe",
    cancel: Optional[threading.Event] = None,
) -> float:
    """Return the container duration of ``path`` in seconds."""
    try:
        proc = runner.run(
            ffprobe,
            [
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                str(path),
            ],
            cancel=cancel,
        )
    except ProcessCancelledError as e:
        raise TaskCancelled("Processing cancelled") from e
    except ProcessError as e:
        raise DurationProbeError("Could not determine audio duration", details=error_details(e)) from e

    text = proc.stdout.strip()
    try:
        duration = float(text.splitlines()[0]) if text else 0.0
    except ValueError:
        # ffprobe prints N/A when the container has no duration field
        duration = 0.0
    if duration <= DURATION_EPSILON:
        logger.warning("No usable duration for %s (%r), assuming %.1fs", path, text, MIN_DURATION)
        return MIN_DURATION
    return duration


class TranscodeProgress:
    """Scan ffmpeg's status stream for the input duration and current position."""

    def __init__(self, on_progress: Optional[ProgressCallback] = None):
        self.on_progress = on_progress
        self.duration = 0.0
        self.position = 0.0

    def reset(self):
        self.duration = 0.0
        self.position = 0.0

    def feed(self, line: str):
        if not self.duration:
            m = DURATION_RE.search(line)
            if m:
                self.duration = hms_to_seconds(*m.groups())
        m = TIME_RE.search(line)
        if m and self.duration > 0:
            self.position = hms_to_seconds(*m.groups())
            fraction = min(1.0, self.position / self.duration)
            if self.on_progress is not None:
                self.on_progress(fraction, self.position, self.duration)


class Transcoder:
    """Encode audio to the fixed MP3 profile.

    Hardware acceleration is only a request: when ffmpeg rejects it the
    command is repeated without it, and later calls on the same instance
    skip it.
    """

    def __init__(
        self,
        runner: ProcessRunner,
        spec: specs.Mp3Spec = specs.default_mp3,
        ffmpeg: str = "ffmpeg",
        hwaccel: bool = True,
    ):
        self.runner = runner
        self.spec = spec
        self.ffmpeg = ffmpeg
        self.hwaccel = hwaccel
        self._lock = threading.Lock()

    def _command(self, src: Path, dst: Path, window: List[str], output_args: List[str], hwaccel: bool) -> List[str]:
        cmd = ["-hide_banner", "-nostdin", "-y"]
        if hwaccel:
            cmd += ["-hwaccel", "auto"]
        cmd += ["-i", str(src)]
        cmd += window
        cmd += output_args
        cmd += [str(dst)]
        return cmd

    def _run(self, src, dst, window, output_args=None, on_line=None, cancel=None, reset=None):
        output_args = output_args if output_args is not None else self.spec.ffmpeg_args()
        with self._lock:
            hwaccel = self.hwaccel
        cmd = self._command(src, dst, window, output_args, hwaccel)
        try:
            return self.runner.run(self.ffmpeg, cmd, on_line=on_line, cancel=cancel)
        except ProcessExitError as e:
            # only the command that asked for it can be blamed on it
            if not hwaccel or "hwaccel" not in e.stderr.lower():
                raise
            with self._lock:
                if self.hwaccel:
                    logger.warning("Hardware acceleration rejected by %s, using software decoding", self.ffmpeg)
                    self.hwaccel = False
            if reset is not None:
                reset()
            cmd = self._command(src, dst, window, output_args, False)
            return self.runner.run(self.ffmpeg, cmd, on_line=on_line, cancel=cancel)

    def transcode(
        self,
        src: Path,
        dst: Path,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Path:
        """Encode ``src`` into ``dst``.

        ``on_progress`` receives ``(fraction, position, duration)`` every
        time ffmpeg reports a new position. ``dst`` only appears once the
        encode succeeded.
        """
        dst = Path(dst)
        part = dst.with_name(dst.name + ".part")
        tracker = TranscodeProgress(on_progress)
        try:
            self._run(src, part, [], on_line=tracker.feed, cancel=cancel, reset=tracker.reset)
            if not part.exists() or part.stat().st_size == 0:
                raise TranscodeError("Audio conversion produced no output")
            os.replace(part, dst)
        except ProcessCancelledError as e:
            raise TaskCancelled("Processing cancelled") from e
        except ProcessError as e:
            raise TranscodeError("Audio conversion to MP3 failed", details=error_details(e)) from e
        finally:
            if part.exists():
                part.unlink()
        return dst

    def trim(
        self,
        src: Path,
        dst: Path,
        start: float,
        length: float,
        cancel: Optional[threading.Event] = None,
        output_args: Optional[List[str]] = None,
    ) -> Path:
        """Encode the ``[start, start + length)`` window of ``src`` into ``dst``.

        ``output_args`` replaces the MP3 profile, e.g. to cut PCM WAV chunks.
        Raises the process error unchanged; the caller decides how to report it.
        """
        window = ["-ss", f"{start:g}", "-t", f"{length:g}"]
        self._run(src, dst, window, output_args=output_args, cancel=cancel)
        return Path(dst)

