import base64
import json
import logging
import mimetypes
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from werkzeug.utils import secure_filename

from .errors import (
    DownloadError,
    ProcessingError,
    TagWriteError,
    TaskCancelled,
    UploadError,
    ValidationError,
)
from .models.specs import PhaseBudget
from .models.task import SegmentDescriptor, Stage
from .services.ffmpeg import Transcoder, probe_duration
from .services.playlist import build_playlist
from .services.process import ProcessRunner
from .services.progress import ProgressReporter, ProgressSink
from .services.segmenter import Segmenter
from .services.storage import ObjectStorage
from .services.tagging import TrackTags, write_tags
from .services.wav_segments import MANIFEST_NAME, WavSegmentation, WavSegmenter, join_wav_parts, wav_segment_name
from .settings import PipelineConfig
from .utils.concurrency import ProgressCounter, bounded_map
from .utils.fs import WorkingArea, working_area

logger = logging.getLogger(__name__)

# Global percent schedule. Phases only ever see their own budget.
BUDGETS = {
    Stage.VALIDATING: PhaseBudget(10, 10),
    Stage.DOWNLOADING: PhaseBudget(15, 20),
    Stage.PROBING: PhaseBudget(25, 30),
    Stage.TRANSCODING: PhaseBudget(30, 45),
    Stage.TAGGING: PhaseBudget(45, 50),
    Stage.SEGMENTING: PhaseBudget(50, 70),
    Stage.WAV_SEGMENTING: PhaseBudget(70, 73),
    Stage.WAV_PREPARING: PhaseBudget(73, 75),
    Stage.PREPARING: PhaseBudget(75, 90),
    Stage.FINALIZING: PhaseBudget(95, 95),
}


@dataclass
class AudioJob:
    """One source file plus the optional track information to embed.

    One of ``data`` (uploaded bytes), ``source_ref`` (object storage
    reference) or ``wav_parts`` (client-cut WAV chunks, in order) must be set.
    ``cover_ref`` is only looked at when ``tags`` carries no cover bytes.
    """

    filename: str = "input.wav"
    mime_type: Optional[str] = None
    size: Optional[int] = None
    data: Optional[bytes] = None
    source_ref: Optional[str] = None
    cover_ref: Optional[str] = None
    tags: TrackTags = field(default_factory=TrackTags)
    wav_parts: List[Tuple[str, bytes]] = field(default_factory=list)
    wav_manifest: Optional[str] = None


class EmbeddedDelivery:
    """Return segment and final audio bytes inline, base64 encoded."""

    def segment(self, desc: SegmentDescriptor) -> Dict[str, Any]:
        return {"name": desc.name, "data": base64.b64encode(desc.data).decode("ascii")}

    def final_audio(self, data: bytes) -> str:
        return "data:audio/mpeg;base64," + base64.b64encode(data).decode("ascii")

    def manifest(self, name: str, text: str) -> Dict[str, Any]:
        return {"name": name, "data": text}


class StorageDelivery:
    """Upload segments and final audio, returning storage references."""

    def __init__(self, storage: ObjectStorage):
        self.storage = storage

    def segment(self, desc: SegmentDescriptor) -> Dict[str, Any]:
        try:
            ref = self.storage.upload(desc.data, desc.name)
        except OSError as e:
            raise UploadError(f"Could not store {desc.name}", details=str(e)) from e
        return {"name": desc.name, "reference": ref}

    def final_audio(self, data: bytes) -> str:
        try:
            return self.storage.upload(data, "final.mp3")
        except OSError as e:
            raise UploadError("Could not store the final MP3", details=str(e)) from e

    def manifest(self, name: str, text: str) -> Dict[str, Any]:
        try:
            ref = self.storage.upload(text.encode("utf-8"), name)
        except OSError as e:
            raise UploadError(f"Could not store {name}", details=str(e)) from e
        return {"name": name, "reference": ref}


def clock(seconds: float) -> str:
    total = int(round(seconds))
    return f"{total // 60}:{total % 60:02d}"


class Pipeline:
    """Run the WAV -> tagged MP3 -> segments -> playlist sequence for one task.

    Phases run strictly one after another inside a private working area that
    is removed whatever the outcome. Exactly one terminal event (complete or
    error) is emitted per run, after cleanup.
    """

    def __init__(
        self,
        config: PipelineConfig,
        runner: Optional[ProcessRunner] = None,
        storage: Optional[ObjectStorage] = None,
    ):
        self.config = config
        self.runner = runner or ProcessRunner(timeout=config.process_timeout_sec)
        self.storage = storage

    def run(
        self,
        task_id: str,
        job: AudioJob,
        sink: ProgressSink,
        delivery,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[Dict[str, Any]]:
        reporter = ProgressReporter(task_id, sink)
        cancel = cancel or threading.Event()
        logger.info("Task %s: processing %s", task_id, job.filename)
        try:
            with working_area(self.config.work_dir) as area:
                result = self._execute(job, area, reporter, delivery, cancel)
            reporter.complete(result)
            logger.info("Task %s: completed with %d segments", task_id, len(result["segments"]))
            return result
        except TaskCancelled as e:
            logger.info("Task %s: cancelled", task_id)
            reporter.fail(e.message, e.details)
        except ProcessingError as e:
            logger.error("Task %s: %s failed: %s", task_id, type(e).__name__, e.message)
            reporter.fail(e.message, e.details)
        except Exception as e:
            logger.exception("Task %s: unexpected failure", task_id)
            reporter.fail("Audio processing failed", str(e))
        finally:
            sink.close(task_id)
        return None

    def _execute(self, job, area: WorkingArea, reporter, delivery, cancel) -> Dict[str, Any]:
        cfg = self.config
        reporter.update(0, Stage.INIT.value, "init", "Initializing audio processing...")
        self._validate(job, reporter)
        _check(cancel)
        self._download(job, area, reporter)
        _check(cancel)
        self._probe(area, reporter, cancel)
        transcoder = Transcoder(self.runner, cfg.mp3, cfg.ffmpeg_bin, cfg.hwaccel)
        self._transcode(transcoder, area, reporter, cancel)
        _check(cancel)
        self._tag(job, area, reporter, cancel)
        _check(cancel)
        segments = self._segment(transcoder, area, reporter, cancel)
        _check(cancel)
        wav = None
        if job.wav_parts or cfg.wav_segments:
            wav = self._wav_segment(job, transcoder, area, reporter, cancel)
            wav = self._prepare_wav(wav, delivery, reporter, cancel)
        delivered = self._prepare(segments, delivery, reporter, cancel)
        _check(cancel)
        return self._finalize(area, segments, delivered, wav, delivery, reporter)

    # --- validation ---------------------------------------------------------
    def _validate(self, job: AudioJob, reporter: ProgressReporter):
        cfg = self.config
        mime = (job.mime_type or mimetypes.guess_type(job.filename)[0] or "").lower()
        if mime not in cfg.allowed_mime_types:
            raise ValidationError("File must be in WAV format", details=f"mime type: {mime or 'unknown'}")
        if job.size is not None:
            self._check_size(job.size)
        if job.data is None and not job.source_ref and not job.wav_parts:
            raise ValidationError("No audio file provided")
        reporter.update(BUDGETS[Stage.VALIDATING].start, Stage.VALIDATING.value, "validation",
                        "File validation passed, preparing for processing")

    def _check_size(self, size: int):
        if size <= 0:
            raise ValidationError("Audio file is empty")
        if size > self.config.max_file_bytes:
            raise ValidationError(
                f"File size must not exceed {self.config.max_file_mb}MB", details=f"size: {size} bytes"
            )

    # --- download -----------------------------------------------------------
    def _download(self, job: AudioJob, area: WorkingArea, reporter: ProgressReporter):
        budget = BUDGETS[Stage.DOWNLOADING]
        reporter.update(budget.start, Stage.DOWNLOADING.value, "saving", "Saving uploaded file to temporary storage")
        if job.wav_parts:
            self._check_size(sum(len(payload) for _, payload in job.wav_parts))
            parts = []
            for i, (_, payload) in enumerate(job.wav_parts):
                path = area.wav_segments / wav_segment_name(i)
                path.write_bytes(payload)
                parts.append(path)
            fmt = join_wav_parts(parts, area.source)
            logger.info("Joined %d client WAV segments (%s)", len(parts), fmt)
            data = None
        elif job.data is not None:
            data = job.data
        else:
            if self.storage is None:
                raise DownloadError("No storage configured to fetch the source file")
            try:
                data = self.storage.download(job.source_ref)
            except OSError as e:
                raise DownloadError("Could not download the audio file", details=str(e)) from e
        if data is not None:
            self._check_size(len(data))
            area.source.write_bytes(data)

        if job.cover_ref and not job.tags.cover and self.storage is not None:
            try:
                job.tags.cover = self.storage.download(job.cover_ref)
                job.tags.cover_mime = job.tags.cover_mime or mimetypes.guess_type(job.cover_ref)[0] or "image/jpeg"
            except OSError as e:
                logger.warning("Cover image %s unavailable, continuing without it: %s", job.cover_ref, e)
        reporter.update(budget.end, Stage.DOWNLOADING.value, "saving", "File saved successfully")

    # --- duration -----------------------------------------------------------
    def _probe(self, area: WorkingArea, reporter: ProgressReporter, cancel) -> float:
        cfg = self.config
        budget = BUDGETS[Stage.PROBING]
        reporter.update(budget.start, Stage.PROBING.value, "duration", "Analyzing audio file duration")
        duration = probe_duration(area.source, self.runner, cfg.ffprobe_bin, cancel=cancel)
        if duration > cfg.max_duration_sec:
            raise ValidationError(
                f"Audio duration must not exceed {cfg.max_duration_sec / 60:g} minutes",
                details=f"duration: {duration:.2f}s",
            )
        reporter.update(budget.end, Stage.PROBING.value, "duration", f"Audio duration: {clock(duration)}",
                        totalDuration=duration)
        return duration

    # --- transcode ----------------------------------------------------------
    def _transcode(self, transcoder: Transcoder, area: WorkingArea, reporter: ProgressReporter, cancel):
        budget = BUDGETS[Stage.TRANSCODING]
        stage = Stage.TRANSCODING.value
        reporter.update(budget.start, stage, "conversion", "Starting audio conversion to MP3...")

        def on_progress(fraction, position, duration):
            pct = round(fraction * 100)
            reporter.update(
                budget.scale(fraction), stage, "conversion",
                f"Conversion progress: {pct}% ({clock(position)} from {clock(duration)})",
                progress=round(fraction * 100, 1),
                conversionProgress=f"{pct}%",
                currentTime=position,
                totalDuration=duration,
            )

        transcoder.transcode(area.source, area.transcoded, on_progress=on_progress, cancel=cancel)
        reporter.update(budget.end, "Conversion complete", "conversion", "Audio successfully converted to MP3",
                        progress=100, conversionProgress="100%")

    # --- metadata -----------------------------------------------------------
    def _tag(self, job: AudioJob, area: WorkingArea, reporter: ProgressReporter, cancel):
        if not job.tags.has_content():
            return
        cfg = self.config
        budget = BUDGETS[Stage.TAGGING]
        reporter.update(budget.start, Stage.TAGGING.value, "metadata", "Adding track information...")
        try:
            write_tags(area.transcoded, job.tags, self.runner, cfg.tag_comment, ffmpeg=cfg.ffmpeg_bin, cancel=cancel)
        except TagWriteError as e:
            logger.warning("Tagging skipped: %s (%s)", e.message, e.details)
            reporter.update(budget.end, "Metadata skipped", "metadata", "Track information could not be added")
            return
        reporter.update(budget.end, "Metadata Added", "metadata", "Track information successfully added")

    # --- segmentation -------------------------------------------------------
    def _segment(self, transcoder: Transcoder, area: WorkingArea, reporter: ProgressReporter, cancel):
        cfg = self.config
        budget = BUDGETS[Stage.SEGMENTING]
        stage = Stage.SEGMENTING.value
        reporter.update(budget.start, stage, "segmentation", "Preparing to create audio segments...")

        def on_progress(done, total):
            reporter.update(
                budget.scale(done / total), stage, "segmentation",
                f"Segment creation progress: {round(done / total * 100)}% ({done}/{total})",
                segmentProgress=done / total * 100,
                totalSegments=total,
                currentSegment=done,
            )

        segmenter = Segmenter(transcoder, cfg.segment_seconds, cfg.segment_concurrency, cfg.ffprobe_bin)
        segments = segmenter.split(area.transcoded, area.segments, on_progress=on_progress, cancel=cancel)
        reporter.update(budget.end, "Segmentation complete", "segmentation",
                        f"Created {len(segments)} segments successfully",
                        segmentProgress=100, totalSegments=len(segments), currentSegment=len(segments))
        return segments

    # --- WAV chunks ---------------------------------------------------------
    def _wav_segment(self, job: AudioJob, transcoder: Transcoder, area: WorkingArea, reporter, cancel):
        cfg = self.config
        budget = BUDGETS[Stage.WAV_SEGMENTING]
        stage = Stage.WAV_SEGMENTING.value
        if job.wav_parts:
            segments = [
                SegmentDescriptor(i, secure_filename(name) or wav_segment_name(i), area.wav_segments / wav_segment_name(i))
                for i, (name, _) in enumerate(job.wav_parts)
            ]
            manifest = None
            if job.wav_manifest:
                try:
                    json.loads(job.wav_manifest)
                    manifest = job.wav_manifest
                except ValueError as e:
                    logger.warning("Ignoring unreadable WAV manifest from client: %s", e)
            reporter.update(budget.end, "WAV segments processed", "clientSegments",
                            f"Using {len(segments)} WAV segments from client")
            return WavSegmentation(segments, manifest)

        reporter.update(budget.start, stage, "wavSegmentation", "Preparing to split WAV file into segments...")

        def on_progress(done, total):
            reporter.update(
                budget.scale(done / total), stage, "wavSegmentation",
                f"WAV segmentation progress: {round(done / total * 100)}% ({done}/{total})",
                segmentProgress=done / total * 100,
                totalSegments=total,
                currentSegment=done,
            )

        segmenter = WavSegmenter(transcoder, cfg.wav_segment_max_bytes, cfg.wav_segment_concurrency, cfg.ffprobe_bin)
        wav = segmenter.split(area.source, area.wav_segments, on_progress=on_progress, cancel=cancel)
        total = len(wav.segments)
        reporter.update(budget.end, "WAV segmentation complete", "wavSegmentation",
                        f"Created {total} WAV segments and manifest file",
                        segmentProgress=100, totalSegments=total, currentSegment=total)
        return wav

    def _prepare_wav(self, wav: WavSegmentation, delivery, reporter, cancel) -> Dict[str, Any]:
        budget = BUDGETS[Stage.WAV_PREPARING]
        items = self._materialize(
            wav.segments, delivery, reporter, cancel, budget, Stage.WAV_PREPARING.value,
            "wavPreparation", "WAV", self.config.wav_prepare_concurrency,
        )
        manifest = delivery.manifest(MANIFEST_NAME, wav.manifest) if wav.manifest else None
        return {"segments": items, "manifest": manifest}

    # --- segment materialization --------------------------------------------
    def _prepare(self, segments: List[SegmentDescriptor], delivery, reporter: ProgressReporter, cancel):
        return self._materialize(
            segments, delivery, reporter, cancel, BUDGETS[Stage.PREPARING], Stage.PREPARING.value,
            "preparation", "MP3", self.config.prepare_concurrency,
        )

    def _materialize(self, segments, delivery, reporter, cancel, budget, stage, kind, label, limit):
        """Read each segment file and hand it to ``delivery``, ``limit`` at a time."""
        reporter.update(budget.start, stage, kind, f"Preparing {label} segment data for client...")
        counter = ProgressCounter(len(segments))

        def materialize(desc: SegmentDescriptor):
            try:
                desc.data = desc.path.read_bytes()
            except OSError as e:
                raise ProcessingError(f"Failed to read segment {desc.name}", details=str(e)) from e
            item = delivery.segment(desc)
            done = counter.increment()
            reporter.update(
                budget.scale(done / counter.total), stage, kind,
                f"{label} segments prepared: {done} of {counter.total} ({round(done / counter.total * 100)}%)",
                preparationProgress=done / counter.total * 100,
            )
            return item

        delivered = bounded_map(materialize, segments, limit, cancel=cancel)
        reporter.update(budget.end, f"{label} segments prepared", kind, f"All {label} segments prepared for client",
                        preparationProgress=100)
        return delivered

    # --- finalize -----------------------------------------------------------
    def _finalize(self, area: WorkingArea, segments, delivered, wav, delivery, reporter: ProgressReporter):
        budget = BUDGETS[Stage.FINALIZING]
        reporter.update(budget.start, Stage.FINALIZING.value, "playlist", "Creating M3U8 playlist template")
        playlist = build_playlist(segments, self.config.segment_seconds)
        final_audio = delivery.final_audio(Path(area.transcoded).read_bytes())
        result = {"segments": delivered, "finalAudio": final_audio, "playlist": playlist}
        if wav is not None:
            result["wavSegments"] = wav["segments"]
            result["wavManifest"] = wav["manifest"]
        return result


def _check(cancel: Optional[threading.Event]):
    if cancel is not None and cancel.is_set():
        raise TaskCancelled("Processing cancelled")


__all__ = [
    "AudioJob",
    "BUDGETS",
    "EmbeddedDelivery",
    "Pipeline",
    "StorageDelivery",
    "clock",
]
