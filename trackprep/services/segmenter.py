import logging
import math
import threading
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import ProcessCancelledError, ProcessError, SegmentationError, TaskCancelled
from ..models.task import SegmentDescriptor
from ..utils.concurrency import ProgressCounter, bounded_map
from .ffmpeg import Transcoder, error_details, probe_duration

logger = logging.getLogger(__name__)

SegmentProgress = Callable[[int, int], None]


def segment_count(duration: float, segment_seconds: float) -> int:
    return max(1, math.ceil(duration / segment_seconds))


class Segmenter:
    """Cut an MP3 into fixed-length, index-named chunks.

    Trims run in parallel, at most ``concurrency`` ffmpeg processes at a
    time. Any failed trim fails the whole split.
    """

    def __init__(
        self,
        transcoder: Transcoder,
        segment_seconds: int = 10,
        concurrency: int = 3,
        ffprobe: str = "ffprobe",
    ):
        self.transcoder = transcoder
        self.segment_seconds = segment_seconds
        self.concurrency = concurrency
        self.ffprobe = ffprobe

    def plan(self, out_dir: Path, duration: float) -> List[SegmentDescriptor]:
        total = segment_count(duration, self.segment_seconds)
        return [
            SegmentDescriptor(index=i, name=SegmentDescriptor.name_for(i), path=Path(out_dir) / SegmentDescriptor.name_for(i))
            for i in range(total)
        ]

    def split(
        self,
        mp3_path: Path,
        out_dir: Path,
        on_progress: Optional[SegmentProgress] = None,
        cancel: Optional[threading.Event] = None,
    ) -> List[SegmentDescriptor]:
        duration = probe_duration(mp3_path, self.transcoder.runner, self.ffprobe, cancel=cancel)
        descriptors = self.plan(out_dir, duration)
        counter = ProgressCounter(len(descriptors))
        logger.info("Splitting %.2fs into %d segments of %ds", duration, counter.total, self.segment_seconds)

        def make(desc: SegmentDescriptor) -> SegmentDescriptor:
            start = desc.index * self.segment_seconds
            try:
                self.transcoder.trim(mp3_path, desc.path, start, self.segment_seconds, cancel=cancel)
            except ProcessCancelledError as e:
                raise TaskCancelled("Processing cancelled") from e
            except ProcessError as e:
                raise SegmentationError(
                    desc.index, f"Failed to create segment {desc.index}", details=error_details(e)
                ) from e
            done = counter.increment()
            if on_progress is not None:
                on_progress(done, counter.total)
            return desc

        return bounded_map(make, descriptors, self.concurrency, cancel=cancel)
