import logging
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator

from ..errors import CleanupError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingArea:
    """Scratch directory owned by a single task."""

    root: Path

    @property
    def source(self) -> Path:
        return self.root / "input.wav"

    @property
    def transcoded(self) -> Path:
        return self.root / "output.mp3"

    @property
    def segments(self) -> Path:
        return self.root / "segments"

    @property
    def wav_segments(self) -> Path:
        return self.root / "wav_segments"


def remove_working_area(area: WorkingArea) -> bool:
    """Delete ``area``. Failures are logged and reported as ``False``."""
    try:
        shutil.rmtree(area.root)
    except FileNotFoundError:
        return True
    except OSError as e:
        err = CleanupError("Could not remove working area", details=str(e))
        logger.warning("%s %s: %s", err.message, area.root, err.details)
        return False
    return True


@contextmanager
def working_area(base_dir=None) -> Iterator[WorkingArea]:
    if base_dir is not None:
        Path(base_dir).mkdir(parents=True, exist_ok=True)
    area = WorkingArea(Path(tempfile.mkdtemp(prefix="audio-", dir=base_dir)))
    try:
        area.segments.mkdir()
        area.wav_segments.mkdir()
        yield area
    finally:
        remove_working_area(area)
