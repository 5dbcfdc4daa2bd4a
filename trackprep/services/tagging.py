import logging
import mimetypes
import os
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..errors import ProcessCancelledError, ProcessError, TagWriteError, TaskCancelled
from .ffmpeg import error_details
from .process import ProcessRunner

logger = logging.getLogger(__name__)


@dataclass
class TrackTags:
    title: Optional[str] = None
    artist: Optional[str] = None
    genre: Optional[str] = None
    cover: Optional[bytes] = None
    cover_mime: Optional[str] = None

    def has_content(self) -> bool:
        return bool(self.title or self.artist or self.genre or self.cover)


def _cover_suffix(mime: Optional[str]) -> str:
    ext = mimetypes.guess_extension(mime or "") or ".jpg"
    return ".jpg" if ext in (".jpe", ".jpeg") else ext


def write_tags(
    mp3_path: Path,
    tags: TrackTags,
    runner: ProcessRunner,
    comment: str,
    ffmpeg: str = "ffmpeg",
    year: Optional[int] = None,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Embed ID3 tags (and cover art) into ``mp3_path`` in place.

    Returns ``False`` without touching the file when there is nothing worth
    tagging. The year defaults to the current one and ``comment`` is always
    written.
    """
    if not tags.has_content():
        return False

    mp3_path = Path(mp3_path)
    part = mp3_path.with_name(mp3_path.stem + ".tagged.mp3.part")
    cover_path = None
    cmd: List[str] = ["-hide_banner", "-nostdin", "-y", "-i", str(mp3_path)]
    try:
        if tags.cover:
            cover_path = mp3_path.with_name("cover" + _cover_suffix(tags.cover_mime))
            cover_path.write_bytes(tags.cover)
            cmd += ["-i", str(cover_path), "-map", "0:a", "-map", "1:0"]
        else:
            cmd += ["-map", "0:a"]
        cmd += ["-c", "copy", "-id3v2_version", "3"]
        for key, value in (("title", tags.title), ("artist", tags.artist), ("genre", tags.genre)):
            if value:
                cmd += ["-metadata", f"{key}={value}"]
        cmd += ["-metadata", f"date={year or datetime.now().year}"]
        cmd += ["-metadata", f"comment={comment}"]
        if cover_path is not None:
            cmd += ["-metadata:s:v", "title=Album cover", "-metadata:s:v", "comment=Cover (front)"]
        cmd += ["-f", "mp3", str(part)]

        runner.run(ffmpeg, cmd, cancel=cancel)
        os.replace(part, mp3_path)
    except ProcessCancelledError as e:
        raise TaskCancelled("Processing cancelled") from e
    except ProcessError as e:
        raise TagWriteError("Could not write track metadata", details=error_details(e)) from e
    except OSError as e:
        raise TagWriteError("Could not write track metadata", details=str(e)) from e
    finally:
        if part.exists():
            part.unlink()
        if cover_path is not None and cover_path.exists():
            cover_path.unlink()
    logger.info("Tagged %s", mp3_path.name)
    return True
