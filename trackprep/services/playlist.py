from typing import Sequence

from ..errors import PlaylistError
from ..models.task import SegmentDescriptor

PLACEHOLDER = "SEGMENT_PLACEHOLDER_{index}"


def placeholder(index: int) -> str:
    return PLACEHOLDER.format(index=index)


def build_playlist(segments: Sequence[SegmentDescriptor], nominal_duration: float) -> str:
    """Render an HLS media playlist with one placeholder per segment.

    Placeholders are substituted with real segment URLs by the caller after
    upload. The text has no trailing newline after ``#EXT-X-ENDLIST``.
    """
    if not segments:
        raise PlaylistError("Cannot build a playlist without segments")
    indices = [s.index for s in segments]
    if indices != list(range(len(segments))):
        raise PlaylistError("Segment indices must be contiguous from 0", details=repr(indices))
    if nominal_duration <= 0:
        raise PlaylistError("Segment duration must be positive")

    lines = [
        "#EXTM3U",
        "#EXT-X-VERSION:3",
        "#EXT-X-MEDIA-SEQUENCE:0",
        "#EXT-X-ALLOW-CACHE:YES",
        f"#EXT-X-TARGETDURATION:{nominal_duration:g}",
    ]
    for seg in segments:
        lines.append(f"#EXTINF:{float(nominal_duration):.1f},")
        lines.append(placeholder(seg.index))
    lines.append("#EXT-X-ENDLIST")
    return "\n".join(lines)
