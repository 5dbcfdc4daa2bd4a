from dataclasses import dataclass


@dataclass(frozen=True)
class Mp3Spec:
    sr: int = 44100
    channels: int = 2
    bitrate: str = "192k"

    def ffmpeg_args(self) -> list:
        return [
            "-vn",
            "-ar", str(self.sr),
            "-ac", str(self.channels),
            "-b:a", self.bitrate,
            "-threads", "0",
            "-f", "mp3",
        ]


@dataclass(frozen=True)
class PhaseBudget:
    """Percent sub-range a phase may report progress within."""

    start: float
    end: float

    @property
    def span(self) -> float:
        return self.end - self.start

    def scale(self, fraction: float) -> float:
        fraction = min(1.0, max(0.0, fraction))
        return self.start + fraction * self.span


default_mp3 = Mp3Spec()


@dataclass(frozen=True)
class PcmSpec:
    """16-bit PCM WAV chunks keeping the source rate and channel count."""

    sr: int = 44100
    channels: int = 2

    def ffmpeg_args(self) -> list:
        return [
            "-vn",
            "-c:a", "pcm_s16le",
            "-ar", str(self.sr),
            "-ac", str(self.channels),
            "-threads", "0",
            "-f", "wav",
        ]
