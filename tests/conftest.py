import io
import json
import os
import sys
import threading
import time
from pathlib import Path

import numpy as np
import soundfile as sf
import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from trackprep import create_app
from trackprep.errors import ProcessCancelledError, ProcessExitError
from trackprep.services.process import ProcessResult
from trackprep.services.progress import ProgressSink
from trackprep.services.storage import LocalStorage
from trackprep.settings import PipelineConfig


def _hms(seconds):
    return f"{int(seconds // 3600):02d}:{int(seconds % 3600 // 60):02d}:{seconds % 60:05.2f}"


class FakeRunner:
    """Scripted stand-in for ffmpeg/ffprobe.

    ``failures`` maps a call kind (probe, wavprobe, transcode, tag, trim,
    wavtrim) to an exception, or to a list of exceptions consumed one per
    call. ``hold`` names a kind that blocks until ``release`` is set or the
    call is cancelled, in which case ``cancelled`` is set.
    """

    def __init__(self, duration=25.0, probe_output=None, write_output=True, trim_delay=0.0):
        self.duration = duration
        self.probe_output = probe_output
        self.write_output = write_output
        self.trim_delay = trim_delay
        self.failures = {}
        self.fail_trim_start = None
        self.hold = None
        self.entered = threading.Event()
        self.release = threading.Event()
        self.cancelled = threading.Event()
        self.calls = []
        self.max_active_trims = 0
        self._active_trims = 0
        self._lock = threading.Lock()

    @staticmethod
    def kind_of(program, args):
        if program.endswith("ffprobe"):
            return "wavprobe" if "json" in args else "probe"
        if "-ss" in args and "pcm_s16le" in args:
            return "wavtrim"
        if "-ss" in args:
            return "trim"
        if "-id3v2_version" in args:
            return "tag"
        return "transcode"

    def calls_of(self, kind):
        return [args for k, args in self.calls if k == kind]

    def _failure(self, kind):
        exc = self.failures.get(kind)
        if isinstance(exc, list):
            return exc.pop(0) if exc else None
        return exc

    def run(self, program, args, on_line=None, cancel=None, timeout=None):
        args = [str(a) for a in args]
        kind = self.kind_of(program, args)
        with self._lock:
            self.calls.append((kind, args))
        if cancel is not None and cancel.is_set():
            raise ProcessCancelledError(f"{program} not started: task cancelled")

        if self.hold == kind:
            self.entered.set()
            while not self.release.wait(0.01):
                if cancel is not None and cancel.is_set():
                    self.cancelled.set()
                    raise ProcessCancelledError(f"{program} killed: task cancelled")

        if kind == "trim":
            return self._trim(program, args)

        exc = self._failure(kind)
        if exc is not None:
            raise exc

        if kind == "probe":
            out = self.probe_output if self.probe_output is not None else f"{self.duration:.6f}\n"
            return ProcessResult(program, 0, out, "")

        if kind == "wavprobe":
            info = {
                "format": {"duration": f"{self.duration:.6f}", "bit_rate": "1411200"},
                "streams": [
                    {"codec_type": "audio", "sample_rate": "44100", "channels": 2, "bits_per_sample": 16}
                ],
            }
            return ProcessResult(program, 0, json.dumps(info), "")

        if kind == "wavtrim":
            start = float(args[args.index("-ss") + 1])
            Path(args[-1]).write_bytes(f"RIFFwav-{start:g}".encode())
            return ProcessResult(program, 0, "", "")

        if kind == "transcode" and on_line is not None:
            on_line(f"  Duration: {_hms(self.duration)}, start: 0.000000, bitrate: 1411 kb/s")
            on_line(f"size=     128kB time={_hms(self.duration / 2)} bitrate= 192.0kbits/s speed=40x")
            on_line(f"size=     512kB time={_hms(self.duration)} bitrate= 192.0kbits/s speed=41x")
        if self.write_output:
            Path(args[-1]).write_bytes(b"ID3" + kind.encode() + b"-mp3-data")
        return ProcessResult(program, 0, "", "")

    def _trim(self, program, args):
        start = float(args[args.index("-ss") + 1])
        with self._lock:
            self._active_trims += 1
            self.max_active_trims = max(self.max_active_trims, self._active_trims)
        try:
            if self.trim_delay:
                time.sleep(self.trim_delay)
            if self.fail_trim_start is not None and start == self.fail_trim_start:
                raise ProcessExitError(program, 1, f"trim at {start:g} failed")
            Path(args[-1]).write_bytes(f"ID3segment-{start:g}".encode())
        finally:
            with self._lock:
                self._active_trims -= 1
        return ProcessResult(program, 0, "", "")


class ListSink(ProgressSink):
    def __init__(self):
        self.events = []
        self.closed = []

    def emit(self, task_id, event):
        self.events.append(event)

    def close(self, task_id):
        self.closed.append(task_id)

    @property
    def terminal(self):
        return [e for e in self.events if e.terminal]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def sink():
    return ListSink()


@pytest.fixture
def config(tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    return PipelineConfig(
        work_dir=str(work),
        storage_dir=str(tmp_path / "storage"),
        debug=True,
    )


@pytest.fixture
def storage(config):
    return LocalStorage(config.storage_dir)


@pytest.fixture
def app(config, fake_runner, storage):
    app = create_app(config, runner=fake_runner, storage=storage)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def sine_file(tmp_path):
    sr = 44100
    t = np.linspace(0, 1.0, sr, False)
    wave = 0.1 * np.sin(2 * np.pi * 440 * t)
    path = tmp_path / 'tone.wav'
    sf.write(path, wave, sr)
    return path


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(0.02)
    raise AssertionError("condition not met in time")


def wav_bytes(seconds=0.5, sr=44100, channels=2, freq=440):
    """A PCM_16 sine tone, as the bytes of a WAV file."""
    t = np.linspace(0, seconds, int(sr * seconds), False)
    tone = 0.1 * np.sin(2 * np.pi * freq * t)
    data = np.column_stack([tone] * channels) if channels > 1 else tone
    buf = io.BytesIO()
    sf.write(buf, data, sr, format="WAV", subtype="PCM_16")
    return buf.getvalue()
