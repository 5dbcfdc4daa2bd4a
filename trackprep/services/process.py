import logging
import os
import re
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from ..errors import (
    ProcessCancelledError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
)

logger = logging.getLogger(__name__)

LineHandler = Callable[[str], None]

# ffmpeg rewrites its status line with a bare carriage return
_LINE_BREAK = re.compile(rb"[\r\n]")
STDERR_TAIL_LINES = 500


@dataclass
class ProcessResult:
    program: str
    returncode: int
    stdout: str
    stderr: str


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace")


def _read_lines(stream, on_line: Optional[LineHandler], sink):
    buf = b""
    while True:
        chunk = stream.read1(4096) if hasattr(stream, "read1") else stream.read(4096)
        if not chunk:
            break
        buf += chunk
        parts = _LINE_BREAK.split(buf)
        buf = parts.pop()
        for part in parts:
            if not part:
                continue
            line = _decode(part)
            sink.append(line)
            if on_line is not None:
                on_line(line)
    if buf:
        line = _decode(buf)
        sink.append(line)
        if on_line is not None:
            on_line(line)


def _kill(proc: subprocess.Popen):
    try:
        if hasattr(os, "killpg"):
            os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


class ProcessRunner:
    """Run an external binary to completion.

    Diagnostic output (stderr) is scanned incrementally and each line is
    handed to ``on_line`` while the process is still running, so callers can
    report progress mid-phase. ``cancel`` is a ``threading.Event``; once it
    is set, or once ``timeout`` seconds elapse, the whole process group is
    killed. Nothing is retried here.
    """

    poll_interval = 0.1

    def __init__(self, timeout: Optional[float] = 1200):
        self.timeout = timeout

    def run(
        self,
        program: str,
        args: Sequence[str],
        on_line: Optional[LineHandler] = None,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> ProcessResult:
        if cancel is not None and cancel.is_set():
            raise ProcessCancelledError(f"{program} not started: task cancelled")

        cmd = [program, *[str(a) for a in args]]
        logger.debug("Running %s", " ".join(cmd))
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ProcessSpawnError(f"Cannot start {program}: {e}") from e

        limit = timeout if timeout is not None else self.timeout
        deadline = time.monotonic() + limit if limit else None
        done = threading.Event()
        reason = {}

        def watch():
            while not done.wait(self.poll_interval):
                if cancel is not None and cancel.is_set():
                    reason["why"] = "cancelled"
                elif deadline is not None and time.monotonic() > deadline:
                    reason["why"] = "timeout"
                else:
                    continue
                _kill(proc)
                return

        stdout_lines: list = []
        stderr_lines: deque = deque(maxlen=STDERR_TAIL_LINES)
        reader = threading.Thread(target=_read_lines, args=(proc.stdout, None, stdout_lines), daemon=True)
        watcher = threading.Thread(target=watch, daemon=True)
        reader.start()
        watcher.start()
        try:
            _read_lines(proc.stderr, on_line, stderr_lines)
            proc.wait()
        finally:
            if proc.poll() is None:
                _kill(proc)
                proc.wait()
            done.set()
            reader.join()
            watcher.join()
            proc.stdout.close()
            proc.stderr.close()

        stderr = "\n".join(stderr_lines)
        if reason.get("why") == "cancelled":
            raise ProcessCancelledError(f"{program} killed: task cancelled")
        if reason.get("why") == "timeout":
            raise ProcessTimeoutError(f"{program} killed after {limit:g}s")
        if proc.returncode != 0:
            raise ProcessExitError(program, proc.returncode, stderr)
        return ProcessResult(program, proc.returncode, "\n".join(stdout_lines), stderr)

