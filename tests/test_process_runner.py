import sys
import threading
import time

import pytest

from trackprep.errors import (
    ProcessCancelledError,
    ProcessExitError,
    ProcessSpawnError,
    ProcessTimeoutError,
)
from trackprep.services.process import ProcessRunner


def test_missing_binary_is_spawn_error(tmp_path):
    with pytest.raises(ProcessSpawnError):
        ProcessRunner().run(str(tmp_path / "no-such-binary"), [])


def test_nonzero_exit_keeps_stderr():
    code = "import sys; sys.stderr.write('bad input\\n'); sys.exit(3)"
    with pytest.raises(ProcessExitError) as info:
        ProcessRunner().run(sys.executable, ["-c", code])
    assert info.value.code == 3
    assert "bad input" in info.value.stderr


def test_stdout_is_collected():
    result = ProcessRunner().run(sys.executable, ["-c", "print('12.5')"])
    assert result.returncode == 0
    assert result.stdout.strip() == "12.5"


def test_stderr_lines_split_on_carriage_return():
    code = r"import sys; sys.stderr.write('time=1\rtime=2\ndone'); sys.stderr.flush()"
    lines = []
    result = ProcessRunner().run(sys.executable, ["-c", code], on_line=lines.append)
    assert lines == ["time=1", "time=2", "done"]
    assert result.stderr.splitlines() == lines


def test_cancel_kills_running_process():
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    started = time.monotonic()
    try:
        with pytest.raises(ProcessCancelledError):
            ProcessRunner().run(sys.executable, ["-c", "import time; time.sleep(30)"], cancel=cancel)
    finally:
        timer.cancel()
    assert time.monotonic() - started < 10


def test_already_cancelled_does_not_spawn(tmp_path):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(ProcessCancelledError):
        ProcessRunner().run(str(tmp_path / "no-such-binary"), [], cancel=cancel)


def test_timeout_kills_process():
    started = time.monotonic()
    with pytest.raises(ProcessTimeoutError):
        ProcessRunner(timeout=0.3).run(sys.executable, ["-c", "import time; time.sleep(30)"])
    assert time.monotonic() - started < 10
