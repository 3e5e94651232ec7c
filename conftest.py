import os
import re
from pathlib import Path

import pytest

# the app module starts the sweeper at import time unless told not to
os.environ.setdefault("SWEEP_AUTOSTART", "false")

from backend.encode_engine.config import Settings  # noqa: E402
from backend.encode_engine.workspace import WorkspaceRegistry  # noqa: E402

_SEQUENCE_RE = re.compile(r"%0?(\d*)d")


class FakeEncoder:
    """
    Stands in for the ffmpeg binary. Every spawn is recorded; by default the
    declared output (the last argument) is written and the process exits 0.
    """

    def __init__(self):
        self.calls = []
        self.fail_at = set()
        self.no_output_at = set()
        self.on_spawn = None
        self.stderr = b"Error while filtering: fake failure"

    def spawn(self, cmd, **kwargs):
        index = len(self.calls)
        self.calls.append(list(cmd))
        if self.on_spawn is not None:
            self.on_spawn(index, list(cmd))
        return FakePopen(self, index, list(cmd))


class FakePopen:
    def __init__(self, encoder: FakeEncoder, index: int, args):
        self.encoder = encoder
        self.index = index
        self.args = args
        self.returncode = None
        self.pid = 4242 + index

    def communicate(self, input=None, timeout=None):
        if self.index in self.encoder.fail_at:
            self.returncode = 1
            return b"", self.encoder.stderr
        if self.index not in self.encoder.no_output_at:
            _write_output(self.args[-1])
        self.returncode = 0
        return b"", b""

    def kill(self):
        self.returncode = -9

    def wait(self, timeout=None):
        return self.returncode


def _write_output(path: str) -> None:
    if _SEQUENCE_RE.search(path):
        for n in (1, 2):
            frame = _SEQUENCE_RE.sub(lambda m: str(n).zfill(int(m.group(1) or 0)), path)
            Path(frame).write_bytes(b"frame")
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    Path(path).write_bytes(b"GIF89a-fake-output")


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        temp_root=str(tmp_path / "temp"),
        cache_root=str(tmp_path / "cache"),
        uploads_root=str(tmp_path / "uploads"),
        sweep_autostart=False,
        step_timeout_sec=5,
        max_concurrent_encodes=2,
        max_async_jobs=2,
        ffmpeg_bin="ffmpeg",
        ffprobe_bin="ffprobe",
    )


@pytest.fixture()
def registry():
    return WorkspaceRegistry()


@pytest.fixture()
def fake_encoder(mocker):
    encoder = FakeEncoder()
    mocker.patch("backend.encode_engine.render.subprocess.Popen", side_effect=encoder.spawn)
    return encoder


@pytest.fixture()
def runner(settings, registry):
    from backend.encode_engine.worker import JobRunner

    job_runner = JobRunner(settings, registry=registry)
    yield job_runner
    job_runner.shutdown()


@pytest.fixture()
def app_client(settings):
    # Import after env is set
    from backend import backend as server
    from backend.encode_engine import JobRunner, Sweeper

    runner = JobRunner(settings)
    sweeper = Sweeper(settings.sweep_targets(), interval=settings.sweep_interval_sec, hooks=[runner.sweep_hook()])
    server.app.config.update({
        "TESTING": True,
        "SETTINGS": settings,
        "JOB_RUNNER": runner,
        "SWEEPER": sweeper,
    })
    client = server.app.test_client()
    yield client
    runner.shutdown()
