import sys
import threading
import time
from pathlib import Path

import pytest

from backend.encode_engine.errors import StepError, StepTimeout
from backend.encode_engine.render import SpawnLimiter, output_present, run_pipeline, run_step
from backend.encode_engine.schemas import StepSpec


def _py_step(name, code, output):
    # the running interpreter stands in for the encoder binary
    return StepSpec(name, ["-c", code], str(output))


def test_run_step_success_records_result(tmp_path):
    out = tmp_path / "out.txt"
    step = _py_step("write", f"import sys; open({str(out)!r}, 'w').write('x'); sys.stderr.write('done')", out)
    res = run_step(step, sys.executable, timeout=30, limiter=SpawnLimiter(1))
    assert res.returncode == 0
    assert res.stderr_tail == "done"
    assert out.exists()


def test_run_step_nonzero_exit_raises_with_stderr_tail(tmp_path):
    step = _py_step("fail", "import sys; sys.stderr.write('x' * 5000 + 'bad filter'); sys.exit(3)", tmp_path / "o")
    with pytest.raises(StepError) as exc:
        run_step(step, sys.executable, timeout=30, limiter=SpawnLimiter(1))
    err = exc.value
    assert err.returncode == 3
    assert err.step == "fail"
    assert err.diagnostics.endswith("bad filter")
    assert len(err.diagnostics) == 2000
    assert not isinstance(err, StepTimeout)


def test_run_step_missing_output_is_an_error(tmp_path):
    step = _py_step("silent", "pass", tmp_path / "never.gif")
    with pytest.raises(StepError, match="produced no never.gif"):
        run_step(step, sys.executable, timeout=30, limiter=SpawnLimiter(1))


def test_run_step_timeout_kills_process(tmp_path):
    marker = tmp_path / "late.txt"
    code = f"import time; time.sleep(5); open({str(marker)!r}, 'w').write('x')"
    started = time.monotonic()
    with pytest.raises(StepTimeout) as exc:
        run_step(_py_step("sleepy", code, marker), sys.executable, timeout=0.5, limiter=SpawnLimiter(1))
    assert time.monotonic() - started < 4
    assert exc.value.category == "step_timeout"
    time.sleep(0.2)
    assert not marker.exists()


def test_run_step_missing_binary(tmp_path):
    with pytest.raises(StepError, match="Could not start encoder"):
        run_step(StepSpec("x", [], str(tmp_path / "o")), str(tmp_path / "no-such-ffmpeg"), limiter=SpawnLimiter(1))


def test_output_present_sequence_pattern(tmp_path):
    pattern = str(tmp_path / "frame-%05d.png")
    assert not output_present(pattern)
    (tmp_path / "frame-00001.png").write_bytes(b"1")
    assert output_present(pattern)


def test_pipeline_runs_in_order_and_reports_progress(tmp_path, fake_encoder):
    palette = tmp_path / "palette.png"
    out = tmp_path / "out.gif"
    seen = []

    def on_spawn(index, cmd):
        seen.append((index, palette.exists()))

    fake_encoder.on_spawn = on_spawn
    progress = []
    results = []
    steps = [StepSpec("palettegen", ["-y", str(palette)], str(palette)),
             StepSpec("paletteuse", ["-y", str(palette), str(out)], str(out))]
    final = run_pipeline(steps, encoder="ffmpeg", timeout=5, limiter=SpawnLimiter(1),
                         progress=lambda d, t, n: progress.append((d, t, n)), results=results)
    assert final == str(out)
    assert seen == [(0, False), (1, True)]
    assert progress == [(1, 2, "palettegen"), (2, 2, "paletteuse")]
    assert [r.name for r in results] == ["palettegen", "paletteuse"]
    assert fake_encoder.calls[0][0] == "ffmpeg"


def test_pipeline_aborts_after_failed_step(tmp_path, fake_encoder):
    fake_encoder.fail_at = {0}
    steps = [StepSpec("palettegen", [str(tmp_path / "p.png")], str(tmp_path / "p.png")),
             StepSpec("paletteuse", [str(tmp_path / "o.gif")], str(tmp_path / "o.gif"))]
    with pytest.raises(StepError) as exc:
        run_pipeline(steps, encoder="ffmpeg", limiter=SpawnLimiter(1))
    assert exc.value.step == "palettegen"
    assert "fake failure" in exc.value.diagnostics
    assert len(fake_encoder.calls) == 1


def test_progress_callback_errors_are_ignored(tmp_path, fake_encoder):
    out = tmp_path / "o.png"

    def broken(*args):
        raise ValueError("ui went away")

    assert run_pipeline([StepSpec("one", [str(out)], str(out))], encoder="ffmpeg",
                        limiter=SpawnLimiter(1), progress=broken) == str(out)


def test_empty_pipeline_rejected():
    with pytest.raises(ValueError):
        run_pipeline([], encoder="ffmpeg")


def test_spawn_limiter_bounds_concurrency(tmp_path, fake_encoder):
    limiter = SpawnLimiter(2)
    lock = threading.Lock()
    state = {"now": 0, "peak": 0}

    def on_spawn(index, cmd):
        with lock:
            state["now"] += 1
            state["peak"] = max(state["peak"], state["now"])
        time.sleep(0.05)
        with lock:
            state["now"] -= 1

    fake_encoder.on_spawn = on_spawn

    def work(i):
        out = tmp_path / f"o{i}.png"
        run_step(StepSpec("s", [str(out)], str(out)), "ffmpeg", limiter=limiter)

    threads = [threading.Thread(target=work, args=(i,)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert state["peak"] <= 2
    assert limiter.in_use == 0
    assert len(list(Path(tmp_path).glob("o*.png"))) == 8
