import glob
import logging
import os
import re
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from .errors import StepError, StepTimeout
from .schemas import StepResult, StepSpec
from .utils import decode_tail

log = logging.getLogger(__name__)

ProgressFn = Callable[[int, int, str], None]

# printf-style frame counters used by image sequence outputs (frame-%05d.png)
_SEQUENCE_RE = re.compile(r"%0?\d*d")


class SpawnLimiter:
    """Caps the number of encoder processes alive at once across all jobs."""

    def __init__(self, slots: Optional[int] = None):
        self.slots = max(1, slots or os.cpu_count() or 2)
        self._sem = threading.BoundedSemaphore(self.slots)
        self._lock = threading.Lock()
        self._in_use = 0

    def __enter__(self):
        self._sem.acquire()
        with self._lock:
            self._in_use += 1
        return self

    def __exit__(self, *exc):
        with self._lock:
            self._in_use -= 1
        self._sem.release()
        return False

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    @property
    def available(self) -> int:
        return self.slots - self.in_use


default_limiter = SpawnLimiter()


def output_present(path: str) -> bool:
    """True when the declared output exists. Sequence patterns need at least one frame."""
    if _SEQUENCE_RE.search(path):
        pattern = _SEQUENCE_RE.sub("*", glob.escape(path))
        return any(os.path.isfile(p) for p in glob.iglob(pattern))
    return os.path.isfile(path)


def run_step(
    step: StepSpec,
    encoder: str,
    timeout: Optional[float] = None,
    limiter: Optional[SpawnLimiter] = None,
) -> StepResult:
    """
    Run one encoder invocation and raise with stderr tail on failure.

    The process gets no stdin. On deadline expiry it is killed and reaped
    before StepTimeout is raised.
    """
    cmd = [encoder, *step.args]
    limiter = limiter or default_limiter
    log.debug("Step %s: %s", step.name, " ".join(cmd))
    start = time.monotonic()
    with limiter:
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise StepError(f"Could not start encoder {encoder}: {e}", step=step.name) from e
        try:
            stdout, stderr = proc.communicate(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            stdout, stderr = proc.communicate()
            log.warning("Step %s killed after %ss", step.name, timeout)
            raise StepTimeout(
                f"Step {step.name} exceeded {timeout}s and was killed",
                step=step.name,
                returncode=proc.returncode,
                diagnostics=decode_tail(stderr),
            )
        except BaseException:
            proc.kill()
            proc.wait()
            raise

    result = StepResult(
        name=step.name,
        returncode=proc.returncode,
        duration_sec=round(time.monotonic() - start, 3),
        stdout_tail=decode_tail(stdout),
        stderr_tail=decode_tail(stderr),
    )
    if proc.returncode != 0:
        raise StepError(
            f"ffmpeg failed (code {proc.returncode}) in step {step.name}",
            step=step.name,
            returncode=proc.returncode,
            diagnostics=result.stderr_tail,
        )
    if not output_present(step.output_path):
        raise StepError(
            f"Step {step.name} exited cleanly but produced no {Path(step.output_path).name}",
            step=step.name,
            returncode=proc.returncode,
            diagnostics=result.stderr_tail,
        )
    log.debug("Step %s finished in %.2fs", step.name, result.duration_sec)
    return result


def run_pipeline(
    steps: Sequence[StepSpec],
    *,
    encoder: str,
    timeout: Optional[float] = None,
    limiter: Optional[SpawnLimiter] = None,
    progress: Optional[ProgressFn] = None,
    results: Optional[List[StepResult]] = None,
) -> str:
    """
    Run ``steps`` strictly in order and return the last step's output path.

    The first failing step aborts the rest. ``results`` collects the
    StepResult of each step that completed.
    """
    if not steps:
        raise ValueError("Pipeline needs at least one step")
    total = len(steps)
    for i, step in enumerate(steps, start=1):
        res = run_step(step, encoder, timeout=timeout, limiter=limiter)
        if results is not None:
            results.append(res)
        if progress is not None:
            try:
                progress(i, total, step.name)
            except Exception:
                log.exception("Progress callback failed after step %s", step.name)
    return steps[-1].output_path
