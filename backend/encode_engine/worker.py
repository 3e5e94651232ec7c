import logging
import os
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import Settings
from .errors import AllocationError, EncoderError, ValidationError
from .filters import Operation, get_operation
from .media import probe, resolve_ffmpeg, summarize
from .render import ProgressFn, SpawnLimiter, run_pipeline
from .schemas import Job, JobInput, JobResult, StagedInput, StepResult
from .stats import compression_ratio
from .utils import ensure_dir
from .workspace import Workspace, WorkspaceRegistry, active_workspaces, allocate, unique_name, with_workspace

log = logging.getLogger(__name__)

Staged = Tuple[Workspace, List[StagedInput]]


def _progress_for_step(idx: int, total: int) -> int:
    """Map step index to a 10..95 range; leave the last 5% for publishing."""
    if total <= 0:
        return 100
    start, end = 10.0, 95.0
    return int(start + (end - start) * (idx / total))


def new_job_id() -> str:
    return f"j_{uuid.uuid4().hex[:10]}"


class JobRunner:
    """
    Runs catalogue operations end to end: validate, allocate a workspace,
    stage inputs, run the encoder pipeline, publish the artifact and release
    the workspace. ``run`` works in the caller's thread; ``submit`` hands the
    pipeline to a small thread pool and records progress in ``jobs``.
    """

    def __init__(
        self,
        settings: Settings,
        registry: Optional[WorkspaceRegistry] = active_workspaces,
        limiter: Optional[SpawnLimiter] = None,
        url_prefix: str = "/files",
    ):
        self.settings = settings
        self.registry = registry
        self.limiter = limiter or SpawnLimiter(settings.max_concurrent_encodes)
        self.url_prefix = url_prefix.rstrip("/")
        self.jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._encoder: Optional[str] = None

    @property
    def encoder(self) -> str:
        if self._encoder is None:
            self._encoder = resolve_ffmpeg(self.settings.ffmpeg_bin)
            log.info("Using encoder %s", self._encoder)
        return self._encoder

    # validation & staging ----------------------------------------------------

    def prepare(self, operation: str, params: Mapping[str, Any], inputs: Sequence[JobInput]) -> Tuple[Operation, Dict]:
        """Resolve and validate everything that can be checked without touching disk."""
        op = get_operation(operation)
        if op.multi:
            if not inputs:
                raise ValidationError(f"{op.name} needs at least one file in '{op.fields[0]}'")
            if len(inputs) > op.max_files:
                raise ValidationError(f"{op.name} accepts at most {op.max_files} files, got {len(inputs)}")
        elif len(inputs) != len(op.fields):
            raise ValidationError(f"{op.name} needs file field(s): {', '.join(op.fields)}")
        for item in inputs:
            ext = Path(item.filename or "").suffix.lower().lstrip(".")
            if ext not in op.accepts:
                raise ValidationError(
                    f"Unsupported file type {item.filename!r} for {op.name}; allowed: {', '.join(sorted(op.accepts))}"
                )
        return op, op.validate(params)

    def _stage(self, op: Operation, inputs: Sequence[JobInput]) -> Staged:
        ws = allocate(self.settings.temp_root, op.prefix, registry=self.registry)
        staged: List[StagedInput] = []
        try:
            for i, item in enumerate(inputs):
                dest = ws.file(f"input-{i:03d}{Path(item.filename).suffix.lower()}")
                try:
                    item.save(dest)
                except OSError as e:
                    raise AllocationError(f"Could not stage {item.filename}: {e}") from e
                staged.append(StagedInput(filename=item.filename, path=dest))
        except BaseException:
            ws.release()
            raise
        return ws, staged

    def _stage_all(self, op: Operation, inputs: Sequence[JobInput]) -> List[Staged]:
        """Batch items each get their own workspace."""
        if not op.batch_of:
            return [self._stage(op, inputs)]
        staged: List[Staged] = []
        try:
            for item in inputs:
                staged.append(self._stage(op, [item]))
        except BaseException:
            _release_all(staged)
            raise
        return staged

    # execution ---------------------------------------------------------------

    def run(
        self,
        operation: str,
        params: Mapping[str, Any],
        inputs: Sequence[JobInput],
        progress: Optional[ProgressFn] = None,
    ) -> JobResult:
        op, clean = self.prepare(operation, params, inputs)
        staged = self._stage_all(op, inputs)
        return self._dispatch(new_job_id(), op, clean, staged, progress)

    def _dispatch(self, job_id: str, op: Operation, params: Dict, staged: List[Staged],
                  progress: Optional[ProgressFn]) -> JobResult:
        try:
            if op.batch_of:
                return self._run_batch(job_id, op, params, staged)
            ws, inputs = staged[0]
            return self._execute(job_id, op, params, ws, inputs, progress)
        finally:
            _release_all(staged)

    def _execute(self, job_id: str, op: Operation, params: Dict, ws: Workspace,
                 inputs: List[StagedInput], progress: Optional[ProgressFn]) -> JobResult:
        started = time.monotonic()
        steps: List[StepResult] = []

        def body(workspace: Workspace) -> JobResult:
            result = JobResult(
                job_id=job_id, operation=op.name, params=params, steps=steps,
                source_filename=inputs[0].filename if inputs else None,
            )
            if op.probe_only:
                meta = probe(inputs[0].path, self.settings.ffprobe_bin, timeout=self.settings.step_timeout_sec,
                             strict=True)
                result.info = summarize(meta)
                return result

            original_size = sum(os.path.getsize(i.path) for i in inputs) if op.reports_savings else 0
            plan = op.build(params, inputs, workspace)
            run_pipeline(
                plan.steps,
                encoder=self.encoder,
                timeout=self.settings.step_timeout_sec,
                limiter=self.limiter,
                progress=progress,
                results=steps,
            )
            output = plan.finalize() if plan.finalize else plan.output
            result.output_path, result.output_url = self.publish(op, params, inputs, output)
            size = Path(result.output_path).stat().st_size
            result.info = {"size": size}
            if op.reports_savings:
                result.info.update(original_size=original_size, compression_ratio=compression_ratio(original_size, size))
            return result

        result = with_workspace(ws, body)
        result.duration_sec = round(time.monotonic() - started, 3)
        log.info("Job %s (%s) completed in %.2fs", job_id, op.name, result.duration_sec)
        return result

    def publish(self, op: Operation, params: Dict, inputs: List[StagedInput], output: str) -> Tuple[str, str]:
        """Move a finished artifact out of the workspace into its durable root."""
        root = Path(self.settings.output_root(op.category))
        ensure_dir(root)
        name = unique_name(op.prefix, "." + op.output_ext(params, inputs))
        dest = root / name
        shutil.move(output, dest)
        return str(dest), f"{self.url_prefix}/{op.category}/{name}"

    def _run_batch(self, job_id: str, op: Operation, params: Dict, staged: List[Staged]) -> JobResult:
        target = get_operation(op.batch_of(params))
        started = time.monotonic()
        batch = JobResult(job_id=job_id, operation=op.name, params=params)
        for i, (ws, inputs) in enumerate(staged):
            item_id = f"{job_id}-{i}"
            try:
                item = self._execute(item_id, target, params["item"], ws, inputs, None)
            except EncoderError as e:
                log.warning("Batch item %s (%s) failed: %s", item_id, inputs[0].filename, e.message)
                item = JobResult(
                    job_id=item_id, operation=target.name, status="failed", error=e.message,
                    error_category=e.category, source_filename=inputs[0].filename,
                )
            batch.items.append(item)
        failed = sum(1 for item in batch.items if item.status == "failed")
        if failed == len(batch.items):
            batch.status = "failed"
            batch.error = "All batch items failed"
            batch.error_category = batch.items[0].error_category
        batch.info = {"total": len(batch.items), "succeeded": len(batch.items) - failed, "failed": failed}
        batch.duration_sec = round(time.monotonic() - started, 3)
        return batch

    # async jobs --------------------------------------------------------------

    def submit(self, operation: str, params: Mapping[str, Any], inputs: Sequence[JobInput]) -> Job:
        """Validate and stage now, encode later. Invalid requests raise before a job exists."""
        op, clean = self.prepare(operation, params, inputs)
        staged = self._stage_all(op, inputs)
        job = Job(id=new_job_id(), operation=op.name)
        with self._lock:
            self.jobs[job.id] = job
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.settings.max_async_jobs, thread_name_prefix="job")
            pool = self._pool
        try:
            pool.submit(self._run_job, job, op, clean, staged)
        except RuntimeError:
            _release_all(staged)
            with self._lock:
                self.jobs.pop(job.id, None)
            raise
        return job

    def _run_job(self, job: Job, op: Operation, params: Dict, staged: List[Staged]) -> None:
        _update(job, status="processing", progress=5)

        def on_step(done: int, total: int, name: str) -> None:
            _update(job, progress=_progress_for_step(done, total))

        try:
            result = self._dispatch(job.id, op, params, staged, on_step)
        except EncoderError as e:
            log.warning("Job %s failed: %s", job.id, e.message)
            _update(job, status="failed", error=e.message, error_category=e.category)
            return
        except Exception:
            log.exception("Job %s crashed", job.id)
            _update(job, status="failed", error="Internal error", error_category="internal_error")
            return
        _update(job, status=result.status, progress=100, result=result,
                error=result.error, error_category=result.error_category)

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self.jobs.get(job_id)

    def prune_finished(self, max_age_sec: float, now: Optional[float] = None) -> int:
        """Forget finished job records older than ``max_age_sec``."""
        now = time.time() if now is None else now
        with self._lock:
            stale = [
                jid for jid, job in self.jobs.items()
                if job.status in ("completed", "failed") and now - job.updated_at > max_age_sec
            ]
            for jid in stale:
                del self.jobs[jid]
        if stale:
            log.info("Pruned %d finished job record(s)", len(stale))
        return len(stale)

    def sweep_hook(self) -> Callable[[list], None]:
        return lambda reports: self.prune_finished(self.settings.sweep_max_age_sec)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=wait)


def _update(job: Job, **fields) -> None:
    for key, value in fields.items():
        setattr(job, key, value)
    job.updated_at = time.time()


def _release_all(staged: List[Staged]) -> None:
    for ws, _ in staged:
        ws.release()
