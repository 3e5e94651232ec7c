from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
import shutil
import time


@dataclass
class StepSpec:
    name: str
    args: List[str]
    output_path: str


@dataclass
class StepResult:
    name: str
    returncode: int
    duration_sec: float
    stdout_tail: str = ""
    stderr_tail: str = ""


@dataclass
class JobInput:
    """An uploaded file that has not been written anywhere yet.

    ``save`` receives a destination path and materializes the content there;
    werkzeug's ``FileStorage.save`` fits this directly.
    """

    filename: str
    save: Callable[[str], Any]

    @classmethod
    def from_path(cls, path: str, filename: Optional[str] = None) -> "JobInput":
        return cls(
            filename=filename or Path(path).name,
            save=lambda dest: shutil.copyfile(path, dest),
        )


@dataclass
class StagedInput:
    filename: str
    path: str


@dataclass
class JobResult:
    job_id: str
    operation: str
    status: str = "completed"
    output_path: Optional[str] = None
    output_url: Optional[str] = None
    params: Dict[str, Any] = field(default_factory=dict)
    info: Dict[str, Any] = field(default_factory=dict)
    steps: List[StepResult] = field(default_factory=list)
    error: Optional[str] = None
    error_category: Optional[str] = None
    duration_sec: float = 0.0
    source_filename: Optional[str] = None
    items: List[JobResult] = field(default_factory=list)


@dataclass
class Job:
    id: str
    operation: str
    status: str = "queued"
    progress: int = 0
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())
    result: Optional[JobResult] = None
    error: Optional[str] = None
    error_category: Optional[str] = None


SWEEP_KINDS = ("temp", "cache", "uploads", "other")


@dataclass
class SweepTarget:
    """A root the sweeper owns. ``kind`` decides which manual purge modes select it;
    when omitted it is inferred from the name (``temp*`` or ``*cache*``)."""

    name: str
    root: str
    max_age_sec: float
    kind: str = ""

    def __post_init__(self):
        if not self.kind:
            if self.name.startswith("temp"):
                self.kind = "temp"
            elif "cache" in self.name:
                self.kind = "cache"
            elif self.name.startswith("upload"):
                self.kind = "uploads"
            else:
                self.kind = "other"
        if self.kind not in SWEEP_KINDS:
            raise ValueError(f"Unknown sweep target kind {self.kind!r}; expected one of {', '.join(SWEEP_KINDS)}")


@dataclass
class SweepReport:
    target: str
    root: str
    scanned: int = 0
    deleted: int = 0
    skipped_active: int = 0
    vanished: int = 0
    errors: List[str] = field(default_factory=list)
    size_bytes: int = 0
    started_at: float = field(default_factory=lambda: time.time())
    finished_at: Optional[float] = None

    @property
    def ok(self) -> bool:
        return not self.errors
