"""
Per-job workspaces.

A workspace is a directory under the temp root named
``<prefix>-<epoch_ms>-<token>``. The directory tree itself is the record of
what exists; the in-memory registry below only tracks which of those
directories belong to jobs that are still running, so the sweeper can leave
them alone regardless of their age.
"""

import logging
import os
import re
import secrets
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterator, Optional, Set, TypeVar

from .errors import AllocationError
from .utils import ensure_dir, epoch_ms

log = logging.getLogger(__name__)

T = TypeVar("T")

TOKEN_BYTES = 8  # 64 bits
_MAX_NAME_ATTEMPTS = 5

# 13-digit epoch milliseconds delimited by '-' or '_' (ours and the upload names
# of the previous service), or a leading YYYYMMDDHHMM minute bucket.
_EPOCH_MS_RE = re.compile(r"(?:^|[-_])(\d{13})(?=[-_.]|$)")
_MINUTE_BUCKET_RE = re.compile(r"^(\d{12})(?!\d)")


class WorkspaceRegistry:
    """Thread-safe set of workspace paths owned by in-flight jobs."""

    def __init__(self):
        self._lock = threading.Lock()
        self._paths: Set[str] = set()

    def add(self, path: str | Path) -> None:
        with self._lock:
            self._paths.add(_key(path))

    def discard(self, path: str | Path) -> None:
        with self._lock:
            self._paths.discard(_key(path))

    def __contains__(self, path) -> bool:
        with self._lock:
            return _key(path) in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


def _key(path: str | Path) -> str:
    return os.path.abspath(os.fspath(path))


active_workspaces = WorkspaceRegistry()


@dataclass
class Workspace:
    path: Path
    root: Path
    prefix: str
    created_at: float
    registry: Optional[WorkspaceRegistry] = field(default=None, repr=False)
    released: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def file(self, name: str) -> str:
        return str(self.path / name)

    def subdir(self, name: str) -> str:
        d = self.path / name
        ensure_dir(d)
        return str(d)

    def release(self) -> bool:
        """Delete the workspace. Only the first call does any work."""
        with self._lock:
            if self.released:
                return not self.path.exists()
            self.released = True
        try:
            return remove_tree(self.path)
        finally:
            if self.registry is not None:
                self.registry.discard(self.path)


def _check_prefix(prefix: str) -> None:
    if not prefix or prefix in (".", "..") or "/" in prefix or "\\" in prefix or os.sep in prefix:
        raise ValueError(f"Invalid workspace prefix: {prefix!r}")


def unique_name(prefix: str, suffix: str = "", now: Optional[float] = None) -> str:
    """``<prefix>-<epoch_ms>-<64-bit hex token><suffix>``."""
    _check_prefix(prefix)
    return f"{prefix}-{epoch_ms(now)}-{secrets.token_hex(TOKEN_BYTES)}{suffix}"


def allocate(root: str | Path, prefix: str, registry: Optional[WorkspaceRegistry] = active_workspaces) -> Workspace:
    """
    Create a fresh, uniquely named workspace directory under ``root``.

    The root is created if missing. The directory is created with
    ``exist_ok=False`` so two jobs can never end up sharing one, even in the
    astronomically unlikely event of a token collision.
    """
    _check_prefix(prefix)
    root_path = Path(root)
    try:
        ensure_dir(root_path)
    except OSError as e:
        raise AllocationError(f"Cannot create workspace root {root_path}: {e.strerror or e}") from e

    for _ in range(_MAX_NAME_ATTEMPTS):
        created_at = time.time()
        path = root_path / unique_name(prefix, now=created_at)
        try:
            path.mkdir()
        except FileExistsError:
            log.warning("Workspace name collision on %s, retrying", path)
            continue
        except OSError as e:
            raise AllocationError(f"Cannot create workspace {path}: {e.strerror or e}") from e
        if registry is not None:
            registry.add(path)
        log.debug("Allocated workspace %s", path)
        return Workspace(path=path, root=root_path, prefix=prefix, created_at=created_at, registry=registry)

    raise AllocationError(f"Could not allocate a unique workspace under {root_path}")


def remove_tree(path: str | Path) -> bool:
    """
    Depth-first delete of ``path`` (file or directory).

    Missing paths and entries that disappear mid-walk are treated as already
    deleted. Failures are logged and never raised. Returns True when the path
    no longer exists afterwards.
    """
    path = Path(path)
    try:
        if path.is_symlink() or not path.is_dir():
            path.unlink()
            return True
    except FileNotFoundError:
        return True
    except OSError as e:
        log.error("Failed to delete %s: %s", path, e)
        return False

    ok = True
    try:
        with os.scandir(path) as it:
            entries = list(it)
    except FileNotFoundError:
        return True
    except OSError as e:
        log.error("Failed to list %s: %s", path, e)
        return False

    for entry in entries:
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except FileNotFoundError:
            continue
        except OSError as e:
            log.error("Failed to stat %s: %s", entry.path, e)
            ok = False
            continue
        if is_dir:
            ok = remove_tree(entry.path) and ok
            continue
        try:
            os.unlink(entry.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            log.error("Failed to delete %s: %s", entry.path, e)
            ok = False

    try:
        path.rmdir()
    except FileNotFoundError:
        pass
    except OSError as e:
        log.error("Failed to remove directory %s: %s", path, e)
        return False
    if ok:
        log.debug("Removed %s", path)
    return ok and not path.exists()


def with_workspace(workspace: Workspace, fn: Callable[[Workspace], T]) -> T:
    """Run ``fn(workspace)`` and delete the workspace on every exit path."""
    try:
        return fn(workspace)
    finally:
        if not workspace.release():
            log.warning("Workspace %s was not fully removed; the sweeper will retry", workspace.path)


@contextmanager
def scoped_workspace(
    root: str | Path,
    prefix: str,
    registry: Optional[WorkspaceRegistry] = active_workspaces,
) -> Iterator[Workspace]:
    workspace = allocate(root, prefix, registry=registry)
    try:
        yield workspace
    finally:
        if not workspace.release():
            log.warning("Workspace %s was not fully removed; the sweeper will retry", workspace.path)


def name_timestamp(name: str) -> Optional[float]:
    """Creation time (epoch seconds) encoded in an entry name, if any."""
    m = _EPOCH_MS_RE.search(name)
    if m:
        return int(m.group(1)) / 1000.0
    m = _MINUTE_BUCKET_RE.match(name)
    if m:
        try:
            return time.mktime(datetime.strptime(m.group(1), "%Y%m%d%H%M").timetuple())
        except ValueError:
            return None
    return None
