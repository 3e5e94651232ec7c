"""Read-only size and file-type reporting for the storage roots."""

import logging
import math
import os
import shutil
from pathlib import Path
from typing import Dict, Iterable, Iterator, Optional

from .schemas import SweepTarget

log = logging.getLogger(__name__)

TYPE_EXTENSIONS = {
    "image": {".png", ".jpg", ".jpeg", ".webp", ".bmp", ".tif", ".tiff"},
    "gif": {".gif"},
    "video": {".mp4", ".avi", ".mov", ".webm", ".mkv", ".m4v", ".flv"},
    "archive": {".zip"},
}

_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


def _walk_files(path: str | Path) -> Iterator[os.stat_result]:
    """Yield lstat results for every file below ``path``; vanished entries are skipped."""
    for root, _, files in os.walk(path):
        for name in files:
            try:
                yield os.lstat(os.path.join(root, name))
            except OSError:
                continue


def directory_size(path: str | Path) -> int:
    if not os.path.exists(path):
        return 0
    if not os.path.isdir(path):
        try:
            return os.lstat(path).st_size
        except OSError:
            return 0
    return sum(st.st_size for st in _walk_files(path))


def file_type_stats(path: str | Path) -> Dict[str, int]:
    counts = {key: 0 for key in TYPE_EXTENSIONS}
    counts.update(other=0, directories=0)
    if not os.path.isdir(path):
        return counts
    for root, dirs, files in os.walk(path):
        counts["directories"] += len(dirs)
        for name in files:
            ext = Path(name).suffix.lower()
            kind = next((k for k, exts in TYPE_EXTENSIONS.items() if ext in exts), "other")
            counts[kind] += 1
    return counts


def format_bytes(num_bytes: int, decimals: int = 2) -> str:
    """Human readable size using 1024 steps: ``0 Bytes``, ``1.5 KB``, ``3 MB``."""
    if not num_bytes:
        return "0 Bytes"
    i = min(int(math.floor(math.log(abs(num_bytes), 1024))), len(_UNITS) - 1)
    value = round(num_bytes / (1024 ** i), max(0, decimals))
    if value == int(value):
        value = int(value)
    return f"{value} {_UNITS[i]}"


def compression_ratio(original_size: int, compressed_size: int) -> str:
    """Size reduction as a percentage string, e.g. ``42.5%``. Growth yields a negative value."""
    if not original_size or original_size <= 0:
        return "0%"
    return f"{(original_size - compressed_size) / original_size * 100:.1f}%"


def storage_report(targets: Iterable[SweepTarget], disk_root: Optional[str] = None) -> Dict[str, object]:
    roots = {}
    total = 0
    for target in targets:
        size = directory_size(target.root)
        total += size
        roots[target.name] = {
            "root": str(target.root),
            "size_bytes": size,
            "size": format_bytes(size),
            "max_age_sec": target.max_age_sec,
            "files": file_type_stats(target.root),
        }

    report: Dict[str, object] = {
        "roots": roots,
        "total_bytes": total,
        "total": format_bytes(total),
    }
    if disk_root:
        try:
            usage = shutil.disk_usage(disk_root)
            report["disk"] = {"total": usage.total, "used": usage.used, "free": usage.free}
        except OSError as e:
            log.debug("disk_usage(%s) failed: %s", disk_root, e)
    return report
