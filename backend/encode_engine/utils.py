import time
from pathlib import Path
from typing import Optional


def ensure_dir(path: str | Path) -> None:
    Path(path).mkdir(parents=True, exist_ok=True)


def epoch_ms(now: Optional[float] = None) -> int:
    return int((time.time() if now is None else now) * 1000)


def decode_tail(data: Optional[bytes], limit: int = 2000) -> str:
    """Decode subprocess output and keep the last ``limit`` characters for diagnostics."""
    if not data:
        return ""
    return data.decode("utf-8", errors="ignore")[-limit:]


def parse_duration(value, default: float) -> float:
    """
    Parse a duration such as ``90``, ``90s``, ``30m``, ``2h`` or ``1d`` into seconds.
    Empty values fall back to ``default``.
    """
    if value is None:
        return float(default)
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip().lower()
    if not text:
        return float(default)
    units = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
    for suffix in ("ms", "s", "m", "h", "d"):
        if text.endswith(suffix):
            return float(text[: -len(suffix)]) * units[suffix]
    return float(text)
