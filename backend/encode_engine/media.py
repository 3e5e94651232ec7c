import json
import logging
import os
import subprocess
from typing import Any, Dict, Optional

from .errors import StepError, StepTimeout, ValidationError
from .utils import decode_tail

log = logging.getLogger(__name__)


def resolve_ffmpeg(configured: Optional[str] = None) -> str:
    """
    Locate the encoder binary: explicit setting / FFMPEG_BIN, then the binary
    bundled with imageio-ffmpeg, then ``ffmpeg`` on PATH.
    """
    ffmpeg_bin = configured or os.environ.get("FFMPEG_BIN")
    if ffmpeg_bin:
        return ffmpeg_bin
    try:
        import imageio_ffmpeg  # type: ignore

        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError as e:
        log.warning("imageio-ffmpeg has no usable binary (%s); falling back to ffmpeg on PATH", e)
        return "ffmpeg"


def resolve_ffprobe(configured: Optional[str] = None) -> str:
    return configured or os.environ.get("FFPROBE_BIN") or "ffprobe"


def probe(path: str, ffprobe_bin: Optional[str] = None, timeout: float = 30, strict: bool = False) -> Dict[str, Any]:
    """
    Use ffprobe to read basic metadata.

    With ``strict=False`` an unavailable or failing ffprobe yields an empty
    dict. With ``strict=True`` failures raise so an ``info`` request can report
    them.
    """
    cmd = [
        resolve_ffprobe(ffprobe_bin),
        "-v",
        "error",
        "-show_entries",
        "stream=index,codec_type,codec_name,width,height,pix_fmt,r_frame_rate,avg_frame_rate,nb_frames",
        "-show_entries",
        "format=format_name,duration,size,bit_rate",
        "-of",
        "json",
        path,
    ]
    try:
        proc = subprocess.run(cmd, stdin=subprocess.DEVNULL, capture_output=True, timeout=timeout)
    except FileNotFoundError:
        if strict:
            raise StepError("ffprobe binary not found", step="probe")
        log.debug("ffprobe not available, skipping probe of %s", path)
        return {}
    except subprocess.TimeoutExpired:
        if strict:
            raise StepTimeout(f"ffprobe timed out after {timeout}s", step="probe")
        log.warning("ffprobe timed out on %s", path)
        return {}

    if proc.returncode != 0:
        tail = decode_tail(proc.stderr)
        if strict:
            raise ValidationError("Could not read media metadata", diagnostics=tail)
        log.debug("ffprobe failed on %s: %s", path, tail)
        return {}
    try:
        return json.loads(proc.stdout.decode("utf-8", errors="ignore") or "{}")
    except json.JSONDecodeError:
        if strict:
            raise StepError("ffprobe returned malformed JSON", step="probe")
        return {}


def summarize(info: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten ffprobe output into the fields the ``info`` endpoints return."""
    fmt = info.get("format") or {}
    streams = info.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), {})
    audio = next((s for s in streams if s.get("codec_type") == "audio"), None)

    def _num(v, cast=float):
        try:
            return cast(v)
        except (TypeError, ValueError):
            return None

    fps = None
    rate = video.get("avg_frame_rate") or video.get("r_frame_rate")
    if rate and "/" in rate:
        num, den = (_num(x) for x in rate.split("/", 1))
        if num is not None and den:
            fps = round(num / den, 3)

    return {
        "format": fmt.get("format_name"),
        "duration": _num(fmt.get("duration")),
        "size": _num(fmt.get("size"), int),
        "bit_rate": _num(fmt.get("bit_rate"), int),
        "width": video.get("width"),
        "height": video.get("height"),
        "codec": video.get("codec_name"),
        "pix_fmt": video.get("pix_fmt"),
        "fps": fps,
        "frames": _num(video.get("nb_frames"), int),
        "has_audio": audio is not None,
    }
