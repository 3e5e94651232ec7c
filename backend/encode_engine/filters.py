"""
Operation catalogue: parameter validation and encoder argument construction.

Every operation validates its raw (string) parameters up front. Unparseable
or out-of-range values raise ValidationError, so nothing is allocated and no
encoder is started for a bad request. ``build`` then turns validated params
plus the staged inputs into an ordered list of StepSpecs whose paths all live
inside the job's workspace.
"""

import json
import math
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, FrozenSet, List, Mapping, Optional, Sequence

from .errors import UnknownOperation, ValidationError
from .schemas import StagedInput, StepSpec
from .workspace import Workspace


MAX_DIMENSION = 8192

IMAGE_EXTS = frozenset({"png", "jpg", "jpeg", "webp", "bmp", "gif", "tif", "tiff"})
GIF_EXTS = frozenset({"gif"})
VIDEO_EXTS = frozenset({"mp4", "avi", "mov", "webm", "mkv", "m4v", "flv"})

DITHER_MODES = ("none", "bayer", "heckbert", "floyd_steinberg", "sierra2", "sierra2_4a")
BLEND_MODES = ("normal", "addition", "multiply", "screen", "overlay", "darken", "lighten")
GIF_QUALITY_COLORS = {"high": 256, "medium": 128, "low": 64}
VIDEO_QUALITY_KBPS = {"high": 2000, "medium": 1000, "low": 500}

IMAGE_FORMAT_OPTIONS = {
    "png": ["-compression_level", "3"],
    "jpg": ["-q:v", "8"],
    "jpeg": ["-q:v", "8"],
    "webp": ["-q:v", "80"],
    "gif": [],
    "bmp": [],
}

VIDEO_FORMAT_OPTIONS = {
    "mp4": ["-c:v", "libx264", "-c:a", "aac", "-crf", "23", "-preset", "medium"],
    "mov": ["-c:v", "libx264", "-c:a", "aac", "-crf", "23", "-preset", "medium"],
    "mkv": ["-c:v", "libx264", "-c:a", "aac", "-crf", "23", "-preset", "medium"],
    "webm": ["-c:v", "libvpx-vp9", "-c:a", "libopus", "-crf", "30", "-b:v", "0"],
    "avi": ["-c:v", "mpeg4", "-c:a", "libmp3lame", "-qscale:v", "2"],
}

COLOR_NAMES = frozenset({
    "black", "white", "red", "green", "blue", "yellow", "cyan", "magenta", "gray", "grey",
    "orange", "purple", "pink", "brown", "lime", "navy", "teal", "olive", "maroon", "silver",
})

_HEX3_RE = re.compile(r"^#([0-9a-f]{3})$", re.I)
_HEX6_RE = re.compile(r"^(?:#|0x)([0-9a-f]{6})$", re.I)
_RGB_RE = re.compile(r"^rgba?\(\s*([^)]*)\)$", re.I)


# ---------------------------------------------------------------------------
# parameter parsing
# ---------------------------------------------------------------------------


def _raw(params: Mapping[str, Any], key: str):
    value = params.get(key)
    if isinstance(value, str):
        value = value.strip()
        if value == "":
            return None
    return value


def parse_float(params, key, default, lo, hi, *, required=False, lo_open=False) -> Optional[float]:
    value = _raw(params, key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be a number, got {value!r}")
    if not math.isfinite(num) or num > hi or num < lo or (lo_open and num == lo):
        bracket = "(" if lo_open else "["
        raise ValidationError(f"{key} must be in {bracket}{lo}, {hi}], got {value}")
    return num


def parse_int(params, key, default, lo, hi, *, required=False) -> Optional[int]:
    value = _raw(params, key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return default
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    if not num.is_integer():
        raise ValidationError(f"{key} must be an integer, got {value!r}")
    num = int(num)
    if num < lo or num > hi:
        raise ValidationError(f"{key} must be in [{lo}, {hi}], got {num}")
    return num


def parse_bool(params, key, default: bool) -> bool:
    value = _raw(params, key)
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    text = str(value).lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    raise ValidationError(f"{key} must be a boolean, got {value!r}")


def parse_choice(params, key, choices: Sequence[str], default: Optional[str], *, required=False) -> Optional[str]:
    value = _raw(params, key)
    if value is None:
        if required:
            raise ValidationError(f"{key} is required (one of {', '.join(choices)})")
        return default
    text = str(value).lower()
    if text not in choices:
        raise ValidationError(f"Unsupported {key} {value!r}; expected one of {', '.join(choices)}")
    return text


def parse_color(value) -> str:
    """
    Normalize a color to something ffmpeg accepts.

    Names pass through; ``#rgb``, ``#rrggbb`` and ``0xRRGGBB`` become
    ``0xRRGGBB``; ``rgb(r, g, b)`` likewise and ``rgba(r, g, b, a)`` becomes
    ``0xRRGGBBAA``.
    """
    if value is None or str(value).strip() == "":
        raise ValidationError("color is required")
    text = str(value).strip()
    if text.lower() in COLOR_NAMES:
        return text.lower()
    m = _HEX6_RE.match(text)
    if m:
        return "0x" + m.group(1).upper()
    m = _HEX3_RE.match(text)
    if m:
        return "0x" + "".join(c * 2 for c in m.group(1)).upper()
    m = _RGB_RE.match(text)
    if m:
        parts = [p.strip() for p in m.group(1).split(",")]
        is_rgba = text.lower().startswith("rgba")
        if len(parts) != (4 if is_rgba else 3):
            raise ValidationError(f"Invalid color {text!r}")
        try:
            channels = [int(p) for p in parts[:3]]
            alpha = float(parts[3]) if is_rgba else None
        except ValueError:
            raise ValidationError(f"Invalid color {text!r}")
        if any(c < 0 or c > 255 for c in channels) or (alpha is not None and not 0 <= alpha <= 1):
            raise ValidationError(f"Color components out of range in {text!r}")
        hexed = "".join(f"{c:02X}" for c in channels)
        if alpha is not None:
            hexed += f"{round(alpha * 255):02X}"
        return "0x" + hexed
    raise ValidationError(f"Invalid color {text!r}; use a name, #hex, 0xRRGGBB, rgb() or rgba()")


def parse_color_list(params) -> List[str]:
    raw = _raw(params, "colors")
    if raw is None:
        return [parse_color(_raw(params, "color"))]
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [c for c in raw.split(";") if c.strip()]
    if not isinstance(raw, list) or not raw:
        raise ValidationError("colors must be a non-empty list")
    return [parse_color(c) for c in raw]


def _dimensions(params, *, required=False):
    width = parse_int(params, "width", None, 1, MAX_DIMENSION)
    height = parse_int(params, "height", None, 1, MAX_DIMENSION)
    if required and (width is None or height is None):
        raise ValidationError("width and height are required")
    return width, height


def _resize_dimensions(params):
    width, height = _dimensions(params)
    if width is None and height is None:
        raise ValidationError("width or height is required")
    return width, height


def _scale_filter(width, height, keep_aspect: bool, *, even=False) -> str:
    free = "-2" if even else "-1"
    w = str(width) if width else free
    h = str(height) if height else free
    if keep_aspect and width and height:
        return f"scale={w}:{h}:force_original_aspect_ratio=decrease"
    return f"scale={w}:{h}"


# ---------------------------------------------------------------------------
# palette pipeline
# ---------------------------------------------------------------------------


def palette_steps(
    workspace: Workspace,
    *,
    input_args: Sequence[str],
    output: str,
    prefilter: str = "",
    gen_opts: str = "",
    use_opts: str = "",
    output_opts: Sequence[str] = (),
) -> List[StepSpec]:
    """
    Two-pass palette encode. Pass 1 writes ``palette.png``; pass 2 reads the
    source again plus the palette (input 1) and applies it to the
    pre-filtered stream tagged ``[ck]``.
    """
    palette = workspace.file("palette.png")
    gen = f"palettegen{gen_opts}"
    pass1 = ["-y", *input_args, "-vf", f"{prefilter},{gen}" if prefilter else gen, palette]
    pass2 = [
        "-y",
        *input_args,
        "-i",
        palette,
        "-lavfi",
        f"{prefilter or 'null'} [ck]; [ck][1:v] paletteuse{use_opts}",
        *output_opts,
        output,
    ]
    return [StepSpec("palettegen", pass1, palette), StepSpec("paletteuse", pass2, output)]


def _opts(**kw) -> str:
    parts = [f"{k}={v}" for k, v in kw.items() if v is not None]
    return ("=" + ":".join(parts)) if parts else ""


# ---------------------------------------------------------------------------
# registry
# ---------------------------------------------------------------------------


@dataclass
class Plan:
    steps: List[StepSpec]
    output: str
    finalize: Optional[Callable[[], str]] = None


@dataclass
class Operation:
    name: str
    category: Optional[str]
    fields: Sequence[str]
    accepts: FrozenSet[str]
    validate: Callable[[Mapping[str, Any]], Dict[str, Any]]
    build: Optional[Callable[[Dict[str, Any], List[StagedInput], Workspace], Plan]] = None
    output_ext: Callable[[Dict[str, Any], List[StagedInput]], str] = lambda p, i: "png"
    multi: bool = False
    max_files: int = 1
    batch_of: Optional[Callable[[Dict[str, Any]], str]] = None
    description: str = ""
    # report input size and size reduction alongside the output size
    reports_savings: bool = False

    @property
    def probe_only(self) -> bool:
        return self.build is None and self.batch_of is None

    @property
    def prefix(self) -> str:
        return self.name.replace(".", "-").replace("_", "-")


OPERATIONS: Dict[str, Operation] = {}


def register(op: Operation) -> Operation:
    OPERATIONS[op.name] = op
    return op


def get_operation(name: str) -> Operation:
    op = OPERATIONS.get(name)
    if op is None:
        raise UnknownOperation(f"Unknown operation {name!r}")
    return op


def _single_input(inputs: List[StagedInput]) -> str:
    return inputs[0].path


def _no_params(params):
    return {}


# ---------------------------------------------------------------------------
# images
# ---------------------------------------------------------------------------


def _validate_chromakey(params):
    return {
        "colors": parse_color_list(params),
        "similarity": parse_float(params, "similarity", 0.3, 0.0, 1.0),
        "blend": parse_float(params, "blend", 0.2, 0.0, 1.0),
        "show_mask": parse_bool(params, "show_mask", False),
    }


def _build_chromakey(p, inputs, ws):
    chain = ["format=rgba"]
    chain += [f"chromakey={c}:{p['similarity']}:{p['blend']}" for c in p["colors"]]
    if p["show_mask"]:
        chain.append("alphaextract")
    out = ws.file("chromakey.png")
    return Plan([StepSpec("chromakey", ["-y", "-i", _single_input(inputs), "-vf", ",".join(chain), out], out)], out)


def _validate_keying(params):
    method = parse_choice(params, "method", ("chromakey", "colorkey", "lumakey"), None, required=True)
    if method == "lumakey":
        return {
            "method": method,
            "threshold": parse_float(params, "threshold", 0.5, 0.0, 1.0),
            "softness": parse_float(params, "softness", 0.0, 0.0, 1.0),
        }
    return {
        "method": method,
        "color": parse_color(_raw(params, "color")),
        "similarity": parse_float(params, "similarity", 0.3, 0.0, 1.0),
        "blend": parse_float(params, "blend", 0.2 if method == "chromakey" else 0.01, 0.0, 1.0),
    }


def _build_keying(p, inputs, ws):
    if p["method"] == "lumakey":
        key = f"lumakey=threshold={p['threshold']}:softness={p['softness']}"
    else:
        key = f"{p['method']}={p['color']}:{p['similarity']}:{p['blend']}"
    out = ws.file("keyed.png")
    args = ["-y", "-i", _single_input(inputs), "-vf", f"format=rgba,{key}", out]
    return Plan([StepSpec(p["method"], args, out)], out)


def _validate_crop(params):
    width, height = _dimensions(params, required=True)
    return {
        "width": width,
        "height": height,
        "x": parse_int(params, "x", 0, 0, MAX_DIMENSION),
        "y": parse_int(params, "y", 0, 0, MAX_DIMENSION),
    }


def _crop_builder(ext):
    def build(p, inputs, ws):
        out = ws.file(f"cropped.{ext}")
        vf = f"crop={p['width']}:{p['height']}:{p['x']}:{p['y']}"
        return Plan([StepSpec("crop", ["-y", "-i", _single_input(inputs), "-vf", vf, out], out)], out)

    return build


def _validate_resize(params):
    width, height = _resize_dimensions(params)
    return {"width": width, "height": height, "maintain_aspect": parse_bool(params, "maintain_aspect", True)}


def _resize_builder(ext):
    def build(p, inputs, ws):
        out = ws.file(f"resized.{ext}")
        vf = _scale_filter(p["width"], p["height"], p["maintain_aspect"])
        return Plan([StepSpec("scale", ["-y", "-i", _single_input(inputs), "-vf", vf, out], out)], out)

    return build


def _validate_convert_image(params):
    return {"format": parse_choice(params, "format", tuple(IMAGE_FORMAT_OPTIONS), None, required=True)}


def _build_convert_image(p, inputs, ws):
    out = ws.file(f"converted.{p['format']}")
    args = ["-y", "-i", _single_input(inputs), *IMAGE_FORMAT_OPTIONS[p["format"]], out]
    return Plan([StepSpec("convert", args, out)], out)


def _validate_overlay(params):
    return {
        "x": parse_int(params, "x", 0, -MAX_DIMENSION, MAX_DIMENSION),
        "y": parse_int(params, "y", 0, -MAX_DIMENSION, MAX_DIMENSION),
        "alpha": parse_float(params, "alpha", None, 0.0, 1.0),
        "blend_mode": parse_choice(params, "blend_mode", BLEND_MODES, "normal"),
    }


def _build_overlay(p, inputs, ws):
    base, top = inputs[0].path, inputs[1].path
    if p["blend_mode"] != "normal":
        graph = f"[0][1]blend=all_mode={p['blend_mode']}"
        if p["alpha"] is not None:
            graph += f":all_opacity={p['alpha']}"
    elif p["alpha"] is not None:
        graph = f"[1]format=rgba,colorchannelmixer=aa={p['alpha']}[ov];[0][ov]overlay={p['x']}:{p['y']}"
    else:
        graph = f"overlay={p['x']}:{p['y']}"
    out = ws.file("overlay.png")
    args = ["-y", "-i", base, "-i", top, "-filter_complex", graph, out]
    return Plan([StepSpec("overlay", args, out)], out)


def _validate_keyed_gif(params):
    method = parse_choice(params, "method", ("colorkey", "chromakey"), "colorkey")
    return {
        "method": method,
        "color": parse_color(_raw(params, "color") or "0xFEFEFE"),
        "similarity": parse_float(params, "similarity", 0.02, 0.0, 1.0),
        "blend": parse_float(params, "blend", 0.0, 0.0, 1.0),
    }


def _build_keyed_gif(p, inputs, ws):
    out = ws.file("output.gif")
    key = f"{p['method']}={p['color']}:{p['similarity']}:{p['blend']}"
    steps = palette_steps(ws, input_args=["-i", _single_input(inputs)], output=out, prefilter=key)
    return Plan(steps, out)


register(Operation(
    "image.chromakey", "image", ("image",), IMAGE_EXTS, _validate_chromakey, _build_chromakey,
    description="Key out one or more background colors",
))
register(Operation(
    "image.keying", "image", ("image",), IMAGE_EXTS, _validate_keying, _build_keying,
    description="Chroma, color or luma keying",
))
register(Operation("image.crop", "image", ("image",), IMAGE_EXTS, _validate_crop, _crop_builder("png")))
register(Operation("image.resize", "image", ("image",), IMAGE_EXTS, _validate_resize, _resize_builder("png")))
register(Operation(
    "image.convert", "image", ("image",), IMAGE_EXTS, _validate_convert_image, _build_convert_image,
    output_ext=lambda p, i: p["format"],
))
register(Operation(
    "image.overlay", "image", ("baseImage", "overlayImage"), IMAGE_EXTS, _validate_overlay, _build_overlay,
    description="Composite overlayImage onto baseImage",
))
register(Operation(
    "image.keyed_gif", "gif", ("image",), IMAGE_EXTS, _validate_keyed_gif, _build_keyed_gif,
    output_ext=lambda p, i: "gif",
    description="Transparent GIF from a still via color keying and a palette pass",
))
register(Operation("image.info", None, ("image",), IMAGE_EXTS, _no_params))


# ---------------------------------------------------------------------------
# gifs
# ---------------------------------------------------------------------------


def _validate_gif_compress(params):
    colors = parse_int(params, "colors", None, 2, 256)
    if colors is None:
        quality = parse_choice(params, "quality", tuple(GIF_QUALITY_COLORS), "medium")
        colors = GIF_QUALITY_COLORS[quality]
    width, height = _dimensions(params)
    return {
        "colors": colors,
        "width": width,
        "height": height,
        "preserve_transparency": parse_bool(params, "preserve_transparency", True),
    }


def _build_gif_compress(p, inputs, ws):
    out = ws.file("compressed.gif")
    prefilter = ""
    if p["width"] or p["height"]:
        prefilter = _scale_filter(p["width"], p["height"], True)
    if p["preserve_transparency"]:
        gen = _opts(reserve_transparent="on", transparency_color="ffffff", max_colors=p["colors"])
    else:
        gen = _opts(max_colors=p["colors"])
    steps = palette_steps(
        ws,
        input_args=["-i", _single_input(inputs)],
        output=out,
        prefilter=prefilter,
        gen_opts=gen,
        use_opts=_opts(dither="sierra2_4a"),
    )
    return Plan(steps, out)


def _validate_gif_transparent(params):
    return {
        "colors": parse_int(params, "colors", 256, 2, 256),
        "alpha_threshold": parse_int(params, "alpha_threshold", 128, 0, 255),
        "dither": parse_choice(params, "dither", DITHER_MODES, "sierra2_4a"),
    }


def _build_gif_transparent(p, inputs, ws):
    out = ws.file("optimized.gif")
    steps = palette_steps(
        ws,
        input_args=["-i", _single_input(inputs)],
        output=out,
        gen_opts=_opts(reserve_transparent="on", transparency_color="ffffff", max_colors=p["colors"]),
        use_opts=_opts(alpha_threshold=p["alpha_threshold"], dither=p["dither"]),
    )
    return Plan(steps, out)


def _validate_gif_explode(params):
    return {"format": parse_choice(params, "format", ("png", "jpg"), "png")}


def _build_gif_explode(p, inputs, ws):
    frames_dir = Path(ws.subdir("frames"))
    pattern = str(frames_dir / f"frame-%05d.{p['format']}")
    archive_base = ws.file("frames")

    def finalize() -> str:
        return shutil.make_archive(archive_base, "zip", root_dir=str(frames_dir))

    step = StepSpec("explode", ["-y", "-i", _single_input(inputs), "-vsync", "0", pattern], pattern)
    return Plan([step], archive_base + ".zip", finalize=finalize)


def _validate_gif_create(params):
    return {
        "fps": parse_int(params, "fps", 10, 1, 60),
        "loop": parse_int(params, "loop", 0, -1, 65535),
        "optimize": parse_bool(params, "optimize", True),
        "colors": parse_int(params, "colors", 256, 2, 256),
        "alpha_threshold": parse_int(params, "alpha_threshold", 128, 0, 255),
    }


def _concat_list(ws: Workspace, paths: Sequence[str], frame_sec: float) -> str:
    """Write an ffmpeg concat-demuxer list with one entry per frame."""
    list_path = ws.file("frames.txt")
    lines = []
    for path in paths:
        quoted = str(Path(path).resolve()).replace("'", "'\\''")
        lines.append(f"file '{quoted}'")
        lines.append(f"duration {frame_sec:.6f}")
    # the demuxer ignores the final duration unless the last file is repeated
    lines.append(lines[-2])
    with open(list_path, "w", encoding="utf-8") as f:
        f.write("\n".join(lines) + "\n")
    return list_path


def _build_gif_create(p, inputs, ws):
    out = ws.file("animation.gif")
    list_path = _concat_list(ws, [i.path for i in inputs], 1.0 / p["fps"])
    input_args = ["-f", "concat", "-safe", "0", "-i", list_path]
    prefilter = f"fps={p['fps']}"
    output_opts = ["-loop", str(p["loop"])]
    if not p["optimize"]:
        args = ["-y", *input_args, "-vf", prefilter, *output_opts, out]
        return Plan([StepSpec("encode", args, out)], out)
    steps = palette_steps(
        ws,
        input_args=input_args,
        output=out,
        prefilter=prefilter,
        gen_opts=_opts(reserve_transparent="on", transparency_color="ffffff", max_colors=p["colors"]),
        use_opts=_opts(alpha_threshold=p["alpha_threshold"], dither="sierra2_4a"),
        output_opts=output_opts,
    )
    return Plan(steps, out)


def _validate_gif_from_video(params):
    width, height = _dimensions(params)
    chroma = _raw(params, "chroma_key")
    return {
        "start": parse_float(params, "start", 0.0, 0.0, 86400.0),
        "duration": parse_float(params, "duration", 5.0, 0.0, 60.0, lo_open=True),
        "fps": parse_int(params, "fps", 10, 1, 60),
        "width": width,
        "height": height,
        "optimize": parse_bool(params, "optimize", True),
        "chroma_key": parse_color(chroma) if chroma is not None else None,
        "loop": parse_int(params, "loop", 0, -1, 65535),
    }


def _build_gif_from_video(p, inputs, ws):
    out = ws.file("clip.gif")
    input_args = ["-ss", str(p["start"]), "-t", str(p["duration"]), "-i", _single_input(inputs)]
    chain = [f"fps={p['fps']}"]
    if p["width"] or p["height"]:
        chain.append(f"{_scale_filter(p['width'], p['height'], False)}:flags=lanczos")
    if p["chroma_key"]:
        chain.append(f"colorkey={p['chroma_key']}:0.1:0.0")
    prefilter = ",".join(chain)
    output_opts = ["-loop", str(p["loop"])]
    if not p["optimize"]:
        args = ["-y", *input_args, "-vf", prefilter, *output_opts, out]
        return Plan([StepSpec("encode", args, out)], out)
    transparent = "on" if p["chroma_key"] else "off"
    steps = palette_steps(
        ws,
        input_args=input_args,
        output=out,
        prefilter=prefilter,
        gen_opts=_opts(reserve_transparent=transparent, transparency_color="ffffff"),
        use_opts=_opts(dither="sierra2_4a"),
        output_opts=output_opts,
    )
    return Plan(steps, out)


def _validate_gif_batch(params):
    action = parse_choice(params, "action", ("compress", "resize"), None, required=True)
    target = get_operation(f"gif.{action}")
    return {"action": action, "item": target.validate(params)}


register(Operation("gif.crop", "gif", ("gif",), GIF_EXTS, _validate_crop, _crop_builder("gif"),
                   output_ext=lambda p, i: "gif"))
register(Operation("gif.resize", "gif", ("gif",), GIF_EXTS, _validate_resize, _resize_builder("gif"),
                   output_ext=lambda p, i: "gif"))
register(Operation("gif.compress", "gif", ("gif",), GIF_EXTS, _validate_gif_compress, _build_gif_compress,
                   output_ext=lambda p, i: "gif", reports_savings=True))
register(Operation(
    "gif.optimize_transparent", "gif", ("gif",), GIF_EXTS, _validate_gif_transparent, _build_gif_transparent,
    output_ext=lambda p, i: "gif",
))
register(Operation("gif.explode", "gif", ("gif",), GIF_EXTS, _validate_gif_explode, _build_gif_explode,
                   output_ext=lambda p, i: "zip"))
register(Operation(
    "gif.create", "gif", ("images",), IMAGE_EXTS, _validate_gif_create, _build_gif_create,
    output_ext=lambda p, i: "gif", multi=True, max_files=100,
))
register(Operation(
    "gif.from_video", "gif", ("video",), VIDEO_EXTS, _validate_gif_from_video, _build_gif_from_video,
    output_ext=lambda p, i: "gif",
))
register(Operation(
    "gif.batch", "gif", ("gifs",), GIF_EXTS, _validate_gif_batch,
    multi=True, max_files=10, batch_of=lambda p: f"gif.{p['action']}",
))


# ---------------------------------------------------------------------------
# videos
# ---------------------------------------------------------------------------


def _video_ext(inputs: List[StagedInput]) -> str:
    ext = Path(inputs[0].filename).suffix.lower().lstrip(".")
    return ext if ext in VIDEO_FORMAT_OPTIONS else "mp4"


def _validate_video_convert(params):
    return {"format": parse_choice(params, "format", tuple(VIDEO_FORMAT_OPTIONS), None, required=True)}


def _build_video_convert(p, inputs, ws):
    out = ws.file(f"converted.{p['format']}")
    args = ["-y", "-i", _single_input(inputs), *VIDEO_FORMAT_OPTIONS[p["format"]], out]
    return Plan([StepSpec("convert", args, out)], out)


def _validate_video_trim(params):
    start = parse_float(params, "start", 0.0, 0.0, 86400.0)
    end = parse_float(params, "end", None, 0.0, 86400.0, required=True)
    if end <= start:
        raise ValidationError(f"end ({end}) must be greater than start ({start})")
    return {"start": start, "end": end}


def _build_video_trim(p, inputs, ws):
    out = ws.file(f"trimmed.{_video_ext(inputs)}")
    # short cuts are stream-copied; longer ones are re-encoded for clean keyframes
    if p["end"] - p["start"] > 5:
        codec = ["-c:v", "libx264", "-c:a", "aac", "-crf", "23", "-preset", "medium"]
    else:
        codec = ["-c:v", "copy", "-c:a", "copy"]
    args = ["-y", "-ss", str(p["start"]), "-to", str(p["end"]), "-i", _single_input(inputs), *codec, out]
    return Plan([StepSpec("trim", args, out)], out)


def _validate_video_compress(params):
    bitrate = parse_int(params, "bitrate", None, 100, 50000)
    if bitrate is None:
        quality = parse_choice(params, "quality", tuple(VIDEO_QUALITY_KBPS), "medium")
        bitrate = VIDEO_QUALITY_KBPS[quality]
    default_crf = 21 if bitrate > 1500 else 24 if bitrate > 800 else 27
    return {
        "bitrate": bitrate,
        "crf": parse_int(params, "crf", default_crf, 0, 51),
        "preset": "slow" if bitrate > 1500 else "medium",
    }


def _build_video_compress(p, inputs, ws):
    out = ws.file("compressed.mp4")
    args = [
        "-y", "-i", _single_input(inputs),
        "-c:v", "libx264", "-b:v", f"{p['bitrate']}k", "-b:a", "128k",
        "-crf", str(p["crf"]), "-preset", p["preset"],
        out,
    ]
    return Plan([StepSpec("compress", args, out)], out)


def _build_video_resize(p, inputs, ws):
    out = ws.file("resized.mp4")
    vf = _scale_filter(p["width"], p["height"], p["maintain_aspect"], even=True)
    args = [
        "-y", "-i", _single_input(inputs), "-vf", vf,
        "-c:v", "libx264", "-crf", "23", "-preset", "medium", "-c:a", "copy",
        out,
    ]
    return Plan([StepSpec("scale", args, out)], out)


register(Operation("video.convert", "video", ("video",), VIDEO_EXTS, _validate_video_convert, _build_video_convert,
                   output_ext=lambda p, i: p["format"]))
register(Operation("video.trim", "video", ("video",), VIDEO_EXTS, _validate_video_trim, _build_video_trim,
                   output_ext=lambda p, i: _video_ext(i)))
register(Operation("video.compress", "video", ("video",), VIDEO_EXTS, _validate_video_compress,
                   _build_video_compress, output_ext=lambda p, i: "mp4", reports_savings=True))
register(Operation("video.resize", "video", ("video",), VIDEO_EXTS, _validate_resize, _build_video_resize,
                   output_ext=lambda p, i: "mp4"))
register(Operation("video.info", None, ("video",), VIDEO_EXTS, _no_params))
