import base64
import binascii
import io
import logging
import os
import re
from dataclasses import asdict
from pathlib import Path

from flask import Flask, request, jsonify, send_from_directory
from flask_cors import CORS
from werkzeug.utils import secure_filename

from PIL import Image

from .encode_engine import JobRunner, Sweeper, active_workspaces, load_settings
from .encode_engine.errors import EncoderError, UnknownOperation, ValidationError
from .encode_engine.filters import GIF_EXTS, IMAGE_EXTS, get_operation
from .encode_engine.schemas import JobInput, JobResult
from .encode_engine.stats import format_bytes, storage_report
from .encode_engine.sweeper import select_targets

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
)
log = logging.getLogger(__name__)

app = Flask(__name__)

CORS(
    app,
    origins=settings.cors_origins,
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
    methods=["GET", "POST", "OPTIONS"],
)

MAX_FILE_SIZE = settings.max_upload_mb * 1024 * 1024
GROUPS = {"images": "image", "gifs": "gif", "videos": "video"}

# route names the previous service used
ALIASES = {
    "image.advanced_keying": "image.keying",
    "image.chromakey_to_gif": "image.keyed_gif",
    "image.images_to_transparent_gif": "gif.create",
    "gif.batch_process": "gif.batch",
}

# camelCase form fields sent by clients of the previous service
LEGACY_FIELDS = {
    "maxWidth": "width",
    "maxHeight": "height",
    "colorCount": "colors",
    "preserveTransparency": "preserve_transparency",
    "showMask": "show_mask",
    "maintainAspectRatio": "maintain_aspect",
    "maintainAspect": "maintain_aspect",
    "alphaThreshold": "alpha_threshold",
    "transparencyThreshold": "alpha_threshold",
    "blendMode": "blend_mode",
    "startTime": "start",
    "endTime": "end",
    "chromaKey": "chroma_key",
}

PILLOW_CHECKED = IMAGE_EXTS | GIF_EXTS
DATA_URL_RE = re.compile(r"^data:image/(\w+);base64,(.+)$", re.S)

_sweep_targets = settings.sweep_targets()
app.config["MAX_CONTENT_LENGTH"] = MAX_FILE_SIZE
app.config["SETTINGS"] = settings
app.config["JOB_RUNNER"] = JobRunner(settings, registry=active_workspaces)
app.config["SWEEPER"] = Sweeper(
    _sweep_targets,
    interval=settings.sweep_interval_sec,
    registry=active_workspaces,
    hooks=[app.config["JOB_RUNNER"].sweep_hook()],
)

if settings.sweep_autostart:
    app.config["SWEEPER"].start()


def validate_image(stream) -> bool:
    """Validate that the uploaded file is actually an image"""
    try:
        with Image.open(stream) as img:
            img.verify()
        return True
    except Exception:
        return False
    finally:
        stream.seek(0)


def _form_params() -> dict:
    """Request form as operation params; legacy names fill in when the current name is absent."""
    params = request.form.to_dict(flat=True)
    for legacy, name in LEGACY_FIELDS.items():
        if legacy in params and name not in params:
            params[name] = params.pop(legacy)
    return params


def _json_body(form_fallback: bool = False) -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return request.form.to_dict(flat=True) if form_fallback else {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def _collect_inputs(op):
    """Map the operation's upload fields to JobInputs, in field order."""
    if op.multi:
        files = [f for f in request.files.getlist(op.fields[0]) if f and f.filename]
    else:
        files = []
        for name in op.fields:
            f = request.files.get(name)
            if not f or not f.filename:
                raise ValidationError(f"Missing file field '{name}'")
            files.append(f)

    inputs = []
    for f in files:
        filename = secure_filename(f.filename)
        if not filename or "." not in filename:
            raise ValidationError(f"Invalid filename {f.filename!r}")
        ext = filename.rsplit(".", 1)[1].lower()
        if ext in PILLOW_CHECKED and ext in op.accepts and not validate_image(f.stream):
            raise ValidationError(f"{filename} is not a valid image")
        inputs.append(JobInput(filename=filename, save=f.save))
    return inputs


def _result_payload(result: JobResult) -> dict:
    payload = {
        "job_id": result.job_id,
        "operation": result.operation,
        "status": result.status,
        "output_url": result.output_url,
        "filename": Path(result.output_path).name if result.output_path else None,
        "source_filename": result.source_filename,
        "params": result.params,
        "info": result.info,
        "duration_sec": result.duration_sec,
        "steps": [{"name": s.name, "returncode": s.returncode, "duration_sec": s.duration_sec} for s in result.steps],
    }
    if result.output_path and "size" in result.info:
        payload["file_size"] = format_bytes(result.info["size"])
    if "original_size" in result.info:
        payload["original_file_size"] = format_bytes(result.info["original_size"])
    if result.error:
        payload["error"] = result.error_category
        payload["detail"] = result.error
    if result.items:
        payload["items"] = [_result_payload(item) for item in result.items]
    return payload


def _job_payload(job) -> dict:
    return {
        "job_id": job.id,
        "operation": job.operation,
        "status": job.status,
        "progress": job.progress,
        "error": job.error_category,
        "detail": job.error,
        "created_at": job.created_at,
        "updated_at": job.updated_at,
        "result": _result_payload(job.result) if job.result else None,
    }


def _report_payload(report) -> dict:
    payload = asdict(report)
    payload["size"] = format_bytes(report.size_bytes)
    payload["ok"] = report.ok
    return payload


@app.route("/", methods=["GET"])
def health_check():
    """Health check endpoint"""
    runner = app.config["JOB_RUNNER"]
    sweeper = app.config["SWEEPER"]
    return (
        jsonify(
            {
                "status": "healthy",
                "message": "Media encoder gateway is running",
                "version": "1.0.0",
                "encoder_slots": {"total": runner.limiter.slots, "in_use": runner.limiter.in_use},
                "active_workspaces": len(active_workspaces),
                "sweeper": {
                    "state": sweeper.state,
                    "running": sweeper.running,
                    "last_sweep_at": sweeper.last_sweep_at,
                },
            }
        ),
        200,
    )


@app.route("/<group>/<name>", methods=["POST"])
def run_operation(group: str, name: str):
    """Run a catalogue operation on multipart uploads. ``?async=true`` queues it."""
    if group not in GROUPS:
        raise UnknownOperation(f"Unknown operation group {group!r}")
    operation = f"{GROUPS[group]}.{name.replace('-', '_')}"
    operation = ALIASES.get(operation, operation)
    op = get_operation(operation)

    inputs = _collect_inputs(op)
    params = _form_params()
    runner = app.config["JOB_RUNNER"]

    if request.args.get("async", "").lower() in ("1", "true", "yes"):
        job = runner.submit(op.name, params, inputs)
        log.info("Queued %s as %s", op.name, job.id)
        return jsonify({"job_id": job.id, "status": job.status, "status_url": f"/jobs/{job.id}"}), 202

    result = runner.run(op.name, params, inputs)
    return jsonify(_result_payload(result)), 200


@app.route("/ffmpeg/generate", methods=["POST"])
def generate_keyed_gif():
    """Base64 still in, base64 transparent GIF out (colorkey + palette)."""
    data = _json_body()
    image = data.get("image") or ""
    if not image:
        raise ValidationError("No image provided")
    if not isinstance(image, str):
        raise ValidationError("image must be a base64 string")

    ext = "png"
    match = DATA_URL_RE.match(image)
    if match:
        ext, image = match.group(1).lower(), match.group(2)
    try:
        raw = base64.b64decode(image, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("image is not valid base64")
    if not validate_image(io.BytesIO(raw)):
        raise ValidationError("image is not a valid image")

    def save(dest: str) -> None:
        with open(dest, "wb") as f:
            f.write(raw)

    params = {k: data[k] for k in ("color", "similarity", "blend", "method") if data.get(k) is not None}
    result = app.config["JOB_RUNNER"].run("image.keyed_gif", params, [JobInput(f"upload.{ext}", save)])
    with open(result.output_path, "rb") as f:
        encoded = base64.b64encode(f.read()).decode("ascii")
    return jsonify(
        {
            "ext": "gif",
            "color": result.params["color"],
            "similarity": result.params["similarity"],
            "blend": result.params["blend"],
            "output_url": result.output_url,
            "base64": f"data:image/gif;base64,{encoded}",
        }
    )


@app.route("/jobs/<job_id>", methods=["GET"])
def get_job(job_id: str):
    job = app.config["JOB_RUNNER"].get(job_id)
    if not job:
        return jsonify({"error": "not_found", "detail": "Job not found"}), 404
    return jsonify(_job_payload(job)), 200


@app.route("/files/<category>/<path:filename>", methods=["GET"])
def get_file(category: str, filename: str):
    if category not in GROUPS.values():
        return jsonify({"error": "not_found", "detail": "Unknown file category"}), 404
    root = app.config["SETTINGS"].output_root(category)
    return send_from_directory(os.path.abspath(root), filename)


@app.route("/storage/stats", methods=["GET"])
def storage_stats():
    sweeper = app.config["SWEEPER"]
    temp_root = app.config["SETTINGS"].temp_root
    report = storage_report(sweeper.targets, disk_root=temp_root if os.path.isdir(temp_root) else None)
    report["active_workspaces"] = len(active_workspaces)
    report["sweeper"] = {
        "state": sweeper.state,
        "interval_sec": sweeper.interval,
        "last_sweep_at": sweeper.last_sweep_at,
        "last_reports": [_report_payload(r) for r in sweeper.last_reports],
    }
    return jsonify(report), 200


@app.route("/storage/cleanup", methods=["POST"])
def storage_cleanup():
    """Manual sweep. ``mode`` is ``age`` (default), ``temp``, ``cache`` or ``all``."""
    data = _json_body(form_fallback=True)
    mode = str(data.get("mode") or "age").lower()
    sweeper = app.config["SWEEPER"]
    if mode == "age":
        reports = sweeper.sweep_once()
    elif mode in ("temp", "cache", "all"):
        reports = sweeper.purge(select_targets(sweeper.targets, mode))
    else:
        raise ValidationError(f"Unknown cleanup mode {mode!r}; expected age, temp, cache or all")
    return jsonify({"mode": mode, "reports": [_report_payload(r) for r in reports]}), 200


@app.errorhandler(EncoderError)
def encoder_error(e: EncoderError):
    if e.http_status >= 500:
        log.warning("%s: %s", e.category, e.message)
    return jsonify(e.to_dict()), e.http_status


@app.errorhandler(413)
def too_large(e):
    return (
        jsonify(
            {
                "error": "file_too_large",
                "detail": "Upload exceeds the size limit",
                "max_size_mb": MAX_FILE_SIZE / (1024 * 1024),
            }
        ),
        413,
    )


@app.errorhandler(404)
def not_found(e):
    return jsonify({"error": "not_found", "detail": "Endpoint not found"}), 404


@app.errorhandler(405)
def method_not_allowed(e):
    return jsonify({"error": "method_not_allowed", "detail": "Method not allowed"}), 405


@app.errorhandler(500)
def internal_error(e):
    return jsonify({"error": "internal_error", "detail": "Internal server error"}), 500


if __name__ == "__main__":
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", 6741))
    debug = os.environ.get("DEBUG", "false").lower() in ("true", "1", "yes")

    log.info("Starting encoder gateway on http://%s:%s (debug=%s)", host, port, debug)
    log.info("Temp root %s, cache root %s, uploads root %s", settings.temp_root, settings.cache_root,
             settings.uploads_root)
    app.run(host=host, port=port, debug=debug, threaded=True)
