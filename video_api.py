"""
Video generator API.

Pipeline:
  audio + images (+ optional subtitle cues)  →  multipart upload
       →  concat manifest (equal share of the total duration per image)
       →  optional SRT burned in with a fixed style
       →  FFmpeg (libx264 / aac, -shortest) → MP4
       →  GET /download/<name>, purged 5 minutes later

Every file a request creates is tracked; on failure they are deleted before
the response, on success a cancellable timer deletes them later.

Run via gunicorn: gunicorn --bind 0.0.0.0:3000 --timeout 720 video_api:app
"""
import json
import logging
import math
import os
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flask import Blueprint, Flask, current_app, jsonify, request, send_from_directory
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import NotFound, RequestEntityTooLarge
from werkzeug.utils import secure_filename

from video_cleanup import CleanupScheduler, purge_now, sweep_stale
from video_render import RenderJob, encode, get_duration, reserve_path, write_manifest, write_srt

logger = logging.getLogger("videogen")

SERVICE_NAME = "video-generator"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
@dataclass
class Settings:
    storage_dir: Path = field(default_factory=lambda: Path("uploads").resolve())
    port: int = 3000
    max_file_mb: int = 50
    max_images: int = 100
    default_duration: float = 60.0
    cleanup_delay: float = 300.0
    retention_hours: float = 24.0
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"
    ffmpeg_timeout: float = 0.0
    output_buffer_mb: int = 10
    flask_env: str = "production"
    log_file: str = ""

    @property
    def debug(self) -> bool:
        return self.flask_env == "development"

    @property
    def max_file_bytes(self) -> int:
        return self.max_file_mb * 1024 * 1024

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            storage_dir      = Path(env.get("STORAGE_DIR", "uploads")).resolve(),
            port             = int(env.get("PORT", 3000)),
            max_file_mb      = int(env.get("MAX_FILE_MB", 50)),
            max_images       = int(env.get("MAX_IMAGES", 100)),
            default_duration = float(env.get("DEFAULT_DURATION", 60)),
            cleanup_delay    = float(env.get("CLEANUP_DELAY_SECONDS", 300)),
            retention_hours  = float(env.get("RETENTION_HOURS", 24)),
            ffmpeg_bin       = env.get("FFMPEG_BIN", "ffmpeg"),
            ffprobe_bin      = env.get("FFPROBE_BIN", "ffprobe"),
            ffmpeg_timeout   = float(env.get("FFMPEG_TIMEOUT", 0)),
            output_buffer_mb = int(env.get("OUTPUT_BUFFER_MB", 10)),
            flask_env        = env.get("FLASK_ENV", "production"),
            log_file         = env.get("LOG_FILE", ""),
        )


def configure_logging(settings: Settings) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(
            RotatingFileHandler(settings.log_file, maxBytes=10 * 1024 * 1024, backupCount=3)
        )
    logging.basicConfig(
        level=logging.DEBUG if settings.debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )


# ---------------------------------------------------------------------------
# Upload parsing
# ---------------------------------------------------------------------------
class UploadError(ValueError):
    """The request is missing or has malformed parts (HTTP 400)."""


@dataclass
class FileRef:
    stored_path: Path
    original_name: str


@dataclass
class UploadSet:
    audio: FileStorage
    images: list[FileStorage]
    cues: list[dict]
    duration: float | None  # None → probe the audio


def _file_size(part: FileStorage) -> int:
    stream = part.stream
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


def parse_cues(raw: str | None) -> list[dict]:
    """Decode the `subtitles` form field into [{start, end, text}, ...]."""
    if raw is None or not raw.strip():
        return []
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        raise UploadError("subtitles must be a JSON array of {start, end, text}")
    if not isinstance(data, list):
        raise UploadError("subtitles must be a JSON array of {start, end, text}")
    cues = []
    for idx, item in enumerate(data, 1):
        if not isinstance(item, dict) or not {"start", "end", "text"} <= item.keys():
            raise UploadError(f"subtitle #{idx} needs start, end and text")
        try:
            start, end = float(item["start"]), float(item["end"])
        except (TypeError, ValueError):
            raise UploadError(f"subtitle #{idx} has non-numeric start/end")
        if not (math.isfinite(start) and math.isfinite(end)):
            raise UploadError(f"subtitle #{idx} has non-finite start/end")
        cues.append({"start": start, "end": end, "text": str(item["text"])})
    return cues


def parse_duration(raw: str | None, default: float) -> float | None:
    if raw is None or not raw.strip():
        return default
    if raw.strip().lower() == "auto":
        return None
    try:
        value = float(raw)
    except ValueError:
        raise UploadError("duration must be a number or 'auto'")
    if not math.isfinite(value) or value <= 0:
        raise UploadError("duration must be positive")
    return value


def receive_upload(settings: Settings) -> UploadSet:
    """Validate the current request; nothing is written to disk here."""
    audio_parts = [f for f in request.files.getlist("audio") if f.filename]
    images = [f for f in request.files.getlist("images") if f.filename]

    if not audio_parts or not images:
        raise UploadError("Audio and images are required")
    if len(audio_parts) > 1:
        raise UploadError("Only one audio file is accepted")
    if len(images) > settings.max_images:
        raise UploadError(f"Too many images (max {settings.max_images})")

    for part in audio_parts + images:
        if _file_size(part) > settings.max_file_bytes:
            raise RequestEntityTooLarge(
                f"{part.filename} exceeds {settings.max_file_mb} MB"
            )

    return UploadSet(
        audio=audio_parts[0],
        images=images,
        cues=parse_cues(request.form.get("subtitles")),
        duration=parse_duration(request.form.get("duration"), settings.default_duration),
    )


def store_part(part: FileStorage, storage_dir: Path) -> FileRef:
    """Save an uploaded part as <ms-timestamp>-<sanitized name>."""
    original = part.filename or ""
    name = secure_filename(original) or "upload"
    path = reserve_path(storage_dir, "", f"-{name}")
    try:
        part.save(str(path))
    except Exception:
        # never tracked by the caller, so a partial write is removed here
        path.unlink(missing_ok=True)
        raise
    return FileRef(stored_path=path, original_name=original)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
bp = Blueprint("videogen", __name__)


def _settings() -> Settings:
    return current_app.config["VIDEOGEN_SETTINGS"]


def _scheduler() -> CleanupScheduler:
    return current_app.extensions["videogen_cleanup"]


@bp.route("/health", methods=["GET"])
def health():
    return jsonify({"status": "ok", "service": SERVICE_NAME})


@bp.route("/create-video", methods=["POST"])
def create_video():
    """
    Build an MP4 slideshow from an audio track and images.

    Form fields:
      audio       exactly one audio file
      images      1..MAX_IMAGES image files, shown in upload order
      subtitles   optional JSON array of {start, end, text}
      duration    total seconds (default 60) or "auto" to use the audio length
    """
    settings = _settings()
    logger.info("CREATE-VIDEO from %s", request.remote_addr)

    try:
        upload = receive_upload(settings)
    except UploadError as exc:
        logger.info("Rejected: %s", exc)
        return jsonify({"error": str(exc)}), 400

    storage_dir = settings.storage_dir
    temp_files: list[Path] = []

    try:
        storage_dir.mkdir(parents=True, exist_ok=True)

        audio_ref = store_part(upload.audio, storage_dir)
        temp_files.append(audio_ref.stored_path)
        image_refs = []
        for part in upload.images:
            ref = store_part(part, storage_dir)
            temp_files.append(ref.stored_path)
            image_refs.append(ref)
        logger.info("Audio: %s", audio_ref.stored_path.name)
        logger.info("Images: %d", len(image_refs))

        duration = upload.duration
        if duration is None:
            duration = get_duration(audio_ref.stored_path, settings.ffprobe_bin)
            logger.info("Probed duration: %.2fs", duration)

        manifest_path = write_manifest(
            [r.stored_path for r in image_refs], duration, storage_dir
        )
        temp_files.append(manifest_path)

        subtitle_path = write_srt(upload.cues, storage_dir)
        if subtitle_path is not None:
            temp_files.append(subtitle_path)

        output_path = reserve_path(storage_dir, "video-", ".mp4")
        temp_files.append(output_path)

        job = RenderJob(
            manifest_path=manifest_path,
            audio_path=audio_ref.stored_path,
            output_path=output_path,
            total_duration=duration,
            subtitle_path=subtitle_path,
        )
        encode(
            job,
            cwd=storage_dir,
            ffmpeg_bin=settings.ffmpeg_bin,
            max_output=settings.output_buffer_mb * 1024 * 1024,
            timeout=settings.ffmpeg_timeout,
        )
        size = output_path.stat().st_size

    except Exception as exc:
        logger.exception("Error creating video: %s", exc)
        purge_now(temp_files)
        return jsonify({"error": "Error generating video", "details": str(exc)}), 500

    _scheduler().schedule(output_path.name, temp_files)

    return jsonify({
        "success":   True,
        "message":   "Video created successfully",
        "videoPath": f"/download/{output_path.name}",
        "size":      size,
        "duration":  duration,
    })


@bp.route("/download/<path:filename>", methods=["GET"])
def download(filename: str):
    """Stream a file from the working directory; confined to it via safe_join."""
    try:
        return send_from_directory(
            str(_settings().storage_dir), filename, as_attachment=True
        )
    except NotFound:
        return jsonify({"error": "File not found"}), 404


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------
def create_app(settings: Settings | None = None) -> Flask:
    settings = settings or Settings.from_env()
    configure_logging(settings)

    app = Flask(__name__)
    # whole request: every image plus the audio at the per-file ceiling
    app.config["MAX_CONTENT_LENGTH"] = settings.max_file_bytes * (settings.max_images + 1)
    app.config["VIDEOGEN_SETTINGS"] = settings
    app.extensions["videogen_cleanup"] = CleanupScheduler(settings.cleanup_delay)
    app.register_blueprint(bp)

    @app.errorhandler(413)
    def too_large(exc):
        detail = getattr(exc, "description", "") or ""
        return jsonify({"error": f"File too large (max {settings.max_file_mb} MB per file)",
                        "details": detail}), 413

    @app.errorhandler(404)
    def not_found(_):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(_):
        return jsonify({"error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_error(_):
        logger.error("Unhandled exception")
        return jsonify({"error": "Internal server error"}), 500

    sweep_stale(settings.storage_dir, settings.retention_hours)
    logger.info(
        "Video generator ready (storage=%s, purge after %ss)",
        settings.storage_dir, settings.cleanup_delay,
    )
    return app


app = create_app()

# ---------------------------------------------------------------------------
# Entry point (local dev only, production uses gunicorn)
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    cfg = app.config["VIDEOGEN_SETTINGS"]
    logger.info("Video generator starting (env=%s debug=%s)", cfg.flask_env, cfg.debug)
    app.run(
        host="0.0.0.0",
        port=cfg.port,
        debug=cfg.debug,
        use_reloader=cfg.debug,
        use_debugger=False,
    )
