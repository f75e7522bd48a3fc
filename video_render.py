"""
Render helpers for the video generator.

  images + duration  →  concat manifest (filelist-*.txt)
  cues               →  SRT subtitles (subtitles-*.srt)
  manifest + audio   →  FFmpeg argv  →  video-*.mp4

Everything here works on explicit paths; the working directory is passed
in by the caller.
"""
import logging
import math
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("videogen.render")

SUBTITLE_STYLE = (
    "FontName=Arial,FontSize=24,PrimaryColour=&HFFFFFF,"
    "OutlineColour=&H000000,Outline=2,Alignment=2"
)


class EncoderError(RuntimeError):
    """FFmpeg could not produce the output (any reason)."""


@dataclass
class RenderJob:
    manifest_path: Path
    audio_path: Path
    output_path: Path
    total_duration: float
    subtitle_path: Path | None = None


def timestamp_ms() -> int:
    return int(time.time() * 1000)


def reserve_path(storage_dir: Path, prefix: str, suffix: str = "") -> Path:
    """
    Create and return an empty <prefix><ms>[-n]<suffix> file in storage_dir.

    The name is claimed with an exclusive create, so two requests in the
    same millisecond never share a path.
    """
    stamp = timestamp_ms()
    n = 0
    while True:
        name = f"{prefix}{stamp}{suffix}" if n == 0 else f"{prefix}{stamp}-{n}{suffix}"
        path = storage_dir / name
        try:
            path.open("xb").close()
            return path
        except FileExistsError:
            n += 1


def _write_new(storage_dir: Path, prefix: str, suffix: str, text: str) -> Path:
    path = reserve_path(storage_dir, prefix, suffix)
    try:
        path.write_text(text, encoding="utf-8")
    except OSError:
        path.unlink(missing_ok=True)
        raise
    return path


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------
def _concat_quote(name: str) -> str:
    # concat demuxer: close the quote, escaped quote, reopen
    return "'" + name.replace("'", "'\\''") + "'"


def build_manifest(image_paths: list[Path], total_duration: float) -> str:
    """
    Return concat-demuxer text giving every image an equal share of
    total_duration, in input order.

    Only base filenames are written; FFmpeg must run with the working
    directory as cwd so they resolve.
    """
    if not image_paths:
        raise ValueError("at least one image is required")
    per_image = total_duration / len(image_paths)
    lines: list[str] = []
    for p in image_paths:
        lines.append(f"file {_concat_quote(Path(p).name)}")
        lines.append(f"duration {per_image!r}")
    return "\n".join(lines)


def write_manifest(image_paths: list[Path], total_duration: float, storage_dir: Path) -> Path:
    path = _write_new(storage_dir, "filelist-", ".txt", build_manifest(image_paths, total_duration))
    logger.debug("Manifest written: %s (%d image(s))", path.name, len(image_paths))
    return path


# ---------------------------------------------------------------------------
# Subtitles
# ---------------------------------------------------------------------------
def format_srt_time(seconds: float) -> str:
    """01:01:01,500 for 3661.5; truncates, never rounds."""
    hours = math.floor(seconds / 3600)
    minutes = math.floor((seconds % 3600) / 60)
    secs = math.floor(seconds % 60)
    ms = math.floor((seconds % 1) * 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d},{ms:03d}"


def build_srt(cues: list[dict]) -> str:
    blocks = []
    for idx, cue in enumerate(cues, 1):
        start = format_srt_time(cue["start"])
        end = format_srt_time(cue["end"])
        blocks.append(f"{idx}\n{start} --> {end}\n{cue['text']}\n")
    return "\n".join(blocks)


def write_srt(cues: list[dict], storage_dir: Path) -> Path | None:
    """Write an SRT file for cues; None when there is nothing to write."""
    if not cues:
        return None
    path = _write_new(storage_dir, "subtitles-", ".srt", build_srt(cues))
    logger.debug("SRT written: %s (%d cue(s))", path.name, len(cues))
    return path


# ---------------------------------------------------------------------------
# FFmpeg
# ---------------------------------------------------------------------------
def build_ffmpeg_command(job: RenderJob, ffmpeg_bin: str = "ffmpeg") -> list[str]:
    """
    Argument vector for one slideshow render.

    -f concat -safe 0  →  manifest with per-entry durations
    subtitles=...      →  burned in when job.subtitle_path is set
    -shortest          →  stop at the shorter of video and audio
    """
    cmd = [
        ffmpeg_bin, "-y",
        "-f", "concat", "-safe", "0", "-i", job.manifest_path.name,
        "-i", job.audio_path.name,
    ]
    if job.subtitle_path is not None:
        cmd += [
            "-vf",
            f"subtitles={job.subtitle_path.name}:force_style='{SUBTITLE_STYLE}'",
        ]
    cmd += [
        "-c:v", "libx264", "-preset", "fast", "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-b:a", "128k",
        "-shortest",
        job.output_path.name,
    ]
    return cmd


def run_encoder(
    cmd: list[str],
    cwd: Path,
    max_output: int = 10 * 1024 * 1024,
    timeout: float = 0,
) -> bytes:
    """
    Run cmd to completion and return its combined stdout/stderr.

    Raises EncoderError on spawn failure, non-zero exit, more than
    max_output bytes of output, or (when timeout > 0) on timeout.
    """
    try:
        proc = subprocess.Popen(
            cmd,
            cwd=str(cwd),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
    except OSError as exc:
        raise EncoderError(f"could not start {cmd[0]}: {exc}") from exc

    timed_out = threading.Event()

    def _kill() -> None:
        timed_out.set()
        proc.kill()

    watchdog = threading.Timer(timeout, _kill) if timeout > 0 else None
    if watchdog is not None:
        watchdog.daemon = True
        watchdog.start()

    output = bytearray()
    overrun = False
    try:
        while True:
            chunk = proc.stdout.read(64 * 1024)
            if not chunk:
                break
            output.extend(chunk)
            if len(output) > max_output:
                overrun = True
                proc.kill()
                break
        returncode = proc.wait()
    finally:
        if watchdog is not None:
            watchdog.cancel()
        proc.stdout.close()

    if overrun:
        raise EncoderError(f"{cmd[0]} output exceeded {max_output} bytes")
    if timed_out.is_set():
        raise EncoderError(f"{cmd[0]} timed out after {timeout}s")
    if returncode != 0:
        tail = bytes(output[-1000:]).decode("utf-8", errors="replace")
        logger.error("%s exited with status %d: %s", cmd[0], returncode, tail)
        raise EncoderError(f"{cmd[0]} exited with status {returncode}")
    return bytes(output)


def encode(
    job: RenderJob,
    cwd: Path,
    ffmpeg_bin: str = "ffmpeg",
    max_output: int = 10 * 1024 * 1024,
    timeout: float = 0,
) -> None:
    cmd = build_ffmpeg_command(job, ffmpeg_bin)
    logger.info(
        "FFmpeg start (subtitles=%s, timeout=%ss) ...",
        job.subtitle_path is not None, timeout or "none",
    )
    run_encoder(cmd, cwd, max_output=max_output, timeout=timeout)
    # the output path is reserved empty before the run
    if not job.output_path.exists() or job.output_path.stat().st_size == 0:
        raise EncoderError(f"{ffmpeg_bin} produced no output file")
    size_mb = job.output_path.stat().st_size / (1024 * 1024)
    logger.info("Video ready: %s (%.2f MB)", job.output_path.name, size_mb)


def get_duration(audio_path: Path, ffprobe_bin: str = "ffprobe") -> float:
    """Audio length in seconds, via ffprobe."""
    try:
        result = subprocess.run(
            [ffprobe_bin, "-v", "error",
             "-show_entries", "format=duration",
             "-of", "default=noprint_wrappers=1:nokey=1",
             str(audio_path)],
            capture_output=True, text=True, check=True, timeout=30,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        raise EncoderError(f"ffprobe failed: {exc}") from exc
    raw = result.stdout.strip()
    try:
        return float(raw)
    except ValueError:
        raise EncoderError(f"ffprobe returned non-numeric duration: {raw!r}")
