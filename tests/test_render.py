import os
import re
import sys
from pathlib import Path

import pytest

from video_render import (
    EncoderError,
    RenderJob,
    build_ffmpeg_command,
    build_manifest,
    build_srt,
    encode,
    format_srt_time,
    get_duration,
    reserve_path,
    run_encoder,
    write_manifest,
    write_srt,
)


@pytest.mark.parametrize("seconds, expected", [
    (0, "00:00:00,000"),
    (3661.5, "01:01:01,500"),
    (59.25, "00:00:59,250"),
    (7325.0, "02:02:05,000"),
])
def test_format_srt_time(seconds, expected):
    assert format_srt_time(seconds) == expected


def test_build_srt_numbers_blocks_in_order():
    cues = [{"start": i, "end": i + 0.75, "text": f"line {i}"} for i in range(5)]
    srt = build_srt(cues)
    blocks = srt.split("\n\n")
    assert len(blocks) == 5
    for n, block in enumerate(blocks, 1):
        idx, times, text = block.strip("\n").split("\n")
        assert idx == str(n)
        assert re.fullmatch(r"\d{2}:\d{2}:\d{2},\d{3} --> \d{2}:\d{2}:\d{2},\d{3}", times)
        assert text == f"line {n - 1}"


def test_build_srt_keeps_malformed_cues():
    srt = build_srt([{"start": 5, "end": 1, "text": "backwards"}])
    assert srt == "1\n00:00:05,000 --> 00:00:01,000\nbackwards\n"


def test_write_srt_skips_empty(tmp_path):
    assert write_srt([], tmp_path) is None
    assert list(tmp_path.iterdir()) == []


def test_manifest_equal_split():
    paths = [Path(f"/data/uploads/{i}-img.jpg") for i in range(7)]
    text = build_manifest(paths, 60)
    lines = text.split("\n")
    assert len(lines) == 14
    assert lines[0] == "file '0-img.jpg'"
    durations = [float(l.split(" ", 1)[1]) for l in lines[1::2]]
    assert durations == [60 / 7] * 7


def test_manifest_escapes_quotes():
    assert build_manifest([Path("it's.png")], 5) == "file 'it'\\''s.png'\nduration 5.0"


def test_manifest_requires_images():
    with pytest.raises(ValueError):
        build_manifest([], 60)


def test_write_manifest(tmp_path):
    path = write_manifest([tmp_path / "a.png"], 10, tmp_path)
    assert re.fullmatch(r"filelist-\d+\.txt", path.name)
    assert path.read_text(encoding="utf-8") == "file 'a.png'\nduration 10.0"


def _job(tmp_path, subtitles=False):
    return RenderJob(
        manifest_path=tmp_path / "filelist-1.txt",
        audio_path=tmp_path / "1-track.mp3",
        output_path=tmp_path / "video-1.mp4",
        total_duration=60,
        subtitle_path=tmp_path / "subtitles-1.srt" if subtitles else None,
    )


def test_ffmpeg_command_without_subtitles(tmp_path):
    cmd = build_ffmpeg_command(_job(tmp_path))
    assert cmd == [
        "ffmpeg", "-y",
        "-f", "concat", "-safe", "0", "-i", "filelist-1.txt",
        "-i", "1-track.mp3",
        "-c:v", "libx264", "-preset", "fast", "-pix_fmt", "yuv420p",
        "-c:a", "aac", "-b:a", "128k",
        "-shortest",
        "video-1.mp4",
    ]


def test_ffmpeg_command_burns_subtitles(tmp_path):
    cmd = build_ffmpeg_command(_job(tmp_path, subtitles=True), ffmpeg_bin="/opt/ffmpeg")
    assert cmd[0] == "/opt/ffmpeg"
    vf = cmd[cmd.index("-vf") + 1]
    assert vf.startswith("subtitles=subtitles-1.srt:force_style='")
    assert "FontName=Arial" in vf and "Alignment=2" in vf
    assert cmd[-1] == "video-1.mp4"


def test_run_encoder_returns_output(tmp_path):
    out = run_encoder([sys.executable, "-c", "import os; print(os.getcwd())"], cwd=tmp_path)
    assert os.path.realpath(out.decode().strip()) == os.path.realpath(tmp_path)


def test_run_encoder_nonzero_exit(tmp_path):
    with pytest.raises(EncoderError, match="status 3"):
        run_encoder([sys.executable, "-c", "import sys; sys.exit(3)"], cwd=tmp_path)


def test_run_encoder_missing_binary(tmp_path):
    with pytest.raises(EncoderError, match="could not start"):
        run_encoder([str(tmp_path / "no-such-ffmpeg")], cwd=tmp_path)


def test_run_encoder_output_cap(tmp_path):
    with pytest.raises(EncoderError, match="exceeded"):
        run_encoder(
            [sys.executable, "-c", "print('x' * 50000)"],
            cwd=tmp_path, max_output=1000,
        )


def test_run_encoder_timeout(tmp_path):
    with pytest.raises(EncoderError, match="timed out"):
        run_encoder(
            [sys.executable, "-c", "import time; time.sleep(10)"],
            cwd=tmp_path, timeout=0.3,
        )


def test_encode_requires_output_file(tmp_path, monkeypatch):
    import video_render
    monkeypatch.setattr(video_render, "run_encoder", lambda *a, **kw: b"")
    with pytest.raises(EncoderError, match="no output"):
        encode(_job(tmp_path), cwd=tmp_path)


def test_get_duration_missing_binary(tmp_path):
    with pytest.raises(EncoderError):
        get_duration(tmp_path / "a.mp3", ffprobe_bin=str(tmp_path / "no-ffprobe"))


def test_encode_rejects_empty_reserved_output(tmp_path, monkeypatch):
    import video_render
    monkeypatch.setattr(video_render, "run_encoder", lambda *a, **kw: b"")
    job = _job(tmp_path)
    job.output_path.touch()
    with pytest.raises(EncoderError, match="no output"):
        encode(job, cwd=tmp_path)


def test_reserve_path_never_reuses_a_name(tmp_path, monkeypatch):
    import video_render
    monkeypatch.setattr(video_render, "timestamp_ms", lambda: 1234)
    first = reserve_path(tmp_path, "video-", ".mp4")
    second = reserve_path(tmp_path, "video-", ".mp4")
    assert (first.name, second.name) == ("video-1234.mp4", "video-1234-1.mp4")
    assert first.exists() and second.exists()

    m1 = write_manifest([tmp_path / "a.png"], 4, tmp_path)
    m2 = write_manifest([tmp_path / "b.png"], 4, tmp_path)
    assert m1 != m2
    assert m1.read_text(encoding="utf-8") == "file 'a.png'\nduration 4.0"
    assert m2.read_text(encoding="utf-8") == "file 'b.png'\nduration 4.0"
