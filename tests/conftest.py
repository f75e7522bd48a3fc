import io

import pytest

import video_api
from video_api import Settings, create_app


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=tmp_path / "uploads", cleanup_delay=300)


@pytest.fixture
def app(settings):
    app = create_app(settings)
    app.config["TESTING"] = True
    yield app
    app.extensions["videogen_cleanup"].shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def fake_encode(monkeypatch):
    """Replace the FFmpeg run with one that writes a small MP4 stand-in."""
    calls = []

    def _encode(job, cwd, **kwargs):
        calls.append({
            "job": job,
            "cwd": cwd,
            "manifest": job.manifest_path.read_text(encoding="utf-8"),
            "srt": job.subtitle_path.read_text(encoding="utf-8") if job.subtitle_path else None,
            **kwargs,
        })
        job.output_path.write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 100)

    monkeypatch.setattr(video_api, "encode", _encode)
    return calls


def make_form(n_images=3, audio=True, **fields):
    data = dict(fields)
    if audio:
        data["audio"] = (io.BytesIO(b"ID3fake-audio"), "track.mp3")
    if n_images:
        data["images"] = [
            (io.BytesIO(b"\x89PNG fake %d" % i), f"slide{i}.png") for i in range(n_images)
        ]
    return data
