#!/usr/bin/env python3
"""
create_video.py: upload an audio track and a set of images to the video
                generator and (optionally) download the finished MP4.

Workflow
--------
  1. POST /create-video  (curl -F, one part per file)
  2. Print the JSON summary
  3. GET  /download/<name>  →  --out, if given

Usage
-----
  python3 create_video.py \\
      --audio    narration.mp3 \\
      --images   slides/01.jpg slides/02.jpg slides/03.jpg \\
      --subtitles cues.json \\
      --duration 45 \\
      --api-url  http://localhost:3000 \\
      --out      /tmp/slideshow.mp4

cues.json is a JSON array of {"start": 0.0, "end": 2.5, "text": "..."}.
--duration auto uses the audio length.
"""

import argparse
import json
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path


def build_upload_command(
    api_url: str,
    audio: Path,
    images: list[Path],
    subtitles: str | None = None,
    duration: str | None = None,
) -> list[str]:
    cmd = ["curl", "-s", "-X", "POST", "-F", f"audio=@{audio}"]
    for img in images:
        cmd += ["-F", f"images=@{img}"]
    if subtitles:
        # "<" makes curl send the file contents as a plain text field
        cmd += ["-F", f"subtitles=<{subtitles}"]
    if duration:
        cmd += ["-F", f"duration={duration}"]
    cmd.append(f"{api_url.rstrip('/')}/create-video")
    return cmd


def upload(cmd: list[str], timeout: int = 720) -> dict:
    """Run the curl upload and return the service's JSON response."""
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    if result.returncode != 0:
        raise RuntimeError(f"curl failed ({result.returncode}): {result.stderr.strip()[:400]}")
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        raise RuntimeError(f"Non-JSON from /create-video: {result.stdout[:400]}")


def download_video(api_url: str, video_path: str, dest: Path) -> None:
    url = f"{api_url.rstrip('/')}{video_path}"
    print(f"Downloading {url} …")
    try:
        urllib.request.urlretrieve(url, str(dest))
    except urllib.error.HTTPError as e:
        raise RuntimeError(f"Download failed ({e.code}): {url}")
    print(f"     Saved: {dest} ({dest.stat().st_size // 1024} KB)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Create a slideshow video from an audio track and images.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--audio", required=True, help="Audio track (MP3, WAV, ...)")
    parser.add_argument("--images", required=True, nargs="+",
                        help="Image files, shown in the order given")
    parser.add_argument("--subtitles", help="JSON file with [{start, end, text}, ...]")
    parser.add_argument("--duration", help="Total seconds, or 'auto' (server default: 60)")
    parser.add_argument("--api-url", default="http://localhost:3000")
    parser.add_argument("--out", help="Where to save the MP4 (skip download if omitted)")
    args = parser.parse_args(argv)

    audio = Path(args.audio)
    images = [Path(p) for p in args.images]
    missing = [p for p in [audio, *images] if not p.exists()]
    if args.subtitles and not Path(args.subtitles).exists():
        missing.append(Path(args.subtitles))
    if missing:
        print(f"ERROR: file not found: {', '.join(map(str, missing))}", file=sys.stderr)
        sys.exit(1)

    print("=" * 60)
    print(f"  Audio    : {audio}")
    print(f"  Images   : {len(images)}")
    print(f"  API      : {args.api_url}")
    print("=" * 60)

    try:
        cmd = build_upload_command(
            args.api_url, audio, images,
            subtitles=args.subtitles, duration=args.duration,
        )
        result = upload(cmd)
        if result.get("success") and args.out:
            out = Path(args.out)
            out.parent.mkdir(parents=True, exist_ok=True)
            download_video(args.api_url, result["videoPath"], out)
    except Exception as exc:
        print(f"\n❌  {exc}", file=sys.stderr)
        sys.exit(1)

    if not result.get("success"):
        print(f"❌  Render failed: {result}", file=sys.stderr)
        sys.exit(1)

    print()
    print(f"  Video    : {args.api_url.rstrip('/')}{result['videoPath']}")
    print(f"  Size     : {result['size'] / 1024 / 1024:.2f} MB")
    print(f"  Duration : {result['duration']}s")
    print("  (purged from the server 5 minutes after creation)")


if __name__ == "__main__":
    main()
