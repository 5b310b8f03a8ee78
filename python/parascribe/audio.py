from __future__ import annotations

import json
import logging
import os
import subprocess
from pathlib import Path

from .models import MediaSegment

logger = logging.getLogger(__name__)

SAMPLE_RATE = 16000
SEGMENT_SUFFIX = ".flac"


def run(cmd: list[str]) -> None:
    subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG_BIN", "ffmpeg")


def ffprobe_bin() -> str:
    return os.environ.get("FFPROBE_BIN", "ffprobe")


def probe_duration_seconds(source: Path) -> float:
    cmd = [
        ffprobe_bin(),
        "-v",
        "error",
        "-show_entries",
        "format=duration",
        "-of",
        "json",
        str(source),
    ]
    completed = subprocess.run(cmd, check=True, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
    payload = json.loads(completed.stdout.decode("utf-8"))
    duration = float(payload.get("format", {}).get("duration", 0) or 0)
    if duration <= 0:
        raise RuntimeError(f"Could not read duration of {source} via ffprobe")
    return duration


def render_segment(source: Path, out_path: Path, start_sec: float, duration_sec: float) -> None:
    out_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        ffmpeg_bin(),
        "-y",
        "-ss",
        f"{start_sec:.3f}",
        "-t",
        f"{duration_sec:.3f}",
        "-i",
        str(source),
        "-vn",
        "-ac",
        "1",
        "-ar",
        str(SAMPLE_RATE),
        "-c:a",
        "flac",
        str(out_path),
    ]
    run(cmd)


def segment_path(out_dir: Path, source: Path, index: int) -> Path:
    return out_dir / f"{source.stem}_segment_{index:03d}{SEGMENT_SUFFIX}"


def render_segments(
    source: Path,
    segments: list[MediaSegment],
    out_dir: Path,
) -> dict[int, str]:
    """Render one file per segment and attach it as the segment's source handle.

    A failed render only affects its own segment: the error message is
    returned keyed by segment index and the segment keeps no handle.
    """
    out_dir.mkdir(parents=True, exist_ok=True)
    failures: dict[int, str] = {}

    for segment in segments:
        out_path = segment_path(out_dir, source, segment.index)
        try:
            render_segment(source, out_path, segment.start_sec, max(0.05, segment.duration_sec))
        except (subprocess.CalledProcessError, OSError) as exc:
            stderr = getattr(exc, "stderr", None)
            detail = stderr.decode("utf-8", "replace").strip() if isinstance(stderr, bytes) and stderr else str(exc)
            logger.warning("Rendering segment %d of %s failed: %s", segment.index, source.name, detail)
            failures[segment.index] = f"Segment rendering failed: {detail}"
            continue
        segment.source_handle = out_path

    logger.info("Rendered %d/%d segments of %s", len(segments) - len(failures), len(segments), source.name)
    return failures


def discard_segment_file(segment: MediaSegment) -> None:
    if segment.source_handle is None:
        return
    try:
        segment.source_handle.unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove segment file %s: %s", segment.source_handle, exc)
    segment.source_handle = None
