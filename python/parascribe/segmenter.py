from __future__ import annotations

import math

from .models import MediaSegment


# A trailing remainder up to this many segment lengths is folded into the last segment.
TAIL_FOLD_FACTOR = 1.5


class SegmentationError(ValueError):
    pass


def plan_segments(
    total_sec: float,
    segment_sec: float,
    overlap_sec: float,
) -> list[MediaSegment]:
    """Split ``[0, total_sec)`` into overlapping windows.

    Each window starts ``segment_sec - overlap_sec`` after the previous one.
    Once the remaining duration is at most ``TAIL_FOLD_FACTOR * segment_sec``
    the window is stretched to the end of the input instead of leaving a
    very short trailing segment.
    """
    for name, value in (("Total duration", total_sec), ("Segment duration", segment_sec), ("Overlap", overlap_sec)):
        if not math.isfinite(value):
            raise SegmentationError(f"{name} must be a finite number, got {value}")
    if total_sec <= 0:
        raise SegmentationError(f"Total duration must be positive, got {total_sec}")
    if segment_sec <= 0:
        raise SegmentationError(f"Segment duration must be positive, got {segment_sec}")
    if overlap_sec < 0:
        raise SegmentationError(f"Overlap duration cannot be negative, got {overlap_sec}")
    if overlap_sec >= segment_sec:
        raise SegmentationError(
            f"Overlap ({overlap_sec}s) must be shorter than the segment duration ({segment_sec}s)"
        )

    step = segment_sec - overlap_sec
    segments: list[MediaSegment] = []
    start = 0.0
    idx = 0

    while True:
        remaining = total_sec - start
        if remaining <= segment_sec * TAIL_FOLD_FACTOR:
            segments.append(MediaSegment(index=idx, start_sec=round(start, 3), end_sec=total_sec))
            break

        segments.append(MediaSegment(index=idx, start_sec=round(start, 3), end_sec=round(start + segment_sec, 3)))
        idx += 1
        start += step

    return segments
