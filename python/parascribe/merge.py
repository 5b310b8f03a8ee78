from __future__ import annotations

import logging
import re
from collections import Counter
from typing import Iterable, Protocol, Sequence

from .models import MediaSegment, MergedTranscript, SegmentFailure, SegmentResult, TimedSegment, TimedWord

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.6
MAX_OVERLAP_WORDS = 5
MIN_OVERLAP_WORDS = 2


class NoValidSegmentsError(RuntimeError):
    def __init__(self, failure_kinds: dict[str, int]):
        self.failure_kinds = dict(failure_kinds)
        if failure_kinds:
            detail = ", ".join(f"{kind}={count}" for kind, count in sorted(failure_kinds.items()))
        else:
            detail = "no segments"
        super().__init__(f"No valid segment transcriptions found ({detail})")

    @property
    def rate_limited(self) -> bool:
        return self.failure_kinds.get("rate_limited", 0) > 0

    @property
    def only_fatal(self) -> bool:
        return bool(self.failure_kinds) and set(self.failure_kinds) == {"fatal"}


class SimilarityStrategy(Protocol):
    def similarity(self, a: Sequence[str], b: Sequence[str]) -> float:
        ...


class PositionalWordSimilarity:
    """Share of positions holding the same word in both windows."""

    def similarity(self, a: Sequence[str], b: Sequence[str]) -> float:
        total = max(len(a), len(b))
        if total == 0:
            return 0.0
        same = sum(1 for left, right in zip(a, b) if left and left == right)
        return same / total


class WordOverlapSimilarity:
    """Share of words in ``a`` that occur anywhere in ``b``, ignoring order."""

    def similarity(self, a: Sequence[str], b: Sequence[str]) -> float:
        total = max(len(a), len(b))
        if total == 0:
            return 0.0
        vocabulary = set(b)
        common = sum(1 for word in a if word and word in vocabulary)
        return common / total


def _normalize_word(token: str) -> str:
    return re.sub(r"[^\w]", "", token.lower())


def _words(text: str) -> list[str]:
    return text.split()


def overlap_word_count(
    previous_text: str,
    current_text: str,
    *,
    strategy: SimilarityStrategy | None = None,
    threshold: float = SIMILARITY_THRESHOLD,
    max_window: int = MAX_OVERLAP_WORDS,
    min_window: int = MIN_OVERLAP_WORDS,
) -> int:
    """How many leading words of ``current_text`` repeat the tail of ``previous_text``.

    Windows are tried from the widest down so the longest duplicated run wins.
    """
    strategy = strategy or PositionalWordSimilarity()
    previous = [_normalize_word(token) for token in _words(previous_text)]
    current = [_normalize_word(token) for token in _words(current_text)]

    widest = min(max_window, len(previous), len(current))
    for size in range(widest, max(1, min_window) - 1, -1):
        tail = previous[-size:]
        head = current[:size]
        if strategy.similarity(tail, head) > threshold:
            return size
    return 0


def cleanup_text(text: str) -> str:
    if not text:
        return ""
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"\s+([.,!?;:])", r"\1", text)
    text = re.sub(r"([.!?])\s*([^\W\d_])", r"\1 \2", text)
    return text.strip()


def _failure_kinds(failed: Iterable[SegmentResult]) -> dict[str, int]:
    return dict(Counter(result.error_kind or "fatal" for result in failed))


def merge_results(
    results: Iterable[SegmentResult],
    segments: Sequence[MediaSegment] | None = None,
    *,
    strategy: SimilarityStrategy | None = None,
    threshold: float = SIMILARITY_THRESHOLD,
    max_window: int = MAX_OVERLAP_WORDS,
    min_window: int = MIN_OVERLAP_WORDS,
) -> MergedTranscript:
    ordered = sorted(results, key=lambda result: result.segment_index)
    successful = [result for result in ordered if result.ok]
    failed = [result for result in ordered if not result.ok]

    if not successful:
        raise NoValidSegmentsError(_failure_kinds(failed))

    parts: list[str] = []
    timed_segments: list[TimedSegment] = []
    timed_words: list[TimedWord] = []
    previous_text: str | None = None

    for result in successful:
        offset = result.start_sec
        timed_segments.extend(seg.shifted(offset) for seg in result.segments)
        timed_words.extend(word.shifted(offset) for word in result.words)

        text = result.text.strip()
        if not text:
            continue

        if previous_text is not None:
            dropped = overlap_word_count(
                previous_text,
                text,
                strategy=strategy,
                threshold=threshold,
                max_window=max_window,
                min_window=min_window,
            )
            if dropped:
                logger.debug("Segment %d repeats %d words of its predecessor", result.segment_index, dropped)
                text = " ".join(_words(text)[dropped:])

        previous_text = result.text.strip()
        if text:
            parts.append(text)

    if segments:
        total_duration = max(segment.end_sec for segment in segments)
    else:
        total_duration = max(result.end_sec for result in successful)

    first = successful[0]
    merged = MergedTranscript(
        full_text=cleanup_text(" ".join(parts)),
        language=first.language,
        total_duration_sec=total_duration,
        segments=timed_segments,
        words=timed_words,
        successful_segment_count=len(successful),
        failed_segment_count=len(failed),
        model=first.model,
        failures=[
            SegmentFailure(segment_index=r.segment_index, kind=r.error_kind or "fatal", message=r.error or "")
            for r in failed
        ],
    )
    logger.info(
        "Merged %d/%d segments: %d characters, %.1fs",
        merged.successful_segment_count,
        len(ordered),
        len(merged.full_text),
        merged.total_duration_sec,
    )
    return merged
