from __future__ import annotations

import logging
from concurrent.futures import Future, as_completed
from functools import partial
from math import exp
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

from .audio import discard_segment_file, probe_duration_seconds, render_segments
from .merge import SimilarityStrategy, merge_results
from .models import MediaSegment, MergedTranscript, SegmentResult, TimedSegment, TranscriptionPayload
from .openai_engine import OpenAITranscriber, parse_transcription
from .paths import segments_dir
from .scheduler import (
    FATAL,
    RATE_LIMITED,
    RateLimitedScheduler,
    RateLimitExhaustedError,
    SchedulerStoppedError,
    classify_error,
)
from .segmenter import plan_segments
from .settings import PipelineSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.8
MAX_UPLOAD_BYTES = 25 * 1024 * 1024
STOPPED = "stopped"

Dispatch = Callable[[MediaSegment], Any]
ProgressCallback = Callable[[int, int, SegmentResult], None]


def aggregate_confidence(segments: list[TimedSegment]) -> float:
    """Average per-segment confidence derived from provider log-probabilities."""
    scores = [
        max(0.0, min(1.0, exp(segment.avg_logprob)))
        for segment in segments
        if segment.avg_logprob is not None
    ]
    if not scores:
        return DEFAULT_CONFIDENCE
    return sum(scores) / len(scores)


def failure_kind(exc: BaseException) -> str:
    if isinstance(exc, RateLimitExhaustedError):
        return RATE_LIMITED
    if isinstance(exc, SchedulerStoppedError):
        return STOPPED
    return classify_error(exc)


def _as_payload(value: Any) -> TranscriptionPayload:
    if isinstance(value, TranscriptionPayload):
        return value
    if isinstance(value, dict):
        return parse_transcription(value, model=str(value.get("model") or ""))
    raise TypeError(f"Unsupported transcription result type: {type(value).__name__}")


class ParallelTranscriber:
    """Segment, fan out through the scheduler, fan back in and merge."""

    def __init__(
        self,
        scheduler: RateLimitedScheduler,
        transcriber: OpenAITranscriber | None = None,
        *,
        settings: PipelineSettings | None = None,
        strategy: SimilarityStrategy | None = None,
        progress: ProgressCallback | None = None,
    ):
        self.scheduler = scheduler
        self.transcriber = transcriber
        self.settings = settings or PipelineSettings()
        self.strategy = strategy
        self.progress = progress

    def run(
        self,
        total_sec: float,
        segment_sec: float,
        overlap_sec: float,
        dispatch: Dispatch,
    ) -> MergedTranscript:
        segments = plan_segments(total_sec, segment_sec, overlap_sec)
        return self._fan_out(segments, dispatch)

    def transcribe(
        self,
        source: Path,
        *,
        segment_sec: float | None = None,
        overlap_sec: float | None = None,
        work_dir: Path | None = None,
    ) -> MergedTranscript:
        segment_sec = self.settings.segment_sec if segment_sec is None else segment_sec
        overlap_sec = self.settings.overlap_sec if overlap_sec is None else overlap_sec

        duration = probe_duration_seconds(source)
        segments = plan_segments(duration, segment_sec, overlap_sec)
        logger.info(
            "Transcribing %s (%.1fs) as %d segments of %.0fs with %.1fs overlap",
            source.name,
            duration,
            len(segments),
            segment_sec,
            overlap_sec,
        )

        out_dir = work_dir or segments_dir(uuid4().hex[:12])
        render_failures = render_segments(source, segments, out_dir)
        try:
            return self._fan_out(segments, self._transcribe_segment, render_failures=render_failures)
        finally:
            for segment in segments:
                discard_segment_file(segment)
            if work_dir is None:
                try:
                    out_dir.rmdir()
                except OSError as exc:
                    logger.debug("Leaving segment directory %s in place: %s", out_dir, exc)

    def transcribe_whole(self, source: Path) -> MergedTranscript:
        """Send the whole file as one high-priority request."""
        size = source.stat().st_size
        if size > MAX_UPLOAD_BYTES:
            raise ValueError(
                f"File too large for a single request: {size / (1024 * 1024):.1f}MB "
                f"(max {MAX_UPLOAD_BYTES // (1024 * 1024)}MB)"
            )

        duration = probe_duration_seconds(source)
        segment = MediaSegment(index=0, start_sec=0.0, end_sec=duration, source_handle=source)
        future = self.scheduler.queue_request(
            self.settings.provider,
            partial(self._transcribe_segment, segment),
            priority="high",
            max_retries=self.settings.max_retries,
        )
        result = self._collect(segment, future)
        merged = merge_results([result], [segment], strategy=self.strategy, threshold=self.settings.similarity_threshold)
        merged.confidence = aggregate_confidence(merged.segments)
        return merged

    def _transcribe_segment(self, segment: MediaSegment) -> TranscriptionPayload:
        if self.transcriber is None:
            raise RuntimeError("No transcriber configured")
        if segment.source_handle is None:
            raise FileNotFoundError(f"Segment {segment.index} has no audio file")
        timeout = self.settings.timeouts.for_size(segment.source_handle.stat().st_size)
        return self.transcriber.transcribe(segment.source_handle, timeout_sec=timeout)

    def _collect(self, segment: MediaSegment, future: Future) -> SegmentResult:
        try:
            payload = _as_payload(future.result())
        except Exception as exc:  # noqa: BLE001 - a failed segment must not abort the job
            kind = failure_kind(exc)
            logger.warning("Segment %d failed (%s): %s", segment.index, kind, exc)
            return SegmentResult.failed(segment, str(exc), kind)
        return SegmentResult.from_payload(segment, payload)

    def _report(self, done: int, total: int, result: SegmentResult) -> None:
        if self.progress is not None:
            self.progress(done, total, result)

    def _fan_out(
        self,
        segments: list[MediaSegment],
        dispatch: Dispatch,
        *,
        render_failures: dict[int, str] | None = None,
    ) -> MergedTranscript:
        render_failures = render_failures or {}
        total = len(segments)
        results: list[SegmentResult] = []
        pending: dict[Future, MediaSegment] = {}

        for segment in segments:
            if segment.index in render_failures:
                results.append(SegmentResult.failed(segment, render_failures[segment.index], FATAL))
                self._report(len(results), total, results[-1])
                continue
            future = self.scheduler.queue_request(
                self.settings.provider,
                partial(dispatch, segment),
                priority="normal",
                max_retries=self.settings.max_retries,
                estimated_tokens=0,
            )
            pending[future] = segment

        for future in as_completed(pending):
            segment = pending[future]
            result = self._collect(segment, future)
            discard_segment_file(segment)
            results.append(result)
            self._report(len(results), total, result)

        successful = sum(1 for result in results if result.ok)
        logger.info("Parallel transcription finished: %d/%d segments successful", successful, total)

        merged = merge_results(
            results,
            segments,
            strategy=self.strategy,
            threshold=self.settings.similarity_threshold,
        )
        merged.confidence = aggregate_confidence(merged.segments)
        return merged
