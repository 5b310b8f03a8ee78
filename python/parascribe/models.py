from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


@dataclass(slots=True)
class MediaSegment:
    index: int
    start_sec: float
    end_sec: float
    source_handle: Path | None = None

    @property
    def duration_sec(self) -> float:
        return max(0.0, self.end_sec - self.start_sec)


@dataclass(slots=True)
class TimedSegment:
    start_sec: float
    end_sec: float
    text: str
    avg_logprob: float | None = None

    def shifted(self, offset_sec: float) -> "TimedSegment":
        return TimedSegment(
            start_sec=round(self.start_sec + offset_sec, 3),
            end_sec=round(self.end_sec + offset_sec, 3),
            text=self.text,
            avg_logprob=self.avg_logprob,
        )


@dataclass(slots=True)
class TimedWord:
    start_sec: float
    end_sec: float
    word: str

    def shifted(self, offset_sec: float) -> "TimedWord":
        return TimedWord(
            start_sec=round(self.start_sec + offset_sec, 3),
            end_sec=round(self.end_sec + offset_sec, 3),
            word=self.word,
        )


@dataclass(slots=True)
class TranscriptionPayload:
    """What a speech-to-text provider returns for one audio file."""

    text: str
    language: str | None = None
    duration_sec: float | None = None
    segments: list[TimedSegment] = field(default_factory=list)
    words: list[TimedWord] = field(default_factory=list)
    model: str | None = None
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class SegmentResult:
    segment_index: int
    start_sec: float
    end_sec: float
    text: str = ""
    language: str | None = None
    words: list[TimedWord] = field(default_factory=list)
    segments: list[TimedSegment] = field(default_factory=list)
    model: str | None = None
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def from_payload(cls, segment: MediaSegment, payload: TranscriptionPayload) -> "SegmentResult":
        return cls(
            segment_index=segment.index,
            start_sec=segment.start_sec,
            end_sec=segment.end_sec,
            text=(payload.text or "").strip(),
            language=payload.language,
            words=list(payload.words),
            segments=list(payload.segments),
            model=payload.model,
        )

    @classmethod
    def failed(cls, segment: MediaSegment, error: str, kind: str) -> "SegmentResult":
        return cls(
            segment_index=segment.index,
            start_sec=segment.start_sec,
            end_sec=segment.end_sec,
            error=error,
            error_kind=kind,
        )


@dataclass(slots=True)
class SegmentFailure:
    segment_index: int
    kind: str
    message: str


@dataclass(slots=True)
class MergedTranscript:
    full_text: str
    language: str | None
    total_duration_sec: float
    segments: list[TimedSegment] = field(default_factory=list)
    words: list[TimedWord] = field(default_factory=list)
    successful_segment_count: int = 0
    failed_segment_count: int = 0
    model: str | None = None
    confidence: float | None = None
    failures: list[SegmentFailure] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return self.failed_segment_count == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "text": self.full_text,
            "language": self.language,
            "durationSec": round(self.total_duration_sec, 3),
            "model": self.model,
            "confidence": round(self.confidence, 4) if self.confidence is not None else None,
            "successfulSegments": self.successful_segment_count,
            "failedSegments": self.failed_segment_count,
            "segments": [
                {
                    "startSec": seg.start_sec,
                    "endSec": seg.end_sec,
                    "text": seg.text,
                    "avgLogprob": seg.avg_logprob,
                }
                for seg in self.segments
            ],
            "words": [
                {"startSec": w.start_sec, "endSec": w.end_sec, "word": w.word}
                for w in self.words
            ],
            "failures": [
                {"segmentIndex": f.segment_index, "kind": f.kind, "message": f.message}
                for f in self.failures
            ],
        }
