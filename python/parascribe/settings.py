from __future__ import annotations

import os
from dataclasses import dataclass, field

from .scheduler import PacingPolicy, RateLimits, RetryPolicy

DEFAULT_PROVIDER = "openai"


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(slots=True, frozen=True)
class TimeoutPolicy:
    base_sec: float = 30.0
    per_mb_sec: float = 10.0
    max_sec: float = 180.0

    def for_size(self, size_bytes: int) -> float:
        size_mb = size_bytes / (1024 * 1024)
        return min(self.max_sec, self.base_sec + size_mb * self.per_mb_sec)


@dataclass(slots=True, frozen=True)
class PipelineSettings:
    segment_sec: float = 30.0
    overlap_sec: float = 2.0
    max_retries: int = 3
    workers_per_provider: int = 3
    provider: str = DEFAULT_PROVIDER
    language: str | None = None
    similarity_threshold: float = 0.6
    limits: RateLimits = field(default_factory=RateLimits)
    pacing: PacingPolicy = field(default_factory=PacingPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    timeouts: TimeoutPolicy = field(default_factory=TimeoutPolicy)

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        return cls(
            segment_sec=_env_float("TRANSCRIPTION_SEGMENT_DURATION", 30.0),
            overlap_sec=_env_float("TRANSCRIPTION_OVERLAP_DURATION", 2.0),
            max_retries=_env_int("TRANSCRIPTION_MAX_RETRIES", 3),
            workers_per_provider=_env_int("TRANSCRIPTION_WORKERS", 3),
            language=os.environ.get("TRANSCRIPTION_LANGUAGE", "").strip() or None,
            similarity_threshold=_env_float("MERGE_SIMILARITY_THRESHOLD", 0.6),
            limits=RateLimits(
                requests_per_minute=_env_int("OPENAI_REQUESTS_PER_MINUTE", 50),
                tokens_per_minute=_env_int("OPENAI_TOKENS_PER_MINUTE", 150_000),
                requests_per_day=_env_int("OPENAI_REQUESTS_PER_DAY", 1000),
                max_concurrent_requests=_env_int("OPENAI_MAX_CONCURRENT", 5),
                burst_limit=_env_int("OPENAI_BURST_LIMIT", 10),
            ),
            timeouts=TimeoutPolicy(
                base_sec=_env_float("SEGMENT_TIMEOUT_BASE_SEC", 30.0),
                per_mb_sec=_env_float("SEGMENT_TIMEOUT_PER_MB_SEC", 10.0),
                max_sec=_env_float("SEGMENT_TIMEOUT_MAX_SEC", 180.0),
            ),
        )

    def as_dict(self) -> dict[str, object]:
        return {
            "segmentSec": self.segment_sec,
            "overlapSec": self.overlap_sec,
            "maxRetries": self.max_retries,
            "workersPerProvider": self.workers_per_provider,
            "provider": self.provider,
            "language": self.language,
            "similarityThreshold": self.similarity_threshold,
            "requestsPerMinute": self.limits.requests_per_minute,
            "tokensPerMinute": self.limits.tokens_per_minute,
            "requestsPerDay": self.limits.requests_per_day,
            "maxConcurrentRequests": self.limits.max_concurrent_requests,
            "burstLimit": self.limits.burst_limit,
        }
