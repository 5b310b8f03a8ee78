from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .models import TimedSegment, TimedWord, TranscriptionPayload

logger = logging.getLogger(__name__)

TEXT_MODEL = os.environ.get("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
REQUEST_TIMEOUT_SEC = float(os.environ.get("OPENAI_REQUEST_TIMEOUT_SEC", "180"))


class TranscriberUnavailableError(RuntimeError):
    pass


def _to_dict(value: Any) -> dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    if hasattr(value, "model_dump"):
        return value.model_dump()  # pydantic style
    if hasattr(value, "to_dict"):
        return value.to_dict()
    return dict(value)


def _float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _parse_segments(payload: dict[str, Any]) -> list[TimedSegment]:
    segments: list[TimedSegment] = []
    for raw in payload.get("segments") or []:
        if not isinstance(raw, dict):
            raw = _to_dict(raw)

        text = str(raw.get("text", "")).strip()
        if not text:
            continue

        start_value = _float(raw.get("start", 0.0), 0.0)
        end_value = _float(raw.get("end", start_value), start_value)
        avg_logprob = raw.get("avg_logprob")

        segments.append(
            TimedSegment(
                start_sec=max(0.0, start_value),
                end_sec=max(start_value, end_value),
                text=text,
                avg_logprob=_float(avg_logprob, 0.0) if avg_logprob is not None else None,
            )
        )
    return segments


def _parse_words(payload: dict[str, Any]) -> list[TimedWord]:
    words: list[TimedWord] = []
    for raw in payload.get("words") or []:
        if not isinstance(raw, dict):
            raw = _to_dict(raw)

        word = str(raw.get("word", "")).strip()
        if not word:
            continue

        start_value = _float(raw.get("start", 0.0), 0.0)
        end_value = _float(raw.get("end", start_value), start_value)
        words.append(TimedWord(start_sec=max(0.0, start_value), end_sec=max(start_value, end_value), word=word))
    return words


def parse_transcription(payload: dict[str, Any], *, model: str) -> TranscriptionPayload:
    duration = payload.get("duration")
    usage = payload.get("usage")
    return TranscriptionPayload(
        text=str(payload.get("text", "")).strip(),
        language=payload.get("language"),
        duration_sec=_float(duration, 0.0) if duration is not None else None,
        segments=_parse_segments(payload),
        words=_parse_words(payload),
        model=model,
        usage=_to_dict(usage) if usage else {},
    )


class OpenAITranscriber:
    """Speech-to-text on one audio file through the OpenAI transcription API.

    The client is built with SDK retries disabled; retrying is the
    scheduler's job. Provider errors propagate unchanged so they can be
    classified by status code and message.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = TEXT_MODEL,
        language: str | None = None,
        temperature: float = 0.0,
    ):
        self.model = model
        self.language = language
        self.temperature = temperature
        self._api_key = api_key
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is not None:
            return self._client

        try:
            from openai import OpenAI
        except ImportError as exc:  # pragma: no cover - env dependent
            raise TranscriberUnavailableError("The openai package is not installed") from exc

        api_key = (self._api_key or os.environ.get("OPENAI_API_KEY", "")).strip()
        if not api_key:
            raise TranscriberUnavailableError("OPENAI_API_KEY is not set")

        self._client = OpenAI(api_key=api_key, max_retries=0)
        return self._client

    def transcribe(self, audio_path: Path, *, timeout_sec: float = REQUEST_TIMEOUT_SEC) -> TranscriptionPayload:
        client = self._get_client()
        options: dict[str, Any] = {
            "model": self.model,
            "response_format": "verbose_json",
            "timestamp_granularities": ["segment", "word"],
            "temperature": self.temperature,
            "timeout": timeout_sec,
        }
        if self.language:
            options["language"] = self.language

        with audio_path.open("rb") as audio_file:
            response = client.audio.transcriptions.create(file=audio_file, **options)

        payload = parse_transcription(_to_dict(response), model=self.model)
        logger.debug("Transcribed %s: %d characters", audio_path.name, len(payload.text))
        return payload
