from pathlib import Path

import pytest

from parascribe import paths
from parascribe.settings import PipelineSettings, TimeoutPolicy


def test_from_env_defaults(monkeypatch):
    for name in ("TRANSCRIPTION_SEGMENT_DURATION", "OPENAI_REQUESTS_PER_MINUTE", "TRANSCRIPTION_LANGUAGE"):
        monkeypatch.delenv(name, raising=False)

    settings = PipelineSettings.from_env()

    assert settings.segment_sec == 30.0
    assert settings.overlap_sec == 2.0
    assert settings.language is None
    assert settings.limits.requests_per_minute == 50
    assert settings.limits.burst_limit == 10
    assert settings.as_dict()["provider"] == "openai"


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("OPENAI_REQUESTS_PER_MINUTE", "20")
    monkeypatch.setenv("OPENAI_MAX_CONCURRENT", "2")
    monkeypatch.setenv("TRANSCRIPTION_LANGUAGE", " da ")
    monkeypatch.setenv("SEGMENT_TIMEOUT_MAX_SEC", "90")

    settings = PipelineSettings.from_env()

    assert settings.limits.requests_per_minute == 20
    assert settings.limits.max_concurrent_requests == 2
    assert settings.language == "da"
    assert settings.timeouts.max_sec == 90.0


def test_from_env_rejects_malformed_numbers(monkeypatch):
    monkeypatch.setenv("TRANSCRIPTION_MAX_RETRIES", "lots")

    with pytest.raises(ValueError, match="TRANSCRIPTION_MAX_RETRIES"):
        PipelineSettings.from_env()


def test_timeout_grows_with_file_size_up_to_cap():
    policy = TimeoutPolicy()

    assert policy.for_size(0) == 30.0
    assert policy.for_size(3 * 1024 * 1024) == pytest.approx(60.0)
    assert policy.for_size(100 * 1024 * 1024) == 180.0


def test_paths_live_under_app_data_dir(monkeypatch, tmp_path: Path):
    monkeypatch.setenv("APP_DATA_DIR", str(tmp_path / "data"))

    segments = paths.segments_dir("job42")

    assert segments == tmp_path / "data" / "jobs" / "job42" / "segments"
    assert segments.is_dir()
    assert paths.result_path("job42") == tmp_path / "data" / "jobs" / "job42" / "result.json"


def test_app_data_dir_falls_back_to_xdg(monkeypatch, tmp_path: Path):
    monkeypatch.delenv("APP_DATA_DIR", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))

    assert paths.app_data_dir() == tmp_path / "parascribe"
