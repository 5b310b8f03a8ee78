#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

# Ensure local package is importable when running from source.
SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

from parascribe.exporters import export_docx, export_txt
from parascribe.merge import NoValidSegmentsError
from parascribe.models import SegmentResult
from parascribe.openai_engine import OpenAITranscriber
from parascribe.paths import result_path, segments_dir
from parascribe.pipeline import ParallelTranscriber
from parascribe.scheduler import RateLimitedScheduler, SchedulerBudget
from parascribe.segmenter import SegmentationError, plan_segments
from parascribe.settings import PipelineSettings

logger = logging.getLogger("parascribe.worker")


def emit(event_type: str, payload: object) -> None:
    print(json.dumps({"type": event_type, "payload": payload}, ensure_ascii=False), flush=True)


def progress_payload(
    *,
    job_id: str,
    stage: str,
    percent: float,
    eta_seconds: int | None,
    segments_done: int,
    segments_total: int,
    message: str,
) -> dict[str, object]:
    return {
        "jobId": job_id,
        "stage": stage,
        "percent": round(max(0.0, min(100.0, percent)), 2),
        "etaSeconds": eta_seconds,
        "segmentsDone": segments_done,
        "segmentsTotal": segments_total,
        "message": message,
    }


def atomic_write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


def configure_logging() -> None:
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if os.environ.get("DEBUG", "0") == "1" else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def settings_from_args(args: argparse.Namespace) -> PipelineSettings:
    settings = PipelineSettings.from_env()
    overrides: dict[str, object] = {}
    if getattr(args, "segment_duration", None) is not None:
        overrides["segment_sec"] = float(args.segment_duration)
    if getattr(args, "overlap", None) is not None:
        overrides["overlap_sec"] = float(args.overlap)
    if getattr(args, "language", None):
        overrides["language"] = args.language
    if getattr(args, "workers", None):
        overrides["workers_per_provider"] = int(args.workers)
    return replace(settings, **overrides) if overrides else settings


def build_scheduler(settings: PipelineSettings) -> RateLimitedScheduler:
    budget = SchedulerBudget(settings.limits, settings.pacing)
    return RateLimitedScheduler(
        {settings.provider: budget},
        workers_per_provider=settings.workers_per_provider,
        retry_policy=settings.retry,
    )


def command_plan_segments(args: argparse.Namespace) -> int:
    try:
        segments = plan_segments(float(args.duration), float(args.segment_duration), float(args.overlap))
    except SegmentationError as exc:
        emit("error", {"message": str(exc)})
        return 1

    emit(
        "result",
        [
            {
                "index": segment.index,
                "startSec": segment.start_sec,
                "endSec": segment.end_sec,
                "durationSec": round(segment.duration_sec, 3),
            }
            for segment in segments
        ],
    )
    return 0


def command_run_job(args: argparse.Namespace) -> int:
    source_path = Path(args.source).expanduser().resolve()
    job_id = args.job_id or uuid4().hex[:12]
    if not source_path.exists():
        emit("error", {"jobId": job_id, "message": f"Source file not found: {source_path}"})
        return 1

    settings = settings_from_args(args)
    emit(
        "progress",
        progress_payload(
            job_id=job_id,
            stage="preprocess",
            percent=3,
            eta_seconds=None,
            segments_done=0,
            segments_total=0,
            message="Preparing audio and planning segments...",
        ),
    )

    scheduler = build_scheduler(settings)
    started = time.monotonic()

    def on_progress(done: int, total: int, result: SegmentResult) -> None:
        elapsed = time.monotonic() - started
        eta = int(elapsed / max(done, 1) * max(0, total - done))
        outcome = "done" if result.ok else f"failed ({result.error_kind})"
        emit(
            "progress",
            {
                **progress_payload(
                    job_id=job_id,
                    stage="transcribe",
                    percent=10 + (done / max(total, 1)) * 80,
                    eta_seconds=eta,
                    segments_done=done,
                    segments_total=total,
                    message=f"Segment {result.segment_index + 1}/{total} {outcome}",
                ),
                "queue": scheduler.get_queue_status(settings.provider),
            },
        )

    pipeline = ParallelTranscriber(
        scheduler,
        OpenAITranscriber(language=settings.language),
        settings=settings,
        progress=on_progress,
    )

    try:
        if args.whole:
            merged = pipeline.transcribe_whole(source_path)
        else:
            merged = pipeline.transcribe(source_path, work_dir=segments_dir(job_id))
    except NoValidSegmentsError as exc:
        emit("error", {"jobId": job_id, "message": str(exc), "failureKinds": exc.failure_kinds})
        return 1
    except (SegmentationError, ValueError, OSError, RuntimeError) as exc:
        logger.exception("Job %s failed", job_id)
        emit("error", {"jobId": job_id, "message": str(exc)})
        return 1
    finally:
        scheduler.shutdown()

    result = {
        "jobId": job_id,
        "sourcePath": str(source_path),
        "createdAt": datetime.now(timezone.utc).isoformat(),
        "settings": settings.as_dict(),
        "transcript": merged.to_dict(),
    }
    atomic_write_json(result_path(job_id), result)
    emit("result", result)
    return 0


def _load_result(path: Path) -> dict[str, object] | None:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        emit("error", {"message": f"Could not read result file {path}: {exc}"})
        return None


def command_export_txt(args: argparse.Namespace) -> int:
    result = _load_result(Path(args.input))
    if result is None:
        return 1
    export_txt(result, dict(result.get("transcript") or {}), Path(args.output))
    emit("result", {"filePath": args.output})
    return 0


def command_export_docx(args: argparse.Namespace) -> int:
    result = _load_result(Path(args.input))
    if result is None:
        return 1
    export_docx(result, dict(result.get("transcript") or {}), Path(args.output))
    emit("result", {"filePath": args.output})
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="parascribe worker")
    sub = parser.add_subparsers(dest="command", required=True)

    plan = sub.add_parser("plan-segments")
    plan.add_argument("--duration", type=float, required=True)
    plan.add_argument("--segment-duration", type=float, default=30.0)
    plan.add_argument("--overlap", type=float, default=2.0)
    plan.set_defaults(func=command_plan_segments)

    run_job = sub.add_parser("run-job")
    run_job.add_argument("--source", required=True)
    run_job.add_argument("--job-id", required=False)
    run_job.add_argument("--segment-duration", type=float)
    run_job.add_argument("--overlap", type=float)
    run_job.add_argument("--language")
    run_job.add_argument("--workers", type=int)
    run_job.add_argument("--whole", action="store_true")
    run_job.set_defaults(func=command_run_job)

    export_txt_parser = sub.add_parser("export-txt")
    export_txt_parser.add_argument("--input", required=True)
    export_txt_parser.add_argument("--output", required=True)
    export_txt_parser.set_defaults(func=command_export_txt)

    export_docx_parser = sub.add_parser("export-docx")
    export_docx_parser.add_argument("--input", required=True)
    export_docx_parser.add_argument("--output", required=True)
    export_docx_parser.set_defaults(func=command_export_docx)

    return parser


def main(argv: list[str] | None = None) -> int:
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    return int(args.func(args))


if __name__ == "__main__":
    raise SystemExit(main())
