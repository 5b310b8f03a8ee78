from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Any


TIME_COL_TWIPS = 1134
PAGE_WIDTH_TWIPS = 11906
SIDE_MARGIN_TWIPS = 1134
TEXT_COL_TWIPS = PAGE_WIDTH_TWIPS - (SIDE_MARGIN_TWIPS * 2) - TIME_COL_TWIPS


def format_timestamp(seconds: float) -> str:
    total = max(0, int(round(seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def _source_label(job: dict[str, Any]) -> str:
    return Path(str(job.get("sourcePath") or "")).stem or "transcript"


def _header_lines(job: dict[str, Any], transcript: dict[str, Any]) -> list[str]:
    duration_sec = float(transcript.get("durationSec", 0) or 0)
    duration_min = max(1, round(duration_sec / 60))
    successful = int(transcript.get("successfulSegments", 0) or 0)
    failed = int(transcript.get("failedSegments", 0) or 0)
    created = str(job.get("createdAt") or "").strip()
    date_str = created[:10] if created else datetime.now().strftime("%Y-%m-%d")

    lines = [
        f'File: "{_source_label(job)}"',
        f"Date: {date_str}",
        f"Duration: {duration_min} minutes",
        f"Language: {transcript.get('language') or 'unknown'}",
        f"Segments transcribed: {successful}/{successful + failed}",
    ]
    if failed:
        lines.append(f"Warning: {failed} segment(s) could not be transcribed; the text has gaps.")
    lines.append("")
    return lines


def _line_entries(transcript: dict[str, Any]) -> list[tuple[str, str]]:
    entries: list[tuple[str, str]] = []
    for segment in transcript.get("segments") or []:
        text = str(segment.get("text") or "").strip()
        if not text:
            continue
        entries.append((format_timestamp(float(segment.get("startSec") or 0)), text))
    if not entries and transcript.get("text"):
        entries.append((format_timestamp(0), str(transcript["text"]).strip()))
    return entries


def export_txt(job: dict[str, Any], transcript: dict[str, Any], output_path: Path) -> None:
    lines = _header_lines(job, transcript)

    for stamp, text in _line_entries(transcript):
        lines.append(f"[{stamp}]\t{text}")

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text("\n".join(lines).strip() + "\n", encoding="utf-8")


def export_docx(job: dict[str, Any], transcript: dict[str, Any], output_path: Path) -> None:
    try:
        from docx import Document
        from docx.enum.table import WD_TABLE_ALIGNMENT
        from docx.shared import Mm, Pt, Twips
    except ImportError as exc:  # pragma: no cover - env dependent
        raise RuntimeError("python-docx is not installed") from exc

    def _format_paragraph(paragraph: Any) -> None:
        paragraph.paragraph_format.space_after = Pt(0)
        paragraph.paragraph_format.space_before = Pt(0)
        paragraph.paragraph_format.line_spacing = 1.0

    doc = Document()
    section = doc.sections[0]
    section.page_width = Mm(210)
    section.page_height = Mm(297)
    section.left_margin = Mm(20)
    section.right_margin = Mm(20)

    style = doc.styles["Normal"]
    style.font.size = Pt(11)
    style.paragraph_format.space_after = Pt(0)
    style.paragraph_format.space_before = Pt(0)

    for line in _header_lines(job, transcript):
        paragraph = doc.add_paragraph(line)
        _format_paragraph(paragraph)
        if line.startswith("Warning:") and paragraph.runs:
            paragraph.runs[0].bold = True

    entries = _line_entries(transcript)
    if entries:
        table = doc.add_table(rows=0, cols=2)
        table.autofit = False
        table.alignment = WD_TABLE_ALIGNMENT.LEFT
        table.columns[0].width = Twips(TIME_COL_TWIPS)
        table.columns[1].width = Twips(TEXT_COL_TWIPS)

        for stamp, text in entries:
            row = table.add_row()
            row.cells[0].width = Twips(TIME_COL_TWIPS)
            row.cells[1].width = Twips(TEXT_COL_TWIPS)
            stamp_p = row.cells[0].paragraphs[0]
            _format_paragraph(stamp_p)
            stamp_p.add_run(stamp).bold = True
            text_p = row.cells[1].paragraphs[0]
            _format_paragraph(text_p)
            text_p.add_run(text)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    doc.save(output_path)
