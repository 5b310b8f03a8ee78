from pathlib import Path

from docx import Document
from docx.shared import Mm, Twips

from parascribe.exporters import TEXT_COL_TWIPS, export_docx, export_txt, format_timestamp
from parascribe.models import MergedTranscript, SegmentFailure, TimedSegment


def _transcript(failed: int = 0) -> dict:
    merged = MergedTranscript(
        full_text="Welcome to the show. Today we talk about rivers.",
        language="en",
        total_duration_sec=3720.0,
        segments=[
            TimedSegment(start_sec=0.0, end_sec=2.4, text="Welcome to the show."),
            TimedSegment(start_sec=29.0, end_sec=31.5, text="Today we talk about rivers."),
            TimedSegment(start_sec=3605.2, end_sec=3610.0, text="Thanks for listening."),
        ],
        successful_segment_count=3,
        failed_segment_count=failed,
        model="whisper-1",
        confidence=0.8,
        failures=[SegmentFailure(segment_index=1, kind="rate_limited", message="busy")] * failed,
    )
    return merged.to_dict()


JOB = {
    "sourcePath": "/tmp/river_podcast.mp3",
    "createdAt": "2026-02-11T10:15:00+00:00",
}


def test_format_timestamp():
    assert format_timestamp(0) == "00:00"
    assert format_timestamp(61.4) == "01:01"
    assert format_timestamp(3605.2) == "1:00:05"


def test_export_txt_contains_header_and_timed_lines(tmp_path: Path):
    out = tmp_path / "out.txt"
    export_txt(JOB, _transcript(), out)
    content = out.read_text(encoding="utf-8")

    assert content.startswith('File: "river_podcast"\nDate: 2026-02-11\nDuration: 62 minutes\nLanguage: en\n')
    assert "Segments transcribed: 3/3" in content
    assert "Warning:" not in content
    assert "[00:00]\tWelcome to the show." in content
    assert "[00:29]\tToday we talk about rivers." in content
    assert content.rstrip().endswith("[1:00:05]\tThanks for listening.")


def test_export_txt_warns_about_gaps(tmp_path: Path):
    out = tmp_path / "out.txt"
    export_txt(JOB, _transcript(failed=1), out)
    content = out.read_text(encoding="utf-8")

    assert "Segments transcribed: 3/4" in content
    assert "Warning: 1 segment(s) could not be transcribed" in content


def test_export_txt_falls_back_to_full_text(tmp_path: Path):
    out = tmp_path / "out.txt"
    export_txt(JOB, {"text": "Only text here.", "durationSec": 12}, out)

    assert "[00:00]\tOnly text here." in out.read_text(encoding="utf-8")


def test_export_docx_uses_timestamp_table_layout(tmp_path: Path):
    out = tmp_path / "out.docx"
    export_docx(JOB, _transcript(failed=1), out)

    doc = Document(out)
    assert doc.paragraphs[0].text == 'File: "river_podcast"'
    warning = next(p for p in doc.paragraphs if p.text.startswith("Warning:"))
    assert warning.runs[0].bold
    assert len(doc.tables) == 1

    table = doc.tables[0]
    assert len(table.columns) == 2
    assert [row.cells[0].text for row in table.rows] == ["00:00", "00:29", "1:00:05"]
    assert table.rows[1].cells[1].text == "Today we talk about rivers."
    assert abs(int(table.columns[1].width) - int(Twips(TEXT_COL_TWIPS))) <= 80

    section = doc.sections[0]
    assert abs(int(section.left_margin) - int(Mm(20))) <= 400
    assert abs(int(section.right_margin) - int(Mm(20))) <= 400
