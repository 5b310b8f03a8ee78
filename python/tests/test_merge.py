import pytest

from parascribe.merge import (
    NoValidSegmentsError,
    WordOverlapSimilarity,
    cleanup_text,
    merge_results,
    overlap_word_count,
)
from parascribe.models import MediaSegment, SegmentResult, TimedSegment, TimedWord


def _ok(index: int, start: float, end: float, text: str, **kwargs) -> SegmentResult:
    return SegmentResult(segment_index=index, start_sec=start, end_sec=end, text=text, **kwargs)


def _failed(index: int, start: float, end: float, kind: str = "fatal") -> SegmentResult:
    return SegmentResult.failed(MediaSegment(index=index, start_sec=start, end_sec=end), "boom", kind)


def test_merge_results_drops_words_repeated_across_the_boundary():
    merged = merge_results(
        [
            _ok(0, 0.0, 30.0, "the quick brown fox jumps"),
            _ok(1, 28.0, 58.0, "brown fox jumps over the lazy dog"),
        ]
    )

    assert merged.full_text == "the quick brown fox jumps over the lazy dog"
    assert merged.successful_segment_count == 2
    assert merged.failed_segment_count == 0
    assert merged.complete


def test_merge_results_keeps_text_without_overlap():
    merged = merge_results(
        [
            _ok(0, 0.0, 30.0, "Welcome to the show."),
            _ok(1, 28.0, 58.0, "Today we talk about rivers."),
        ]
    )

    assert merged.full_text == "Welcome to the show. Today we talk about rivers."


def test_merge_results_orders_by_segment_index():
    merged = merge_results(
        [
            _ok(2, 56.0, 100.0, "third"),
            _ok(0, 0.0, 30.0, "first"),
            _ok(1, 28.0, 58.0, "second"),
        ]
    )

    assert merged.full_text == "first second third"


def test_merge_results_rebases_timestamps_to_the_original_timeline():
    merged = merge_results(
        [
            _ok(
                0,
                0.0,
                30.0,
                "hello there",
                segments=[TimedSegment(start_sec=0.0, end_sec=2.0, text="hello there", avg_logprob=-0.1)],
                words=[TimedWord(start_sec=0.5, end_sec=1.0, word="hello")],
            ),
            _ok(
                1,
                28.0,
                58.0,
                "general kenobi",
                segments=[TimedSegment(start_sec=1.0, end_sec=3.5, text="general kenobi")],
                words=[TimedWord(start_sec=1.0, end_sec=1.6, word="general")],
            ),
        ]
    )

    assert [(seg.start_sec, seg.end_sec) for seg in merged.segments] == [(0.0, 2.0), (29.0, 31.5)]
    assert merged.segments[0].avg_logprob == -0.1
    assert [(w.start_sec, w.word) for w in merged.words] == [(0.5, "hello"), (29.0, "general")]


def test_merge_results_counts_failed_segments_and_leaves_a_gap():
    segments = [
        MediaSegment(index=0, start_sec=0.0, end_sec=30.0),
        MediaSegment(index=1, start_sec=28.0, end_sec=58.0),
        MediaSegment(index=2, start_sec=56.0, end_sec=100.0),
    ]
    merged = merge_results(
        [
            _ok(0, 0.0, 30.0, "alpha beta", language="en", model="whisper-1"),
            _failed(1, 28.0, 58.0, kind="rate_limited"),
            _ok(2, 56.0, 100.0, "gamma delta"),
        ],
        segments,
    )

    assert merged.full_text == "alpha beta gamma delta"
    assert merged.successful_segment_count == 2
    assert merged.failed_segment_count == 1
    assert not merged.complete
    assert merged.total_duration_sec == 100.0
    assert merged.language == "en"
    assert merged.model == "whisper-1"
    assert [(f.segment_index, f.kind) for f in merged.failures] == [(1, "rate_limited")]


def test_merge_results_raises_when_nothing_succeeded():
    with pytest.raises(NoValidSegmentsError) as excinfo:
        merge_results([_failed(0, 0.0, 30.0, "rate_limited"), _failed(1, 28.0, 58.0, "fatal")])

    assert excinfo.value.failure_kinds == {"rate_limited": 1, "fatal": 1}
    assert excinfo.value.rate_limited
    assert not excinfo.value.only_fatal


def test_no_valid_segments_error_only_fatal():
    error = NoValidSegmentsError({"fatal": 3})

    assert error.only_fatal
    assert not error.rate_limited
    assert "fatal=3" in str(error)


def test_overlap_word_count_ignores_case_and_punctuation():
    assert overlap_word_count("We went to the Market.", "the market, and then home") == 2


def test_overlap_word_count_needs_at_least_two_words():
    assert overlap_word_count("we said yes", "yes indeed") == 0


def test_overlap_word_count_with_bag_of_words_strategy():
    strategy = WordOverlapSimilarity()

    assert overlap_word_count("one two three four five", "three five four six seven", strategy=strategy) == 4
    assert overlap_word_count("one two three four five", "three five four six seven") == 0


def test_cleanup_text_normalizes_spacing_and_punctuation():
    assert cleanup_text("Hello ,  world .Next   sentence!Again") == "Hello, world. Next sentence! Again"
    assert cleanup_text("") == ""
