import pytest

from parascribe.segmenter import SegmentationError, plan_segments


def test_plan_segments_folds_short_remainder_into_last_segment():
    segments = plan_segments(100.0, 30.0, 2.0)

    assert [seg.start_sec for seg in segments] == [0.0, 28.0, 56.0]
    assert [seg.end_sec for seg in segments] == [30.0, 58.0, 100.0]
    assert segments[-1].duration_sec == pytest.approx(44.0)
    assert [seg.index for seg in segments] == [0, 1, 2]


def test_plan_segments_single_segment_when_input_is_short():
    segments = plan_segments(25.0, 30.0, 2.0)

    assert len(segments) == 1
    assert segments[0].start_sec == 0.0
    assert segments[0].end_sec == 25.0


def test_plan_segments_stretches_single_segment_below_fold_limit():
    segments = plan_segments(44.0, 30.0, 2.0)

    assert len(segments) == 1
    assert segments[0].end_sec == 44.0


@pytest.mark.parametrize(
    "total,segment,overlap",
    [
        (100.0, 30.0, 2.0),
        (2400.0, 30.0, 2.0),
        (61.0, 20.0, 5.0),
        (1000.5, 45.0, 0.0),
        (333.3, 17.0, 16.5),
        (90.0, 60.0, 1.0),
    ],
)
def test_plan_segments_covers_input_without_gaps(total, segment, overlap):
    segments = plan_segments(total, segment, overlap)

    assert segments[0].start_sec == 0.0
    assert segments[-1].end_sec == total
    for previous, current in zip(segments, segments[1:]):
        assert current.index == previous.index + 1
        assert current.start_sec > previous.start_sec
        # no gap; consecutive windows share the overlap
        assert current.start_sec <= previous.end_sec
        assert previous.end_sec - current.start_sec == pytest.approx(overlap, abs=2e-3)
    for seg in segments[:-1]:
        assert seg.duration_sec == pytest.approx(segment, abs=2e-3)
    assert segments[-1].duration_sec <= segment * 1.5 + 1e-6


@pytest.mark.parametrize(
    "total,segment,overlap",
    [
        (100.0, 30.0, 30.0),
        (100.0, 30.0, 31.0),
        (100.0, 0.0, 0.0),
        (100.0, 30.0, -1.0),
        (0.0, 30.0, 2.0),
        (float("nan"), 30.0, 2.0),
        (float("inf"), 30.0, 2.0),
        (100.0, float("nan"), 2.0),
        (100.0, float("inf"), 2.0),
        (100.0, 30.0, float("nan")),
    ],
)
def test_plan_segments_rejects_invalid_configuration(total, segment, overlap):
    with pytest.raises(SegmentationError):
        plan_segments(total, segment, overlap)


def test_plan_segments_is_deterministic():
    assert plan_segments(500.0, 30.0, 2.0) == plan_segments(500.0, 30.0, 2.0)


def test_plan_segments_last_segment_ends_at_unrounded_total():
    segments = plan_segments(2400.000363, 30.0, 2.0)

    assert segments[-1].end_sec == 2400.000363
    assert plan_segments(100.0004, 30.0, 2.0)[-1].end_sec == 100.0004
