import numpy as np
import pytest

from conftest import checkerboard, make_frame

from LogoDetect.checks.edge_extractor import EDGE_BIAS, detect_edges
from LogoDetect.checks.logo_matcher import RollingEdgeWindow, RollingLogoMatcher
from LogoDetect.checks.logo_reference import BoundingRect, LogoReference
from LogoDetect.processing.matrix_backend import ScalarMatrixBackend
from LogoDetect.utils.config_setup import MatcherConfig


def test_incremental_mean_matches_brute_force():
    rng = np.random.default_rng(11)
    window = RollingEdgeWindow(5.0, 1.0, 4, 6)
    window.prefill_blank()

    for second in range(20):
        window.push(float(second), rng.uniform(0, 255, size=(4, 6)).astype(np.float32))
        assert np.allclose(window.average(), window.brute_force_average(), atol=1e-3)


def test_scalar_backend_window_matches_brute_force():
    rng = np.random.default_rng(12)
    window = RollingEdgeWindow(3.0, 1.0, 3, 3, ScalarMatrixBackend())
    for second in range(8):
        window.push(float(second), rng.uniform(0, 255, size=(3, 3)).astype(np.float32))
    assert np.allclose(window.average(), window.brute_force_average(), atol=1e-3)


def test_prefill_and_eviction():
    window = RollingEdgeWindow(30.0, 1.0, 2, 2)
    window.prefill_blank()
    assert len(window) == 30
    assert window.oldest_time == -30.0
    assert np.all(window.average() == np.float32(EDGE_BIAS))

    evicted = window.push(0.0, np.zeros((2, 2), dtype=np.float32))
    assert evicted == []
    assert len(window) == 31

    evicted = window.push(1.0, np.zeros((2, 2), dtype=np.float32))
    assert [time for time, _ in evicted] == [-30.0]
    assert window.oldest_time == -29.0


def test_capacity_bounds_window_size():
    window = RollingEdgeWindow(2.0, 1.0, 1, 1)
    assert window.capacity == 3
    for index in range(10):
        # pushes every 0.1s stay inside the time window but not the capacity
        window.push(index * 0.1, np.ones((1, 1), dtype=np.float32))
    assert len(window) == 3


def test_invalid_window():
    with pytest.raises(ValueError):
        RollingEdgeWindow(0.0, 1.0, 1, 1)


def logo_frame(timestamp, with_logo=True):
    luminance = np.full((60, 80), 128.0, dtype=np.float32)
    if with_logo:
        luminance[24:36, 34:46] = checkerboard(12, 12, square=3)
    return make_frame(timestamp, luminance)


def reference_from_logo():
    edges = detect_edges(logo_frame(0.0).luminance)
    return LogoReference(edges, BoundingRect(24, 14, 32, 32))


def test_detections_are_centred_in_window():
    matcher = RollingLogoMatcher(reference_from_logo(), MatcherConfig())
    detections = [matcher.observe(logo_frame(t)) for t in np.arange(0.0, 40.0, 0.5)]

    emitted = [d for d in detections if d is not None]
    assert [d.time for d in emitted] == [float(t) for t in range(0, 25)]
    assert matcher.detections == emitted
    # window full of logo frames matches the reference exactly
    assert emitted[-1].score == pytest.approx(1.0, abs=1e-4)


def test_score_grows_with_logo_presence():
    matcher = RollingLogoMatcher(reference_from_logo(), MatcherConfig())
    for t in range(0, 31):
        matcher.observe(logo_frame(float(t), with_logo=t >= 20))
    # 11 of the 31 window entries carry the logo
    assert matcher.detections[-1].time == 15.0
    assert matcher.detections[-1].score == pytest.approx(11 / 31, abs=1e-4)


def test_frames_closer_than_sample_interval_are_ignored():
    matcher = RollingLogoMatcher(reference_from_logo(), MatcherConfig(window_seconds=2.0))
    matcher.observe(logo_frame(1.0))
    assert matcher.observe(logo_frame(1.5)) is None
    assert matcher.observe(logo_frame(2.0)) is not None


def test_empty_rect_disables_matcher():
    reference = LogoReference(detect_edges(logo_frame(0.0).luminance), BoundingRect.EMPTY)
    matcher = RollingLogoMatcher(reference, MatcherConfig())
    assert not matcher.enabled
    for t in range(0, 60):
        assert matcher.observe(logo_frame(float(t))) is None
    matcher.complete()
    assert matcher.detections == []


def test_rect_inside_margin_disables_matcher():
    reference = LogoReference(detect_edges(logo_frame(0.0).luminance), BoundingRect(0, 0, 5, 5))
    assert not RollingLogoMatcher(reference).enabled
