import numpy as np
import pytest

from conftest import FakeFrameSource, checkerboard

from LogoDetect.checks.edge_extractor import EDGE_BIAS, EDGE_MARGIN
from LogoDetect.checks.logo_reference import (
    BoundingRect, CacheFormatError, LogoReference, LogoReferenceBuilder,
    cache_path_for, discover_bounding_rect, load_reference, save_reference
)
from LogoDetect.utils.config_setup import ReferenceConfig


def reference_with_patch(height=60, width=80, top=20, left=30, size=10, value=EDGE_BIAS + 60.0):
    matrix = np.full((height, width), EDGE_BIAS, dtype=np.float32)
    matrix[top:top + size, left:left + size] = value
    return matrix


def test_uniform_reference_halves_twice_then_uses_full_frame():
    matrix = np.full((60, 80), EDGE_BIAS, dtype=np.float32)
    discovery = discover_bounding_rect(matrix)

    assert not discovery.found
    assert discovery.halvings == 2
    assert discovery.attempts == 3
    assert discovery.threshold == pytest.approx(0.2 * EDGE_BIAS / 4)
    assert discovery.rect == BoundingRect(0, 0, 80, 60)


def test_zeroed_margin_is_not_mistaken_for_a_logo():
    matrix = np.full((60, 80), EDGE_BIAS, dtype=np.float32)
    matrix[:EDGE_MARGIN, :] = 0
    matrix[:, :EDGE_MARGIN] = 0
    discovery = discover_bounding_rect(matrix)
    assert not discovery.found


def test_patch_is_found_and_padded():
    discovery = discover_bounding_rect(reference_with_patch(), padding=10)

    assert discovery.found
    assert discovery.halvings == 0
    assert not discovery.raised
    assert discovery.rect == BoundingRect(20, 10, 30, 30)


def test_padding_is_clamped_to_frame():
    matrix = reference_with_patch(top=12, left=12, size=4)
    discovery = discover_bounding_rect(matrix, padding=20)
    assert discovery.rect == BoundingRect(0, 0, 36, 36)


def test_weak_logo_is_found_after_halving():
    # deviation 20 is below 25.5 but above 12.75
    discovery = discover_bounding_rect(reference_with_patch(value=EDGE_BIAS + 20.0))
    assert discovery.found
    assert discovery.halvings == 1


def test_large_noisy_candidate_raises_threshold_once():
    matrix = np.full((60, 80), EDGE_BIAS, dtype=np.float32)
    rows, cols = slice(EDGE_MARGIN, 50), slice(EDGE_MARGIN, 70)
    # broad low-level noise over most of the frame, plus a compact strong logo
    matrix[rows, cols] = EDGE_BIAS + 30.0
    matrix[20:26, 30:36] = EDGE_BIAS + 80.0

    discovery = discover_bounding_rect(matrix, padding=0)
    assert discovery.raised
    assert discovery.threshold == pytest.approx(0.2 * EDGE_BIAS * 1.5)
    assert discovery.rect == BoundingRect(30, 20, 6, 6)


def test_cache_round_trip(tmp_path):
    rng = np.random.default_rng(5)
    matrix = rng.uniform(0, 255, size=(6, 9)).astype(np.float32)
    reference = LogoReference(matrix, BoundingRect(1, 2, 3, 4))
    path = tmp_path / 'ref.csv'

    save_reference(reference, path)
    loaded = load_reference(path)

    assert loaded.bounding_rect == BoundingRect(1, 2, 3, 4)
    assert loaded.matrix.shape == (6, 9)
    assert np.allclose(loaded.matrix, matrix, atol=1e-6)

    lines = path.read_text().splitlines()
    assert lines[0] == '6,9'
    assert len(lines) == 8
    assert lines[-1] == 'BoundingRect,1,2,3,4'
    assert all(len(value.split('.')[1]) == 6 for value in lines[1].split(','))


def test_cache_without_rect_loads_empty_rect(tmp_path):
    path = tmp_path / 'ref.csv'
    save_reference(LogoReference(np.zeros((2, 2)), BoundingRect.EMPTY), path)
    assert load_reference(path).bounding_rect.is_empty


@pytest.mark.parametrize('content', [
    '',
    'abc,def\n',
    '2,2\n1.0,2.0\n',
    '2,2\n1.0,2.0\n3.0\n',
    '1,2\n1.0,2.0\nSomethingElse,1,2,3,4\n',
    '1,2\n1.0,x\n',
])
def test_malformed_cache_raises(tmp_path, content):
    path = tmp_path / 'bad.csv'
    path.write_text(content)
    with pytest.raises(CacheFormatError):
        load_reference(path)


def test_reference_matrix_is_read_only():
    reference = LogoReference(np.zeros((3, 3)))
    with pytest.raises(ValueError):
        reference.matrix[0, 0] = 1.0


def test_cache_path_for(tmp_path):
    assert cache_path_for('/videos/show.mp4').name == 'show_logo_reference.csv'
    assert cache_path_for('/videos/show.mp4', tmp_path) == tmp_path / 'show_logo_reference.csv'


def logo_source(duration=100.0, logo_span=(0.0, 1000.0)):
    background = np.full((60, 80), 128.0, dtype=np.float32)
    with_logo = background.copy()
    with_logo[24:36, 34:46] = checkerboard(12, 12, square=3)

    def frame_at(t):
        return with_logo if logo_span[0] <= t < logo_span[1] else background

    return FakeFrameSource(frame_at, duration, fps=2.0, height=60, width=80)


def test_builder_samples_between_ten_and_seventy_percent(tmp_path):
    source = logo_source()
    builder = LogoReferenceBuilder(source, tmp_path / 'ref.csv', ReferenceConfig(sample_count=20))
    reference = builder.build()

    assert len(source.seeks) == 20
    assert min(source.seeks) == pytest.approx(10.0)
    assert max(source.seeks) < 70.0
    assert not reference.bounding_rect.is_empty
    rect = reference.bounding_rect
    assert rect.x <= 34 and rect.x + rect.width >= 46
    assert rect.y <= 24 and rect.y + rect.height >= 36
    assert (tmp_path / 'ref.csv').exists()


def test_builder_uses_cache(tmp_path):
    cache = tmp_path / 'ref.csv'
    LogoReferenceBuilder(logo_source(), cache, ReferenceConfig(sample_count=10)).build()

    source = logo_source()
    reference = LogoReferenceBuilder(source, cache, ReferenceConfig(sample_count=10)).build()
    assert source.seeks == []
    assert not reference.bounding_rect.is_empty

    rebuilt = LogoReferenceBuilder(source, cache, ReferenceConfig(sample_count=10)).build(force_rebuild=True)
    assert len(source.seeks) == 10
    assert rebuilt.bounding_rect == reference.bounding_rect


def test_cached_empty_rect_is_rediscovered(tmp_path):
    cache = tmp_path / 'ref.csv'
    first = LogoReferenceBuilder(logo_source(), cache, ReferenceConfig(sample_count=10)).build()
    save_reference(first.with_rect(BoundingRect.EMPTY), cache)

    source = logo_source()
    reference = LogoReferenceBuilder(source, cache, ReferenceConfig(sample_count=10)).build()
    assert source.seeks == []
    assert reference.bounding_rect == first.bounding_rect
    assert load_reference(cache).bounding_rect == first.bounding_rect


def test_malformed_cache_is_treated_as_miss(tmp_path):
    cache = tmp_path / 'ref.csv'
    cache.write_text('not,a,reference\n')
    source = logo_source()
    reference = LogoReferenceBuilder(source, cache, ReferenceConfig(sample_count=5)).build()
    assert len(source.seeks) == 5
    assert load_reference(cache).bounding_rect == reference.bounding_rect


def test_confirmation_can_reject_the_logo(tmp_path):
    seen = []

    def reject(reference, candidate):
        seen.append(candidate)
        return None

    builder = LogoReferenceBuilder(logo_source(), tmp_path / 'ref.csv', ReferenceConfig(sample_count=5),
                                   confirm_bounding_box=reject)
    reference = builder.build()
    assert len(seen) == 1
    assert reference.bounding_rect.is_empty


def test_confirmation_can_replace_the_candidate(tmp_path):
    chosen = BoundingRect(5, 5, 20, 20)
    builder = LogoReferenceBuilder(logo_source(), tmp_path / 'ref.csv', ReferenceConfig(sample_count=5),
                                   confirm_bounding_box=lambda reference, candidate: chosen)
    assert builder.build().bounding_rect == chosen


def test_no_sampled_frames_gives_neutral_reference():
    source = logo_source(duration=0.0)
    reference = LogoReferenceBuilder(source, None, ReferenceConfig(sample_count=5)).build()
    assert reference.bounding_rect == BoundingRect(0, 0, 80, 60)
    assert reference.matrix[30, 40] == EDGE_BIAS
    assert reference.matrix[0, 0] == 0
