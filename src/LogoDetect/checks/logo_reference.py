#!/usr/bin/env python3
"""
Logo reference construction.

Samples frames evenly across the middle of a video, averages their edge maps
into a reference, and finds the rectangle where a static logo lives by looking
for pixels whose average edge response deviates from the neutral bias. The
result is cached next to the other outputs so later runs can skip sampling.
"""

import csv
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import numpy as np

from LogoDetect.utils.log_setup import logger
from LogoDetect.utils.config_setup import ReferenceConfig
from LogoDetect.checks.edge_extractor import EDGE_BIAS, EDGE_MARGIN, blank_edge_map, detect_edges, interior_slices
from LogoDetect.processing.matrix_backend import zero_margin

# Bounding rectangles bigger than this share of the frame are probably background motion
MAX_LOGO_AREA_FRACTION = 0.25
NOISY_DEVIATION_FACTOR = 1.6
THRESHOLD_RAISE_FACTOR = 1.5

CACHE_RECT_TAG = 'BoundingRect'


class CacheFormatError(ValueError):
    """A cached logo reference could not be parsed"""


@dataclass(frozen=True)
class BoundingRect:
    x: int
    y: int
    width: int
    height: int

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)

    @property
    def is_empty(self) -> bool:
        return self.width <= 0 or self.height <= 0

    @classmethod
    def full_frame(cls, height: int, width: int) -> "BoundingRect":
        return cls(0, 0, width, height)


BoundingRect.EMPTY = BoundingRect(0, 0, 0, 0)


@dataclass
class LogoReference:
    """Averaged edge map plus the rectangle the logo occupies. The matrix is read-only."""
    matrix: np.ndarray
    bounding_rect: BoundingRect = BoundingRect.EMPTY

    def __post_init__(self):
        self.matrix = np.array(self.matrix, dtype=np.float32)
        self.matrix.flags.writeable = False

    @property
    def height(self) -> int:
        return self.matrix.shape[0]

    @property
    def width(self) -> int:
        return self.matrix.shape[1]

    def with_rect(self, rect: BoundingRect) -> "LogoReference":
        return LogoReference(self.matrix, rect)


@dataclass
class BoundingDiscovery:
    """Outcome of the adaptive threshold search"""
    rect: BoundingRect
    found: bool
    threshold: float
    attempts: int = 0
    halvings: int = 0
    raised: bool = False
    max_deviation: float = 0.0


ConfirmBoundingBox = Callable[[LogoReference, BoundingRect], Optional[BoundingRect]]


def accept_candidate(reference: LogoReference, candidate: BoundingRect) -> Optional[BoundingRect]:
    """Non-interactive confirmation: keep whatever the search found"""
    return candidate


def cache_path_for(video_path, output_dir=None) -> Path:
    video_path = Path(video_path)
    directory = Path(output_dir) if output_dir else video_path.parent
    return directory / f"{video_path.stem}_logo_reference.csv"


def save_reference(reference: LogoReference, cache_path) -> None:
    """
    Write the reference as CSV: a `height,width` header, one line per row with
    six decimals per value, then the bounding rectangle when there is one.
    """
    cache_path = Path(cache_path)
    cache_path.parent.mkdir(parents=True, exist_ok=True)
    with open(cache_path, 'w', newline='') as f:
        writer = csv.writer(f)
        writer.writerow([reference.height, reference.width])
        for row in reference.matrix:
            writer.writerow([f"{value:.6f}" for value in row])
        rect = reference.bounding_rect
        if not rect.is_empty:
            writer.writerow([CACHE_RECT_TAG, rect.x, rect.y, rect.width, rect.height])
    logger.debug(f"Logo reference saved to {cache_path}")


def load_reference(cache_path) -> LogoReference:
    """Read a reference written by save_reference, raising CacheFormatError if it is malformed"""
    try:
        with open(cache_path, 'r', newline='') as f:
            rows = [row for row in csv.reader(f) if row]
    except UnicodeDecodeError as e:
        raise CacheFormatError(f"Logo reference {cache_path} is not a text file: {e}")

    if not rows:
        raise CacheFormatError(f"Logo reference {cache_path} is empty")

    try:
        height, width = (int(value) for value in rows[0])
    except ValueError:
        raise CacheFormatError(f"Bad header in {cache_path}: {rows[0]}")
    if height <= 0 or width <= 0:
        raise CacheFormatError(f"Bad dimensions in {cache_path}: {height}x{width}")

    matrix_rows = rows[1:height + 1]
    if len(matrix_rows) != height:
        raise CacheFormatError(f"Expected {height} rows in {cache_path}, found {len(matrix_rows)}")
    try:
        matrix = np.array([[float(value) for value in row] for row in matrix_rows], dtype=np.float32)
    except ValueError as e:
        raise CacheFormatError(f"Non-numeric value in {cache_path}: {e}")
    if matrix.shape != (height, width):
        raise CacheFormatError(f"Ragged rows in {cache_path}")

    rect = BoundingRect.EMPTY
    trailing = rows[height + 1:]
    if trailing:
        line = trailing[0]
        if line[0] != CACHE_RECT_TAG or len(line) != 5:
            raise CacheFormatError(f"Unexpected trailing line in {cache_path}: {line}")
        try:
            rect = BoundingRect(*(int(value) for value in line[1:]))
        except ValueError:
            raise CacheFormatError(f"Bad bounding rectangle in {cache_path}: {line}")

    return LogoReference(matrix, rect)


def discover_bounding_rect(matrix: np.ndarray, threshold_fraction: float = 0.2, max_retries: int = 2,
                           padding: int = 10, baseline: float = EDGE_BIAS) -> BoundingDiscovery:
    """
    Find the rectangle enclosing every pixel whose deviation from baseline
    exceeds threshold_fraction * baseline.

    Only the interior inside the zeroed edge margin is scanned. When nothing
    qualifies the threshold is halved, up to max_retries times. When the first
    hit is suspiciously large (over a quarter of the frame, with a peak well
    above the threshold) the threshold is raised by half once and the scan
    repeated. A found rectangle is padded and clamped to the frame; otherwise
    the whole frame is returned.
    """
    height, width = matrix.shape
    rows, cols = interior_slices(height, width)
    deviation = np.abs(np.asarray(matrix, dtype=np.float32)[rows, cols] - np.float32(baseline))
    max_deviation = float(deviation.max()) if deviation.size else 0.0

    threshold = threshold_fraction * baseline
    attempts = 0
    halvings = 0
    raised = False
    bounds = None

    while True:
        attempts += 1
        ys, xs = np.nonzero(deviation > threshold)
        found = ys.size > 0
        logger.debug(f"Logo bounding analysis (attempt {attempts}) - max deviation: {max_deviation:.2f}, "
                     f"threshold: {threshold:.2f}, logo found: {found}")

        if found:
            min_x = int(xs.min()) + cols.start
            max_x = int(xs.max()) + cols.start
            min_y = int(ys.min()) + rows.start
            max_y = int(ys.max()) + rows.start
            area_fraction = (max_x - min_x + 1) * (max_y - min_y + 1) / float(height * width)
            if (halvings == 0 and not raised and area_fraction > MAX_LOGO_AREA_FRACTION
                    and max_deviation > threshold * NOISY_DEVIATION_FACTOR):
                logger.debug(f"Bounding rectangle covers {area_fraction:.1%} of the frame, raising threshold")
                threshold *= THRESHOLD_RAISE_FACTOR
                raised = True
                continue
            bounds = (min_x, min_y, max_x, max_y)
            break

        if halvings >= max_retries:
            break
        threshold /= 2.0
        halvings += 1
        logger.debug(f"No logo found, halving threshold to {threshold:.2f}")

    if bounds is None:
        logger.warning(f"Logo bounds not found (threshold {threshold:.2f}), using the entire frame")
        return BoundingDiscovery(BoundingRect.full_frame(height, width), False, threshold,
                                 attempts, halvings, raised, max_deviation)

    min_x, min_y, max_x, max_y = bounds
    left = max(0, min_x - padding)
    top = max(0, min_y - padding)
    right = min(width, max_x + padding + 1)
    bottom = min(height, max_y + padding + 1)
    rect = BoundingRect(left, top, right - left, bottom - top)
    logger.info(f"✓ Logo bounds found using threshold {threshold:.2f}: {rect.width}x{rect.height} at ({rect.x},{rect.y})")
    return BoundingDiscovery(rect, True, threshold, attempts, halvings, raised, max_deviation)


class LogoReferenceBuilder:
    """Builds (or loads from cache) the LogoReference for one video"""

    def __init__(self, source, cache_path=None, config: Optional[ReferenceConfig] = None,
                 backend=None, confirm_bounding_box: Optional[ConfirmBoundingBox] = None):
        self.source = source
        self.cache_path = Path(cache_path) if cache_path else None
        self.config = config or ReferenceConfig()
        self.backend = backend
        self.confirm_bounding_box = confirm_bounding_box or accept_candidate

    def build(self, force_rebuild: bool = False) -> LogoReference:
        reference = None
        if self.cache_path and self.cache_path.exists() and not force_rebuild:
            try:
                reference = load_reference(self.cache_path)
                logger.info(f"✓ Loaded logo reference from {self.cache_path}")
            except (CacheFormatError, OSError) as e:
                logger.warning(f"Ignoring unusable logo reference cache: {e}")
                reference = None

            if reference is not None and reference.matrix.shape != (self.source.height, self.source.width):
                logger.warning(f"Cached logo reference is {reference.width}x{reference.height}, "
                               f"video is {self.source.width}x{self.source.height}; rebuilding")
                reference = None

            if reference is not None and reference.bounding_rect.is_empty:
                reference = reference.with_rect(self.locate_logo(reference))
                self._persist(reference)
            if reference is not None:
                return reference

        reference = self.sample_reference()
        reference = reference.with_rect(self.locate_logo(reference))
        self._persist(reference)
        return reference

    def sample_timestamps(self):
        duration = self.source.duration()
        count = self.config.sample_count
        span = self.config.end_fraction - self.config.start_fraction
        return [duration * (self.config.start_fraction + span * i / count) for i in range(count)]

    def sample_reference(self) -> LogoReference:
        """Average the edge maps of frames sampled across the configured part of the video"""
        height, width = self.source.height, self.source.width
        total = np.zeros((height, width), dtype=np.float64)
        sampled = 0
        timestamps = self.sample_timestamps()

        logger.debug(f"Sampling {len(timestamps)} frames for the logo reference...")
        for timestamp in timestamps:
            frame = self.source.seek(timestamp)
            if frame is None:
                logger.debug(f"  No frame at {timestamp:.2f}s, skipping")
                continue
            edges = detect_edges(frame.luminance, self.backend)
            if edges.shape != total.shape:
                logger.debug(f"  Frame at {timestamp:.2f}s has shape {edges.shape}, skipping")
                continue
            total = self._backend_add(total, edges)
            sampled += 1

        if sampled == 0:
            logger.warning("⚠️ No frames could be sampled for the logo reference, using a neutral reference")
            neutral = zero_margin(blank_edge_map(height, width), EDGE_MARGIN)
            return LogoReference(neutral, BoundingRect.full_frame(height, width))

        logger.info(f"✓ Logo reference averaged from {sampled} of {len(timestamps)} sampled frames")
        return LogoReference(self._backend_divide(total, sampled))

    def locate_logo(self, reference: LogoReference) -> BoundingRect:
        discovery = discover_bounding_rect(
            reference.matrix,
            threshold_fraction=self.config.threshold_fraction,
            max_retries=self.config.max_retries,
            padding=self.config.padding,
        )
        confirmed = self.confirm_bounding_box(reference, discovery.rect)
        if confirmed is None or confirmed.is_empty:
            logger.warning("No logo present, logo matching will be disabled")
            return BoundingRect.EMPTY
        if confirmed != discovery.rect:
            logger.info(f"Bounding box changed on confirmation: {confirmed}")
        return confirmed

    def _persist(self, reference: LogoReference):
        if not self.cache_path:
            return
        try:
            save_reference(reference, self.cache_path)
        except OSError as e:
            logger.error(f"Could not write logo reference cache {self.cache_path}: {e}")

    def _backend_add(self, total, edges):
        if self.backend is None:
            total += edges
            return total
        return self.backend.add(total, edges)

    def _backend_divide(self, total, count):
        if self.backend is None:
            return (total / count).astype(np.float32)
        return self.backend.divide(total, count)
