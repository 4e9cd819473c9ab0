#!/usr/bin/env python3
"""
Streaming logo matcher.

Keeps a rolling average of edge maps over the last window_seconds of video and
scores it against the logo reference once per sample interval. Averaging over
time washes out moving content while a static logo keeps reinforcing itself,
so the score rises while the logo is on screen.
"""

import math
from collections import deque
from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np

from LogoDetect.utils.log_setup import logger
from LogoDetect.utils.config_setup import MatcherConfig
from LogoDetect.checks.edge_extractor import EDGE_BIAS, blank_edge_map, detect_edges, interior_slices
from LogoDetect.checks.logo_reference import LogoReference
from LogoDetect.processing.matrix_backend import VectorizedMatrixBackend

# Frame timestamps jitter by a fraction of a millisecond around the sample grid
SAMPLE_TOLERANCE = 1e-3


@dataclass
class LogoDetection:
    time: float  # centre of the averaging window, in seconds
    score: float


class RollingEdgeWindow:
    """
    Fixed-capacity ring of (time, edge map) entries with a running sum, so the
    window mean costs one add and at most a few subtracts per push.
    """

    def __init__(self, window_seconds: float, sample_interval: float, height: int, width: int,
                 backend: Optional[VectorizedMatrixBackend] = None):
        if window_seconds <= 0 or sample_interval <= 0:
            raise ValueError("window_seconds and sample_interval must be positive")
        self.window_seconds = window_seconds
        self.capacity = int(math.ceil(window_seconds / sample_interval)) + 1
        self.backend = backend or VectorizedMatrixBackend()
        self._entries = deque()
        self._sum = np.zeros((height, width), dtype=np.float64)

    def __len__(self):
        return len(self._entries)

    @property
    def oldest_time(self) -> Optional[float]:
        return self._entries[0][0] if self._entries else None

    def prefill_blank(self):
        """Seed the window with flat edge maps at -window .. -1 seconds"""
        height, width = self._sum.shape
        blank = blank_edge_map(height, width)
        count = int(self.window_seconds)
        for offset in range(count):
            self.push(float(offset - count), blank)

    def push(self, time: float, edge_map: np.ndarray) -> List[Tuple[float, np.ndarray]]:
        """Add an entry and return the entries evicted to make room for it"""
        self._entries.append((time, edge_map))
        self._sum = self.backend.add(self._sum, edge_map)

        evicted = []
        cutoff = time - self.window_seconds
        while len(self._entries) > 1 and (self._entries[0][0] < cutoff or len(self._entries) > self.capacity):
            old_time, old_map = self._entries.popleft()
            self._sum = self.backend.subtract(self._sum, old_map)
            evicted.append((old_time, old_map))
        return evicted

    def average(self) -> np.ndarray:
        if not self._entries:
            raise ValueError("Cannot average an empty window")
        return self.backend.divide(self._sum, len(self._entries))

    def brute_force_average(self) -> np.ndarray:
        """Recompute the mean from the stored entries (slow, for verification)"""
        stacked = np.stack([edge_map.astype(np.float64) for _, edge_map in self._entries])
        return stacked.mean(axis=0).astype(np.float32)


class RollingLogoMatcher:
    """Frame processor that emits a LogoDetection for each sample interval"""

    def __init__(self, reference: LogoReference, config: Optional[MatcherConfig] = None,
                 backend: Optional[VectorizedMatrixBackend] = None):
        self.reference = reference
        self.config = config or MatcherConfig()
        self.backend = backend or VectorizedMatrixBackend()
        self.detections: List[LogoDetection] = []
        self.enabled = False
        self.window = None
        self._last_sample = -math.inf
        self._rows = None
        self._cols = None
        self.initialize()

    def initialize(self):
        self.detections = []
        self._last_sample = -math.inf
        self.enabled = not self.reference.bounding_rect.is_empty
        if not self.enabled:
            logger.warning("⚠️ No logo bounding box, logo matching is disabled")
            return

        height, width = self.reference.height, self.reference.width
        self.window = RollingEdgeWindow(self.config.window_seconds, self.config.sample_interval,
                                        height, width, self.backend)
        if self.config.prefill_blank:
            self.window.prefill_blank()
        self._rows, self._cols = self._comparison_slices()

    def _comparison_slices(self):
        """Bounding rectangle clipped to the region inside the zeroed edge margin"""
        rect = self.reference.bounding_rect
        inner_rows, inner_cols = interior_slices(self.reference.height, self.reference.width)
        top = max(rect.y, inner_rows.start)
        bottom = min(rect.y + rect.height, inner_rows.stop)
        left = max(rect.x, inner_cols.start)
        right = min(rect.x + rect.width, inner_cols.stop)
        if bottom <= top or right <= left:
            logger.warning(f"Bounding box {rect} lies entirely in the frame margin, logo matching is disabled")
            self.enabled = False
        return slice(top, bottom), slice(left, right)

    def observe(self, frame) -> Optional[LogoDetection]:
        if not self.enabled:
            return None
        if frame.timestamp - self._last_sample < self.config.sample_interval - SAMPLE_TOLERANCE:
            return None
        if frame.luminance.shape != self.reference.matrix.shape:
            logger.debug(f"Frame at {frame.timestamp:.3f}s has shape {frame.luminance.shape}, skipping")
            return None
        self._last_sample = frame.timestamp

        edges = detect_edges(frame.luminance, self.backend)
        self.window.push(frame.timestamp, edges)
        average = self.window.average()
        score = self.backend.correlation_score(
            self.reference.matrix[self._rows, self._cols],
            average[self._rows, self._cols],
            EDGE_BIAS,
        )

        detection_time = frame.timestamp - self.config.window_seconds / 2.0
        if detection_time < 0:
            return None
        detection = LogoDetection(detection_time, score)
        self.detections.append(detection)
        return detection

    def process_frame(self, frame):
        self.observe(frame)

    def complete(self):
        logger.debug(f"Logo matcher produced {len(self.detections)} detections")
