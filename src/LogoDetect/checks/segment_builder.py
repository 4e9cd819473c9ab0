#!/usr/bin/env python3
"""
Turns logo detections into time segments, and optionally widens each segment
to the nearest scene change so cuts land on shot boundaries.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from LogoDetect.utils.log_setup import logger
from LogoDetect.checks.frame_classifier import FrameClassifier, SceneEvent


@dataclass
class Segment:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


def build_segments(detections: Iterable, threshold: float, min_duration: float) -> List[Segment]:
    """
    Walk detections in time order and return the runs where score >= threshold.

    A run starts at the first sample at or above the threshold and ends at the
    first sample below it (or at the last sample if the series ends inside a
    run). Runs shorter than min_duration are dropped.
    """
    segments = []
    start = None
    last_time = None

    for detection in sorted(detections, key=lambda d: d.time):
        last_time = detection.time
        has_logo = detection.score >= threshold
        if has_logo and start is None:
            start = detection.time
        elif not has_logo and start is not None:
            if detection.time - start >= min_duration:
                segments.append(Segment(start, detection.time))
            start = None

    if start is not None and last_time - start >= min_duration:
        segments.append(Segment(start, last_time))

    return segments


class SceneChangeSnapper:
    """
    Moves segment starts back to the latest scene change before them and ends
    forward to the first scene change after them. Boundaries never move inward
    and never cross into a neighbouring segment.
    """

    def __init__(self, source, scene_threshold: float = 0.2, blank_threshold: float = 0.1,
                 chunk: float = 10.0, backend=None):
        self.source = source
        self.scene_threshold = scene_threshold
        self.blank_threshold = blank_threshold
        self.chunk = chunk
        self.backend = backend

    def _scan(self, start: float, end: float) -> List[SceneEvent]:
        """Decode [start, end] sequentially with a fresh classifier and return its events"""
        classifier = FrameClassifier(self.scene_threshold, self.blank_threshold, self.backend)
        # Start one frame early so a cut on the first frame of the chunk has a predecessor
        lead = 1.0 / self.source.fps if self.source.fps else 0.0
        frame = self.source.seek(max(0.0, start - lead))
        while frame is not None and frame.timestamp <= end:
            classifier.classify(frame)
            frame = self.source.read_next()
        return classifier.events

    def find_previous_change(self, time: float, floor: float) -> Optional[float]:
        chunk_end = time
        while chunk_end > floor:
            chunk_start = max(floor, chunk_end - self.chunk)
            candidates = [e.time for e in self._scan(chunk_start, chunk_end) if floor <= e.time <= time]
            if candidates:
                return max(candidates)
            chunk_end = chunk_start
        return None

    def find_next_change(self, time: float, ceiling: float) -> Optional[float]:
        chunk_start = time
        while chunk_start < ceiling:
            chunk_end = min(ceiling, chunk_start + self.chunk)
            candidates = [e.time for e in self._scan(chunk_start, chunk_end) if time <= e.time <= ceiling]
            if candidates:
                return min(candidates)
            chunk_start = chunk_end
        return None

    def snap(self, segments: List[Segment]) -> List[Segment]:
        duration = self.source.duration()
        snapped = []
        for index, segment in enumerate(segments):
            floor = snapped[-1].end if snapped else 0.0
            ceiling = segments[index + 1].start if index + 1 < len(segments) else duration

            start = segment.start
            previous_change = self.find_previous_change(segment.start, min(floor, segment.start))
            if previous_change is not None:
                start = min(previous_change, segment.start)

            end = segment.end
            next_change = self.find_next_change(segment.end, max(ceiling, segment.end))
            if next_change is not None:
                end = max(next_change, segment.end)

            if start != segment.start or end != segment.end:
                logger.debug(f"Snapped segment {segment.start:.3f}-{segment.end:.3f}s to {start:.3f}-{end:.3f}s")
            snapped.append(Segment(start, end))
        return snapped
