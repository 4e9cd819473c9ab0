#!/usr/bin/env python3
"""
Black frame, white frame and scene change classification on reduced luminance.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from LogoDetect.utils.log_setup import logger
from LogoDetect.checks.edge_extractor import MAX_PIXEL_VALUE
from LogoDetect.processing.matrix_backend import VectorizedMatrixBackend

BLACK = 'black'
WHITE = 'white'
SCENE = 'scene'

# Share of pixels that must individually cross the threshold for a blank frame
UNIFORM_PIXEL_FRACTION = 0.95


@dataclass
class SceneEvent:
    time: float
    kind: str  # BLACK, WHITE or SCENE
    magnitude: float  # 0-1


class FrameClassifier:
    """
    Classifies each frame against the previous one. Black beats white beats a
    scene change; a frame produces at most one event.
    """

    def __init__(self, scene_threshold: float = 0.2, blank_threshold: float = 0.1,
                 backend: Optional[VectorizedMatrixBackend] = None):
        self.scene_threshold = scene_threshold
        self.blank_threshold = blank_threshold
        self.backend = backend or VectorizedMatrixBackend()
        self.black_level = blank_threshold * MAX_PIXEL_VALUE
        self.white_level = (1.0 - blank_threshold) * MAX_PIXEL_VALUE
        self.events: List[SceneEvent] = []
        self.amounts: List[Tuple[float, float]] = []
        self._previous = None

    def initialize(self):
        self.events = []
        self.amounts = []
        self._previous = None

    def _is_black(self, luminance, mean) -> bool:
        return (mean < self.black_level
                and self.backend.fraction_below(luminance, self.black_level) >= UNIFORM_PIXEL_FRACTION)

    def _is_white(self, luminance, mean) -> bool:
        return (mean > self.white_level
                and self.backend.fraction_above(luminance, self.white_level) >= UNIFORM_PIXEL_FRACTION)

    def classify(self, frame) -> Optional[SceneEvent]:
        luminance = frame.reduced_luminance
        previous, self._previous = self._previous, luminance
        mean = self.backend.mean(luminance)

        event = None
        if self._is_black(luminance, mean):
            event = SceneEvent(frame.timestamp, BLACK, mean / MAX_PIXEL_VALUE)
        elif self._is_white(luminance, mean):
            event = SceneEvent(frame.timestamp, WHITE, mean / MAX_PIXEL_VALUE)

        if previous is not None and previous.shape == luminance.shape:
            amount = self.backend.mean_abs_diff(luminance, previous) / MAX_PIXEL_VALUE
            self.amounts.append((frame.timestamp, amount))
            if event is None and amount > self.scene_threshold:
                event = SceneEvent(frame.timestamp, SCENE, amount)

        if event is not None:
            self.events.append(event)
        return event

    def process_frame(self, frame):
        self.classify(frame)

    def complete(self):
        kinds = {BLACK: 0, WHITE: 0, SCENE: 0}
        for event in self.events:
            kinds[event.kind] += 1
        logger.debug(f"Frame classifier: {kinds[SCENE]} scene changes, "
                     f"{kinds[BLACK]} black frames, {kinds[WHITE]} white frames")
