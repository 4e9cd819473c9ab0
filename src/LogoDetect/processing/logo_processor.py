#!/usr/bin/env python
# -*- coding: utf-8 -*-

import copy
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from LogoDetect.utils.log_setup import logger, start_file_log, stop_file_log
from LogoDetect.utils.config_setup import DetectConfig
from LogoDetect.utils.config_manager import ConfigManager
from LogoDetect.utils import cut_list
from LogoDetect.processing.frame_source import open_video
from LogoDetect.processing.matrix_backend import select_backend
from LogoDetect.checks.logo_reference import LogoReference, LogoReferenceBuilder, cache_path_for
from LogoDetect.checks.logo_matcher import LogoDetection, RollingLogoMatcher
from LogoDetect.checks.frame_classifier import FrameClassifier, SceneEvent
from LogoDetect.checks.segment_builder import Segment, SceneChangeSnapper, build_segments

# Keyword overrides accepted by detect_logo_segments, all living in DetectConfig.detection
DETECTION_OVERRIDES = (
    'logo_threshold', 'scene_change_threshold', 'blank_threshold',
    'min_duration', 'max_frames', 'force_reload',
)


@dataclass
class DetectionResult:
    segments: List[Segment] = field(default_factory=list)
    raw_segments: List[Segment] = field(default_factory=list)
    detections: List[LogoDetection] = field(default_factory=list)
    scene_events: List[SceneEvent] = field(default_factory=list)
    reference: Optional[LogoReference] = None
    tier: Optional[str] = None
    frames_processed: int = 0
    scene_amounts: List = field(default_factory=list)
    output_files: Dict[str, Path] = field(default_factory=dict)


def log_processing_time(start_time, end_time, video_id):
    total_time = end_time - start_time
    formatted_time = time.strftime("%H:%M:%S", time.gmtime(total_time))
    logger.info(f"Total processing time for {video_id}: {formatted_time}\n")
    return formatted_time


class LogoDetectProcessor:
    """Runs the whole pipeline for one video"""

    def __init__(self, video_path, config: Optional[DetectConfig] = None, output_dir=None,
                 backend=None, confirm_bounding_box=None):
        self.video_path = Path(video_path)
        self.video_id = self.video_path.stem
        self.output_dir = Path(output_dir) if output_dir else self.video_path.parent

        if config is None:
            config_mgr = ConfigManager()
            config = config_mgr.get_config('detect', DetectConfig)
        self.config = config
        self.backend = backend or select_backend(config.decoding.numeric_backend)
        self.confirm_bounding_box = confirm_bounding_box

    def _frames(self, source, first_frame):
        """
        Yield frames from the decoder. With prefetch on, the next frame is
        decoded on a single worker thread while the current one is processed.
        """
        keyframes_only = self.config.decoding.keyframes_only
        if first_frame is not None:
            yield first_frame

        if not self.config.decoding.prefetch:
            while True:
                frame = source.read_next(keyframes_only)
                if frame is None:
                    return
                yield frame

        with ThreadPoolExecutor(max_workers=1) as executor:
            pending = executor.submit(source.read_next, keyframes_only)
            while True:
                frame = pending.result()
                if frame is None:
                    return
                pending = executor.submit(source.read_next, keyframes_only)
                yield frame

    def process(self, max_frames: Optional[int] = None, force_reload: Optional[bool] = None) -> DetectionResult:
        detection_config = self.config.detection
        if max_frames is None:
            max_frames = detection_config.max_frames
        if force_reload is None:
            force_reload = detection_config.force_reload

        result = DetectionResult()
        with open_video(self.video_path, self.config.decoding.acceleration_tiers) as source:
            result.tier = source.tier.value

            builder = LogoReferenceBuilder(
                source,
                cache_path_for(self.video_path, self.output_dir),
                self.config.reference,
                self.backend,
                self.confirm_bounding_box,
            )
            reference = builder.build(force_rebuild=force_reload)
            result.reference = reference

            matcher = RollingLogoMatcher(reference, self.config.matcher, self.backend)
            classifier = FrameClassifier(detection_config.scene_change_threshold,
                                         detection_config.blank_threshold, self.backend)
            processors = [matcher, classifier]

            # Reference sampling left the decoder mid-stream
            first_frame = source.seek(0.0)
            frames = self._frames(source, first_frame)
            try:
                for frame in frames:
                    for processor in processors:
                        processor.process_frame(frame)
                    result.frames_processed += 1
                    if max_frames is not None and result.frames_processed >= max_frames:
                        logger.info(f"Stopping after {max_frames} frames")
                        break
            finally:
                frames.close()

            for processor in processors:
                processor.complete()

            result.detections = list(matcher.detections)
            result.scene_events = list(classifier.events)
            result.scene_amounts = list(classifier.amounts)
            result.raw_segments = build_segments(result.detections, detection_config.logo_threshold,
                                                 detection_config.min_duration)
            logger.info(f"Found {len(result.raw_segments)} logo segments in {result.frames_processed} frames")

            if self.config.snapping.snap_to_scene_changes and result.raw_segments:
                snapper = SceneChangeSnapper(
                    source,
                    detection_config.scene_change_threshold,
                    detection_config.blank_threshold,
                    self.config.snapping.chunk_seconds,
                    self.backend,
                )
                result.segments = snapper.snap(result.raw_segments)
            else:
                result.segments = list(result.raw_segments)

        return result

    def write_outputs(self, result: DetectionResult) -> Dict[str, Path]:
        outputs = self.config.outputs
        written = {}
        if outputs.segments_csv:
            written['segments'] = cut_list.write_segments_csv(
                result.segments, cut_list.output_path_for(self.video_path, '.segments.csv', self.output_dir))
        if outputs.edl:
            written['edl'] = cut_list.write_edl(
                result.segments, cut_list.output_path_for(self.video_path, '.edl', self.output_dir),
                outputs.edl_description)
        if outputs.debug_csv:
            written['logo_detections'] = cut_list.write_logo_detections_csv(
                result.detections, cut_list.output_path_for(self.video_path, '.logodetections.csv', self.output_dir))
            written['scene_changes'] = cut_list.write_scene_changes_csv(
                result.scene_amounts,
                cut_list.output_path_for(self.video_path, '.scenechanges.csv', self.output_dir),
                result.scene_events)
        result.output_files = written
        return written


def detect_logo_segments(video_path, output_dir=None, **overrides) -> DetectionResult:
    """
    Detect logo segments in video_path and write the configured outputs.

    Keyword overrides (logo_threshold, scene_change_threshold, blank_threshold,
    min_duration, max_frames, force_reload) replace the stored configuration
    for this run only.
    """
    unknown = set(overrides) - set(DETECTION_OVERRIDES)
    if unknown:
        raise TypeError(f"Unknown detection options: {', '.join(sorted(unknown))}")

    config = copy.deepcopy(ConfigManager().get_config('detect', DetectConfig))
    for name, value in overrides.items():
        setattr(config.detection, name, value)

    video_path = Path(video_path)
    output_dir = Path(output_dir) if output_dir else video_path.parent
    start_file_log(str(output_dir), video_path.stem)
    start_time = time.time()
    try:
        processor = LogoDetectProcessor(video_path, config, output_dir)
        result = processor.process()
        processor.write_outputs(result)
    finally:
        log_processing_time(start_time, time.time(), video_path.stem)
        stop_file_log()
    return result
