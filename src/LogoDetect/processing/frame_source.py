#!/usr/bin/env python3
"""
Frame source for logo detection.

Opens a video with the fastest decoder tier that works (CUDA, QuickSync,
software), and hands out one grayscale frame at a time at full and quarter
resolution. Nothing is buffered beyond the decoder's own internal queue.
"""

import bisect
import json
import os
import subprocess
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

import cv2
import numpy as np

from LogoDetect.utils.log_setup import logger
from LogoDetect.processing.acceleration import (
    AccelerationTier, ProbeResult, decoder_variant, first_available, parse_tiers
)

# Consecutive failed grabs before the stream is treated as finished
MAX_DECODE_FAILURES = 3

# OpenCV fourcc tags mapped to FFmpeg codec names, used when ffprobe is missing
FOURCC_CODECS = {
    'avc1': 'h264', 'h264': 'h264', 'x264': 'h264', 'avc3': 'h264',
    'hev1': 'hevc', 'hvc1': 'hevc', 'hevc': 'hevc', 'h265': 'hevc',
    'vp09': 'vp9', 'vp90': 'vp9',
    'av01': 'av1',
    'mpg2': 'mpeg2video', 'mp2v': 'mpeg2video',
    'wvc1': 'vc1',
    'mjpg': 'mjpeg',
    'mp4v': 'mpeg4', 'xvid': 'mpeg4', 'divx': 'mpeg4', 'fmp4': 'mpeg4',
}


class OpenError(ValueError):
    """The video cannot be decoded at all: unreadable container, no video stream, no decoder"""


@dataclass
class Frame:
    """A decoded frame. Consumers must treat the arrays as read-only."""
    timestamp: float  # seconds since the first frame
    luminance: np.ndarray  # float32, full resolution, 0-255
    reduced_luminance: np.ndarray  # float32, quarter resolution


@dataclass
class StreamInfo:
    codec_name: Optional[str]
    width: int
    height: int
    fps: float
    duration: float
    start_time: float = 0.0  # pts of the first frame, seconds


@contextmanager
def _capture_options(options: Optional[str]):
    """Temporarily set the FFmpeg options OpenCV reads when a capture is opened"""
    key = 'OPENCV_FFMPEG_CAPTURE_OPTIONS'
    previous = os.environ.get(key)
    if options:
        os.environ[key] = options
    else:
        os.environ.pop(key, None)
    try:
        yield
    finally:
        if previous is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = previous


def probe_stream_info(video_path: str) -> Optional[StreamInfo]:
    """
    Get codec and geometry of the first video stream using ffprobe.

    Returns None when ffprobe is unavailable or fails; raises OpenError when
    ffprobe reads the container but finds no video stream.
    """
    cmd = [
        'ffprobe', '-v', 'quiet',
        '-select_streams', 'v:0',
        '-show_entries', 'stream=codec_name,width,height,r_frame_rate,duration,start_time:format=duration',
        '-of', 'json',
        video_path
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=60)
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        logger.debug(f"ffprobe unavailable, falling back to OpenCV properties: {e}")
        return None

    if result.returncode != 0:
        logger.debug(f"ffprobe could not read {video_path}: {result.stderr.strip()}")
        return None

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        return None

    streams = data.get('streams') or []
    if not streams:
        raise OpenError(f"No video stream found in {video_path}")

    stream = streams[0]
    format_data = data.get('format', {})

    fps_str = stream.get('r_frame_rate', '0/1')
    if '/' in fps_str:
        num, den = map(int, fps_str.split('/'))
        fps = num / den if den > 0 else 0.0
    else:
        fps = float(fps_str)

    duration = 0.0
    if stream.get('duration') not in (None, 'N/A'):
        duration = float(stream['duration'])
    elif format_data.get('duration') not in (None, 'N/A'):
        duration = float(format_data['duration'])

    start_time = 0.0
    if stream.get('start_time') not in (None, 'N/A'):
        start_time = float(stream['start_time'])

    return StreamInfo(
        codec_name=stream.get('codec_name'),
        width=int(stream.get('width', 0)),
        height=int(stream.get('height', 0)),
        fps=fps,
        duration=duration,
        start_time=start_time,
    )


def probe_keyframe_times(video_path: str) -> Optional[List[float]]:
    """Presentation timestamps (seconds) of every keyframe, or None if ffprobe fails"""
    cmd = [
        'ffprobe', '-v', 'error',
        '-select_streams', 'v:0',
        '-skip_frame', 'nokey',
        '-show_entries', 'frame=best_effort_timestamp_time',
        '-of', 'csv=p=0',
        video_path
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except (FileNotFoundError, subprocess.SubprocessError) as e:
        logger.debug(f"Could not list keyframes: {e}")
        return None
    if result.returncode != 0:
        return None

    times = []
    for line in result.stdout.splitlines():
        value = line.strip().strip(',')
        if not value or value == 'N/A':
            continue
        try:
            times.append(float(value))
        except ValueError:
            continue
    return sorted(times)


def _fourcc_to_codec(fourcc_value: float) -> Optional[str]:
    code = int(fourcc_value)
    if code <= 0:
        return None
    tag = ''.join(chr((code >> (8 * i)) & 0xFF) for i in range(4)).strip('\x00 ').lower()
    return FOURCC_CODECS.get(tag)


class FrameSource:
    """
    Sequential frame reader over a single video file.

    Use as a context manager so the decoder is released even when processing
    stops early:

        with FrameSource(path) as source:
            frame = source.read_next()
    """

    def __init__(self, video_path, tiers: Optional[Sequence[str]] = None):
        self.video_path = str(video_path)
        self._cap = None
        self._lock = threading.Lock()
        self._pending_grab = False
        self._last_timestamp = float('-inf')
        self._keyframe_times = None
        self._keyframes_loaded = False

        if not Path(self.video_path).is_file():
            raise OpenError(f"Cannot open video file: {self.video_path}")

        self.info = probe_stream_info(self.video_path)
        if self.info is None:
            self.info = self._info_without_ffprobe()

        tier_order = parse_tiers(tiers or [tier.value for tier in AccelerationTier])
        probes = tuple((tier.value, lambda tier=tier: self._probe_decoder(tier)) for tier in tier_order)
        result = first_available(probes, "decoder")
        if not result.ok:
            raise OpenError(f"Cannot decode video file {self.video_path}: {result.error}")

        self._cap, first_ms = result.value
        self.tier = AccelerationTier(result.tier)
        self._pending_grab = True
        self._zero_offset = first_ms / 1000.0

        if self.info.width <= 0 or self.info.height <= 0:
            self.close()
            raise OpenError(f"No video stream found in {self.video_path}")

        if self.tier is AccelerationTier.SOFTWARE and len(tier_order) > 1:
            logger.warning(f"Hardware decoding unavailable for {Path(self.video_path).name}, using software decode")

        logger.info(f"✓ Video loaded: {self.info.width}x{self.info.height}, {self.info.fps:.2f}fps, "
                    f"{self.duration():.1f}s, codec {self.info.codec_name}, decoder tier {self.tier.value}")

    @classmethod
    def open(cls, video_path, tiers: Optional[Sequence[str]] = None) -> "FrameSource":
        return cls(video_path, tiers=tiers)

    def _probe_decoder(self, tier: AccelerationTier) -> ProbeResult:
        codec_name = self.info.codec_name if self.info else None
        variant = decoder_variant(tier, codec_name)
        if tier is not AccelerationTier.SOFTWARE and variant is None:
            return ProbeResult.failure(tier.value, f"no accelerated decoder for codec {codec_name}")

        if variant:
            options = f"video_codec;{variant}"
            params = []
        else:
            options = None
            params = [cv2.CAP_PROP_HW_ACCELERATION, cv2.VIDEO_ACCELERATION_NONE]

        with _capture_options(options):
            cap = cv2.VideoCapture(self.video_path, cv2.CAP_FFMPEG, params)

        if not cap.isOpened():
            cap.release()
            return ProbeResult.failure(tier.value, "decoder failed to open the stream")

        if not cap.grab():
            cap.release()
            return ProbeResult.failure(tier.value, "decoder produced no frames")

        return ProbeResult.success(tier.value, (cap, cap.get(cv2.CAP_PROP_POS_MSEC)))

    def _info_without_ffprobe(self) -> StreamInfo:
        cap = cv2.VideoCapture(self.video_path)
        try:
            if not cap.isOpened():
                raise OpenError(f"Cannot open video file: {self.video_path}")
            return self._info_from_capture(cap)
        finally:
            cap.release()

    @staticmethod
    def _info_from_capture(cap) -> StreamInfo:
        fps = cap.get(cv2.CAP_PROP_FPS)
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
        return StreamInfo(
            codec_name=_fourcc_to_codec(cap.get(cv2.CAP_PROP_FOURCC)),
            width=int(cap.get(cv2.CAP_PROP_FRAME_WIDTH)),
            height=int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT)),
            fps=fps,
            duration=frame_count / fps if fps > 0 else 0.0,
        )

    @property
    def width(self) -> int:
        return self.info.width

    @property
    def height(self) -> int:
        return self.info.height

    @property
    def fps(self) -> float:
        return self.info.fps

    def duration(self) -> float:
        """Length of the video in seconds, measured from the first frame"""
        return max(0.0, self.info.duration - self._zero_offset)

    def _frame_tolerance(self) -> float:
        return 0.5 / self.info.fps if self.info.fps > 0 else 0.001

    def _is_keyframe(self, timestamp: float) -> bool:
        if not self._keyframes_loaded:
            self._keyframes_loaded = True
            times = probe_keyframe_times(self.video_path)
            if times is None:
                logger.warning("Keyframe list unavailable, every frame will be treated as a keyframe")
            else:
                # Frame timestamps count from the stream start_time, ffprobe reports raw pts
                offset = self.info.start_time + self._zero_offset
                self._keyframe_times = [t - offset for t in times]
        if self._keyframe_times is None:
            return True

        index = bisect.bisect_left(self._keyframe_times, timestamp)
        tolerance = self._frame_tolerance()
        for i in (index - 1, index):
            if 0 <= i < len(self._keyframe_times) and abs(self._keyframe_times[i] - timestamp) <= tolerance:
                return True
        return False

    def read_next(self, keyframes_only: bool = False) -> Optional[Frame]:
        """Decode the next frame, or return None at the end of the stream"""
        if self._cap is None:
            return None
        if not self._lock.acquire(blocking=False):
            raise RuntimeError("FrameSource is already being read from another call site")
        try:
            return self._read_next_locked(keyframes_only)
        finally:
            self._lock.release()

    def _read_next_locked(self, keyframes_only: bool) -> Optional[Frame]:
        failures = 0
        while True:
            if self._pending_grab:
                self._pending_grab = False
                grabbed = True
            else:
                grabbed = self._cap.grab()

            if not grabbed:
                failures += 1
                if failures >= MAX_DECODE_FAILURES:
                    return None
                logger.debug(f"Frame decode failed after {self._last_timestamp:.3f}s, skipping")
                continue
            failures = 0

            timestamp = self._cap.get(cv2.CAP_PROP_POS_MSEC) / 1000.0 - self._zero_offset
            # Decoders can report a slightly earlier pts after a seek; keep time monotonic
            timestamp = max(timestamp, self._last_timestamp, 0.0)

            if keyframes_only and not self._is_keyframe(timestamp):
                self._last_timestamp = timestamp
                continue

            ok, image = self._cap.retrieve()
            if not ok or image is None:
                logger.debug(f"Could not retrieve decoded frame at {timestamp:.3f}s, skipping")
                continue

            self._last_timestamp = timestamp
            return self._to_frame(image, timestamp)

    def _to_frame(self, image: np.ndarray, timestamp: float) -> Frame:
        if image.ndim == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image
        luminance = gray.astype(np.float32)
        height, width = luminance.shape
        reduced = cv2.resize(luminance, (max(1, width // 4), max(1, height // 4)),
                             interpolation=cv2.INTER_LINEAR)
        return Frame(timestamp=timestamp, luminance=luminance, reduced_luminance=reduced)

    def seek(self, timestamp: float) -> Optional[Frame]:
        """
        Position the decoder at timestamp and return the first frame at or after it.

        Returns None when timestamp is past the end of the video or the seek fails.
        """
        if timestamp < 0:
            raise ValueError(f"Timestamp {timestamp} is out of range for {self.video_path}")
        if self._cap is None or timestamp >= self.duration():
            return None

        if not self._lock.acquire(blocking=False):
            raise RuntimeError("FrameSource is already being read from another call site")
        try:
            target_ms = (timestamp + self._zero_offset) * 1000.0
            if not self._cap.set(cv2.CAP_PROP_POS_MSEC, target_ms):
                logger.debug(f"Seek to {timestamp:.3f}s failed")
                return None
            self._pending_grab = False
            self._last_timestamp = float('-inf')

            tolerance = self._frame_tolerance()
            while True:
                frame = self._read_next_locked(keyframes_only=False)
                if frame is None:
                    logger.debug(f"Seek to {timestamp:.3f}s ran past the end of the stream")
                    return None
                if frame.timestamp >= timestamp - tolerance:
                    return frame
        finally:
            self._lock.release()

    def close(self):
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __del__(self):
        self.close()


def open_video(video_path, tiers: Optional[Sequence[str]] = None) -> FrameSource:
    """Open video_path for frame-by-frame reading, raising OpenError if it cannot be decoded"""
    return FrameSource.open(video_path, tiers=tiers)
