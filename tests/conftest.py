import cv2
import numpy as np
import pytest

from LogoDetect.processing.frame_source import Frame
from LogoDetect.processing.matrix_backend import VectorizedMatrixBackend
from LogoDetect.utils.config_setup import DetectConfig


def make_frame(timestamp, luminance):
    luminance = np.asarray(luminance, dtype=np.float32)
    height, width = luminance.shape
    reduced = cv2.resize(luminance, (max(1, width // 4), max(1, height // 4)), interpolation=cv2.INTER_LINEAR)
    return Frame(timestamp=timestamp, luminance=luminance, reduced_luminance=reduced)


def checkerboard(height, width, square=4, low=0.0, high=255.0):
    ys, xs = np.indices((height, width))
    board = ((ys // square + xs // square) % 2).astype(np.float32)
    return np.where(board > 0, high, low).astype(np.float32)


class FakeFrameSource:
    """
    In-memory stand-in for FrameSource. frame_at(t) builds the luminance for
    each timestamp on the fps grid.
    """

    def __init__(self, frame_at, duration, fps=2.0, height=60, width=80):
        self.frame_at = frame_at
        self._duration = duration
        self.fps = fps
        self.height = height
        self.width = width
        self.tier = None
        self._index = 0
        self.seeks = []

    def _count(self):
        return int(round(self._duration * self.fps))

    def duration(self):
        return self._duration

    def _build(self, index):
        timestamp = index / self.fps
        return make_frame(timestamp, self.frame_at(timestamp))

    def read_next(self, keyframes_only=False):
        if self._index >= self._count():
            return None
        frame = self._build(self._index)
        self._index += 1
        return frame

    def seek(self, timestamp):
        if timestamp < 0:
            raise ValueError(f"Timestamp {timestamp} is out of range")
        self.seeks.append(timestamp)
        if timestamp >= self._duration:
            return None
        tolerance = 0.5 / self.fps
        self._index = max(0, int(np.ceil((timestamp - tolerance) * self.fps)))
        return self.read_next()

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False


@pytest.fixture
def backend():
    return VectorizedMatrixBackend()


@pytest.fixture
def detect_config():
    return DetectConfig()


def write_synthetic_video(path, duration=120, fps=2, width=320, height=240, logo_span=(30, 90)):
    """
    Uniform grey MJPG video with a checkerboard patch in the middle of the
    frame for logo_span[0] <= t <= logo_span[1]. Returns False if OpenCV
    cannot write MJPG on this machine.
    """
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*'MJPG'), fps, (width, height))
    if not writer.isOpened():
        return False

    background = np.full((height, width, 3), 128, dtype=np.uint8)
    logo = checkerboard(48, 64, square=8).astype(np.uint8)
    top = (height - 48) // 2
    left = (width - 64) // 2
    with_logo = background.copy()
    with_logo[top:top + 48, left:left + 64] = logo[:, :, None]

    for index in range(int(duration * fps)):
        t = index / fps
        writer.write(with_logo if logo_span[0] <= t <= logo_span[1] else background)
    writer.release()
    return True


@pytest.fixture(scope='session')
def synthetic_video(tmp_path_factory):
    path = tmp_path_factory.mktemp('video') / 'synthetic_logo.avi'
    if not write_synthetic_video(path):
        pytest.skip("OpenCV cannot write MJPG video here")
    return path
