"""
Matrix kernels used by the edge extractor, rolling matcher and frame classifier.

Three interchangeable strategies are provided: OpenCV CUDA kernels, vectorised
numpy, and plain Python loops. select_backend() probes them once, in that
order, and the chosen instance is passed to every component that needs it.
"""

from typing import Optional, Tuple

import cv2
import numpy as np

from LogoDetect.utils.log_setup import logger
from LogoDetect.processing.acceleration import ProbeResult, first_available


class VectorizedMatrixBackend:
    """numpy implementation, the reference behaviour for all backends"""

    name = "numpy"

    @classmethod
    def probe(cls) -> ProbeResult:
        return ProbeResult.success(cls.name, cls())

    def detect_edges(self, luminance: np.ndarray, bias: float, margin: int) -> np.ndarray:
        lum = np.asarray(luminance, dtype=np.float32)
        padded = np.pad(lum, 1, mode='constant', constant_values=0)
        center = padded[1:-1, 1:-1]
        dx = padded[1:-1, 2:] - center
        dy = padded[2:, 1:-1] - center
        edges = dx + dy + np.float32(bias)
        return zero_margin(edges, margin)

    def add(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return np.add(a, b, dtype=np.float64)

    def subtract(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return np.subtract(a, b, dtype=np.float64)

    def divide(self, a: np.ndarray, divisor: float) -> np.ndarray:
        return (a / divisor).astype(np.float32)

    def correlation_score(self, reference: np.ndarray, current: np.ndarray, bias: float) -> float:
        ref = reference.astype(np.float64) - bias
        cur = current.astype(np.float64) - bias
        denominator = float(np.sum(ref * ref))
        if denominator == 0.0:
            return 0.0
        return float(np.sum(ref * cur) / denominator)

    def mean_abs_diff(self, a: np.ndarray, b: np.ndarray) -> float:
        return float(np.mean(np.abs(a.astype(np.float64) - b.astype(np.float64))))

    def mean(self, a: np.ndarray) -> float:
        return float(np.mean(a, dtype=np.float64))

    def fraction_below(self, a: np.ndarray, threshold: float) -> float:
        return float(np.count_nonzero(a < threshold)) / a.size

    def fraction_above(self, a: np.ndarray, threshold: float) -> float:
        return float(np.count_nonzero(a > threshold)) / a.size


class ScalarMatrixBackend(VectorizedMatrixBackend):
    """Element-by-element loops. Slow, but has no requirements beyond Python."""

    name = "scalar"

    def detect_edges(self, luminance: np.ndarray, bias: float, margin: int) -> np.ndarray:
        lum = np.asarray(luminance, dtype=np.float32)
        height, width = lum.shape
        rows = lum.tolist()
        result = np.zeros((height, width), dtype=np.float32)
        for y in range(height):
            row = rows[y]
            below = rows[y + 1] if y + 1 < height else None
            for x in range(width):
                center = row[x]
                right = row[x + 1] if x + 1 < width else 0.0
                down = below[x] if below is not None else 0.0
                result[y, x] = (right - center) + (down - center) + bias
        return zero_margin(result, margin)

    def add(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        out = np.empty(a.shape, dtype=np.float64)
        for index, value in np.ndenumerate(a):
            out[index] = float(value) + float(b[index])
        return out

    def subtract(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        out = np.empty(a.shape, dtype=np.float64)
        for index, value in np.ndenumerate(a):
            out[index] = float(value) - float(b[index])
        return out

    def correlation_score(self, reference: np.ndarray, current: np.ndarray, bias: float) -> float:
        numerator = 0.0
        denominator = 0.0
        for ref_value, cur_value in zip(reference.ravel().tolist(), current.ravel().tolist()):
            ref_centered = ref_value - bias
            numerator += ref_centered * (cur_value - bias)
            denominator += ref_centered * ref_centered
        if denominator == 0.0:
            return 0.0
        return numerator / denominator

    def mean_abs_diff(self, a: np.ndarray, b: np.ndarray) -> float:
        total = 0.0
        for a_value, b_value in zip(a.ravel().tolist(), b.ravel().tolist()):
            total += abs(a_value - b_value)
        return total / a.size

    def mean(self, a: np.ndarray) -> float:
        return sum(a.ravel().tolist()) / a.size

    def fraction_below(self, a: np.ndarray, threshold: float) -> float:
        return sum(1 for value in a.ravel().tolist() if value < threshold) / a.size

    def fraction_above(self, a: np.ndarray, threshold: float) -> float:
        return sum(1 for value in a.ravel().tolist() if value > threshold) / a.size


class CudaMatrixBackend(VectorizedMatrixBackend):
    """OpenCV CUDA kernels for the per-frame element-wise work"""

    name = "cuda"

    @classmethod
    def probe(cls) -> ProbeResult:
        if not hasattr(cv2, 'cuda'):
            return ProbeResult.failure(cls.name, "OpenCV was built without the cuda module")
        try:
            device_count = cv2.cuda.getCudaEnabledDeviceCount()
        except cv2.error as e:
            return ProbeResult.failure(cls.name, f"CUDA runtime error: {e}")
        if device_count < 1:
            return ProbeResult.failure(cls.name, "no CUDA capable device found")
        return ProbeResult.success(cls.name, cls())

    def _upload(self, array: np.ndarray):
        gpu_mat = cv2.cuda_GpuMat()
        gpu_mat.upload(np.ascontiguousarray(array, dtype=np.float32))
        return gpu_mat

    def detect_edges(self, luminance: np.ndarray, bias: float, margin: int) -> np.ndarray:
        lum = np.asarray(luminance, dtype=np.float32)
        height, width = lum.shape
        padded = cv2.copyMakeBorder(lum, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
        gpu_padded = self._upload(padded)
        center = gpu_padded.rowRange(1, height + 1).colRange(1, width + 1)
        right = gpu_padded.rowRange(1, height + 1).colRange(2, width + 2)
        down = gpu_padded.rowRange(2, height + 2).colRange(1, width + 1)
        dx = cv2.cuda.subtract(right, center)
        dy = cv2.cuda.subtract(down, center)
        edges = cv2.cuda.add(dx, dy).download() + np.float32(bias)
        return zero_margin(edges, margin)

    def add(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return cv2.cuda.add(self._upload(a), self._upload(b)).download().astype(np.float64)

    def subtract(self, a: np.ndarray, b: np.ndarray) -> np.ndarray:
        return cv2.cuda.subtract(self._upload(a), self._upload(b)).download().astype(np.float64)

    def mean_abs_diff(self, a: np.ndarray, b: np.ndarray) -> float:
        diff = cv2.cuda.absdiff(self._upload(a), self._upload(b))
        return float(cv2.cuda.sum(diff)[0]) / a.size


BACKENDS = (CudaMatrixBackend, VectorizedMatrixBackend, ScalarMatrixBackend)


def zero_margin(matrix: np.ndarray, margin: int) -> np.ndarray:
    """Set a border of width margin to zero on all four sides (in place)"""
    if margin <= 0:
        return matrix
    matrix[:margin, :] = 0
    matrix[-margin:, :] = 0
    matrix[:, :margin] = 0
    matrix[:, -margin:] = 0
    return matrix


def select_backend(preferred: Optional[str] = None) -> VectorizedMatrixBackend:
    """
    Pick the fastest matrix backend that works on this machine.

    Args:
        preferred: Optional backend name ('cuda', 'numpy' or 'scalar'); probing
            starts at that tier instead of at the top of the list.
    """
    candidates = list(BACKENDS)
    if preferred:
        names = [backend.name for backend in candidates]
        if preferred in names:
            candidates = candidates[names.index(preferred):]
        else:
            logger.warning(f"Unknown matrix backend '{preferred}', probing all backends")

    probes: Tuple = tuple((backend.name, backend.probe) for backend in candidates)
    result = first_available(probes, "matrix backend")
    if not result.ok:
        # numpy is a hard dependency, so this only happens when the scalar tier was forced and failed
        logger.warning(f"No matrix backend available ({result.error}), using numpy")
        return VectorizedMatrixBackend()
    logger.debug(f"Matrix operations will use the {result.value.name} backend")
    return result.value
