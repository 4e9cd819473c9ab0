"""
Edge map extraction.

A cheap finite-difference gradient: each pixel gets (right - centre) +
(below - centre), shifted up by EDGE_BIAS so flat areas sit mid-range, and a
band of EDGE_MARGIN pixels is zeroed on every side to hide padding artefacts.
"""

from typing import Optional

import numpy as np

from LogoDetect.processing.matrix_backend import VectorizedMatrixBackend

MAX_PIXEL_VALUE = 255.0
EDGE_BIAS = MAX_PIXEL_VALUE / 2.0
EDGE_MARGIN = 10

_default_backend = VectorizedMatrixBackend()


def detect_edges(luminance: np.ndarray, backend: Optional[VectorizedMatrixBackend] = None) -> np.ndarray:
    """
    Compute the edge map of a luminance frame.

    Args:
        luminance: 2D array of pixel values in 0-255
        backend: Matrix backend to run the kernel on (numpy when omitted)

    Returns:
        np.ndarray: float32 edge map with the same shape as luminance
    """
    backend = backend or _default_backend
    return backend.detect_edges(luminance, EDGE_BIAS, EDGE_MARGIN)


def blank_edge_map(height: int, width: int) -> np.ndarray:
    """An edge map of a perfectly flat frame, i.e. EDGE_BIAS everywhere"""
    return np.full((height, width), EDGE_BIAS, dtype=np.float32)


def interior_slices(height: int, width: int):
    """Row and column slices of the region inside the zeroed margin"""
    margin = min(EDGE_MARGIN, height // 2, width // 2)
    return slice(margin, height - margin), slice(margin, width - margin)
