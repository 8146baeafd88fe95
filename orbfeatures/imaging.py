"""Grey-scale image operations needed by the feature extractor."""

from __future__ import annotations

import math

import numpy as np

from orbfeatures.keypoint import KeyPoint

# Bresenham circle of radius 3 around the candidate pixel, as (dx, dy).
_CIRCLE = (
    (0, 3), (1, 3), (2, 2), (3, 1), (3, 0), (3, -1), (2, -2), (1, -3),
    (0, -3), (-1, -3), (-2, -2), (-3, -1), (-3, 0), (-3, 1), (-2, 2), (-1, 3),
)
_ARC = 9
_FAST_KEYPOINT_SIZE = 7.0


def _as_gray(image) -> np.ndarray:
    array = np.asarray(image)
    if array.ndim != 2:
        raise ValueError("expected a two-dimensional grey-scale image")
    return array


def _restore_dtype(values: np.ndarray, dtype: np.dtype) -> np.ndarray:
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        return np.clip(np.rint(values), info.min, info.max).astype(dtype)
    return values.astype(dtype)


def copy_make_border(image, border: int) -> np.ndarray:
    """Surround ``image`` with ``border`` pixels mirrored without repeating the edge."""
    array = _as_gray(image)
    if border < 0:
        raise ValueError("border must not be negative")
    if array.size == 0:
        raise ValueError("image is empty")
    return np.pad(array, border, mode="reflect")


def _linear_axis(src_len: int, dst_len: int):
    scale = src_len / dst_len
    pos = (np.arange(dst_len, dtype=np.float64) + 0.5) * scale - 0.5
    lower = np.floor(pos).astype(np.intp)
    frac = pos - lower
    before = pos < 0
    lower[before] = 0
    frac[before] = 0.0
    past = lower >= src_len - 1
    lower[past] = src_len - 1
    frac[past] = 0.0
    upper = np.minimum(lower + 1, src_len - 1)
    return lower, upper, frac


def resize_linear(image, width: int, height: int) -> np.ndarray:
    """Resize ``image`` to ``width`` x ``height`` with bilinear interpolation."""
    array = _as_gray(image)
    if width <= 0 or height <= 0:
        raise ValueError("target size must be positive")
    src_h, src_w = array.shape
    if src_h == 0 or src_w == 0:
        raise ValueError("image is empty")

    x0, x1, fx = _linear_axis(src_w, width)
    y0, y1, fy = _linear_axis(src_h, height)
    data = array.astype(np.float64)

    top = data[y0][:, x0] * (1.0 - fx) + data[y0][:, x1] * fx
    bottom = data[y1][:, x0] * (1.0 - fx) + data[y1][:, x1] * fx
    result = top * (1.0 - fy)[:, None] + bottom * fy[:, None]
    return _restore_dtype(result, array.dtype)


def _gaussian_kernel(ksize: int, sigma: float) -> np.ndarray:
    if sigma <= 0:
        sigma = 0.3 * ((ksize - 1) * 0.5 - 1) + 0.8
    offsets = np.arange(ksize, dtype=np.float64) - (ksize - 1) / 2.0
    kernel = np.exp(-(offsets ** 2) / (2.0 * sigma * sigma))
    return kernel / kernel.sum()


def gaussian_blur(image, ksize: int, sigma: float) -> np.ndarray:
    """Blur ``image`` with a square Gaussian kernel, mirroring pixels at the border."""
    array = _as_gray(image)
    if ksize <= 0 or ksize % 2 == 0:
        raise ValueError("kernel size must be a positive odd number")
    if array.size == 0:
        raise ValueError("image is empty")

    kernel = _gaussian_kernel(ksize, sigma)
    radius = ksize // 2
    rows, cols = array.shape
    padded = np.pad(array.astype(np.float64), radius, mode="reflect")

    horizontal = sum(
        weight * padded[:, tap:tap + cols] for tap, weight in enumerate(kernel)
    )
    result = sum(
        weight * horizontal[tap:tap + rows, :] for tap, weight in enumerate(kernel)
    )
    return _restore_dtype(result, array.dtype)


def _corner_strength(image: np.ndarray) -> np.ndarray:
    rows, cols = image.shape
    center = image[3:rows - 3, 3:cols - 3]
    diffs = np.stack([
        image[3 + dy:rows - 3 + dy, 3 + dx:cols - 3 + dx] - center
        for dx, dy in _CIRCLE
    ])
    wrapped = np.concatenate([diffs, diffs[:_ARC - 1]])
    arcs = [wrapped[start:start + _ARC] for start in range(len(_CIRCLE))]
    brighter = np.max([arc.min(axis=0) for arc in arcs], axis=0)
    darker = np.max([(-arc).min(axis=0) for arc in arcs], axis=0)
    return np.maximum(brighter, darker)


def fast(image, threshold: int, nonmax_suppression: bool = True) -> list[KeyPoint]:
    """Detect FAST-9 corners, returned in row-major order with their scores as responses.

    A pixel is a corner when nine contiguous pixels on the radius-3 circle are all
    brighter or all darker than it by more than ``threshold``. Its score is the
    largest threshold for which that still holds.
    """
    array = _as_gray(image).astype(np.int32)
    threshold = min(max(int(threshold), 0), 255)
    rows, cols = array.shape
    if rows < 7 or cols < 7:
        return []

    strength = _corner_strength(array)
    corners = strength > threshold
    scores = np.where(corners, strength - 1, 0)

    keep = corners
    if nonmax_suppression:
        padded = np.pad(scores, 1, mode="constant")
        h, w = scores.shape
        for dy in (-1, 0, 1):
            for dx in (-1, 0, 1):
                if dx == 0 and dy == 0:
                    continue
                neighbour = padded[1 + dy:1 + dy + h, 1 + dx:1 + dx + w]
                keep = keep & (scores > neighbour)

    return [
        KeyPoint(
            x=float(c + 3),
            y=float(r + 3),
            size=_FAST_KEYPOINT_SIZE,
            response=float(scores[r, c]),
        )
        for r, c in zip(*np.nonzero(keep))
    ]


def fast_atan2(y: float, x: float) -> float:
    """Return the angle of the vector ``(x, y)`` in degrees, in ``[0, 360)``."""
    angle = math.degrees(math.atan2(y, x)) % 360.0
    if angle >= 360.0:
        angle -= 360.0
    return angle