"""Shared helpers for matching ORB descriptors between frames."""

from __future__ import annotations

import math
from collections.abc import Sequence, Sized

import numpy as np

from orbfeatures.keypoint import KeyPoint

TH_HIGH = 100
TH_LOW = 50
HISTO_LENGTH = 30
DESCRIPTOR_BYTES = 32


def descriptor_distance(a, b) -> int:
    """Return the Hamming distance between two 32-byte descriptors."""
    left = np.frombuffer(bytes(np.asarray(a, dtype=np.uint8).ravel()), dtype=np.uint8)
    right = np.frombuffer(bytes(np.asarray(b, dtype=np.uint8).ravel()), dtype=np.uint8)
    if len(left) != DESCRIPTOR_BYTES or len(right) != DESCRIPTOR_BYTES:
        raise ValueError(f"descriptors must be {DESCRIPTOR_BYTES} bytes long")
    return int(np.unpackbits(left ^ right).sum())


def compute_three_maxima(histo: Sequence[Sized]) -> tuple[int, int, int]:
    """Return the indices of the three fullest bins, ``-1`` where a bin is too small.

    The second and third bins are dropped when they hold less than a tenth of
    the first.
    """
    max1 = max2 = max3 = 0
    ind1 = ind2 = ind3 = -1
    for i, bin_ in enumerate(histo):
        s = len(bin_)
        if s > max1:
            max3, max2, max1 = max2, max1, s
            ind3, ind2, ind1 = ind2, ind1, i
        elif s > max2:
            max3, max2 = max2, s
            ind3, ind2 = ind2, i
        elif s > max3:
            max3 = s
            ind3 = i

    if max2 < 0.1 * max1:
        ind2 = ind3 = -1
    elif max3 < 0.1 * max1:
        ind3 = -1
    return ind1, ind2, ind3


def radius_by_viewing_cos(view_cos: float) -> float:
    """Return the search radius factor for a point seen under the given viewing cosine."""
    return 2.5 if view_cos > 0.998 else 4.0


def check_dist_epipolar_line(kp1: KeyPoint, kp2: KeyPoint, f12, level_sigma2) -> bool:
    """Tell whether ``kp2`` lies close enough to the epipolar line of ``kp1``."""
    f = np.asarray(f12, dtype=np.float64)
    if f.shape != (3, 3):
        raise ValueError("the fundamental matrix must be 3x3")
    a = kp1.x * f[0, 0] + kp1.y * f[1, 0] + f[2, 0]
    b = kp1.x * f[0, 1] + kp1.y * f[1, 1] + f[2, 1]
    c = kp1.x * f[0, 2] + kp1.y * f[1, 2] + f[2, 2]

    num = a * kp2.x + b * kp2.y + c
    den = a * a + b * b
    if den == 0:
        return False
    return bool(num * num / den < 3.84 * level_sigma2[kp2.octave])


class RotationHistogram:
    """Groups matches by the rotation between their keypoints to reject inconsistent ones."""

    def __init__(self, length: int = HISTO_LENGTH):
        if length < 1:
            raise ValueError("length must be at least 1")
        self.length = length
        self.factor = 1.0 / length
        self.bins: list[list[int]] = [[] for _ in range(length)]

    def add(self, angle1: float, angle2: float, index: int) -> None:
        """Record match ``index`` whose keypoints have angles ``angle1`` and ``angle2``."""
        rot = angle1 - angle2
        if rot < 0.0:
            rot += 360.0
        bin_ = math.floor(rot * self.factor + 0.5)
        if bin_ == self.length:
            bin_ = 0
        if not 0 <= bin_ < self.length:
            raise ValueError(f"rotation {rot} falls outside the histogram")
        self.bins[bin_].append(index)

    def rejected(self) -> list[int]:
        """Return the indices recorded outside the three dominant bins."""
        keep = set(compute_three_maxima(self.bins))
        return [
            index
            for i, bin_ in enumerate(self.bins)
            if i not in keep
            for index in bin_
        ]