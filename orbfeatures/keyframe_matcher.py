"""Matching between keyframes: loop candidates, Sim3 projections and triangulation."""

from __future__ import annotations

from collections.abc import Mapping, MutableSequence, Sequence
from typing import Any, Optional, Protocol

import numpy as np

from orbfeatures.keypoint import KeyPoint
from orbfeatures.matching import (
    TH_LOW,
    RotationHistogram,
    check_dist_epipolar_line,
    descriptor_distance,
)


class KeyFrameMapPoint(Protocol):
    """What the keyframe matcher reads from a 3-D map point."""

    descriptor: Any
    world_pos: Any
    normal: Any
    min_distance_invariance: float
    max_distance_invariance: float

    def is_bad(self) -> bool: ...

    def predict_scale(self, dist: float, frame: Any) -> int: ...


class KeyFrameLike(Protocol):
    """What the keyframe matcher reads from a keyframe."""

    keys_un: Sequence[KeyPoint]
    descriptors: Any
    map_points: MutableSequence[Optional[KeyFrameMapPoint]]
    u_right: Sequence[float]
    scale_factors: Sequence[float]
    level_sigma2: Sequence[float]
    feat_vec: Mapping[int, Sequence[int]]
    tcw: Any
    fx: float
    fy: float
    cx: float
    cy: float

    def is_in_image(self, u: float, v: float) -> bool: ...

    def features_in_area(self, x: float, y: float, r: float) -> list[int]: ...


def _split_pose(tcw) -> tuple[np.ndarray, np.ndarray]:
    pose = np.asarray(tcw, dtype=np.float64)
    if pose.ndim != 2 or pose.shape[0] < 3 or pose.shape[1] < 4:
        raise ValueError("a pose must be at least 3x4")
    return pose[:3, :3], pose[:3, 3]


def _camera_center(keyframe: KeyFrameLike) -> np.ndarray:
    rotation, translation = _split_pose(keyframe.tcw)
    return -rotation.T @ translation


def _position(point) -> np.ndarray:
    return np.asarray(point.world_pos, dtype=np.float64).reshape(3)


class KeyFrameMatcher:
    """Finds correspondences between the features of keyframes and map points."""

    def __init__(self, nn_ratio, check_orientation):
        self.nn_ratio = float(nn_ratio)
        self.check_orientation = bool(check_orientation)

    def _histogram(self) -> Optional[RotationHistogram]:
        return RotationHistogram() if self.check_orientation else None

    def search_by_projection_sim3(
        self, keyframe: KeyFrameLike, scw, points, matched, th
    ) -> tuple[int, list]:
        """Project ``points`` into ``keyframe`` through the similarity ``scw`` and match them.

        ``matched`` holds, per feature of the keyframe, the map point already matched
        to it or ``None``. Returns the number of new matches and the updated list.
        """
        sim = np.asarray(scw, dtype=np.float64)
        if sim.ndim != 2 or sim.shape[0] < 3 or sim.shape[1] < 4:
            raise ValueError("a similarity transform must be at least 3x4")
        if len(matched) != len(keyframe.keys_un):
            raise ValueError("matched must hold one entry per keyframe feature")

        s_rcw = sim[:3, :3]
        scale = float(np.linalg.norm(s_rcw[0]))
        if scale == 0.0:
            raise ValueError("the similarity transform has zero scale")
        rcw = s_rcw / scale
        tcw = sim[:3, 3] / scale
        ow = -rcw.T @ tcw

        result = list(matched)
        already_found = {id(p) for p in matched if p is not None}
        nmatches = 0

        for point in points:
            if point.is_bad() or id(point) in already_found:
                continue

            p3dw = _position(point)
            p3dc = rcw @ p3dw + tcw
            if p3dc[2] <= 0.0:
                continue

            invz = 1.0 / p3dc[2]
            u = keyframe.fx * p3dc[0] * invz + keyframe.cx
            v = keyframe.fy * p3dc[1] * invz + keyframe.cy
            if not keyframe.is_in_image(u, v):
                continue

            po = p3dw - ow
            dist = float(np.linalg.norm(po))
            if dist < point.min_distance_invariance or dist > point.max_distance_invariance:
                continue

            # Viewing angle must be under 60 degrees.
            normal = np.asarray(point.normal, dtype=np.float64).reshape(3)
            if float(po @ normal) < 0.5 * dist:
                continue

            level = point.predict_scale(dist, keyframe)
            radius = th * keyframe.scale_factors[level]
            indices = keyframe.features_in_area(u, v, radius)
            if not indices:
                continue

            descriptor = point.descriptor
            best_dist = 256
            best_idx = -1
            for idx in indices:
                if result[idx] is not None:
                    continue
                kp_level = keyframe.keys_un[idx].octave
                if kp_level < level - 1 or kp_level > level:
                    continue
                dist_desc = descriptor_distance(descriptor, keyframe.descriptors[idx])
                if dist_desc < best_dist:
                    best_dist = dist_desc
                    best_idx = idx

            if best_dist <= TH_LOW:
                result[best_idx] = point
                nmatches += 1

        return nmatches, result

    def search_by_bow_keyframes(self, keyframe1: KeyFrameLike, keyframe2: KeyFrameLike) -> list:
        """Match map points of two keyframes whose features share a vocabulary node.

        Returns, per feature of ``keyframe1``, the matched map point of ``keyframe2``
        or ``None``.
        """
        points1 = list(keyframe1.map_points)
        points2 = list(keyframe2.map_points)
        matches12: list = [None] * len(points1)
        matched2 = [False] * len(points2)
        histogram = self._histogram()

        for node in sorted(keyframe1.feat_vec.keys() & keyframe2.feat_vec.keys()):
            indices2 = keyframe2.feat_vec[node]
            for idx1 in keyframe1.feat_vec[node]:
                point1 = points1[idx1]
                if point1 is None or point1.is_bad():
                    continue

                d1 = keyframe1.descriptors[idx1]
                best_dist1 = best_dist2 = 256
                best_idx2 = -1

                for idx2 in indices2:
                    point2 = points2[idx2]
                    if matched2[idx2] or point2 is None or point2.is_bad():
                        continue
                    dist = descriptor_distance(d1, keyframe2.descriptors[idx2])
                    if dist < best_dist1:
                        best_dist2, best_dist1 = best_dist1, dist
                        best_idx2 = idx2
                    elif dist < best_dist2:
                        best_dist2 = dist

                if best_dist1 < TH_LOW and best_dist1 < self.nn_ratio * best_dist2:
                    matches12[idx1] = points2[best_idx2]
                    matched2[best_idx2] = True
                    if histogram is not None:
                        histogram.add(
                            keyframe1.keys_un[idx1].angle,
                            keyframe2.keys_un[best_idx2].angle,
                            idx1,
                        )

        if histogram is not None:
            for idx1 in histogram.rejected():
                matches12[idx1] = None

        return matches12

    def search_for_triangulation(
        self, keyframe1: KeyFrameLike, keyframe2: KeyFrameLike, f12, only_stereo
    ) -> list[tuple[int, int]]:
        """Pair features without map points that satisfy the epipolar constraint.

        Returns ``(index in keyframe1, index in keyframe2)`` pairs sorted by the first index.
        """
        center1 = _camera_center(keyframe1)
        r2w, t2w = _split_pose(keyframe2.tcw)
        c2 = r2w @ center1 + t2w
        with np.errstate(divide="ignore", invalid="ignore"):
            invz = np.float64(1.0) / c2[2]
            ex = keyframe2.fx * c2[0] * invz + keyframe2.cx
            ey = keyframe2.fy * c2[1] * invz + keyframe2.cy

        matches12 = [-1] * len(keyframe1.keys_un)
        histogram = self._histogram()

        for node in sorted(keyframe1.feat_vec.keys() & keyframe2.feat_vec.keys()):
            indices2 = keyframe2.feat_vec[node]
            for idx1 in keyframe1.feat_vec[node]:
                if keyframe1.map_points[idx1] is not None:
                    continue

                stereo1 = keyframe1.u_right[idx1] >= 0
                if only_stereo and not stereo1:
                    continue

                kp1 = keyframe1.keys_un[idx1]
                d1 = keyframe1.descriptors[idx1]
                best_dist = TH_LOW
                best_idx2 = -1

                for idx2 in indices2:
                    if keyframe2.map_points[idx2] is not None:
                        continue

                    stereo2 = keyframe2.u_right[idx2] >= 0
                    if only_stereo and not stereo2:
                        continue

                    dist = descriptor_distance(d1, keyframe2.descriptors[idx2])
                    if dist > TH_LOW or dist > best_dist:
                        continue

                    kp2 = keyframe2.keys_un[idx2]
                    if not stereo1 and not stereo2:
                        dex = ex - kp2.x
                        dey = ey - kp2.y
                        # Too close to the epipole for a reliable triangulation.
                        if dex * dex + dey * dey < 100 * keyframe2.scale_factors[kp2.octave]:
                            continue

                    if check_dist_epipolar_line(kp1, kp2, f12, keyframe2.level_sigma2):
                        best_idx2 = idx2
                        best_dist = dist

                if best_idx2 >= 0:
                    matches12[idx1] = best_idx2
                    if histogram is not None:
                        histogram.add(kp1.angle, keyframe2.keys_un[best_idx2].angle, idx1)

        if histogram is not None:
            for idx1 in histogram.rejected():
                matches12[idx1] = -1

        return [(i, j) for i, j in enumerate(matches12) if j >= 0]