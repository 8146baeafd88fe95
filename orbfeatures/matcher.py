"""Matching of frame keypoints against map points and against other frames."""

from __future__ import annotations

import math
from collections.abc import Mapping, MutableSequence, Sequence
from typing import Any, Optional, Protocol

import numpy as np

from orbfeatures.keypoint import KeyPoint
from orbfeatures.matching import (
    TH_HIGH,
    TH_LOW,
    RotationHistogram,
    descriptor_distance,
    radius_by_viewing_cos,
)


class MapPointLike(Protocol):
    """What the matcher reads from a 3-D map point."""

    descriptor: Any
    world_pos: Any
    num_observations: int
    track_in_view: bool
    track_proj_x: float
    track_proj_y: float
    track_proj_xr: float
    track_scale_level: int
    track_view_cos: float
    min_distance_invariance: float
    max_distance_invariance: float

    def is_bad(self) -> bool: ...

    def predict_scale(self, dist: float, frame: Any) -> int: ...


class FrameLike(Protocol):
    """What the matcher reads from, and writes to, a frame or keyframe."""

    keys: Sequence[KeyPoint]
    keys_un: Sequence[KeyPoint]
    descriptors: Any
    map_points: MutableSequence[Optional[MapPointLike]]
    outliers: Sequence[bool]
    u_right: Sequence[float]
    scale_factors: Sequence[float]
    feat_vec: Mapping[int, Sequence[int]]
    tcw: Any
    fx: float
    fy: float
    cx: float
    cy: float
    bf: float
    b: float
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    def features_in_area(
        self, x: float, y: float, r: float, min_level: int = -1, max_level: int = -1
    ) -> list[int]: ...


def _decompose(tcw) -> tuple[np.ndarray, np.ndarray]:
    pose = np.asarray(tcw, dtype=np.float64)
    if pose.shape[0] < 3 or pose.shape[1] < 4:
        raise ValueError("a pose must be at least 3x4")
    return pose[:3, :3], pose[:3, 3]


def _position(point: MapPointLike) -> np.ndarray:
    return np.asarray(point.world_pos, dtype=np.float64).reshape(3)


class ORBMatcher:
    """Finds correspondences between ORB features of frames and map points."""

    def __init__(self, nn_ratio, check_orientation):
        self.nn_ratio = float(nn_ratio)
        self.check_orientation = bool(check_orientation)

    def _histogram(self) -> Optional[RotationHistogram]:
        return RotationHistogram() if self.check_orientation else None

    def search_by_projection_local(self, frame: FrameLike, map_points, th) -> int:
        """Match map points already projected into ``frame`` (the tracking fields).

        Matches are written into ``frame.map_points``; the number found is returned.
        """
        use_factor = th != 1.0
        nmatches = 0

        for point in map_points:
            if not point.track_in_view or point.is_bad():
                continue

            level = point.track_scale_level
            r = radius_by_viewing_cos(point.track_view_cos)
            if use_factor:
                r *= th
            radius = r * frame.scale_factors[level]

            indices = frame.features_in_area(
                point.track_proj_x, point.track_proj_y, radius, level - 1, level
            )
            if not indices:
                continue

            descriptor = point.descriptor
            best_dist = best_dist2 = 256
            best_level = best_level2 = -1
            best_idx = -1

            for idx in indices:
                existing = frame.map_points[idx]
                if existing is not None and existing.num_observations > 0:
                    continue
                if frame.u_right[idx] > 0:
                    if abs(point.track_proj_xr - frame.u_right[idx]) > radius:
                        continue

                dist = descriptor_distance(descriptor, frame.descriptors[idx])
                if dist < best_dist:
                    best_dist2, best_dist = best_dist, dist
                    best_level2, best_level = best_level, frame.keys_un[idx].octave
                    best_idx = idx
                elif dist < best_dist2:
                    best_level2 = frame.keys_un[idx].octave
                    best_dist2 = dist

            if best_dist <= TH_HIGH:
                # Ratio test only when the two best candidates share a level.
                if best_level == best_level2 and best_dist > self.nn_ratio * best_dist2:
                    continue
                frame.map_points[best_idx] = point
                nmatches += 1

        return nmatches

    def search_by_projection_last_frame(
        self, current_frame: FrameLike, last_frame: FrameLike, th, mono
    ) -> int:
        """Project the map points tracked in ``last_frame`` into ``current_frame``.

        Matches are written into ``current_frame.map_points``; the count is returned.
        """
        nmatches = 0
        histogram = self._histogram()

        rcw, tcw = _decompose(current_frame.tcw)
        twc = -rcw.T @ tcw
        rlw, tlw = _decompose(last_frame.tcw)
        tlc = rlw @ twc + tlw

        forward = bool(tlc[2] > current_frame.b) and not mono
        backward = bool(-tlc[2] > current_frame.b) and not mono

        for i, point in enumerate(last_frame.map_points):
            if point is None or last_frame.outliers[i]:
                continue

            x3dc = rcw @ _position(point) + tcw
            if x3dc[2] == 0.0:
                continue
            invzc = 1.0 / x3dc[2]
            if invzc < 0:
                continue

            u = current_frame.fx * x3dc[0] * invzc + current_frame.cx
            v = current_frame.fy * x3dc[1] * invzc + current_frame.cy
            if u < current_frame.min_x or u > current_frame.max_x:
                continue
            if v < current_frame.min_y or v > current_frame.max_y:
                continue

            last_octave = last_frame.keys[i].octave
            radius = th * current_frame.scale_factors[last_octave]

            if forward:
                indices = current_frame.features_in_area(u, v, radius, last_octave)
            elif backward:
                indices = current_frame.features_in_area(u, v, radius, 0, last_octave)
            else:
                indices = current_frame.features_in_area(
                    u, v, radius, last_octave - 1, last_octave + 1
                )
            if not indices:
                continue

            descriptor = point.descriptor
            best_dist = 256
            best_idx = -1

            for i2 in indices:
                existing = current_frame.map_points[i2]
                if existing is not None and existing.num_observations > 0:
                    continue
                if current_frame.u_right[i2] > 0:
                    ur = u - current_frame.bf * invzc
                    if abs(ur - current_frame.u_right[i2]) > radius:
                        continue

                dist = descriptor_distance(descriptor, current_frame.descriptors[i2])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = i2

            if best_dist <= TH_HIGH:
                current_frame.map_points[best_idx] = point
                nmatches += 1
                if histogram is not None:
                    histogram.add(
                        last_frame.keys_un[i].angle,
                        current_frame.keys_un[best_idx].angle,
                        best_idx,
                    )

        if histogram is not None:
            for idx in histogram.rejected():
                current_frame.map_points[idx] = None
                nmatches -= 1

        return nmatches

    def search_by_projection_keyframe(
        self, current_frame: FrameLike, keyframe: FrameLike, already_found, th, orb_dist
    ) -> int:
        """Project the map points of ``keyframe`` not in ``already_found`` into ``current_frame``.

        Matches are written into ``current_frame.map_points``; the count is returned.
        """
        nmatches = 0
        histogram = self._histogram()

        rcw, tcw = _decompose(current_frame.tcw)
        ow = -rcw.T @ tcw

        for i, point in enumerate(list(keyframe.map_points)):
            if point is None or point.is_bad() or point in already_found:
                continue

            x3dw = _position(point)
            x3dc = rcw @ x3dw + tcw
            if x3dc[2] == 0.0:
                continue
            invzc = 1.0 / x3dc[2]

            u = current_frame.fx * x3dc[0] * invzc + current_frame.cx
            v = current_frame.fy * x3dc[1] * invzc + current_frame.cy
            if u < current_frame.min_x or u > current_frame.max_x:
                continue
            if v < current_frame.min_y or v > current_frame.max_y:
                continue

            dist3d = float(np.linalg.norm(x3dw - ow))
            if (
                dist3d < point.min_distance_invariance
                or dist3d > point.max_distance_invariance
            ):
                continue

            level = point.predict_scale(dist3d, current_frame)
            radius = th * current_frame.scale_factors[level]
            indices = current_frame.features_in_area(u, v, radius, level - 1, level + 1)
            if not indices:
                continue

            descriptor = point.descriptor
            best_dist = 256
            best_idx = -1
            for i2 in indices:
                if current_frame.map_points[i2] is not None:
                    continue
                dist = descriptor_distance(descriptor, current_frame.descriptors[i2])
                if dist < best_dist:
                    best_dist = dist
                    best_idx = i2

            if best_dist <= orb_dist:
                current_frame.map_points[best_idx] = point
                nmatches += 1
                if histogram is not None:
                    histogram.add(
                        keyframe.keys_un[i].angle,
                        current_frame.keys_un[best_idx].angle,
                        best_idx,
                    )

        if histogram is not None:
            for idx in histogram.rejected():
                current_frame.map_points[idx] = None
                nmatches -= 1

        return nmatches

    def search_by_bow_frame(self, keyframe: FrameLike, frame: FrameLike) -> list:
        """Match the keyframe's map points to features of ``frame`` sharing a vocabulary node.

        Returns one entry per feature of ``frame``: the matched map point or ``None``.
        """
        kf_points = list(keyframe.map_points)
        matches: list = [None] * len(frame.keys_un)
        histogram = self._histogram()

        for node in sorted(keyframe.feat_vec.keys() & frame.feat_vec.keys()):
            frame_indices = frame.feat_vec[node]
            for idx_kf in keyframe.feat_vec[node]:
                point = kf_points[idx_kf]
                if point is None or point.is_bad():
                    continue

                d_kf = keyframe.descriptors[idx_kf]
                best_dist1 = best_dist2 = 256
                best_idx = -1

                for idx_f in frame_indices:
                    if matches[idx_f] is not None:
                        continue
                    dist = descriptor_distance(d_kf, frame.descriptors[idx_f])
                    if dist < best_dist1:
                        best_dist2, best_dist1 = best_dist1, dist
                        best_idx = idx_f
                    elif dist < best_dist2:
                        best_dist2 = dist

                if best_dist1 <= TH_LOW and best_dist1 < self.nn_ratio * best_dist2:
                    matches[best_idx] = point
                    if histogram is not None:
                        histogram.add(
                            keyframe.keys_un[idx_kf].angle,
                            frame.keys[best_idx].angle,
                            best_idx,
                        )

        if histogram is not None:
            for idx in histogram.rejected():
                matches[idx] = None

        return matches

    def search_for_initialization(
        self, frame1: FrameLike, frame2: FrameLike, prev_matched, window_size
    ) -> tuple[list[int], list[tuple[float, float]]]:
        """Match finest-level features of ``frame1`` to ``frame2`` around their previous matches.

        Returns the index in ``frame2`` matched by each feature of ``frame1`` (``-1`` when
        unmatched) and the updated previous-match positions.
        """
        n1 = len(frame1.keys_un)
        n2 = len(frame2.keys_un)
        if len(prev_matched) != n1:
            raise ValueError("prev_matched must hold one position per feature of frame1")

        matches12 = [-1] * n1
        matches21 = [-1] * n2
        matched_distance = [math.inf] * n2
        histogram = self._histogram()

        for i1, kp1 in enumerate(frame1.keys_un):
            level = kp1.octave
            if level > 0:
                continue

            px, py = prev_matched[i1]
            indices = frame2.features_in_area(px, py, window_size, level, level)
            if not indices:
                continue

            d1 = frame1.descriptors[i1]
            best_dist = best_dist2 = math.inf
            best_idx = -1

            for i2 in indices:
                dist = descriptor_distance(d1, frame2.descriptors[i2])
                if matched_distance[i2] <= dist:
                    continue
                if dist < best_dist:
                    best_dist2, best_dist = best_dist, dist
                    best_idx = i2
                elif dist < best_dist2:
                    best_dist2 = dist

            if best_dist <= TH_LOW and best_dist < best_dist2 * self.nn_ratio:
                previous = matches21[best_idx]
                if previous >= 0:
                    matches12[previous] = -1
                matches12[i1] = best_idx
                matches21[best_idx] = i1
                matched_distance[best_idx] = best_dist

                if histogram is not None:
                    histogram.add(kp1.angle, frame2.keys_un[best_idx].angle, i1)

        if histogram is not None:
            for idx1 in histogram.rejected():
                matches12[idx1] = -1

        updated = [
            frame2.keys_un[m].pt if m >= 0 else tuple(p)
            for p, m in zip(prev_matched, matches12)
        ]
        return matches12, updated