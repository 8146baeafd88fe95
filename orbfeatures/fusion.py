"""Fusing map points into keyframes and matching keyframes through a similarity."""

from __future__ import annotations

from collections.abc import MutableSequence, Sequence
from typing import Any, Optional, Protocol

import numpy as np

from orbfeatures.keypoint import KeyPoint
from orbfeatures.matching import TH_HIGH, TH_LOW, descriptor_distance

# Chi-square thresholds at 95% for two and three degrees of freedom.
_CHI2_MONO = 5.99
_CHI2_STEREO = 7.8


class FusionMapPoint(Protocol):
    """What the fuser reads from, and does to, a 3-D map point."""

    descriptor: Any
    world_pos: Any
    normal: Any
    num_observations: int
    min_distance_invariance: float
    max_distance_invariance: float

    def is_bad(self) -> bool: ...

    def is_in_keyframe(self, keyframe: Any) -> bool: ...

    def index_in_keyframe(self, keyframe: Any) -> int: ...

    def predict_scale(self, dist: float, frame: Any) -> int: ...

    def replace(self, other: Any) -> None: ...

    def add_observation(self, keyframe: Any, index: int) -> None: ...


class FusionKeyFrame(Protocol):
    """What the fuser reads from, and does to, a keyframe."""

    keys_un: Sequence[KeyPoint]
    descriptors: Any
    map_points: MutableSequence[Optional[FusionMapPoint]]
    u_right: Sequence[float]
    scale_factors: Sequence[float]
    inv_level_sigma2: Sequence[float]
    tcw: Any
    fx: float
    fy: float
    cx: float
    cy: float
    bf: float

    def is_in_image(self, u: float, v: float) -> bool: ...

    def features_in_area(self, x: float, y: float, r: float) -> list[int]: ...

    def add_map_point(self, point: Any, index: int) -> None: ...


def _split_pose(tcw) -> tuple[np.ndarray, np.ndarray]:
    pose = np.asarray(tcw, dtype=np.float64)
    if pose.ndim != 2 or pose.shape[0] < 3 or pose.shape[1] < 4:
        raise ValueError("a pose must be at least 3x4")
    return pose[:3, :3], pose[:3, 3]


def _split_similarity(scw) -> tuple[np.ndarray, np.ndarray]:
    sim = np.asarray(scw, dtype=np.float64)
    if sim.ndim != 2 or sim.shape[0] < 3 or sim.shape[1] < 4:
        raise ValueError("a similarity transform must be at least 3x4")
    s_rcw = sim[:3, :3]
    scale = float(np.linalg.norm(s_rcw[0]))
    if scale == 0.0:
        raise ValueError("the similarity transform has zero scale")
    return s_rcw / scale, sim[:3, 3] / scale


def _vector(value) -> np.ndarray:
    return np.asarray(value, dtype=np.float64).reshape(3)


def _project(keyframe: FusionKeyFrame, p3dc: np.ndarray) -> Optional[tuple[float, float, float]]:
    """Return ``(u, v, 1/z)`` when the point lies in front of the camera and in the image."""
    if p3dc[2] <= 0.0:
        return None
    invz = 1.0 / p3dc[2]
    u = keyframe.fx * p3dc[0] * invz + keyframe.cx
    v = keyframe.fy * p3dc[1] * invz + keyframe.cy
    if not keyframe.is_in_image(u, v):
        return None
    return float(u), float(v), float(invz)


def _best_in_area(keyframe, point, u, v, radius, level, accept=None) -> tuple[int, int]:
    """Return ``(distance, index)`` of the closest descriptor near ``(u, v)`` at a fitting level."""
    descriptor = point.descriptor
    best_dist = 256
    best_idx = -1
    for idx in keyframe.features_in_area(u, v, radius):
        kp = keyframe.keys_un[idx]
        if kp.octave < level - 1 or kp.octave > level:
            continue
        if accept is not None and not accept(idx, kp):
            continue
        dist = descriptor_distance(descriptor, keyframe.descriptors[idx])
        if dist < best_dist:
            best_dist = dist
            best_idx = idx
    return best_dist, best_idx


class MapPointFuser:
    """Merges duplicated map points and finds matches across a similarity transform."""

    def __init__(self, nn_ratio, check_orientation):
        self.nn_ratio = float(nn_ratio)
        self.check_orientation = bool(check_orientation)

    def fuse(self, keyframe: FusionKeyFrame, map_points, th) -> int:
        """Project ``map_points`` into ``keyframe`` and fuse them with its features.

        Where the matched feature already has a map point, the one with fewer
        observations is replaced by the other; otherwise the point is added to
        the keyframe. Returns the number of points fused.
        """
        rcw, tcw = _split_pose(keyframe.tcw)
        ow = -rcw.T @ tcw
        nfused = 0

        for point in map_points:
            if point is None or point.is_bad() or point.is_in_keyframe(keyframe):
                continue

            p3dw = _vector(point.world_pos)
            projected = _project(keyframe, rcw @ p3dw + tcw)
            if projected is None:
                continue
            u, v, invz = projected
            ur = u - keyframe.bf * invz

            po = p3dw - ow
            dist3d = float(np.linalg.norm(po))
            if dist3d < point.min_distance_invariance or dist3d > point.max_distance_invariance:
                continue
            # Viewing angle must be under 60 degrees.
            if float(po @ _vector(point.normal)) < 0.5 * dist3d:
                continue

            level = point.predict_scale(dist3d, keyframe)
            radius = th * keyframe.scale_factors[level]

            def reprojects(idx: int, kp: KeyPoint) -> bool:
                ex = u - kp.x
                ey = v - kp.y
                inv_sigma2 = keyframe.inv_level_sigma2[kp.octave]
                kpr = keyframe.u_right[idx]
                if kpr >= 0:
                    er = ur - kpr
                    return (ex * ex + ey * ey + er * er) * inv_sigma2 <= _CHI2_STEREO
                return (ex * ex + ey * ey) * inv_sigma2 <= _CHI2_MONO

            best_dist, best_idx = _best_in_area(keyframe, point, u, v, radius, level, reprojects)
            if best_dist > TH_LOW:
                continue

            existing = keyframe.map_points[best_idx]
            if existing is not None:
                if not existing.is_bad():
                    if existing.num_observations > point.num_observations:
                        point.replace(existing)
                    else:
                        existing.replace(point)
            else:
                point.add_observation(keyframe, best_idx)
                keyframe.add_map_point(point, best_idx)
            nfused += 1

        return nfused

    def fuse_sim3(
        self, keyframe: FusionKeyFrame, scw, points, th, replace_points
    ) -> tuple[int, list]:
        """Project ``points`` through the similarity ``scw`` and fuse them into ``keyframe``.

        ``replace_points`` holds one entry per point. Where a matched feature already
        has a good map point, that point is recorded at the candidate's position instead
        of being merged. Returns the number fused and the updated replacement list.
        """
        rcw, tcw = _split_similarity(scw)
        points = list(points)
        if len(replace_points) != len(points):
            raise ValueError("replace_points must hold one entry per point")
        ow = -rcw.T @ tcw

        replaced = list(replace_points)
        already_found = {id(p) for p in keyframe.map_points if p is not None}
        nfused = 0

        for i, point in enumerate(points):
            if point.is_bad() or id(point) in already_found:
                continue

            p3dw = _vector(point.world_pos)
            projected = _project(keyframe, rcw @ p3dw + tcw)
            if projected is None:
                continue
            u, v, _ = projected

            po = p3dw - ow
            dist3d = float(np.linalg.norm(po))
            if dist3d < point.min_distance_invariance or dist3d > point.max_distance_invariance:
                continue
            if float(po @ _vector(point.normal)) < 0.5 * dist3d:
                continue

            level = point.predict_scale(dist3d, keyframe)
            radius = th * keyframe.scale_factors[level]
            best_dist, best_idx = _best_in_area(keyframe, point, u, v, radius, level)
            if best_dist > TH_LOW:
                continue

            existing = keyframe.map_points[best_idx]
            if existing is not None:
                if not existing.is_bad():
                    replaced[i] = existing
            else:
                point.add_observation(keyframe, best_idx)
                keyframe.add_map_point(point, best_idx)
            nfused += 1

        return nfused, replaced

    def search_by_sim3(
        self,
        keyframe1: FusionKeyFrame,
        keyframe2: FusionKeyFrame,
        matches12,
        s12,
        r12,
        t12,
        th,
    ) -> tuple[int, list]:
        """Find new matches between two keyframes related by the similarity ``(s12, R12, t12)``.

        A match is kept only when projecting each way agrees. ``matches12`` holds, per
        feature of ``keyframe1``, the map point of ``keyframe2`` already matched or
        ``None``. Returns the number of new matches and the updated list.
        """
        points1 = list(keyframe1.map_points)
        points2 = list(keyframe2.map_points)
        n1, n2 = len(points1), len(points2)
        if len(matches12) != n1:
            raise ValueError("matches12 must hold one entry per feature of keyframe1")
        if s12 == 0:
            raise ValueError("the scale must not be zero")

        rot12 = np.asarray(r12, dtype=np.float64).reshape(3, 3)
        trans12 = _vector(t12)
        s_r12 = s12 * rot12
        s_r21 = (1.0 / s12) * rot12.T
        t21 = -s_r21 @ trans12

        r1w, t1w = _split_pose(keyframe1.tcw)
        r2w, t2w = _split_pose(keyframe2.tcw)

        already1 = [False] * n1
        already2 = [False] * n2
        for i, point in enumerate(matches12):
            if point is not None:
                already1[i] = True
                idx2 = point.index_in_keyframe(keyframe2)
                if 0 <= idx2 < n2:
                    already2[idx2] = True

        def search(points, already, r_w, t_w, s_r, t, target) -> list[int]:
            found = [-1] * len(points)
            for i, point in enumerate(points):
                if point is None or already[i] or point.is_bad():
                    continue
                p3dc = s_r @ (r_w @ _vector(point.world_pos) + t_w) + t
                projected = _project(target, p3dc)
                if projected is None:
                    continue
                u, v, _ = projected
                dist3d = float(np.linalg.norm(p3dc))
                if (
                    dist3d < point.min_distance_invariance
                    or dist3d > point.max_distance_invariance
                ):
                    continue
                level = point.predict_scale(dist3d, target)
                radius = th * target.scale_factors[level]
                best_dist, best_idx = _best_in_area(target, point, u, v, radius, level)
                if best_dist <= TH_HIGH:
                    found[i] = best_idx
            return found

        match1 = search(points1, already1, r1w, t1w, s_r21, t21, keyframe2)
        match2 = search(points2, already2, r2w, t2w, s_r12, trans12, keyframe1)

        result = list(matches12)
        nfound = 0
        for i1, idx2 in enumerate(match1):
            if idx2 >= 0 and match2[idx2] == i1:
                result[i1] = points2[idx2]
                nfound += 1
        return nfound, result