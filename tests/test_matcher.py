from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import pytest

from orbfeatures.keypoint import KeyPoint
from orbfeatures.matcher import ORBMatcher


def random_descriptors(n, seed=0):
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(n, 32), dtype=np.uint8)


def flipped(desc, nbits):
    bits = np.unpackbits(np.asarray(desc, dtype=np.uint8))
    bits[:nbits] ^= 1
    return np.packbits(bits)


@dataclass(eq=False)
class FakeMapPoint:
    descriptor: np.ndarray
    world_pos: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 5.0]))
    bad: bool = False
    num_observations: int = 0
    track_in_view: bool = True
    track_proj_x: float = 0.0
    track_proj_y: float = 0.0
    track_proj_xr: float = 0.0
    track_scale_level: int = 0
    track_view_cos: float = 1.0
    min_distance_invariance: float = 0.0
    max_distance_invariance: float = 100.0

    def is_bad(self):
        return self.bad

    def predict_scale(self, dist, frame):
        return 0


@dataclass(eq=False)
class FakeFrame:
    keys_un: list
    descriptors: np.ndarray
    keys: Optional[list] = None
    map_points: Optional[list] = None
    outliers: Optional[list] = None
    u_right: Optional[list] = None
    scale_factors: list = field(default_factory=lambda: [1.2 ** i for i in range(8)])
    feat_vec: dict = field(default_factory=dict)
    tcw: np.ndarray = field(default_factory=lambda: np.eye(4))
    fx: float = 100.0
    fy: float = 100.0
    cx: float = 50.0
    cy: float = 50.0
    bf: float = 0.0
    b: float = 0.0
    min_x: float = 0.0
    max_x: float = 100.0
    min_y: float = 0.0
    max_y: float = 100.0

    def __post_init__(self):
        n = len(self.keys_un)
        if self.keys is None:
            self.keys = list(self.keys_un)
        if self.map_points is None:
            self.map_points = [None] * n
        if self.outliers is None:
            self.outliers = [False] * n
        if self.u_right is None:
            self.u_right = [-1.0] * n

    def features_in_area(self, x, y, r, min_level=-1, max_level=-1):
        found = []
        for i, kp in enumerate(self.keys_un):
            if min_level >= 0 and kp.octave < min_level:
                continue
            if max_level >= 0 and kp.octave > max_level:
                continue
            if abs(kp.x - x) < r and abs(kp.y - y) < r:
                found.append(i)
        return found


def matched_count(frame):
    return sum(p is not None for p in frame.map_points)


# --- search_by_projection_local -------------------------------------------


def test_local_projection_matches_identical_descriptor():
    descs = random_descriptors(2)
    frame = FakeFrame([KeyPoint(20.0, 20.0), KeyPoint(80.0, 80.0)], descs)
    point = FakeMapPoint(descs[0].copy(), track_proj_x=20.5, track_proj_y=19.5)
    count = ORBMatcher(0.8, True).search_by_projection_local(frame, [point], 1.0)
    assert frame.map_points[0] is point
    assert frame.map_points[1] is None
    assert count == matched_count(frame)


def test_local_projection_ignores_points_out_of_view():
    descs = random_descriptors(1)
    frame = FakeFrame([KeyPoint(20.0, 20.0)], descs)
    point = FakeMapPoint(descs[0].copy(), track_in_view=False, track_proj_x=20.0, track_proj_y=20.0)
    bad = FakeMapPoint(descs[0].copy(), bad=True, track_proj_x=20.0, track_proj_y=20.0)
    count = ORBMatcher(0.8, True).search_by_projection_local(frame, [point, bad], 1.0)
    assert count == 0
    assert frame.map_points == [None]


def test_local_projection_ratio_test_on_same_level():
    base = random_descriptors(1, seed=3)[0]
    descs = np.stack([flipped(base, 10), flipped(base, 11)])
    keys = [KeyPoint(20.0, 20.0), KeyPoint(21.0, 20.0)]
    frame = FakeFrame(keys, descs)
    point = FakeMapPoint(base.copy(), track_proj_x=20.0, track_proj_y=20.0)
    assert ORBMatcher(0.6, False).search_by_projection_local(frame, [point], 1.0) == 0
    assert matched_count(frame) == 0


def test_local_projection_ratio_test_skipped_across_levels():
    base = random_descriptors(1, seed=3)[0]
    descs = np.stack([flipped(base, 10), flipped(base, 11)])
    keys = [KeyPoint(20.0, 20.0, octave=1), KeyPoint(21.0, 20.0, octave=0)]
    frame = FakeFrame(keys, descs)
    point = FakeMapPoint(base.copy(), track_proj_x=20.0, track_proj_y=20.0, track_scale_level=1)
    count = ORBMatcher(0.6, False).search_by_projection_local(frame, [point], 1.0)
    assert frame.map_points[0] is point
    assert count == matched_count(frame)


def test_local_projection_skips_features_with_observed_points():
    descs = random_descriptors(1)
    frame = FakeFrame([KeyPoint(20.0, 20.0)], descs)
    occupant = FakeMapPoint(descs[0].copy(), num_observations=2)
    frame.map_points[0] = occupant
    point = FakeMapPoint(descs[0].copy(), track_proj_x=20.0, track_proj_y=20.0)
    assert ORBMatcher(0.8, True).search_by_projection_local(frame, [point], 1.0) == 0
    assert frame.map_points[0] is occupant


# --- search_by_bow_frame ----------------------------------------------------


def test_bow_frame_matches_within_shared_node():
    descs = random_descriptors(3, seed=1)
    points = [FakeMapPoint(d.copy()) for d in descs]
    keys = [KeyPoint(10.0 * i, 10.0, angle=30.0) for i in range(3)]
    keyframe = FakeFrame(keys, descs.copy(), map_points=list(points), feat_vec={7: [0, 1, 2]})
    frame = FakeFrame(list(keys), descs.copy(), feat_vec={7: [2, 1, 0]})
    matches = ORBMatcher(0.75, True).search_by_bow_frame(keyframe, frame)
    assert all(m is p for m, p in zip(matches, points))


def test_bow_frame_requires_common_node():
    descs = random_descriptors(2, seed=1)
    keys = [KeyPoint(10.0, 10.0), KeyPoint(20.0, 20.0)]
    keyframe = FakeFrame(keys, descs, map_points=[FakeMapPoint(d) for d in descs], feat_vec={1: [0, 1]})
    frame = FakeFrame(list(keys), descs.copy(), feat_vec={2: [0, 1]})
    assert ORBMatcher(0.75, True).search_by_bow_frame(keyframe, frame) == [None, None]


def test_bow_frame_rejects_inconsistent_rotation():
    n = 12
    descs = random_descriptors(n, seed=2)
    points = [FakeMapPoint(d.copy()) for d in descs]
    kf_keys = [KeyPoint(5.0 * i, 5.0, angle=40.0) for i in range(n)]
    f_keys = [KeyPoint(5.0 * i, 5.0, angle=40.0) for i in range(n - 1)]
    f_keys.append(KeyPoint(5.0 * (n - 1), 5.0, angle=220.0))
    keyframe = FakeFrame(kf_keys, descs.copy(), map_points=list(points), feat_vec={0: list(range(n))})
    frame = FakeFrame(f_keys, descs.copy(), feat_vec={0: list(range(n))})

    with_check = ORBMatcher(0.75, True).search_by_bow_frame(keyframe, frame)
    assert with_check[-1] is None
    assert all(m is p for m, p in zip(with_check[:-1], points[:-1]))

    without_check = ORBMatcher(0.75, False).search_by_bow_frame(keyframe, frame)
    assert without_check[-1] is points[-1]


# --- search_for_initialization ---------------------------------------------


def test_initialization_matches_shifted_features():
    descs = random_descriptors(3, seed=4)
    keys1 = [KeyPoint(20.0, 20.0), KeyPoint(50.0, 50.0), KeyPoint(80.0, 20.0)]
    keys2 = [kp.shifted(2.0, -1.0) for kp in keys1]
    frame1 = FakeFrame(keys1, descs.copy())
    frame2 = FakeFrame(keys2, descs.copy())
    prev = [kp.pt for kp in keys1]
    matches, updated = ORBMatcher(0.9, True).search_for_initialization(frame1, frame2, prev, 10)
    assert matches == [0, 1, 2]
    assert updated == [kp.pt for kp in keys2]


def test_initialization_skips_coarse_levels():
    descs = random_descriptors(2, seed=4)
    keys1 = [KeyPoint(20.0, 20.0), KeyPoint(60.0, 60.0, octave=1)]
    frame1 = FakeFrame(keys1, descs.copy())
    frame2 = FakeFrame(list(keys1), descs.copy())
    prev = [kp.pt for kp in keys1]
    matches, updated = ORBMatcher(0.9, False).search_for_initialization(frame1, frame2, prev, 10)
    assert matches[1] == -1
    assert updated[1] == prev[1]
    assert matches[0] == 0


def test_initialization_better_match_takes_over():
    base = random_descriptors(1, seed=5)[0]
    frame1 = FakeFrame(
        [KeyPoint(30.0, 30.0), KeyPoint(31.0, 30.0)],
        np.stack([flipped(base, 5), base.copy()]),
    )
    frame2 = FakeFrame([KeyPoint(30.0, 31.0)], base.reshape(1, 32).copy())
    prev = [kp.pt for kp in frame1.keys_un]
    matches, _ = ORBMatcher(0.9, False).search_for_initialization(frame1, frame2, prev, 10)
    assert matches == [-1, 0]


def test_initialization_needs_one_position_per_feature():
    descs = random_descriptors(2)
    frame = FakeFrame([KeyPoint(1.0, 1.0), KeyPoint(2.0, 2.0)], descs)
    with pytest.raises(ValueError):
        ORBMatcher(0.9, True).search_for_initialization(frame, frame, [(1.0, 1.0)], 10)


# --- search_by_projection_last_frame ---------------------------------------


def make_last_and_current(world_pos, current_key=KeyPoint(50.0, 50.0)):
    descs = random_descriptors(1, seed=6)
    point = FakeMapPoint(descs[0].copy(), world_pos=np.asarray(world_pos, dtype=float))
    last = FakeFrame([KeyPoint(50.0, 50.0)], descs.copy(), map_points=[point])
    current = FakeFrame([current_key], descs.copy())
    return point, last, current


def test_last_frame_projection_matches():
    point, last, current = make_last_and_current([0.0, 0.0, 5.0])
    count = ORBMatcher(0.9, True).search_by_projection_last_frame(current, last, 7.0, True)
    assert current.map_points[0] is point
    assert count == matched_count(current)


def test_last_frame_projection_ignores_outliers():
    point, last, current = make_last_and_current([0.0, 0.0, 5.0])
    last.outliers[0] = True
    assert ORBMatcher(0.9, True).search_by_projection_last_frame(current, last, 7.0, True) == 0
    assert current.map_points == [None]


def test_last_frame_projection_ignores_points_behind_camera():
    point, last, current = make_last_and_current([0.0, 0.0, -5.0])
    assert ORBMatcher(0.9, True).search_by_projection_last_frame(current, last, 7.0, True) == 0
    assert current.map_points == [None]


def test_last_frame_projection_respects_radius():
    point, last, current = make_last_and_current([0.0, 0.0, 5.0], KeyPoint(80.0, 80.0))
    assert ORBMatcher(0.9, True).search_by_projection_last_frame(current, last, 7.0, True) == 0
    assert current.map_points == [None]


# --- search_by_projection_keyframe -----------------------------------------


def make_keyframe_case(descriptor_bits=0):
    base = random_descriptors(1, seed=7)[0]
    point = FakeMapPoint(base.copy(), world_pos=np.array([0.0, 0.0, 5.0]))
    keyframe = FakeFrame([KeyPoint(50.0, 50.0)], base.reshape(1, 32).copy(), map_points=[point])
    current = FakeFrame(
        [KeyPoint(51.0, 50.0)], flipped(base, descriptor_bits).reshape(1, 32)
    )
    return point, keyframe, current


def test_keyframe_projection_matches():
    point, keyframe, current = make_keyframe_case()
    count = ORBMatcher(0.9, True).search_by_projection_keyframe(current, keyframe, set(), 5.0, 64)
    assert current.map_points[0] is point
    assert count == matched_count(current)


def test_keyframe_projection_skips_already_found():
    point, keyframe, current = make_keyframe_case()
    count = ORBMatcher(0.9, True).search_by_projection_keyframe(current, keyframe, {point}, 5.0, 64)
    assert count == 0
    assert current.map_points == [None]


def test_keyframe_projection_applies_descriptor_threshold():
    point, keyframe, current = make_keyframe_case(descriptor_bits=10)
    matcher = ORBMatcher(0.9, True)
    assert matcher.search_by_projection_keyframe(current, keyframe, set(), 5.0, 5) == 0
    assert current.map_points == [None]
    matcher.search_by_projection_keyframe(current, keyframe, set(), 5.0, 64)
    assert current.map_points[0] is point


def test_keyframe_projection_checks_distance_range():
    point, keyframe, current = make_keyframe_case()
    point.max_distance_invariance = 1.0
    assert ORBMatcher(0.9, True).search_by_projection_keyframe(current, keyframe, set(), 5.0, 64) == 0
    assert current.map_points == [None]