# orbfeatures

Building blocks for ORB-based visual SLAM on top of NumPy: FAST corner
detection and image helpers, an octree that spreads keypoints evenly over an
image, and matchers that pair binary descriptors between frames, keyframes and
map points.

## Modules

- `orbfeatures.keypoint` — the immutable `KeyPoint` dataclass (`x`, `y`,
  `size`, `angle`, `response`, `octave`, plus `pt`, `scaled()` and
  `shifted()`) and `cv_round()`.
- `orbfeatures.imaging` — grey-scale helpers: `copy_make_border` (mirrored
  border without repeating the edge pixel), `resize_linear` (bilinear),
  `gaussian_blur`, `fast` (FAST-9 corners with optional non-maximum
  suppression, scores stored as `response`) and `fast_atan2` (degrees in
  `[0, 360)`).
- `orbfeatures.octree` — `ExtractorNode` and `distribute_oct_tree`, which
  splits a region into quadrants until about `n` cells remain and keeps the
  strongest keypoint of each.
- `orbfeatures.matching` — `descriptor_distance` (Hamming distance of two
  32-byte descriptors), `RotationHistogram`, `compute_three_maxima`,
  `radius_by_viewing_cos`, `check_dist_epipolar_line` and the thresholds
  `TH_HIGH`, `TH_LOW`, `HISTO_LENGTH`.
- `orbfeatures.matcher` — `ORBMatcher` for tracking: matching projected map
  points into a frame, projecting the previous frame or a keyframe into the
  current frame, bag-of-words matching of a keyframe against a frame, and the
  windowed search used for initialization.
- `orbfeatures.keyframe_matcher` — `KeyFrameMatcher`: projection through a
  similarity transform, bag-of-words matching between two keyframes, and
  epipolar search for triangulation.
- `orbfeatures.fusion` — `MapPointFuser`: fusing map points into a keyframe
  (`fuse`, `fuse_sim3`) and two-way matching through a similarity
  (`search_by_sim3`).

## Installation

```
pip install .
```

## Detecting and spreading corners

```python
import numpy as np
from orbfeatures.imaging import fast
from orbfeatures.octree import distribute_oct_tree

image = np.random.default_rng(0).integers(0, 256, (120, 160), dtype=np.uint8)

corners = fast(image, 20, True)
spread = distribute_oct_tree(corners, 0, 160, 0, 120, 50)
```

`distribute_oct_tree` expects keypoint coordinates relative to
`(min_x, min_y)` and returns them unchanged, one per final cell.

## Comparing descriptors

```python
import numpy as np
from orbfeatures.matching import descriptor_distance, RotationHistogram

a = np.zeros(32, dtype=np.uint8)
b = np.full(32, 0xFF, dtype=np.uint8)
descriptor_distance(a, b)  # 256

histogram = RotationHistogram()
histogram.add(30.0, 10.0, index=0)
histogram.rejected()  # indices outside the three dominant rotation bins
```

## Using the matchers

The matchers work on any objects exposing the attributes and methods they
read; the expected shapes are written down as `Protocol` classes in each
module (`FrameLike`, `KeyFrameLike`, `FusionKeyFrame`, and the map-point
counterparts). Frames supply `keys_un`, `descriptors`, `map_points`,
`u_right`, `scale_factors`, `feat_vec` (vocabulary node to feature indices),
a `tcw` pose, intrinsics and `features_in_area()`.

What each search gives back:

- `ORBMatcher.search_by_projection_local`, `search_by_projection_last_frame`
  and `search_by_projection_keyframe` write matches into the frame's
  `map_points` and return the count.
- `ORBMatcher.search_by_bow_frame` returns, per frame feature, the matched map
  point or `None`.
- `ORBMatcher.search_for_initialization` returns the match index per feature
  of the first frame (`-1` when unmatched) and the updated previous positions.
- `KeyFrameMatcher.search_by_projection_sim3`, `MapPointFuser.fuse_sim3` and
  `MapPointFuser.search_by_sim3` return the count and an updated list.
- `KeyFrameMatcher.search_by_bow_keyframes` returns a list of matched map
  points; `search_for_triangulation` returns `(index1, index2)` pairs.
- `MapPointFuser.fuse` changes the keyframe and map points in place and
  returns the number fused.

## What it does not do

The package has no complete ORB extractor: it does not build a scale pyramid,
compute keypoint orientations or compute ORB descriptors from an image. It
supplies the corner detection, image helpers and octree distribution such an
extractor is built from, and matches descriptors that are given to it. It
also provides no frames, keyframes, map points, vocabulary or pose
optimisation of its own; those come from the calling code.

## Running the tests

```
pip install .[test]
pytest
```