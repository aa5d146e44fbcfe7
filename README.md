# lineslam

Building blocks for the mapping side of a visual SLAM system that keeps both
point and line landmarks, written with NumPy.

## Modules

- `lineslam.slammap.Map` — the shared map. It holds the keyframes, map points
  and map lines (in insertion order), the reference points and lines, the
  largest keyframe id seen (`max_keyframe_id`), and a counter of big changes
  (`inform_new_big_change`, `big_change_index`). `clear()` forgets every
  element but keeps the counter. It also offers `map_update_lock` and
  `point_creation_lock` for callers that change the map from several threads.
- `lineslam.mappoint` — `MapPoint`, a 3D landmark with its observations
  (a stereo observation counts twice), found/visible counters, mean viewing
  direction, scale-invariance distances (`min_distance_invariance`,
  `max_distance_invariance`, `predict_scale`) and the most distinctive
  descriptor (`compute_distinctive_descriptors`). A point turns bad when an
  erased observation leaves it with two observations or fewer; `replace`
  hands all its observations to another point. `MapPoint.from_frame` builds a
  point from a feature of an ordinary frame. `descriptor_distance` gives the
  Hamming distance between two binary descriptors of equal length.
- `lineslam.orbdescriptor` — the `KeyPoint` dataclass, the circular patch
  bounds (`compute_umax`), intensity-centroid orientation in degrees
  (`ic_angle`, `compute_orientation`) and steered BRIEF descriptors with the
  learned 256-pair pattern `BIT_PATTERN_31` (`compute_orb_descriptor`,
  `compute_descriptors`).
- `lineslam.imageops` — FAST-9 corner detection with optional non-maximum
  suppression (`fast_detect`), separable Gaussian blur (`gaussian_blur`),
  bilinear resize (`resize_linear`) and reflect-101 borders
  (`reflect_border`). 8-bit images stay 8-bit.
- `lineslam.octree` — `ExtractorNode` and `distribute_oct_tree`, which
  subdivide a region until about the requested number of cells exist and keep
  the keypoint with the strongest response in each.
- `lineslam.extractor` — `ORBExtractor(nfeatures, scale_factor, nlevels,
  ini_th_fast, min_th_fast)`. Calling it on a single-channel `uint8` image
  returns the keypoints in level-0 coordinates and an `(n, 32)` `uint8`
  descriptor array. `compute_pyramid`, `compute_keypoints_oct_tree` and the
  grid-based `compute_keypoints_old` can also be used on their own.
- `lineslam.triangulation` — two-view geometry: `skew_symmetric`,
  `compute_f12` (fundamental matrix between two keyframes),
  `triangulate_linear` (DLT), `parallax_cosine`, `stereo_parallax_cosine`,
  `reprojection_ok` (chi-square checks for monocular and stereo
  observations) and `scale_consistent`.
- `lineslam.localmapping.LocalMapping` — the local mapping worker. `run()`
  loops over queued keyframes: it links their point and line observations to
  the map, culls weak recent points and bad recent lines, triangulates new
  points against covisible keyframes, fuses duplicates with neighbours, calls
  the local bundle adjustment you supply, culls redundant keyframes and passes
  each keyframe to the loop closer if one is set. It provides the stop,
  release, reset and finish handshakes used by other threads.
- `lineslam.plucker.Plucker` — a 3D line as normal and direction vectors,
  with `nd_transform`, `transform` (in place) and `transformed` (a new line).
- `lineslam.mapdrawer` — `MapDrawer` returns the geometry a viewer needs
  instead of drawing: point and line vertices split into ordinary and
  reference ones, keyframe frustums in the world frame, covisibility,
  spanning-tree and loop edges, and the OpenGL camera matrix in column-major
  order. `camera_frustum_lines` gives the frustum of one camera and
  `load_settings` reads a YAML settings file (a leading `%YAML:1.0` line is
  accepted) with keys such as `Viewer.KeyFrameSize`, `Viewer.PointSize` and
  `Viewer.LineSize`.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Examples

```python
import numpy as np
from lineslam.extractor import ORBExtractor

image = (np.random.default_rng(0).random((240, 320)) * 255).astype(np.uint8)
extractor = ORBExtractor(500, 1.2, 4, 20, 7)
keypoints, descriptors = extractor(image)
print(len(keypoints), descriptors.shape)
```

```python
from lineslam.slammap import Map

world = Map()
world.inform_new_big_change()
print(world.big_change_index())   # 1
```

```python
import numpy as np
from lineslam.plucker import Plucker

line = Plucker(normal=[0.0, 0.0, 1.0], direction=[1.0, 0.0, 0.0])
moved = line.transformed(np.eye(3), [0.0, 1.0, 0.0])
print(moved.normal, moved.direction)
```

## What the package does not do

- It has no keyframe, frame or map line classes, no feature matcher and no
  bundle adjustment. `LocalMapping`, `MapPoint` and `MapDrawer` work with
  objects you provide; their module docstrings list the attributes and
  methods they use.
- It does not detect, match or triangulate line features; local mapping
  only links and culls lines that already exist. Plücker lines cannot be
  built from two planes or from an orthonormal representation.
- There is no tracking, relocalisation or loop closing, no viewer window and
  no command-line program.