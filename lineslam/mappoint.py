"""Map points: 3D landmarks observed from keyframes.

Keyframes and frames are used through these attributes and methods:
``id``, ``frame_id`` (keyframes only), ``u_right`` (right image coordinate,
negative for monocular features), ``descriptors`` (one row per feature),
``keys_un`` (undistorted keypoints with an ``octave``), ``scale_factors``,
``scale_levels``, ``log_scale_factor``, ``camera_center()``, ``is_bad()``,
``erase_map_point_match(index)`` and ``replace_map_point_match(index, point)``.
"""

from __future__ import annotations

import math
import threading
from typing import Any

import numpy as np


def descriptor_distance(a: Any, b: Any) -> int:
    """Hamming distance between two binary descriptors."""
    xa = np.asarray(a, dtype=np.uint8).ravel()
    xb = np.asarray(b, dtype=np.uint8).ravel()
    if xa.shape != xb.shape:
        raise ValueError("descriptors differ in length")
    return int(np.unpackbits(np.bitwise_xor(xa, xb)).sum())


def _vector3(value: Any) -> np.ndarray:
    return np.array(value, dtype=float).reshape(3)


class MapPoint:
    """A triangulated landmark with its observations and descriptor."""

    next_id = 0
    global_lock = threading.RLock()

    def __init__(self, position: Any, reference_keyframe: Any, map: Any) -> None:
        self._initialise(position, map, reference_keyframe,
                         reference_keyframe.id, reference_keyframe.frame_id)
        self._normal = np.zeros(3)

    @classmethod
    def from_frame(cls, position: Any, map: Any, frame: Any, index: int) -> "MapPoint":
        """Create a point seen by feature ``index`` of an ordinary frame."""
        point = cls.__new__(cls)
        point._initialise(position, map, None, -1, frame.id)
        center = _vector3(frame.camera_center())
        offset = point._world_pos - center
        dist = float(np.linalg.norm(offset))
        point._normal = offset / dist
        level = frame.keys_un[index].octave
        point._max_distance = dist * frame.scale_factors[level]
        point._min_distance = point._max_distance / frame.scale_factors[frame.scale_levels - 1]
        point._descriptor = np.array(frame.descriptors[index], dtype=np.uint8)
        return point

    def _initialise(self, position: Any, map: Any, reference_keyframe: Any,
                    first_kf_id: int, first_frame: int) -> None:
        self._features_lock = threading.RLock()
        self._pos_lock = threading.RLock()
        self._world_pos = _vector3(position)
        self._normal = np.zeros(3)
        self._descriptor: np.ndarray | None = None
        self._observations: dict[Any, int] = {}
        self._reference_keyframe = reference_keyframe
        self._visible = 1
        self._found = 1
        self._bad = False
        self._replaced: MapPoint | None = None
        self._min_distance = 0.0
        self._max_distance = 0.0
        self._map = map
        self._num_obs = 0

        self.first_kf_id = first_kf_id
        self.first_frame = first_frame

        # Tracking
        self.track_proj_x = 0.0
        self.track_proj_y = 0.0
        self.track_proj_xr = 0.0
        self.track_in_view = False
        self.track_scale_level = 0
        self.track_view_cos = 0.0
        self.track_reference_for_frame = 0
        self.last_frame_seen = 0
        # Local mapping
        self.ba_local_for_kf = 0
        self.fuse_candidate_for_kf = 0
        # Loop closing
        self.loop_point_for_kf = 0
        self.corrected_by_kf = 0
        self.corrected_reference = 0
        self.pos_gba: np.ndarray | None = None
        self.ba_global_for_kf = 0

        with map.point_creation_lock:
            self.id = MapPoint.next_id
            MapPoint.next_id += 1

    @property
    def world_pos(self) -> np.ndarray:
        with self._pos_lock:
            return self._world_pos.copy()

    @world_pos.setter
    def world_pos(self, position: Any) -> None:
        with MapPoint.global_lock, self._pos_lock:
            self._world_pos = _vector3(position)

    @property
    def normal(self) -> np.ndarray:
        with self._pos_lock:
            return self._normal.copy()

    @property
    def reference_keyframe(self) -> Any:
        with self._features_lock:
            return self._reference_keyframe

    @property
    def num_observations(self) -> int:
        """Observation count; a stereo observation counts twice."""
        with self._features_lock:
            return self._num_obs

    @property
    def is_bad(self) -> bool:
        with self._features_lock, self._pos_lock:
            return self._bad

    @property
    def replaced(self) -> "MapPoint | None":
        with self._features_lock, self._pos_lock:
            return self._replaced

    @property
    def found(self) -> int:
        return self._found

    @property
    def descriptor(self) -> np.ndarray | None:
        with self._features_lock:
            return None if self._descriptor is None else self._descriptor.copy()

    def add_observation(self, keyframe: Any, index: int) -> None:
        with self._features_lock:
            if keyframe in self._observations:
                return
            self._observations[keyframe] = index
            self._num_obs += 2 if keyframe.u_right[index] >= 0 else 1

    def erase_observation(self, keyframe: Any) -> None:
        """Drop an observation; the point turns bad at two observations or fewer."""
        bad = False
        with self._features_lock:
            if keyframe in self._observations:
                index = self._observations.pop(keyframe)
                self._num_obs -= 2 if keyframe.u_right[index] >= 0 else 1
                if self._reference_keyframe is keyframe:
                    self._reference_keyframe = next(iter(self._observations), None)
                bad = self._num_obs <= 2
        if bad:
            self.set_bad_flag()

    def observations(self) -> dict[Any, int]:
        with self._features_lock:
            return dict(self._observations)

    def index_in_keyframe(self, keyframe: Any) -> int | None:
        with self._features_lock:
            return self._observations.get(keyframe)

    def is_in_keyframe(self, keyframe: Any) -> bool:
        with self._features_lock:
            return keyframe in self._observations

    def set_bad_flag(self) -> None:
        with self._features_lock, self._pos_lock:
            self._bad = True
            observed = self._observations
            self._observations = {}
        for keyframe, index in observed.items():
            keyframe.erase_map_point_match(index)
        self._map.erase_map_point(self)

    def replace(self, point: "MapPoint") -> None:
        """Hand every observation over to ``point`` and retire this one."""
        if point.id == self.id:
            return
        with self._features_lock, self._pos_lock:
            observed = self._observations
            self._observations = {}
            self._bad = True
            visible = self._visible
            found = self._found
            self._replaced = point
        for keyframe, index in observed.items():
            if not point.is_in_keyframe(keyframe):
                keyframe.replace_map_point_match(index, point)
                point.add_observation(keyframe, index)
            else:
                keyframe.erase_map_point_match(index)
        point.increase_found(found)
        point.increase_visible(visible)
        point.compute_distinctive_descriptors()
        self._map.erase_map_point(self)

    def increase_visible(self, n: int = 1) -> None:
        with self._features_lock:
            self._visible += n

    def increase_found(self, n: int = 1) -> None:
        with self._features_lock:
            self._found += n

    def found_ratio(self) -> float:
        with self._features_lock:
            return self._found / self._visible

    def compute_distinctive_descriptors(self) -> None:
        """Keep the observed descriptor with the least median distance to the rest."""
        with self._features_lock:
            if self._bad:
                return
            observed = dict(self._observations)
        if not observed:
            return
        descriptors = [np.asarray(kf.descriptors[index], dtype=np.uint8)
                       for kf, index in observed.items() if not kf.is_bad()]
        if not descriptors:
            return
        count = len(descriptors)
        distances = np.zeros((count, count), dtype=int)
        for i, first in enumerate(descriptors):
            for j in range(i + 1, count):
                d = descriptor_distance(first, descriptors[j])
                distances[i, j] = distances[j, i] = d
        median_pos = int(0.5 * (count - 1))
        best_median = None
        best_index = 0
        for i, row in enumerate(distances):
            median = int(np.sort(row)[median_pos])
            if best_median is None or median < best_median:
                best_median = median
                best_index = i
        with self._features_lock:
            self._descriptor = descriptors[best_index].copy()

    def update_normal_and_depth(self) -> None:
        """Recompute the mean viewing direction and the scale-invariance range."""
        with self._features_lock, self._pos_lock:
            if self._bad:
                return
            observed = dict(self._observations)
            reference = self._reference_keyframe
            position = self._world_pos.copy()
        if not observed:
            return
        if reference is None:
            raise RuntimeError("map point has no reference keyframe")
        normal = np.zeros(3)
        for keyframe in observed:
            ray = position - _vector3(keyframe.camera_center())
            normal += ray / np.linalg.norm(ray)
        dist = float(np.linalg.norm(position - _vector3(reference.camera_center())))
        level = reference.keys_un[observed.get(reference, 0)].octave
        level_scale = reference.scale_factors[level]
        top_scale = reference.scale_factors[reference.scale_levels - 1]
        with self._pos_lock:
            self._max_distance = dist * level_scale
            self._min_distance = self._max_distance / top_scale
            self._normal = normal / len(observed)

    def min_distance_invariance(self) -> float:
        with self._pos_lock:
            return 0.8 * self._min_distance

    def max_distance_invariance(self) -> float:
        with self._pos_lock:
            return 1.2 * self._max_distance

    def predict_scale(self, current_dist: float, frame: Any) -> int:
        """Pyramid level at which the point is expected at ``current_dist``."""
        with self._pos_lock:
            ratio = self._max_distance / current_dist
        if ratio <= 0:
            return 0
        scale = math.ceil(math.log(ratio) / frame.log_scale_factor)
        if scale < 0:
            return 0
        if scale >= frame.scale_levels:
            return frame.scale_levels - 1
        return scale