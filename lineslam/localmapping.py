"""Local mapping: turns new keyframes into map structure.

For each keyframe handed over by tracking, the local mapper links its
observations to the map, culls weak recent points, triangulates new points
against covisible keyframes, fuses duplicates, runs local bundle adjustment
and drops redundant keyframes. It then passes the keyframe on to loop closing.

Keyframes are used through ``id``, ``compute_bow()``, ``map_point_matches()``,
``map_line_matches()``, ``update_connections()``,
``best_covisibility_keyframes(n)``, ``vector_covisible_keyframes()``,
``camera_center()``, ``rotation()``, ``translation()``, ``K``, ``fx``,
``fy``, ``cx``, ``cy``, ``invfx``, ``invfy``, ``mb``, ``mbf``, ``th_depth``,
``u_right``, ``depth``, ``keys_un``, ``level_sigma2``, ``scale_factors``,
``scale_factor``, ``compute_scene_median_depth(q)``, ``unproject_stereo(i)``,
``add_map_point(point, i)``, ``is_bad()``, ``set_bad_flag()`` and the
attribute ``fuse_target_for_kf``.

The matcher provides ``search_for_triangulation(kf1, kf2, f12, only_stereo)``
returning index pairs, and ``fuse(keyframe, points)``. The local bundle
adjustment is called as ``local_bundle_adjustment(keyframe, abort_requested,
map)`` where ``abort_requested`` is a callable without arguments.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Any, Callable

import numpy as np

from lineslam.mappoint import MapPoint
from lineslam.triangulation import (
    compute_f12,
    parallax_cosine,
    reprojection_ok,
    scale_consistent,
    stereo_parallax_cosine,
    triangulate_linear,
)

logger = logging.getLogger(__name__)

_IDLE_SLEEP = 0.003


def _vector3(value: Any) -> np.ndarray:
    return np.asarray(value, dtype=float).reshape(3)


class LocalMapping:
    """The local mapping stage, meant to run in its own thread via :meth:`run`."""

    def __init__(self, map: Any, monocular: bool, matcher: Any = None,
                 local_bundle_adjustment: Callable[[Any, Callable[[], bool], Any], Any] | None = None) -> None:
        self._map = map
        self._monocular = bool(monocular)
        self._matcher = matcher
        self._local_bundle_adjustment = local_bundle_adjustment
        self._loop_closer: Any = None
        self._tracker: Any = None

        self._new_keyframes: deque[Any] = deque()
        self._current: Any = None
        self._recent_points: list[Any] = []
        self._recent_lines: list[Any] = []

        self._reset_requested = False
        self._finish_requested = False
        self._finished = True
        self._abort_ba = False
        self._stopped = False
        self._stop_requested = False
        self._not_stop = False
        self._accept_keyframes = True

        self._new_kfs_lock = threading.RLock()
        self._reset_lock = threading.Lock()
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._accept_lock = threading.Lock()

    def set_loop_closer(self, loop_closer: Any) -> None:
        self._loop_closer = loop_closer

    def set_tracker(self, tracker: Any) -> None:
        self._tracker = tracker

    @property
    def current_keyframe(self) -> Any:
        return self._current

    @property
    def recent_map_points(self) -> list[Any]:
        return list(self._recent_points)

    @property
    def recent_map_lines(self) -> list[Any]:
        return list(self._recent_lines)

    @property
    def abort_ba_requested(self) -> bool:
        return self._abort_ba

    def _require_matcher(self) -> Any:
        if self._matcher is None:
            raise RuntimeError("local mapping has no feature matcher")
        return self._matcher

    def run(self) -> None:
        """Main loop: process queued keyframes until finishing is requested."""
        self._finished = False
        while True:
            self.set_accept_keyframes(False)

            if self.check_new_keyframes():
                self.process_new_keyframe()
                self.map_point_culling()
                self.map_line_culling()
                self.create_new_map_points()

                if not self.check_new_keyframes():
                    self.search_in_neighbors()

                self._abort_ba = False

                if not self.check_new_keyframes() and not self.stop_requested():
                    if self._local_bundle_adjustment is not None and self._map.num_keyframes() > 2:
                        self._local_bundle_adjustment(self._current, lambda: self._abort_ba, self._map)
                    self.keyframe_culling()

                if self._loop_closer is not None:
                    self._loop_closer.insert_keyframe(self._current)
            elif self.stop():
                while self.is_stopped() and not self.check_finish():
                    time.sleep(_IDLE_SLEEP)
                if self.check_finish():
                    break

            self.reset_if_requested()
            self.set_accept_keyframes(True)

            if self.check_finish():
                break
            time.sleep(_IDLE_SLEEP)

        self.set_finish()

    def insert_keyframe(self, keyframe: Any) -> None:
        with self._new_kfs_lock:
            self._new_keyframes.append(keyframe)
            self._abort_ba = True

    def check_new_keyframes(self) -> bool:
        with self._new_kfs_lock:
            return bool(self._new_keyframes)

    def process_new_keyframe(self) -> None:
        """Take the oldest queued keyframe, link its observations and add it to the map."""
        with self._new_kfs_lock:
            if not self._new_keyframes:
                raise RuntimeError("no keyframe is waiting to be processed")
            keyframe = self._new_keyframes.popleft()
        self._current = keyframe

        keyframe.compute_bow()

        for index, point in enumerate(keyframe.map_point_matches()):
            if point is None or point.is_bad:
                continue
            if not point.is_in_keyframe(keyframe):
                point.add_observation(keyframe, index)
                point.update_normal_and_depth()
                point.compute_distinctive_descriptors()
            else:
                # Only new stereo points inserted by tracking end up here.
                self._recent_points.append(point)

        for index, line in enumerate(keyframe.map_line_matches()):
            if line is None or line.is_bad:
                continue
            if not line.is_in_keyframe(keyframe):
                line.add_observation(keyframe, index)
                line.compute_distinctive_descriptors()
            else:
                self._recent_lines.append(line)

        keyframe.update_connections()
        self._map.add_keyframe(keyframe)

    def map_point_culling(self) -> None:
        """Discard recently created points that are rarely found or seldom observed."""
        current_id = self._current.id
        threshold = 2 if self._monocular else 3
        kept = []
        for point in self._recent_points:
            if point.is_bad:
                continue
            age = current_id - point.first_kf_id
            if point.found_ratio() < 0.25:
                point.set_bad_flag()
            elif age >= 2 and point.num_observations <= threshold:
                point.set_bad_flag()
            elif age >= 3:
                continue
            else:
                kept.append(point)
        self._recent_points = kept

    def map_line_culling(self) -> None:
        """Forget recently created lines that have turned bad."""
        self._recent_lines = [line for line in self._recent_lines if not line.is_bad]

    def create_new_map_points(self) -> int:
        """Triangulate matches with covisible keyframes; returns the number of new points."""
        matcher = self._require_matcher()
        kf1 = self._current
        neighbours = kf1.best_covisibility_keyframes(20 if self._monocular else 10)

        rcw1 = np.asarray(kf1.rotation(), dtype=float).reshape(3, 3)
        rwc1 = rcw1.T
        tcw1 = _vector3(kf1.translation())
        pose1 = np.hstack([rcw1, tcw1[:, None]])
        ow1 = _vector3(kf1.camera_center())
        ratio_factor = 1.5 * kf1.scale_factor

        created = 0
        for i, kf2 in enumerate(neighbours):
            if i > 0 and self.check_new_keyframes():
                return created

            ow2 = _vector3(kf2.camera_center())
            baseline = float(np.linalg.norm(ow2 - ow1))
            if not self._monocular:
                if baseline < kf2.mb:
                    continue
            else:
                median_depth = kf2.compute_scene_median_depth(2)
                if baseline / median_depth < 0.01:
                    continue

            f12 = compute_f12(kf1, kf2)
            matches = matcher.search_for_triangulation(kf1, kf2, f12, False)

            rcw2 = np.asarray(kf2.rotation(), dtype=float).reshape(3, 3)
            rwc2 = rcw2.T
            tcw2 = _vector3(kf2.translation())
            pose2 = np.hstack([rcw2, tcw2[:, None]])

            for idx1, idx2 in matches:
                kp1 = kf1.keys_un[idx1]
                ur1 = kf1.u_right[idx1]
                stereo1 = ur1 >= 0
                kp2 = kf2.keys_un[idx2]
                ur2 = kf2.u_right[idx2]
                stereo2 = ur2 >= 0

                xn1 = ((kp1.x - kf1.cx) * kf1.invfx, (kp1.y - kf1.cy) * kf1.invfy, 1.0)
                xn2 = ((kp2.x - kf2.cx) * kf2.invfx, (kp2.y - kf2.cy) * kf2.invfy, 1.0)

                cos_rays = parallax_cosine(rwc1, xn1, rwc2, xn2)
                cos_stereo1 = cos_stereo2 = cos_rays + 1
                if stereo1:
                    cos_stereo1 = stereo_parallax_cosine(kf1.mb, kf1.depth[idx1])
                elif stereo2:
                    cos_stereo2 = stereo_parallax_cosine(kf2.mb, kf2.depth[idx2])
                cos_stereo = min(cos_stereo1, cos_stereo2)

                if (cos_rays < cos_stereo and cos_rays > 0
                        and (stereo1 or stereo2 or cos_rays < 0.9998)):
                    x3d = triangulate_linear(xn1, xn2, pose1, pose2)
                    if x3d is None:
                        continue
                elif stereo1 and cos_stereo1 < cos_stereo2:
                    x3d = _vector3(kf1.unproject_stereo(idx1))
                elif stereo2 and cos_stereo2 < cos_stereo1:
                    x3d = _vector3(kf2.unproject_stereo(idx2))
                else:
                    continue  # no stereo and very low parallax

                if not reprojection_ok(rcw1, tcw1, x3d, kp1, kf1.fx, kf1.fy, kf1.cx, kf1.cy,
                                       kf1.level_sigma2[kp1.octave], ur1, kf1.mbf):
                    continue
                if not reprojection_ok(rcw2, tcw2, x3d, kp2, kf2.fx, kf2.fy, kf2.cx, kf2.cy,
                                       kf2.level_sigma2[kp2.octave], ur2, kf1.mbf):
                    continue

                dist1 = float(np.linalg.norm(x3d - ow1))
                dist2 = float(np.linalg.norm(x3d - ow2))
                if not scale_consistent(dist1, dist2, kf1.scale_factors[kp1.octave],
                                        kf2.scale_factors[kp2.octave], ratio_factor):
                    continue

                point = MapPoint(x3d, kf1, self._map)
                point.add_observation(kf1, idx1)
                point.add_observation(kf2, idx2)
                kf1.add_map_point(point, idx1)
                kf2.add_map_point(point, idx2)
                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()
                self._map.add_map_point(point)
                self._recent_points.append(point)
                created += 1
        return created

    def search_in_neighbors(self) -> None:
        """Fuse duplicated points between the current keyframe and its neighbours."""
        matcher = self._require_matcher()
        current = self._current
        neighbours = current.best_covisibility_keyframes(20 if self._monocular else 10)
        targets: list[Any] = []
        for kf in neighbours:
            if kf.is_bad() or kf.fuse_target_for_kf == current.id:
                continue
            targets.append(kf)
            kf.fuse_target_for_kf = current.id
            for second in kf.best_covisibility_keyframes(5):
                if (second.is_bad() or second.fuse_target_for_kf == current.id
                        or second.id == current.id):
                    continue
                targets.append(second)

        matches = current.map_point_matches()
        for kf in targets:
            matcher.fuse(kf, matches)

        candidates: list[Any] = []
        for kf in targets:
            for point in kf.map_point_matches():
                if point is None:
                    continue
                if point.is_bad or point.fuse_candidate_for_kf == current.id:
                    continue
                point.fuse_candidate_for_kf = current.id
                candidates.append(point)
        matcher.fuse(current, candidates)

        for point in current.map_point_matches():
            if point is not None and not point.is_bad:
                point.compute_distinctive_descriptors()
                point.update_normal_and_depth()

        current.update_connections()

    def request_stop(self) -> None:
        with self._stop_lock:
            self._stop_requested = True
            with self._new_kfs_lock:
                self._abort_ba = True

    def stop(self) -> bool:
        """Stop if asked to and allowed; returns whether it stopped."""
        with self._stop_lock:
            if self._stop_requested and not self._not_stop:
                self._stopped = True
                logger.info("Local Mapping STOP")
                return True
            return False

    def is_stopped(self) -> bool:
        with self._stop_lock:
            return self._stopped

    def stop_requested(self) -> bool:
        with self._stop_lock:
            return self._stop_requested

    def release(self) -> None:
        """Resume after a stop, dropping keyframes queued meanwhile."""
        with self._stop_lock, self._finish_lock:
            if self._finished:
                return
            self._stopped = False
            self._stop_requested = False
            with self._new_kfs_lock:
                self._new_keyframes.clear()
            logger.info("Local Mapping RELEASE")

    def accept_keyframes(self) -> bool:
        with self._accept_lock:
            return self._accept_keyframes

    def set_accept_keyframes(self, flag: bool) -> None:
        with self._accept_lock:
            self._accept_keyframes = bool(flag)

    def set_not_stop(self, flag: bool) -> bool:
        """Forbid or allow stopping; forbidding fails once already stopped."""
        with self._stop_lock:
            if flag and self._stopped:
                return False
            self._not_stop = bool(flag)
            return True

    def interrupt_ba(self) -> None:
        self._abort_ba = True

    def keyframe_culling(self) -> None:
        """Mark keyframes bad when 90% of their points are seen by three other keyframes."""
        threshold = 3
        for kf in self._current.vector_covisible_keyframes():
            if kf.id == 0:
                continue
            redundant = 0
            counted = 0
            for index, point in enumerate(kf.map_point_matches()):
                if point is None or point.is_bad:
                    continue
                if not self._monocular:
                    depth = kf.depth[index]
                    if depth > kf.th_depth or depth < 0:
                        continue
                counted += 1
                if point.num_observations <= threshold:
                    continue
                scale_level = kf.keys_un[index].octave
                seen = 0
                for other, other_index in point.observations().items():
                    if other is kf:
                        continue
                    if other.keys_un[other_index].octave <= scale_level + 1:
                        seen += 1
                        if seen >= threshold:
                            break
                if seen >= threshold:
                    redundant += 1
            if redundant > 0.9 * counted:
                kf.set_bad_flag()

    def request_reset(self) -> None:
        """Ask the running loop to reset and wait until it has."""
        with self._reset_lock:
            self._reset_requested = True
        while True:
            with self._reset_lock:
                if not self._reset_requested:
                    return
            time.sleep(_IDLE_SLEEP)

    def reset_if_requested(self) -> None:
        with self._reset_lock:
            if self._reset_requested:
                with self._new_kfs_lock:
                    self._new_keyframes.clear()
                self._recent_points.clear()
                self._recent_lines.clear()
                self._reset_requested = False

    def request_finish(self) -> None:
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        with self._finish_lock:
            self._finished = True
            with self._stop_lock:
                self._stopped = True

    def is_finished(self) -> bool:
        with self._finish_lock:
            return self._finished