import math
import threading
import time

import numpy as np
import pytest

from lineslam.localmapping import LocalMapping
from lineslam.mappoint import MapPoint
from lineslam.orbdescriptor import KeyPoint
from lineslam.slammap import Map


class FakeKeyFrame:
    def __init__(self, kf_id, n=1, center=(0.0, 0.0, 0.0)):
        self.id = kf_id
        self.frame_id = kf_id
        self.u_right = [-1.0] * n
        self.depth = [-1.0] * n
        self.keys_un = [KeyPoint(0.0, 0.0) for _ in range(n)]
        self.descriptors = np.zeros((n, 32), dtype=np.uint8)
        self.scale_factors = [1.0, 1.2]
        self.scale_levels = 2
        self.scale_factor = 1.2
        self.log_scale_factor = math.log(1.2)
        self.level_sigma2 = [1.0, 1.44]
        self.mb = 0.1
        self.mbf = 50.0
        self.th_depth = 40.0
        self.fx = self.fy = 500.0
        self.cx, self.cy = 320.0, 240.0
        self.invfx = self.invfy = 1.0 / 500.0
        self.K = np.array([[500.0, 0, 320.0], [0, 500.0, 240.0], [0, 0, 1.0]])
        self._rotation = np.eye(3)
        self._center = np.array(center, dtype=float)
        self.matches = [None] * n
        self.line_matches = []
        self.neighbours = []
        self.covisible = []
        self.bad = False
        self.fuse_target_for_kf = 0
        self.bow_computed = False
        self.connection_updates = 0
        self.median_depth = 5.0

    def camera_center(self):
        return self._center.copy()

    def rotation(self):
        return self._rotation.copy()

    def translation(self):
        return -self._rotation @ self._center

    def compute_bow(self):
        self.bow_computed = True

    def map_point_matches(self):
        return list(self.matches)

    def map_line_matches(self):
        return list(self.line_matches)

    def update_connections(self):
        self.connection_updates += 1

    def best_covisibility_keyframes(self, n):
        return self.neighbours[:n]

    def vector_covisible_keyframes(self):
        return list(self.covisible)

    def compute_scene_median_depth(self, q):
        return self.median_depth

    def add_map_point(self, point, index):
        self.matches[index] = point

    def erase_map_point_match(self, index):
        self.matches[index] = None

    def replace_map_point_match(self, index, point):
        self.matches[index] = point

    def is_bad(self):
        return self.bad

    def set_bad_flag(self):
        self.bad = True


class FakeLine:
    def __init__(self, keyframe):
        self.keyframe = keyframe
        self.is_bad = False

    def is_in_keyframe(self, keyframe):
        return keyframe is self.keyframe


class FakeMatcher:
    def __init__(self, matches=()):
        self.matches = list(matches)
        self.triangulation_calls = 0
        self.fuse_calls = []

    def search_for_triangulation(self, kf1, kf2, f12, only_stereo):
        self.triangulation_calls += 1
        return list(self.matches)

    def fuse(self, keyframe, points):
        self.fuse_calls.append((keyframe, list(points)))


class FakeLoopCloser:
    def __init__(self):
        self.received = []

    def insert_keyframe(self, keyframe):
        self.received.append(keyframe)


def wait_until(condition, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.005)
    return condition()


def test_initial_flags_and_accept():
    lm = LocalMapping(Map(), True, FakeMatcher())
    assert lm.accept_keyframes() is True
    assert lm.is_finished() is True
    lm.set_accept_keyframes(False)
    assert lm.accept_keyframes() is False


def test_stop_and_not_stop():
    lm = LocalMapping(Map(), True, FakeMatcher())
    assert lm.stop() is False
    lm.request_stop()
    assert lm.stop_requested() is True
    assert lm.abort_ba_requested is True
    assert lm.stop() is True
    assert lm.is_stopped() is True
    assert lm.set_not_stop(True) is False
    assert lm.set_not_stop(False) is True


def test_not_stop_blocks_stopping():
    lm = LocalMapping(Map(), True, FakeMatcher())
    assert lm.set_not_stop(True) is True
    lm.request_stop()
    assert lm.stop() is False
    assert lm.is_stopped() is False


def test_release_ignored_when_finished():
    lm = LocalMapping(Map(), True, FakeMatcher())
    lm.request_stop()
    lm.stop()
    lm.release()
    assert lm.is_stopped() is True
    assert lm.stop_requested() is True


def test_insert_and_process_keyframe():
    slam_map = Map()
    kf0 = FakeKeyFrame(0)
    kf1 = FakeKeyFrame(1, center=(1.0, 0.0, 0.0))
    point = MapPoint((0.0, 0.0, 5.0), kf0, slam_map)
    point.add_observation(kf0, 0)
    kf1.matches[0] = point
    lm = LocalMapping(slam_map, True, FakeMatcher())
    assert lm.check_new_keyframes() is False
    lm.insert_keyframe(kf1)
    assert lm.check_new_keyframes() is True
    lm.process_new_keyframe()
    assert lm.check_new_keyframes() is False
    assert lm.current_keyframe is kf1
    assert kf1.bow_computed
    assert kf1.connection_updates == 1
    assert point.is_in_keyframe(kf1)
    assert kf1 in slam_map.all_keyframes()
    assert lm.recent_map_points == []


def test_process_without_keyframe_raises():
    lm = LocalMapping(Map(), True, FakeMatcher())
    with pytest.raises(RuntimeError):
        lm.process_new_keyframe()


def _processed(kf_id, slam_map, point_ref_kf=None, visible=0):
    kf = FakeKeyFrame(kf_id)
    ref = point_ref_kf or kf
    point = MapPoint((0.0, 0.0, 5.0), ref, slam_map)
    point.add_observation(kf, 0)
    if visible:
        point.increase_visible(visible)
    kf.matches[0] = point
    slam_map.add_map_point(point)
    lm = LocalMapping(slam_map, True, FakeMatcher())
    lm.insert_keyframe(kf)
    lm.process_new_keyframe()
    return lm, point


def test_culling_removes_rarely_found_point():
    slam_map = Map()
    lm, point = _processed(0, slam_map, visible=4)
    assert lm.recent_map_points == [point]
    lm.map_point_culling()
    assert point.is_bad
    assert point not in slam_map.all_map_points()
    assert lm.recent_map_points == []


def test_culling_keeps_fresh_point():
    slam_map = Map()
    lm, point = _processed(0, slam_map)
    lm.map_point_culling()
    assert not point.is_bad
    assert lm.recent_map_points == [point]


def test_culling_removes_old_point_with_few_observations():
    slam_map = Map()
    old = FakeKeyFrame(0)
    lm, point = _processed(2, slam_map, point_ref_kf=old)
    lm.map_point_culling()
    assert point.is_bad


def test_line_culling_drops_bad_lines():
    slam_map = Map()
    kf = FakeKeyFrame(0)
    good, bad = FakeLine(kf), FakeLine(kf)
    kf.line_matches = [good, bad]
    lm = LocalMapping(slam_map, True, FakeMatcher())
    lm.insert_keyframe(kf)
    lm.process_new_keyframe()
    assert lm.recent_map_lines == [good, bad]
    bad.is_bad = True
    lm.map_line_culling()
    assert lm.recent_map_lines == [good]


def _two_view_setup(monocular=True, mb=0.1):
    slam_map = Map()
    kf1 = FakeKeyFrame(1)
    kf2 = FakeKeyFrame(2, center=(1.0, 0.0, 0.0))
    kf2.mb = mb
    world = np.array([0.5, 0.0, 5.0])
    for kf in (kf1, kf2):
        cam = kf.rotation() @ world + kf.translation()
        kf.keys_un[0] = KeyPoint(kf.fx * cam[0] / cam[2] + kf.cx, kf.fy * cam[1] / cam[2] + kf.cy)
    kf1.neighbours = [kf2]
    matcher = FakeMatcher([(0, 0)])
    lm = LocalMapping(slam_map, monocular, matcher)
    lm.insert_keyframe(kf1)
    lm.process_new_keyframe()
    return lm, slam_map, kf1, kf2, matcher, world


def test_create_new_map_points_triangulates():
    lm, slam_map, kf1, kf2, matcher, world = _two_view_setup()
    created = lm.create_new_map_points()
    assert created == 1
    points = slam_map.all_map_points()
    assert len(points) == 1
    point = points[0]
    assert np.allclose(point.world_pos, world, atol=1e-6)
    assert kf1.matches[0] is point
    assert kf2.matches[0] is point
    assert point.observations() == {kf1: 0, kf2: 0}
    assert lm.recent_map_points == [point]


def test_create_new_map_points_skips_short_baseline():
    lm, slam_map, kf1, kf2, matcher, world = _two_view_setup(monocular=False, mb=10.0)
    assert lm.create_new_map_points() == 0
    assert matcher.triangulation_calls == 0
    assert slam_map.all_map_points() == []


def test_create_new_map_points_needs_matcher():
    slam_map = Map()
    kf = FakeKeyFrame(0)
    lm = LocalMapping(slam_map, True)
    lm.insert_keyframe(kf)
    lm.process_new_keyframe()
    with pytest.raises(RuntimeError):
        lm.create_new_map_points()


def test_search_in_neighbors_fuses_both_ways():
    slam_map = Map()
    current = FakeKeyFrame(5)
    neighbour = FakeKeyFrame(3)
    second = FakeKeyFrame(4)
    current.neighbours = [neighbour]
    neighbour.neighbours = [current, second]
    point = MapPoint((0.0, 0.0, 5.0), neighbour, slam_map)
    point.add_observation(neighbour, 0)
    neighbour.matches[0] = point
    matcher = FakeMatcher()
    lm = LocalMapping(slam_map, True, matcher)
    lm.insert_keyframe(current)
    lm.process_new_keyframe()
    lm.search_in_neighbors()
    fused = [kf for kf, _ in matcher.fuse_calls]
    assert fused == [neighbour, second, current]
    assert matcher.fuse_calls[-1][1] == [point]
    assert neighbour.fuse_target_for_kf == current.id
    assert point.fuse_candidate_for_kf == current.id
    assert current.connection_updates == 2


def _redundant_setup(observers):
    slam_map = Map()
    current = FakeKeyFrame(9)
    kf = FakeKeyFrame(1)
    current.covisible = [kf]
    point = MapPoint((0.0, 0.0, 5.0), kf, slam_map)
    point.add_observation(kf, 0)
    kf.matches[0] = point
    for i in range(observers):
        other = FakeKeyFrame(10 + i)
        point.add_observation(other, 0)
    lm = LocalMapping(slam_map, True, FakeMatcher())
    lm.insert_keyframe(current)
    lm.process_new_keyframe()
    return lm, kf


def test_keyframe_culling_marks_redundant_keyframe():
    lm, kf = _redundant_setup(4)
    lm.keyframe_culling()
    assert kf.bad is True


def test_keyframe_culling_keeps_needed_keyframe():
    lm, kf = _redundant_setup(1)
    lm.keyframe_culling()
    assert kf.bad is False


def test_run_processes_keyframe_and_finishes():
    slam_map = Map()
    for i in range(3):
        slam_map.add_keyframe(FakeKeyFrame(100 + i))
    ba_calls = []
    loop_closer = FakeLoopCloser()
    lm = LocalMapping(slam_map, True, FakeMatcher(),
                      lambda kf, abort, m: ba_calls.append((kf, abort(), m)))
    lm.set_loop_closer(loop_closer)
    kf = FakeKeyFrame(7)
    thread = threading.Thread(target=lm.run, daemon=True)
    thread.start()
    lm.insert_keyframe(kf)
    assert wait_until(lambda: loop_closer.received == [kf])
    lm.request_finish()
    thread.join(3.0)
    assert not thread.is_alive()
    assert lm.is_finished() is True
    assert lm.is_stopped() is True
    assert ba_calls == [(kf, False, slam_map)]


def test_request_reset_clears_queue():
    lm = LocalMapping(Map(), True, FakeMatcher())
    lm.request_stop()
    thread = threading.Thread(target=lm.run, daemon=True)
    thread.start()
    assert wait_until(lm.is_stopped)
    lm.insert_keyframe(FakeKeyFrame(1))
    lm.request_finish()
    thread.join(3.0)
    assert not thread.is_alive()
    resetter = threading.Thread(target=lm.request_reset, daemon=True)
    resetter.start()
    assert wait_until(lambda: lm._reset_requested)
    lm.reset_if_requested()
    resetter.join(3.0)
    assert not resetter.is_alive()
    assert lm.check_new_keyframes() is False