import math
from types import SimpleNamespace

import numpy as np
import pytest

from lineslam.orbdescriptor import KeyPoint
from lineslam.triangulation import (
    CHI2_MONO,
    compute_f12,
    parallax_cosine,
    reprojection_ok,
    scale_consistent,
    skew_symmetric,
    stereo_parallax_cosine,
    triangulate_linear,
)

FX, FY, CX, CY = 500.0, 480.0, 320.0, 240.0
K = np.array([[FX, 0, CX], [0, FY, CY], [0, 0, 1.0]])


def rot_y(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def rot_x(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[1, 0, 0], [0, c, -s], [0, s, c]])


class _KeyFrame:
    def __init__(self, r, t):
        self._r = np.asarray(r, dtype=float)
        self._t = np.asarray(t, dtype=float)
        self.K = K

    def rotation(self):
        return self._r

    def translation(self):
        return self._t

    def pose(self):
        return np.hstack([self._r, self._t.reshape(3, 1)])


def project(r, t, point):
    c = r @ point + t
    return np.array([FX * c[0] / c[2] + CX, FY * c[1] / c[2] + CY])


def normalised(pixel):
    return np.array([(pixel[0] - CX) / FX, (pixel[1] - CY) / FY])


KF1 = _KeyFrame(np.eye(3), np.zeros(3))
KF2 = _KeyFrame(rot_y(0.1) @ rot_x(-0.05), np.array([-0.4, 0.05, 0.1]))
POINTS = [np.array([0.3, -0.2, 4.0]), np.array([-1.0, 0.5, 6.0]), np.array([0.0, 0.0, 2.5])]


def test_skew_symmetric_matches_cross_product():
    v = np.array([1.5, -2.0, 0.25])
    w = np.array([-0.3, 4.0, 2.0])
    assert np.allclose(skew_symmetric(v) @ w, np.cross(v, w))


def test_skew_symmetric_is_antisymmetric():
    s = skew_symmetric([3.0, -1.0, 7.0])
    assert np.allclose(s, -s.T)
    assert np.allclose(np.diag(s), 0.0)


def test_skew_symmetric_rejects_wrong_length():
    with pytest.raises(ValueError):
        skew_symmetric([1.0, 2.0])


@pytest.mark.parametrize("point", POINTS)
def test_f12_satisfies_epipolar_constraint(point):
    f12 = compute_f12(KF1, KF2)
    u1 = project(KF1._r, KF1._t, point)
    u2 = project(KF2._r, KF2._t, point)
    x1 = np.append(u1, 1.0)
    x2 = np.append(u2, 1.0)
    assert abs(x1 @ f12 @ x2) < 1e-9 * np.abs(f12).max() * 1e6


def test_f12_is_rank_two():
    f12 = compute_f12(KF1, KF2)
    singular = np.linalg.svd(f12, compute_uv=False)
    assert singular[2] < 1e-9 * singular[0]
    assert singular[1] > 1e-6 * singular[0]


@pytest.mark.parametrize("point", POINTS)
def test_triangulation_recovers_point(point):
    xn1 = normalised(project(KF1._r, KF1._t, point))
    xn2 = normalised(project(KF2._r, KF2._t, point))
    result = triangulate_linear(xn1, xn2, KF1.pose(), KF2.pose())
    assert result is not None
    assert np.allclose(result, point, atol=1e-6)


def test_triangulation_accepts_homogeneous_and_4x4():
    point = POINTS[0]
    xn1 = np.append(normalised(project(KF1._r, KF1._t, point)), 1.0)
    xn2 = np.append(normalised(project(KF2._r, KF2._t, point)), 1.0)
    pose2 = np.vstack([KF2.pose(), [0, 0, 0, 1]])
    result = triangulate_linear(xn1, xn2, KF1.pose(), pose2)
    assert np.allclose(result, point, atol=1e-6)


def test_triangulation_rejects_bad_pose_shape():
    with pytest.raises(ValueError):
        triangulate_linear([0, 0], [0, 0], np.eye(3), KF2.pose())


def test_parallax_cosine_same_ray_is_one():
    xn = [0.2, -0.1]
    assert parallax_cosine(np.eye(3), xn, np.eye(3), xn) == pytest.approx(1.0)


def test_parallax_cosine_orthogonal_rays_is_zero():
    value = parallax_cosine(np.eye(3), [0.0, 0.0], rot_y(math.pi / 2), [0.0, 0.0])
    assert value == pytest.approx(0.0, abs=1e-12)


def test_parallax_cosine_is_symmetric():
    a = parallax_cosine(KF1._r.T, [0.1, 0.2], KF2._r.T, [-0.3, 0.05])
    b = parallax_cosine(KF2._r.T, [-0.3, 0.05], KF1._r.T, [0.1, 0.2])
    assert a == pytest.approx(b)
    assert -1.0 <= a <= 1.0


def test_stereo_parallax_cosine_limits():
    assert stereo_parallax_cosine(0.0, 3.0) == pytest.approx(1.0)
    assert stereo_parallax_cosine(2.0, 1.0) == pytest.approx(0.0, abs=1e-12)


def test_stereo_parallax_cosine_shrinks_with_baseline():
    near = stereo_parallax_cosine(0.1, 2.0)
    wide = stereo_parallax_cosine(0.5, 2.0)
    assert wide < near < 1.0


def test_reprojection_exact_point_passes():
    point = POINTS[1]
    u = project(KF2._r, KF2._t, point)
    kp = KeyPoint(float(u[0]), float(u[1]))
    assert reprojection_ok(KF2._r, KF2._t, point, kp, FX, FY, CX, CY, 1.0)


def test_reprojection_threshold_scales_with_sigma():
    point = POINTS[0]
    u = project(KF1._r, KF1._t, point)
    inside = KeyPoint(float(u[0]) + math.sqrt(CHI2_MONO) * 0.99, float(u[1]))
    outside = KeyPoint(float(u[0]) + math.sqrt(CHI2_MONO) * 1.01, float(u[1]))
    assert reprojection_ok(KF1._r, KF1._t, point, inside, FX, FY, CX, CY, 1.0)
    assert not reprojection_ok(KF1._r, KF1._t, point, outside, FX, FY, CX, CY, 1.0)
    assert reprojection_ok(KF1._r, KF1._t, point, outside, FX, FY, CX, CY, 4.0)


def test_reprojection_behind_camera_fails():
    kp = KeyPoint(CX, CY)
    assert not reprojection_ok(np.eye(3), np.zeros(3), [0.0, 0.0, -2.0], kp,
                               FX, FY, CX, CY, 1.0)


def test_reprojection_stereo_checks_right_coordinate():
    point = POINTS[2]
    bf = 40.0
    u = project(KF1._r, KF1._t, point)
    kp = KeyPoint(float(u[0]), float(u[1]))
    u_right = float(u[0]) - bf / point[2]
    assert reprojection_ok(KF1._r, KF1._t, point, kp, FX, FY, CX, CY, 1.0, u_right, bf)
    assert not reprojection_ok(KF1._r, KF1._t, point, kp, FX, FY, CX, CY, 1.0,
                               u_right + 10.0, bf)


def test_reprojection_negative_right_is_monocular():
    point = POINTS[2]
    u = project(KF1._r, KF1._t, point)
    kp = KeyPoint(float(u[0]), float(u[1]))
    assert reprojection_ok(KF1._r, KF1._t, point, kp, FX, FY, CX, CY, 1.0, -1.0, None)


def test_reprojection_stereo_needs_bf():
    kp = KeyPoint(CX, CY)
    with pytest.raises(ValueError):
        reprojection_ok(np.eye(3), np.zeros(3), [0.0, 0.0, 2.0], kp,
                        FX, FY, CX, CY, 1.0, 300.0, None)


def test_scale_consistent_cases():
    assert scale_consistent(2.0, 2.0, 1.2, 1.2, 1.8)
    assert not scale_consistent(0.0, 2.0, 1.0, 1.0, 1.8)
    assert not scale_consistent(2.0, 0.0, 1.0, 1.0, 1.8)
    assert not scale_consistent(1.0, 10.0, 1.0, 1.0, 1.8)
    assert not scale_consistent(10.0, 1.0, 1.0, 1.0, 1.8)


def test_scale_consistent_follows_octave_ratio():
    assert scale_consistent(1.0, 1.44, 1.44, 1.0, 1.1)
    assert not scale_consistent(1.0, 1.0, 1.44, 1.0, 1.1)


def test_compute_f12_uses_keyframe_interface():
    kf = SimpleNamespace(rotation=lambda: np.eye(3), translation=lambda: np.zeros(3), K=K)
    f = compute_f12(kf, kf)
    assert np.allclose(f, 0.0)