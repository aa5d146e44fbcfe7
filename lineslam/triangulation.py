"""Two-view geometry used when new map points are created.

Poses follow the camera-from-world convention: ``rcw`` and ``tcw`` map a
world point ``X`` to camera coordinates ``rcw @ X + tcw``. Normalised image
coordinates are ``((u - cx) / fx, (v - cy) / fy)``, optionally followed by 1.

Keyframes given to :func:`compute_f12` provide ``rotation()``,
``translation()`` and a 3x3 calibration matrix ``K``.
"""

from __future__ import annotations

import math
from typing import Any

import numpy as np

#: Chi-square threshold (2 degrees of freedom, 95%) for monocular reprojection.
CHI2_MONO = 5.991
#: Chi-square threshold (3 degrees of freedom, 95%) for stereo reprojection.
CHI2_STEREO = 7.8


def _vector3(value: Any) -> np.ndarray:
    return np.asarray(value, dtype=float).reshape(3)


def _homogeneous(value: Any) -> np.ndarray:
    """A normalised image point as a 3-vector ending in 1."""
    array = np.asarray(value, dtype=float).ravel()
    if array.shape == (2,):
        return np.array([array[0], array[1], 1.0])
    if array.shape == (3,):
        return array.copy()
    raise ValueError("expected a normalised point with 2 or 3 components")


def _pose_rows(pose: Any) -> np.ndarray:
    matrix = np.asarray(pose, dtype=float)
    if matrix.shape not in ((3, 4), (4, 4)):
        raise ValueError("pose must be a 3x4 or 4x4 matrix")
    return matrix[:3]


def skew_symmetric(v: Any) -> np.ndarray:
    """The matrix ``S`` with ``S @ w == cross(v, w)`` for every ``w``."""
    x, y, z = _vector3(v)
    return np.array([
        [0.0, -z, y],
        [z, 0.0, -x],
        [-y, x, 0.0],
    ])


def compute_f12(keyframe1: Any, keyframe2: Any) -> np.ndarray:
    """Fundamental matrix with ``x1.T @ F12 @ x2 == 0`` for matching pixels."""
    r1w = np.asarray(keyframe1.rotation(), dtype=float).reshape(3, 3)
    t1w = _vector3(keyframe1.translation())
    r2w = np.asarray(keyframe2.rotation(), dtype=float).reshape(3, 3)
    t2w = _vector3(keyframe2.translation())

    r12 = r1w @ r2w.T
    t12 = -r1w @ r2w.T @ t2w + t1w

    k1 = np.asarray(keyframe1.K, dtype=float).reshape(3, 3)
    k2 = np.asarray(keyframe2.K, dtype=float).reshape(3, 3)
    return np.linalg.inv(k1.T) @ skew_symmetric(t12) @ r12 @ np.linalg.inv(k2)


def triangulate_linear(xn1: Any, xn2: Any, tcw1: Any, tcw2: Any) -> np.ndarray | None:
    """Linear (DLT) triangulation of one match seen from two poses.

    Returns the world point, or ``None`` when the solution lies at infinity.
    """
    p1 = _homogeneous(xn1)
    p2 = _homogeneous(xn2)
    t1 = _pose_rows(tcw1)
    t2 = _pose_rows(tcw2)
    a = np.vstack([
        p1[0] * t1[2] - t1[0],
        p1[1] * t1[2] - t1[1],
        p2[0] * t2[2] - t2[0],
        p2[1] * t2[2] - t2[1],
    ])
    _, _, vt = np.linalg.svd(a)
    solution = vt[3]
    if solution[3] == 0:
        return None
    return solution[:3] / solution[3]


def parallax_cosine(rwc1: Any, xn1: Any, rwc2: Any, xn2: Any) -> float:
    """Cosine of the angle between the two viewing rays in the world frame."""
    ray1 = np.asarray(rwc1, dtype=float).reshape(3, 3) @ _homogeneous(xn1)
    ray2 = np.asarray(rwc2, dtype=float).reshape(3, 3) @ _homogeneous(xn2)
    norms = float(np.linalg.norm(ray1) * np.linalg.norm(ray2))
    if norms == 0:
        raise ValueError("viewing ray has zero length")
    return float(ray1 @ ray2) / norms


def stereo_parallax_cosine(baseline: float, depth: float) -> float:
    """Cosine of the parallax a stereo pair with ``baseline`` sees at ``depth``."""
    return math.cos(2.0 * math.atan2(baseline / 2.0, depth))


def reprojection_ok(rcw: Any, tcw: Any, x3d: Any, keypoint: Any,
                    fx: float, fy: float, cx: float, cy: float, sigma2: float,
                    u_right: float | None = None, bf: float | None = None) -> bool:
    """Whether ``x3d`` lies in front of the camera and reprojects onto ``keypoint``.

    With a non-negative ``u_right`` the right-image coordinate is checked as
    well, using the stereo baseline times focal length ``bf``.
    """
    rotation = np.asarray(rcw, dtype=float).reshape(3, 3)
    camera = rotation @ _vector3(x3d) + _vector3(tcw)
    x, y, z = camera
    if z <= 0:
        return False
    inv_z = 1.0 / z
    u = fx * x * inv_z + cx
    v = fy * y * inv_z + cy
    err_x = u - keypoint.x
    err_y = v - keypoint.y
    error = err_x * err_x + err_y * err_y
    if u_right is None or u_right < 0:
        return error <= CHI2_MONO * sigma2
    if bf is None:
        raise ValueError("a stereo observation needs bf")
    err_r = (u - bf * inv_z) - u_right
    return error + err_r * err_r <= CHI2_STEREO * sigma2


def scale_consistent(dist1: float, dist2: float, scale1: float, scale2: float,
                     ratio_factor: float) -> bool:
    """Whether the distance ratio of a point agrees with its pyramid-scale ratio."""
    if dist1 == 0 or dist2 == 0:
        return False
    ratio_dist = dist2 / dist1
    ratio_octave = scale1 / scale2
    if ratio_dist * ratio_factor < ratio_octave:
        return False
    return ratio_dist <= ratio_octave * ratio_factor