"""Rotation and rigid-transform helpers: angle-axis, quaternions, Euler angles, isometries.

Quaternions are stored as ``(x, y, z, w)`` with ``w`` the real part.
"""

from __future__ import annotations

import math

import numpy as np


def _vector(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def _matrix(value, rows: int, cols: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (rows, cols):
        raise ValueError(f"{name} must have shape ({rows}, {cols}), got {arr.shape}")
    return arr


def normalize_quaternion(quaternion) -> np.ndarray:
    """Return the quaternion scaled to unit length."""
    q = _vector(quaternion, 4, "quaternion")
    norm = float(np.linalg.norm(q))
    if norm == 0.0 or not math.isfinite(norm):
        raise ValueError("cannot normalize a zero or non-finite quaternion")
    return q / norm


def angle_axis_to_matrix(angle: float, axis) -> np.ndarray:
    """Rotation matrix for a rotation of ``angle`` radians about ``axis``."""
    n = _vector(axis, 3, "axis")
    norm = float(np.linalg.norm(n))
    if norm == 0.0:
        raise ValueError("rotation axis must not be zero")
    n = n / norm
    s, c = math.sin(angle), math.cos(angle)
    k = np.array([[0.0, -n[2], n[1]], [n[2], 0.0, -n[0]], [-n[1], n[0], 0.0]])
    return c * np.eye(3) + s * k + (1.0 - c) * np.outer(n, n)


def quaternion_to_matrix(quaternion) -> np.ndarray:
    """Rotation matrix of a quaternion ``(x, y, z, w)``; the input is normalized first."""
    x, y, z, w = normalize_quaternion(quaternion)
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - z * w), 2 * (x * z + y * w)],
            [2 * (x * y + z * w), 1 - 2 * (x * x + z * z), 2 * (y * z - x * w)],
            [2 * (x * z - y * w), 2 * (y * z + x * w), 1 - 2 * (x * x + y * y)],
        ]
    )


def matrix_to_quaternion(rotation) -> np.ndarray:
    """Quaternion ``(x, y, z, w)`` of a rotation matrix."""
    r = _matrix(rotation, 3, 3, "rotation")
    diag_sum = float(r[0, 0] + r[1, 1] + r[2, 2])
    q = np.zeros(4)
    if diag_sum > 0.0:
        t = math.sqrt(diag_sum + 1.0)
        q[3] = 0.5 * t
        t = 0.5 / t
        q[0] = (r[2, 1] - r[1, 2]) * t
        q[1] = (r[0, 2] - r[2, 0]) * t
        q[2] = (r[1, 0] - r[0, 1]) * t
        return q
    i = 0
    if r[1, 1] > r[0, 0]:
        i = 1
    if r[2, 2] > r[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(max(r[i, i] - r[j, j] - r[k, k] + 1.0, 0.0))
    q[i] = 0.5 * t
    t = 0.5 / t
    q[3] = (r[k, j] - r[j, k]) * t
    q[j] = (r[j, i] + r[i, j]) * t
    q[k] = (r[k, i] + r[i, k]) * t
    return q


def euler_angles(rotation, a0: int, a1: int, a2: int) -> np.ndarray:
    """Angles about axes ``a0, a1, a2`` so that R = R_a0 · R_a1 · R_a2.

    The first angle lies in [0, pi] and the others in [-pi, pi].
    """
    for axis in (a0, a1, a2):
        if axis not in (0, 1, 2):
            raise ValueError(f"axis index must be 0, 1 or 2, got {axis}")
    if a0 == a1 or a1 == a2:
        raise ValueError("consecutive axes must differ")
    m = _matrix(rotation, 3, 3, "rotation")
    odd = 0 if (a0 + 1) % 3 == a1 else 1
    i = a0
    j = (a0 + 1 + odd) % 3
    k = (a0 + 2 - odd) % 3
    res = np.zeros(3)

    def flips(angle: float) -> bool:
        return (odd and angle < 0) or ((not odd) and angle > 0)

    if a0 == a2:
        res[0] = math.atan2(m[j, i], m[k, i])
        s2 = math.hypot(m[j, i], m[k, i])
        if flips(res[0]):
            res[0] += -math.pi if res[0] > 0 else math.pi
            res[1] = -math.atan2(s2, m[i, i])
        else:
            res[1] = math.atan2(s2, m[i, i])
        s1, c1 = math.sin(res[0]), math.cos(res[0])
        res[2] = math.atan2(c1 * m[j, k] - s1 * m[k, k], c1 * m[j, j] - s1 * m[k, j])
    else:
        res[0] = math.atan2(m[j, k], m[k, k])
        c2 = math.hypot(m[i, i], m[i, j])
        if flips(res[0]):
            res[0] += -math.pi if res[0] > 0 else math.pi
            res[1] = math.atan2(-m[i, k], -c2)
        else:
            res[1] = math.atan2(-m[i, k], c2)
        s1, c1 = math.sin(res[0]), math.cos(res[0])
        res[2] = math.atan2(s1 * m[k, i] - c1 * m[j, i], c1 * m[j, j] - s1 * m[k, j])
    if not odd:
        res = -res
    return res


def make_isometry(rotation, translation=(0.0, 0.0, 0.0)) -> np.ndarray:
    """4x4 homogeneous transform from a rotation matrix and a translation."""
    transform = np.eye(4)
    transform[:3, :3] = _matrix(rotation, 3, 3, "rotation")
    transform[:3, 3] = _vector(translation, 3, "translation")
    return transform


def transform_point(transform, point) -> np.ndarray:
    """Apply a 4x4 transform to a point of shape (3,) or to points of shape (N, 3)."""
    t = _matrix(transform, 4, 4, "transform")
    p = np.asarray(point, dtype=float)
    if p.shape == (3,):
        return t[:3, :3] @ p + t[:3, 3]
    if p.ndim == 2 and p.shape[1] == 3:
        return p @ t[:3, :3].T + t[:3, 3]
    raise ValueError(f"point must have shape (3,) or (N, 3), got {p.shape}")