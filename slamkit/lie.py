"""Lie groups SO(3) and SE(3) with their algebras.

Twists in se(3) are ordered translation first: ``(upsilon, omega)``.
"""

from __future__ import annotations

import math

import numpy as np

from slamkit.geometry import matrix_to_quaternion, quaternion_to_matrix

_SMALL_EPS = 1e-10


def _vector(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size,):
        raise ValueError(f"{name} must have shape ({size},), got {arr.shape}")
    return arr


def _matrix(value, size: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.shape != (size, size):
        raise ValueError(f"{name} must have shape ({size}, {size}), got {arr.shape}")
    return arr


def so3_hat(omega) -> np.ndarray:
    """Skew-symmetric matrix of a 3-vector."""
    x, y, z = _vector(omega, 3, "omega")
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]])


def so3_vee(matrix) -> np.ndarray:
    """3-vector of a skew-symmetric matrix."""
    m = _matrix(matrix, 3, "matrix")
    return np.array([m[2, 1], m[0, 2], m[1, 0]])


def so3_exp(omega) -> np.ndarray:
    """Rotation matrix of a rotation vector."""
    w = _vector(omega, 3, "omega")
    theta = float(np.linalg.norm(w))
    k = so3_hat(w)
    if theta < _SMALL_EPS:
        return np.eye(3) + k + 0.5 * (k @ k)
    return (
        np.eye(3)
        + math.sin(theta) / theta * k
        + (1.0 - math.cos(theta)) / (theta * theta) * (k @ k)
    )


def so3_log(rotation) -> np.ndarray:
    """Rotation vector of a rotation matrix."""
    q = matrix_to_quaternion(_matrix(rotation, 3, "rotation"))
    q = q / np.linalg.norm(q)
    vec, w = q[:3], q[3]
    n = float(np.linalg.norm(vec))
    if n < _SMALL_EPS:
        factor = 2.0 / w - 2.0 * n * n / (w * w * w)
    elif abs(w) < _SMALL_EPS:
        factor = math.pi / n if w > 0 else -math.pi / n
    else:
        factor = 2.0 * math.atan(n / w) / n
    return factor * vec


class SE3:
    """Rigid-body transform holding a rotation matrix and a translation."""

    __slots__ = ("rotation", "translation")

    def __init__(self, rotation=None, translation=None):
        self.rotation = np.eye(3) if rotation is None else _matrix(rotation, 3, "rotation").copy()
        self.translation = (
            np.zeros(3) if translation is None else _vector(translation, 3, "translation").copy()
        )

    def matrix(self) -> np.ndarray:
        """The 4x4 homogeneous matrix."""
        m = np.eye(4)
        m[:3, :3] = self.rotation
        m[:3, 3] = self.translation
        return m

    def inverse(self) -> "SE3":
        rt = self.rotation.T
        return SE3(rt, -rt @ self.translation)

    def log(self) -> np.ndarray:
        """Twist ``(upsilon, omega)`` whose exponential is this transform."""
        omega = so3_log(self.rotation)
        theta = float(np.linalg.norm(omega))
        k = so3_hat(omega)
        if theta < _SMALL_EPS:
            v_inv = np.eye(3) - 0.5 * k + (k @ k) / 12.0
        else:
            half = 0.5 * theta
            coeff = (1.0 - theta * math.cos(half) / (2.0 * math.sin(half))) / (theta * theta)
            v_inv = np.eye(3) - 0.5 * k + coeff * (k @ k)
        return np.concatenate((v_inv @ self.translation, omega))

    def adjoint(self) -> np.ndarray:
        """6x6 adjoint matrix acting on twists ordered ``(upsilon, omega)``."""
        adj = np.zeros((6, 6))
        adj[:3, :3] = self.rotation
        adj[3:, 3:] = self.rotation
        adj[:3, 3:] = so3_hat(self.translation) @ self.rotation
        return adj

    def act(self, point) -> np.ndarray:
        """Transform a point of shape (3,) or points of shape (N, 3)."""
        p = np.asarray(point, dtype=float)
        if p.shape == (3,):
            return self.rotation @ p + self.translation
        if p.ndim == 2 and p.shape[1] == 3:
            return p @ self.rotation.T + self.translation
        raise ValueError(f"point must have shape (3,) or (N, 3), got {p.shape}")

    def __matmul__(self, other):
        if not isinstance(other, SE3):
            return NotImplemented
        return SE3(self.rotation @ other.rotation, self.rotation @ other.translation + self.translation)

    def __repr__(self) -> str:
        return f"SE3(log={np.array2string(self.log(), precision=6)})"


def se3_hat(xi) -> np.ndarray:
    """4x4 matrix of a twist ``(upsilon, omega)``."""
    v = _vector(xi, 6, "xi")
    m = np.zeros((4, 4))
    m[:3, :3] = so3_hat(v[3:])
    m[:3, 3] = v[:3]
    return m


def se3_vee(matrix) -> np.ndarray:
    """Twist ``(upsilon, omega)`` of a 4x4 se(3) matrix."""
    m = _matrix(matrix, 4, "matrix")
    return np.concatenate((m[:3, 3], so3_vee(m[:3, :3])))


def se3_exp(xi) -> SE3:
    """Transform of a twist ``(upsilon, omega)``."""
    v = _vector(xi, 6, "xi")
    upsilon, omega = v[:3], v[3:]
    theta = float(np.linalg.norm(omega))
    k = so3_hat(omega)
    if theta < _SMALL_EPS:
        jac = np.eye(3) + 0.5 * k + (k @ k) / 6.0
    else:
        jac = (
            np.eye(3)
            + (1.0 - math.cos(theta)) / (theta * theta) * k
            + (theta - math.sin(theta)) / (theta ** 3) * (k @ k)
        )
    return SE3(so3_exp(omega), jac @ upsilon)


def se3_from_quaternion(quaternion, translation) -> SE3:
    """Transform from a quaternion ``(x, y, z, w)`` (normalized here) and a translation."""
    return SE3(quaternion_to_matrix(quaternion), _vector(translation, 3, "translation"))


def jr_inv(pose: SE3) -> np.ndarray:
    """First-order approximation of the inverse right Jacobian of SE(3)."""
    phi_hat = so3_hat(so3_log(pose.rotation))
    j = np.zeros((6, 6))
    j[:3, :3] = phi_hat
    j[:3, 3:] = so3_hat(pose.translation)
    j[3:, 3:] = phi_hat
    return 0.5 * j + np.eye(6)