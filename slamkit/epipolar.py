"""Two-view geometry: fundamental and essential matrices, pose recovery, triangulation."""

from __future__ import annotations

import math
from typing import NamedTuple

import numpy as np

# Points triangulated farther than this (in units of the baseline) are ignored
# by the cheirality check, since their depth sign is unreliable.
_CHEIRALITY_DISTANCE = 50.0


class PoseRecovery(NamedTuple):
    """Result of :func:`recover_pose`."""

    inliers: int
    rotation: np.ndarray
    translation: np.ndarray
    mask: np.ndarray


def _points2(value, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError(f"{name} must have shape (N, 2), got {arr.shape}")
    return arr


def _pair(points1, points2) -> tuple[np.ndarray, np.ndarray]:
    p1 = _points2(points1, "points1")
    p2 = _points2(points2, "points2")
    if p1.shape != p2.shape:
        raise ValueError("points1 and points2 must hold the same number of points")
    return p1, p2


def _camera(camera_matrix) -> np.ndarray:
    k = np.asarray(camera_matrix, dtype=float)
    if k.shape != (3, 3):
        raise ValueError(f"camera_matrix must have shape (3, 3), got {k.shape}")
    return k


def _intrinsics(focal: float, principal_point) -> np.ndarray:
    cx, cy = np.asarray(principal_point, dtype=float)
    return np.array([[focal, 0.0, cx], [0.0, focal, cy], [0.0, 0.0, 1.0]])


def pixel_to_camera(point, camera_matrix) -> np.ndarray:
    """Normalized camera coordinates of a pixel (shape (2,)) or pixels (shape (N, 2))."""
    k = _camera(camera_matrix)
    p = np.asarray(point, dtype=float)
    if p.shape != (2,) and not (p.ndim == 2 and p.shape[1] == 2):
        raise ValueError(f"point must have shape (2,) or (N, 2), got {p.shape}")
    x = (p[..., 0] - k[0, 2]) / k[0, 0]
    y = (p[..., 1] - k[1, 2]) / k[1, 1]
    return np.stack((x, y), axis=-1)


def filter_matches(distances) -> list[int]:
    """Indices of matches whose distance is at most max(2 * min distance, 30)."""
    d = np.asarray(distances, dtype=float).ravel()
    if d.size == 0:
        return []
    threshold = max(2.0 * float(d.min()), 30.0)
    return [int(i) for i in np.flatnonzero(d <= threshold)]


def _normalizing_transform(points: np.ndarray) -> np.ndarray:
    centre = points.mean(axis=0)
    mean_dist = float(np.mean(np.linalg.norm(points - centre, axis=1)))
    if mean_dist == 0.0 or not math.isfinite(mean_dist):
        raise ValueError("points are degenerate")
    s = math.sqrt(2.0) / mean_dist
    return np.array([[s, 0.0, -s * centre[0]], [0.0, s, -s * centre[1]], [0.0, 0.0, 1.0]])


def find_fundamental_matrix(points1, points2) -> np.ndarray:
    """Fundamental matrix F with x2^T F x1 = 0 by the normalized eight-point algorithm."""
    p1, p2 = _pair(points1, points2)
    if len(p1) < 8:
        raise ValueError("the eight-point algorithm needs at least 8 point pairs")
    t1 = _normalizing_transform(p1)
    t2 = _normalizing_transform(p2)
    h1 = np.column_stack((p1, np.ones(len(p1)))) @ t1.T
    h2 = np.column_stack((p2, np.ones(len(p2)))) @ t2.T
    a = np.einsum("ni,nj->nij", h2, h1).reshape(len(p1), 9)
    _, _, vt = np.linalg.svd(a)
    f = vt[-1].reshape(3, 3)
    u, s, vt = np.linalg.svd(f)
    s[2] = 0.0
    f = u @ np.diag(s) @ vt
    f = t2.T @ f @ t1
    if abs(f[2, 2]) > np.finfo(float).eps:
        f = f / f[2, 2]
    return f


def find_essential_matrix(points1, points2, focal: float, principal_point) -> np.ndarray:
    """Essential matrix K^T F K for a camera of the given focal length and principal point."""
    k = _intrinsics(focal, principal_point)
    f = find_fundamental_matrix(points1, points2)
    return k.T @ f @ k


def decompose_essential_matrix(essential) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """The two rotation candidates and the unit translation (up to sign) of an essential matrix."""
    e = np.asarray(essential, dtype=float)
    if e.size != 9:
        raise ValueError(f"essential matrix must have 9 elements, got {e.size}")
    e = e.reshape(3, 3)
    u, _, vt = np.linalg.svd(e)
    if np.linalg.det(u) < 0:
        u = -u
    if np.linalg.det(vt) < 0:
        vt = -vt
    w = np.array([[0.0, 1.0, 0.0], [-1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    r1 = u @ w @ vt
    r2 = u @ w.T @ vt
    t = u[:, 2].copy()
    return r1, r2, t


def triangulate_points(projection1, projection2, points1, points2) -> np.ndarray:
    """Homogeneous 3D points, shape (4, N), from two 3x4 projections by linear triangulation."""
    pa = np.asarray(projection1, dtype=float)
    pb = np.asarray(projection2, dtype=float)
    for name, p in (("projection1", pa), ("projection2", pb)):
        if p.shape != (3, 4):
            raise ValueError(f"{name} must have shape (3, 4), got {p.shape}")
    p1, p2 = _pair(points1, points2)
    if len(p1) == 0:
        return np.zeros((4, 0))
    a = np.stack(
        (
            p1[:, 0, None] * pa[2] - pa[0],
            p1[:, 1, None] * pa[2] - pa[1],
            p2[:, 0, None] * pb[2] - pb[0],
            p2[:, 1, None] * pb[2] - pb[1],
        ),
        axis=1,
    )
    _, _, vt = np.linalg.svd(a)
    return vt[:, -1, :].T.copy()


def _cheirality_mask(p0, projection, points1, points2) -> np.ndarray:
    q = triangulate_points(p0, projection, points1, points2)
    with np.errstate(divide="ignore", invalid="ignore"):
        mask = q[2] * q[3] > 0
        q = q / q[3]
        mask &= q[2] < _CHEIRALITY_DISTANCE
        depth2 = (projection @ q)[2]
        mask &= depth2 > 0
        mask &= depth2 < _CHEIRALITY_DISTANCE
    return mask


def recover_pose(essential, points1, points2, focal=1.0, principal_point=(0.0, 0.0), mask=None) -> PoseRecovery:
    """Pick the rotation and translation from an essential matrix that put most points in front.

    ``mask``, if given, marks the point pairs that may count as inliers.
    """
    p1, p2 = _pair(points1, points2)
    k = _intrinsics(focal, principal_point)
    n1 = pixel_to_camera(p1, k) if len(p1) else p1
    n2 = pixel_to_camera(p2, k) if len(p2) else p2
    r1, r2, t = decompose_essential_matrix(essential)

    p0 = np.eye(3, 4)
    candidates = [(r1, t), (r2, t), (r1, -t), (r2, -t)]
    masks = []
    for rotation, translation in candidates:
        projection = np.column_stack((rotation, translation))
        masks.append(_cheirality_mask(p0, projection, n1, n2))

    if mask is not None:
        given = np.asarray(mask).astype(bool).ravel()
        if given.shape != (len(p1),):
            raise ValueError("mask must hold one entry per point pair")
        masks = [m & given for m in masks]

    counts = [int(np.count_nonzero(m)) for m in masks]
    best = counts.index(max(counts))
    rotation, translation = candidates[best]
    return PoseRecovery(counts[best], rotation.copy(), translation.copy(), masks[best])


def triangulate(points1, points2, rotation, translation, camera_matrix) -> np.ndarray:
    """3D points, shape (N, 3), in the first camera frame from matched pixels and relative pose."""
    k = _camera(camera_matrix)
    r = np.asarray(rotation, dtype=float)
    t = np.asarray(translation, dtype=float).ravel()
    if r.shape != (3, 3) or t.shape != (3,):
        raise ValueError("rotation must be 3x3 and translation must have 3 elements")
    p1, p2 = _pair(points1, points2)
    if len(p1) == 0:
        return np.zeros((0, 3))
    t1 = np.eye(3, 4)
    t2 = np.column_stack((r, t))
    q = triangulate_points(t1, t2, pixel_to_camera(p1, k), pixel_to_camera(p2, k))
    with np.errstate(divide="ignore", invalid="ignore"):
        return (q[:3] / q[3]).T