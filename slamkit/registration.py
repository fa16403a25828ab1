"""Relative pose from 3D-3D and 3D-2D correspondences: SVD alignment and bundle adjustment."""

from __future__ import annotations

from typing import NamedTuple

import numpy as np

from slamkit.epipolar import pixel_to_camera
from slamkit.lie import SE3, se3_exp

DEPTH_SCALE = 5000.0


class Adjustment(NamedTuple):
    """Result of :func:`bundle_adjust_3d2d`: the camera pose and the refined points."""

    pose: SE3
    points: np.ndarray


def _points(value, dims: int, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != dims:
        raise ValueError(f"{name} must have shape (N, {dims}), got {arr.shape}")
    return arr


def _camera(camera_matrix) -> np.ndarray:
    k = np.asarray(camera_matrix, dtype=float)
    if k.shape != (3, 3):
        raise ValueError(f"camera_matrix must have shape (3, 3), got {k.shape}")
    return k


def _hat_batch(v: np.ndarray) -> np.ndarray:
    out = np.zeros((len(v), 3, 3))
    out[:, 0, 1] = -v[:, 2]
    out[:, 0, 2] = v[:, 1]
    out[:, 1, 0] = v[:, 2]
    out[:, 1, 2] = -v[:, 0]
    out[:, 2, 0] = -v[:, 1]
    out[:, 2, 1] = v[:, 0]
    return out


def _point_jacobian(q: np.ndarray) -> np.ndarray:
    """d(T p)/d(xi) for a left perturbation xi = (upsilon, omega), shape (N, 3, 6)."""
    jac = np.zeros((len(q), 3, 6))
    jac[:, :, :3] = np.eye(3)
    jac[:, :, 3:] = -_hat_batch(q)
    return jac


def depth_to_point(pixel, depth, camera_matrix, scale=DEPTH_SCALE) -> np.ndarray:
    """3D point in the camera frame of a pixel with a raw depth reading.

    A depth of zero means no measurement and raises ``ValueError``.
    """
    if depth <= 0:
        raise ValueError("depth must be positive; zero means no measurement")
    if scale <= 0:
        raise ValueError("scale must be positive")
    x, y = pixel_to_camera(np.asarray(pixel, dtype=float), _camera(camera_matrix))
    dd = float(depth) / float(scale)
    return np.array([x * dd, y * dd, dd])


def icp_svd(points1, points2) -> tuple[np.ndarray, np.ndarray]:
    """Rotation and translation with points1 ≈ R · points2 + t, by SVD of the cross-covariance."""
    p1 = _points(points1, 3, "points1")
    p2 = _points(points2, 3, "points2")
    if p1.shape != p2.shape:
        raise ValueError("points1 and points2 must hold the same number of points")
    if len(p1) == 0:
        raise ValueError("at least one point pair is needed")
    c1 = p1.mean(axis=0)
    c2 = p2.mean(axis=0)
    w = (p1 - c1).T @ (p2 - c2)
    u, _, vt = np.linalg.svd(w)
    v = vt.T
    if np.linalg.det(u) * np.linalg.det(v) < 0:
        u[:, 2] *= -1.0
    rotation = u @ v.T
    translation = c1 - rotation @ c2
    return rotation, translation


def bundle_adjust_3d3d(points1, points2, iterations=10) -> SE3:
    """Pose T with points1 ≈ T · points2, by Gauss-Newton from the identity."""
    if iterations < 0:
        raise ValueError("iterations must not be negative")
    p1 = _points(points1, 3, "points1")
    p2 = _points(points2, 3, "points2")
    if p1.shape != p2.shape:
        raise ValueError("points1 and points2 must hold the same number of points")
    if len(p1) == 0:
        raise ValueError("at least one point pair is needed")
    info = 1e4
    pose = SE3()
    for _ in range(iterations):
        q = pose.act(p2)
        errors = p1 - q
        jac = -_point_jacobian(q)
        hessian = info * np.einsum("nki,nkj->ij", jac, jac)
        gradient = info * np.einsum("nki,nk->i", jac, errors)
        if np.max(np.abs(gradient)) < 1e-14:
            break
        try:
            step = np.linalg.solve(hessian, -gradient)
        except np.linalg.LinAlgError:
            break
        if not np.all(np.isfinite(step)):
            break
        pose = se3_exp(step) @ pose
        if np.linalg.norm(step) < 1e-12:
            break
    return pose


def _reprojection(pose: SE3, points: np.ndarray, observed: np.ndarray, focal, centre):
    q = pose.act(points)
    with np.errstate(divide="ignore", invalid="ignore"):
        projected = focal * q[:, :2] / q[:, 2:3] + centre
    return q, observed - projected


def _cost(errors: np.ndarray) -> float:
    value = 0.5 * float(np.sum(errors * errors))
    return value if np.isfinite(value) else float("inf")


def bundle_adjust_3d2d(
    points_3d, points_2d, camera_matrix, rotation=None, translation=None, iterations=100
) -> Adjustment:
    """Refine the camera pose and the 3D points to fit their pixel observations.

    Levenberg-Marquardt over the pose and all points, with the point blocks
    eliminated by the Schur complement. The camera uses the focal length
    ``K[0, 0]`` for both axes and the principal point of ``K``.
    """
    if iterations < 0:
        raise ValueError("iterations must not be negative")
    pts = _points(points_3d, 3, "points_3d").copy()
    obs = _points(points_2d, 2, "points_2d")
    if len(pts) != len(obs):
        raise ValueError("points_3d and points_2d must hold the same number of points")
    k = _camera(camera_matrix)
    focal = k[0, 0]
    centre = np.array([k[0, 2], k[1, 2]])
    r = np.eye(3) if rotation is None else np.asarray(rotation, dtype=float)
    t = np.zeros(3) if translation is None else np.asarray(translation, dtype=float).ravel()
    pose = SE3(r, t)
    if len(pts) == 0:
        return Adjustment(pose, pts)

    _, errors = _reprojection(pose, pts, obs, focal, centre)
    cost = _cost(errors)
    lam = None
    nu = 2.0
    eye3 = np.eye(3)
    for _ in range(iterations):
        q, errors = _reprojection(pose, pts, obs, focal, centre)
        x, y, z = q[:, 0], q[:, 1], q[:, 2]
        dpi = np.zeros((len(q), 2, 3))
        dpi[:, 0, 0] = focal / z
        dpi[:, 0, 2] = -focal * x / (z * z)
        dpi[:, 1, 1] = focal / z
        dpi[:, 1, 2] = -focal * y / (z * z)
        j_pose = -np.einsum("nij,njk->nik", dpi, _point_jacobian(q))
        j_point = -dpi @ pose.rotation

        h_pp = np.einsum("nki,nkj->ij", j_pose, j_pose)
        h_pl = np.einsum("nki,nkj->nij", j_pose, j_point)
        h_ll = np.einsum("nki,nkj->nij", j_point, j_point)
        b_p = np.einsum("nki,nk->i", j_pose, errors)
        b_l = np.einsum("nki,nk->ni", j_point, errors)
        if not (np.all(np.isfinite(b_p)) and np.all(np.isfinite(b_l))):
            break
        if max(np.max(np.abs(b_p)), np.max(np.abs(b_l))) < 1e-12:
            break
        if lam is None:
            lam = 1e-5 * max(float(np.max(np.diag(h_pp))), float(np.max(np.diagonal(h_ll, axis1=1, axis2=2))))
            if lam <= 0.0:
                lam = 1e-5

        accepted = False
        dp = np.zeros(6)
        for _trial in range(10):
            try:
                a_inv = np.linalg.inv(h_ll + lam * eye3)
                w = np.einsum("nij,njk->nik", h_pl, a_inv)
                schur = h_pp + lam * np.eye(6) - np.einsum("nij,nkj->ik", w, h_pl)
                rhs = -b_p + np.einsum("nij,nj->i", w, b_l)
                dp = np.linalg.solve(schur, rhs)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            dl = np.einsum("nij,nj->ni", a_inv, -b_l - np.einsum("nji,j->ni", h_pl, dp))
            candidate_pose = se3_exp(dp) @ pose
            candidate_pts = pts + dl
            _, new_errors = _reprojection(candidate_pose, candidate_pts, obs, focal, centre)
            new_cost = _cost(new_errors)
            predicted = 0.5 * (
                float(dp @ (lam * dp - b_p)) + float(np.sum(dl * (lam * dl - b_l)))
            )
            rho = (cost - new_cost) / predicted if predicted > 0 else -1.0
            if rho > 0 and np.isfinite(new_cost):
                pose, pts, cost = candidate_pose, candidate_pts, new_cost
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break
            lam *= nu
            nu *= 2.0
        if not accepted or np.linalg.norm(dp) < 1e-14:
            break
    return Adjustment(pose, pts)