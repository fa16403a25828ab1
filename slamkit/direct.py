"""Direct (photometric) camera pose estimation on RGB-D frames.

Pixels of a reference frame with known depth become world points that carry
their grey value. The pose of a new frame is found by minimizing the
difference between those grey values and the new image sampled at the
reprojected points.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path

import imageio.v3 as iio
import numpy as np

from slamkit.lie import SE3, se3_exp

BORDER = 10
GRADIENT_THRESHOLD = 50.0
EDGE_MARGIN = 4.0
FX = 518.0
FY = 519.0
CX = 325.5
CY = 253.5
DEPTH_SCALE = 1000.0


@dataclass(frozen=True, eq=False)
class Measurement:
    """A world point and the grey value observed for it in the reference frame."""

    pos_world: np.ndarray
    grayscale: float

    def __post_init__(self):
        pos = np.asarray(self.pos_world, dtype=float)
        if pos.shape != (3,):
            raise ValueError(f"pos_world must have shape (3,), got {pos.shape}")
        object.__setattr__(self, "pos_world", pos.copy())
        object.__setattr__(self, "grayscale", float(self.grayscale))


def project_2d_to_3d(x, y, d, fx, fy, cx, cy, scale) -> np.ndarray:
    """Camera-frame point of pixel ``(x, y)`` with raw depth ``d``."""
    zz = float(d) / scale
    return np.array([zz * (x - cx) / fx, zz * (y - cy) / fy, zz])


def project_3d_to_2d(x, y, z, fx, fy, cx, cy) -> np.ndarray:
    """Pixel of a camera-frame point."""
    return np.array([fx * x / z + cx, fy * y / z + cy])


def _gray(image) -> np.ndarray:
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError(f"image must be single-channel, got shape {img.shape}")
    return img


def _interpolate(img: np.ndarray, xs: np.ndarray, ys: np.ndarray) -> np.ndarray:
    h, w = img.shape
    if len(xs) == 0:
        return np.zeros(0)
    if not (np.all(np.isfinite(xs)) and np.all(np.isfinite(ys))):
        raise ValueError("sample points must be finite")
    if np.min(xs) < 0 or np.min(ys) < 0:
        raise ValueError("sample point lies outside the image")
    xi = np.trunc(xs).astype(np.intp)
    yi = np.trunc(ys).astype(np.intp)
    if np.max(xi) + 1 >= w or np.max(yi) + 1 >= h:
        raise ValueError("sample point lies outside the image")
    xx = xs - np.floor(xs)
    yy = ys - np.floor(ys)
    d = img.astype(float)
    return (
        (1 - xx) * (1 - yy) * d[yi, xi]
        + xx * (1 - yy) * d[yi, xi + 1]
        + (1 - xx) * yy * d[yi + 1, xi]
        + xx * yy * d[yi + 1, xi + 1]
    )


def pixel_value(image, x, y) -> float:
    """Bilinearly interpolated grey value at a sub-pixel position."""
    img = _gray(image)
    return float(_interpolate(img, np.array([float(x)]), np.array([float(y)]))[0])


def select_gradient_pixels(gray, depth, fx=FX, fy=FY, cx=CX, cy=CY, scale=DEPTH_SCALE) -> list:
    """Measurements for pixels with a strong image gradient and a valid depth.

    Pixels within 10 of the border are skipped; the result is ordered by
    column, then by row.
    """
    g = _gray(gray).astype(np.int64)
    d = _gray(depth)
    if g.shape != d.shape:
        raise ValueError("gray and depth images must have the same shape")
    rows, cols = g.shape
    if rows <= 2 * BORDER or cols <= 2 * BORDER:
        return []
    ys_slice = slice(BORDER, rows - BORDER)
    xs_slice = slice(BORDER, cols - BORDER)
    dx = g[ys_slice, BORDER + 1:cols - BORDER + 1] - g[ys_slice, BORDER - 1:cols - BORDER - 1]
    dy = g[BORDER + 1:rows - BORDER + 1, xs_slice] - g[BORDER - 1:rows - BORDER - 1, xs_slice]
    keep = (np.hypot(dx, dy) >= GRADIENT_THRESHOLD) & (d[ys_slice, xs_slice] != 0)
    xs, ys = np.nonzero(keep.T)
    measurements = []
    for x, y in zip(xs + BORDER, ys + BORDER):
        p3d = project_2d_to_3d(int(x), int(y), int(d[y, x]), fx, fy, cx, cy, scale)
        measurements.append(Measurement(p3d, float(g[y, x])))
    return measurements


def _as_se3(pose) -> SE3:
    if pose is None:
        return SE3()
    if isinstance(pose, SE3):
        return SE3(pose.rotation, pose.translation)
    m = np.asarray(pose, dtype=float)
    if m.shape != (4, 4):
        raise ValueError(f"pose must be an SE3 or a 4x4 matrix, got shape {m.shape}")
    return SE3(m[:3, :3], m[:3, 3])


class _Problem:
    """Photometric residuals of a set of measurements against one image."""

    def __init__(self, points, grays, img, fx, fy, cx, cy):
        self.points = points
        self.grays = grays
        self.img = img
        self.fx, self.fy, self.cx, self.cy = fx, fy, cx, cy
        self.active = np.ones(len(points), dtype=bool)

    def project(self, pose: SE3):
        q = pose.act(self.points)
        with np.errstate(divide="ignore", invalid="ignore"):
            u = q[:, 0] * self.fx / q[:, 2] + self.cx
            v = q[:, 1] * self.fy / q[:, 2] + self.cy
        return q, u, v

    def evaluate(self, pose: SE3):
        """Errors for all measurements; those leaving the image are dropped for good."""
        q, u, v = self.project(pose)
        h, w = self.img.shape
        with np.errstate(invalid="ignore"):
            out = ~(np.isfinite(u) & np.isfinite(v))
            out |= (u - EDGE_MARGIN < 0) | (u + EDGE_MARGIN > w)
            out |= (v - EDGE_MARGIN < 0) | (v + EDGE_MARGIN > h)
        self.active &= ~out
        errors = np.zeros(len(self.points))
        idx = self.active
        errors[idx] = _interpolate(self.img, u[idx], v[idx]) - self.grays[idx]
        return float(np.sum(errors * errors)), errors, q, u, v

    def jacobian(self, q, u, v) -> np.ndarray:
        """Jacobians of the active errors w.r.t. a left twist (upsilon, omega)."""
        idx = self.active
        x, y = q[idx, 0], q[idx, 1]
        invz = 1.0 / q[idx, 2]
        invz2 = invz * invz
        fx, fy = self.fx, self.fy
        j_uv = np.zeros((int(idx.sum()), 2, 6))
        j_uv[:, 0, 0] = invz * fx
        j_uv[:, 0, 2] = -x * invz2 * fx
        j_uv[:, 0, 3] = -x * y * invz2 * fx
        j_uv[:, 0, 4] = (1 + x * x * invz2) * fx
        j_uv[:, 0, 5] = -y * invz * fx
        j_uv[:, 1, 1] = invz * fy
        j_uv[:, 1, 2] = -y * invz2 * fy
        j_uv[:, 1, 3] = -(1 + y * y * invz2) * fy
        j_uv[:, 1, 4] = x * y * invz2 * fy
        j_uv[:, 1, 5] = x * invz * fy
        ua, va = u[idx], v[idx]
        grad_u = (_interpolate(self.img, ua + 1, va) - _interpolate(self.img, ua - 1, va)) / 2
        grad_v = (_interpolate(self.img, ua, va + 1) - _interpolate(self.img, ua, va - 1)) / 2
        return grad_u[:, None] * j_uv[:, 0, :] + grad_v[:, None] * j_uv[:, 1, :]


def estimate_pose_direct(measurements, gray, camera_matrix, pose=None, iterations=30) -> SE3:
    """Camera pose ``Tcw`` minimizing the photometric error, by Levenberg-Marquardt.

    ``pose`` (an SE3 or 4x4 matrix, identity if None) is the starting guess.
    Measurements whose projection comes within 4 pixels of the image border
    are dropped from the problem.
    """
    if iterations < 0:
        raise ValueError("iterations must not be negative")
    k = np.asarray(camera_matrix, dtype=float)
    if k.shape != (3, 3):
        raise ValueError(f"camera_matrix must have shape (3, 3), got {k.shape}")
    img = _gray(gray).astype(float)
    current = _as_se3(pose)
    ms = list(measurements)
    if not ms:
        return current
    points = np.array([m.pos_world for m in ms])
    grays = np.array([m.grayscale for m in ms])
    problem = _Problem(points, grays, img, k[0, 0], k[1, 1], k[0, 2], k[1, 2])

    lam = None
    nu = 2.0
    for _ in range(iterations):
        chi, errors, q, u, v = problem.evaluate(current)
        if not problem.active.any():
            break
        jac = problem.jacobian(q, u, v)
        e = errors[problem.active]
        hessian = jac.T @ jac
        gradient = jac.T @ e
        if not np.all(np.isfinite(gradient)) or np.max(np.abs(gradient)) < 1e-14:
            break
        if lam is None:
            lam = 1e-5 * float(np.max(np.diag(hessian)))
            if lam <= 0.0:
                lam = 1e-5
        accepted = False
        step = np.zeros(6)
        for _trial in range(10):
            try:
                step = np.linalg.solve(hessian + lam * np.eye(6), -gradient)
            except np.linalg.LinAlgError:
                lam *= nu
                nu *= 2.0
                continue
            candidate = se3_exp(step) @ current
            new_chi, *_ = problem.evaluate(candidate)
            predicted = float(step @ (lam * step - gradient))
            rho = (chi - new_chi) / predicted if predicted > 0 else -1.0
            if rho > 0 and np.isfinite(new_chi):
                current = candidate
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                accepted = True
                break
            lam *= nu
            nu *= 2.0
        if not accepted or float(np.linalg.norm(step)) < 1e-12:
            break
    return current


def _to_gray(color: np.ndarray) -> np.ndarray:
    if color.ndim == 2:
        return color.astype(np.uint8)
    rgb = color[:, :, :3].astype(float)
    return np.clip(np.rint(rgb @ np.array([0.299, 0.587, 0.114])), 0, 255).astype(np.uint8)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Semi-dense direct method on an RGB-D sequence.")
    parser.add_argument("dataset", help="directory holding associate.txt")
    parser.add_argument("--frames", type=int, default=10)
    args = parser.parse_args(argv)

    base = Path(args.dataset)
    try:
        tokens = (base / "associate.txt").read_text(encoding="utf-8").split()
    except OSError:
        print("cannot find associate.txt", file=sys.stderr)
        return 1

    camera = np.array([[FX, 0.0, CX], [0.0, FY, CY], [0.0, 0.0, 1.0]])
    pose = SE3()
    measurements: list = []
    for index in range(args.frames):
        record = tokens[4 * index:4 * index + 4]
        if len(record) < 4:
            break
        print(f"*********** loop {index} ************")
        _, rgb_file, _, depth_file = record
        try:
            color = np.asarray(iio.imread(base / rgb_file))
            depth = np.asarray(iio.imread(base / depth_file))
        except OSError:
            continue
        gray = _to_gray(color)
        if index == 0:
            measurements = select_gradient_pixels(gray, depth, FX, FY, CX, CY, DEPTH_SCALE)
            print(f"add total {len(measurements)} measurements.")
            continue
        print(f"edges in graph: {len(measurements)}")
        pose = estimate_pose_direct(measurements, gray, camera, pose, 30)
        print(f"Tcw=\n{pose.matrix()}")
    return 0