"""Dense monocular depth estimation along epipolar lines with NCC matching.

Each reference pixel carries a Gaussian depth estimate that is fused with
triangulated depths from later frames of known pose.
"""

from __future__ import annotations

import argparse
import math
from pathlib import Path

import imageio.v3 as iio
import numpy as np

from slamkit.lie import SE3, se3_from_quaternion

BORDER = 20
WIDTH = 640
HEIGHT = 480
FX = 481.2
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW = 2
NCC_AREA = (2 * NCC_WINDOW + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0
NCC_THRESHOLD = 0.85
SEARCH_STEP = 0.7
MAX_HALF_LENGTH = 100.0
INIT_DEPTH = 3.0
INIT_COV2 = 3.0
TRAJECTORY_FILE = "first_200_frames_traj_over_table_input_sequence.txt"

_DX, _DY = (
    g.ravel().astype(float)
    for g in np.meshgrid(
        np.arange(-NCC_WINDOW, NCC_WINDOW + 1), np.arange(-NCC_WINDOW, NCC_WINDOW + 1), indexing="ij"
    )
)


def read_dataset(path):
    """Image paths and camera-to-world poses listed in the trajectory file."""
    base = Path(path)
    files, poses = [], []
    with open(base / TRAJECTORY_FILE, encoding="utf-8") as fin:
        for line_no, line in enumerate(fin, start=1):
            parts = line.split()
            if not parts:
                continue
            if len(parts) < 8:
                raise ValueError(f"line {line_no}: expected an image name and 7 pose values")
            try:
                data = [float(v) for v in parts[1:8]]
            except ValueError as exc:
                raise ValueError(f"line {line_no}: bad number: {exc}") from None
            files.append(str(base / "images" / parts[0]))
            poses.append(se3_from_quaternion(data[3:7], data[0:3]))
    return files, poses


def px2cam(px) -> np.ndarray:
    """Point on the normalized image plane of a pixel."""
    return np.array([(px[0] - CX) / FX, (px[1] - CY) / FY, 1.0])


def cam2px(point) -> np.ndarray:
    """Pixel of a point in the camera frame."""
    p = np.asarray(point, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.array([p[0] * FX / p[2] + CX, p[1] * FY / p[2] + CY])


def inside(point) -> bool:
    """Whether a pixel lies inside the image minus its border."""
    x, y = float(point[0]), float(point[1])
    return x >= BORDER and y >= BORDER and x + BORDER < WIDTH and y + BORDER <= HEIGHT


def _gray(image) -> np.ndarray:
    img = np.asarray(image)
    if img.ndim != 2:
        raise ValueError(f"image must be single-channel, got shape {img.shape}")
    return img


def _bilinear_many(image, xs, ys) -> np.ndarray:
    img = _gray(image)
    h, w = img.shape
    xi = np.trunc(xs).astype(np.intp)
    yi = np.trunc(ys).astype(np.intp)
    if np.min(xs) < 0 or np.min(ys) < 0 or np.max(xi) + 1 >= w or np.max(yi) + 1 >= h:
        raise ValueError("interpolation window lies outside the image")
    xx = xs - np.floor(xs)
    yy = ys - np.floor(ys)
    d = img.astype(float)
    return (
        (1 - xx) * (1 - yy) * d[yi, xi]
        + xx * (1 - yy) * d[yi, xi + 1]
        + (1 - xx) * yy * d[yi + 1, xi]
        + xx * yy * d[yi + 1, xi + 1]
    ) / 255.0


def bilinear(image, point) -> float:
    """Bilinearly interpolated grey value in [0, 1] at a sub-pixel point."""
    xs = np.array([float(point[0])])
    ys = np.array([float(point[1])])
    return float(_bilinear_many(image, xs, ys)[0])


def ncc(ref, curr, pt_ref, pt_curr) -> float:
    """Zero-mean normalized cross-correlation of the windows around two points."""
    ref_img = _gray(ref)
    xr = np.trunc(_DX + pt_ref[0]).astype(np.intp)
    yr = np.trunc(_DY + pt_ref[1]).astype(np.intp)
    h, w = ref_img.shape
    if xr.min() < 0 or yr.min() < 0 or xr.max() >= w or yr.max() >= h:
        raise ValueError("reference window lies outside the image")
    values_ref = ref_img[yr, xr].astype(float) / 255.0
    values_curr = _bilinear_many(curr, _DX + pt_curr[0], _DY + pt_curr[1])
    a = values_ref - values_ref.sum() / NCC_AREA
    b = values_curr - values_curr.sum() / NCC_AREA
    return float(np.sum(a * b) / math.sqrt(np.sum(a * a) * np.sum(b * b) + 1e-10))


def epipolar_search(ref, curr, t_c_r: SE3, pt_ref, depth_mu, depth_cov):
    """Best NCC match of ``pt_ref`` along its epipolar segment in ``curr``, or None.

    ``depth_cov`` is the standard deviation of the current depth estimate;
    the segment spans three of them around ``depth_mu``.
    """
    f_ref = px2cam(pt_ref)
    f_ref /= np.linalg.norm(f_ref)
    px_mean = cam2px(t_c_r.act(f_ref * depth_mu))
    d_min = max(depth_mu - 3 * depth_cov, 0.1)
    d_max = depth_mu + 3 * depth_cov
    px_min = cam2px(t_c_r.act(f_ref * d_min))
    px_max = cam2px(t_c_r.act(f_ref * d_max))

    line = px_max - px_min
    length = float(np.linalg.norm(line))
    direction = line / length if length > 0 else np.zeros(2)
    half_length = min(0.5 * length, MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px = None
    step = -half_length
    while step <= half_length:
        px = px_mean + step * direction
        if inside(px):
            score = ncc(ref, curr, pt_ref, px)
            if score > best_ncc:
                best_ncc = score
                best_px = px
        step += SEARCH_STEP
    if best_ncc < NCC_THRESHOLD:
        return None
    return best_px


def update_depth_filter(pt_ref, pt_curr, t_c_r: SE3, depth, depth_cov):
    """Triangulate the match and fuse it into the depth maps at ``pt_ref``.

    The maps are updated in place; the fused mean and variance are returned.
    """
    t_r_c = t_c_r.inverse()
    f_ref = px2cam(pt_ref)
    f_ref /= np.linalg.norm(f_ref)
    f_curr = px2cam(pt_curr)
    f_curr /= np.linalg.norm(f_curr)

    t = t_r_c.translation
    t_norm = float(np.linalg.norm(t))
    if t_norm == 0.0:
        raise ValueError("the two frames share a camera centre; depth cannot be triangulated")
    f2 = t_r_c.rotation @ f_curr
    b0, b1 = float(t @ f_ref), float(t @ f2)
    a0 = float(f_ref @ f_ref)
    a2 = float(f_ref @ f2)
    a1 = -a2
    a3 = -float(f2 @ f2)
    det = a0 * a3 - a1 * a2
    lambda0 = (a3 * b0 - a1 * b1) / det
    lambda1 = (-a2 * b0 + a0 * b1) / det
    xm = lambda0 * f_ref
    xn = t + lambda1 * f2
    depth_estimation = float(np.linalg.norm((xm + xn) / 2.0))

    p = f_ref * depth_estimation
    a = p - t
    a_norm = float(np.linalg.norm(a))
    alpha = math.acos(max(-1.0, min(1.0, float(f_ref @ t) / t_norm)))
    beta = math.acos(max(-1.0, min(1.0, -float(a @ t) / (a_norm * t_norm))))
    beta_prime = beta + math.atan(1.0 / FX)
    gamma = math.pi - alpha - beta_prime
    p_prime = t_norm * math.sin(beta_prime) / math.sin(gamma)
    d_cov2 = (p_prime - depth_estimation) ** 2

    row, col = int(pt_ref[1]), int(pt_ref[0])
    mu = float(depth[row, col])
    sigma2 = float(depth_cov[row, col])
    mu_fuse = (d_cov2 * mu + sigma2 * depth_estimation) / (sigma2 + d_cov2)
    sigma_fuse2 = (sigma2 * d_cov2) / (sigma2 + d_cov2)
    depth[row, col] = mu_fuse
    depth_cov[row, col] = sigma_fuse2
    return mu_fuse, sigma_fuse2


def update(ref, curr, t_c_r: SE3, depth, depth_cov) -> int:
    """Update every unconverged pixel of the depth maps in place; return how many matched."""
    for name, arr in (("ref", ref), ("curr", curr), ("depth", depth), ("depth_cov", depth_cov)):
        if np.shape(arr)[:2] != (HEIGHT, WIDTH):
            raise ValueError(f"{name} must be {HEIGHT}x{WIDTH}, got shape {np.shape(arr)}")
    region = depth_cov[BORDER:HEIGHT - BORDER, BORDER:WIDTH - BORDER]
    active = (region >= MIN_COV) & (region <= MAX_COV)
    xs, ys = np.nonzero(active.T)
    matched = 0
    for x, y in zip(xs + BORDER, ys + BORDER):
        pt_ref = np.array([float(x), float(y)])
        pt_curr = epipolar_search(
            ref, curr, t_c_r, pt_ref, float(depth[y, x]), math.sqrt(depth_cov[y, x])
        )
        if pt_curr is None:
            continue
        update_depth_filter(pt_ref, pt_curr, t_c_r, depth, depth_cov)
        matched += 1
    return matched


def _read_gray(path) -> np.ndarray:
    image = np.asarray(iio.imread(path))
    if image.ndim == 3:
        rgb = image[:, :, :3].astype(float)
        image = np.rint(rgb @ np.array([0.299, 0.587, 0.114]))
    return np.clip(image, 0, 255).astype(np.uint8)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Dense depth from a monocular sequence with known poses.")
    parser.add_argument("path", help="dataset directory")
    parser.add_argument("--output", default="depth.png")
    args = parser.parse_args(argv)

    try:
        files, poses = read_dataset(args.path)
    except (OSError, ValueError):
        files, poses = [], []
    if not files:
        print("Reading image files failed!")
        return 1
    print(f"read total {len(files)} files.")

    try:
        ref = _read_gray(files[0])
    except OSError:
        print("Reading image files failed!")
        return 1
    pose_ref = poses[0]
    depth = np.full((HEIGHT, WIDTH), INIT_DEPTH)
    depth_cov = np.full((HEIGHT, WIDTH), INIT_COV2)

    for index in range(1, len(files)):
        print(f"*** loop {index} ***")
        try:
            curr = _read_gray(files[index])
        except OSError:
            continue
        t_c_r = poses[index].inverse() @ pose_ref
        update(ref, curr, t_c_r, depth, depth_cov)

    print("estimation returns, saving depth map ...")
    iio.imwrite(args.output, np.clip(np.rint(depth), 0, 255).astype(np.uint8))
    print("done.")
    return 0