"""Join RGB-D frames with known camera poses into one coloured point cloud.

Colour images are ``(H, W, 3)`` arrays and the output colours keep their
channel order. Depth images hold raw sensor units divided by ``depth_scale``.
"""

from __future__ import annotations

import argparse
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO

import imageio.v3 as iio
import numpy as np

from slamkit.geometry import make_isometry, quaternion_to_matrix, transform_point

_PCD_DTYPE = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics and the factor that turns raw depth into metres."""

    fx: float = 518.0
    fy: float = 519.0
    cx: float = 325.5
    cy: float = 253.5
    depth_scale: float = 1000.0


def _points(value, name: str) -> np.ndarray:
    arr = np.asarray(value, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"{name} must have shape (N, 3), got {arr.shape}")
    return arr


def _colors(value, count: int) -> np.ndarray:
    arr = np.asarray(value)
    if arr.shape != (count, 3):
        raise ValueError(f"colors must have shape ({count}, 3), got {arr.shape}")
    return arr


def read_poses(stream: IO[str], count: int = 5) -> list:
    """Read ``count`` poses ``tx ty tz qx qy qz qw`` as 4x4 transforms."""
    if count < 0:
        raise ValueError("count must not be negative")
    values = stream.read().split()
    needed = 7 * count
    if len(values) < needed:
        raise ValueError(f"expected {needed} pose values, found {len(values)}")
    try:
        data = np.array([float(v) for v in values[:needed]]).reshape(count, 7)
    except ValueError as exc:
        raise ValueError(f"bad pose value: {exc}") from None
    return [make_isometry(quaternion_to_matrix(row[3:7]), row[:3]) for row in data]


def depth_to_cloud(color, depth, pose, intrinsics: CameraIntrinsics = CameraIntrinsics(), max_depth=None):
    """World points and their colours for every pixel with a valid depth.

    A raw depth of zero means no measurement; readings at or above
    ``max_depth`` (raw units) are dropped when it is given.
    Returns ``(points, colors)`` in row-major pixel order.
    """
    rgb = np.asarray(color)
    raw = np.asarray(depth)
    if raw.ndim != 2:
        raise ValueError(f"depth must be a 2-D image, got shape {raw.shape}")
    if rgb.ndim != 3 or rgb.shape[2] < 3 or rgb.shape[:2] != raw.shape:
        raise ValueError("color must be an (H, W, 3) image matching the depth image")
    values = raw.astype(np.float64)
    valid = values > 0
    if max_depth is not None:
        valid &= values < max_depth
    v, u = np.nonzero(valid)
    z = values[v, u] / intrinsics.depth_scale
    x = (u - intrinsics.cx) * z / intrinsics.fx
    y = (v - intrinsics.cy) * z / intrinsics.fy
    points = transform_point(pose, np.column_stack((x, y, z)))
    colors = rgb[v, u, :3].astype(np.uint8)
    return points, colors


def statistical_outlier_removal(points, mean_k: int = 50, std_mul: float = 1.0) -> np.ndarray:
    """Boolean mask of the points kept by a statistical outlier filter.

    Each point's mean distance to its ``mean_k`` nearest neighbours is
    compared with the mean plus ``std_mul`` standard deviations of those
    distances over the whole cloud.
    """
    p = _points(points, "points")
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    n = len(p)
    if n < 2:
        return np.ones(n, dtype=bool)
    k = min(mean_k, n - 1)
    squared = np.einsum("ij,ij->i", p, p)
    mean_dist = np.empty(n)
    chunk = max(1, (1 << 22) // n)
    for start in range(0, n, chunk):
        block = p[start:start + chunk]
        d2 = squared[start:start + chunk, None] + squared[None, :] - 2.0 * (block @ p.T)
        np.maximum(d2, 0.0, out=d2)
        rows = np.arange(len(block))
        d2[rows, start + rows] = np.inf
        nearest = np.partition(d2, k - 1, axis=1)[:, :k]
        mean_dist[start:start + len(block)] = np.sqrt(nearest).mean(axis=1)
    threshold = mean_dist.mean() + std_mul * mean_dist.std(ddof=1)
    return mean_dist <= threshold


def voxel_filter(points, colors, leaf_size: float = 0.01):
    """Replace the points in each cubic voxel by their centroid and mean colour."""
    if leaf_size <= 0:
        raise ValueError("leaf_size must be positive")
    p = _points(points, "points")
    c = _colors(colors, len(p))
    if len(p) == 0:
        return p.copy(), c.astype(np.uint8)
    keys = np.floor(p / leaf_size).astype(np.int64)
    unique, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = np.asarray(inverse).ravel()
    point_sums = np.zeros((len(unique), 3))
    color_sums = np.zeros((len(unique), 3))
    np.add.at(point_sums, inverse, p)
    np.add.at(color_sums, inverse, c.astype(float))
    centroids = point_sums / counts[:, None]
    mean_colors = np.clip(np.rint(color_sums / counts[:, None]), 0, 255).astype(np.uint8)
    return centroids, mean_colors


def write_pcd(path, points, colors) -> None:
    """Save points with ``x y z rgb`` fields as a binary PCD file."""
    p = _points(points, "points")
    c = _colors(colors, len(p)).astype(np.uint32)
    n = len(p)
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        "FIELDS x y z rgb\n"
        "SIZE 4 4 4 4\n"
        "TYPE F F F F\n"
        "COUNT 1 1 1 1\n"
        f"WIDTH {n}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {n}\n"
        "DATA binary\n"
    )
    record = np.zeros(n, dtype=_PCD_DTYPE)
    record["x"] = p[:, 0]
    record["y"] = p[:, 1]
    record["z"] = p[:, 2]
    record["rgb"] = (np.uint32(255) << 24) | (c[:, 0] << 16) | (c[:, 1] << 8) | c[:, 2]
    with open(path, "wb") as fout:
        fout.write(header.encode("ascii"))
        fout.write(record.tobytes())


def _read_color(path: Path) -> np.ndarray:
    image = np.asarray(iio.imread(path))
    if image.ndim == 2:
        image = np.stack((image,) * 3, axis=-1)
    return image[:, :, :3]


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Join RGB-D frames into a point cloud.")
    parser.add_argument("directory", nargs="?", default=".", help="holds pose.txt, color/ and depth/")
    parser.add_argument("--count", type=int, default=5)
    parser.add_argument("--output", default="map.pcd")
    parser.add_argument("--filter", action="store_true", help="drop far depths, outliers and thin by voxels")
    parser.add_argument("--max-depth", type=float, default=None)
    args = parser.parse_args(argv)

    base = Path(args.directory)
    try:
        with open(base / "pose.txt", encoding="utf-8") as fin:
            poses = read_poses(fin, args.count)
    except FileNotFoundError:
        print("cannot find pose file", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"cannot read pose file: {exc}", file=sys.stderr)
        return 1

    intrinsics = CameraIntrinsics()
    max_depth = args.max_depth
    if max_depth is None and args.filter:
        max_depth = 7000.0

    print("converting images to point cloud ...")
    clouds, palettes = [], []
    for i, pose in enumerate(poses, start=1):
        print(f"converting image: {i}")
        try:
            color = _read_color(base / "color" / f"{i}.png")
            depth = np.asarray(iio.imread(base / "depth" / f"{i}.pgm"))
        except OSError as exc:
            print(f"cannot read image {i}: {exc}", file=sys.stderr)
            return 1
        points, colors = depth_to_cloud(color, depth, pose, intrinsics, max_depth)
        if args.filter and len(points):
            keep = statistical_outlier_removal(points, 50, 1.0)
            points, colors = points[keep], colors[keep]
        clouds.append(points)
        palettes.append(colors)

    points = np.concatenate(clouds) if clouds else np.zeros((0, 3))
    colors = np.concatenate(palettes) if palettes else np.zeros((0, 3), dtype=np.uint8)
    print(f"point cloud has {len(points)} points.")
    if args.filter:
        points, colors = voxel_filter(points, colors, 0.01)
        print(f"after filtering, point cloud has {len(points)} points.")
    write_pcd(args.output, points, colors)
    return 0