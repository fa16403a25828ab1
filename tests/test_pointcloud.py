import io
import math

import imageio.v3 as iio
import numpy as np
import pytest

from slamkit.geometry import angle_axis_to_matrix, make_isometry
from slamkit.pointcloud import (
    CameraIntrinsics,
    depth_to_cloud,
    main,
    read_poses,
    statistical_outlier_removal,
    voxel_filter,
    write_pcd,
)

UNIT = CameraIntrinsics(fx=1.0, fy=1.0, cx=0.0, cy=0.0, depth_scale=1.0)


def _read_pcd(path):
    data = path.read_bytes()
    marker = b"DATA binary\n"
    end = data.index(marker) + len(marker)
    header = data[:end].decode("ascii")
    dtype = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])
    return header, np.frombuffer(data[end:], dtype=dtype)


def _write_pgm16(path, image):
    h, w = image.shape
    path.write_bytes(f"P5\n{w} {h}\n65535\n".encode("ascii") + image.astype(">u2").tobytes())


def test_read_poses_translation_and_rotation():
    s = math.sqrt(0.5)
    text = f"1 2 3 0 0 0 1\n0 0 0 0 0 {s} {s}\n"
    poses = read_poses(io.StringIO(text), 2)
    assert len(poses) == 2
    np.testing.assert_allclose(poses[0], make_isometry(np.eye(3), [1, 2, 3]))
    np.testing.assert_allclose(poses[1][:3, :3], angle_axis_to_matrix(math.pi / 2, [0, 0, 1]), atol=1e-12)


def test_read_poses_too_few_values():
    with pytest.raises(ValueError):
        read_poses(io.StringIO("1 2 3 0 0 0"), 1)


def test_read_poses_bad_number():
    with pytest.raises(ValueError):
        read_poses(io.StringIO("1 2 x 0 0 0 1"), 1)


def test_depth_to_cloud_skips_missing_depth():
    color = np.arange(18, dtype=np.uint8).reshape(2, 3, 3)
    depth = np.array([[0, 2, 4], [1, 0, 3]], dtype=np.uint16)
    points, colors = depth_to_cloud(color, depth, np.eye(4), UNIT)
    np.testing.assert_allclose(points, [[2, 0, 2], [8, 0, 4], [0, 1, 1], [6, 3, 3]])
    np.testing.assert_array_equal(colors, color[[0, 0, 1, 1], [1, 2, 0, 2]])


def test_depth_to_cloud_max_depth_drops_far_readings():
    color = np.zeros((2, 3, 3), dtype=np.uint8)
    depth = np.array([[0, 2, 4], [1, 0, 3]], dtype=np.uint16)
    points, colors = depth_to_cloud(color, depth, np.eye(4), UNIT, max_depth=3)
    np.testing.assert_allclose(points[:, 2], [2, 1])
    assert len(colors) == len(points)


def test_depth_to_cloud_applies_pose():
    color = np.zeros((2, 2, 3), dtype=np.uint8)
    depth = np.array([[1, 2], [3, 4]], dtype=np.uint16)
    base, _ = depth_to_cloud(color, depth, np.eye(4), UNIT)
    shifted, _ = depth_to_cloud(color, depth, make_isometry(np.eye(3), [10, -1, 0.5]), UNIT)
    np.testing.assert_allclose(shifted - base, np.tile([10, -1, 0.5], (4, 1)))


def test_depth_to_cloud_shape_mismatch():
    with pytest.raises(ValueError):
        depth_to_cloud(np.zeros((2, 2, 3)), np.ones((3, 3)), np.eye(4), UNIT)


def test_statistical_outlier_removal_drops_far_point():
    rng = np.random.default_rng(1)
    cluster = rng.random((60, 3))
    points = np.vstack((cluster, [[100.0, 100.0, 100.0]]))
    mask = statistical_outlier_removal(points, 10, 1.0)
    assert not mask[-1]
    assert mask[:-1].all()


def test_statistical_outlier_removal_single_point_kept():
    np.testing.assert_array_equal(statistical_outlier_removal([[1.0, 2.0, 3.0]]), [True])


def test_statistical_outlier_removal_bad_k():
    with pytest.raises(ValueError):
        statistical_outlier_removal(np.zeros((3, 3)), 0)


def test_voxel_filter_averages_within_voxel():
    points = [[0.001, 0.001, 0.001], [0.003, 0.005, 0.007], [0.5, 0.5, 0.5]]
    colors = np.array([[0, 0, 0], [10, 20, 30], [1, 2, 3]], dtype=np.uint8)
    out_points, out_colors = voxel_filter(points, colors, 0.01)
    assert out_points.shape == (2, 3)
    np.testing.assert_allclose(out_points[0], [0.002, 0.003, 0.004])
    np.testing.assert_allclose(out_points[1], [0.5, 0.5, 0.5])
    np.testing.assert_array_equal(out_colors, [[5, 10, 15], [1, 2, 3]])


def test_voxel_filter_rejects_bad_leaf():
    with pytest.raises(ValueError):
        voxel_filter(np.zeros((1, 3)), np.zeros((1, 3)), 0.0)


def test_voxel_filter_rejects_mismatched_colors():
    with pytest.raises(ValueError):
        voxel_filter(np.zeros((2, 3)), np.zeros((1, 3)), 0.1)


def test_write_pcd_round_trip(tmp_path):
    points = np.array([[1.5, -2.0, 3.25], [0.0, 0.5, -1.0]])
    colors = np.array([[10, 20, 30], [255, 0, 128]], dtype=np.uint8)
    path = tmp_path / "cloud.pcd"
    write_pcd(path, points, colors)
    header, records = _read_pcd(path)
    assert "POINTS 2" in header
    assert "FIELDS x y z rgb" in header
    np.testing.assert_allclose(np.column_stack((records["x"], records["y"], records["z"])), points)
    rgb = records["rgb"]
    np.testing.assert_array_equal((rgb >> 16) & 255, colors[:, 0])
    np.testing.assert_array_equal((rgb >> 8) & 255, colors[:, 1])
    np.testing.assert_array_equal(rgb & 255, colors[:, 2])


def test_main_builds_cloud(tmp_path):
    (tmp_path / "pose.txt").write_text("0 0 0 0 0 0 1\n", encoding="utf-8")
    (tmp_path / "color").mkdir()
    (tmp_path / "depth").mkdir()
    color = np.arange(18, dtype=np.uint8).reshape(2, 3, 3)
    iio.imwrite(tmp_path / "color" / "1.png", color)
    depth = np.array([[0, 1000, 2000], [500, 0, 1500]], dtype=np.uint16)
    _write_pgm16(tmp_path / "depth" / "1.pgm", depth)
    output = tmp_path / "map.pcd"
    assert main([str(tmp_path), "--count", "1", "--output", str(output)]) == 0
    header, records = _read_pcd(output)
    assert "POINTS 4" in header
    assert len(records) == 4


def test_main_missing_pose_file(tmp_path):
    assert main([str(tmp_path), "--output", str(tmp_path / "map.pcd")]) == 1