# slamkit

Building blocks for visual SLAM in plain Python with NumPy (and imageio for
reading and writing images).

- `slamkit.geometry`: rotations as angle-axis, matrices and quaternions
  (stored `(x, y, z, w)`), Euler angles, 4x4 rigid transforms
  (`make_isometry`, `transform_point`).
- `slamkit.lie`: the `SE3` class (`matrix`, `inverse`, `log`, `adjoint`,
  `act`, composition with `@`), `so3_hat`, `so3_vee`, `so3_exp`, `so3_log`,
  `se3_hat`, `se3_vee`, `se3_exp`, `se3_from_quaternion` and the
  approximate inverse right Jacobian `jr_inv`. Twists are ordered
  translation first, `(upsilon, omega)`.
- `slamkit.curve_fitting`: `generate_data`, `curve_residuals` and
  `fit_curve`, which fits `y = exp(a*x^2 + b*x + c)` by
  Levenberg-Marquardt (`"lm"`) or Gauss-Newton (`"gn"`).
- `slamkit.pose_graph`: `Vertex`, `Edge` and `PoseGraph` (`error`,
  `optimize`), `read_g2o` and `write_g2o` for the g2o text format
  (`VERTEX_SE3:QUAT` / `EDGE_SE3:QUAT`), and
  `g2o_to_gtsam_information` / `gtsam_to_g2o_information`, which swap the
  translation and rotation blocks of a 6x6 information matrix. The vertex
  with id 0 is fixed when a graph is read.
- `slamkit.epipolar`: `pixel_to_camera`, `filter_matches` (keeps distances
  at most `max(2 * min, 30)`), `find_fundamental_matrix` (normalized
  eight-point), `find_essential_matrix`, `decompose_essential_matrix`,
  `triangulate_points`, `recover_pose` (cheirality check, returns a
  `PoseRecovery` of inlier count, rotation, translation and mask) and
  `triangulate`.
- `slamkit.registration`: `depth_to_point`, `icp_svd` (3D-3D alignment by
  SVD), `bundle_adjust_3d3d` (Gauss-Newton on the pose) and
  `bundle_adjust_3d2d` (Levenberg-Marquardt on pose and points, returns an
  `Adjustment` of pose and refined points).
- `slamkit.pointcloud`: `CameraIntrinsics`, `read_poses`,
  `depth_to_cloud`, `statistical_outlier_removal`, `voxel_filter` and
  `write_pcd` (binary PCD with `x y z rgb` fields).
- `slamkit.dense_mapping`: monocular dense depth estimation for a 640x480
  reference image: `read_dataset`, `px2cam`, `cam2px`, `inside`,
  `bilinear`, `ncc`, `epipolar_search`, `update_depth_filter` and
  `update`.
- `slamkit.direct`: the `Measurement` class, `project_2d_to_3d`,
  `project_3d_to_2d`, `pixel_value`, `select_gradient_pixels` and
  `estimate_pose_direct` (photometric pose estimation by
  Levenberg-Marquardt).

## Installation

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Library use

```python
import numpy as np
from slamkit.geometry import angle_axis_to_matrix, make_isometry, transform_point
from slamkit.lie import se3_exp

rotation = angle_axis_to_matrix(np.pi / 4, [0, 0, 1])
transform = make_isometry(rotation, [1, 3, 4])
print(transform_point(transform, [1, 0, 0]))

pose = se3_exp(np.array([1e-4, 0, 0, 0, 0, 0]))
composed = pose @ pose.inverse()
print(composed.log())
```

Optimising a pose graph from a g2o file:

```python
from slamkit.pose_graph import read_g2o, write_g2o

with open("sphere.g2o") as stream:
    graph = read_g2o(stream)
print("initial error:", graph.error())
print("final error:", graph.optimize(30))
with open("result.g2o", "w") as stream:
    write_g2o(graph, stream)
```

Fitting a curve:

```python
from slamkit.curve_fitting import generate_data, fit_curve

xs, ys = generate_data(1.0, 2.0, 1.0, 100, 1.0, 0)
print(fit_curve(xs, ys, [0.0, 0.0, 0.0], 100, "lm"))
```

## Commands

```
slamkit-curve-fitting [--count N] [--sigma S] [--seed N] [--iterations N] [--method lm|gn]
slamkit-pose-graph sphere.g2o [--output result.g2o] [--iterations 30]
slamkit-pointcloud [directory] [--count 5] [--output map.pcd] [--filter] [--max-depth D]
slamkit-dense-mapping path_to_dataset [--output depth.png]
slamkit-direct path_to_dataset [--frames 10]
```

- `slamkit-curve-fitting` generates noisy samples of
  `exp(x^2 + 2x + 1)`, prints them, fits the curve and prints the solve
  time, the final cost and the estimated parameters.
- `slamkit-pose-graph` reads a g2o pose graph, prints the vertex and edge
  counts, optimises it, prints the initial and final error and writes the
  result to `--output` (default `result.g2o` in the working directory).
- `slamkit-pointcloud` reads `pose.txt`, `color/<i>.png` and
  `depth/<i>.pgm` from the directory (default the working directory),
  joins the frames into one point cloud and saves it as binary PCD. With
  `--filter` it drops raw depths of 7000 and above (unless `--max-depth`
  is given), removes statistical outliers per frame and thins the cloud
  with a 0.01 voxel filter.
- `slamkit-dense-mapping` reads
  `first_200_frames_traj_over_table_input_sequence.txt` and the images it
  lists under `images/`, refines a depth map for the first image and saves
  it as an 8-bit PNG with depths rounded and clipped to 0-255.
- `slamkit-direct` reads `associate.txt` from the dataset directory, takes
  high-gradient pixels with valid depth from the first frame and prints
  the estimated camera pose `Tcw` for each following frame.

Missing required arguments make a command print its usage and exit with a
non-zero status; `slamkit-pose-graph`, `slamkit-pointcloud`,
`slamkit-dense-mapping` and `slamkit-direct` also print a message and
return 1 when their main input file cannot be read.

## What the package does not do

- It does not detect or match image features. The epipolar and
  registration functions take matched point coordinates (and match
  distances, for `filter_matches`) that the caller supplies, and have no
  command of their own.
- It does not display images, matches or point clouds; the commands only
  print text and write files.
- It has no bag-of-words vocabulary, loop-closure detection or occupancy
  (octree) mapping.
- The pose-graph optimiser uses the Lie-algebra error model only; it has
  no other factor types or robust kernels.