[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "slamkit"
version = "0.1.0"
description = "Visual SLAM building blocks: rigid-body geometry, Lie groups, curve fitting, pose graphs, epipolar geometry, registration, point clouds, direct methods and dense depth mapping"
requires-python = ">=3.10"
dependencies = [
    "numpy",
    "imageio",
]
keywords = [
    "slam",
    "visual-odometry",
    "pose-graph",
    "lie-algebra",
    "epipolar-geometry",
    "icp",
    "bundle-adjustment",
    "point-cloud",
    "dense-mapping",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Image Processing",
    "Topic :: Scientific/Engineering :: Mathematics",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
slamkit-curve-fitting = "slamkit.curve_fitting:main"
slamkit-pose-graph = "slamkit.pose_graph:main"
slamkit-pointcloud = "slamkit.pointcloud:main"
slamkit-dense-mapping = "slamkit.dense_mapping:main"
slamkit-direct = "slamkit.direct:main"

[tool.hatch.build.targets.wheel]
packages = ["slamkit"]

[tool.hatch.build.targets.sdist]
include = [
    "slamkit",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"
