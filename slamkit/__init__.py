"""Visual SLAM building blocks: geometry, Lie groups, curve fitting, pose graphs, epipolar geometry, registration, point clouds, direct methods and dense depth mapping."""

__version__ = "0.1.0"

__all__ = [
    "curve_fitting",
    "dense_mapping",
    "direct",
    "epipolar",
    "geometry",
    "lie",
    "pointcloud",
    "pose_graph",
    "registration",
]