import io

import numpy as np
import pytest

from slamkit.lie import SE3, se3_exp
from slamkit.pose_graph import (
    Edge,
    PoseGraph,
    Vertex,
    g2o_to_gtsam_information,
    gtsam_to_g2o_information,
    main,
    read_g2o,
    write_g2o,
)

SAMPLE = (
    "VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\n"
    "VERTEX_SE3:QUAT 1 1 0 0 0 0 0 1\n"
    "EDGE_SE3:QUAT 0 1 1 0 0 0 0 0 2 "
    + " ".join(str(float(i + 1)) for i in range(21))
    + "\n"
)


def _truth_poses(count):
    poses = []
    for k in range(count):
        angle = 2 * np.pi * k / count
        xi = np.array([np.cos(angle) * 2, np.sin(angle) * 2, 0.1 * k, 0.0, 0.0, angle])
        poses.append(se3_exp(xi))
    return poses


def _ring_graph(count, perturb):
    rng = np.random.default_rng(3)
    truth = _truth_poses(count)
    graph = PoseGraph()
    for k, pose in enumerate(truth):
        noisy = pose
        if perturb and k > 0:
            noisy = se3_exp(rng.normal(0.0, 0.03, size=6)) @ pose
        graph.vertices[k] = Vertex(k, noisy, fixed=(k == 0))
    pairs = [(k, k + 1) for k in range(count - 1)] + [(count - 1, 0), (0, 2)]
    for i, j in pairs:
        graph.edges.append(Edge(i, j, truth[i].inverse() @ truth[j], np.eye(6)))
    return graph, truth


def test_read_counts_and_fixed_vertex():
    graph = read_g2o(io.StringIO(SAMPLE))
    assert list(graph.vertices) == [0, 1]
    assert len(graph.edges) == 1
    assert graph.vertices[0].fixed
    assert not graph.vertices[1].fixed


def test_read_normalizes_edge_quaternion():
    graph = read_g2o(io.StringIO(SAMPLE))
    rotation = graph.edges[0].measurement.rotation
    assert np.allclose(rotation, np.eye(3))


def test_read_information_is_symmetric_upper_triangle():
    graph = read_g2o(io.StringIO(SAMPLE))
    info = graph.edges[0].information
    assert np.allclose(info, info.T)
    assert info[0, 0] == 1.0
    assert info[0, 5] == 6.0
    assert info[5, 0] == 6.0


def test_write_read_round_trip():
    graph, _ = _ring_graph(6, perturb=True)
    buffer = io.StringIO()
    write_g2o(graph, buffer)
    lines = buffer.getvalue().splitlines()
    assert sum(line.startswith("VERTEX_SE3:QUAT") for line in lines) == 6
    assert sum(line.startswith("EDGE_SE3:QUAT") for line in lines) == len(graph.edges)
    again = read_g2o(io.StringIO(buffer.getvalue()))
    for vid, vertex in graph.vertices.items():
        assert np.allclose(again.vertices[vid].pose.matrix(), vertex.pose.matrix())
    for a, b in zip(graph.edges, again.edges):
        assert (a.source, a.target) == (b.source, b.target)
        assert np.allclose(a.measurement.matrix(), b.measurement.matrix())
        assert np.allclose(a.information, b.information)


def test_unknown_vertex_in_edge_raises():
    text = "VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\nEDGE_SE3:QUAT 0 7 " + " ".join(["0"] * 6 + ["1"] + ["1"] * 21)
    with pytest.raises(ValueError):
        read_g2o(io.StringIO(text))


def test_duplicate_vertex_raises():
    text = "VERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\nVERTEX_SE3:QUAT 0 0 0 0 0 0 0 1\n"
    with pytest.raises(ValueError):
        read_g2o(io.StringIO(text))


def test_short_vertex_line_raises():
    with pytest.raises(ValueError):
        read_g2o(io.StringIO("VERTEX_SE3:QUAT 0 1 2\n"))


def test_error_zero_for_consistent_graph():
    graph, _ = _ring_graph(5, perturb=False)
    assert graph.error() == pytest.approx(0.0, abs=1e-18)


def test_error_of_pure_translation_offset():
    graph = PoseGraph()
    graph.vertices[0] = Vertex(0, SE3(), fixed=True)
    graph.vertices[1] = Vertex(1, SE3(translation=[1.0, 0.0, 0.0]))
    graph.edges.append(Edge(0, 1, SE3(), np.eye(6)))
    assert graph.error() == pytest.approx(1.0)


def test_optimize_recovers_truth():
    graph, truth = _ring_graph(6, perturb=True)
    before = graph.error()
    after = graph.optimize(30)
    assert after < before
    assert after == pytest.approx(graph.error())
    assert after < 1e-10
    for k, pose in enumerate(truth):
        assert np.allclose(graph.vertices[k].pose.matrix(), pose.matrix(), atol=1e-5)


def test_optimize_keeps_fixed_vertex():
    graph, _ = _ring_graph(5, perturb=True)
    start = graph.vertices[0].pose.matrix().copy()
    graph.optimize(10)
    assert np.array_equal(graph.vertices[0].pose.matrix(), start)


def test_optimize_negative_iterations_raises():
    graph, _ = _ring_graph(4, perturb=False)
    with pytest.raises(ValueError):
        graph.optimize(-1)


def test_information_conversion_swaps_diagonal_blocks():
    m = np.arange(36, dtype=float).reshape(6, 6)
    converted = g2o_to_gtsam_information(m)
    assert np.array_equal(converted[:3, :3], m[3:, 3:])
    assert np.array_equal(converted[3:, 3:], m[:3, :3])
    assert np.array_equal(converted[:3, 3:], m[:3, 3:])
    assert np.array_equal(gtsam_to_g2o_information(converted), m)


def test_information_conversion_bad_shape():
    with pytest.raises(ValueError):
        g2o_to_gtsam_information(np.eye(3))


def test_main_writes_result(tmp_path):
    graph, _ = _ring_graph(5, perturb=True)
    source = tmp_path / "ring.g2o"
    with open(source, "w", encoding="utf-8") as fout:
        write_g2o(graph, fout)
    output = tmp_path / "out.g2o"
    assert main([str(source), "--output", str(output)]) == 0
    with open(output, encoding="utf-8") as fin:
        result = read_g2o(fin)
    assert len(result.vertices) == 5
    assert result.error() < graph.error()


def test_main_missing_file(tmp_path):
    assert main([str(tmp_path / "absent.g2o")]) == 1