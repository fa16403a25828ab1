import math

import numpy as np
import pytest

from slamkit.geometry import angle_axis_to_matrix
from slamkit.lie import (
    SE3,
    jr_inv,
    se3_exp,
    se3_from_quaternion,
    se3_hat,
    se3_vee,
    so3_exp,
    so3_hat,
    so3_log,
    so3_vee,
)


def test_hat_is_cross_product():
    a = np.array([0.3, -1.2, 2.0])
    b = np.array([1.0, 0.5, -0.7])
    assert np.allclose(so3_hat(a) @ b, np.cross(a, b))
    assert np.allclose(so3_hat(a), -so3_hat(a).T)


def test_hat_vee_round_trip():
    w = np.array([0.1, 0.2, 0.3])
    assert np.allclose(so3_vee(so3_hat(w)), w)


def test_exp_matches_angle_axis():
    assert np.allclose(so3_exp((0, 0, math.pi / 2)), angle_axis_to_matrix(math.pi / 2, (0, 0, 1)))


@pytest.mark.parametrize(
    "omega", [(0.0, 0.0, 0.0), (1e-12, 0.0, 0.0), (0.3, -0.2, 0.9), (0.0, 0.0, math.pi / 2), (2.5, 1.0, -0.4)]
)
def test_so3_log_exp_round_trip(omega):
    r = so3_exp(omega)
    assert np.allclose(so3_log(r), omega, atol=1e-9)


def test_so3_log_at_pi():
    r = angle_axis_to_matrix(math.pi, (0, 1, 0))
    assert np.allclose(so3_exp(so3_log(r)), r)
    assert np.isclose(np.linalg.norm(so3_log(r)), math.pi)


def test_se3_hat_vee_round_trip():
    xi = np.array([1.0, -2.0, 0.5, 0.1, 0.2, -0.3])
    assert np.allclose(se3_vee(se3_hat(xi)), xi)


@pytest.mark.parametrize(
    "xi",
    [
        (0.0, 0.0, 0.0, 0.0, 0.0, 0.0),
        (1.0, 0.0, 0.0, 0.0, 0.0, 0.0),
        (0.5, -0.3, 2.0, 0.2, 0.7, -1.1),
        (1e-4, 0.0, 0.0, 0.0, 0.0, math.pi / 2),
    ],
)
def test_se3_log_exp_round_trip(xi):
    assert np.allclose(se3_exp(xi).log(), xi, atol=1e-9)


def test_log_puts_translation_first():
    pose = SE3(np.eye(3), (1.0, 0.0, 0.0))
    assert np.allclose(pose.log(), [1.0, 0.0, 0.0, 0.0, 0.0, 0.0])


def test_pure_translation_update():
    update = np.zeros(6)
    update[0] = 1e-4
    r = angle_axis_to_matrix(math.pi / 2, (0, 0, 1))
    updated = se3_exp(update) @ SE3(r, (1, 0, 0))
    assert np.allclose(updated.rotation, r)
    assert np.allclose(updated.translation, [1.0 + 1e-4, 0.0, 0.0])


def test_inverse_composes_to_identity():
    pose = se3_exp([0.4, 1.0, -0.5, 0.3, -0.6, 0.2])
    ident = pose @ pose.inverse()
    assert np.allclose(ident.matrix(), np.eye(4))


def test_matrix_matches_composition():
    a = se3_exp([0.1, 0.2, 0.3, 0.4, 0.5, 0.6])
    b = se3_exp([-0.3, 0.0, 0.8, 0.0, -0.2, 1.0])
    assert np.allclose((a @ b).matrix(), a.matrix() @ b.matrix())


def test_act_matches_homogeneous():
    pose = se3_exp([0.4, 1.0, -0.5, 0.3, -0.6, 0.2])
    p = np.array([1.0, 2.0, 3.0])
    expected = (pose.matrix() @ np.append(p, 1.0))[:3]
    assert np.allclose(pose.act(p), expected)
    assert np.allclose(pose.act(np.stack([p, p]))[1], expected)


def test_adjoint_property():
    pose = se3_exp([0.4, 1.0, -0.5, 0.3, -0.6, 0.2])
    xi = np.array([0.05, -0.1, 0.2, 0.01, 0.03, -0.02])
    lhs = pose @ se3_exp(xi) @ pose.inverse()
    rhs = se3_exp(pose.adjoint() @ xi)
    assert np.allclose(lhs.matrix(), rhs.matrix())


def test_from_quaternion_normalizes():
    q = np.array([0.0, 0.0, math.sin(math.pi / 4), math.cos(math.pi / 4)])
    a = se3_from_quaternion(q, (1, 0, 0))
    b = se3_from_quaternion(q * 3.0, (1, 0, 0))
    assert np.allclose(a.rotation, b.rotation)
    assert np.allclose(a.rotation, angle_axis_to_matrix(math.pi / 2, (0, 0, 1)))


def test_jr_inv_identity():
    assert np.allclose(jr_inv(SE3()), np.eye(6))


def test_jr_inv_structure():
    pose = se3_exp([0.2, 0.1, -0.4, 0.3, 0.0, 0.1])
    j = jr_inv(pose)
    assert np.allclose(j[3:, :3], 0.0)
    assert np.allclose(j[:3, :3], j[3:, 3:])


def test_matmul_with_non_se3_raises():
    with pytest.raises(TypeError):
        SE3() @ 3


def test_bad_shape_raises():
    with pytest.raises(ValueError):
        SE3(np.eye(2))
    with pytest.raises(ValueError):
        se3_exp([1, 2, 3])