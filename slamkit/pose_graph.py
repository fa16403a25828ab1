"""Pose-graph optimization over SE(3) using the Lie-algebra error model.

Graphs are read from and written to the g2o text format with
``VERTEX_SE3:QUAT`` and ``EDGE_SE3:QUAT`` records.
"""

from __future__ import annotations

import argparse
import math
from dataclasses import dataclass, field
from typing import IO

import numpy as np

from slamkit.geometry import matrix_to_quaternion
from slamkit.lie import SE3, jr_inv, se3_from_quaternion, so3_exp

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"

_TRIU = np.triu_indices(6)


@dataclass
class Vertex:
    """A pose node; a fixed vertex is never moved by the optimizer."""

    id: int
    pose: SE3 = field(default_factory=SE3)
    fixed: bool = False


@dataclass
class Edge:
    """A relative-pose constraint from ``source`` to ``target``."""

    source: int
    target: int
    measurement: SE3 = field(default_factory=SE3)
    information: np.ndarray = field(default_factory=lambda: np.eye(6))

    def __post_init__(self):
        info = np.asarray(self.information, dtype=float)
        if info.shape != (6, 6):
            raise ValueError(f"information must have shape (6, 6), got {info.shape}")
        self.information = info.copy()


@dataclass
class _Linearization:
    src: np.ndarray
    tgt: np.ndarray
    ji: np.ndarray
    jj: np.ndarray
    info: np.ndarray
    gradient: np.ndarray
    diag_blocks: np.ndarray


@dataclass
class PoseGraph:
    """Vertices keyed by id, in insertion order, and the edges between them."""

    vertices: dict = field(default_factory=dict)
    edges: list = field(default_factory=list)

    def _check_edges(self) -> None:
        for edge in self.edges:
            for vid in (edge.source, edge.target):
                if vid not in self.vertices:
                    raise ValueError(f"edge refers to unknown vertex {vid}")

    def _edge_errors(self) -> np.ndarray:
        errors = np.zeros((len(self.edges), 6))
        for k, edge in enumerate(self.edges):
            ti = self.vertices[edge.source].pose
            tj = self.vertices[edge.target].pose
            errors[k] = (edge.measurement.inverse() @ ti.inverse() @ tj).log()
        return errors

    def error(self) -> float:
        """Sum over edges of e^T * information * e."""
        self._check_edges()
        if not self.edges:
            return 0.0
        errors = self._edge_errors()
        info = np.stack([e.information for e in self.edges])
        return float(np.einsum("ei,eij,ej->", errors, info, errors))

    def _linearize(self, index: dict, free: np.ndarray) -> _Linearization:
        count = len(self.edges)
        src = np.array([index[e.source] for e in self.edges], dtype=int)
        tgt = np.array([index[e.target] for e in self.edges], dtype=int)
        info = np.stack([e.information for e in self.edges])
        errors = np.zeros((count, 6))
        ji = np.zeros((count, 6, 6))
        jj = np.zeros((count, 6, 6))
        for k, edge in enumerate(self.edges):
            ti = self.vertices[edge.source].pose
            tj = self.vertices[edge.target].pose
            residual = edge.measurement.inverse() @ ti.inverse() @ tj
            errors[k] = residual.log()
            jac = jr_inv(residual) @ tj.inverse().adjoint()
            ji[k] = -jac
            jj[k] = jac
        n = len(index)
        weighted = np.einsum("eij,ej->ei", info, errors)
        gradient = np.zeros((n, 6))
        np.add.at(gradient, src, np.einsum("eji,ej->ei", ji, weighted))
        np.add.at(gradient, tgt, np.einsum("eji,ej->ei", jj, weighted))
        gradient[~free] = 0.0
        diag_blocks = np.zeros((n, 6, 6))
        np.add.at(diag_blocks, src, np.einsum("eki,ekl,elj->eij", ji, info, ji))
        np.add.at(diag_blocks, tgt, np.einsum("eki,ekl,elj->eij", jj, info, jj))
        diag_blocks[~free] = 0.0
        return _Linearization(src, tgt, ji, jj, info, gradient, diag_blocks)

    @staticmethod
    def _hessian_product(x, lin: _Linearization, lam: float, free) -> np.ndarray:
        r = np.einsum("eij,ej->ei", lin.ji, x[lin.src]) + np.einsum(
            "eij,ej->ei", lin.jj, x[lin.tgt]
        )
        w = np.einsum("eij,ej->ei", lin.info, r)
        out = np.zeros_like(x)
        np.add.at(out, lin.src, np.einsum("eji,ej->ei", lin.ji, w))
        np.add.at(out, lin.tgt, np.einsum("eji,ej->ei", lin.jj, w))
        out += lam * x
        out[~free] = 0.0
        return out

    def _solve(self, lin: _Linearization, lam: float, free) -> np.ndarray:
        n = len(free)
        blocks = lin.diag_blocks + lam * np.eye(6)
        blocks[~free] = np.eye(6)
        precond = np.linalg.inv(blocks)
        precond[~free] = 0.0
        rhs = -lin.gradient
        x = np.zeros((n, 6))
        r = rhs.copy()
        z = np.einsum("nij,nj->ni", precond, r)
        p = z.copy()
        rz = float(np.sum(r * z))
        tolerance = 1e-12 * max(float(np.linalg.norm(rhs)), 1e-300)
        for _ in range(max(1, min(6 * int(free.sum()), 2000))):
            if float(np.linalg.norm(r)) <= tolerance or rz == 0.0:
                break
            ap = self._hessian_product(p, lin, lam, free)
            denom = float(np.sum(p * ap))
            if denom <= 0.0:
                break
            alpha = rz / denom
            x += alpha * p
            r -= alpha * ap
            z = np.einsum("nij,nj->ni", precond, r)
            rz_new = float(np.sum(r * z))
            p = z + (rz_new / rz) * p
            rz = rz_new
        return x

    def _apply_update(self, order, dx, free) -> None:
        for vid, step, movable in zip(order, dx, free):
            if not movable:
                continue
            update = SE3(so3_exp(step[3:]), step[:3])
            vertex = self.vertices[vid]
            vertex.pose = update @ vertex.pose

    def optimize(self, iterations: int = 30) -> float:
        """Run Levenberg-Marquardt for at most ``iterations`` steps; return the final error."""
        if iterations < 0:
            raise ValueError("iterations must not be negative")
        self._check_edges()
        order = list(self.vertices)
        index = {vid: k for k, vid in enumerate(order)}
        free = np.array([not self.vertices[vid].fixed for vid in order], dtype=bool)
        chi = self.error()
        if not self.edges or not free.any():
            return chi
        lam = None
        nu = 2.0
        for _ in range(iterations):
            lin = self._linearize(index, free)
            if not np.all(np.isfinite(lin.gradient)) or np.max(np.abs(lin.gradient)) < 1e-14:
                break
            if lam is None:
                diag = np.diagonal(lin.diag_blocks, axis1=1, axis2=2)
                lam = 1e-5 * float(np.max(diag))
                if lam <= 0.0:
                    lam = 1e-5
            accepted = False
            dx = np.zeros((len(order), 6))
            for _trial in range(10):
                dx = self._solve(lin, lam, free)
                backup = {vid: self.vertices[vid].pose for vid in order}
                self._apply_update(order, dx, free)
                new_chi = self.error()
                predicted = float(np.sum(dx * (lam * dx - lin.gradient)))
                rho = (chi - new_chi) / predicted if predicted > 0 else -1.0
                if rho > 0 and math.isfinite(new_chi):
                    chi = new_chi
                    lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                    nu = 2.0
                    accepted = True
                    break
                for vid, pose in backup.items():
                    self.vertices[vid].pose = pose
                lam *= nu
                nu *= 2.0
            if not accepted or float(np.linalg.norm(dx)) < 1e-12:
                break
        return chi


def _floats(parts, line_no: int) -> list:
    try:
        return [float(v) for v in parts]
    except ValueError as exc:
        raise ValueError(f"line {line_no}: bad number: {exc}") from None


def _int(token: str, line_no: int) -> int:
    try:
        return int(token)
    except ValueError:
        raise ValueError(f"line {line_no}: bad vertex id {token!r}") from None


def read_g2o(stream: IO[str]) -> PoseGraph:
    """Read SE3 quaternion vertices and edges; the vertex with id 0 is fixed."""
    graph = PoseGraph()
    for line_no, line in enumerate(stream, start=1):
        parts = line.split()
        if not parts:
            continue
        tag = parts[0]
        if tag == VERTEX_TAG:
            if len(parts) < 9:
                raise ValueError(f"line {line_no}: vertex needs an id and 7 values")
            vid = _int(parts[1], line_no)
            data = _floats(parts[2:9], line_no)
            if vid in graph.vertices:
                raise ValueError(f"line {line_no}: duplicate vertex {vid}")
            pose = se3_from_quaternion(data[3:7], data[0:3])
            graph.vertices[vid] = Vertex(vid, pose, fixed=(vid == 0))
        elif tag == EDGE_TAG:
            if len(parts) < 31:
                raise ValueError(f"line {line_no}: edge needs 2 ids, 7 values and 21 information entries")
            source = _int(parts[1], line_no)
            target = _int(parts[2], line_no)
            for vid in (source, target):
                if vid not in graph.vertices:
                    raise ValueError(f"line {line_no}: edge refers to unknown vertex {vid}")
            data = _floats(parts[3:10], line_no)
            upper = _floats(parts[10:31], line_no)
            info = np.zeros((6, 6))
            info[_TRIU] = upper
            info = info + np.triu(info, 1).T
            measurement = se3_from_quaternion(data[3:7], data[0:3])
            graph.edges.append(Edge(source, target, measurement, info))
    return graph


def _pose_fields(pose: SE3) -> list:
    q = matrix_to_quaternion(pose.rotation)
    return [repr(float(v)) for v in (*pose.translation, *q)]


def write_g2o(graph: PoseGraph, stream: IO[str]) -> None:
    """Write vertices then edges in g2o SE3 quaternion records."""
    for vertex in graph.vertices.values():
        stream.write(" ".join([VERTEX_TAG, str(vertex.id), *_pose_fields(vertex.pose)]) + "\n")
    for edge in graph.edges:
        info = [repr(float(v)) for v in edge.information[_TRIU]]
        fields = [EDGE_TAG, str(edge.source), str(edge.target), *_pose_fields(edge.measurement), *info]
        stream.write(" ".join(fields) + "\n")


def _swap_blocks(information) -> np.ndarray:
    m = np.asarray(information, dtype=float)
    if m.shape != (6, 6):
        raise ValueError(f"information must have shape (6, 6), got {m.shape}")
    out = np.eye(6)
    out[:3, :3] = m[3:, 3:]
    out[3:, 3:] = m[:3, :3]
    out[:3, 3:] = m[:3, 3:]
    out[3:, :3] = m[3:, :3]
    return out


def g2o_to_gtsam_information(information) -> np.ndarray:
    """Reorder an information matrix from translation-first to rotation-first."""
    return _swap_blocks(information)


def gtsam_to_g2o_information(information) -> np.ndarray:
    """Reorder an information matrix from rotation-first to translation-first."""
    return _swap_blocks(information)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Optimize a g2o SE3 pose graph.")
    parser.add_argument("graph", help="input .g2o file")
    parser.add_argument("--output", default="result.g2o")
    parser.add_argument("--iterations", type=int, default=30)
    args = parser.parse_args(argv)
    try:
        with open(args.graph, encoding="utf-8") as fin:
            graph = read_g2o(fin)
    except FileNotFoundError:
        print(f"file {args.graph} does not exist.")
        return 1
    except ValueError as exc:
        print(f"cannot read {args.graph}: {exc}")
        return 1
    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("prepare optimizing ...")
    initial = graph.error()
    print("calling optimizing ...")
    final = graph.optimize(args.iterations)
    print(f"initial error: {initial:g}")
    print(f"final error: {final:g}")
    print("saving optimization results ...")
    with open(args.output, "w", encoding="utf-8") as fout:
        write_g2o(graph, fout)
    return 0