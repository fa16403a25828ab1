"""Fit y = exp(a*x^2 + b*x + c) to noisy samples by nonlinear least squares."""

from __future__ import annotations

import argparse
import time

import numpy as np

METHODS = ("lm", "gn")


def generate_data(a=1.0, b=2.0, c=1.0, count=100, sigma=1.0, seed=0):
    """Samples at x = i/100 of exp(a x^2 + b x + c) plus Gaussian noise."""
    if count < 0:
        raise ValueError("count must not be negative")
    if sigma < 0:
        raise ValueError("sigma must not be negative")
    rng = np.random.default_rng(seed)
    xs = np.arange(count, dtype=float) / 100.0
    ys = np.exp(a * xs * xs + b * xs + c) + rng.normal(0.0, sigma, size=count)
    return xs, ys


def _prepare(xs, ys):
    x = np.asarray(xs, dtype=float)
    y = np.asarray(ys, dtype=float)
    if x.ndim != 1 or x.shape != y.shape:
        raise ValueError("xs and ys must be one-dimensional and of equal length")
    return x, y


def curve_residuals(params, xs, ys) -> np.ndarray:
    """Residuals y - exp(a x^2 + b x + c)."""
    a, b, c = np.asarray(params, dtype=float)
    x, y = _prepare(xs, ys)
    with np.errstate(over="ignore"):
        return y - np.exp(a * x * x + b * x + c)


def _jacobian(params, xs) -> np.ndarray:
    a, b, c = params
    with np.errstate(over="ignore"):
        e = np.exp(a * xs * xs + b * xs + c)
    return -np.column_stack((e * xs * xs, e * xs, e))


def _cost(residuals) -> float:
    with np.errstate(over="ignore", invalid="ignore"):
        value = 0.5 * float(residuals @ residuals)
    return value if np.isfinite(value) else float("inf")


def _gauss_newton(params, x, y, max_iterations):
    for _ in range(max_iterations):
        r = curve_residuals(params, x, y)
        jac = _jacobian(params, x)
        try:
            step = np.linalg.solve(jac.T @ jac, -(jac.T @ r))
        except np.linalg.LinAlgError:
            break
        if not np.all(np.isfinite(step)):
            break
        params = params + step
        if np.linalg.norm(step) <= 1e-12 * (np.linalg.norm(params) + 1e-12):
            break
    return params


def _levenberg_marquardt(params, x, y, max_iterations):
    r = curve_residuals(params, x, y)
    cost = _cost(r)
    lam = None
    nu = 2.0
    for _ in range(max_iterations):
        jac = _jacobian(params, x)
        hessian = jac.T @ jac
        gradient = jac.T @ r
        if not np.all(np.isfinite(gradient)) or np.max(np.abs(gradient)) < 1e-12:
            break
        if lam is None:
            lam = 1e-5 * float(np.max(np.diag(hessian)))
        try:
            step = np.linalg.solve(hessian + lam * np.eye(3), -gradient)
        except np.linalg.LinAlgError:
            lam *= nu
            nu *= 2.0
            continue
        candidate = params + step
        new_r = curve_residuals(candidate, x, y)
        new_cost = _cost(new_r)
        predicted = 0.5 * float(step @ (lam * step - gradient))
        rho = (cost - new_cost) / predicted if predicted > 0 else -1.0
        if rho > 0 and np.isfinite(new_cost):
            params, r, cost = candidate, new_r, new_cost
            lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
            nu = 2.0
            if np.linalg.norm(step) <= 1e-12 * (np.linalg.norm(params) + 1e-12):
                break
        else:
            lam *= nu
            nu *= 2.0
    return params


def fit_curve(xs, ys, initial=(0.0, 0.0, 0.0), max_iterations=100, method="lm") -> np.ndarray:
    """Estimate (a, b, c) by Levenberg-Marquardt ("lm") or Gauss-Newton ("gn")."""
    if method not in METHODS:
        raise ValueError(f"method must be one of {METHODS}, got {method!r}")
    x, y = _prepare(xs, ys)
    params = np.asarray(initial, dtype=float).copy()
    if params.shape != (3,):
        raise ValueError("initial must hold three parameters")
    if method == "gn":
        return _gauss_newton(params, x, y, max_iterations)
    return _levenberg_marquardt(params, x, y, max_iterations)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Fit exp(ax^2+bx+c) to generated data.")
    parser.add_argument("--count", type=int, default=100)
    parser.add_argument("--sigma", type=float, default=1.0)
    parser.add_argument("--seed", type=int, default=0)
    parser.add_argument("--iterations", type=int, default=100)
    parser.add_argument("--method", choices=METHODS, default="lm")
    args = parser.parse_args(argv)

    print("generating data: ")
    xs, ys = generate_data(1.0, 2.0, 1.0, args.count, args.sigma, args.seed)
    for x, y in zip(xs, ys):
        print(f"{x:g} {y:g}")

    start = time.perf_counter()
    estimate = fit_curve(xs, ys, (0.0, 0.0, 0.0), args.iterations, args.method)
    elapsed = time.perf_counter() - start
    print(f"solve time cost = {elapsed:g} seconds. ")
    print(f"final cost = {_cost(curve_residuals(estimate, xs, ys)):g}")
    print("estimated a,b,c = " + " ".join(f"{v:g}" for v in estimate))
    return 0