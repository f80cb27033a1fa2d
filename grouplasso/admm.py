from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Tuple

import numpy as np
import scipy.linalg as la

from .blocks.aux import (
    ADMMConfig,
    ProblemInstance,
    RunHistory,
    SolveStatus,
    log_summary,
    objective,
)

Array = np.ndarray


# ------------------------------- utilities -------------------------------- #


def block_shrinkage(v: Array, kappa: float) -> Array:
    """Block soft-thresholding: prox_{kappa ||.||_2}(v) = max(0, 1 - kappa/||v||) v."""
    nrm = float(np.linalg.norm(v))
    if nrm <= kappa:
        return np.zeros_like(v)
    return (1.0 - kappa / nrm) * v


def _sqnorm(x: Array) -> float:
    v = float(np.dot(x.ravel(), x.ravel()))
    return v if np.isfinite(v) else np.inf


def _nan_guard(*xs: Array) -> bool:
    """Return True if any array contains NaN or Inf."""
    for x in xs:
        if x is None or (isinstance(x, np.ndarray) and x.size == 0):
            continue
        if not np.isfinite(x).all():
            return True
    return False


# ======================= Group-LASSO ADMM baseline ======================== #


class ADMMSolver:
    """
    Over-relaxed ADMM for group LASSO (scaled form, Boyd et al.):

        x <- (A'A + rho I)^{-1} (A'b + rho (z - u))
        x_hat <- alpha x + (1 - alpha) z
        z_i <- shrink(x_hat_i + u_i, lam / rho)
        u <- u + x_hat - z

    Stops when ||x - z|| < eps_pri and ||rho (z - z_old)|| < eps_dual. The
    reported objective evaluates the residual at x and the penalty at z.
    Returns z. Uses the matrix-inversion lemma when A is fat (m < n).
    """

    name = "admm"

    def __init__(self, config: Optional[ADMMConfig] = None):
        self.cfg = config if config is not None else ADMMConfig()

    def _factor(self, A: Array, rho: float):
        m, n = A.shape
        if m >= n:
            return la.cho_factor(A.T @ A + rho * np.eye(n))
        return la.cho_factor(np.eye(m) + (A @ A.T) / rho)

    def _x_update(self, A: Array, factor, q: Array, rho: float) -> Array:
        """Solve (A'A + rho I) x = q with the cached factor."""
        m, n = A.shape
        if m >= n:
            return la.cho_solve(factor, q)
        return q / rho - (A.T @ la.cho_solve(factor, A @ q)) / rho**2

    def solve(
        self,
        problem: ProblemInstance,
        callback: Optional[Callable[[int, Array, float, float], None]] = None,
    ) -> Tuple[Array, RunHistory]:
        cfg = self.cfg
        t_start = time.perf_counter()
        A, b, lam, alpha = problem.A, problem.b, problem.lam, problem.alpha
        rho = cfg.rho
        m, n = A.shape
        blocks = list(problem.blocks())

        Atb = A.T @ b
        factor = self._factor(A, rho)

        x = np.zeros(n)
        z = np.zeros(n)
        u = np.zeros(n)
        hist = RunHistory()
        status = SolveStatus.ITER_LIMIT
        sqrt_n = np.sqrt(n)

        k = 0
        for k in range(1, cfg.max_iter + 1):
            # x-update
            x = self._x_update(A, factor, Atb + rho * (z - u), rho)

            # z-update with relaxation
            z_old = z
            x_hat = alpha * x + (1.0 - alpha) * z_old
            z = np.empty(n)
            for sel in blocks:
                z[sel] = block_shrinkage(x_hat[sel] + u[sel], lam / rho)

            u = u + (x_hat - z)

            if _nan_guard(x, z, u):
                status = SolveStatus.DIRECTION_UNDEFINED
                logging.warning(f"[{self.name}] NaN/Inf encountered.")
                break

            # diagnostics
            obj_val = objective(A, b, lam, problem.partition, residual_point=x, penalty_point=z)
            r_norm = np.sqrt(_sqnorm(x - z))
            s_norm = np.sqrt(_sqnorm(-rho * (z - z_old)))
            eps_pri = sqrt_n * cfg.abstol + cfg.reltol * max(np.sqrt(_sqnorm(x)), np.sqrt(_sqnorm(z)))
            eps_dual = sqrt_n * cfg.abstol + cfg.reltol * np.sqrt(_sqnorm(rho * u))

            hist.objective_trace.append(obj_val)
            hist.r_norm.append(r_norm)
            hist.s_norm.append(s_norm)
            hist.eps_pri.append(eps_pri)
            hist.eps_dual.append(eps_dual)

            if cfg.verbose:
                print(
                    f"[{k:4d}] r={r_norm:.3e} (≤{eps_pri:.3e}) | "
                    f"s={s_norm:.3e} (≤{eps_dual:.3e}) | obj={obj_val:.6g}"
                )

            if callback is not None:
                callback(k, z, obj_val, r_norm)

            if r_norm < eps_pri and s_norm < eps_dual:
                status = SolveStatus.CONVERGED
                break
        else:
            logging.warning(f"[{self.name}] iterations limit reached.")

        hist.elapsed_time = time.perf_counter() - t_start
        hist.iterations = k
        hist.status = status
        log_summary(self.name, hist)
        return z, hist
