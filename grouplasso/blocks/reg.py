"""
reg.py

Cubic regularization of the secant pairs used by the CG restart recurrence.

A cubic model m(s) = f + g's + 1/2 s'Bs + (sigma/3)||s||^3 has curvature
B + sigma||s|| I along s, so regularizing a secant pair (p, y) amounts to

    y_sigma = y + sigma * ||p|| * p,      p'y_sigma = p'y + sigma * ||p||^3.

With positive curvature on every pair the memoryless BFGS operator behind the
Beale–Powell directions is positive definite, hence -H c is a descent direction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Sequence, Tuple

import numpy as np

from .aux import CGConfig, UndefinedDirectionError


# ---------- telemetry ----------
@dataclass
class CubicInfo:
    sigma: float
    tries: int
    invoked: bool


class CubicRegularizer:
    """
    Supplies the sigma schedule for the cubic-regularized CG variant.

    Parameters
    ----------
    cfg : CGConfig
        Uses `cubic_sigma0`, `cubic_gamma`, `cubic_max_tries`, `curvature_eps`.
    """

    def __init__(self, cfg: CGConfig):
        self.cfg = cfg
        self.n_invocations = 0

    def curvature_ok(self, p: np.ndarray, y: np.ndarray) -> bool:
        py = float(p @ y)
        return py > self.cfg.curvature_eps * float(np.linalg.norm(p)) * float(np.linalg.norm(y))

    def needs_regularization(self, pairs: Sequence[Tuple[np.ndarray, np.ndarray]]) -> bool:
        return not all(self.curvature_ok(p, y) for p, y in pairs)

    def initial_sigma(self, pairs: Sequence[Tuple[np.ndarray, np.ndarray]]) -> float:
        """Smallest sigma lifting every pair to positive curvature, plus sigma0."""
        sigma = 0.0
        for p, y in pairs:
            pn = float(np.linalg.norm(p))
            if pn == 0.0:
                raise UndefinedDirectionError("cannot regularize a zero secant step")
            floor = self.cfg.curvature_eps * pn * float(np.linalg.norm(y))
            sigma = max(sigma, (floor - float(p @ y)) / pn**3)
        return sigma + self.cfg.cubic_sigma0

    def schedule(self, sigma_start: float) -> Iterator[float]:
        sigma = float(sigma_start)
        for _ in range(self.cfg.cubic_max_tries):
            yield sigma
            sigma *= self.cfg.cubic_gamma

    @staticmethod
    def regularize(p: np.ndarray, y: np.ndarray, sigma: float) -> np.ndarray:
        return y + sigma * float(np.linalg.norm(p)) * p

    def record(self, info: CubicInfo) -> None:
        if info.invoked:
            self.n_invocations += 1
            logging.debug(f"[cubic] sigma={info.sigma:.3e} after {info.tries} tries")
