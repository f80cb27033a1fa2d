"""
Dolan–Moré performance profiles for comparing solver variants.

Inputs are matrices indexed [problem, solver]: a metric (elapsed time or
iteration count) and the terminal status codes. A solver's ratio on a problem
is its metric over the best metric in that row; it is undefined (NaN) where
the solver did not converge, and undefined ratios never enter a profile.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from .blocks.aux import SolveStatus


@dataclass(frozen=True)
class ProfileCurve:
    """Step function tau -> fraction of problems solved within tau times the best."""

    taus: np.ndarray
    probs: np.ndarray
    label: str = ""

    def __len__(self) -> int:
        return int(self.taus.size)

    def as_array(self) -> np.ndarray:
        """(k, 2) array of (tau, probability) rows."""
        return np.column_stack([self.taus, self.probs])


def _select(mat: np.ndarray, columns: Optional[Sequence[int]]) -> np.ndarray:
    return mat if columns is None else mat[:, list(columns)]


def ratio(
    metric: np.ndarray, status: np.ndarray, columns: Optional[Sequence[int]] = None
) -> np.ndarray:
    """
    Per-row performance ratios metric / min(metric over the compared columns).

    Parameters
    ----------
    metric, status : array_like, shape (problems, solvers)
    columns : sequence of int, optional
        Solver columns to compare (default: all).

    Returns
    -------
    ndarray, shape (problems, len(columns))
        NaN wherever the corresponding solver's status is not CONVERGED.
    """
    metric = np.asarray(metric, dtype=float)
    status = np.asarray(status)
    if metric.ndim != 2 or metric.shape != status.shape:
        raise ValueError(
            f"metric and status must be 2-D with equal shapes, got {metric.shape} and {status.shape}"
        )
    metric = _select(metric, columns)
    status = _select(status, columns)

    best = metric.min(axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        r = metric / best
    r[status != SolveStatus.CONVERGED] = np.nan
    return r


def profile(ratios: np.ndarray, label: str = "") -> ProfileCurve:
    """
    Empirical distribution of one solver's ratios.

    Probabilities are cumulative counts over the total number of problems, so
    the curve ends below 1.0 when some ratios are undefined.
    """
    ratios = np.asarray(ratios, dtype=float).ravel()
    total = ratios.size
    defined = ratios[np.isfinite(ratios)]
    if total == 0 or defined.size == 0:
        return ProfileCurve(np.empty(0), np.empty(0), label)
    taus, counts = np.unique(defined, return_counts=True)
    probs = np.cumsum(counts) / total
    return ProfileCurve(taus, probs, label)


def build_profiles(
    time: np.ndarray,
    iters: np.ndarray,
    status: np.ndarray,
    labels: Sequence[str],
    time_columns: Optional[Sequence[int]] = None,
    iter_columns: Optional[Sequence[int]] = None,
) -> Dict[str, List[ProfileCurve]]:
    """
    Time and iteration profiles for each compared solver.

    Iteration counts of unlike methods are not comparable; pass `iter_columns`
    to restrict the iteration profile (e.g. to the CG variants only).
    """
    time = np.asarray(time, dtype=float)
    labels = list(labels)
    if len(labels) != time.shape[1]:
        raise ValueError(f"expected {time.shape[1]} labels, got {len(labels)}")

    out: Dict[str, List[ProfileCurve]] = {}
    for key, metric, cols in (("time", time, time_columns), ("iterations", iters, iter_columns)):
        cols = list(range(time.shape[1])) if cols is None else list(cols)
        r = ratio(metric, status, cols)
        out[key] = [profile(r[:, j], labels[c]) for j, c in enumerate(cols)]
    return out


def cubic_invoked_profiles(
    time: np.ndarray,
    iters: np.ndarray,
    status: np.ndarray,
    in_cubic: np.ndarray,
    labels: Sequence[str] = ("CG without Cubic Reg", "CG with Cubic Reg"),
    columns: Sequence[int] = (0, 1),
) -> Dict[str, List[ProfileCurve]]:
    """
    Profiles of the two CG variants restricted to the problems on which the
    cubic step was actually invoked. Empty dict when there are none.
    """
    in_cubic = np.asarray(in_cubic, dtype=bool)
    cols = list(columns)
    mask = in_cubic[:, cols].any(axis=1)
    if not mask.any():
        return {}

    time = np.asarray(time, dtype=float)[mask]
    iters = np.asarray(iters, dtype=float)[mask]
    status = np.asarray(status)[mask]
    labels = list(labels)
    r_time = ratio(time, status, cols)
    r_iters = ratio(iters, status, cols)
    return {
        "time": [profile(r_time[:, j], labels[j]) for j in range(len(cols))],
        "iterations": [profile(r_iters[:, j], labels[j]) for j in range(len(cols))],
    }
