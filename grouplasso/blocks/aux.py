# aux.py
# Shared infrastructure for the group-LASSO solvers: configuration, status codes,
# problem/history records and the objective/gradient model.

from __future__ import annotations

# =========================
# Standard library
# =========================
import logging
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Iterator, List, Optional, Sequence, Tuple

# =========================
# Third-party
# =========================
import numpy as np


# ======================================
# Enums / errors
# ======================================
class SolveStatus(IntEnum):
    """Terminal status codes shared by every solver."""

    CONVERGED = 0
    NON_DESCENT = 1
    ITER_LIMIT = 2
    DIRECTION_UNDEFINED = 3
    LINE_SEARCH_FAILED = 4


class RestartStage(Enum):
    """Stage of the Beale–Powell restart cycle for the current iteration."""

    INITIAL = "initial"  # steepest descent, no secant information yet
    FRESH_RESTART = "fresh"  # restart basis recomputed, three-term direction
    CONTINUING = "continuing"  # four-term correction on top of the basis
    POWELL_TRIGGERED = "powell"  # Powell test forced a fresh cycle


class UndefinedDirectionError(ArithmeticError):
    """A zero block or a degenerate secant denominator left the step undefined."""


# ======================================
# Configuration
# ======================================
@dataclass(frozen=True)
class CGConfig:
    """
    Immutable configuration of the conjugate-gradient solvers.

    Notes
    -----
    • Defaults reproduce the reference constants (1000 iterations, ABSTOL=1e-4,
      RELTOL=1e-2, step interval [0, 10], Powell ratio 0.2, x0 = 0.1).
    • `freeze_penalty_in_line_search` keeps the line-search model evaluating the
      group penalty at the pre-step iterate; set False to evaluate it at the trial.
    """

    # ---------------- Iteration / tolerances ----------------
    max_iter: int = 1000
    abstol: float = 1e-4
    reltol: float = 1e-2
    x_init: float = 0.1

    # ---------------- Line search ----------------
    ls_bounds: Tuple[float, float] = (0.0, 10.0)
    ls_xatol: float = 1e-5
    ls_max_iter: int = 500
    freeze_penalty_in_line_search: bool = True

    # ---------------- Restarts ----------------
    powell_threshold: float = 0.2

    # ---------------- Numerical guards ----------------
    group_eps: float = 1e-12
    secant_eps: float = 1e-14
    curvature_eps: float = 1e-12

    # ---------------- Cubic regularization ----------------
    use_cubic: bool = False
    cubic_sigma0: float = 1e-4
    cubic_gamma: float = 10.0
    cubic_max_tries: int = 20

    verbose: bool = False

    def __post_init__(self):
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")
        if self.abstol < 0 or self.reltol < 0:
            raise ValueError("abstol and reltol must be non-negative")
        lo, hi = self.ls_bounds
        if not (0.0 <= lo < hi):
            raise ValueError(f"ls_bounds must satisfy 0 <= lo < hi, got {self.ls_bounds}")
        if self.ls_xatol <= 0 or self.ls_max_iter < 1:
            raise ValueError("ls_xatol must be positive and ls_max_iter at least 1")
        if self.powell_threshold <= 0:
            raise ValueError(f"powell_threshold must be positive, got {self.powell_threshold}")
        if self.group_eps < 0 or self.secant_eps < 0 or self.curvature_eps < 0:
            raise ValueError("numerical guard thresholds must be non-negative")
        if self.cubic_sigma0 <= 0 or self.cubic_gamma <= 1.0:
            raise ValueError("cubic_sigma0 must be positive and cubic_gamma > 1")
        if self.cubic_max_tries < 1:
            raise ValueError(f"cubic_max_tries must be positive, got {self.cubic_max_tries}")


@dataclass(frozen=True)
class ADMMConfig:
    """Immutable configuration of the ADMM baseline."""

    rho: float = 1.0
    max_iter: int = 1000
    abstol: float = 1e-4
    reltol: float = 1e-2
    verbose: bool = False

    def __post_init__(self):
        if self.rho <= 0:
            raise ValueError(f"rho must be positive, got {self.rho}")
        if self.max_iter < 1:
            raise ValueError(f"max_iter must be positive, got {self.max_iter}")


# ======================================
# Problem / history records
# ======================================
def validate_partition(partition: Sequence[int], n: int) -> np.ndarray:
    """Return the partition as an int array; raise ValueError unless it splits n."""
    p = np.asarray(partition)
    if p.ndim != 1 or p.size == 0:
        raise ValueError("partition must be a non-empty sequence of block sizes")
    if not np.all(np.equal(np.mod(p, 1), 0)) or np.any(p <= 0):
        raise ValueError(f"partition sizes must be positive integers, got {list(p)}")
    p = p.astype(int)
    if int(p.sum()) != n:
        raise ValueError(f"invalid partition: block sizes sum to {int(p.sum())}, expected {n}")
    return p


@dataclass(frozen=True)
class ProblemInstance:
    """
    minimize 1/2 ||A x - b||^2 + lam * sum_i ||x_i||_2

    The partition lists the block sizes n_i (x_i in R^{n_i}); alpha is the
    over-relaxation scalar handed to every solver.
    """

    A: np.ndarray
    b: np.ndarray
    lam: float
    partition: Tuple[int, ...]
    alpha: float = 1.0

    def __post_init__(self):
        A = np.array(self.A, dtype=float)
        b = np.array(self.b, dtype=float).ravel()
        if A.ndim != 2:
            raise ValueError(f"A must be a 2-D matrix, got shape {A.shape}")
        if A.shape[0] != b.size:
            raise ValueError(f"A has {A.shape[0]} rows but b has length {b.size}")
        if self.lam < 0:
            raise ValueError(f"lam must be non-negative, got {self.lam}")
        if self.alpha <= 0:
            raise ValueError(f"alpha must be positive, got {self.alpha}")
        part = validate_partition(self.partition, A.shape[1])
        # private read-only copies: the caller's arrays are never touched
        A.setflags(write=False)
        b.setflags(write=False)
        object.__setattr__(self, "A", A)
        object.__setattr__(self, "b", b)
        object.__setattr__(self, "lam", float(self.lam))
        object.__setattr__(self, "alpha", float(self.alpha))
        object.__setattr__(self, "partition", tuple(int(k) for k in part))

    @property
    def n(self) -> int:
        return self.A.shape[1]

    @property
    def m(self) -> int:
        return self.A.shape[0]

    def blocks(self) -> Iterator[slice]:
        return block_slices(self.partition)


def block_slices(partition: Sequence[int]) -> Iterator[slice]:
    """Yield the coordinate slice of each group (cumulative partition)."""
    start = 0
    for size in partition:
        yield slice(start, start + int(size))
        start += int(size)


@dataclass
class RunHistory:
    objective_trace: List[float] = field(default_factory=list)
    grad_norm_trace: List[float] = field(default_factory=list)
    elapsed_time: float = 0.0
    iterations: int = 0
    status: SolveStatus = SolveStatus.ITER_LIMIT
    powell_restart: bool = False
    cubic_invoked: bool = False
    # evaluation counts, CG only
    n_obj: int = 0
    n_grad: int = 0
    n_line_searches: int = 0
    # ADMM only
    r_norm: List[float] = field(default_factory=list)
    s_norm: List[float] = field(default_factory=list)
    eps_pri: List[float] = field(default_factory=list)
    eps_dual: List[float] = field(default_factory=list)

    def record(self, f: float, grad_norm: float) -> None:
        self.objective_trace.append(float(f))
        self.grad_norm_trace.append(float(grad_norm))

    def as_arrays(self) -> dict:
        return {
            "objective": np.asarray(self.objective_trace, dtype=float),
            "grad_norm": np.asarray(self.grad_norm_trace, dtype=float),
            "r_norm": np.asarray(self.r_norm, dtype=float),
            "s_norm": np.asarray(self.s_norm, dtype=float),
        }


# ======================================
# Objective / gradient model
# ======================================
def objective(
    A: np.ndarray,
    b: np.ndarray,
    lam: float,
    partition: Sequence[int],
    residual_point: np.ndarray,
    penalty_point: np.ndarray,
) -> float:
    """
    1/2 ||A residual_point - b||^2 + lam * sum_i ||penalty_point_i||_2.

    The two points are independent: full reporting passes the same vector
    twice, the CG line search passes the trial point for the residual and the
    pre-step iterate for the penalty.
    """
    r = A @ residual_point - b
    pen = 0.0
    for sel in block_slices(partition):
        pen += float(np.linalg.norm(penalty_point[sel]))
    return 0.5 * float(r @ r) + lam * pen


def gradient(
    A: np.ndarray,
    b: np.ndarray,
    lam: float,
    x: np.ndarray,
    partition: Sequence[int],
    group_eps: float = 0.0,
) -> np.ndarray:
    """
    A^T (A x - b) plus lam * x_i / ||x_i|| on every block.

    Raises
    ------
    UndefinedDirectionError
        If lam > 0 and some block has ||x_i|| <= group_eps.
    """
    c = A.T @ (A @ x - b)
    if lam == 0.0:
        return c
    for sel in block_slices(partition):
        nrm = float(np.linalg.norm(x[sel]))
        if nrm <= group_eps:
            raise UndefinedDirectionError(
                f"group norm subgradient undefined on block [{sel.start}:{sel.stop}]"
            )
        c[sel] += lam * x[sel] / nrm
    return c


class GroupLassoModel:
    """
    Binds a ProblemInstance to the objective/gradient evaluations used by the
    solvers and keeps evaluation counters for diagnostics.
    """

    __slots__ = ("problem", "group_eps", "n_obj", "n_grad")

    def __init__(self, problem: ProblemInstance, group_eps: float = 0.0):
        self.problem = problem
        self.group_eps = float(group_eps)
        self.n_obj = 0
        self.n_grad = 0

    def objective(self, residual_point: np.ndarray, penalty_point: Optional[np.ndarray] = None) -> float:
        self.n_obj += 1
        P = self.problem
        z = residual_point if penalty_point is None else penalty_point
        return objective(P.A, P.b, P.lam, P.partition, residual_point, z)

    def gradient(self, x: np.ndarray) -> np.ndarray:
        self.n_grad += 1
        P = self.problem
        c = gradient(P.A, P.b, P.lam, x, P.partition, self.group_eps)
        if not np.all(np.isfinite(c)):
            raise UndefinedDirectionError("non-finite gradient")
        return c

    def converged(self, c: np.ndarray, x: np.ndarray, abstol: float, reltol: float) -> bool:
        """||c|| <= sqrt(n) * abstol + reltol * ||x||."""
        n = self.problem.n
        return bool(np.sqrt(c @ c) <= np.sqrt(n) * abstol + reltol * np.sqrt(x @ x))


# ======================================
# Observers
# ======================================
class IterationPrinter:
    """Per-iteration observer printing the classic `Iter | Obj Value | Residual` table."""

    def __init__(self, stream=None):
        self.stream = stream
        self._header = False

    def __call__(self, k: int, x: np.ndarray, f: float, grad_norm: float) -> None:
        if not self._header:
            self._header = True
            print("-----------------------------------------------------", file=self.stream)
            print("Iter |\t\tObj Value     \tResidual\t|", file=self.stream)
            print("- - - - - - - - - - - - - - - - - - - - - - - - - - -", file=self.stream)
        xTx = float(x @ x)
        print(f"{k:4d} :\t{f:14.6e}\t {grad_norm / np.sqrt(max(1.0, xTx)):14.6e}\t |", file=self.stream)


def log_summary(name: str, history: RunHistory) -> None:
    evals = ""
    if history.n_grad:
        evals = f" evals(f/g/ls)={history.n_obj}/{history.n_grad}/{history.n_line_searches}"
    logging.info(
        f"[{name}] status={history.status.name} iters={history.iterations} "
        f"time={history.elapsed_time:.4f}s powell_restart={history.powell_restart} "
        f"cubic={history.cubic_invoked}{evals}"
    )
