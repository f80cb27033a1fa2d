# cg.py
# Nonlinear conjugate gradient for group LASSO with Beale–Powell restarts
# - Shanno-style memoryless BFGS directions: three-term on a fresh restart cycle,
#   four-term correction while continuing the cycle
# - Powell restart test |c'c0| / c'c > threshold forces a new cycle
# - Bounded derivative-free line search on [0, 10]
# - Optional cubic regularization of the secant pairs (CubicCGSolver)
from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import numpy as np

from .blocks.aux import (
    CGConfig,
    GroupLassoModel,
    IterationPrinter,
    ProblemInstance,
    RestartStage,
    RunHistory,
    SolveStatus,
    UndefinedDirectionError,
    log_summary,
)
from .blocks.linesearch import LineSearcher
from .blocks.reg import CubicInfo, CubicRegularizer

Callback = Callable[[int, np.ndarray, float, float], None]


# =============================================================================
# Restart bookkeeping
# =============================================================================
@dataclass
class RestartBasis:
    """Beale restart pair (pt, yt) with its cached scalars.

    ytTyt = yt'yt and cTyt = pt'yt (curvature of the restart pair).
    """

    pt: np.ndarray
    yt: np.ndarray
    ytTyt: float
    cTyt: float

    @classmethod
    def from_pair(cls, p: np.ndarray, y: np.ndarray) -> "RestartBasis":
        return cls(p, y, float(y @ y), float(p @ y))


@dataclass
class RestartState:
    """
    Solver-owned restart state.

    `counter` counts iterations since the last restart and lives in [0, n];
    counter == n means the next direction starts a fresh cycle. `c0`, `dx`,
    `step` hold the previous gradient, direction and accepted step length.
    """

    n: int
    step: float
    counter: int = -1
    started: bool = False
    powell_triggered: bool = False
    cubic_invoked: bool = False
    stage: RestartStage = RestartStage.INITIAL
    basis: Optional[RestartBasis] = None
    c0: Optional[np.ndarray] = None
    dx: Optional[np.ndarray] = None

    def __post_init__(self):
        if self.counter < 0:
            self.counter = self.n

    @property
    def continuing(self) -> bool:
        return self.counter != self.n

    def begin_cycle(self, c: np.ndarray, threshold: float) -> RestartStage:
        """Apply the Powell test and refresh the basis when a cycle starts."""
        self.stage = RestartStage.CONTINUING
        cTc = float(c @ c)
        if self.counter != self.n and cTc > 0.0 and abs(float(c @ self.c0)) / cTc > threshold:
            self.counter = self.n
            self.powell_triggered = True
            self.stage = RestartStage.POWELL_TRIGGERED
            logging.debug(f"Powell restart: |c'c0|/c'c > {threshold}")
        if self.counter == self.n:
            self.basis = RestartBasis.from_pair(self.step * self.dx, c - self.c0)
            if self.stage is RestartStage.CONTINUING:
                self.stage = RestartStage.FRESH_RESTART
        return self.stage

    def advance(self) -> None:
        if not self.started:
            self.started = True
            return
        if self.counter == self.n:
            self.counter = 0
        self.counter += 1


def beale_powell_direction(
    c: np.ndarray,
    basis: RestartBasis,
    p: np.ndarray,
    y: np.ndarray,
    continuing: bool,
    secant_eps: float = 0.0,
) -> np.ndarray:
    """
    dx = -H c with H the memoryless BFGS operator built on the restart pair
    (three-term) and, when continuing the cycle, updated once more with the
    latest pair (p, y) (four-term).

    Raises
    ------
    UndefinedDirectionError
        If ytTyt, |cTyt| or |p'y| is not above `secant_eps`.
    """
    pt, yt, ytTyt, cTyt = basis.pt, basis.yt, basis.ytTyt, basis.cTyt
    if ytTyt <= secant_eps or abs(cTyt) <= secant_eps:
        raise UndefinedDirectionError(
            f"degenerate restart secant (ytTyt={ytTyt:.3e}, cTyt={cTyt:.3e})"
        )

    ptc = float(pt @ c)
    u1 = -ptc / ytTyt
    u2 = 2.0 * ptc / cTyt - float(yt @ c) / ytTyt
    u3 = cTyt / ytTyt
    dx = -u3 * c - u1 * yt - u2 * pt

    if continuing:
        ypt = float(y @ pt)
        u1 = -ypt / ytTyt
        u2 = -float(y @ yt) / ytTyt + 2.0 * ypt / cTyt
        u3 = float(p @ y)
        if abs(u3) <= secant_eps:
            raise UndefinedDirectionError(f"degenerate secant (p'y={u3:.3e})")
        temp = (cTyt / ytTyt) * y + u1 * yt + u2 * pt  # H_t y
        u4 = float(temp @ y)

        pc = float(p @ c)
        u1 = -pc / u3
        u2 = (u4 / u3 + 1.0) * pc / u3 - float(c @ temp) / u3
        dx = dx - u1 * temp - u2 * p
    return dx


# =============================================================================
# Solver
# =============================================================================
class CGSolver:
    """
    Conjugate Gradient method with Beale–Powell restarts for

        minimize 1/2 ||Ax - b||^2 + lam * sum_i ||x_i||_2

    States: Init -> Iterating -> {Converged, NonDescent, IterLimit,
    LineSearchFailed, DirectionUndefined}. Every terminal state is reported
    through `RunHistory.status`; none raises.
    """

    name = "cg"

    def __init__(self, config: Optional[CGConfig] = None):
        self.cfg = config if config is not None else CGConfig()
        self.ls = LineSearcher(self.cfg)
        self.cubic = CubicRegularizer(self.cfg) if self.cfg.use_cubic else None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def solve(
        self, problem: ProblemInstance, callback: Optional[Callback] = None
    ) -> Tuple[np.ndarray, RunHistory]:
        cfg = self.cfg
        t_start = time.perf_counter()
        if callback is None and cfg.verbose:
            callback = IterationPrinter()

        model = GroupLassoModel(problem, cfg.group_eps)
        hist = RunHistory()
        n = problem.n
        x = np.full(n, float(cfg.x_init))
        state = RestartState(n=n, step=problem.alpha)

        status = None
        k = 0
        try:
            c = model.gradient(x)
        except UndefinedDirectionError as e:
            logging.warning(f"[{self.name}] gradient undefined at the starting point: {e}")
            status = SolveStatus.DIRECTION_UNDEFINED

        if status is None:
            for k in range(1, cfg.max_iter + 1):
                # Check for convergence
                if model.converged(c, x, cfg.abstol, cfg.reltol):
                    status = SolveStatus.CONVERGED
                    break

                # Compute step direction
                try:
                    dx, sigma = self._direction(state, c)
                except UndefinedDirectionError as e:
                    logging.warning(f"[{self.name}] search direction is undefined: {e}")
                    status = SolveStatus.DIRECTION_UNDEFINED
                    break

                dxTc = float(dx @ c)
                if not np.isfinite(dxTc):
                    logging.warning(f"[{self.name}] search direction is not finite.")
                    status = SolveStatus.DIRECTION_UNDEFINED
                    break
                if dxTc >= 0.0:
                    logging.warning(f"[{self.name}] search direction is not a descent direction.")
                    status = SolveStatus.NON_DESCENT
                    break

                # Save the current point
                x0, c0 = x, c
                state.c0, state.dx = c0, dx
                state.advance()

                hist.n_line_searches += 1
                alpha, ok = self.ls.search(problem, x0, dx, sigma)
                if not ok:
                    logging.warning(f"[{self.name}] line search failed.")
                    status = SolveStatus.LINE_SEARCH_FAILED
                    break

                # Take the step and update function value and gradient
                x_new = x0 + alpha * dx
                try:
                    c_new = model.gradient(x_new)
                except UndefinedDirectionError as e:
                    logging.warning(f"[{self.name}] gradient undefined after the step: {e}")
                    status = SolveStatus.DIRECTION_UNDEFINED
                    break
                x, c = x_new, c_new
                state.step = alpha

                f = model.objective(x, x)
                gnorm = float(np.linalg.norm(c))
                hist.record(f, gnorm)
                logging.debug(
                    f"[{self.name}] k={k} f={f:.6e} |c|={gnorm:.3e} a={alpha:.3e} "
                    f"stage={state.stage.value}"
                )
                if callback is not None:
                    callback(k, x, f, gnorm)
            else:
                status = SolveStatus.ITER_LIMIT
                k = cfg.max_iter
                logging.warning(f"[{self.name}] iterations limit reached.")

        hist.elapsed_time = time.perf_counter() - t_start
        hist.iterations = k
        hist.status = status
        hist.powell_restart = state.powell_triggered
        hist.cubic_invoked = state.cubic_invoked
        hist.n_obj, hist.n_grad = model.n_obj, model.n_grad
        log_summary(self.name, hist)
        return x, hist

    # -------------------------------------------------------------------------
    # Directions
    # -------------------------------------------------------------------------
    def _direction(self, state: RestartState, c: np.ndarray) -> Tuple[np.ndarray, float]:
        """Return (dx, sigma); sigma > 0 only when the cubic step was taken."""
        if not state.started:
            state.stage = RestartStage.INITIAL
            return -c, 0.0

        state.begin_cycle(c, self.cfg.powell_threshold)
        p = state.step * state.dx
        y = c - state.c0

        if self.cubic is None:
            dx = beale_powell_direction(c, state.basis, p, y, state.continuing, self.cfg.secant_eps)
            return dx, 0.0
        return self._cubic_direction(state, c, p, y)

    def _cubic_direction(
        self, state: RestartState, c: np.ndarray, p: np.ndarray, y: np.ndarray
    ) -> Tuple[np.ndarray, float]:
        cfg = self.cfg
        basis = state.basis
        pairs = [(basis.pt, basis.yt)]
        if state.continuing:
            pairs.append((p, y))

        dx = None
        if not self.cubic.needs_regularization(pairs):
            try:
                dx = beale_powell_direction(c, basis, p, y, state.continuing, cfg.secant_eps)
            except UndefinedDirectionError:
                dx = None
            if dx is not None and float(dx @ c) < 0.0:
                return dx, 0.0

        # plain model rejected: regularize both pairs
        tries = 0
        sigma = 0.0
        for sigma in self.cubic.schedule(self.cubic.initial_sigma(pairs)):
            tries += 1
            reg_basis = RestartBasis.from_pair(
                basis.pt, self.cubic.regularize(basis.pt, basis.yt, sigma)
            )
            y_reg = self.cubic.regularize(p, y, sigma)
            dx = beale_powell_direction(c, reg_basis, p, y_reg, state.continuing, cfg.secant_eps)
            if float(dx @ c) < 0.0:
                break
        state.cubic_invoked = True
        self.cubic.record(CubicInfo(sigma=sigma, tries=tries, invoked=True))
        return dx, sigma


class CubicCGSolver(CGSolver):
    """CG with cubic regularization switched on (`use_cubic=True`)."""

    name = "cg_cubic"

    def __init__(self, config: Optional[CGConfig] = None):
        cfg = config if config is not None else CGConfig()
        super().__init__(dataclasses.replace(cfg, use_cubic=True))


def solve_group_lasso(
    A: np.ndarray,
    b: np.ndarray,
    lam: float,
    partition: Sequence[int],
    alpha: float = 1.0,
    config: Optional[CGConfig] = None,
    callback: Optional[Callback] = None,
) -> Tuple[np.ndarray, RunHistory]:
    """
    Solve group LASSO with CG (cubic regularization if `config.use_cubic`).

    Raises
    ------
    ValueError
        If the partition does not split the columns of A, or on shape/parameter errors.
    """
    problem = ProblemInstance(A, b, lam, tuple(partition), alpha)
    return CGSolver(config).solve(problem, callback=callback)
