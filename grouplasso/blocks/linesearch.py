import logging
from typing import Tuple

import numpy as np
from scipy.optimize import minimize_scalar

from .aux import CGConfig, ProblemInstance, objective


class LineSearcher:
    """Bounded, derivative-free line search for the CG solvers.

    - `search(...)` minimizes a 1-D restriction of the group-LASSO objective over
      a in `cfg.ls_bounds` with SciPy's bounded Brent method.
    - By default the group penalty is frozen at the pre-step iterate, so only the
      least-squares term moves with a (partial linearization of the nonsmooth term).
    - A positive `sigma` adds the cubic term (sigma/3) ||a dx||^3 to the model.

    Failure is reported to the caller, never retried here.
    """

    def __init__(self, cfg: CGConfig):
        self.cfg = cfg

    def phi(self, problem: ProblemInstance, x: np.ndarray, dx: np.ndarray, sigma: float = 0.0):
        """Return the scalar model a -> value used by `search`."""
        A, b, lam, partition = problem.A, problem.b, problem.lam, problem.partition
        freeze = self.cfg.freeze_penalty_in_line_search
        dx_norm3 = float(np.linalg.norm(dx)) ** 3

        def _phi(a: float) -> float:
            trial = x + a * dx
            val = objective(
                A, b, lam, partition,
                residual_point=trial,
                penalty_point=x if freeze else trial,
            )
            if sigma > 0.0:
                val += (sigma / 3.0) * dx_norm3 * abs(a) ** 3
            return val

        return _phi

    def search(
        self, problem: ProblemInstance, x: np.ndarray, dx: np.ndarray, sigma: float = 0.0
    ) -> Tuple[float, bool]:
        """
        Returns
        -------
        alpha : float
            Minimizing step length (nan when the search failed).
        ok : bool
            False if the minimizer hit its iteration cap or produced non-finite values.
        """
        cfg = self.cfg
        res = minimize_scalar(
            self.phi(problem, x, dx, sigma),
            bounds=cfg.ls_bounds,
            method="bounded",
            options={"xatol": cfg.ls_xatol, "maxiter": cfg.ls_max_iter},
        )
        alpha = float(res.x)
        ok = bool(res.success) and np.isfinite(alpha) and np.isfinite(float(res.fun))
        if not ok:
            logging.debug(
                f"Line search failed: status={res.status} ({res.message}) after {res.nfev} evaluations"
            )
            return float("nan"), False
        return alpha, True
