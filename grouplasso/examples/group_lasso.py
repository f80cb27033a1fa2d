# Group LASSO: CG without / with cubic regularization vs ADMM on random problems
import logging

import numpy as np

from grouplasso.admm import ADMMSolver
from grouplasso.bench import generate_problem, run_benchmark
from grouplasso.blocks.aux import ADMMConfig, CGConfig
from grouplasso.cg import CGSolver, CubicCGSolver
from grouplasso.profiles import build_profiles, cubic_invoked_profiles


def main(num_probs: int = 10, seed: int = 0):
    rng = np.random.default_rng(seed)
    problems = [generate_problem(rng, m=300, num_blocks=4, upper=200)[0] for _ in range(num_probs)]

    solvers = [CGSolver(CGConfig()), CubicCGSolver(CGConfig()), ADMMSolver(ADMMConfig(rho=1.0))]
    res = run_benchmark(solvers, problems, parallel_mode="multiprocessing")

    print("success rate:", dict(zip(res.solvers, res.success_rate())))

    # ADMM iterations are not comparable with CG iterations
    curves = build_profiles(res.time, res.iters, res.status, res.solvers, iter_columns=(0, 1))
    for metric, per_solver in curves.items():
        for curve in per_solver:
            print(f"{metric:>10} {curve.label:<10}", np.round(curve.as_array(), 3).tolist())

    invoked = cubic_invoked_profiles(res.time, res.iters, res.status, res.in_cubic)
    if not invoked:
        print("cubic step never invoked")
    for metric, per_solver in invoked.items():
        for curve in per_solver:
            print(f"{metric:>10} {curve.label:<22}", np.round(curve.as_array(), 3).tolist())


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    main()
