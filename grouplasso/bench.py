from __future__ import annotations

import logging
import multiprocessing as mp
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from .blocks.aux import ProblemInstance, RunHistory, SolveStatus

Array = np.ndarray


# ------------------------------ problem data ------------------------------ #


def generate_problem(
    rng: np.random.Generator,
    m: int = 1500,
    num_blocks: int = 4,
    upper: int = 1000,
    noise_var: float = 1e-3,
    lambda_ratio: float = 0.01,
    alpha: float = 1.0,
) -> Tuple[ProblemInstance, Array]:
    """
    Random group-LASSO instance with a block-sparse ground truth.

    Block sizes are drawn from {1, ..., upper}; each block is non-zero with
    probability 100/n. Columns of A are normalized and
    lam = lambda_ratio * max_i ||A_i' b||.

    Returns
    -------
    problem : ProblemInstance
    x_true : ndarray
    """
    partition = rng.integers(1, upper + 1, size=num_blocks)
    n = int(partition.sum())
    density = 100.0 / n

    x_true = np.zeros(n)
    bounds = np.concatenate([[0], np.cumsum(partition)])
    for i in range(num_blocks):
        if rng.random() < density:
            x_true[bounds[i]:bounds[i + 1]] = rng.standard_normal(partition[i])

    A = rng.standard_normal((m, n))
    A = A / np.sqrt(np.sum(A**2, axis=0))
    b = A @ x_true + np.sqrt(noise_var) * rng.standard_normal(m)

    lambda_max = max(
        float(np.linalg.norm(A[:, bounds[i]:bounds[i + 1]].T @ b)) for i in range(num_blocks)
    )
    problem = ProblemInstance(A, b, lambda_ratio * lambda_max, tuple(int(k) for k in partition), alpha)
    return problem, x_true


# ------------------------------ batch results ----------------------------- #


@dataclass
class PerformanceSample:
    problem: int
    solver: str
    elapsed_time: float
    iterations: int
    status: SolveStatus
    cubic_invoked: bool = False


@dataclass
class BenchmarkResults:
    """Per-[problem, solver] matrices consumed by the profile builder."""

    solvers: List[str]
    time: Array
    iters: Array
    status: Array
    in_cubic: Array
    wall_time: float = 0.0

    @classmethod
    def empty(cls, num_problems: int, solvers: Sequence[str]) -> "BenchmarkResults":
        shape = (num_problems, len(solvers))
        return cls(
            solvers=list(solvers),
            time=np.zeros(shape),
            iters=np.zeros(shape, dtype=int),
            # unsolved slots stay at the iteration-limit code
            status=np.full(shape, int(SolveStatus.ITER_LIMIT), dtype=int),
            in_cubic=np.zeros(shape, dtype=bool),
        )

    def store(self, i: int, j: int, sample: PerformanceSample) -> None:
        self.time[i, j] = sample.elapsed_time
        self.iters[i, j] = sample.iterations
        self.status[i, j] = int(sample.status)
        self.in_cubic[i, j] = sample.cubic_invoked

    def success_rate(self) -> Array:
        return np.mean(self.status == SolveStatus.CONVERGED, axis=0)


def _solve_one(i: int, j: int, solver, problem: ProblemInstance) -> Tuple[int, int, PerformanceSample]:
    _, hist = solver.solve(problem)
    return i, j, _sample(i, solver.name, hist)


def _sample(i: int, name: str, hist: RunHistory) -> PerformanceSample:
    return PerformanceSample(
        problem=i,
        solver=name,
        elapsed_time=hist.elapsed_time,
        iterations=hist.iterations,
        status=hist.status,
        cubic_invoked=hist.cubic_invoked,
    )


def run_benchmark(
    solvers: Sequence,
    problems: Sequence[ProblemInstance],
    parallel_mode: str = "none",
    max_workers: Optional[int] = None,
) -> BenchmarkResults:
    """
    Solve every problem with every solver.

    Each solve is single-threaded and writes to its own [problem, solver] slot;
    `parallel_mode` in {'none', 'threading', 'multiprocessing'} selects how
    independent solves are scheduled.
    """
    if parallel_mode not in ("none", "threading", "multiprocessing"):
        raise ValueError(f"unknown parallel_mode {parallel_mode!r}")
    names = [s.name for s in solvers]
    if len(set(names)) != len(names):
        raise ValueError(f"solver names must be unique, got {names}")

    results = BenchmarkResults.empty(len(problems), names)
    t0 = time.perf_counter()

    if parallel_mode == "none":
        for i, problem in enumerate(problems):
            logging.info(f"Problem {i + 1}/{len(problems)} (n={problem.n})")
            for j, solver in enumerate(solvers):
                _, _, sample = _solve_one(i, j, solver, problem)
                results.store(i, j, sample)
    else:
        workers = max_workers or min(mp.cpu_count(), 8)
        Executor = ThreadPoolExecutor if parallel_mode == "threading" else ProcessPoolExecutor
        with Executor(max_workers=workers) as ex:
            futures = [
                ex.submit(_solve_one, i, j, solver, problem)
                for i, problem in enumerate(problems)
                for j, solver in enumerate(solvers)
            ]
            for fut in as_completed(futures):
                i, j, sample = fut.result()
                results.store(i, j, sample)

    results.wall_time = time.perf_counter() - t0
    logging.info(
        f"Benchmark finished: {len(problems)} problems x {len(solvers)} solvers "
        f"in {results.wall_time:.2f}s"
    )
    return results
