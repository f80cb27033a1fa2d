"""Tests for the ADMM baseline."""
import numpy as np
import pytest

from grouplasso.admm import ADMMSolver, block_shrinkage
from grouplasso.blocks.aux import ADMMConfig, ProblemInstance, SolveStatus


def test_block_shrinkage():
    v = np.array([3.0, 4.0])
    np.testing.assert_allclose(block_shrinkage(v, 1.0), [2.4, 3.2])
    np.testing.assert_array_equal(block_shrinkage(v, 5.0), [0.0, 0.0])
    np.testing.assert_array_equal(block_shrinkage(v, 0.0), v)


@pytest.mark.parametrize("shape", [(7, 4), (4, 7)])
def test_x_update_solves_regularized_normal_equations(shape):
    rng = np.random.default_rng(2)
    A = rng.standard_normal(shape)
    q = rng.standard_normal(shape[1])
    rho = 2.0
    solver = ADMMSolver()
    x = solver._x_update(A, solver._factor(A, rho), q, rho)
    expected = np.linalg.solve(A.T @ A + rho * np.eye(shape[1]), q)
    np.testing.assert_allclose(x, expected, rtol=1e-10, atol=1e-12)


def test_least_squares_identity():
    P = ProblemInstance(np.eye(2), np.array([1.0, 1.0]), 0.0, (2,))
    z, hist = ADMMSolver().solve(P)
    assert hist.status == SolveStatus.CONVERGED
    np.testing.assert_allclose(z, [1.0, 1.0], atol=0.05)
    assert len(hist.objective_trace) == hist.iterations
    assert len(hist.r_norm) == len(hist.eps_dual) == hist.iterations


def test_group_shrinkage():
    P = ProblemInstance(np.eye(2), np.array([3.0, 4.0]), 1.0, (1, 1))
    z, hist = ADMMSolver().solve(P)
    assert hist.status == SolveStatus.CONVERGED
    np.testing.assert_allclose(z, [2.0, 3.0], atol=0.05)


def test_zeroes_weak_groups():
    # second group's least-squares block has norm 0.5 < lam
    P = ProblemInstance(np.eye(3), np.array([3.0, 0.3, 0.4]), 1.0, (1, 2))
    z, hist = ADMMSolver(ADMMConfig(max_iter=2000)).solve(P)
    assert hist.status == SolveStatus.CONVERGED
    np.testing.assert_array_equal(z[1:], [0.0, 0.0])
    assert z[0] == pytest.approx(2.0, abs=0.05)


def test_iteration_limit_and_callback():
    rng = np.random.default_rng(4)
    A = rng.standard_normal((20, 8))
    P = ProblemInstance(A, rng.standard_normal(20), 0.5, (4, 4))
    ks = []
    _, hist = ADMMSolver(ADMMConfig(max_iter=2)).solve(P, callback=lambda k, z, f, r: ks.append(k))
    assert hist.status in (SolveStatus.CONVERGED, SolveStatus.ITER_LIMIT)
    assert ks == list(range(1, hist.iterations + 1))
