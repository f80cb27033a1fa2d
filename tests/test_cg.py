"""Tests for the CG solver: restart recurrence, state machine and end-to-end runs."""
import io
import logging

import numpy as np
import pytest

from grouplasso.bench import generate_problem
from grouplasso.blocks.aux import (
    CGConfig,
    IterationPrinter,
    ProblemInstance,
    RestartStage,
    SolveStatus,
    UndefinedDirectionError,
)
from grouplasso.cg import (
    CGSolver,
    RestartBasis,
    RestartState,
    beale_powell_direction,
    solve_group_lasso,
)


def _memoryless_bfgs(H0, p, y):
    """Inverse BFGS update of H0 with the pair (p, y)."""
    rho = 1.0 / (p @ y)
    V = np.eye(p.size) - rho * np.outer(y, p)
    return V.T @ H0 @ V + rho * np.outer(p, p)


@pytest.fixture
def secant_pairs():
    rng = np.random.default_rng(3)
    M = rng.standard_normal((4, 4))
    H = M @ M.T + 4 * np.eye(4)  # SPD Hessian
    pt = rng.standard_normal(4)
    p = rng.standard_normal(4)
    c = rng.standard_normal(4)
    return H, pt, H @ pt, p, H @ p, c


class TestDirection:
    def test_three_term_is_scaled_memoryless_bfgs(self, secant_pairs):
        _, pt, yt, p, y, c = secant_pairs
        gamma = (pt @ yt) / (yt @ yt)
        Ht = _memoryless_bfgs(gamma * np.eye(4), pt, yt)
        dx = beale_powell_direction(c, RestartBasis.from_pair(pt, yt), p, y, continuing=False)
        np.testing.assert_allclose(dx, -Ht @ c, rtol=1e-10, atol=1e-12)
        assert dx @ c < 0

    def test_four_term_adds_latest_pair(self, secant_pairs):
        _, pt, yt, p, y, c = secant_pairs
        gamma = (pt @ yt) / (yt @ yt)
        H = _memoryless_bfgs(_memoryless_bfgs(gamma * np.eye(4), pt, yt), p, y)
        dx = beale_powell_direction(c, RestartBasis.from_pair(pt, yt), p, y, continuing=True)
        np.testing.assert_allclose(dx, -H @ c, rtol=1e-10, atol=1e-12)
        assert dx @ c < 0

    def test_degenerate_basis(self):
        c = np.array([1.0, 2.0])
        basis = RestartBasis.from_pair(np.array([1.0, 0.0]), np.zeros(2))
        with pytest.raises(UndefinedDirectionError):
            beale_powell_direction(c, basis, c, c, continuing=False, secant_eps=1e-14)

    def test_degenerate_latest_pair(self, secant_pairs):
        _, pt, yt, _, _, c = secant_pairs
        p = np.array([1.0, 0.0, 0.0, 0.0])
        y = np.array([0.0, 1.0, 0.0, 0.0])
        with pytest.raises(UndefinedDirectionError):
            beale_powell_direction(c, RestartBasis.from_pair(pt, yt), p, y, True, secant_eps=1e-14)


class TestRestartState:
    def _state(self, n=3):
        st = RestartState(n=n, step=1.0)
        st.c0 = np.array([1.0, 0.0, 0.0])
        st.dx = np.array([-1.0, 0.0, 0.0])
        return st

    def test_cycle(self):
        st = self._state()
        assert st.counter == 3 and not st.started
        st.advance()  # steepest-descent iteration
        assert st.started and st.counter == 3

        c = np.array([0.0, 1.0, 0.0])  # orthogonal to c0
        assert st.begin_cycle(c, 0.2) is RestartStage.FRESH_RESTART
        np.testing.assert_allclose(st.basis.pt, [-1.0, 0.0, 0.0])
        np.testing.assert_allclose(st.basis.yt, c - st.c0)
        st.advance()
        assert st.counter == 1 and st.continuing

        assert st.begin_cycle(c, 0.2) is RestartStage.CONTINUING
        for _ in range(2):
            st.advance()
        assert st.counter == 3
        assert st.begin_cycle(c, 0.2) is RestartStage.FRESH_RESTART
        assert not st.powell_triggered

    def test_powell_trigger(self):
        st = self._state()
        st.advance()
        st.begin_cycle(np.array([0.0, 1.0, 0.0]), 0.2)
        st.advance()
        old_basis = st.basis
        c = np.array([1.0, 0.5, 0.0])  # |c'c0| / c'c = 0.8
        assert st.begin_cycle(c, 0.2) is RestartStage.POWELL_TRIGGERED
        assert st.powell_triggered
        assert st.counter == st.n
        assert st.basis is not old_basis
        st.advance()
        assert st.counter == 1

    def test_counter_bounded(self):
        st = self._state(n=2)
        st.advance()
        c = np.array([0.0, 1.0, 0.0])
        for _ in range(10):
            st.begin_cycle(c, 10.0)
            st.advance()
            assert 0 <= st.counter <= st.n

    def test_zero_gradient_skips_powell_test(self):
        st = self._state()
        st.advance()
        st.begin_cycle(np.array([0.0, 1.0, 0.0]), 0.2)
        st.advance()
        assert st.begin_cycle(np.zeros(3), 0.2) is RestartStage.CONTINUING
        assert not st.powell_triggered


class TestSolve:
    def test_least_squares_identity(self):
        A = np.eye(2)
        b = np.array([1.0, 1.0])
        x, hist = solve_group_lasso(A, b, 0.0, [2], alpha=1.0)
        assert hist.status == SolveStatus.CONVERGED
        np.testing.assert_allclose(x, [1.0, 1.0], atol=1e-3)
        assert hist.iterations <= 5
        assert len(hist.objective_trace) == len(hist.grad_norm_trace) == hist.iterations - 1
        assert not hist.powell_restart
        assert hist.elapsed_time >= 0.0
        arrays = hist.as_arrays()
        assert arrays["objective"].shape == (hist.iterations - 1,)
        assert arrays["r_norm"].size == 0

    def test_convergence_criterion_holds(self):
        x, hist = solve_group_lasso(np.eye(2), np.array([1.0, 1.0]), 0.0, [2])
        assert hist.status == SolveStatus.CONVERGED
        assert hist.grad_norm_trace[-1] <= np.sqrt(2) * 1e-4 + 1e-2 * np.linalg.norm(x)

    def test_group_shrinkage(self):
        cfg = CGConfig(freeze_penalty_in_line_search=False)
        A = np.diag([1.0, 1.0])
        b = np.array([3.0, 4.0])
        x0, h0 = solve_group_lasso(A, b, 0.0, [1, 1], config=cfg)
        x1, h1 = solve_group_lasso(A, b, 1.0, [1, 1], config=cfg)
        assert h0.status == h1.status == SolveStatus.CONVERGED
        np.testing.assert_allclose(x1, [2.0, 3.0], atol=1e-3)
        assert abs(x1[0]) < abs(x0[0]) and abs(x1[1]) < abs(x0[1])

    def test_frozen_penalty_stalls_on_shrunk_group(self):
        # default line search holds the penalty at the pre-step point and
        # never reaches the group solution [2, 3]
        x, hist = solve_group_lasso(np.eye(2), np.array([3.0, 4.0]), 1.0, [1, 1])
        assert hist.status == SolveStatus.ITER_LIMIT
        assert hist.iterations == CGConfig().max_iter
        assert x[1] > 4.0
        assert np.all(np.isfinite(x))

    def test_powell_restart_on_generated_problems(self):
        rng = np.random.default_rng(0)
        flags = []
        for _ in range(3):
            P, _ = generate_problem(rng, m=60, num_blocks=4, upper=20)
            _, hist = CGSolver().solve(P)
            flags.append(hist.powell_restart)
        assert any(flags)

    def test_evaluation_counts_are_logged(self, caplog):
        caplog.set_level(logging.INFO)
        _, hist = solve_group_lasso(np.eye(2), np.array([1.0, 1.0]), 0.0, [2])
        assert (hist.n_obj, hist.n_grad, hist.n_line_searches) == (1, 2, 1)
        assert "evals(f/g/ls)=1/2/1" in caplog.text

    def test_inputs_not_mutated(self):
        rng = np.random.default_rng(11)
        A = rng.standard_normal((8, 6))
        b = rng.standard_normal(8)
        A_copy, b_copy = A.copy(), b.copy()
        solve_group_lasso(A, b, 0.1, [2, 2, 2], config=CGConfig(max_iter=20))
        np.testing.assert_array_equal(A, A_copy)
        np.testing.assert_array_equal(b, b_copy)

    def test_invalid_partition_fails_before_solving(self):
        calls = []
        with pytest.raises(ValueError):
            solve_group_lasso(np.eye(3), np.ones(3), 0.1, [1, 1], callback=lambda *a: calls.append(a))
        assert calls == []

    def test_history_and_callback(self):
        rng = np.random.default_rng(5)
        A = rng.standard_normal((30, 10))
        b = rng.standard_normal(30)
        calls = []
        cfg = CGConfig(max_iter=50)
        x, hist = solve_group_lasso(
            A, b, 0.1, [3, 3, 4], config=cfg, callback=lambda k, x, f, g: calls.append((k, f, g))
        )
        assert isinstance(hist.status, SolveStatus)
        assert len(hist.objective_trace) <= cfg.max_iter
        assert len(hist.objective_trace) <= hist.iterations
        assert [k for k, _, _ in calls] == list(range(1, len(calls) + 1))
        assert [f for _, f, _ in calls] == hist.objective_trace
        assert [g for _, _, g in calls] == hist.grad_norm_trace
        assert np.all(np.isfinite(x))

    def test_iteration_limit(self):
        A = np.diag([1.0, 3.0])
        b = np.array([1.0, 1.0])
        _, hist = solve_group_lasso(A, b, 0.0, [2], config=CGConfig(max_iter=1))
        assert hist.status == SolveStatus.ITER_LIMIT
        assert hist.iterations == 1
        assert len(hist.objective_trace) == 1

    def test_undefined_start(self):
        _, hist = solve_group_lasso(np.eye(2), np.ones(2), 1.0, [2], config=CGConfig(x_init=0.0))
        assert hist.status == SolveStatus.DIRECTION_UNDEFINED
        assert hist.objective_trace == []

    def test_non_descent_keeps_last_iterate(self):
        class AscentAfterFirstStep(CGSolver):
            def _direction(self, state, c):
                if state.started:
                    return c.copy(), 0.0
                return super()._direction(state, c)

        P = ProblemInstance(np.diag([1.0, 3.0]), np.array([1.0, 1.0]), 0.0, (2,))
        seen = []
        x, hist = AscentAfterFirstStep().solve(P, callback=lambda k, x, f, g: seen.append(x.copy()))
        assert hist.status == SolveStatus.NON_DESCENT
        assert hist.iterations == 2
        assert len(hist.objective_trace) == 1
        np.testing.assert_array_equal(x, seen[-1])

    def test_line_search_failure(self):
        P = ProblemInstance(np.diag([1.0, 3.0]), np.array([1.0, 1.0]), 0.0, (2,))
        x, hist = CGSolver(CGConfig(ls_max_iter=1)).solve(P)
        assert hist.status == SolveStatus.LINE_SEARCH_FAILED
        np.testing.assert_allclose(x, [0.1, 0.1])

    def test_verbose_printer(self):
        buf = io.StringIO()
        P = ProblemInstance(np.diag([1.0, 3.0]), np.array([1.0, 1.0]), 0.0, (2,))
        CGSolver(CGConfig(max_iter=3)).solve(P, callback=IterationPrinter(buf))
        out = buf.getvalue()
        assert "Obj Value" in out
        assert out.count(":\t") >= 1
