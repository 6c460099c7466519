"""Tests for the minimum-norm restoration problem and the restoration strategies."""

import numpy as np
import pytest

from blocksqp.blocks.aux import RestorationFailure, SQPOptions
from blocksqp.blocks.matrix import linf_constraint_norm
from blocksqp.blocks.restoration import (
    RHO,
    ZETA,
    RestorationProblem,
    feasibility_restoration_heuristic,
    feasibility_restoration_phase,
)
from blocksqp.examples.parametric_sensitivities import X_OPT, ParametricProblem
from blocksqp.sqp import SQPMethod


def _prepared_method(problem, **changes):
    method = SQPMethod(problem, SQPOptions(print_level=0, **changes))
    method.init()
    assert method._evaluate_derivatives()
    method.calc_opt_tol()
    return method


def test_layout_of_restoration_problem(problem):
    xi_ref = np.array([0.15, 0.15, 0.0, 5.0, 1.0])
    rest = RestorationProblem(problem, xi_ref)
    assert rest.n_var == 9
    assert rest.n_con == 4
    assert list(rest.block_idx) == [0, 3, 5, 6, 7, 8, 9]
    assert np.all(np.isinf(rest.bl[5:9])) and np.all(np.isinf(rest.bu[5:9]))
    assert np.allclose(rest.bl[9:], problem.bl[5:])
    rest.check_dimensions()


def test_slack_equals_violation(problem):
    rest = RestorationProblem(problem, np.zeros(5))
    # bounds are [0, 0, 5, 1] (equalities)
    s = rest.initial_slacks(np.array([0.3, -0.1, 5.0, 1.2]))
    assert np.allclose(s, [0.3, -0.1, 0.0, 0.2])


def test_initialize_starts_feasible_for_restoration(problem):
    xi_ref = np.array([0.15, 0.15, 0.0, 5.0, 1.0])
    rest = RestorationProblem(problem, xi_ref)
    xi, lam = np.zeros(9), np.ones(13)
    rest.initialize(xi, lam)
    assert np.allclose(xi[:5], xi_ref)
    assert not lam.any()

    ev = rest.evaluate(xi, lam, 0)
    assert linf_constraint_norm(xi, ev.constr, rest.bu, rest.bl) == pytest.approx(0.0, abs=1e-12)


def test_objective_and_gradient_are_consistent(problem, rng):
    xi_ref = np.array([2.0, 0.5, 0.0, 5.0, 1.0])
    rest = RestorationProblem(problem, xi_ref)
    xi = np.concatenate([xi_ref + 0.1 * rng.standard_normal(5), rng.standard_normal(4)])
    lam = np.zeros(13)

    ev = rest.evaluate(xi, lam, 1)
    x, s = xi[:5], xi[5:]
    d = np.array([0.5, 1.0, 1.0, 0.2, 1.0])
    expected = 0.5 * RHO * s @ s + 0.5 * ZETA * np.sum((d * (x - xi_ref)) ** 2)
    assert ev.obj == pytest.approx(expected)

    h = 1e-6
    for i in range(9):
        e = np.zeros(9)
        e[i] = h
        fd = (rest.evaluate(xi + e, lam, 0).obj - rest.evaluate(xi - e, lam, 0).obj) / (2 * h)
        assert ev.grad_obj[i] == pytest.approx(fd, rel=1e-5, abs=1e-6)


@pytest.mark.parametrize("dense_only", [False, True])
def test_jacobian_has_negative_identity_in_slack_columns(dense_only):
    parent = ParametricProblem(dense_only=dense_only)
    rest = RestorationProblem(parent, np.array([0.15, 0.15, 0.0, 5.0, 1.0]))
    xi = np.zeros(9)
    rest.initialize(xi, np.zeros(13))

    ev = rest.evaluate_dense(xi, np.zeros(13), 1)
    J = ev.jacobian.values
    assert J.shape == (4, 9)
    assert np.allclose(J[:, 5:], -np.eye(4))
    assert np.allclose(J[:, :5], ParametricProblem._jacobian(xi[:5]))


def test_restoration_phase_finds_filter_acceptable_point():
    problem = ParametricProblem(x0=[1.0, 1.0, 1.0, 5.0, 1.0])
    method = _prepared_method(problem)
    theta_old, obj_old = method.it.c_norm, method.it.obj
    assert theta_old == pytest.approx(6.0)

    feasibility_restoration_phase(method)

    it = method.it
    assert method.stats.n_rest_phase_calls == 1
    assert len(it.filter) == 2
    assert linf_constraint_norm(it.xi, it.constr, problem.bu, problem.bl) < theta_old
    assert it.obj != obj_old
    assert np.allclose(it.hess1[0], np.eye(3))


def test_restoration_phase_disabled_raises(problem):
    method = _prepared_method(problem, restore_feas=False)
    with pytest.raises(RestorationFailure):
        feasibility_restoration_phase(method)


class _ProjectingProblem(ParametricProblem):
    def reduce_constraint_violation(self, xi):
        out = xi.copy()
        out[:3] = X_OPT
        out[3:] = self.p0
        return out


def test_heuristic_moves_to_feasible_point():
    problem = _ProjectingProblem(x0=[1.0, 1.0, 1.0, 5.0, 1.0])
    method = _prepared_method(problem)
    assert feasibility_restoration_heuristic(method)
    assert np.allclose(method.it.xi[:3], X_OPT)
    assert method.stats.n_rest_heur_calls == 1


def test_heuristic_without_problem_support_fails(problem):
    method = _prepared_method(problem)
    x_before = method.it.xi.copy()
    assert not feasibility_restoration_heuristic(method)
    assert np.array_equal(method.it.xi, x_before)


class _FailingAtRestoredPoint(ParametricProblem):
    """Derivatives fail the second time they are requested at the same point."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.seen = set()

    def evaluate_sparse(self, xi, lambda_, dmode):
        ev = super().evaluate_sparse(xi, lambda_, dmode)
        if dmode >= 1:
            key = np.asarray(xi, dtype=float).tobytes()
            if key in self.seen:
                ev.info = 1
            self.seen.add(key)
        return ev


def test_restoration_phase_rejects_point_without_derivatives():
    problem = _FailingAtRestoredPoint(x0=[1.0, 1.0, 1.0, 5.0, 1.0])
    method = _prepared_method(problem)
    problem.seen.clear()
    x_before = method.it.xi.copy()
    lam_before = method.it.lambda_.copy()

    with pytest.raises(RestorationFailure, match="restored point"):
        feasibility_restoration_phase(method)
    assert np.array_equal(method.it.xi, x_before)
    assert np.array_equal(method.it.lambda_, lam_before)
    assert len(method.it.filter) == 1
