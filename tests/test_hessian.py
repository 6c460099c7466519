"""Tests for the block quasi-Newton engine and the inertia correction."""

from types import SimpleNamespace

import numpy as np
import pytest

from blocksqp.blocks.aux import HessScaling, HessUpdate, SQPIterate, SQPOptions
from blocksqp.blocks.hessian import BlockHessian, InertiaCorrection, convexify
from blocksqp.blocks.matrix import SymBlocks
from blocksqp.blocks.stats import SQPStats
from blocksqp.sqp import SQPMethod


def _engine(n=2, block_idx=None, **changes):
    opts = SQPOptions(print_level=0, hess_scaling=HessScaling.NONE, **changes).make_consistent()
    shape = SimpleNamespace(n_var=n, n_con=0, block_idx=block_idx or [0, n])
    it = SQPIterate(shape, opts)
    stats = SQPStats()
    return BlockHessian(opts, stats), it, stats


def test_damped_bfgs_stays_positive_definite_with_negative_curvature():
    eng, it, stats = _engine(n=3, hess_update=HessUpdate.BFGS, hess_lim_mem=False)
    delta = np.array([1.0, 0.0, 0.0])
    gamma = np.array([-1.0, 0.5, 0.0])  # sᵀy < 0

    assert eng.calc_bfgs(it, gamma, delta, 0)
    assert stats.hess_damped == 1
    B = it.hess1[0]
    assert np.allclose(B, B.T)
    assert np.linalg.eigvalsh(B)[0] > 0.0


def test_bfgs_satisfies_secant_equation(rng):
    eng, it, _ = _engine(n=4, hess_update=HessUpdate.BFGS, hess_lim_mem=False)
    A = rng.standard_normal((4, 4))
    A = A @ A.T + np.eye(4)
    delta = rng.standard_normal(4)
    gamma = A @ delta

    assert eng.calc_bfgs(it, gamma, delta, 0)
    assert np.allclose(it.hess1[0] @ delta, gamma)


def test_sr1_skip_leaves_block_unchanged():
    eng, it, stats = _engine(hess_update=HessUpdate.SR1)
    it.hess1[0] = np.diag([2.0, 3.0])
    before = it.hess1[0].copy()
    delta = np.array([1.0, 0.0])
    gamma = before @ delta  # y - Bs = 0

    assert not eng.calc_sr1(it, gamma, delta, 0)
    assert np.array_equal(it.hess1[0], before)
    assert stats.rejected_sr1 == 1
    assert it.no_update_counter[0] == 1


def test_block_reset_after_consecutive_skips():
    eng, it, stats = _engine(
        hess_update=HessUpdate.BFGS, hess_lim_mem=False, max_consec_skipped_updates=3
    )
    eng.update(it, 0, np.array([1.0, 0.0]), np.array([2.0, 0.0]))
    assert np.allclose(it.hess1[0], np.diag([2.0, 1.0]))

    zero = np.zeros(2)
    for expected in (1, 2, 3):
        eng.update(it, 0, zero, zero)
        assert it.no_update_counter[0] == expected
    assert np.allclose(it.hess1[0], np.diag([2.0, 1.0]))

    # the next update call starts from the scaled identity
    eng.update(it, 0, zero, zero)
    assert np.allclose(it.hess1[0], np.eye(2))
    assert stats.n_total_skipped_updates == 4


def test_blocks_are_updated_independently():
    eng, it, _ = _engine(n=3, block_idx=[0, 1, 3], hess_update=HessUpdate.BFGS, hess_lim_mem=False)
    it.delta_xi = np.array([1.0, 0.0, 0.0])
    it.gamma = np.array([4.0, 0.0, 0.0])
    eng.calc_hessian_update(it)

    assert np.allclose(it.hess1[0], [[4.0]])
    # zero step in the second block: skipped, block untouched
    assert np.allclose(it.hess1[1], np.eye(2))
    assert it.no_update_counter[1] == 1


def test_limited_memory_rebuilds_from_stored_pairs():
    eng, it, stats = _engine(hess_update=HessUpdate.BFGS, hess_lim_mem=True, hess_memsize=3)
    it.hess1[0] = 10.0 * np.eye(2)
    stats.it_count = 2

    # newest pair at the current position, the previous one just before it
    newest = it.dg_pos
    oldest = (newest - 1) % 3
    it.delta_mat[:, oldest], it.gamma_mat[:, oldest] = [1.0, 0.0], [2.0, 0.0]
    it.delta_mat[:, newest], it.gamma_mat[:, newest] = [0.0, 1.0], [0.0, 3.0]

    eng.calc_hessian_update_limited_memory(it, HessUpdate.BFGS, HessScaling.NONE)
    assert np.allclose(it.hess1[0], np.diag([2.0, 3.0]))


def test_reset_hessian_clears_history():
    eng, it, _ = _engine(hess_update=HessUpdate.BFGS, hess_lim_mem=True, hess_memsize=2)
    it.delta_mat[:] = 1.0
    it.gamma_mat[:] = 2.0
    it.hess1[0] = 5.0 * np.eye(2)
    it.no_update_counter[0] = 4

    eng.reset_hessian(it)
    assert np.allclose(it.hess1[0], np.eye(2))
    assert not it.delta_mat.any()
    assert not it.gamma_mat.any()
    assert it.no_update_counter[0] == -1


def test_finite_difference_hessian_of_separable_problem(problem):
    method = SQPMethod(problem, SQPOptions(print_level=0, hess_update=HessUpdate.FINITE_DIFF))
    method.init()
    assert method._evaluate_derivatives()

    info = method.hessian.calc_finite_diff_hessian(method.it, problem, method.sparse)
    assert info == 0
    assert np.allclose(method.it.hess1[0], 2.0 * np.eye(3), atol=1e-6)
    assert np.allclose(method.it.hess1[1], np.zeros((2, 2)), atol=1e-6)


def test_convexify_shifts_only_indefinite_blocks():
    H = SymBlocks([0, 2, 3])
    H[0] = np.diag([-1.0, 2.0])
    H[1] = [[4.0]]

    out, shifted = convexify(H, 0.1)
    assert shifted
    assert np.allclose(out[0], np.diag([0.1, 3.1]))
    assert np.allclose(out[1], [[4.0]])
    # input untouched
    assert np.allclose(H[0], np.diag([-1.0, 2.0]))

    _, shifted = convexify(out, 0.1)
    assert not shifted


def test_convexify_force_lifts_small_eigenvalues():
    H = SymBlocks([0, 2])
    H[0] = np.diag([1e-3, 1.0])
    out, shifted = convexify(H, 0.5, force=True)
    assert shifted
    assert np.linalg.eigvalsh(out[0])[0] == pytest.approx(0.5)


def test_inertia_correction_schedule():
    opts = SQPOptions()
    ic = InertiaCorrection(opts)
    assert ic.first() == pytest.approx(opts.delta_h0)
    assert ic.grow() == pytest.approx(opts.delta_h0 * opts.kappa_plus_max)

    ic.accept(used=True)
    last = ic.delta_last
    assert ic.first() == pytest.approx(opts.kappa_minus * last)
    assert ic.grow() == pytest.approx(opts.kappa_minus * last * opts.kappa_plus)

    ic.accept(used=False)
    assert ic.first() == pytest.approx(opts.delta_h0)


def test_sr1_rejects_insignificant_denominator():
    eng, it, stats = _engine(hess_update=HessUpdate.SR1)
    B = np.diag([2.0, 3.0])
    it.hess1[0] = B
    delta = np.array([1.0, 0.0])
    # y - Bs is of order one but almost orthogonal to s
    gamma = B @ delta + np.array([1e-10, 1.0])

    assert not eng.calc_sr1(it, gamma, delta, 0)
    assert np.array_equal(it.hess1[0], B)
    assert stats.rejected_sr1 == 1

    gamma = B @ delta + np.array([1e-6, 1.0])
    assert eng.calc_sr1(it, gamma, delta, 0)
    assert np.allclose(it.hess1[0] @ delta, gamma)


def test_block_reset_after_consecutive_sr1_rejections():
    eng, it, stats = _engine(
        hess_update=HessUpdate.SR1, hess_lim_mem=False, max_consec_skipped_updates=3
    )
    B = np.diag([2.0, 3.0])
    it.hess1[0] = B
    delta = np.array([1.0, 0.0])
    gamma = B @ delta + np.array([1e-10, 1.0])

    for expected in (1, 2, 3):
        eng.update(it, 0, delta, gamma)
        assert it.no_update_counter[0] == expected
    assert np.array_equal(it.hess1[0], B)
    assert stats.rejected_sr1 == 3

    # restart from the identity, where the same pair is significant
    eng.update(it, 0, delta, gamma)
    assert it.no_update_counter[0] == 0
    assert stats.rejected_sr1 == 3
    assert np.allclose(it.hess1[0], [[2.0, 1.0], [1.0, 2.0]], atol=1e-8)


def test_limited_memory_skips_zero_columns():
    eng, it, stats = _engine(hess_update=HessUpdate.SR1, hess_lim_mem=True, hess_memsize=5)
    stats.it_count = 10
    newest = it.dg_pos
    it.delta_mat[:, newest], it.gamma_mat[:, newest] = [1.0, 0.0], [3.0, 0.5]

    eng.calc_hessian_update_limited_memory(it, HessUpdate.SR1, HessScaling.NONE)
    assert stats.rejected_sr1 == 0
    assert stats.n_total_skipped_updates == 0
    assert stats.n_total_updates == 1
    assert it.no_update_counter[0] == 0
    assert np.allclose(it.hess1[0] @ [1.0, 0.0], [3.0, 0.5])


def test_limited_memory_rebuild_after_reset_is_identity():
    eng, it, stats = _engine(hess_update=HessUpdate.BFGS, hess_lim_mem=True, hess_memsize=3)
    stats.it_count = 4
    it.delta_mat[:] = [[1.0, 0.5, 0.2], [0.0, 1.0, 0.3]]
    it.gamma_mat[:] = 2.0 * it.delta_mat
    eng.reset_hessian(it)

    eng.calc_hessian_update_limited_memory(it, HessUpdate.BFGS, HessScaling.NONE)
    assert np.allclose(it.hess1[0], np.eye(2))
    assert stats.n_total_updates == 0
    assert stats.n_total_skipped_updates == 0
    assert it.no_update_counter[0] == -1
