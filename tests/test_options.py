"""Tests for option consistency and the iterate container."""

from types import SimpleNamespace

import numpy as np
import pytest

from blocksqp.blocks.aux import (
    BlockHess,
    HessScaling,
    HessSelector,
    HessUpdate,
    QPMode,
    SecondDerv,
    SQPIterate,
    SQPOptions,
)


def test_sr1_without_schur_mode_falls_back_to_bfgs(caplog):
    opts = SQPOptions(sparse_qp=QPMode.DENSE, hess_update=HessUpdate.SR1)
    opts.make_consistent()
    assert opts.hess_update == HessUpdate.BFGS
    assert opts.hess_scaling == opts.fallback_scaling == HessScaling.CENTERED_OL
    assert "SR1" in caplog.text


def test_sr1_kept_with_schur_mode():
    opts = SQPOptions(sparse_qp=QPMode.SPARSE_SCHUR, hess_update=HessUpdate.SR1).make_consistent()
    assert opts.hess_update == HessUpdate.SR1


def test_gauss_newton_uses_evaluated_blocks():
    opts = SQPOptions(hess_update=HessUpdate.GAUSS_NEWTON).make_consistent()
    assert opts.which_second_derv == SecondDerv.ALL
    assert opts.block_hess == BlockHess.BLOCKWISE
    assert not opts.hess_lim_mem
    assert opts.hess_memsize == 1


def test_memsize_zero_means_largest_block():
    opts = SQPOptions(hess_memsize=0).make_consistent(max_block_size=7)
    assert opts.hess_memsize == 7


def test_invalid_options_raise():
    with pytest.raises(ValueError):
        SQPOptions(max_it_qp=0).make_consistent()


def test_copy_leaves_original_untouched():
    opts = SQPOptions()
    other = opts.copy(opttol=1e-3)
    assert other.opttol == 1e-3
    assert opts.opttol == 1e-6


@pytest.mark.parametrize(
    "mode, expected",
    [
        (BlockHess.SINGLE, [0, 5]),
        (BlockHess.BLOCKWISE, [0, 1, 3, 5]),
        (BlockHess.HYBRID, [0, 3, 5]),
    ],
)
def test_iterate_block_structure(mode, expected):
    problem = SimpleNamespace(n_var=5, n_con=2, block_idx=[0, 1, 3, 5])
    it = SQPIterate(problem, SQPOptions(block_hess=mode).make_consistent())
    assert list(it.block_idx) == expected
    assert it.n_blocks == len(expected) - 1
    assert it.lambda_.size == 7


def test_iterate_ring_buffer_positions():
    problem = SimpleNamespace(n_var=2, n_con=0, block_idx=[0, 2])
    it = SQPIterate(problem, SQPOptions(hess_lim_mem=True, hess_memsize=2))
    it.delta_xi = [1.0, 2.0]
    it.update_delta_gamma()
    it.delta_xi = [3.0, 4.0]
    assert np.allclose(it.delta_mat, [[1.0, 3.0], [2.0, 4.0]])
    it.update_delta_gamma()
    assert it.dg_pos == 0


def test_iterate_hessian_selector_and_copy():
    problem = SimpleNamespace(n_var=2, n_con=0, block_idx=[0, 2])
    it = SQPIterate(problem, SQPOptions(hess_update=HessUpdate.SR1))
    assert it.hess2 is not None
    assert it.hess is it.hess1
    it.hess_sel = HessSelector.FALLBACK
    assert it.hess is it.hess2

    clone = it.copy()
    clone.hess1[0] = 5.0 * np.eye(2)
    clone.xi[0] = 1.0
    assert np.allclose(it.hess1[0], np.eye(2))
    assert it.xi[0] == 0.0
