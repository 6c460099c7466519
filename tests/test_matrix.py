"""Tests for block storage, column views and norm helpers."""

import logging

import numpy as np
import pytest

from blocksqp.blocks.matrix import (
    ColumnView,
    SymBlocks,
    estimate_smallest_eigenvalue,
    l1_constraint_norm,
    l1_vector_norm,
    l2_constraint_norm,
    l2_vector_norm,
    linf_constraint_norm,
    linf_vector_norm,
    smallest_eigenvalue,
)


def test_symblocks_layout_and_dense():
    H = SymBlocks([0, 2, 5], init_diag=3.0)
    assert H.n_blocks == 2
    assert H.n_var == 5
    assert H.span(1) == slice(2, 5)

    H[1] = np.full((3, 3), 2.0)
    D = H.to_dense()
    assert np.allclose(D[:2, :2], 3.0 * np.eye(2))
    assert np.allclose(D[2:, 2:], 2.0)
    assert np.allclose(D[:2, 2:], 0.0)


def test_symblocks_setitem_keeps_views_valid():
    H = SymBlocks([0, 2])
    view = H[0]
    H[0] = 7.0 * np.eye(2)
    assert np.allclose(view, 7.0 * np.eye(2))


def test_symblocks_copy_is_independent():
    H = SymBlocks([0, 1, 3])
    C = H.copy()
    C[1] = np.zeros((2, 2))
    assert np.allclose(H[1], np.eye(2))


def test_column_view_writes_through_and_wraps():
    buf = np.zeros((3, 2))
    view = ColumnView(buf)
    view.assign([1.0, 2.0, 3.0])
    assert np.allclose(buf[:, 0], [1.0, 2.0, 3.0])

    view.array[1] = -5.0
    assert buf[1, 0] == -5.0

    view.advance()
    assert view.col == 1
    view.advance()
    assert view.col == 0


def test_vector_norms():
    v = np.array([3.0, -4.0])
    assert l1_vector_norm(v) == pytest.approx(7.0)
    assert l2_vector_norm(v) == pytest.approx(5.0)
    assert linf_vector_norm(v) == pytest.approx(4.0)
    assert l2_vector_norm(v, weights=[2.0, 0.0]) == pytest.approx(6.0)
    assert linf_vector_norm(np.zeros(0)) == 0.0


def test_constraint_norms_count_both_sides():
    # x = 2 above bu = 1, c = -3 below bl = 0
    xi = np.array([2.0, 0.5])
    constr = np.array([-3.0])
    bl = np.array([-np.inf, 0.0, 0.0])
    bu = np.array([1.0, 1.0, np.inf])

    assert linf_constraint_norm(xi, constr, bu, bl) == pytest.approx(3.0)
    assert l1_constraint_norm(xi, constr, bu, bl) == pytest.approx(4.0)
    assert l2_constraint_norm(xi, constr, bu, bl) == pytest.approx(np.sqrt(10.0))


def test_constraint_norm_zero_when_feasible():
    xi = np.array([0.5])
    constr = np.array([1.0])
    bl = np.array([0.0, 1.0])
    bu = np.array([1.0, 1.0])
    assert linf_constraint_norm(xi, constr, bu, bl) == 0.0


def test_constraint_norm_dimension_mismatch_logs_and_returns_zero(caplog):
    with caplog.at_level(logging.ERROR):
        val = linf_constraint_norm(np.ones(2), np.ones(1), np.ones(2), np.zeros(2))
    assert val == 0.0
    assert "dimension mismatch" in caplog.text


def test_gershgorin_bounds_spectrum(rng):
    A = rng.standard_normal((5, 5))
    B = 0.5 * (A + A.T)
    assert estimate_smallest_eigenvalue(B) <= smallest_eigenvalue(B) + 1e-12
    assert smallest_eigenvalue(B) == pytest.approx(np.linalg.eigvalsh(B)[0])
