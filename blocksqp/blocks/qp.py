"""
QP subproblem assembly and the PIQP wrapper.

Each SQP iteration solves

    minimize_d      ½ dᵀ B d + ∇f(x)ᵀ d
    subject to      bl[:n] - x      <= d    <= bu[:n] - x
                    bl[n:] - c(x)   <= J d  <= bu[n:] - c(x)

where B is the block-diagonal Hessian approximation. For a second-order
correction the constraint bounds are shifted by c(x + d) - J d instead.

Conventions
-----------
- Step bounds are stored in the iterate (`delta_bl`, `delta_bu`), infinite
  entries as ±inf (bounds with |b| >= opts.inf count as infinite).
- Multipliers are returned with the sign convention of L = f - λᵀ(x, c):
  λ_i > 0 for an active lower bound, λ_i < 0 for an active upper bound.
- Constraint rows with equal bounds are passed to PIQP as equalities, all
  other finite sides as one-sided inequality rows (G d <= h).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Tuple

import numpy as np
import piqp
import scipy.sparse as sp

from .matrix import SymBlocks

ACTIVE_TOL = 1.0e-9


# =============================================================================
# Status / result
# =============================================================================
class QPStatus(IntEnum):
    OPTIMAL = 0
    ITERATION_LIMIT = 1
    UNBOUNDED = 2
    INFEASIBLE = 3
    ERROR = 4


_PIQP_STATUS = {
    piqp.PIQP_SOLVED: QPStatus.OPTIMAL,
    piqp.PIQP_MAX_ITER_REACHED: QPStatus.ITERATION_LIMIT,
    piqp.PIQP_PRIMAL_INFEASIBLE: QPStatus.INFEASIBLE,
    piqp.PIQP_DUAL_INFEASIBLE: QPStatus.UNBOUNDED,
}


@dataclass
class QPResult:
    status: QPStatus
    x: np.ndarray
    lambda_: np.ndarray
    iterations: int = 0
    working_set: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=int))
    run_time: float = 0.0


# =============================================================================
# Builder helpers
# =============================================================================
def _finite_or_inf(b: np.ndarray, inf: float, sign: float) -> np.ndarray:
    b = np.asarray(b, dtype=float)
    return np.where(np.abs(b) >= inf, sign * np.inf, b)


def update_step_bounds(it, problem, opts, soc: bool = False, constr=None) -> None:
    """
    Shift the problem bounds to the current iterate. With `soc`, `constr`
    holds c(x + d) and the constraint bounds become bl - c(x + d) + J d.
    """
    n = it.n_var
    bl = _finite_or_inf(problem.bl, opts.inf, -1.0)
    bu = _finite_or_inf(problem.bu, opts.inf, +1.0)

    it.delta_bl[:n] = bl[:n] - it.xi
    it.delta_bu[:n] = bu[:n] - it.xi

    c_ref = it.constr if constr is None else np.asarray(constr, dtype=float)
    shift = -c_ref + (it.adelta_xi if soc else 0.0)
    it.delta_bl[n:] = bl[n:] + shift
    it.delta_bu[n:] = bu[n:] + shift


def convert_hessian(hess: SymBlocks, eps: float) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Merge the blocks into one symmetric CSC matrix (both triangles).

    Returns
    -------
    hess_nz, hess_ind_row, hess_ind_col : CSC arrays (entries with |h| > eps)
    hess_ind_lo : for every column j the index of its first entry with row >= j
    """
    n = hess.n_var
    nz, rows = [], []
    ind_col = np.zeros(n + 1, dtype=int)
    ind_lo = np.zeros(n, dtype=int)

    col = 0
    for k, B in enumerate(hess.blocks):
        off = int(hess.block_idx[k])
        for j in range(B.shape[0]):
            r = np.flatnonzero(np.abs(B[:, j]) > eps)
            ind_lo[col] = ind_col[col] + int(np.searchsorted(r + off, col))
            rows.append(r + off)
            nz.append(B[r, j])
            ind_col[col + 1] = ind_col[col] + r.size
            col += 1

    hess_nz = np.concatenate(nz) if nz else np.zeros(0)
    hess_ind_row = np.concatenate(rows).astype(int) if rows else np.zeros(0, dtype=int)
    return hess_nz, hess_ind_row, ind_col, ind_lo


def hessian_matrix(hess: SymBlocks, eps: float, sparse: bool):
    if not sparse:
        return hess.to_dense()
    nz, ind_row, ind_col, _ = convert_hessian(hess, eps)
    n = hess.n_var
    return sp.csc_matrix((nz, ind_row, ind_col), shape=(n, n))


def constraint_step(jac, d: np.ndarray) -> np.ndarray:
    """J d as a flat array (empty when there are no constraints)."""
    if jac is None or jac.shape[0] == 0:
        return np.zeros(0)
    return np.asarray(jac @ d, dtype=float).ravel()


def _select_rows(A, mask: np.ndarray):
    if sp.issparse(A):
        return sp.csr_matrix(A)[np.flatnonzero(mask)].tocsc()
    return np.asarray(A)[mask]


def _stack_rows(blocks, sparse: bool, n: int):
    if sparse:
        return sp.vstack(blocks, format="csc") if blocks else sp.csc_matrix((0, n))
    return np.vstack(blocks) if blocks else np.zeros((0, n))


# =============================================================================
# PIQP wrapper
# =============================================================================
class QPSolver:
    """
    Solves the QP subproblem with PIQP (dense or sparse backend).

    Parameters
    ----------
    opts : SQPOptions
        Reads sparse_qp, max_it_qp, max_time_qp, qp_eps_abs, qp_eps_rel, qp_verbose.
    """

    def __init__(self, opts):
        self.opts = opts
        self.sparse = int(opts.sparse_qp) != 0

    def _new_solver(self):
        solver = piqp.SparseSolver() if self.sparse else piqp.DenseSolver()
        s = solver.settings
        s.eps_abs = self.opts.qp_eps_abs
        s.eps_rel = self.opts.qp_eps_rel
        s.max_iter = int(self.opts.max_it_qp)
        s.verbose = bool(self.opts.qp_verbose)
        s.compute_timings = True
        return solver

    def solve(self, H, g: np.ndarray, A, lb: np.ndarray, ub: np.ndarray) -> QPResult:
        """
        minimize ½ dᵀHd + gᵀd  s.t.  lb[:n] <= d <= ub[:n],  lb[n:] <= A d <= ub[n:].
        """
        g = np.asarray(g, dtype=float).ravel()
        n = g.size
        if A is None:
            A = sp.csc_matrix((0, n)) if self.sparse else np.zeros((0, n))
        m = A.shape[0]
        if self.sparse:
            P, A = sp.csc_matrix(H), sp.csc_matrix(A)
        else:
            P = np.asarray(H.toarray() if sp.issparse(H) else H, dtype=float)
            A = np.asarray(A.toarray() if sp.issparse(A) else A, dtype=float)

        lb_c, ub_c = lb[n:], ub[n:]
        eq = np.isfinite(lb_c) & np.isfinite(ub_c) & (lb_c == ub_c)
        up = np.isfinite(ub_c) & ~eq
        lo = np.isfinite(lb_c) & ~eq

        A_eq = _select_rows(A, eq)
        b_eq = lb_c[eq]
        G = _stack_rows([_select_rows(A, up), -_select_rows(A, lo)], self.sparse, n)
        h = np.concatenate([ub_c[up], -lb_c[lo]])

        solver = self._new_solver()
        # empty row blocks are passed as None
        solver.setup(
            P, g,
            A_eq if b_eq.size else None, b_eq if b_eq.size else None,
            G if h.size else None, h if h.size else None,
            np.asarray(lb[:n], float), np.asarray(ub[:n], float),
        )
        raw = solver.solve()
        res = solver.result

        status = _PIQP_STATUS.get(raw, QPStatus.ERROR)
        run_time = float(getattr(res.info, "run_time", 0.0))
        if status == QPStatus.OPTIMAL and run_time > self.opts.max_time_qp:
            logging.warning(f"[QP] time limit exceeded ({run_time:.2e}s > {self.opts.max_time_qp:.2e}s)")
            status = QPStatus.ITERATION_LIMIT
        if status != QPStatus.OPTIMAL:
            logging.debug(f"[QP] PIQP returned {raw} -> {status.name}")

        x = np.asarray(res.x, dtype=float).copy()
        lam = np.zeros(n + m)
        lam[:n] = np.asarray(res.z_lb, float)[:n] - np.asarray(res.z_ub, float)[:n]
        lam_c = np.zeros(m)
        lam_c[eq] = -np.asarray(res.y, float)
        z = np.asarray(res.z, float)
        n_up = int(up.sum())
        lam_c[up] -= z[:n_up]
        lam_c[lo] += z[n_up:]
        lam[n:] = lam_c

        if not (np.all(np.isfinite(x)) and np.all(np.isfinite(lam))):
            status = QPStatus.ERROR

        return QPResult(
            status=status,
            x=x,
            lambda_=lam,
            iterations=int(res.info.iter),
            working_set=working_set(lam, eq, n),
            run_time=run_time,
        )


def working_set(lam: np.ndarray, eq: np.ndarray, n: int) -> np.ndarray:
    """-1: lower bound active, +1: upper bound active, 0: inactive."""
    scale = max(1.0, float(np.max(np.abs(lam)))) if lam.size else 1.0
    ws = np.zeros(lam.size, dtype=int)
    ws[lam > ACTIVE_TOL * scale] = -1
    ws[lam < -ACTIVE_TOL * scale] = 1
    # equality rows are always in the working set
    ws[n:][eq & (ws[n:] == 0)] = -1
    return ws
