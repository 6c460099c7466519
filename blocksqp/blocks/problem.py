"""
Problem contract consumed by the SQP driver.

A problem is

    minimize    f(x)
    subject to  bl[:n] <= x    <= bu[:n]
                bl[n:] <= c(x) <= bu[n:]

with the variables partitioned into contiguous blocks `block_idx` (the
Hessian of the Lagrangian is assumed block-diagonal w.r.t. that partition).

Subclasses implement `initialize` and at least one of `evaluate_sparse` /
`evaluate_dense`. Each returns either an `Evaluation` or the `UNSUPPORTED`
marker; `Problem.evaluate` tries the sparse path first and falls back to the
dense one.

Derivative modes (`dmode`)
--------------------------
0 : objective and constraint values only
1 : + objective gradient and constraint Jacobian
2 : + exact Hessian of the Lagrangian, last block only
3 : + exact Hessian of the Lagrangian, all blocks
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import scipy.sparse as sp


# ======================================
# Tagged Jacobian results
# ======================================
@dataclass
class DenseJacobian:
    values: np.ndarray  # (nCon, nVar)


@dataclass
class SparseJacobian:
    """Compressed sparse column storage (nz, row indices, column pointers)."""

    nz: np.ndarray
    ind_row: np.ndarray
    ind_col: np.ndarray

    @classmethod
    def from_matrix(cls, M) -> "SparseJacobian":
        C = sp.csc_matrix(M)
        C.sort_indices()
        return cls(C.data.astype(float), C.indices.astype(int), C.indptr.astype(int))

    def to_csc(self, n_con: int, n_var: int) -> sp.csc_matrix:
        return sp.csc_matrix((self.nz, self.ind_row, self.ind_col), shape=(n_con, n_var))


class Unsupported:
    """Marker returned by an evaluation path the problem does not implement."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSUPPORTED"


UNSUPPORTED = Unsupported()

Jacobian = Union[DenseJacobian, SparseJacobian]


@dataclass
class Evaluation:
    obj: float
    constr: np.ndarray
    grad_obj: Optional[np.ndarray] = None
    jacobian: Optional[Jacobian] = None
    hess: Optional[List[np.ndarray]] = None
    info: int = 0

    def ok(self, obj_lo: float = -np.inf, obj_up: float = np.inf) -> bool:
        """Evaluation succeeded and produced finite values inside [obj_lo, obj_up]."""
        if self.info != 0:
            return False
        if not np.isfinite(self.obj) or self.obj < obj_lo or self.obj > obj_up:
            return False
        return bool(np.all(np.isfinite(self.constr)))


# ======================================
# Problem base class
# ======================================
class Problem:
    """Base class for user problems (see module docstring)."""

    n_var: int = 0
    n_con: int = 0
    block_idx: np.ndarray = None
    bl: np.ndarray = None
    bu: np.ndarray = None
    obj_lo: float = -np.inf
    obj_up: float = np.inf

    _sparse_supported: Optional[bool] = None

    # ---------------- required ----------------
    def initialize(self, xi: np.ndarray, lambda_: np.ndarray) -> Optional[SparseJacobian]:
        """
        Write the starting point into `xi` and `lambda_` (in place) and return
        the fixed Jacobian sparsity pattern, or None for dense problems.
        """
        raise NotImplementedError

    def evaluate_sparse(
        self, xi: np.ndarray, lambda_: np.ndarray, dmode: int
    ) -> Union[Evaluation, Unsupported]:
        return UNSUPPORTED

    def evaluate_dense(
        self, xi: np.ndarray, lambda_: np.ndarray, dmode: int
    ) -> Union[Evaluation, Unsupported]:
        return UNSUPPORTED

    # ---------------- optional ----------------
    def reduce_constraint_violation(self, xi: np.ndarray) -> Optional[np.ndarray]:
        """Problem-specific heuristic returning a less infeasible point, or None."""
        return None

    def print_info(self) -> None:
        logging.info(
            f"[Problem] {type(self).__name__}: nVar={self.n_var}, nCon={self.n_con}, "
            f"nBlocks={len(self.block_idx) - 1}"
        )

    # ---------------- dispatch ----------------
    def evaluate(
        self, xi: np.ndarray, lambda_: np.ndarray, dmode: int
    ) -> Evaluation:
        """
        Sparse evaluation first, dense as fallback, independent of the QP mode
        (`jacobian_matrix` converts the Jacobian to the format the QP needs).
        """
        res: Union[Evaluation, Unsupported] = UNSUPPORTED
        if self._sparse_supported is not False:
            res = self.evaluate_sparse(xi, lambda_, dmode)
            self._sparse_supported = not isinstance(res, Unsupported)
        if isinstance(res, Unsupported):
            res = self.evaluate_dense(xi, lambda_, dmode)
        if isinstance(res, Unsupported):
            raise NotImplementedError(
                f"{type(self).__name__} implements neither evaluate_sparse nor evaluate_dense"
            )
        return res

    def check_dimensions(self) -> None:
        """Validate the block partition and bound vectors."""
        n, m = int(self.n_var), int(self.n_con)
        if self.block_idx is None:
            self.block_idx = np.array([0, n], dtype=int)
        self.block_idx = np.asarray(self.block_idx, dtype=int)
        bi = self.block_idx
        if bi.ndim != 1 or bi.size < 2 or bi[0] != 0 or bi[-1] != n:
            raise ValueError(f"block_idx must run from 0 to nVar={n}, got {bi.tolist()}")
        if np.any(np.diff(bi) <= 0):
            raise ValueError(f"block_idx must be strictly increasing, got {bi.tolist()}")
        self.bl = np.asarray(self.bl, dtype=float).ravel()
        self.bu = np.asarray(self.bu, dtype=float).ravel()
        if self.bl.size != n + m or self.bu.size != n + m:
            raise ValueError(
                f"bounds must have length nVar+nCon={n + m} (bl={self.bl.size}, bu={self.bu.size})"
            )
        if np.any(self.bl > self.bu):
            bad = np.flatnonzero(self.bl > self.bu)
            raise ValueError(f"lower bound exceeds upper bound at indices {bad.tolist()}")

    @property
    def n_blocks(self) -> int:
        return len(self.block_idx) - 1


def jacobian_matrix(jac: Optional[Jacobian], n_con: int, n_var: int, sparse: bool):
    """Convert a tagged Jacobian into the storage the QP mode expects."""
    if jac is None:
        return None
    if isinstance(jac, SparseJacobian):
        M = jac.to_csc(n_con, n_var)
        return M if sparse else M.toarray()
    values = np.asarray(jac.values, dtype=float).reshape(n_con, n_var)
    return sp.csc_matrix(values) if sparse else values
