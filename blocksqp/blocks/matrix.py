"""
Dense matrix primitives for block-structured SQP.

Symmetric Hessian blocks are stored as full (n_k x n_k) numpy arrays owned by a
`SymBlocks` container; the block-diagonal matrix is only assembled on request.
Limited-memory step / gradient histories are owned 2-D buffers addressed via
`ColumnView`, a numpy view into one column (never a copy).

Norm helpers use the bound convention

    bl[:n] <= x <= bu[:n],      bl[n:] <= c(x) <= bu[n:]

and report dimension mismatches on the log channel, returning 0.0.
"""

from __future__ import annotations

import logging
from typing import Iterator, List, Optional

import numpy as np


# ======================================
# Block storage
# ======================================
class SymBlocks:
    """Owned list of symmetric blocks aligned to a variable partition."""

    def __init__(self, block_idx, init_diag: float = 1.0):
        self.block_idx = np.asarray(block_idx, dtype=int)
        self.blocks: List[np.ndarray] = [
            init_diag * np.eye(int(n)) for n in np.diff(self.block_idx)
        ]

    @property
    def n_blocks(self) -> int:
        return len(self.blocks)

    @property
    def n_var(self) -> int:
        return int(self.block_idx[-1])

    def __len__(self) -> int:
        return len(self.blocks)

    def __iter__(self) -> Iterator[np.ndarray]:
        return iter(self.blocks)

    def __getitem__(self, k: int) -> np.ndarray:
        return self.blocks[k]

    def __setitem__(self, k: int, value) -> None:
        # write in place so views handed out earlier stay valid
        self.blocks[k][...] = value

    def span(self, k: int) -> slice:
        return slice(int(self.block_idx[k]), int(self.block_idx[k + 1]))

    def to_dense(self) -> np.ndarray:
        n = self.n_var
        H = np.zeros((n, n))
        for k, B in enumerate(self.blocks):
            s = self.span(k)
            H[s, s] = B
        return H

    def copy(self) -> "SymBlocks":
        out = SymBlocks.__new__(SymBlocks)
        out.block_idx = self.block_idx.copy()
        out.blocks = [B.copy() for B in self.blocks]
        return out


class ColumnView:
    """Offset+stride view of one column of an owned 2-D buffer."""

    __slots__ = ("buffer", "col")

    def __init__(self, buffer: np.ndarray, col: int = 0):
        self.buffer = buffer
        self.col = col

    @property
    def array(self) -> np.ndarray:
        return self.buffer[:, self.col]

    def assign(self, values) -> None:
        self.buffer[:, self.col] = values

    def advance(self) -> None:
        self.col = (self.col + 1) % self.buffer.shape[1]


# ======================================
# Vector norms
# ======================================
def _weighted(v: np.ndarray, weights) -> Optional[np.ndarray]:
    v = np.asarray(v, float).ravel()
    if weights is None:
        return v
    w = np.asarray(weights, float).ravel()
    if w.size != v.size:
        logging.error(f"[Norm] dimension mismatch: vector {v.size}, weights {w.size}")
        return None
    return w * v


def l1_vector_norm(v, weights=None) -> float:
    wv = _weighted(v, weights)
    if wv is None or wv.size == 0:
        return 0.0
    return float(np.sum(np.abs(wv)))


def l2_vector_norm(v, weights=None) -> float:
    wv = _weighted(v, weights)
    if wv is None or wv.size == 0:
        return 0.0
    return float(np.sqrt(np.dot(wv, wv)))


def linf_vector_norm(v, weights=None) -> float:
    wv = _weighted(v, weights)
    if wv is None or wv.size == 0:
        return 0.0
    return float(np.max(np.abs(wv)))


# ======================================
# Constraint violation norms
# ======================================
def _violations(xi, constr, bu, bl, weights=None) -> Optional[np.ndarray]:
    """Elementwise infeasibility of (x, c) w.r.t. [bl, bu]; None on mismatch."""
    xi = np.asarray(xi, float).ravel()
    constr = np.asarray(constr, float).ravel()
    bu = np.asarray(bu, float).ravel()
    bl = np.asarray(bl, float).ravel()
    n_tot = xi.size + constr.size
    if bu.size != n_tot or bl.size != n_tot:
        logging.error(
            f"[Norm] dimension mismatch: nVar+nCon={n_tot}, bl={bl.size}, bu={bu.size}"
        )
        return None
    z = np.concatenate([xi, constr])
    v = np.maximum(bl - z, 0.0) + np.maximum(z - bu, 0.0)
    if weights is not None:
        w = np.asarray(weights, float).ravel()
        if w.size != n_tot:
            logging.error(f"[Norm] dimension mismatch: nVar+nCon={n_tot}, weights={w.size}")
            return None
        v = w * v
    return v


def l1_constraint_norm(xi, constr, bu, bl, weights=None) -> float:
    v = _violations(xi, constr, bu, bl, weights)
    if v is None or v.size == 0:
        return 0.0
    return float(np.sum(v))


def l2_constraint_norm(xi, constr, bu, bl, weights=None) -> float:
    # squared violations of both sides, variables and constraints alike
    v = _violations(xi, constr, bu, bl, weights)
    if v is None or v.size == 0:
        return 0.0
    return float(np.sqrt(np.dot(v, v)))


def linf_constraint_norm(xi, constr, bu, bl, weights=None) -> float:
    v = _violations(xi, constr, bu, bl, weights)
    if v is None or v.size == 0:
        return 0.0
    return float(np.max(v))


# ======================================
# Eigenvalues
# ======================================
def calc_eigenvalues(B: np.ndarray) -> Optional[np.ndarray]:
    """Ascending eigenvalues of a symmetric matrix, or None if LAPACK fails."""
    try:
        return np.linalg.eigvalsh(B)
    except np.linalg.LinAlgError:
        logging.debug("[Eig] eigvalsh failed, no spectrum available")
        return None


def estimate_smallest_eigenvalue(B: np.ndarray) -> float:
    """Gershgorin lower bound on the spectrum of B."""
    B = np.asarray(B, float)
    if B.size == 0:
        return 0.0
    d = np.diag(B)
    radius = np.sum(np.abs(B), axis=1) - np.abs(d)
    return float(np.min(d - radius))


def smallest_eigenvalue(B: np.ndarray) -> float:
    ev = calc_eigenvalues(B)
    if ev is None or ev.size == 0 or not np.all(np.isfinite(ev)):
        return estimate_smallest_eigenvalue(B)
    return float(ev[0])

