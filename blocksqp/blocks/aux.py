# Shared infrastructure for the block-SQP components:
# options, enums, exceptions, and the iterate that every stage mutates.

from __future__ import annotations

# =========================
# Standard library
# =========================
import copy
import logging
from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Optional

# =========================
# Third-party
# =========================
import numpy as np

from .filter import Filter
from .matrix import ColumnView, SymBlocks


# ======================================
# Enums
# ======================================
class QPMode(IntEnum):
    """How the QP subproblem is handed to the subsolver."""

    DENSE = 0
    SPARSE = 1
    SPARSE_SCHUR = 2


class BlockHess(IntEnum):
    SINGLE = 0
    BLOCKWISE = 1
    HYBRID = 2


class HessUpdate(IntEnum):
    CONSTANT = 0
    SR1 = 1
    BFGS = 2
    GAUSS_NEWTON = 3
    FINITE_DIFF = 4


class HessScaling(IntEnum):
    NONE = 0
    NOCEDAL = 1          # Shanno-Phua
    OREN_LUENBERGER = 2
    GEOMETRIC_MEAN = 3
    CENTERED_OL = 4      # selective sizing before every update


class SecondDerv(IntEnum):
    NONE = 0
    LAST_BLOCK = 1
    ALL = 2


class HessSelector(Enum):
    """Which owned Hessian array is active."""

    PRIMARY = "hess1"
    FALLBACK = "hess2"


class SQPStatus(IntEnum):
    CONVERGED = 0
    MAX_ITERATIONS = 1
    LOCAL_INFEASIBILITY = 2
    FAILURE = -1


# ======================================
# Exceptions
# ======================================
class SQPError(Exception):
    """Base class for errors raised between SQP components."""


class QPSubproblemError(SQPError):
    def __init__(self, status, message: str = ""):
        super().__init__(message or f"QP subproblem failed with status {status}")
        self.status = status


class RestorationFailure(SQPError):
    def __init__(self, message: str = "", infeasible: bool = False):
        super().__init__(message or "feasibility restoration failed")
        self.infeasible = infeasible


# ======================================
# Options
# ======================================
@dataclass
class SQPOptions:
    """
    Algorithmic options for `SQPMethod`.

    Notes
    -----
    • Call `make_consistent()` once before use (the driver does it); afterwards
      the options are treated as read-only.
    • Integer-valued fields accept the matching IntEnum members.
    """

    # ---------------- Output ----------------
    print_level: int = 2          # 0: silent, 1: summary, 2: one line per iteration
    print_color: bool = True
    debug_level: int = 0          # >=1: progress files, >1: primal/dual history
    outpath: str = "./"

    # ---------------- Numerics ----------------
    eps: float = 1.0e-16
    inf: float = 1.0e20
    opttol: float = 1.0e-6
    nlinfeastol: float = 1.0e-6

    # ---------------- Algorithm ----------------
    sparse_qp: int = QPMode.SPARSE_SCHUR
    globalization: bool = True
    restore_feas: bool = True
    skip_first_globalization: bool = False
    max_line_search: int = 20
    max_consec_reduced_steps: int = 100
    max_consec_skipped_updates: int = 100
    max_soc_iter: int = 3
    max_conv_qp: int = 1

    # ---------------- QP subsolver (piqp) ----------------
    max_it_qp: int = 5000
    max_time_qp: float = 10000.0
    qp_eps_abs: float = 1.0e-9
    qp_eps_rel: float = 1.0e-10
    qp_verbose: bool = False

    # ---------------- Hessian ----------------
    block_hess: int = BlockHess.BLOCKWISE
    hess_update: int = HessUpdate.SR1
    fallback_update: int = HessUpdate.BFGS
    hess_scaling: int = HessScaling.OREN_LUENBERGER
    fallback_scaling: int = HessScaling.CENTERED_OL
    hess_lim_mem: bool = True
    hess_memsize: int = 20
    which_second_derv: int = SecondDerv.NONE
    ini_hess_diag: float = 1.0
    hess_damp: bool = True
    hess_damp_fac: float = 0.2
    col_eps: float = 0.1
    col_tau1: float = 0.5
    col_tau2: float = 1.0e4

    # ---------------- Filter line search ----------------
    gamma_theta: float = 1.0e-5
    gamma_f: float = 1.0e-5
    kappa_soc: float = 0.99
    kappa_f: float = 0.999
    theta_max: float = 1.0e7
    theta_min: float = 1.0e-5
    delta: float = 1.0
    s_theta: float = 1.1
    s_f: float = 2.3
    eta: float = 1.0e-4

    # ---------------- Inertia correction ----------------
    kappa_minus: float = 0.333
    kappa_plus: float = 8.0
    kappa_plus_max: float = 100.0
    delta_h0: float = 1.0e-4

    def make_consistent(self, max_block_size: Optional[int] = None) -> "SQPOptions":
        """Resolve incompatible option combinations (in place)."""
        # SR1 may produce indefinite blocks; only the Schur mode can detect that
        if self.sparse_qp != QPMode.SPARSE_SCHUR and self.hess_update == HessUpdate.SR1:
            logging.warning(
                "[Options] SR1 update needs sparse_qp=SPARSE_SCHUR; "
                "using damped BFGS with the fallback scaling instead"
            )
            self.hess_update = HessUpdate.BFGS
            self.hess_scaling = self.fallback_scaling

        if not self.hess_lim_mem:
            self.hess_memsize = 1

        # Gauss-Newton blocks are supplied by the problem like exact ones
        if self.hess_update == HessUpdate.GAUSS_NEWTON:
            self.which_second_derv = SecondDerv.ALL

        # all blocks evaluated by the problem: no quasi-Newton history needed
        if self.which_second_derv == SecondDerv.ALL:
            self.block_hess = BlockHess.BLOCKWISE
            self.hess_lim_mem = False
            self.hess_memsize = 1

        if self.hess_lim_mem and self.hess_memsize == 0 and max_block_size is not None:
            self.hess_memsize = max_block_size

        if self.max_it_qp < 1 or self.max_line_search < 0 or self.hess_memsize < 1:
            raise ValueError("max_it_qp and hess_memsize must be >= 1, max_line_search >= 0")
        return self

    def copy(self, **changes) -> "SQPOptions":
        return replace(self, **changes)


# ======================================
# Iterate
# ======================================
class SQPIterate:
    """
    All quantities of one SQP run. Owned by the driver invocation that
    created it; `copy()` returns a fully independent deep copy.
    """

    def __init__(self, problem, opts: SQPOptions):
        n, m = int(problem.n_var), int(problem.n_con)
        self.n_var, self.n_con = n, m

        # ---------------- block structure ----------------
        pidx = np.asarray(problem.block_idx, dtype=int)
        if opts.block_hess == BlockHess.SINGLE or len(pidx) == 2:
            self.block_idx = np.array([0, n], dtype=int)
        elif opts.block_hess == BlockHess.HYBRID:
            self.block_idx = np.array([0, pidx[-2], n], dtype=int)
        else:
            self.block_idx = pidx.copy()
        nb = len(self.block_idx) - 1
        self.n_blocks = nb

        # ---------------- primal / dual ----------------
        self.xi = np.zeros(n)
        self.lambda_ = np.zeros(n + m)
        self.constr = np.zeros(m)
        self.obj = np.inf
        self.grad_obj = np.zeros(n)
        self.grad_lagrange = np.zeros(n)
        self.jac = None  # np.ndarray (dense QP) or scipy.sparse.csc_matrix
        self.trial_xi = np.zeros(n)

        # ---------------- QP data ----------------
        self.delta_bl = np.zeros(n + m)
        self.delta_bu = np.zeros(n + m)
        self.lambda_qp = np.zeros(n + m)
        self.adelta_xi = np.zeros(m)
        self.working_set = np.zeros(n + m, dtype=int)

        # ---------------- step / gradient-difference history ----------------
        mem = int(opts.hess_memsize) if opts.hess_lim_mem else 1
        self.delta_mat = np.zeros((n, mem))
        self.gamma_mat = np.zeros((n, mem))
        self._delta_view = ColumnView(self.delta_mat)
        self._gamma_view = ColumnView(self.gamma_mat)

        # ---------------- per-block update bookkeeping ----------------
        self.no_update_counter = np.full(nb, -1, dtype=int)
        self.delta_norm = np.ones(nb)
        self.delta_norm_old = np.ones(nb)
        self.delta_gamma = np.zeros(nb)
        self.delta_gamma_old = np.zeros(nb)

        # ---------------- Hessian ----------------
        self.hess1 = SymBlocks(self.block_idx, opts.ini_hess_diag)
        self.hess2 = (
            SymBlocks(self.block_idx, opts.ini_hess_diag)
            if opts.hess_update in (HessUpdate.SR1, HessUpdate.FINITE_DIFF)
            else None
        )
        self.hess_sel = HessSelector.PRIMARY

        # ---------------- globalization ----------------
        self.filter = Filter(opts.gamma_theta, opts.gamma_f, opts.nlinfeastol)
        self.alpha = 1.0
        self.n_socs = 0
        self.reduced_step_count = 0
        self.steptype = 0

        # ---------------- progress measures ----------------
        self.tol = np.inf
        self.c_norm = np.inf
        self.c_norm_s = np.inf
        self.grad_norm = np.inf
        self.lambda_step_norm = 0.0

    # ---------------- views ----------------
    @property
    def hess(self) -> SymBlocks:
        if self.hess_sel is HessSelector.FALLBACK and self.hess2 is not None:
            return self.hess2
        return self.hess1

    @property
    def delta_xi(self) -> np.ndarray:
        return self._delta_view.array

    @delta_xi.setter
    def delta_xi(self, value) -> None:
        self._delta_view.assign(value)

    @property
    def gamma(self) -> np.ndarray:
        return self._gamma_view.array

    @gamma.setter
    def gamma(self, value) -> None:
        self._gamma_view.assign(value)

    @property
    def dg_pos(self) -> int:
        return self._delta_view.col

    def update_delta_gamma(self) -> None:
        """Point deltaXi/gamma at the next (oldest) ring-buffer column."""
        if self.delta_mat.shape[1] == 1:
            return
        self._delta_view.advance()
        self._gamma_view.advance()

    # ---------------- copy ----------------
    def copy(self) -> "SQPIterate":
        out = copy.copy(self)
        for name, val in vars(self).items():
            if isinstance(val, np.ndarray):
                setattr(out, name, val.copy())
        out._delta_view = ColumnView(out.delta_mat, self._delta_view.col)
        out._gamma_view = ColumnView(out.gamma_mat, self._gamma_view.col)
        out.hess1 = self.hess1.copy()
        out.hess2 = self.hess2.copy() if self.hess2 is not None else None
        out.jac = self.jac.copy() if self.jac is not None else None
        out.filter = self.filter.copy()
        return out


# ======================================
# Helpers
# ======================================
def calc_lagrange_gradient(lambda_: np.ndarray, grad_obj: np.ndarray, jac, n_var: int) -> np.ndarray:
    """∇L = ∇f - λ_x - Jᵀ λ_c  for  L = f - λᵀ (x, c(x))."""
    g = np.asarray(grad_obj, float) - lambda_[:n_var]
    if jac is not None and jac.shape[0] > 0:
        g = g - np.asarray(jac.T @ lambda_[n_var:], dtype=float).ravel()
    return g
