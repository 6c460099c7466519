"""
Feasibility restoration.

`RestorationProblem` turns a problem and a reference point x_ref into the
minimum-norm NLP

    minimize_{x, s}   ½ ρ ‖s‖²  +  ½ ζ ‖D (x - x_ref)‖²
    subject to        bl[n:] <= c(x) - s <= bu[n:]
                      bl[:n] <= x        <= bu[:n]

with D_i = 1/|x_ref,i| for |x_ref,i| > 1 (else 1), ρ = 1e3, ζ = 1e-3. Each
slack gets its own 1x1 Hessian block. The parent problem is borrowed: it must
outlive every restoration problem built from it.

`feasibility_restoration_phase` runs a nested SQP method on that NLP until the
outer filter accepts the restored point. There is no fallback behind it:
failure is fatal for the outer run.
"""

from __future__ import annotations

import logging
from typing import Optional, Union

import numpy as np
import scipy.sparse as sp

from .aux import HessScaling, HessUpdate, RestorationFailure, SecondDerv
from .matrix import linf_constraint_norm
from .problem import (
    DenseJacobian,
    Evaluation,
    Problem,
    SparseJacobian,
    Unsupported,
    jacobian_matrix,
)
from .stats import Diagnostics

RHO = 1.0e3
ZETA = 1.0e-3
MAX_REST_IT = 100


class RestorationProblem(Problem):
    def __init__(self, parent: Problem, xi_ref: np.ndarray):
        self.parent = parent
        self.xi_ref = np.array(xi_ref, dtype=float)
        n, m = int(parent.n_var), int(parent.n_con)
        self.n_orig = n
        self.n_var = n + m
        self.n_con = m

        self.block_idx = np.concatenate(
            [np.asarray(parent.block_idx, dtype=int), n + np.arange(1, m + 1, dtype=int)]
        )
        inf = np.full(m, np.inf)
        self.bl = np.concatenate([parent.bl[:n], -inf, parent.bl[n:]])
        self.bu = np.concatenate([parent.bu[:n], inf, parent.bu[n:]])

        ax = np.abs(self.xi_ref)
        self.diag_scale = np.where(ax > 1.0, 1.0 / np.maximum(ax, 1.0), 1.0)
        self.obj_lo = 0.0
        self.obj_up = np.inf

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def initial_slacks(self, constr: np.ndarray) -> np.ndarray:
        """Slacks that make c - s satisfy the violated constraint bound exactly."""
        n = self.n_orig
        c = np.asarray(constr, dtype=float)
        bl, bu = self.parent.bl[n:], self.parent.bu[n:]
        return np.where(c <= bl, c - bl, np.where(c > bu, c - bu, 0.0))

    def _parent_lambda(self, lambda_: np.ndarray) -> np.ndarray:
        n, m = self.n_orig, self.n_con
        return np.concatenate([lambda_[:n], lambda_[n + m:]])

    # ------------------------------------------------------------------ #
    # Problem contract
    # ------------------------------------------------------------------ #
    def initialize(self, xi: np.ndarray, lambda_: np.ndarray) -> Optional[SparseJacobian]:
        n = self.n_orig
        ev = self.parent.evaluate(self.xi_ref, np.zeros(self.parent.n_var + self.n_con), 0)
        xi[:n] = self.xi_ref
        xi[n:] = self.initial_slacks(ev.constr)
        lambda_[:] = 0.0
        return None

    def _evaluate(self, xi: np.ndarray, lambda_: np.ndarray, dmode: int, sparse: bool) -> Evaluation:
        n, m = self.n_orig, self.n_con
        x, s = xi[:n], xi[n:]
        ev = self.parent.evaluate(x, self._parent_lambda(lambda_), min(dmode, 1))
        if ev.info != 0:
            return Evaluation(obj=np.nan, constr=np.full(m, np.nan), info=ev.info)

        d2 = self.diag_scale ** 2
        dx = x - self.xi_ref
        obj = 0.5 * RHO * float(s @ s) + 0.5 * ZETA * float(np.sum(d2 * dx * dx))
        constr = np.asarray(ev.constr, dtype=float) - s
        out = Evaluation(obj=obj, constr=constr)
        if dmode >= 1:
            out.grad_obj = np.concatenate([ZETA * d2 * dx, RHO * s])
            J = jacobian_matrix(ev.jacobian, m, n, sparse=True)
            J_rest = sp.hstack([J, -sp.identity(m, format="csc")], format="csc")
            if sparse:
                out.jacobian = SparseJacobian.from_matrix(J_rest)
            else:
                out.jacobian = DenseJacobian(J_rest.toarray())
        return out

    def evaluate_sparse(self, xi, lambda_, dmode) -> Union[Evaluation, Unsupported]:
        return self._evaluate(xi, lambda_, dmode, sparse=True)

    def evaluate_dense(self, xi, lambda_, dmode) -> Union[Evaluation, Unsupported]:
        return self._evaluate(xi, lambda_, dmode, sparse=False)

    def print_info(self) -> None:
        logging.info(
            f"[Restoration] min-norm NLP: nVar={self.n_var} ({self.n_con} slacks), nCon={self.n_con}"
        )


# =============================================================================
# Restoration strategies used by the driver
# =============================================================================
def feasibility_restoration_heuristic(method) -> bool:
    """Problem-specific violation reduction; True if a feasible point was found."""
    it, prob, opts = method.it, method.problem, method.opts
    method.stats.n_rest_heur_calls += 1

    x_trial = prob.reduce_constraint_violation(it.xi.copy())
    if x_trial is None:
        return False
    x_trial = np.asarray(x_trial, dtype=float)

    ev = prob.evaluate(x_trial, it.lambda_, 1)
    method.stats.n_der_calls += 1
    if not ev.ok(prob.obj_lo, prob.obj_up):
        return False
    c_norm_trial = linf_constraint_norm(x_trial, ev.constr, prob.bu, prob.bl)
    if c_norm_trial > opts.nlinfeastol:
        return False

    it.delta_xi = x_trial - it.xi
    it.xi[:] = x_trial
    method.store_evaluation(ev)
    method.hessian.reset_hessian(it)
    return True


def feasibility_restoration_phase(method) -> None:
    """
    Minimize the constraint violation with a nested SQP run until the outer
    filter accepts the point. Raises `RestorationFailure` otherwise.
    """
    from ..sqp import SQPMethod

    it, prob, opts, stats = method.it, method.problem, method.opts, method.stats
    if not opts.restore_feas:
        raise RestorationFailure("restoration phase disabled")
    stats.n_rest_phase_calls += 1

    rest_prob = RestorationProblem(prob, it.xi)
    rest_opts = opts.copy(
        globalization=True,
        which_second_derv=SecondDerv.NONE,
        restore_feas=False,
        hess_update=HessUpdate.BFGS,
        hess_lim_mem=True,
        hess_memsize=max(int(opts.hess_memsize), 20),
        hess_scaling=HessScaling.OREN_LUENBERGER,
        print_level=0,
        debug_level=0,
    )
    rest = SQPMethod(rest_prob, rest_opts, diagnostics=Diagnostics.muted(rest_opts))
    rest.init()

    n = it.n_var
    accepted: Optional[tuple] = None
    for k in range(MAX_REST_IT):
        ret = rest.run(1, warm_start=(k > 0))
        if ret < 0:
            raise RestorationFailure("nested SQP run failed")

        x_trial = rest.it.xi[:n].copy()
        ev = prob.evaluate(x_trial, it.lambda_, 0)
        stats.n_fun_calls += 1
        if not ev.ok(prob.obj_lo, prob.obj_up):
            continue
        c_norm_trial = linf_constraint_norm(x_trial, ev.constr, prob.bu, prob.bl)
        if not it.filter.pair_in_filter(c_norm_trial, ev.obj):
            logging.info(f"[Restoration] filter-acceptable point after {k + 1} iterations")
            accepted = (x_trial, c_norm_trial)
            break

        # the min-norm NLP converged to an infeasible point
        if rest.it.tol < opts.opttol and rest.it.c_norm_s < opts.nlinfeastol:
            raise RestorationFailure("converged to a local minimizer of the violation", infeasible=True)
    else:
        raise RestorationFailure(f"no acceptable point within {MAX_REST_IT} iterations")

    x_new, _ = accepted
    lambda_new = np.concatenate([rest.it.lambda_[:n], rest.it.lambda_[rest_prob.n_var:]])
    ev = prob.evaluate(x_new, lambda_new, 1)
    stats.n_der_calls += 1
    if not ev.ok(prob.obj_lo, prob.obj_up):
        raise RestorationFailure(f"derivatives at the restored point failed (info={ev.info})")

    it.filter.augment(it.c_norm, it.obj)
    it.delta_xi = x_new - it.xi
    it.xi[:] = x_new
    it.lambda_[:] = lambda_new
    method.store_evaluation(ev)
    method.hessian.reset_hessian(it)
