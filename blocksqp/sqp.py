from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .blocks.aux import (
    HessUpdate,
    QPMode,
    RestorationFailure,
    SecondDerv,
    SQPError,
    SQPIterate,
    SQPOptions,
    SQPStatus,
    calc_lagrange_gradient,
)
from .blocks.hessian import BlockHessian, InertiaCorrection, convexify
from .blocks.linesearch import LineSearcher
from .blocks.matrix import linf_constraint_norm, linf_vector_norm
from .blocks.problem import Evaluation, Problem, jacobian_matrix
from .blocks.qp import (
    QPResult,
    QPSolver,
    QPStatus,
    constraint_step,
    hessian_matrix,
    update_step_bounds,
)
from .blocks.restoration import (
    feasibility_restoration_heuristic,
    feasibility_restoration_phase,
)
from .blocks.stats import Diagnostics, SQPStats

# retry marker of the line search fallback chain
_RETRY = object()


# =============================================================================
# SQP driver
# =============================================================================
class SQPMethod:
    """
    Filter line-search SQP with block-structured quasi-Newton Hessians.

    Usage
    -----
        method = SQPMethod(problem, opts)
        method.init()
        status = method.run(max_it)
        method.finish()

    `run` can be called again with `warm_start=True` to continue from the
    current iterate (the Hessian, filter and counters are kept).

    Step types recorded in `it.steptype`
    ------------------------------------
     0 : filter line search (or full step)
     1 : step computed with a reset (identity) Hessian
     2 : restoration heuristic
     3 : restoration phase
    -1 : full step accepted by KKT-error reduction
    """

    def __init__(
        self,
        problem: Problem,
        opts: Optional[SQPOptions] = None,
        stats: Optional[SQPStats] = None,
        diagnostics: Optional[Diagnostics] = None,
    ):
        problem.check_dimensions()
        self.problem = problem

        self.opts = (opts or SQPOptions()).copy()
        max_block = int(np.max(np.diff(problem.block_idx)))
        self.opts.make_consistent(max_block)

        self.stats = stats if stats is not None else SQPStats()
        self.diag = diagnostics if diagnostics is not None else Diagnostics(self.opts)
        self.sparse = int(self.opts.sparse_qp) != QPMode.DENSE

        self.it = SQPIterate(problem, self.opts)
        self.hessian = BlockHessian(self.opts, self.stats)
        self.qp = QPSolver(self.opts)
        self.inertia = InertiaCorrection(self.opts)
        self.line_search = LineSearcher(self)

        self._qp_hess = None  # matrix of the last accepted QP, reused by SOC
        self._delta_h = 0.0
        self._initialized = False
        self.status: Optional[SQPStatus] = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def init(self) -> None:
        """Starting point from the problem and the initial filter."""
        it = self.it
        self.problem.initialize(it.xi, it.lambda_)
        it.filter.init(self.opts.theta_max, self.problem.obj_lo)
        self._initialized = True

    def run(self, max_it: int, warm_start: bool = False) -> SQPStatus:
        """
        Perform at most `max_it` SQP iterations.

        Returns
        -------
        SQPStatus
            CONVERGED, MAX_ITERATIONS, LOCAL_INFEASIBILITY (restoration
            converged to an infeasible point) or FAILURE.
        """
        if not self._initialized:
            raise SQPError("init() must be called before run()")
        with self.diag.session(append=warm_start and self.stats.it_count > 0):
            self.status = self._run(int(max_it), warm_start)
        return self.status

    def finish(self) -> None:
        self.diag.close()
        if self.status is not None:
            self.diag.print_summary(self.status, self.stats)
        logging.info(f"[SQP] finished after {self.stats.it_count} iterations")

    # ------------------------------------------------------------------ #
    # Evaluation helpers
    # ------------------------------------------------------------------ #
    def _dmode(self) -> int:
        o = self.opts
        if o.which_second_derv == SecondDerv.ALL:
            return 3
        if o.which_second_derv == SecondDerv.LAST_BLOCK:
            return 2
        return 1

    def store_evaluation(self, ev: Evaluation) -> None:
        """Copy values and derivatives of an evaluation into the iterate."""
        it = self.it
        it.obj = float(ev.obj)
        it.constr[:] = ev.constr
        if ev.grad_obj is not None:
            it.grad_obj[:] = ev.grad_obj
        if ev.jacobian is not None:
            it.jac = jacobian_matrix(ev.jacobian, it.n_con, it.n_var, self.sparse)
        if ev.hess is not None:
            self.hessian.set_evaluated_blocks(it, ev.hess)

    def _evaluate_derivatives(self) -> bool:
        it = self.it
        ev = self.problem.evaluate(it.xi, it.lambda_, self._dmode())
        self.stats.n_der_calls += 1
        if ev.info != 0:
            self.diag.message(f"***Evaluation of derivatives failed (info={ev.info}). Stop.***")
            return False
        self.store_evaluation(ev)
        return True

    def calc_opt_tol(self) -> bool:
        """Optimality and feasibility measures; True if both tolerances hold."""
        it, o = self.it, self.opts
        it.grad_lagrange = calc_lagrange_gradient(it.lambda_, it.grad_obj, it.jac, it.n_var)
        it.grad_norm = linf_vector_norm(it.grad_lagrange)
        it.tol = it.grad_norm / (1.0 + linf_vector_norm(it.lambda_))
        it.c_norm = linf_constraint_norm(it.xi, it.constr, self.problem.bu, self.problem.bl)
        it.c_norm_s = it.c_norm / (1.0 + linf_vector_norm(it.xi))
        return it.tol <= o.opttol and it.c_norm_s <= o.nlinfeastol

    # ------------------------------------------------------------------ #
    # QP
    # ------------------------------------------------------------------ #
    def _may_be_indefinite(self) -> bool:
        o = self.opts
        return (
            o.hess_update in (HessUpdate.SR1, HessUpdate.FINITE_DIFF)
            or o.which_second_derv != SecondDerv.NONE
        )

    def _count_qp(self, res: QPResult, used: bool) -> None:
        if used:
            self.stats.qp_iterations += res.iterations
        else:
            self.stats.qp_iterations2 += res.iterations

    def _dump_qp(self, H) -> None:
        it, n = self.it, self.it.n_var
        args = (H, it.grad_obj, it.jac if it.jac is not None else np.zeros((0, n)),
                it.delta_bl[:n], it.delta_bu[:n], it.delta_bl[n:], it.delta_bu[n:])
        self.diag.dump_qp(*args, tag=f"_{self.stats.it_count}")
        self.diag.dump_qp_matlab(*args)

    def solve_qp(self, soc: bool = False) -> QPResult:
        """
        Solve the QP subproblem at the current step bounds.

        The first attempt convexifies only indefinite blocks. Further attempts
        (indefinite updates only) shift with a growing δ, and the last one uses
        the positive definite fallback Hessian if there is one. A second-order
        correction reuses the Hessian of the last accepted QP.

        On success (main QP) the step, multipliers, working set and J·d are
        stored in the iterate.
        """
        it, o, st = self.it, self.opts, self.stats

        if soc:
            res = self.qp.solve(self._qp_hess, it.grad_obj, it.jac, it.delta_bl, it.delta_bu)
            self._count_qp(res, used=res.status == QPStatus.OPTIMAL)
            return res

        n_attempts = o.max_conv_qp + 1 if self._may_be_indefinite() else 1
        res = None
        H = None
        shifted = False
        for attempt in range(n_attempts):
            last = attempt == n_attempts - 1
            if attempt > 0 and last and it.hess2 is not None:
                if o.hess_lim_mem:
                    self.hessian.calc_fallback_limited_memory(it)
                hess, shifted = convexify(it.hess2, self.inertia.delta or o.delta_h0)
                logging.debug("[SQP] solving QP with the fallback Hessian")
            else:
                delta = self.inertia.first() if attempt == 0 else self.inertia.grow()
                hess, shifted = convexify(it.hess1, delta, force=attempt > 0)

            if attempt > 0:
                st.qp_resolve += 1
                if o.hess_update == HessUpdate.SR1:
                    st.rejected_sr1 += 1

            H = hessian_matrix(hess, o.eps, self.sparse)
            if o.debug_level > 2:
                self._dump_qp(H)
            res = self.qp.solve(H, it.grad_obj, it.jac, it.delta_bl, it.delta_bu)

            if res.status == QPStatus.INFEASIBLE:
                self._count_qp(res, used=False)
                return res
            if res.status == QPStatus.OPTIMAL:
                break
            self._count_qp(res, used=False)
            logging.debug(f"[SQP] QP attempt {attempt} ended with {res.status.name}")

        self.inertia.accept(shifted)
        self._delta_h = self.inertia.delta if shifted else 0.0

        if res.status in (QPStatus.OPTIMAL, QPStatus.ITERATION_LIMIT):
            if res.status == QPStatus.OPTIMAL:
                self._count_qp(res, used=True)
            self._qp_hess = H
            it.delta_xi = res.x
            it.lambda_qp[:] = res.lambda_
            it.working_set[:] = res.working_set
            it.adelta_xi = constraint_step(it.jac, res.x)
        return res

    # ------------------------------------------------------------------ #
    # Restoration
    # ------------------------------------------------------------------ #
    def _needs_restoration(self) -> bool:
        return self.it.c_norm > 0.01 * self.opts.nlinfeastol

    def _restoration_phase(self) -> Optional[SQPStatus]:
        """None on success, otherwise the status the run ends with."""
        try:
            feasibility_restoration_phase(self)
        except RestorationFailure as e:
            if e.infeasible:
                self.diag.message(f"***Restoration phase: {e}. Problem is locally infeasible.***")
                return SQPStatus.LOCAL_INFEASIBILITY
            self.diag.message(f"***Restoration phase failed: {e}. Stop.***")
            return SQPStatus.FAILURE
        self.it.steptype = 3
        return None

    def _recover_infeasible_qp(self) -> Optional[SQPStatus]:
        it = self.it
        if it.steptype < 2:
            self.diag.message("***QP infeasible. Trying to reduce constraint violation with a heuristic.***")
            if feasibility_restoration_heuristic(self):
                it.steptype = 2
                return None
        if self.opts.restore_feas and self._needs_restoration():
            self.diag.message("***QP infeasible. Start restoration phase.***")
            return self._restoration_phase()
        self.diag.message("***QP infeasible. Stop.***")
        return SQPStatus.FAILURE

    def _recover_line_search(self) -> Optional[SQPStatus]:
        """
        Fallbacks after a failed line search, in order. Returns None when a
        new point was found, `_RETRY` to recompute the step with the reset
        Hessian, otherwise the status the run ends with.
        """
        it, o = self.it, self.opts

        if self.line_search.kkt_error_reduction():
            it.steptype = -1
            return None

        if self._needs_restoration() and it.steptype < 2:
            self.diag.message("***Warning! Steplength too short. Trying to find a new point with a heuristic.***")
            if feasibility_restoration_heuristic(self):
                it.steptype = 2
                return None

        # after a heuristic or a reset the identity step was already tried
        if it.steptype not in (1, 2):
            self.diag.message("***Warning! Steplength too short. Trying to reduce constraint violation with identity Hessian.***")
            it.steptype = 1
            self.hessian.reset_hessian(it)
            return _RETRY

        if o.restore_feas and self._needs_restoration():
            self.diag.message("***Warning! Steplength too short. Start restoration phase.***")
            return self._restoration_phase()

        self.diag.message("***Line search error. Stop.***")
        return SQPStatus.FAILURE

    # ------------------------------------------------------------------ #
    # Hessian revision
    # ------------------------------------------------------------------ #
    def _revise_hessian(self) -> None:
        it, o = self.it, self.opts
        if o.which_second_derv == SecondDerv.ALL or o.hess_update == HessUpdate.CONSTANT:
            return
        if o.hess_update == HessUpdate.FINITE_DIFF:
            info = self.hessian.calc_finite_diff_hessian(it, self.problem, self.sparse)
            if info != 0:
                self.diag.message("***Finite-difference Hessian failed. Reset to identity.***")
                self.hessian.reset_hessian(it)
        elif o.hess_lim_mem:
            self.hessian.calc_hessian_update_limited_memory(it, o.hess_update, o.hess_scaling)
        else:
            self.hessian.calc_hessian_update(it)

    # ------------------------------------------------------------------ #
    # Main loop
    # ------------------------------------------------------------------ #
    def _run(self, max_it: int, warm_start: bool) -> SQPStatus:
        it, o, st, prob = self.it, self.opts, self.stats, self.problem

        if not warm_start or st.it_count == 0:
            self.hessian.calc_initial_hessian(it)
            if not self._evaluate_derivatives():
                return SQPStatus.FAILURE
            if not np.isfinite(it.obj):
                self.diag.message("***Objective could not be evaluated at the starting point. Stop.***")
                return SQPStatus.FAILURE
            has_converged = self.calc_opt_tol()
            self.diag.print_progress(prob, it, st, has_converged)
            if has_converged:
                return SQPStatus.CONVERGED
            st.it_count += 1

        for _ in range(max_it):
            # ---- step computation ----
            skip_line_search = False
            update_step_bounds(it, prob, o)
            res = self.solve_qp()

            if res.status == QPStatus.ITERATION_LIMIT:
                self.diag.message("***Warning! Maximum number of QP iterations exceeded.***")
            elif res.status in (QPStatus.UNBOUNDED, QPStatus.ERROR):
                self.diag.message(f"***QP error ({res.status.name}). Solve again with identity matrix.***")
                self.hessian.reset_hessian(it)
                res = self.solve_qp()
                if res.status not in (QPStatus.OPTIMAL, QPStatus.ITERATION_LIMIT):
                    self.diag.message("***QP error. Stop.***")
                    return SQPStatus.FAILURE
                it.steptype = 1
            elif res.status == QPStatus.INFEASIBLE:
                skip_line_search = True
                stop = self._recover_infeasible_qp()
                if stop is not None:
                    return stop

            # ---- globalization ----
            if not skip_line_search:
                if not o.globalization or (o.skip_first_globalization and st.it_count == 1):
                    if not self.line_search.fullstep():
                        self.diag.message("***Constraint or objective could not be evaluated at new point. Stop.***")
                        return SQPStatus.FAILURE
                    it.steptype = 0
                else:
                    accepted = self.line_search.filter_line_search()
                    if accepted and it.reduced_step_count > o.max_consec_reduced_steps:
                        self.diag.message("***Warning! Too many consecutive reduced steps.***")
                        it.reduced_step_count = 0
                        accepted = False
                    if accepted:
                        it.steptype = 0
                    else:
                        stop = self._recover_line_search()
                        if stop is _RETRY:
                            continue
                        if stop is not None:
                            return stop

            # ---- new point ----
            # gradient difference starts from ∇L(x_k, λ_{k+1})
            it.gamma = -calc_lagrange_gradient(it.lambda_, it.grad_obj, it.jac, it.n_var)
            if not self._evaluate_derivatives():
                return SQPStatus.FAILURE

            has_converged = self.calc_opt_tol()
            self.diag.print_progress(prob, it, st, has_converged, self._delta_h)
            if has_converged and it.steptype < 2:
                st.it_count += 1
                return SQPStatus.CONVERGED

            it.gamma = it.gamma + it.grad_lagrange

            # ---- Hessian ----
            self._revise_hessian()
            it.update_delta_gamma()
            st.it_count += 1

        return SQPStatus.MAX_ITERATIONS
