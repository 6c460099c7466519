import logging
from typing import Tuple

import numpy as np

from .aux import calc_lagrange_gradient
from .matrix import linf_constraint_norm, linf_vector_norm
from .problem import Evaluation
from .soc import SOCCorrector

MAX_FULLSTEP_HALVINGS = 10


class LineSearcher:
    """Filter line search on (θ, f) with second-order corrections.

    - `filter_line_search()`  : backtracking with the switching condition,
                                Armijo for f-type steps, filter otherwise.
    - `fullstep()`            : no globalization, halves until the point
                                can be evaluated and θ <= θ_max.
    - `kkt_error_reduction()` : last resort, full step if the KKT error drops.

    θ is the ℓ∞ constraint violation. All methods return True once a step
    was accepted (and stored via `accept_step`).
    """

    def __init__(self, method):
        self.method = method
        self.soc = SOCCorrector(method, self)

    # ------------------------------------------------------------------ #
    # Trial evaluation
    # ------------------------------------------------------------------ #
    def trial(self, x: np.ndarray) -> Tuple[Evaluation, float]:
        """Values at x (dmode 0). θ is NaN when the evaluation is unusable."""
        m = self.method
        prob = m.problem
        ev = prob.evaluate(x, m.it.lambda_, 0)
        m.stats.n_fun_calls += 1
        if not ev.ok(prob.obj_lo, prob.obj_up):
            return ev, np.nan
        theta = linf_constraint_norm(x, ev.constr, prob.bu, prob.bl)
        return ev, theta

    # ------------------------------------------------------------------ #
    # Step acceptance
    # ------------------------------------------------------------------ #
    def accept_step(self, delta: np.ndarray, lambda_qp: np.ndarray, alpha: float, n_socs: int) -> None:
        """Move to `trial_xi`, store α·δ and take the multiplier step."""
        it = self.method.it
        it.alpha = alpha
        it.n_socs = n_socs
        it.xi[:] = it.trial_xi
        it.delta_xi = alpha * np.asarray(delta, dtype=float)

        step = alpha * (lambda_qp - it.lambda_)
        it.lambda_step_norm = linf_vector_norm(step)
        it.lambda_ += step

        if alpha < 1.0:
            it.reduced_step_count += 1
        else:
            it.reduced_step_count = 0

    # ------------------------------------------------------------------ #
    # Filter line search
    # ------------------------------------------------------------------ #
    def filter_line_search(self) -> bool:
        m = self.method
        it, o = m.it, m.opts
        flt = it.filter

        delta = it.delta_xi.copy()
        lambda_qp = it.lambda_qp.copy()
        c_norm = linf_constraint_norm(it.xi, it.constr, m.problem.bu, m.problem.bl)
        df_t_delta = float(it.grad_obj @ delta)

        alpha = 1.0
        for k in range(o.max_line_search):
            it.trial_xi[:] = it.xi + alpha * delta
            ev, c_norm_trial = self.trial(it.trial_xi)
            if not np.isfinite(c_norm_trial):
                logging.debug(f"[LS] evaluation failed at alpha={alpha:.2e}, backtracking")
                alpha *= 0.5
                continue
            obj_trial = ev.obj

            if flt.pair_in_filter(c_norm_trial, obj_trial):
                if self.soc.second_order_correction(c_norm, c_norm_trial, ev.constr, df_t_delta, False, k):
                    return True
                alpha *= 0.5
                continue

            # switching condition: the step promises enough decrease in f
            switching = (
                c_norm <= o.theta_min
                and df_t_delta < 0.0
                and alpha * (-df_t_delta) ** o.s_f > o.delta * c_norm ** o.s_theta
            )
            if switching:
                if obj_trial > it.obj + o.eta * alpha * df_t_delta:
                    if self.soc.second_order_correction(c_norm, c_norm_trial, ev.constr, df_t_delta, True, k):
                        return True
                    alpha *= 0.5
                    continue
                # f-type step: the filter is left unchanged
                logging.debug(f"[LS] f-type step accepted, alpha={alpha:.2e}")
                self.accept_step(delta, lambda_qp, alpha, 0)
                return True

            if c_norm_trial < (1.0 - o.gamma_theta) * c_norm or obj_trial < it.obj - o.gamma_f * c_norm:
                flt.augment(c_norm, it.obj)
                logging.debug(f"[LS] h-type step accepted, alpha={alpha:.2e}, θ={c_norm_trial:.2e}")
                self.accept_step(delta, lambda_qp, alpha, 0)
                return True

            if self.soc.second_order_correction(c_norm, c_norm_trial, ev.constr, df_t_delta, False, k):
                return True
            alpha *= 0.5

        logging.debug(f"[LS] no acceptable step after {o.max_line_search} trials")
        return False

    # ------------------------------------------------------------------ #
    # Without globalization
    # ------------------------------------------------------------------ #
    def fullstep(self) -> bool:
        m = self.method
        it = m.it
        delta = it.delta_xi.copy()
        lambda_qp = it.lambda_qp.copy()

        alpha = 1.0
        for _ in range(MAX_FULLSTEP_HALVINGS):
            it.trial_xi[:] = it.xi + alpha * delta
            _, c_norm_trial = self.trial(it.trial_xi)
            if np.isfinite(c_norm_trial) and c_norm_trial <= m.opts.theta_max:
                self.accept_step(delta, lambda_qp, alpha, 0)
                return True
            alpha *= 0.5
        return False

    def kkt_error_reduction(self) -> bool:
        """Accept the full step if it reduces max(θ, optimality error) by κ_f."""
        m = self.method
        it, o = m.it, m.opts

        it.trial_xi[:] = it.xi + it.delta_xi
        ev, c_norm_trial = self.trial(it.trial_xi)
        if not np.isfinite(c_norm_trial):
            return False

        # gradient and Jacobian of the current point with the QP multipliers
        trial_grad = calc_lagrange_gradient(it.lambda_qp, it.grad_obj, it.jac, it.n_var)
        trial_tol = linf_vector_norm(trial_grad) / (1.0 + linf_vector_norm(it.lambda_qp))

        if max(c_norm_trial, trial_tol) < o.kappa_f * max(it.c_norm, it.tol):
            self.accept_step(it.delta_xi.copy(), it.lambda_qp.copy(), 1.0, 0)
            return True
        return False
