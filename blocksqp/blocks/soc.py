import logging

import numpy as np

from .qp import QPStatus, constraint_step, update_step_bounds


class SOCCorrector:
    """
    Second-order correction for a rejected first trial step.

    Re-solves the QP with the constraint bounds shifted by c(x + d) - J d
    (same Hessian, same gradient) and tries x + d_soc. Repeats up to
    `max_soc_iter` times while θ keeps dropping by the factor κ_soc.
    """

    def __init__(self, method, line_search):
        self.method = method
        self.line_search = line_search

    def second_order_correction(
        self,
        c_norm: float,
        c_norm_trial: float,
        constr_trial: np.ndarray,
        df_t_delta: float,
        swcond: bool,
        k: int,
    ) -> bool:
        m = self.method
        it, o = m.it, m.opts
        ls = self.line_search

        # only for the full step, and only if the violation did not decrease
        if k > 0 or c_norm_trial < c_norm:
            return False

        c_norm_old = c_norm_trial
        constr_ref = np.asarray(constr_trial, dtype=float)
        for j in range(o.max_soc_iter):
            # it.adelta_xi holds J d of the previous (corrected) step
            update_step_bounds(it, m.problem, o, soc=True, constr=constr_ref)
            res = m.solve_qp(soc=True)
            if res.status != QPStatus.OPTIMAL:
                logging.debug(f"[SOC] QP failed with status {res.status.name}")
                return False

            d_soc = res.x
            it.trial_xi[:] = it.xi + d_soc
            ev, c_norm_soc = ls.trial(it.trial_xi)
            if not np.isfinite(c_norm_soc):
                return False
            obj_soc = ev.obj

            if it.filter.pair_in_filter(c_norm_soc, obj_soc):
                logging.debug(f"[SOC] corrected point {j + 1} rejected by the filter")
                return False

            if swcond:
                if obj_soc <= it.obj + o.eta * df_t_delta:
                    ls.accept_step(d_soc, res.lambda_, 1.0, j + 1)
                    return True
            elif c_norm_soc < (1.0 - o.gamma_theta) * c_norm or obj_soc < it.obj - o.gamma_f * c_norm:
                it.filter.augment(c_norm, it.obj)
                ls.accept_step(d_soc, res.lambda_, 1.0, j + 1)
                return True

            # not enough progress for another correction
            if c_norm_soc > o.kappa_soc * c_norm_old:
                return False

            c_norm_old = c_norm_soc
            constr_ref = np.asarray(ev.constr, dtype=float)
            it.adelta_xi = constraint_step(it.jac, d_soc)

        return False
