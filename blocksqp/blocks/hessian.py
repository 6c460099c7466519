"""
Block Hessian engine.

Maintains one symmetric approximation per variable block and updates each
block independently with the components of the step s = δ and gradient
difference y = γ that belong to the block's index range.

Updates
-------
- damped BFGS  (Powell damping, keeps blocks positive definite)
- SR1          (skipped when the denominator is insignificant)
- finite differences of the Lagrangian gradient (one perturbation per block)

Sizing
------
1: Shanno-Phua      yᵀy / sᵀy
2: Oren-Luenberger  sᵀy / sᵀs   (capped at 1)
3: geometric mean   sqrt(yᵀy / sᵀs)
4: centered Oren-Luenberger (COL), applied before every update

Limited memory keeps the last `hess_memsize` pairs in the iterate's ring
buffers and rebuilds every block from the scaled identity each iteration.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from .aux import (
    HessScaling,
    HessSelector,
    HessUpdate,
    SecondDerv,
    SQPIterate,
    SQPOptions,
    calc_lagrange_gradient,
)
from .matrix import SymBlocks, smallest_eigenvalue
from .problem import Problem, jacobian_matrix

SR1_SIGNIFICANCE = 1.0e-8   # relative denominator threshold for SR1
FD_REL_PERT = 1.0e-4
FD_MIN_PERT = 1.0e-6
DELTA_MIN = 1.0e-20


# =============================================================================
# Quasi-Newton engine
# =============================================================================
class BlockHessian:
    """
    Parameters
    ----------
    opts : SQPOptions
        Consistent options (see `SQPOptions.make_consistent`).
    stats : SQPStats
        Counters updated in place (skips, damping, sizing factors).
    """

    def __init__(self, opts: SQPOptions, stats):
        self.opts = opts
        self.stats = stats

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def _exact_last_block(self, it: SQPIterate, i_block: int) -> bool:
        # last block is evaluated by the problem
        return (
            self.opts.which_second_derv == SecondDerv.LAST_BLOCK
            and it.n_blocks > 1
            and i_block == it.n_blocks - 1
        )

    def _n_updated_blocks(self, it: SQPIterate) -> int:
        if self.opts.which_second_derv == SecondDerv.LAST_BLOCK and it.n_blocks > 1:
            return it.n_blocks - 1
        return it.n_blocks

    def _forget(self, it: SQPIterate, i_block: int) -> None:
        it.delta_norm[i_block] = 1.0
        it.delta_norm_old[i_block] = 1.0
        it.delta_gamma[i_block] = 0.0
        it.delta_gamma_old[i_block] = 0.0
        it.no_update_counter[i_block] = -1

    # ------------------------------------------------------------------ #
    # Initialization / reset
    # ------------------------------------------------------------------ #
    def calc_initial_hessian(self, it: SQPIterate, i_block: Optional[int] = None) -> None:
        """Set block(s) to ini_hess_diag·I in both Hessian arrays."""
        blocks = range(it.n_blocks) if i_block is None else [i_block]
        for k in blocks:
            if self._exact_last_block(it, k):
                continue
            n_k = it.hess1[k].shape[0]
            it.hess1[k] = self.opts.ini_hess_diag * np.eye(n_k)
            if it.hess2 is not None:
                it.hess2[k] = self.opts.ini_hess_diag * np.eye(n_k)

    def reset_hessian(self, it: SQPIterate, i_block: Optional[int] = None) -> None:
        """Scaled identity and no memory of past steps for block(s)."""
        blocks = range(it.n_blocks) if i_block is None else [i_block]
        for k in blocks:
            if self._exact_last_block(it, k):
                continue
            self.calc_initial_hessian(it, k)
            s = it.hess1.span(k)
            it.delta_mat[s, :] = 0.0
            it.gamma_mat[s, :] = 0.0
            self._forget(it, k)

    # ------------------------------------------------------------------ #
    # Sizing
    # ------------------------------------------------------------------ #
    def size_initial_hessian(
        self, it: SQPIterate, gamma: np.ndarray, delta: np.ndarray, i_block: int, option: int
    ) -> None:
        my_eps = 1.0e3 * self.opts.eps
        if option == HessScaling.NOCEDAL:
            scale = gamma @ gamma / max(delta @ gamma, my_eps)
        elif option == HessScaling.OREN_LUENBERGER:
            scale = min(delta @ gamma / max(delta @ delta, my_eps), 1.0)
        elif option == HessScaling.GEOMETRIC_MEAN:
            scale = np.sqrt(gamma @ gamma / max(delta @ delta, my_eps))
        else:
            return

        if scale > 0.0:
            scale = max(scale, my_eps)
            it.hess[i_block] = scale * it.hess[i_block]
        else:
            scale = 1.0
        self.stats.average_sizing_factor += scale

    def size_hessian_col(self, it: SQPIterate, gamma: np.ndarray, delta: np.ndarray, i_block: int) -> None:
        """Centered Oren-Luenberger sizing, only ever shrinks the block."""
        o = self.opts
        my_eps = 1.0e3 * o.eps
        B = it.hess[i_block]
        d_n, d_g = it.delta_norm[i_block], it.delta_gamma[i_block]
        d_n_old, d_g_old = it.delta_norm_old[i_block], it.delta_gamma_old[i_block]
        d_b_d = float(delta @ B @ delta)

        # first iteration: plain OL factor
        if it.no_update_counter[i_block] == -1:
            theta = 1.0
        else:
            theta = min(o.col_tau1, o.col_tau2 * d_n)

        scale = 1.0
        if d_n > my_eps and d_n_old > my_eps:
            denom = (1.0 - theta) * d_g_old / d_n_old + theta * d_b_d / d_n
            if denom > o.eps:
                scale = ((1.0 - theta) * d_g_old / d_n_old + theta * d_g / d_n) / denom

        if 0.0 < scale < 1.0:
            scale = max(o.col_eps, scale)
            it.hess[i_block] = scale * B
            self.stats.average_sizing_factor += scale
        else:
            self.stats.average_sizing_factor += 1.0

    # ------------------------------------------------------------------ #
    # Rank-two / rank-one updates
    # ------------------------------------------------------------------ #
    def calc_bfgs(
        self, it: SQPIterate, gamma: np.ndarray, delta: np.ndarray, i_block: int, track: bool = True
    ) -> bool:
        """Damped BFGS on the active array. Returns False if the update was skipped."""
        o, st = self.opts, self.stats
        B = it.hess[i_block]
        # local copy: damping must not alter the stored gradient difference
        gamma2 = np.array(gamma, dtype=float)
        b_delta = B @ delta
        h1 = float(delta @ b_delta)
        h2 = float(delta @ gamma2)

        damped = False
        if o.hess_damp and h2 < o.hess_damp_fac * h1 / it.alpha and abs(h1 - h2) > 1.0e-12:
            theta_powell = (1.0 - o.hess_damp_fac) * h1 / (h1 - h2)
            gamma2 = theta_powell * gamma2 + (1.0 - theta_powell) * b_delta
            h2 = float(delta @ gamma2)
            # the COL factor of the next iteration sees the damped curvature
            it.delta_gamma[i_block] = h2
            damped = True

        my_eps = 1.0e2 * o.eps
        if abs(h1) < my_eps or abs(h2) < my_eps:
            # bad conditioning, might introduce negative eigenvalues
            st.hess_skipped += 1
            st.n_total_skipped_updates += 1
            if track:
                it.no_update_counter[i_block] = max(it.no_update_counter[i_block], 0) + 1
            return False

        st.hess_damped += int(damped)
        it.hess[i_block] = B - np.outer(b_delta, b_delta) / h1 + np.outer(gamma2, gamma2) / h2
        if track:
            it.no_update_counter[i_block] = 0
        return True

    def calc_sr1(self, it: SQPIterate, gamma: np.ndarray, delta: np.ndarray, i_block: int) -> bool:
        """SR1 on the active array. Returns False if the update was skipped."""
        st = self.stats
        B = it.hess[i_block]
        g = gamma - B @ delta
        h = float(g @ delta)
        my_eps = 1.0e2 * self.opts.eps

        if abs(h) < SR1_SIGNIFICANCE * np.linalg.norm(delta) * np.linalg.norm(g) or abs(h) < my_eps:
            st.hess_skipped += 1
            st.n_total_skipped_updates += 1
            st.rejected_sr1 += 1
            it.no_update_counter[i_block] = max(it.no_update_counter[i_block], 0) + 1
            return False

        it.hess[i_block] = B + np.outer(g, g) / h
        it.no_update_counter[i_block] = 0
        return True

    # ------------------------------------------------------------------ #
    # Per-block update (full memory)
    # ------------------------------------------------------------------ #
    def update(self, it: SQPIterate, i_block: int, delta: np.ndarray, gamma: np.ndarray) -> None:
        """Apply the configured update to one block with its (s, y) components."""
        o = self.opts
        delta = np.asarray(delta, dtype=float)
        gamma = np.asarray(gamma, dtype=float)

        if it.no_update_counter[i_block] >= o.max_consec_skipped_updates:
            logging.info(
                f"[Hessian] block {i_block}: {it.no_update_counter[i_block]} consecutive "
                "skipped updates, reset to scaled identity"
            )
            self.calc_initial_hessian(it, i_block)
            self._forget(it, i_block)

        first_iter = it.no_update_counter[i_block] == -1

        it.delta_norm_old[i_block] = it.delta_norm[i_block]
        it.delta_gamma_old[i_block] = it.delta_gamma[i_block]
        it.delta_norm[i_block] = float(delta @ delta)
        it.delta_gamma[i_block] = float(delta @ gamma)

        if o.hess_scaling < HessScaling.CENTERED_OL and first_iter:
            self.size_initial_hessian(it, gamma, delta, i_block, o.hess_scaling)
        elif o.hess_scaling == HessScaling.CENTERED_OL:
            self.size_hessian_col(it, gamma, delta, i_block)

        if o.hess_update == HessUpdate.SR1:
            self.calc_sr1(it, gamma, delta, i_block)
            if it.hess2 is not None:
                # positive definite fallback kept alongside SR1
                it.hess_sel = HessSelector.FALLBACK
                try:
                    if o.fallback_scaling < HessScaling.CENTERED_OL and first_iter:
                        self.size_initial_hessian(it, gamma, delta, i_block, o.fallback_scaling)
                    elif o.fallback_scaling == HessScaling.CENTERED_OL:
                        self.size_hessian_col(it, gamma, delta, i_block)
                    if o.fallback_update == HessUpdate.BFGS:
                        self.calc_bfgs(it, gamma, delta, i_block, track=False)
                finally:
                    it.hess_sel = HessSelector.PRIMARY
        elif o.hess_update == HessUpdate.BFGS:
            self.calc_bfgs(it, gamma, delta, i_block)
        self.stats.n_total_updates += 1

    def calc_hessian_update(self, it: SQPIterate) -> None:
        """Full-memory update of every quasi-Newton block with the newest pair."""
        st = self.stats
        st.hess_damped = 0
        st.hess_skipped = 0
        st.average_sizing_factor = 0.0
        nb = self._n_updated_blocks(it)
        delta, gamma = it.delta_xi, it.gamma
        for k in range(nb):
            s = it.hess1.span(k)
            self.update(it, k, delta[s], gamma[s])
        st.average_sizing_factor /= max(nb, 1)

    # ------------------------------------------------------------------ #
    # Limited memory
    # ------------------------------------------------------------------ #
    def calc_hessian_update_limited_memory(
        self, it: SQPIterate, update_type: int, hess_scaling: int
    ) -> None:
        """Rebuild every block from B0 with the stored pairs, oldest first."""
        st = self.stats
        st.hess_damped = 0
        st.hess_skipped = 0
        st.average_sizing_factor = 0.0

        mem = it.delta_mat.shape[1]
        n_pairs = min(max(st.it_count, 1), mem)
        pos_newest = it.dg_pos
        pos_oldest = (pos_newest - n_pairs + 1) % mem
        nb = self._n_updated_blocks(it)

        for k in range(nb):
            s = it.hess1.span(k)
            # B0 on the active array only
            it.hess[k] = self.opts.ini_hess_diag * np.eye(s.stop - s.start)
            self._forget(it, k)

            # size B0 with the most recent pair
            self.size_initial_hessian(
                it, it.gamma_mat[s, pos_newest], it.delta_mat[s, pos_newest], k, hess_scaling
            )

            for i in range(n_pairs):
                pos = (pos_oldest + i) % mem
                gamma_i = it.gamma_mat[s, pos]
                delta_i = it.delta_mat[s, pos]
                # columns zeroed by a reset carry no curvature information
                if not delta_i.any():
                    continue

                it.delta_norm_old[k] = it.delta_norm[k]
                it.delta_gamma_old[k] = it.delta_gamma[k]
                it.delta_norm[k] = float(delta_i @ delta_i)
                it.delta_gamma[k] = float(delta_i @ gamma_i)

                # statistics are only recorded for the newest pair
                saved = (st.average_sizing_factor, st.hess_damped, st.hess_skipped)
                if hess_scaling == HessScaling.CENTERED_OL:
                    self.size_hessian_col(it, gamma_i, delta_i, k)
                if update_type == HessUpdate.SR1:
                    self.calc_sr1(it, gamma_i, delta_i, k)
                elif update_type == HessUpdate.BFGS:
                    self.calc_bfgs(it, gamma_i, delta_i, k)
                st.n_total_updates += 1
                if pos != pos_newest:
                    st.average_sizing_factor, st.hess_damped, st.hess_skipped = saved

            if it.no_update_counter[k] > self.opts.max_consec_skipped_updates:
                self.reset_hessian(it, k)

        st.average_sizing_factor /= max(nb, 1)

    def calc_fallback_limited_memory(self, it: SQPIterate) -> None:
        """Build the fallback array from the stored pairs (limited memory + SR1)."""
        if it.hess2 is None:
            return
        it.hess_sel = HessSelector.FALLBACK
        try:
            self.calc_hessian_update_limited_memory(
                it, self.opts.fallback_update, self.opts.fallback_scaling
            )
        finally:
            it.hess_sel = HessSelector.PRIMARY

    # ------------------------------------------------------------------ #
    # Finite differences / evaluated blocks
    # ------------------------------------------------------------------ #
    def calc_finite_diff_hessian(self, it: SQPIterate, problem: Problem, sparse: bool) -> int:
        """
        Forward differences of ∇L, perturbing one variable of every block at a
        time. Only valid for Lagrangians that are separable w.r.t. the blocks.
        Returns the evaluation info code (0 on success).
        """
        n = it.n_var
        sizes = np.diff(it.block_idx)
        bl, bu = problem.bl[:n], problem.bu[:n]
        grad_l = calc_lagrange_gradient(it.lambda_, it.grad_obj, it.jac, n)
        cols = [np.zeros((int(m), int(m))) for m in sizes]

        for j in range(int(sizes.max())):
            pert = np.zeros(n)
            for k in range(it.n_blocks):
                idx = it.block_idx[k] + j
                if idx >= it.block_idx[k + 1]:
                    continue
                p = max(FD_REL_PERT * abs(it.xi[idx]), FD_MIN_PERT)
                upper_vio = it.xi[idx] + p - bu[idx]
                if upper_vio > 0:
                    lower_vio = bl[idx] - (it.xi[idx] - p)
                    if lower_vio > 0:
                        # both directions infeasible: largest admissible perturbation
                        p = -p + lower_vio if lower_vio > upper_vio else p - upper_vio
                    else:
                        p = -p
                pert[idx] = p

            ev = problem.evaluate(it.xi + pert, it.lambda_, 1)
            self.stats.n_der_calls += 1
            if ev.info != 0:
                logging.debug(f"[Hessian] finite-difference evaluation failed (info={ev.info})")
                return ev.info
            jac_p = jacobian_matrix(ev.jacobian, it.n_con, n, sparse)
            grad_lp = calc_lagrange_gradient(it.lambda_, ev.grad_obj, jac_p, n)

            for k in range(it.n_blocks):
                idx = it.block_idx[k] + j
                if idx >= it.block_idx[k + 1]:
                    continue
                s = it.hess1.span(k)
                cols[k][:, j] = (grad_lp[s] - grad_l[s]) / pert[idx]

        for k in range(it.n_blocks):
            if not self._exact_last_block(it, k):
                it.hess1[k] = 0.5 * (cols[k] + cols[k].T)
        return 0

    def set_evaluated_blocks(self, it: SQPIterate, hess_blocks) -> None:
        """Copy exact (or Gauss-Newton) blocks returned by the problem."""
        if hess_blocks is None:
            return
        if self.opts.which_second_derv == SecondDerv.ALL:
            targets = range(it.n_blocks)
        else:
            targets = [it.n_blocks - 1]
        blocks = list(hess_blocks)[-len(targets):]
        for k, H in zip(targets, blocks):
            H = np.asarray(H, dtype=float)
            it.hess1[k] = 0.5 * (H + H.T)


# =============================================================================
# Inertia correction
# =============================================================================
class InertiaCorrection:
    """
    Regularization schedule δ for convexifying QP Hessians:
        first attempt  δ = δ_H0                 (no previous correction)
                       δ = κ⁻ · δ_last           (otherwise)
        growth         δ = κ⁺_max · δ  /  κ⁺ · δ
    """

    def __init__(self, opts: SQPOptions):
        self.opts = opts
        self.delta_last = 0.0
        self.delta = 0.0

    def first(self) -> float:
        o = self.opts
        if self.delta_last == 0.0:
            self.delta = o.delta_h0
        else:
            self.delta = max(DELTA_MIN, o.kappa_minus * self.delta_last)
        return self.delta

    def grow(self) -> float:
        o = self.opts
        if self.delta == 0.0:
            return self.first()
        factor = o.kappa_plus_max if self.delta_last == 0.0 else o.kappa_plus
        self.delta *= factor
        return self.delta

    def accept(self, used: bool) -> None:
        self.delta_last = self.delta if used else 0.0


def convexify(hess: SymBlocks, delta: float, force: bool = False) -> Tuple[SymBlocks, bool]:
    """
    Copy of `hess` with every block whose smallest eigenvalue is negative
    (or below δ when `force`) shifted so that it becomes δ.
    """
    out = hess.copy()
    shifted = False
    threshold = delta if force else 0.0
    for k, B in enumerate(out.blocks):
        lam_min = smallest_eigenvalue(B)
        if lam_min < threshold:
            B += (delta - lam_min) * np.eye(B.shape[0])
            shifted = True
            logging.debug(f"[Hessian] block {k}: λ_min={lam_min:.3e}, shift {delta - lam_min:.3e}")
    return out, shifted
