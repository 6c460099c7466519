"""
Fletcher–Leyffer filter for the SQP line search.

The filter stores pairs (θ, f) (constraint violation, objective) that a trial
point must not be dominated by. Margins are applied once, at insertion:
augmenting with (θ, f) stores

    ((1 - γ_θ) θ,  f - γ_f θ)

and a trial (θ_t, f_t) is *in the filter* (rejected) if some stored pair
(θ_i, f_i) satisfies

    (θ_t >= θ_i  or  θ_t, θ_i both below 0.01·nlinfeastol)  and  f_t >= f_i.

The second clause treats all practically feasible points as equal in θ so that
a negligible decrease of an already tiny violation cannot buy an increase of
the objective.

Invariant: stored pairs are mutually Pareto-incomparable; an insertion removes
every pair it weakly dominates and is dropped if it is itself dominated.

Notes
-----
- θ ('theta') is a nonnegative measure of infeasibility (l∞ in the driver).
- The initial filter holds (θ_max, f_lo), which rejects every trial with
  θ >= θ_max regardless of its objective.
- Filters that shift every stored pair by the margins again at test time
  ((1 - γ_θ) θ_i, f_i - γ_f θ_i) reject slightly more. Here the stored pairs
  already carry the margins, so the acceptance region differs by O(γ²) and the test
  stays idempotent for accepted points.
"""

from __future__ import annotations

import logging
from typing import List, Tuple

import numpy as np


class Filter:
    """
    Parameters
    ----------
    gamma_theta : float
        Relative θ margin γ_θ ∈ (0, 1).
    gamma_f : float
        Objective margin factor γ_f ∈ (0, 1).
    nlinfeastol : float
        Feasibility tolerance; θ below 0.01·nlinfeastol counts as feasible.

    Attributes
    ----------
    entries : List[Tuple[float, float]]
        Stored (θ_i, f_i) pairs, sorted by θ ascending (hence f descending).
    """

    def __init__(self, gamma_theta: float = 1e-5, gamma_f: float = 1e-5, nlinfeastol: float = 1e-6):
        if not (0.0 <= gamma_theta < 1.0) or gamma_f < 0.0:
            raise ValueError(f"invalid filter margins gamma_theta={gamma_theta}, gamma_f={gamma_f}")
        self.gamma_theta = float(gamma_theta)
        self.gamma_f = float(gamma_f)
        self.feas_floor = 0.01 * float(nlinfeastol)
        self.entries: List[Tuple[float, float]] = []

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def init(self, theta_max: float, obj_lo: float = -np.inf) -> None:
        """Reset to the single entry (θ_max, f_lo)."""
        self.entries = [(float(theta_max), float(obj_lo))]

    def pair_in_filter(self, theta: float, f: float) -> bool:
        """True if (θ, f) lies in the region forbidden by a stored pair."""
        tiny = theta < self.feas_floor
        for theta_i, f_i in self.entries:
            if (theta >= theta_i or (tiny and theta_i < self.feas_floor)) and f >= f_i:
                logging.debug(f"[Filter] reject θ={theta:.3e}, f={f:.6e} by ({theta_i:.3e}, {f_i:.6e})")
                return True
        return False

    def augment(self, theta: float, f: float) -> None:
        """Insert the margin-shifted pair for (θ, f) and drop dominated pairs."""
        t_new = (1.0 - self.gamma_theta) * float(theta)
        f_new = float(f) - self.gamma_f * float(theta)

        for theta_i, f_i in self.entries:
            if theta_i <= t_new and f_i <= f_new:
                return  # already covered

        self.entries = [
            (theta_i, f_i) for theta_i, f_i in self.entries
            if not (theta_i >= t_new and f_i >= f_new)
        ]
        self.entries.append((t_new, f_new))
        self.entries.sort()
        logging.debug(f"[Filter] augment ({t_new:.3e}, {f_new:.6e}); size={len(self.entries)}")

    def is_pareto(self) -> bool:
        """No stored pair weakly dominates another."""
        for a, (t1, f1) in enumerate(self.entries):
            for b, (t2, f2) in enumerate(self.entries):
                if a != b and t1 <= t2 and f1 <= f2:
                    return False
        return True

    def copy(self) -> "Filter":
        out = Filter.__new__(Filter)
        out.gamma_theta = self.gamma_theta
        out.gamma_f = self.gamma_f
        out.feas_floor = self.feas_floor
        out.entries = list(self.entries)
        return out
