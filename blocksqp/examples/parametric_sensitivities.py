# parametric_sensitivities.py
# Ganesh & Biegler test problem (AIChE J. 33, 1987) with the parameters
# appended to the variables and fixed by constraints:
#
#     min   x1² + x2² + x3²
#     s.t.  6 x1 + 3 x2 + 2 x3 - p1 = 0
#           p2 x1 + x2 - x3 - 1     = 0
#           p1 = 5,  p2 = 1,  x1, x2, x3 >= 0
#
# Solution: x = (62, 38, 2) / 98, f ≈ 0.5512.

import logging
from typing import Optional, Sequence

import numpy as np
import scipy.sparse as sp

from blocksqp.blocks.aux import SQPOptions
from blocksqp.blocks.problem import DenseJacobian, Evaluation, Problem, SparseJacobian
from blocksqp.sqp import SQPMethod

X_OPT = np.array([62.0, 38.0, 2.0]) / 98.0
F_OPT = float(X_OPT @ X_OPT)


class ParametricProblem(Problem):
    """Variables (x1, x2, x3, p1, p2), blocks {x} and {p}."""

    def __init__(
        self,
        p0: Sequence[float] = (5.0, 1.0),
        x0: Optional[Sequence[float]] = None,
        dense_only: bool = False,
    ):
        self.p0 = np.asarray(p0, dtype=float)
        self.x0 = np.array([0.15, 0.15, 0.0, *self.p0]) if x0 is None else np.asarray(x0, float)
        self.dense_only = dense_only

        inf = np.inf
        self.n_var = 5
        self.n_con = 4
        self.block_idx = np.array([0, 3, 5])
        self.bl = np.array([0.0, 0.0, 0.0, -inf, -inf, 0.0, 0.0, self.p0[0], self.p0[1]])
        self.bu = np.array([inf, inf, inf, inf, inf, 0.0, 0.0, self.p0[0], self.p0[1]])

    def initialize(self, xi, lambda_):
        xi[:] = self.x0
        lambda_[:] = 0.0
        if self.dense_only:
            return None
        return SparseJacobian.from_matrix(sp.csc_matrix(self._jacobian(xi)))

    # -------------------------------------------------------------- #
    @staticmethod
    def _jacobian(xi: np.ndarray) -> np.ndarray:
        x1, p2 = xi[0], xi[4]
        return np.array([
            [6.0, 3.0, 2.0, -1.0, 0.0],
            [p2, 1.0, -1.0, 0.0, x1],
            [0.0, 0.0, 0.0, 1.0, 0.0],
            [0.0, 0.0, 0.0, 0.0, 1.0],
        ])

    def _evaluate(self, xi, lambda_, dmode, sparse) -> Evaluation:
        x1, x2, x3, p1, p2 = xi
        obj = x1 * x1 + x2 * x2 + x3 * x3
        constr = np.array([
            6.0 * x1 + 3.0 * x2 + 2.0 * x3 - p1,
            p2 * x1 + x2 - x3 - 1.0,
            p1,
            p2,
        ])
        ev = Evaluation(obj=obj, constr=constr)
        if dmode >= 1:
            ev.grad_obj = np.array([2.0 * x1, 2.0 * x2, 2.0 * x3, 0.0, 0.0])
            J = self._jacobian(xi)
            ev.jacobian = SparseJacobian.from_matrix(J) if sparse else DenseJacobian(J)
        if dmode >= 2:
            # block-diagonal part of the Lagrangian Hessian
            h_x, h_p = 2.0 * np.eye(3), np.zeros((2, 2))
            ev.hess = [h_x, h_p] if dmode == 3 else [h_p]
        return ev

    def evaluate_sparse(self, xi, lambda_, dmode):
        if self.dense_only:
            return super().evaluate_sparse(xi, lambda_, dmode)
        return self._evaluate(xi, lambda_, dmode, sparse=True)

    def evaluate_dense(self, xi, lambda_, dmode):
        return self._evaluate(xi, lambda_, dmode, sparse=False)


def main(max_it: int = 100) -> None:
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    problem = ParametricProblem()
    opts = SQPOptions(opttol=1e-8, nlinfeastol=1e-8)

    method = SQPMethod(problem, opts)
    method.init()
    status = method.run(max_it)
    method.finish()

    print(f"status = {status.name}")
    print(f"f_opt  = {method.it.obj:.8f}   (expected {F_OPT:.8f})")
    print(f"x_opt  = {np.array2string(method.it.xi, precision=6)}")


if __name__ == "__main__":
    main()
