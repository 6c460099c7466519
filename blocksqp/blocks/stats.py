"""
Run statistics and the diagnostics sink used by the SQP driver.

`Diagnostics` owns every output channel of a run (console progress table,
progress files, QP dumps). `session()` keeps the progress files open for one
`run` call and closes them on every exit path.

Files (written to `opts.outpath`)
---------------------------------
debug_level >= 1 : sqpits.csv (one row per iteration), updatesequence.txt
debug_level >= 2 : pv.csv (primal iterates), dv.csv (dual iterates)
debug_level >= 3 : QP dumps, plain text (qp_*.dat) and Matlab-readable
                   (vec.m, jac.dat, hes.dat, getqp.m)
"""

from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from dataclasses import dataclass, fields
from typing import Dict, Iterator, Optional, TextIO

import numpy as np
import scipy.sparse as sp

from .matrix import linf_vector_norm

HEADER_EVERY = 20


@dataclass
class SQPStats:
    it_count: int = 0
    qp_iterations: int = 0        # QP that produced the step (incl. resolves and SOC)
    qp_iterations2: int = 0       # QPs whose solution was discarded
    qp_it_total: int = 0
    qp_resolve: int = 0
    rejected_sr1: int = 0
    hess_skipped: int = 0
    hess_damped: int = 0
    average_sizing_factor: float = 0.0
    n_fun_calls: int = 0
    n_der_calls: int = 0
    n_rest_heur_calls: int = 0
    n_rest_phase_calls: int = 0
    n_total_updates: int = 0
    n_total_skipped_updates: int = 0

    def as_dict(self) -> Dict[str, float]:
        return {f.name: getattr(self, f.name) for f in fields(self)}

    def end_iteration(self) -> None:
        """Fold per-iteration QP counters into the totals."""
        self.hess_skipped = 0
        self.hess_damped = 0
        self.qp_it_total += self.qp_iterations + self.qp_iterations2
        self.qp_iterations = 0
        self.qp_iterations2 = 0
        self.qp_resolve = 0


class Diagnostics:
    """
    Injected output sink.

    Parameters
    ----------
    opts : SQPOptions
        Reads print_level, print_color, debug_level and outpath.
    stream : TextIO, optional
        Console stream (default: sys.stdout).
    """

    def __init__(self, opts, stream: Optional[TextIO] = None):
        self.opts = opts
        self.stream = stream if stream is not None else sys.stdout
        self._files: Dict[str, TextIO] = {}
        isatty = getattr(self.stream, "isatty", None)
        self.use_color = bool(opts.print_color) and bool(isatty and isatty())

    @classmethod
    def muted(cls, opts) -> "Diagnostics":
        """Sink that prints nothing and opens no files (nested runs)."""
        quiet = opts.copy(print_level=0, debug_level=0)
        return cls(quiet)

    # ------------------------------------------------------------------ #
    # Scope
    # ------------------------------------------------------------------ #
    @contextmanager
    def session(self, append: bool = False) -> Iterator["Diagnostics"]:
        """Progress files are open inside the block (appended to on warm starts)."""
        self.open(append)
        try:
            yield self
        finally:
            self.close()

    def open(self, append: bool = False) -> None:
        lvl = self.opts.debug_level
        if lvl < 1 or self._files:
            return
        os.makedirs(self.opts.outpath, exist_ok=True)
        names = ["sqpits.csv", "updatesequence.txt"]
        if lvl > 1:
            names += ["pv.csv", "dv.csv"]
        for name in names:
            self._files[name] = open(os.path.join(self.opts.outpath, name), "a" if append else "w")

    def close(self) -> None:
        for fh in self._files.values():
            fh.close()
        self._files.clear()

    # ------------------------------------------------------------------ #
    # Console
    # ------------------------------------------------------------------ #
    def _color(self, text: str, code: str) -> str:
        return f"\033[{code}m{text}\033[0m" if self.use_color else text

    def _header(self) -> str:
        cols = ["   it", "  qpIt", " qpIt2", "      obj", "      feas", "     opt",
                "   |lgrd|", "   |stp|", "   |lstp|", "  alpha", " nSOCS",
                " sk, da, sca", "  QPr,mu"]
        return " ".join(cols)

    def print_progress(self, problem, it, stats, has_converged: bool, delta_h: float = 0.0) -> None:
        o = self.opts
        if o.print_level > 0:
            out = self.stream
            if stats.it_count == 0:
                problem.print_info()
                print(self._header(), file=out)
            else:
                if stats.it_count % HEADER_EVERY == 0:
                    print(self._header(), file=out)
                alpha = f"{it.alpha:<9.1e}"
                if it.alpha != 1.0 or it.steptype == -1:
                    alpha = self._color(alpha, "0;36")
                socs = f"{it.n_socs:5d}"
                if it.n_socs:
                    socs = self._color(socs, "0;36")
                print(
                    f"{stats.it_count:5d} {stats.qp_iterations:6d} {stats.qp_iterations2:6d} "
                    f"{it.obj: .6e} {it.c_norm_s:<10.2e}{it.tol:<10.2e}{it.grad_norm:<10.2e}"
                    f"{linf_vector_norm(it.delta_xi):<10.2e}{it.lambda_step_norm:<10.2e}"
                    f"{alpha}{socs} {stats.hess_skipped:3d}, {stats.hess_damped:3d}, "
                    f"{stats.average_sizing_factor:<9.1e}{stats.qp_resolve:d}, {delta_h:<9.1e}",
                    file=out,
                )

        self._write_iteration(it, stats)
        stats.end_iteration()

        if o.print_level > 0 and has_converged and it.steptype < 2:
            print(self._color("\n***CONVERGENCE ACHIEVED!***", "1;32"), file=self.stream)

    def message(self, text: str) -> None:
        """Warnings of the driver: logged, and echoed to the console table."""
        logging.warning(text)
        if self.opts.print_level > 0:
            print(text, file=self.stream)

    def print_summary(self, status, stats) -> None:
        if self.opts.print_level < 1:
            return
        s = stats
        print(
            f"\nSQP finished with status {status.name} after {s.it_count} iterations\n"
            f"  QP iterations: {s.qp_it_total}, function calls: {s.n_fun_calls}, "
            f"derivative calls: {s.n_der_calls}\n"
            f"  restoration heuristic calls: {s.n_rest_heur_calls}, "
            f"restoration phase calls: {s.n_rest_phase_calls}\n"
            f"  Hessian updates: {s.n_total_updates} ({s.n_total_skipped_updates} skipped, "
            f"{s.rejected_sr1} SR1 rejected)",
            file=self.stream,
        )

    # ------------------------------------------------------------------ #
    # Files
    # ------------------------------------------------------------------ #
    def _write_iteration(self, it, stats) -> None:
        if not self._files:
            return
        row = [
            stats.it_count, stats.qp_iterations, stats.qp_iterations2, it.obj, it.c_norm_s,
            it.tol, it.grad_norm, linf_vector_norm(it.delta_xi), it.lambda_step_norm, it.alpha,
            it.n_socs, stats.hess_skipped, stats.hess_damped, stats.average_sizing_factor,
        ]
        self._files["sqpits.csv"].write(", ".join(f"{v:.16e}" if isinstance(v, float) else str(v) for v in row) + "\n")
        self._files["updatesequence.txt"].write(
            f"{stats.it_count} {it.steptype} {stats.hess_skipped} {stats.hess_damped}\n"
        )
        if "pv.csv" in self._files:
            self._files["pv.csv"].write(", ".join(f"{v:.16e}" for v in it.xi) + "\n")
            self._files["dv.csv"].write(", ".join(f"{v:.16e}" for v in it.lambda_) + "\n")
        for fh in self._files.values():
            fh.flush()

    def dump_qp(self, H, g, A, lb, ub, lb_a, ub_a, tag: str = "") -> None:
        """Plain-text dump of one QP (CSC arrays for the matrices)."""
        path = self.opts.outpath
        os.makedirs(path, exist_ok=True)
        Hs, As = sp.csc_matrix(H), sp.csc_matrix(A)
        arrays = {
            "H_nz": Hs.data, "H_row": Hs.indices, "H_colptr": Hs.indptr,
            "A_nz": As.data, "A_row": As.indices, "A_colptr": As.indptr,
            "g": g, "lb": lb, "ub": ub, "lbA": lb_a, "ubA": ub_a,
        }
        for name, arr in arrays.items():
            np.savetxt(os.path.join(path, f"qp{tag}_{name}.dat"), np.atleast_1d(arr), fmt="%.16e")

    def dump_qp_matlab(self, H, g, A, lb, ub, lb_a, ub_a) -> None:
        """Matlab-readable dump: vec.m, jac.dat/hes.dat (1-based triplets), getqp.m."""
        path = self.opts.outpath
        os.makedirs(path, exist_ok=True)

        def vec(name, v):
            return f"{name}=[" + " ".join(f"{x:.16e}" for x in np.ravel(v)) + "]';\n"

        with open(os.path.join(path, "vec.m"), "w") as fh:
            for name, v in (("g", g), ("lb", lb), ("lu", ub), ("lbA", lb_a), ("luA", ub_a)):
                fh.write(vec(name, v))
        _write_sparse_matlab(os.path.join(path, "jac.dat"), A)
        _write_sparse_matlab(os.path.join(path, "hes.dat"), H)
        with open(os.path.join(path, "getqp.m"), "w") as fh:
            fh.write(
                "% Read vectors g, lb, lu, lbA, luA\nvec;\n"
                "% Read sparse Jacobian\nload jac.dat\n"
                "if jac(1) == 0\n    A = [];\nelse\n    A = spconvert( jac );\nend\n"
                "% Read sparse Hessian\nload hes.dat\nH = spconvert( hes );\n"
            )


def _write_sparse_matlab(filename: str, M) -> None:
    """Triplets `row col value` (1-based); last line fixes the dimensions."""
    C = sp.coo_matrix(M)
    with open(filename, "w") as fh:
        for r, c, v in zip(C.row, C.col, C.data):
            fh.write(f"{r + 1} {c + 1} {v:.16e}\n")
        fh.write(f"{C.shape[0]} {C.shape[1]} 0.0\n")
