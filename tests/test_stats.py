"""Tests for run statistics and the diagnostics sink."""

import io

import numpy as np
import scipy.sparse as sp

from blocksqp.blocks.aux import SQPOptions
from blocksqp.blocks.stats import Diagnostics, SQPStats
from blocksqp.sqp import SQPMethod


def test_end_iteration_folds_qp_counters():
    stats = SQPStats(qp_iterations=4, qp_iterations2=3, qp_resolve=1, hess_skipped=2)
    stats.end_iteration()
    assert stats.qp_it_total == 7
    assert stats.qp_iterations == stats.qp_iterations2 == 0
    assert stats.hess_skipped == 0
    assert stats.as_dict()["qp_it_total"] == 7


def test_no_color_on_plain_stream():
    diag = Diagnostics(SQPOptions(print_color=True), stream=io.StringIO())
    assert not diag.use_color


def test_matlab_dump_uses_one_based_triplets(tmp_path):
    diag = Diagnostics(SQPOptions(outpath=str(tmp_path)))
    H = np.diag([1.0, 2.0])
    A = sp.csc_matrix(np.array([[0.0, 3.0]]))
    g = np.zeros(2)
    diag.dump_qp_matlab(H, g, A, -np.ones(2), np.ones(2), np.zeros(1), np.zeros(1))

    jac = (tmp_path / "jac.dat").read_text().splitlines()
    assert jac == [f"1 2 {3.0:.16e}", "1 2 0.0"]
    hes = (tmp_path / "hes.dat").read_text().splitlines()
    assert hes[0] == f"1 1 {1.0:.16e}"
    assert hes[-1] == "2 2 0.0"
    assert (tmp_path / "vec.m").read_text().startswith("g=[")
    assert "spconvert" in (tmp_path / "getqp.m").read_text()


def test_progress_table_and_files(problem, tmp_path):
    out = io.StringIO()
    opts = SQPOptions(print_level=2, debug_level=2, outpath=str(tmp_path))
    method = SQPMethod(problem, opts, diagnostics=Diagnostics(opts, stream=out))
    method.init()
    method.run(3)
    method.finish()

    text = out.getvalue()
    assert "obj" in text and "alpha" in text
    assert "\033[" not in text
    rows = (tmp_path / "sqpits.csv").read_text().splitlines()
    assert len(rows) == method.stats.it_count
    assert (tmp_path / "pv.csv").exists()
    assert "SQP finished with status" in text
