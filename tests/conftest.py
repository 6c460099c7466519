"""Pytest configuration and shared fixtures for the block-SQP tests."""

import os

import numpy as np
import pytest

from blocksqp.blocks.aux import SQPOptions
from blocksqp.examples.parametric_sensitivities import ParametricProblem


@pytest.fixture(scope="function")
def rng() -> np.random.Generator:
    """Deterministic numpy RNG (seed from TEST_RNG_SEED, default 0)."""
    seed = int(os.environ.get("TEST_RNG_SEED", "0"))
    return np.random.default_rng(seed)


@pytest.fixture(scope="function")
def problem() -> ParametricProblem:
    return ParametricProblem()


@pytest.fixture(scope="function")
def quiet_opts() -> SQPOptions:
    """Options without console output or progress files."""
    return SQPOptions(print_level=0, debug_level=0)
