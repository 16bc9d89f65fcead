"""Pytest configuration and shared fixtures for lsqopt tests.

This module provides:
- Deterministic RNG fixtures for numpy and torch
- Small residual problems shared by the optimizer tests
"""

import os

import numpy as np
import pytest
import torch


@pytest.fixture(scope="function")
def rng() -> np.random.Generator:
    """Provide a deterministic numpy RNG for tests.

    Uses seed from TEST_RNG_SEED environment variable (default: 0).
    This ensures tests are reproducible while allowing override for debugging.

    Returns:
        A seeded numpy.random.Generator instance.
    """
    seed = int(os.environ.get("TEST_RNG_SEED", "0"))
    return np.random.default_rng(seed)


@pytest.fixture(scope="function")
def torch_rng() -> torch.Generator:
    """Provide a deterministic CPU torch RNG for tests."""
    seed = int(os.environ.get("TEST_RNG_SEED", "0"))
    generator = torch.Generator()
    generator.manual_seed(seed)
    return generator


@pytest.fixture(scope="function", autouse=True)
def set_random_seeds(rng: np.random.Generator, torch_rng: torch.Generator) -> None:
    """Auto-use fixture to set global random seeds for reproducibility."""
    np.random.seed(int(os.environ.get("TEST_RNG_SEED", "0")))
    torch.manual_seed(int(os.environ.get("TEST_RNG_SEED", "0")))


@pytest.fixture
def shifted_residual():
    """Accumulator for ``r(x) = x - target`` with identity Jacobian."""

    def make(target, hessian_scale=1.0):
        target = np.asarray(target, dtype=float)

        def func(x, grad, H):
            res = np.asarray(x, dtype=float).reshape(-1) - target
            grad += res
            if H is not None:
                H += hessian_scale * np.eye(res.size)
            return res

        return func

    return make
