"""Shared fixtures: small estimation systems used across the ThetaMap tests."""

import sys
from pathlib import Path

import numpy as np
import pytest
import sympy

ROOT = Path(__file__).resolve().parents[1]
package_src = ROOT / "python"
if package_src.exists():
    sys.path.insert(0, str(package_src))

from thetamap import StateSpaceEstimation, ThetaMap, set_all_parameters  # noqa: E402


# ============================================================================
# Estimation systems
# ============================================================================


@pytest.fixture
def ar1_estimation():
    """Univariate AR(1) plus noise; H, T and Q are free."""
    return StateSpaceEstimation(
        np.array([[1.0]]),
        np.array([[np.nan]]),
        np.array([[np.nan]]),
        np.array([[np.nan]]),
    )


@pytest.fixture
def ar2_estimation():
    """AR(2) in companion form: theta is H, the two AR coefficients and Q."""
    return StateSpaceEstimation(
        np.array([[1.0, 0.0]]),
        np.array([[np.nan]]),
        np.array([[np.nan, np.nan], [1.0, 0.0]]),
        np.array([[np.nan]]),
        R=np.array([[1.0], [0.0]]),
    )


@pytest.fixture
def bivariate_estimation():
    """Two random walks with a fully free 2 x 2 state covariance."""
    return StateSpaceEstimation(
        np.eye(2),
        np.array([[np.nan, 0.0], [0.0, np.nan]]),
        np.eye(2),
        np.full((2, 2), np.nan),
    )


@pytest.fixture
def shared_symbol_estimation():
    """Both diagonal elements of T are the same named variable ``a``."""
    a = sympy.Symbol("a")
    return StateSpaceEstimation(
        np.array([[1.0, 1.0]]),
        np.array([[np.nan]]),
        np.array([[a, 0], [0, a]], dtype=object),
        np.array([[np.nan, 0.0], [0.0, np.nan]]),
    )


# ============================================================================
# Maps
# ============================================================================


@pytest.fixture
def ar1_map(ar1_estimation):
    return ThetaMap.from_estimation(ar1_estimation)


@pytest.fixture
def ar2_map(ar2_estimation):
    return ThetaMap.from_estimation(ar2_estimation)


@pytest.fixture
def bivariate_map(bivariate_estimation):
    return ThetaMap.from_estimation(bivariate_estimation)


@pytest.fixture
def bound_systems():
    """Factory for (lower, upper) systems shaped like a map's fixed values."""

    def make(theta_map, lower=None, upper=None):
        lower_system = set_all_parameters(theta_map.fixed, -np.inf)
        upper_system = set_all_parameters(theta_map.fixed, np.inf)
        for name, value in (lower or {}).items():
            lower_system.set_parameter(name, np.asarray(value, dtype=float))
        for name, value in (upper or {}).items():
            upper_system.set_parameter(name, np.asarray(value, dtype=float))
        return lower_system, upper_system

    return make


def assert_structures_equal(left, right):
    """Compare two ``ThetaMap.structure()`` results."""
    assert left.keys() == right.keys()
    for key in left:
        lhs, rhs = left[key], right[key]
        if isinstance(lhs, dict):
            assert lhs.keys() == rhs.keys()
            for name in lhs:
                np.testing.assert_array_equal(lhs[name], rhs[name])
        elif isinstance(lhs, np.ndarray):
            np.testing.assert_array_equal(lhs, rhs)
        else:
            assert lhs == rhs
