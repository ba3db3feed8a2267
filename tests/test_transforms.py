"""Tests for the bounded transformations.

Covers:
- Selection of the transformation from a pair of bounds
- Invertibility and range of each variant
- Structural equality used to deduplicate the registry
"""

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from thetamap.transforms import (
    Exp,
    Identity,
    Logistic,
    NegExp,
    bounded_transform,
    image_bounds,
)


class TestBoundedTransform:
    """Tests for choosing a transformation from bounds."""

    def test_unbounded_is_identity(self):
        assert bounded_transform(-np.inf, np.inf) == Identity()

    def test_lower_bound_only(self):
        assert bounded_transform(2.0, np.inf) == Exp(2.0)

    def test_upper_bound_only(self):
        assert bounded_transform(-np.inf, -1.0) == NegExp(-1.0)

    def test_both_bounds(self):
        assert bounded_transform(0.0, 1.0) == Logistic(0.0, 1.0)

    def test_inverted_bounds_raise(self):
        with pytest.raises(ValueError, match="greater than upper bound"):
            bounded_transform(1.0, 0.0)


class TestLogistic:
    """Tests for the scaled logistic."""

    def test_midpoint(self):
        assert Logistic(0.0, 1.0)(0.0) == pytest.approx(0.5)
        assert Logistic(-1.0, 1.0)(0.0) == pytest.approx(0.0)

    def test_inverse_of_midpoint(self):
        assert Logistic(0.0, 1.0).inverse(0.5) == pytest.approx(0.0)
        assert Logistic(-1.0, 1.0).inverse(0.0) == pytest.approx(0.0, abs=1e-12)

    def test_derivative_at_zero(self):
        assert Logistic(0.0, 2.0).derivative(0.0) == pytest.approx(0.5)

    def test_stays_inside_bounds_for_large_arguments(self):
        transform = Logistic(-3.0, 4.0)
        values = transform(np.array([-1e4, 1e4]))
        assert values[0] == pytest.approx(-3.0)
        assert values[1] == pytest.approx(4.0)
        assert np.all(np.isfinite(transform.derivative(np.array([-1e4, 1e4]))))

    @given(x=st.floats(min_value=-15, max_value=15))
    @settings(max_examples=50, deadline=None)
    def test_round_trip(self, x):
        transform = Logistic(-2.0, 5.0)
        assert transform.inverse(transform(x)) == pytest.approx(x, abs=1e-6)


class TestExponentials:
    """Tests for the shifted exponentials."""

    def test_exp_range(self):
        transform = Exp(1.5)
        assert transform(0.0) == pytest.approx(2.5)
        assert transform(-5.0) > 1.5

    def test_negexp_range(self):
        transform = NegExp(1.5)
        assert transform(0.0) == pytest.approx(0.5)
        assert transform(-5.0) < 1.5

    @given(x=st.floats(min_value=-10, max_value=10))
    @settings(max_examples=50, deadline=None)
    def test_round_trip(self, x):
        for transform in (Exp(-3.0), NegExp(3.0)):
            assert transform.inverse(transform(x)) == pytest.approx(x, abs=1e-8)

    def test_negexp_is_decreasing(self):
        assert not NegExp(0.0).increasing
        assert NegExp(0.0).derivative(0.0) == pytest.approx(-1.0)


class TestImageBounds:
    """Tests for the range of a transformation over an interval."""

    def test_identity_keeps_interval(self):
        assert image_bounds(Identity(), -1.0, 2.0) == (-1.0, 2.0)

    def test_decreasing_transform_swaps_ends(self):
        lower, upper = image_bounds(NegExp(0.0), 0.0, 1.0)
        assert lower == pytest.approx(-np.e)
        assert upper == pytest.approx(-1.0)

    def test_unbounded_interval(self):
        assert image_bounds(Exp(2.0), -np.inf, np.inf) == (2.0, np.inf)


class TestEquality:
    """Transformations compare by their bounds."""

    def test_equal_bounds_compare_equal(self):
        assert Logistic(0.0, 1.0) == Logistic(0.0, 1.0)
        assert Exp(0.0) != Exp(1.0)
        assert Exp(0.0) != NegExp(0.0)

    def test_hashable(self):
        assert len({Exp(0.0), Exp(0.0), Identity(), Identity()}) == 2
