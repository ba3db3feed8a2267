"""Tests for structural edits of a ThetaMap.

Covers:
- Restricting entries with bound systems
- Explicit initial conditions
- Bounds on theta itself
- Compression of unused and duplicate structure
"""

import numpy as np
import pytest
import sympy

from conftest import assert_structures_equal
from thetamap import (
    BoundViolationError,
    Exp,
    Identity,
    InvariantError,
    Logistic,
    ThetaMapError,
)
from thetamap.theta_map import VARIANCE_FLOOR


class TestAddRestrictions:
    """Tests for bounding individual entries."""

    def test_original_map_unchanged(self, ar1_map, bound_systems):
        before = ar1_map.structure()
        lower, upper = bound_systems(ar1_map, {"T": [[0.0]]}, {"T": [[1.0]]})
        ar1_map.add_restrictions(lower, upper)
        assert_structures_equal(ar1_map.structure(), before)

    def test_new_transformation_for_bounded_entry(self, ar1_map, bound_systems):
        lower, upper = bound_systems(ar1_map, {"T": [[0.0]]}, {"T": [[1.0]]})
        tm = ar1_map.add_restrictions(lower, upper)
        iTrans = tm.transformation_index.T[0, 0]
        assert tm.transformations[iTrans - 1] == Logistic(0.0, 1.0)
        # Identity is no longer used by any entry
        assert Identity() not in tm.transformations

    def test_fixed_entries_untouched(self, bivariate_map, bound_systems):
        lower, _ = bound_systems(bivariate_map, {"Z": [[2.0, 2.0], [2.0, 2.0]]})
        tm = bivariate_map.add_restrictions(lower, None)
        np.testing.assert_array_equal(tm.fixed.Z, np.eye(2))
        np.testing.assert_array_equal(tm.index.Z, np.zeros((2, 2)))
        assert tm.n_theta == bivariate_map.n_theta
        assert tm.lower_bound.Z[0, 1] == 2.0

    def test_collapsed_bounds_fix_entry(self, ar1_map, bound_systems):
        lower, upper = bound_systems(ar1_map, {"T": [[0.4]]}, {"T": [[0.4]]})
        tm = ar1_map.add_restrictions(lower, upper)
        assert tm.n_theta == 2
        assert tm.theta_names == ["theta_1", "theta_3"]
        assert tm.fixed.T[0, 0] == 0.4
        assert tm.index.T[0, 0] == 0
        assert tm.theta2system(np.zeros(2)).T[0, 0] == 0.4

    def test_symmetric_bounds_are_mirrored(self, bivariate_map, bound_systems):
        lower_Q = np.full((2, 2), -np.inf)
        lower_Q[0, 1] = 0.0
        lower, _ = bound_systems(bivariate_map, {"Q": lower_Q})
        tm = bivariate_map.add_restrictions(lower, None)
        tinx = tm.transformation_index.Q
        assert tinx[0, 1] == tinx[1, 0]
        assert tm.transformations[tinx[0, 1] - 1] == Exp(0.0)
        assert tm.lower_bound.Q[1, 0] == 0.0

    def test_equal_bounds_share_transformation(self, ar2_map, bound_systems):
        bounds_T = np.array([[-1.0, -1.0], [-np.inf, -np.inf]])
        lower, upper = bound_systems(ar2_map, {"T": bounds_T}, {"T": -bounds_T})
        tm = ar2_map.add_restrictions(lower, upper)
        tinx = tm.transformation_index.T
        assert tinx[0, 0] == tinx[0, 1]
        assert tm.transformations.count(Logistic(-1.0, 1.0)) == 1
        assert len(tm.transformations) == 2

    def test_inverted_bounds(self, ar1_map, bound_systems):
        lower, upper = bound_systems(ar1_map, {"T": [[2.0]]}, {"T": [[1.0]]})
        with pytest.raises(InvariantError, match="LowerBound"):
            ar1_map.add_restrictions(lower, upper)

    def test_bounds_must_conform(self, ar1_map, bivariate_map, bound_systems):
        lower, upper = bound_systems(bivariate_map)
        with pytest.raises(ThetaMapError, match="does not conform"):
            ar1_map.add_restrictions(lower, upper)

    def test_restrictions_only_tighten(self, ar1_map, bound_systems):
        lower, upper = bound_systems(ar1_map, {"T": [[0.0]]}, {"T": [[1.0]]})
        tm = ar1_map.add_restrictions(lower, upper)
        lower, upper = bound_systems(tm, {"T": [[-5.0]]}, {"T": [[0.5]]})
        tm = tm.add_restrictions(lower, upper)
        assert tm.lower_bound.T[0, 0] == 0.0
        assert tm.upper_bound.T[0, 0] == 0.5


class TestUpdateInitial:
    """Tests for explicit initial conditions."""

    def test_free_initial_mean(self, ar2_map):
        tm = ar2_map.update_initial(a0=np.array([np.nan, 0.0]))
        assert tm.explicit_a0 and not tm.explicit_P0
        assert tm.n_theta == 5
        assert tm.theta_names[-1] == "theta_5"

        theta = np.array([0.0, 0.5, 0.2, 0.0, 1.5])
        ss = tm.theta2system(theta)
        np.testing.assert_allclose(ss.a0, np.array([[1.5], [0.0]]))
        assert ss.P0 is None
        np.testing.assert_allclose(tm.system2theta(ss), theta, atol=1e-10)

    def test_diffuse_and_free_initial_variance(self, ar2_map):
        tm = ar2_map.update_initial(P0=np.array([[np.inf, 0.0], [0.0, np.nan]]))
        assert tm.explicit_P0
        assert tm.n_theta == 5
        iTrans = tm.transformation_index.Q0[0, 0]
        assert tm.transformations[iTrans - 1] == Exp(VARIANCE_FLOOR)

        theta = np.array([0.0, 0.5, 0.2, 0.0, 0.0])
        ss = tm.theta2system(theta)
        assert np.isinf(ss.P0[0, 0])
        assert ss.P0[1, 1] == pytest.approx(1.0)
        np.testing.assert_allclose(tm.system2theta(ss), theta, atol=1e-10)

    def test_fully_free_initial_variance(self, ar2_map):
        tm = ar2_map.update_initial(P0=np.full((2, 2), np.nan))
        assert tm.n_theta == 7
        assert tm.index.Q0[0, 1] == tm.index.Q0[1, 0]
        ss = tm.theta2system(np.zeros(7))
        np.testing.assert_array_equal(ss.P0, ss.P0.T)

    def test_known_initial_values_are_fixed(self, ar2_map):
        tm = ar2_map.update_initial(a0=np.array([1.0, 2.0]), P0=np.eye(2))
        assert tm.n_theta == ar2_map.n_theta
        ss = tm.theta2system(np.zeros(4))
        np.testing.assert_array_equal(ss.a0, np.array([[1.0], [2.0]]))
        np.testing.assert_array_equal(ss.P0, np.eye(2))

    def test_default_restores_derived_initial_conditions(self, ar2_map):
        tm = ar2_map.update_initial(a0=np.array([np.nan, np.nan]))
        tm = tm.update_initial()
        assert not tm.explicit_a0
        assert tm.n_theta == ar2_map.n_theta
        assert tm.theta2system(np.zeros(4)).a0 is None

    def test_new_names_do_not_collide(self, ar1_map, bound_systems):
        lower, upper = bound_systems(ar1_map, {"T": [[0.4]]}, {"T": [[0.4]]})
        tm = ar1_map.add_restrictions(lower, upper).update_initial(a0=np.array([np.nan]))
        assert tm.theta_names == ["theta_1", "theta_3", "theta_4"]

    def test_wrong_shape(self, ar2_map):
        with pytest.raises(ThetaMapError, match="m x 1"):
            ar2_map.update_initial(a0=np.zeros(3))


class TestThetaBounds:
    """Tests for bounds placed directly on theta."""

    def test_restrict_and_unrestrict(self, ar1_map):
        tm = ar1_map.update_theta_bounds("theta_2", lower=0.0, upper=1.0)
        theta = tm.restrict_theta(np.zeros(3))
        np.testing.assert_allclose(theta, [0.0, 0.5, 0.0])
        theta_u = np.array([0.3, -1.2, 2.0])
        np.testing.assert_allclose(tm.unrestrict_theta(tm.restrict_theta(theta_u)), theta_u)

    def test_gradient(self, ar1_map):
        tm = ar1_map.update_theta_bounds(1, lower=0.0, upper=1.0)
        np.testing.assert_allclose(tm.theta_u_theta_grad(np.zeros(3)), np.diag([1.0, 0.25, 1.0]))

    def test_unrestrict_outside_bounds(self, ar1_map):
        tm = ar1_map.update_theta_bounds("theta_2", lower=0.0, upper=1.0)
        with pytest.raises(BoundViolationError, match="theta_2"):
            tm.unrestrict_theta(np.array([0.0, 1.5, 0.0]))

    def test_symbol_key(self, shared_symbol_estimation):
        from thetamap import ThetaMap

        tm = ThetaMap.from_estimation(shared_symbol_estimation)
        tm = tm.update_theta_bounds(sympy.Symbol("a"), lower=-1.0)
        assert tm.theta_lower_bound[0] == -1.0
        assert tm.theta_upper_bound[0] == np.inf

    def test_unknown_name(self, ar1_map):
        with pytest.raises(ThetaMapError, match="No element"):
            ar1_map.update_theta_bounds("rho", lower=0.0)

    def test_inverted_bounds(self, ar1_map):
        with pytest.raises(InvariantError):
            ar1_map.update_theta_bounds(0, lower=1.0, upper=0.0)


class TestCompression:
    """Tests for validating and compressing the structure."""

    def test_idempotent(self, ar2_map, bound_systems):
        lower, upper = bound_systems(ar2_map, {"T": [[-1.0, -1.0], [-np.inf, -np.inf]]})
        tm = ar2_map.add_restrictions(lower, upper)
        assert_structures_equal(tm.validate_theta_map().structure(), tm.structure())
        assert_structures_equal(
            tm.validate_theta_map().validate_theta_map().structure(), tm.structure()
        )

    def test_index_has_no_gaps(self, ar2_map, bound_systems):
        lower, upper = bound_systems(
            ar2_map,
            {"T": [[0.3, -np.inf], [-np.inf, -np.inf]]},
            {"T": [[0.3, np.inf], [np.inf, np.inf]]},
        )
        tm = ar2_map.add_restrictions(lower, upper)
        used = np.unique(np.concatenate([tm.index.get_parameter(n).ravel() for n in tm.fixed.system_param]))
        np.testing.assert_array_equal(used[used != 0], np.arange(1, tm.n_psi + 1))
        assert tm.psi_indexes == [(i,) for i in range(tm.n_theta)]
        assert tm.param_string() == ["H", "T", "Q"]

    def test_theta_bounds_follow_theta(self, ar2_map, bound_systems):
        tm = ar2_map.update_theta_bounds("theta_4", lower=-2.0)
        lower, upper = bound_systems(tm, {"T": [[0.3, -np.inf], [-np.inf, -np.inf]]}, {"T": [[0.3, np.inf], [np.inf, np.inf]]})
        tm = tm.add_restrictions(lower, upper)
        assert tm.theta_names == ["theta_1", "theta_3", "theta_4"]
        np.testing.assert_array_equal(tm.theta_lower_bound, [-np.inf, -np.inf, -2.0])
