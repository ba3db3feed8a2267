"""
Mapping from a vector of parameters to a state space system.

A vector theta is used to construct a ``StateSpace``.  A vector psi is defined
element-wise as a function of theta and each non-fixed scalar entry of the
system is a transformation of one element of psi.  Several entries may share
an element of psi and an element of psi may depend on several elements of
theta.

The internals of a ``ThetaMap`` are:

- ``fixed``: a ``StateSpace`` holding every known value (zero elsewhere).
- ``index``: a ``StateSpace`` of integers.  Fixed entries are zero, other
  entries hold the (1-based) element of psi that determines them.
- ``transformation_index``: a ``StateSpace`` of integers selecting, for every
  non-fixed entry, the (1-based) transformation applied to its psi value.
- ``transformations``: the registry of transformations (see
  :mod:`thetamap.transforms`).
- ``psi_definitions`` and ``psi_inverses``: how psi is computed from theta
  and, where a closed form exists, how each element of theta is recovered
  from psi.

The two primary uses are ``theta2system`` and ``system2theta``.  Entries can be
restricted to lie between bounds with ``add_restrictions``; every structural
edit returns a new, compressed ``ThetaMap`` and leaves the original untouched.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
from itertools import chain
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import sympy

from .abstract_state_space import (
    SYMMETRIC_PARAM,
    SYSTEM_PARAM,
    AbstractStateSpace,
    _as_column,
    lower_triangle_mask,
    transpose_slices,
)
from .abstract_system import AbstractSystem
from .entries import Expression, FreeVariable, Literal, classify_entries
from .errors import (
    BoundViolationError,
    InconsistentSystemError,
    InvariantError,
    ThetaMapError,
)
from .solver import (
    PsiDefinition,
    PsiInverse,
    SolverConfig,
    codetermined_components,
    solve_component,
)
from .state_space import StateSpace, set_all_parameters
from .state_space_estimation import StateSpaceEstimation
from .transforms import BoundedTransform, Exp, Identity, bounded_transform, image_bounds

logger = logging.getLogger(__name__)

EPS = np.finfo(float).eps
# Smallest value allowed on the diagonal of a variance matrix
VARIANCE_FLOOR = 10 * EPS
# Agreement required between entries determined by the same element of psi
CONSISTENCY_TOL = 1e4 * EPS

ThetaKey = Union[int, str, sympy.Symbol]


class ThetaMap(AbstractSystem):
    """
    Mapping between a vector theta and ``StateSpace`` systems.

    Parameters
    ----------
    fixed:
        System with all known values; entries determined by theta are 0.
    index:
        Integer system giving the element of psi behind every free entry.
    transformation_index:
        Integer system giving the transformation applied to every free entry.
    transformations:
        Transformations referenced by ``transformation_index``.
    explicit_a0, explicit_P0:
        Whether the initial state mean/variance are part of the mapping.
        Otherwise they are left to be derived from the system.
    psi_definitions:
        Element-wise definition of psi.  Defaults to psi equal to theta.
    psi_inverses:
        Closed form inverse for each element of theta (``None`` where theta
        must be recovered numerically).  Defaults to theta equal to psi.
    names:
        Names of the elements of theta, ``theta_<i>`` by default.
    """

    def __init__(
        self,
        fixed: AbstractStateSpace,
        index: AbstractStateSpace,
        transformation_index: AbstractStateSpace,
        transformations: Sequence[BoundedTransform],
        *,
        explicit_a0: bool = False,
        explicit_P0: bool = False,
        psi_definitions: Optional[Sequence[PsiDefinition]] = None,
        psi_inverses: Optional[Sequence[Optional[PsiInverse]]] = None,
        names: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__()

        self.explicit_a0 = bool(explicit_a0)
        self.explicit_P0 = bool(explicit_P0)
        self._validate_inputs(fixed, index, transformation_index, transformations)

        self.fixed = fixed.copy()
        self.index = index.copy()
        self.transformation_index = transformation_index.copy()
        self.transformations: List[BoundedTransform] = list(transformations)

        n_psi = int(max(self._vectorize(index).max(initial=0), 0))
        if psi_definitions is None:
            psi_definitions = [PsiDefinition((iPsi,)) for iPsi in range(n_psi)]
        self.psi_definitions: List[PsiDefinition] = list(psi_definitions)
        if len(self.psi_definitions) < n_psi:
            raise ThetaMapError("Index refers to more elements of psi than are defined.")

        n_theta = 1 + max(
            chain.from_iterable(d.theta_indexes for d in self.psi_definitions), default=-1
        )
        if psi_inverses is None:
            psi_inverses = [PsiInverse(iTheta) for iTheta in range(n_theta)]
        self.psi_inverses: List[Optional[PsiInverse]] = list(psi_inverses)
        if len(self.psi_inverses) != n_theta:
            raise ThetaMapError("An inverse (or None) must be given for every element of theta.")
        if any(
            inverse is not None and not 0 <= inverse.psi_index < len(self.psi_definitions)
            for inverse in self.psi_inverses
        ):
            raise ThetaMapError("Inverse refers to an element of psi that is not defined.")

        if names is None:
            names = [f"theta_{iTheta + 1}" for iTheta in range(n_theta)]
        if len(names) != n_theta:
            raise ThetaMapError(f"Expected {n_theta} names, got {len(names)}.")
        self.theta_names: List[str] = [str(name) for name in names]

        self.copy_dimensions(fixed)

        # Initialize bounds
        self.theta_lower_bound = np.full(n_theta, -np.inf)
        self.theta_upper_bound = np.full(n_theta, np.inf)
        self.lower_bound = set_all_parameters(self.fixed, -np.inf)
        self.upper_bound = set_all_parameters(self.fixed, np.inf)

        # Set diagonals of variance matrices to be positive
        floor = set_all_parameters(self.fixed, -np.inf)
        for name in ("H", "Q") + (("Q0",) if self.explicit_P0 else ()):
            values = floor.get_parameter(name).copy()
            values[_diagonal_mask(values.shape)] = VARIANCE_FLOOR
            floor.set_parameter(name, values)

        self._add_restrictions(floor, self.upper_bound)
        self._validate_theta_map()

    # ------------------------------------------------------------------
    # Alternate constructors
    # ------------------------------------------------------------------
    @classmethod
    def from_estimation(cls, sse: AbstractStateSpace) -> "ThetaMap":
        """
        Generate a ThetaMap where all free values are independent elements of
        theta (except in variance matrices, which must be symmetric).

        Parameters
        ----------
        sse:
            System where elements to estimate are ``nan``, sympy symbols or
            expressions (see :class:`StateSpaceEstimation`).

        Notes
        -----
        Theta is ordered by named variables (alphabetically), then anonymous
        ``nan`` elements.  Psi is ordered by distinct variables/expressions in
        order of appearance, then anonymous elements.
        """
        if not isinstance(sse, AbstractStateSpace):
            raise TypeError("sse must be an AbstractStateSpace instance.")

        explicit_a0 = sse.explicit_a0
        explicit_P0 = sse.explicit_P0
        param_names = _parameter_names(explicit_a0, explicit_P0)
        entries = {name: _entries_of(sse, name) for name in param_names}

        variable_names = sorted(
            {
                variable
                for values in entries.values()
                for entry in values.flat
                for variable in _variables(entry)
            }
        )
        theta_names: List[str] = list(variable_names)
        psi_definitions: List[PsiDefinition] = []
        psi_sources: List[object] = []
        psi_keys: Dict[tuple, int] = {}
        index = {name: np.zeros(entries[name].shape, dtype=int) for name in param_names}

        # Symbolic elements of psi: one per distinct variable or expression
        for name in param_names:
            for position, entry in np.ndenumerate(entries[name]):
                if isinstance(entry, FreeVariable) and not entry.anonymous:
                    key = ("variable", entry.name)
                    definition = PsiDefinition((variable_names.index(entry.name),))
                elif isinstance(entry, Expression):
                    key = ("expression", entry.key)
                    definition = PsiDefinition(
                        tuple(variable_names.index(v) for v in entry.variables),
                        entry.evaluator,
                    )
                else:
                    continue
                if key not in psi_keys:
                    psi_keys[key] = len(psi_definitions)
                    psi_definitions.append(definition)
                    psi_sources.append(entry)
                index[name][position] = psi_keys[key] + 1

        psi_inverses: List[Optional[PsiInverse]] = [
            _symbolic_inverse(iTheta, psi_definitions, psi_sources)
            for iTheta in range(len(variable_names))
        ]

        # Anonymous elements: a new element of psi and theta for each
        for name in param_names:
            anonymous = np.vectorize(
                lambda e: isinstance(e, FreeVariable) and e.anonymous, otypes=[bool]
            )(entries[name])
            select = anonymous
            if name in SYMMETRIC_PARAM:
                if not np.array_equal(anonymous, transpose_slices(anonymous)):
                    raise ThetaMapError(f"Free elements of {name} must be symmetric.")
                select = anonymous & lower_triangle_mask(anonymous.shape)

            for position in zip(*np.nonzero(select)):
                iTheta = len(theta_names)
                theta_names.append(f"theta_{iTheta + 1}")
                psi_inverses.append(PsiInverse(len(psi_definitions)))
                psi_definitions.append(PsiDefinition((iTheta,)))
                index[name][position] = len(psi_definitions)
                if name in SYMMETRIC_PARAM:
                    index[name][(position[1], position[0]) + position[2:]] = len(psi_definitions)

        fixed_values = {
            name: np.vectorize(
                lambda e: e.value if isinstance(e, Literal) else 0.0, otypes=[float]
            )(entries[name])
            for name in param_names
        }

        fixed = set_all_parameters(sse, 0.0)
        index_system = set_all_parameters(sse, 0, dtype=int)
        transformation_index = set_all_parameters(sse, 0, dtype=int)
        for name in param_names:
            fixed.set_parameter(name, fixed_values[name])
            index_system.set_parameter(name, index[name])
            transformation_index.set_parameter(name, (index[name] != 0).astype(int))

        logger.debug(
            "Estimation map with %d elements of theta and %d of psi.",
            len(theta_names),
            len(psi_definitions),
        )
        return cls(
            fixed,
            index_system,
            transformation_index,
            [Identity()],
            explicit_a0=explicit_a0,
            explicit_P0=explicit_P0,
            psi_definitions=psi_definitions,
            psi_inverses=psi_inverses,
            names=theta_names,
        )

    @classmethod
    def from_all(cls, ss: AbstractStateSpace) -> "ThetaMap":
        """
        Generate a ThetaMap where every element of the system parameters (and
        of explicit initial conditions) is included in theta.
        """
        if not isinstance(ss, AbstractStateSpace):
            raise TypeError("ss must be an AbstractStateSpace instance.")
        return cls.from_estimation(set_all_parameters(ss, np.nan))

    # ------------------------------------------------------------------
    # Dimensions
    # ------------------------------------------------------------------
    @property
    def n_theta(self) -> int:
        return len(self.theta_names)

    @property
    def n_psi(self) -> int:
        return len(self.psi_definitions)

    @property
    def psi_indexes(self) -> List[Tuple[int, ...]]:
        """Elements of theta (0-based) that determine each element of psi."""
        return [definition.theta_indexes for definition in self.psi_definitions]

    # ------------------------------------------------------------------
    # Conversion functions
    # ------------------------------------------------------------------
    def theta2system(self, theta) -> StateSpace:
        """
        Generate a StateSpace from a vector theta.

        Parameters
        ----------
        theta:
            Vector of ``n_theta`` parameters without missing values.

        Returns
        -------
        StateSpace
            System with every free entry filled in.  ``a0`` and ``P0`` are only
            set when the initial conditions are explicit.
        """
        theta = self._as_theta_vector(theta)
        if np.isnan(theta).any():
            raise ThetaMapError("Theta must be non-nan.")

        psi = self.construct_psi(theta)
        params = {name: self.construct_param_mat(psi, name) for name in SYSTEM_PARAM}
        tau = None if self.fixed.time_invariant else self.fixed.tau
        ss = StateSpace.from_parameters(params, tau)

        if self.explicit_a0:
            ss.a0 = self.construct_param_mat(psi, "a0")
        if self.explicit_P0:
            A0 = self.fixed._A0
            R0 = self.fixed._R0
            Q0 = self.construct_param_mat(psi, "Q0")
            P0 = self.enforce_symmetric(R0 @ Q0 @ R0.T)
            P0[(A0 @ A0.T) == 1] = np.inf
            ss.P0 = P0
        return ss

    def system2theta(self, ss: AbstractStateSpace, config: Optional[SolverConfig] = None) -> np.ndarray:
        """
        Get the theta vector that would determine a system.

        Parameters
        ----------
        ss:
            System conforming to this map.
        config:
            Options for elements of theta recovered numerically.

        Returns
        -------
        numpy.ndarray
            Vector of ``n_theta`` parameters.

        Raises
        ------
        BoundViolationError
            If a free entry lies outside its bounds.
        InconsistentSystemError
            If entries sharing an element of psi imply different values.
        """
        config = config or SolverConfig()
        self._check_conforming(ss)

        values = {
            name: np.asarray(ss.get_parameter(name), dtype=float)
            for name in self._param_names()
        }
        self._check_bounds(values)
        psi = self._recover_psi(values)

        # Explicit inverses
        theta = np.full(self.n_theta, np.nan)
        unresolved = []
        for iTheta, inverse in enumerate(self.psi_inverses):
            if inverse is None:
                unresolved.append(iTheta)
            else:
                theta[iTheta] = inverse(psi)

        # Numeric inverses for those not specified
        if unresolved:
            rng = np.random.default_rng(config.random_seed)
            for component in codetermined_components(self.psi_definitions, unresolved):
                logger.debug(
                    "Solving for %s numerically.",
                    ", ".join(self.theta_names[i] for i in component),
                )
                theta[component] = solve_component(
                    component,
                    self.psi_definitions,
                    psi,
                    theta,
                    self.theta_lower_bound,
                    self.theta_upper_bound,
                    config,
                    rng,
                )
        return theta

    # ------------------------------------------------------------------
    # Theta restrictions
    # ------------------------------------------------------------------
    def restrict_theta(self, theta_u) -> np.ndarray:
        """Create the bounded theta from an unrestricted vector."""
        theta_u = self._as_theta_vector(theta_u)
        return np.array(
            [trans(x) for trans, x in zip(self._theta_transformations(), theta_u)],
            dtype=float,
        )

    def unrestrict_theta(self, theta) -> np.ndarray:
        """Get the unrestricted vector given a bounded theta."""
        theta = self._as_theta_vector(theta)
        tolerance = EPS * np.maximum(1.0, np.abs(theta))
        below = theta < self.theta_lower_bound - tolerance
        above = theta > self.theta_upper_bound + tolerance
        if below.any():
            raise BoundViolationError("lower", np.asarray(self.theta_names)[below])
        if above.any():
            raise BoundViolationError("upper", np.asarray(self.theta_names)[above])

        with np.errstate(divide="ignore", invalid="ignore"):
            return np.array(
                [
                    trans.inverse(x)
                    for trans, x in zip(self._theta_transformations(), theta)
                ],
                dtype=float,
            )

    def theta_u_theta_grad(self, theta_u) -> np.ndarray:
        """
        Diagonal Jacobian of the bounded theta with respect to the
        unrestricted vector.
        """
        theta_u = self._as_theta_vector(theta_u)
        return np.diag(
            [
                float(trans.derivative(x))
                for trans, x in zip(self._theta_transformations(), theta_u)
            ]
        )

    def update_theta_bounds(
        self,
        key: ThetaKey,
        lower: Optional[float] = None,
        upper: Optional[float] = None,
    ) -> "ThetaMap":
        """
        Set the bounds on an element of theta.

        Parameters
        ----------
        key:
            Name, sympy symbol or 0-based position of the element.
        lower, upper:
            New bounds; ``None`` keeps the current value.
        """
        new = self._copy()
        iTheta = new._theta_position(key)
        if lower is not None:
            new.theta_lower_bound[iTheta] = float(lower)
        if upper is not None:
            new.theta_upper_bound[iTheta] = float(upper)
        if new.theta_lower_bound[iTheta] > new.theta_upper_bound[iTheta]:
            raise InvariantError(
                f"Lower bound of {new.theta_names[iTheta]} is greater than its upper bound."
            )
        return new

    # ------------------------------------------------------------------
    # Structural edits
    # ------------------------------------------------------------------
    def add_restrictions(
        self,
        lower: Optional[AbstractStateSpace] = None,
        upper: Optional[AbstractStateSpace] = None,
    ) -> "ThetaMap":
        """
        Restrict the systems that can be created by altering the
        transformations used.

        Parameters
        ----------
        lower, upper:
            Bound systems.  The bounds recorded for each entry become the
            intersection of the current and the new bounds.  ``None`` keeps
            the current bounds.

        Returns
        -------
        ThetaMap
            New map with added lower and upper bounds.
        """
        new = self._copy()
        new._add_restrictions(lower, upper)
        new._validate_theta_map()
        return new

    def update_initial(self, a0=None, P0=None) -> "ThetaMap":
        """
        Set the initial values a0 and P0.

        Inputs may contain ``nan`` for the elements to be estimated.  Passing
        ``None`` leaves that part of the initial conditions to be derived from
        the system.

        Parameters
        ----------
        a0:
            Initial state mean (m x 1).
        P0:
            Initial state variance (m x m), ``inf`` on diffuse states.
        """
        new = self._copy()
        systems = (new.fixed, new.index, new.transformation_index, new.lower_bound, new.upper_bound)

        if a0 is not None:
            a0 = _as_column(np.asarray(a0, dtype=float))
            if a0.shape != (new.m, 1):
                raise ThetaMapError("a0 should be an m x 1 vector.")
            free = np.isnan(a0)
            new.explicit_a0 = True

            index = np.zeros(a0.shape, dtype=int)
            index[free] = new._add_free_slots(int(free.sum()))
            transformation_index = np.zeros(a0.shape, dtype=int)
            transformation_index[free] = new._register_transform(Identity())

            new.fixed.a0 = np.where(free, 0.0, a0)
            new.index.a0 = index
            new.transformation_index.a0 = transformation_index
            new.lower_bound.a0 = np.where(free, -np.inf, a0)
            new.upper_bound.a0 = np.where(free, np.inf, a0)
        else:
            new.explicit_a0 = False
            for system in systems:
                system.a0 = None

        if P0 is not None:
            P0 = np.asarray(P0, dtype=float)
            if P0.shape != (new.m, new.m):
                raise ThetaMapError("P0 should be an m x m matrix.")
            new.explicit_P0 = True

            new.fixed.P0 = np.where(np.isnan(P0), 0.0, P0)
            finite = ~np.isinf(P0).any(axis=1)
            Q0 = P0[np.ix_(finite, finite)]
            free = np.isnan(Q0)
            if not np.array_equal(free, free.T):
                raise ThetaMapError("Free elements of P0 must be symmetric.")

            index = np.zeros(Q0.shape, dtype=int)
            lower_free = free & lower_triangle_mask(Q0.shape)
            index[lower_free] = new._add_free_slots(int(lower_free.sum()))
            index = index + index.T - np.diag(np.diag(index))

            diagonal = _diagonal_mask(Q0.shape)
            transformation_index = np.zeros(Q0.shape, dtype=int)
            transformation_index[free & ~diagonal] = new._register_transform(Identity())
            transformation_index[free & diagonal] = new._register_transform(Exp(VARIANCE_FLOOR))

            lower = np.where(free, -np.inf, Q0)
            lower[free & diagonal] = VARIANCE_FLOOR
            upper = np.where(free, np.inf, Q0)

            A0, R0 = new.fixed._A0, new.fixed._R0
            for system, values in (
                (new.index, index),
                (new.transformation_index, transformation_index),
                (new.lower_bound, lower),
                (new.upper_bound, upper),
            ):
                system.set_initial_selectors(A0, R0, values)
        else:
            new.explicit_P0 = False
            for system in systems:
                system.P0 = None

        new._validate_theta_map()
        return new

    def validate_theta_map(self) -> "ThetaMap":
        """Return a validated, compressed copy of the map."""
        new = self._copy()
        new._validate_theta_map()
        return new

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def param_string(self) -> List[str]:
        """Describe which parameter matrices each element of theta influences."""
        influenced: List[List[str]] = [[] for _ in range(self.n_theta)]
        for name in self._param_names():
            index = self.index.get_parameter(name)
            used_psi = np.unique(index[index != 0]) - 1
            thetas = set(chain.from_iterable(self.psi_definitions[i].theta_indexes for i in used_psi))
            for iTheta in sorted(thetas):
                influenced[iTheta].append(name)
        return [", ".join(names) for names in influenced]

    def structure(self) -> Dict[str, object]:
        """The index/transformation structure and bounds, for inspection."""
        names = self._param_names()
        return {
            "fixed": {name: self.fixed.get_parameter(name).copy() for name in names},
            "index": {name: self.index.get_parameter(name).copy() for name in names},
            "transformation_index": {
                name: self.transformation_index.get_parameter(name).copy() for name in names
            },
            "lower_bound": {name: self.lower_bound.get_parameter(name).copy() for name in names},
            "upper_bound": {name: self.upper_bound.get_parameter(name).copy() for name in names},
            "transformations": list(self.transformations),
            "psi_indexes": self.psi_indexes,
            "psi_inverses": [
                None if inverse is None else inverse.psi_index for inverse in self.psi_inverses
            ],
            "theta_names": list(self.theta_names),
            "theta_lower_bound": self.theta_lower_bound.copy(),
            "theta_upper_bound": self.theta_upper_bound.copy(),
        }

    # ------------------------------------------------------------------
    # Construction of parameters
    # ------------------------------------------------------------------
    def construct_psi(self, theta: np.ndarray) -> np.ndarray:
        """Create psi as a function of theta."""
        return np.array([definition(theta) for definition in self.psi_definitions], dtype=float)

    def construct_param_mat(self, psi: np.ndarray, name: str) -> np.ndarray:
        """Create a parameter matrix from fixed values and transformed psi."""
        constructed = np.array(self.fixed.get_parameter(name), dtype=float)
        index = self.index.get_parameter(name)
        transformation_index = self.transformation_index.get_parameter(name)

        free = index != 0
        for iTrans in np.unique(transformation_index[free]):
            select = free & (transformation_index == iTrans)
            constructed[select] = self.transformations[iTrans - 1](psi[index[select] - 1])
        return constructed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _copy(self) -> "ThetaMap":
        return copy.deepcopy(self)

    def _param_names(self) -> Tuple[str, ...]:
        return _parameter_names(self.explicit_a0, self.explicit_P0)

    def _vectorize(self, system: AbstractStateSpace) -> np.ndarray:
        return np.concatenate(
            [np.ravel(system.get_parameter(name)) for name in self._param_names()]
        )

    def _as_theta_vector(self, theta) -> np.ndarray:
        theta = np.asarray(theta, dtype=float)
        if theta.ndim == 2 and theta.shape[1] == 1:
            theta = theta[:, 0]
        if theta.shape != (self.n_theta,):
            raise ThetaMapError(
                f"Size of theta {theta.shape} does not match ThetaMap ({self.n_theta},)."
            )
        return theta

    def _theta_position(self, key: ThetaKey) -> int:
        if isinstance(key, sympy.Symbol):
            key = key.name
        if isinstance(key, str):
            if key not in self.theta_names:
                raise ThetaMapError(f"No element of theta named {key!r}.")
            return self.theta_names.index(key)
        if isinstance(key, (int, np.integer)) and 0 <= key < self.n_theta:
            return int(key)
        raise ThetaMapError(f"Invalid element of theta: {key!r}.")

    def _theta_transformations(self) -> List[BoundedTransform]:
        return [
            bounded_transform(lower, upper)
            for lower, upper in zip(self.theta_lower_bound, self.theta_upper_bound)
        ]

    def _register_transform(self, transform: BoundedTransform) -> int:
        """1-based registry index of ``transform``, appending it if new."""
        if transform in self.transformations:
            return self.transformations.index(transform) + 1
        self.transformations.append(transform)
        return len(self.transformations)

    def _add_free_slots(self, count: int) -> np.ndarray:
        """Add ``count`` new elements of theta, each with its own element of psi."""
        first_psi = self.n_psi + 1
        for _ in range(count):
            iTheta = self.n_theta
            self.psi_inverses.append(PsiInverse(self.n_psi))
            self.psi_definitions.append(PsiDefinition((iTheta,)))
            self.theta_names.append(self._unused_name(iTheta + 1))
        self.theta_lower_bound = _pad(self.theta_lower_bound, self.n_theta, -np.inf)
        self.theta_upper_bound = _pad(self.theta_upper_bound, self.n_theta, np.inf)
        return np.arange(first_psi, first_psi + count, dtype=int)

    def _unused_name(self, start: int) -> str:
        number = start
        while f"theta_{number}" in self.theta_names:
            number += 1
        return f"theta_{number}"

    def _add_restrictions(
        self,
        lower: Optional[AbstractStateSpace],
        upper: Optional[AbstractStateSpace],
    ) -> None:
        lower = self.lower_bound if lower is None else lower
        upper = self.upper_bound if upper is None else upper
        for system in (lower, upper):
            if not isinstance(system, AbstractStateSpace):
                raise TypeError("Bounds must be given as state space systems.")
            try:
                self.check_conforming_system(system)
            except ValueError as err:
                raise ThetaMapError(f"Bound system does not conform: {err}") from err

        for name in self._param_names():
            passed_lower = lower.get_parameter(name)
            passed_upper = upper.get_parameter(name)
            self._restrict_param_mat(
                name,
                self.lower_bound.get_parameter(name) if passed_lower is None else passed_lower,
                self.upper_bound.get_parameter(name) if passed_upper is None else passed_upper,
            )

    def _restrict_param_mat(self, name: str, passed_lower, passed_upper) -> None:
        """Intersect the bounds of a parameter and update its transformations."""
        old_lower = self.lower_bound.get_parameter(name)
        old_upper = self.upper_bound.get_parameter(name)
        passed_lower = np.asarray(passed_lower, dtype=float)
        passed_upper = np.asarray(passed_upper, dtype=float)
        if passed_lower.shape != old_lower.shape or passed_upper.shape != old_upper.shape:
            raise ThetaMapError(f"Bounds for {name} do not match its shape {old_lower.shape}.")

        if name in SYMMETRIC_PARAM:
            passed_lower = np.maximum(passed_lower, transpose_slices(passed_lower))
            passed_upper = np.minimum(passed_upper, transpose_slices(passed_upper))

        new_lower = np.maximum(old_lower, passed_lower)
        new_upper = np.minimum(old_upper, passed_upper)

        fixed = self.fixed.get_parameter(name).copy()
        index = self.index.get_parameter(name).copy()
        transformation_index = self.transformation_index.get_parameter(name).copy()

        free = index != 0
        changed = free & ((new_lower != old_lower) | (new_upper != old_upper))

        # Entries whose bounds collapse to a point become fixed
        collapsed = changed & (new_lower == new_upper)
        if collapsed.any():
            logger.debug("Fixing %d element(s) of %s at their bounds.", collapsed.sum(), name)
            fixed[collapsed] = new_lower[collapsed]
            index[collapsed] = 0
            transformation_index[collapsed] = 0

        # Inverted bounds are reported by the validation pass
        reparameterize = changed & (new_lower < new_upper)
        for position in zip(*np.nonzero(reparameterize)):
            transformation_index[position] = self._register_transform(
                bounded_transform(new_lower[position], new_upper[position])
            )

        self.fixed.set_parameter(name, fixed)
        self.index.set_parameter(name, index)
        self.transformation_index.set_parameter(name, transformation_index)
        self.lower_bound.set_parameter(name, new_lower)
        self.upper_bound.set_parameter(name, new_upper)

    def _validate_theta_map(self) -> None:
        """
        Verify that the map is valid after modifications and compress it:
        remove unused elements of psi and theta, unused and duplicate
        transformations, and check the bounds.
        """
        names = self._param_names()
        index = {name: self.index.get_parameter(name).copy() for name in names}
        transformation_index = {
            name: self.transformation_index.get_parameter(name).copy() for name in names
        }

        for name in names:
            free = index[name] != 0
            if np.any(free & (self.fixed.get_parameter(name) != 0)):
                raise InvariantError(f"Elements of {name} are both fixed and free.")
            if np.any(free & (transformation_index[name] == 0)):
                raise InvariantError(f"Free elements of {name} have no transformation.")
            # Make sure we don't have any transformations on fixed elements
            transformation_index[name][~free] = 0

        # Psi: renumber so the index has no gaps
        used_psi = np.unique(np.concatenate([index[name].ravel() for name in names]))
        used_psi = used_psi[used_psi != 0]
        psi_map = np.zeros(self.n_psi + 1, dtype=int)
        psi_map[used_psi] = np.arange(1, used_psi.size + 1)
        for name in names:
            index[name] = psi_map[index[name]]
        psi_definitions = [self.psi_definitions[iPsi - 1] for iPsi in used_psi]
        psi_inverses = [
            None if inverse is None or psi_map[inverse.psi_index + 1] == 0
            else dataclasses.replace(inverse, psi_index=int(psi_map[inverse.psi_index + 1]) - 1)
            for inverse in self.psi_inverses
        ]

        # Make sure the theta bounds are big enough
        n_theta = self.n_theta
        if self.theta_lower_bound.size > n_theta or self.theta_upper_bound.size > n_theta:
            raise InvariantError("Theta bounds are longer than theta.")
        theta_lower = _pad(self.theta_lower_bound, n_theta, -np.inf)
        theta_upper = _pad(self.theta_upper_bound, n_theta, np.inf)

        # Theta: drop elements no longer used by any element of psi
        used_theta = sorted(set(chain.from_iterable(d.theta_indexes for d in psi_definitions)))
        theta_map = np.full(n_theta, -1, dtype=int)
        theta_map[used_theta] = np.arange(len(used_theta))
        psi_definitions = [
            dataclasses.replace(d, theta_indexes=tuple(int(theta_map[i]) for i in d.theta_indexes))
            for d in psi_definitions
        ]

        # Transformations: drop unused ones and merge duplicates onto the
        # lowest index
        used_trans = np.unique(np.concatenate([transformation_index[name].ravel() for name in names]))
        used_trans = used_trans[used_trans != 0]
        trans_map = np.zeros(len(self.transformations) + 1, dtype=int)
        transformations: List[BoundedTransform] = []
        for iTrans in used_trans:
            transform = self.transformations[iTrans - 1]
            if transform not in transformations:
                transformations.append(transform)
            trans_map[iTrans] = transformations.index(transform) + 1
        for name in names:
            transformation_index[name] = trans_map[transformation_index[name]]

        n_removed = (
            self.n_psi - len(psi_definitions),
            n_theta - len(used_theta),
            len(self.transformations) - len(transformations),
        )
        if any(n_removed):
            logger.debug(
                "Compressed ThetaMap: removed %d psi, %d theta and %d transformation element(s).",
                *n_removed,
            )

        # Make sure the lower bound is actually below the upper bound
        for name in names:
            if np.any(self.lower_bound.get_parameter(name) > self.upper_bound.get_parameter(name)):
                raise InvariantError(f"Elements of LowerBound are greater than UpperBound in {name}.")
        if np.any(theta_lower > theta_upper):
            raise InvariantError("Theta lower bounds are greater than upper bounds.")

        for name in names:
            self.index.set_parameter(name, index[name])
            self.transformation_index.set_parameter(name, transformation_index[name])
        self.psi_definitions = psi_definitions
        self.psi_inverses = [psi_inverses[i] for i in used_theta]
        self.theta_names = [self.theta_names[i] for i in used_theta]
        self.theta_lower_bound = theta_lower[used_theta]
        self.theta_upper_bound = theta_upper[used_theta]
        self.transformations = transformations

        if not (
            len(self.psi_inverses) == self.theta_lower_bound.size == self.theta_upper_bound.size == self.n_theta
        ):
            raise InvariantError("Theta bounds do not match the number of elements of theta.")

    def _check_conforming(self, ss: AbstractStateSpace) -> None:
        if not isinstance(ss, AbstractStateSpace):
            raise TypeError("ss must be an AbstractStateSpace instance.")
        try:
            self.index.check_conforming_system(ss)
        except ValueError as err:
            raise ThetaMapError(f"System does not conform to ThetaMap: {err}") from err

        for name in self._param_names():
            value = ss.get_parameter(name)
            expected = np.shape(self.index.get_parameter(name))
            if value is None:
                raise ThetaMapError(f"System has no {name} but the ThetaMap uses it.")
            if np.shape(value) != expected:
                raise ThetaMapError(
                    f"{name} has shape {np.shape(value)}; ThetaMap expects {expected}."
                )

    def _effective_bounds(
        self, name: str
    ) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
        """
        Bounds on a parameter.

        Returns the open bounds (the recorded bounds and the range of each
        transformation, which is never attained) and the closed bounds
        implied by the theta bounds for entries that are a direct
        transformation of one element of theta.
        """
        open_lower = np.array(self.lower_bound.get_parameter(name), dtype=float)
        open_upper = np.array(self.upper_bound.get_parameter(name), dtype=float)
        closed_lower = np.full(open_lower.shape, -np.inf)
        closed_upper = np.full(open_upper.shape, np.inf)
        index = self.index.get_parameter(name)
        transformation_index = self.transformation_index.get_parameter(name)

        for position in zip(*np.nonzero(index)):
            transform = self.transformations[transformation_index[position] - 1]
            lo, hi = image_bounds(transform, -np.inf, np.inf)
            open_lower[position] = max(open_lower[position], lo)
            open_upper[position] = min(open_upper[position], hi)

            definition = self.psi_definitions[index[position] - 1]
            if not definition.identity:
                continue
            iTheta = definition.theta_indexes[0]
            closed_lower[position], closed_upper[position] = image_bounds(
                transform, self.theta_lower_bound[iTheta], self.theta_upper_bound[iTheta]
            )
        return open_lower, open_upper, closed_lower, closed_upper

    def _check_bounds(self, values: Dict[str, np.ndarray]) -> None:
        lower_violation = []
        upper_violation = []
        for name, value in values.items():
            free = self.index.get_parameter(name) != 0
            if np.isnan(value[free]).any():
                raise ThetaMapError(f"Elements of {name} determined by theta are missing.")
            open_lower, open_upper, closed_lower, closed_upper = self._effective_bounds(name)
            value = value[free]
            if np.any((value <= open_lower[free]) | (value < closed_lower[free])):
                lower_violation.append(name)
            if np.any((value >= open_upper[free]) | (value > closed_upper[free])):
                upper_violation.append(name)

        if lower_violation:
            raise BoundViolationError("lower", lower_violation)
        if upper_violation:
            raise BoundViolationError("upper", upper_violation)

    def _recover_psi(self, values: Dict[str, np.ndarray]) -> np.ndarray:
        """
        Invert the transformation of every free entry and make sure entries
        sharing an element of psi agree.
        """
        collected: List[List[float]] = [[] for _ in range(self.n_psi)]
        sources: List[set] = [set() for _ in range(self.n_psi)]
        for name, value in values.items():
            index = self.index.get_parameter(name)
            transformation_index = self.transformation_index.get_parameter(name)
            free = index != 0
            for iTrans in np.unique(transformation_index[free]):
                select = free & (transformation_index == iTrans)
                with np.errstate(divide="ignore", invalid="ignore"):
                    recovered = np.atleast_1d(
                        self.transformations[iTrans - 1].inverse(value[select])
                    )
                for iPsi, psi_value in zip(index[select] - 1, recovered):
                    collected[iPsi].append(float(psi_value))
                    sources[iPsi].add(name)

        psi = np.full(self.n_psi, np.nan)
        for iPsi, psi_values in enumerate(collected):
            if not psi_values:
                continue
            psi_values = np.asarray(psi_values)
            if not np.all(
                np.isclose(psi_values, psi_values[0], rtol=CONSISTENCY_TOL, atol=CONSISTENCY_TOL)
            ):
                raise InconsistentSystemError(
                    "Transformation inverses result in differing values of psi "
                    f"element {iPsi + 1} (used in {', '.join(sorted(sources[iPsi]))})."
                )
            psi[iPsi] = psi_values[0]
        return psi

    def _validate_inputs(self, fixed, index, transformation_index, transformations) -> None:
        for system in (fixed, index, transformation_index):
            if not isinstance(system, AbstractStateSpace):
                raise TypeError("fixed, index and transformation_index must be state space systems.")
        try:
            index.check_conforming_system(transformation_index)
            fixed.check_conforming_system(index)
        except ValueError as err:
            raise ThetaMapError(f"Index systems do not conform: {err}") from err

        for name in self._param_names():
            values = [system.get_parameter(name) for system in (fixed, index, transformation_index)]
            if any(value is None for value in values):
                raise ThetaMapError(f"{name} must be given in fixed, index and transformation_index.")
            if len({np.shape(value) for value in values}) != 1:
                raise ThetaMapError(f"Shapes of {name} differ between fixed and index systems.")

            fixed_value, index_value, trans_value = (np.asarray(value) for value in values)
            if np.isnan(fixed_value.astype(float)).any():
                raise ThetaMapError(f"Fixed values of {name} must be non-nan.")
            for label, value in (("index", index_value), ("transformation_index", trans_value)):
                if value.size and (np.any(value < 0) or np.any(value != np.round(value))):
                    raise ThetaMapError(f"{label} of {name} must hold non-negative integers.")
            if np.any(trans_value > len(transformations)):
                raise ThetaMapError(f"transformation_index of {name} refers to a missing transformation.")


# ----------------------------------------------------------------------
# Module helpers
# ----------------------------------------------------------------------
def _parameter_names(explicit_a0: bool, explicit_P0: bool) -> Tuple[str, ...]:
    return SYSTEM_PARAM + (("a0",) if explicit_a0 else ()) + (("Q0",) if explicit_P0 else ())


def _diagonal_mask(shape: Tuple[int, ...]) -> np.ndarray:
    base = np.eye(shape[0], shape[1], dtype=bool)
    if len(shape) == 3:
        return np.repeat(base[:, :, np.newaxis], shape[2], axis=2)
    return base


def _pad(values: np.ndarray, size: int, fill: float) -> np.ndarray:
    values = np.asarray(values, dtype=float)
    if values.size >= size:
        return values
    return np.concatenate([values, np.full(size - values.size, fill)])


def _entries_of(system: AbstractStateSpace, name: str) -> np.ndarray:
    if isinstance(system, StateSpaceEstimation):
        return system.entries(name)
    return classify_entries(system.get_parameter(name))


def _variables(entry) -> Tuple[str, ...]:
    if isinstance(entry, Expression):
        return entry.variables
    if isinstance(entry, FreeVariable) and not entry.anonymous:
        return (entry.name,)
    return ()


def _symbolic_inverse(
    iTheta: int, psi_definitions: Sequence[PsiDefinition], psi_sources: Sequence[object]
) -> Optional[PsiInverse]:
    """Closed form inverse for a named element of theta, if one exists."""
    for iPsi, definition in enumerate(psi_definitions):
        if definition.identity and definition.theta_indexes == (iTheta,):
            return PsiInverse(iPsi)
    for iPsi, (definition, source) in enumerate(zip(psi_definitions, psi_sources)):
        if (
            definition.theta_indexes == (iTheta,)
            and isinstance(source, Expression)
            and source.inverse is not None
        ):
            return PsiInverse(iPsi, source.inverse)
    return None


__all__ = ["ThetaMap", "VARIANCE_FLOOR"]
