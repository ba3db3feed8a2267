"""
Parameter mapping for state space models estimated with MFSS-style systems.

A `ThetaMap` translates a vector of free parameters (theta) into a fully
specified `StateSpace` and back.  Systems to be estimated are described with
`StateSpaceEstimation`, where free entries are ``nan``, sympy symbols or
sympy expressions.  Bounds on individual entries are enforced through the
transformations in `thetamap.transforms`; entries that cannot be inverted in
closed form are recovered numerically (see `SolverConfig`).
"""

from .abstract_system import AbstractSystem
from .abstract_state_space import AbstractStateSpace
from .entries import Expression, FreeVariable, Literal
from .errors import (
    BoundViolationError,
    InconsistentSystemError,
    InvariantError,
    NumericInverseWarning,
    ThetaMapError,
)
from .solver import SolverConfig
from .state_space import StateSpace, set_all_parameters
from .state_space_estimation import StateSpaceEstimation
from .theta_map import ThetaMap
from .transforms import Exp, Identity, Logistic, NegExp, bounded_transform

__all__ = [
    "AbstractSystem",
    "AbstractStateSpace",
    "StateSpace",
    "StateSpaceEstimation",
    "ThetaMap",
    "SolverConfig",
    "set_all_parameters",
    "Literal",
    "FreeVariable",
    "Expression",
    "Identity",
    "Exp",
    "NegExp",
    "Logistic",
    "bounded_transform",
    "ThetaMapError",
    "BoundViolationError",
    "InconsistentSystemError",
    "InvariantError",
    "NumericInverseWarning",
]
