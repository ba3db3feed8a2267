"""
Numeric inverse from psi to theta.

Elements of theta without a closed form inverse are recovered by nonlinear
least squares.  Elements of theta are codetermined when some element of psi
depends on both of them; codetermined elements are solved jointly, each
connected component of the theta/psi dependency graph on its own.
"""

from __future__ import annotations

import logging
import warnings
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy import optimize

from .errors import NumericInverseWarning
from .transforms import bounded_transform

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolverConfig:
    """
    Options for the numeric inverse.

    Attributes
    ----------
    max_function_evaluations:
        Evaluation budget per element of theta in a component.
    max_iterations:
        Upper limit on the evaluations of a single solve regardless of the
        component size.
    random_seed:
        Seed for the randomized starting values.  ``None`` draws fresh
        entropy on every call.
    n_restarts:
        Number of random starting values tried per component.  The best fit
        is kept; restarts stop early once a fit is within tolerance.
    residual_tolerance:
        Largest acceptable absolute error in psi before a
        ``NumericInverseWarning`` is issued.
    """

    max_function_evaluations: int = 10000
    max_iterations: int = 10000
    random_seed: Optional[int] = None
    n_restarts: int = 1
    residual_tolerance: float = 1e-4

    def __post_init__(self) -> None:
        if self.n_restarts < 1:
            raise ValueError("n_restarts must be at least 1.")
        if self.max_function_evaluations < 1 or self.max_iterations < 1:
            raise ValueError("Evaluation limits must be positive.")

    def evaluation_limit(self, n_theta: int) -> int:
        return int(min(self.max_function_evaluations * n_theta, self.max_iterations))


@dataclass(frozen=True)
class PsiDefinition:
    """
    Element of psi as a function of elements of theta.

    ``theta_indexes`` are 0-based positions in theta.  A ``function`` of
    ``None`` is the identity of a single element of theta.
    """

    theta_indexes: Tuple[int, ...]
    function: Optional[Callable[..., float]] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "theta_indexes", tuple(int(i) for i in self.theta_indexes))
        if self.function is None and len(self.theta_indexes) != 1:
            raise ValueError("Identity psi definitions take exactly one element of theta.")

    @property
    def identity(self) -> bool:
        return self.function is None

    def __call__(self, theta: np.ndarray) -> float:
        values = [theta[i] for i in self.theta_indexes]
        if self.function is None:
            return float(values[0])
        return float(self.function(*values))


@dataclass(frozen=True)
class PsiInverse:
    """
    Closed form inverse for an element of theta.

    The element equals ``function(psi[psi_index])``, or ``psi[psi_index]``
    itself when ``function`` is ``None``.
    """

    psi_index: int
    function: Optional[Callable[[float], float]] = None

    def __call__(self, psi: np.ndarray) -> float:
        value = psi[self.psi_index]
        if self.function is None:
            return float(value)
        return float(self.function(value))


def codetermined_components(
    psi_definitions: Sequence[PsiDefinition], unresolved: Sequence[int]
) -> List[List[int]]:
    """
    Group unresolved elements of theta into jointly determined sets.

    Two elements are linked when one element of psi depends on both.  The
    components are found by a breadth-first search over the bipartite
    theta/psi graph restricted to the unresolved elements.
    """
    unresolved_set = set(unresolved)
    theta_to_psi: Dict[int, List[int]] = {i: [] for i in unresolved}
    for iPsi, definition in enumerate(psi_definitions):
        for iTheta in definition.theta_indexes:
            if iTheta in unresolved_set:
                theta_to_psi[iTheta].append(iPsi)

    components: List[List[int]] = []
    visited = set()
    for start in sorted(unresolved_set):
        if start in visited:
            continue
        component = []
        queue = deque([start])
        visited.add(start)
        while queue:
            iTheta = queue.popleft()
            component.append(iTheta)
            for iPsi in theta_to_psi[iTheta]:
                for neighbour in psi_definitions[iPsi].theta_indexes:
                    if neighbour in unresolved_set and neighbour not in visited:
                        visited.add(neighbour)
                        queue.append(neighbour)
        components.append(sorted(component))
    return components


def solve_component(
    component: Sequence[int],
    psi_definitions: Sequence[PsiDefinition],
    psi: np.ndarray,
    theta: np.ndarray,
    lower_bound: np.ndarray,
    upper_bound: np.ndarray,
    config: SolverConfig,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Solve for one component of theta given the target psi values.

    ``theta`` holds the already recovered elements; they enter the psi
    functions as constants.  Returns the values of the component elements.
    """
    component = list(component)
    psi_inx = [
        iPsi
        for iPsi, definition in enumerate(psi_definitions)
        if any(i in component for i in definition.theta_indexes)
    ]
    target = psi[psi_inx]

    lower = lower_bound[component].astype(float)
    upper = upper_bound[component].astype(float)
    pinned = lower == upper
    free = ~pinned
    candidate = theta.copy()
    candidate[np.asarray(component)[pinned]] = lower[pinned]

    free_positions = np.asarray(component)[free]

    def psi_errors(values: np.ndarray) -> np.ndarray:
        candidate[free_positions] = values
        return np.array([psi_definitions[i](candidate) for i in psi_inx]) - target

    if not free.any():
        residual = psi_errors(np.zeros(0))
        _check_residual(component, residual, config)
        return candidate[component]

    starts = [bounded_transform(lo, hi) for lo, hi in zip(lower[free], upper[free])]
    best = None
    for iStart in range(config.n_restarts):
        draw = rng.standard_normal(len(starts))
        theta0 = np.array([trans(x) for trans, x in zip(starts, draw)], dtype=float)
        result = optimize.least_squares(
            psi_errors,
            theta0,
            bounds=(lower[free], upper[free]),
            max_nfev=config.evaluation_limit(len(starts)),
        )
        logger.debug(
            "Numeric inverse for theta %s, start %d: cost %.3g after %d evaluations.",
            component,
            iStart + 1,
            result.cost,
            result.nfev,
        )
        if best is None or result.cost < best.cost:
            best = result
        if np.all(np.abs(result.fun) <= config.residual_tolerance):
            break

    residual = psi_errors(best.x)
    _check_residual(component, residual, config)
    return candidate[component]


def _check_residual(component, residual: np.ndarray, config: SolverConfig) -> None:
    if np.any(~(np.abs(residual) <= config.residual_tolerance)):
        message = (
            f"Bad numeric inverse from psi to theta for elements {list(component)}: "
            f"max error {np.max(np.abs(residual)):.3g}."
        )
        logger.warning(message)
        warnings.warn(message, NumericInverseWarning, stacklevel=3)


__all__ = [
    "SolverConfig",
    "PsiDefinition",
    "PsiInverse",
    "codetermined_components",
    "solve_component",
]
