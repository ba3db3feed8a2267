"""
State space model with unknown parameters.

Entries to be estimated are marked with ``nan`` (each one an independent
parameter), with a sympy symbol (shared by every entry using it) or with an
expression of several symbols.  ``ThetaMap.from_estimation`` turns such a
system into a mapping from a vector of free parameters to ``StateSpace``
objects.
"""

from __future__ import annotations

from typing import List

import numpy as np

from .abstract_state_space import SYSTEM_PARAM, AbstractStateSpace, transpose_slices
from .entries import Expression, FreeVariable, classify_entries, is_free


class StateSpaceEstimation(AbstractStateSpace):
    """
    State space model with free entries.

    Parameters mirror :class:`~thetamap.state_space.StateSpace`.  ``a0`` and
    ``P0`` may contain ``nan`` for elements to estimate; supplying them makes
    the initial conditions explicit rather than derived from the system.
    """

    def __init__(
        self,
        Z,
        H,
        T,
        Q,
        *,
        d=None,
        beta=None,
        c=None,
        gamma=None,
        R=None,
        a0=None,
        P0=None,
    ) -> None:
        super().__init__(Z, d, beta, H, T, c, gamma, R, Q)

        if a0 is not None:
            self.a0 = a0
        if P0 is not None:
            self.P0 = P0

        self.validate_state_space()
        self._entries = {name: classify_entries(getattr(self, name)) for name in SYSTEM_PARAM}

        for name in ("H", "Q"):
            entries = self._entries[name]
            mirrored = transpose_slices(entries)
            free = np.vectorize(is_free, otypes=[bool])(entries)
            if not np.array_equal(free, transpose_slices(free)):
                raise ValueError(f"Free elements of {name} must be symmetric.")
            # Mirrored free elements must share their definition
            for position in zip(*np.nonzero(free)):
                if entries[position] != mirrored[position]:
                    row, col = int(position[0]), int(position[1])
                    raise ValueError(
                        f"Elements ({row}, {col}) and ({col}, {row}) of {name} "
                        "must be the same variable or expression."
                    )
        if self.Q0 is not None:
            free = np.isnan(self.Q0)
            if not np.array_equal(free, free.T):
                raise ValueError("Free elements of P0 must be symmetric.")

    def entries(self, name: str) -> np.ndarray:
        """Tagged definitions of every element of a parameter."""
        if name in SYSTEM_PARAM:
            return self._entries[name]
        value = self.get_parameter(name)
        if value is None:
            raise ValueError(f"{name} is not explicitly specified.")
        return classify_entries(value)

    def free_variable_names(self) -> List[str]:
        """Sorted names of the symbolic variables used anywhere in the system."""
        names = set()
        for entries in self._entries.values():
            for entry in entries.flat:
                names.update(_variable_names(entry))
        return sorted(names)


def _variable_names(entry) -> tuple:
    if isinstance(entry, Expression):
        return entry.variables
    if isinstance(entry, FreeVariable) and not entry.anonymous:
        return (entry.name,)
    return ()


__all__ = ["StateSpaceEstimation"]
