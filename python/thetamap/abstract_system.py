"""
Dimension bookkeeping shared by every object describing a state space system.

Coefficient systems, the integer index systems used by the parameter mapping
and the mapping itself all carry the same set of dimensions.  Keeping the
checks in one base class means a system built from a ``ThetaMap`` can be
compared against the map that produced it without knowing its concrete type.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np


@dataclass
class AbstractSystem:
    """
    Base class for systems containing measurements and states.

    Dimensions (`p`, `m`, `g`, `k`, `l`) are initialised to ``None`` and are
    filled in by subclasses once system matrices are available.
    """

    p: Optional[int] = None  # Number of observed series
    m: Optional[int] = None  # Number of states
    g: Optional[int] = None  # Number of shocks
    k: Optional[int] = None  # Number of exogenous measurement series
    l: Optional[int] = None  # Number of exogenous state series

    # Time handling
    time_invariant: bool = True
    n: Optional[int] = None  # Number of observed time periods (used for TVP models)

    def check_conforming_system(self, system: "AbstractSystem") -> bool:
        """
        Check if the dimensions of another system match the current object.

        Parameters
        ----------
        system:
            Another instance inheriting from :class:`AbstractSystem`.

        Returns
        -------
        bool
            ``True`` when all dimension checks pass.  ``ValueError`` is raised
            upon the first mismatch.
        """

        if not isinstance(system, AbstractSystem):
            raise TypeError("System must inherit from AbstractSystem.")

        def _assert_equal(name: str, lhs: Optional[int], rhs: Optional[int]) -> None:
            if lhs is None or rhs is None:
                return
            if lhs != rhs:
                raise ValueError(f"{name} dimension mismatch: {lhs} != {rhs}")

        _assert_equal("p", self.p, system.p)
        _assert_equal("m", self.m, system.m)
        _assert_equal("g", self.g, system.g)
        _assert_equal("k", self.k, system.k)
        _assert_equal("l", self.l, system.l)

        if self.time_invariant != system.time_invariant:
            raise ValueError("Mismatch in time varying parameter usage.")

        if not self.time_invariant:
            _assert_equal("n", self.n, system.n)

        return True

    def copy_dimensions(self, system: "AbstractSystem") -> None:
        """Take over the dimensions and time variation of ``system``."""
        self.p = system.p
        self.m = system.m
        self.g = system.g
        self.k = system.k
        self.l = system.l
        self.time_invariant = system.time_invariant
        self.n = system.n

    @staticmethod
    def enforce_symmetric(matrix: np.ndarray) -> np.ndarray:
        """
        Force a matrix (or a stack of matrices along the last axis) to be
        symmetric.

        Parameters
        ----------
        matrix:
            Input matrix, typically a covariance matrix that accumulated
            numerical noise.

        Returns
        -------
        numpy.ndarray
            Symmetric part ``0.5 * (matrix + matrix.T)`` of every slice.
        """
        if not isinstance(matrix, np.ndarray):
            raise TypeError("matrix must be a numpy array.")
        if matrix.ndim == 3:
            return 0.5 * (matrix + matrix.transpose(1, 0, 2))
        return 0.5 * (matrix + matrix.T)


__all__ = ["AbstractSystem"]
