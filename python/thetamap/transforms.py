"""
Scalar transformations between free values and bounded parameter values.

Every non-fixed entry of a system matrix is produced by applying one of these
transformations to an element of psi.  The same four variants are used to map
an unconstrained optimizer value into a bounded element of theta.  They are
frozen dataclasses so two transformations built from the same bounds compare
equal, which is what lets the transformation registry be deduplicated.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union

import numpy as np

ArrayLike = Union[np.ndarray, float]


@dataclass(frozen=True)
class Identity:
    """Unit transformation, used when a value has no bounds."""

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return x

    def inverse(self, y: ArrayLike) -> ArrayLike:
        return y

    def derivative(self, x: ArrayLike) -> ArrayLike:
        return np.ones_like(np.asarray(x, dtype=float))

    @property
    def increasing(self) -> bool:
        return True


@dataclass(frozen=True)
class Exp:
    """Shifted exponential: maps the real line to ``(lower_bound, inf)``."""

    lower_bound: float

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return np.exp(x) + self.lower_bound

    def inverse(self, y: ArrayLike) -> ArrayLike:
        return np.log(np.asarray(y, dtype=float) - self.lower_bound)

    def derivative(self, x: ArrayLike) -> ArrayLike:
        return np.exp(x)

    @property
    def increasing(self) -> bool:
        return True


@dataclass(frozen=True)
class NegExp:
    """Negated shifted exponential: maps the real line to ``(-inf, upper_bound)``."""

    upper_bound: float

    def __call__(self, x: ArrayLike) -> ArrayLike:
        return self.upper_bound - np.exp(x)

    def inverse(self, y: ArrayLike) -> ArrayLike:
        return np.log(self.upper_bound - np.asarray(y, dtype=float))

    def derivative(self, x: ArrayLike) -> ArrayLike:
        return -np.exp(x)

    @property
    def increasing(self) -> bool:
        return False


@dataclass(frozen=True)
class Logistic:
    """Scaled logistic: maps the real line to ``(lower_bound, upper_bound)``."""

    lower_bound: float
    upper_bound: float

    @property
    def width(self) -> float:
        return self.upper_bound - self.lower_bound

    def __call__(self, x: ArrayLike) -> ArrayLike:
        with np.errstate(over="ignore"):
            return self.lower_bound + self.width / (1.0 + np.exp(-np.asarray(x, dtype=float)))

    def inverse(self, y: ArrayLike) -> ArrayLike:
        with np.errstate(divide="ignore"):
            return -np.log(self.width / (np.asarray(y, dtype=float) - self.lower_bound) - 1.0)

    def derivative(self, x: ArrayLike) -> ArrayLike:
        # Written in terms of exp(-|x|) so large arguments do not overflow.
        e = np.exp(-np.abs(np.asarray(x, dtype=float)))
        return self.width * e / (1.0 + e) ** 2

    @property
    def increasing(self) -> bool:
        return True


BoundedTransform = Union[Identity, Exp, NegExp, Logistic]


def bounded_transform(lower_bound: float, upper_bound: float) -> BoundedTransform:
    """
    Generate a restriction transformation from a lower and upper bound.

    Parameters
    ----------
    lower_bound, upper_bound:
        Bounds of the transformed value.  Infinite values mean unbounded.

    Returns
    -------
    BoundedTransform
        ``Logistic`` for two finite bounds, ``Exp`` for a lower bound only,
        ``NegExp`` for an upper bound only and ``Identity`` otherwise.
    """
    lower_bound = float(lower_bound)
    upper_bound = float(upper_bound)
    if lower_bound > upper_bound:
        raise ValueError(
            f"Lower bound {lower_bound} is greater than upper bound {upper_bound}."
        )

    if np.isfinite(lower_bound) and np.isfinite(upper_bound):
        return Logistic(lower_bound, upper_bound)
    if np.isfinite(lower_bound):
        return Exp(lower_bound)
    if np.isfinite(upper_bound):
        return NegExp(upper_bound)
    return Identity()


def image_bounds(transform: BoundedTransform, lower: float, upper: float) -> tuple:
    """Range of ``transform`` over the interval ``[lower, upper]``."""
    with np.errstate(over="ignore", invalid="ignore"):
        at_lower = float(transform(lower))
        at_upper = float(transform(upper))
    if transform.increasing:
        return at_lower, at_upper
    return at_upper, at_lower


__all__ = [
    "Identity",
    "Exp",
    "NegExp",
    "Logistic",
    "BoundedTransform",
    "bounded_transform",
    "image_bounds",
]
