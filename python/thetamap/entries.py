"""
Definitions of individual entries of a system being estimated.

An entry of a ``StateSpaceEstimation`` is either a known literal, a free
variable (anonymous when it was given as ``nan``, named otherwise) or an
expression in one or more named free variables.  Named variables become
elements of theta; each distinct free variable or expression becomes an
element of psi.

Expressions are usually written with sympy.  ``Expression.from_sympy`` builds
a numeric evaluator with ``lambdify`` and, when the expression depends on a
single variable and has exactly one solution, a closed form inverse.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Tuple, Union

import numpy as np
import sympy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Literal:
    """A known value."""

    value: float


@dataclass(frozen=True)
class FreeVariable:
    """A value determined by a single element of theta.

    ``name`` is ``None`` for anonymous variables (``nan`` entries); every
    anonymous entry gets its own element of theta.
    """

    name: Optional[str] = None

    @property
    def anonymous(self) -> bool:
        return self.name is None


@dataclass(frozen=True)
class Expression:
    """
    A value computed from several named free variables.

    Parameters
    ----------
    variables:
        Names of the free variables, in the order ``evaluator`` takes them.
    evaluator:
        Function of ``len(variables)`` scalars returning the entry value.
    inverse:
        Optional closed form inverse for single-variable expressions, mapping
        the entry value back to the variable.  Without it the variable is
        recovered numerically.
    key:
        Identity used to decide if two entries share the same element of psi.
        Defaults to the evaluator itself.
    """

    variables: Tuple[str, ...]
    evaluator: Callable[..., float] = field(compare=False)
    inverse: Optional[Callable[[float], float]] = field(default=None, compare=False)
    key: Any = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "variables", tuple(self.variables))
        if not self.variables:
            raise ValueError("An expression must depend on at least one variable.")
        if self.inverse is not None and len(self.variables) != 1:
            raise ValueError("Closed form inverses need a single-variable expression.")
        if self.key is None:
            object.__setattr__(self, "key", self.evaluator)

    def __call__(self, *values: float) -> float:
        return float(self.evaluator(*values))

    @classmethod
    def from_sympy(cls, expr: sympy.Expr) -> "Expression":
        symbols = sorted(expr.free_symbols, key=lambda s: s.name)
        evaluator = sympy.lambdify(symbols, expr, "numpy")
        inverse = None
        if len(symbols) == 1:
            inverse = _closed_form_inverse(expr, symbols[0])
        return cls(
            variables=tuple(s.name for s in symbols),
            evaluator=evaluator,
            inverse=inverse,
            key=expr,
        )


Entry = Union[Literal, FreeVariable, Expression]


def _closed_form_inverse(expr: sympy.Expr, symbol: sympy.Symbol):
    target = sympy.Dummy("value")
    try:
        solutions = sympy.solve(sympy.Eq(expr, target), symbol)
    except NotImplementedError:
        solutions = []
    if len(solutions) != 1:
        logger.debug("No unique closed form inverse for %s; using numeric inverse.", expr)
        return None
    return sympy.lambdify(target, solutions[0], "numpy")


def classify_entry(value: Any) -> Entry:
    """
    Convert a raw entry of an estimation system to its tagged definition.

    ``nan`` becomes an anonymous ``FreeVariable``; sympy symbols become named
    free variables and other sympy expressions with free symbols become
    ``Expression`` objects.  Numbers (including constant sympy expressions)
    are literals.
    """
    if isinstance(value, (Literal, FreeVariable, Expression)):
        return value
    if isinstance(value, sympy.Basic):
        if not value.free_symbols:
            return Literal(float(value))
        if isinstance(value, sympy.Symbol):
            return FreeVariable(value.name)
        return Expression.from_sympy(value)
    if isinstance(value, (int, float, np.integer, np.floating)):
        if np.isnan(value):
            return FreeVariable()
        return Literal(float(value))
    raise TypeError(f"Cannot interpret {value!r} as a system entry.")


def classify_entries(values: np.ndarray) -> np.ndarray:
    """Classify every element of an array, keeping its shape."""
    values = np.asarray(values)
    classified = np.empty(values.shape, dtype=object)
    for position, value in np.ndenumerate(values):
        classified[position] = classify_entry(value)
    return classified


def is_free(entry: Entry) -> bool:
    return not isinstance(entry, Literal)


__all__ = [
    "Literal",
    "FreeVariable",
    "Expression",
    "Entry",
    "classify_entry",
    "classify_entries",
    "is_free",
]
