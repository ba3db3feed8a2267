"""Exceptions and warnings raised by the parameter mapping."""

from __future__ import annotations


class ThetaMapError(ValueError):
    """Invalid input to a ThetaMap operation."""


class BoundViolationError(ThetaMapError):
    """A system value lies outside the bounds recorded for its position."""

    def __init__(self, side: str, parameters) -> None:
        self.side = side
        self.parameters = tuple(parameters)
        super().__init__(
            f"Parameter(s) in {', '.join(self.parameters)} violate {side} bound."
        )


class InconsistentSystemError(ThetaMapError):
    """Entries determined by the same element of psi imply different values."""


class InvariantError(ThetaMapError):
    """The index structure of a ThetaMap is no longer valid."""


class NumericInverseWarning(UserWarning):
    """The numeric inverse from psi to theta did not reach its tolerance."""


__all__ = [
    "ThetaMapError",
    "BoundViolationError",
    "InconsistentSystemError",
    "InvariantError",
    "NumericInverseWarning",
]
