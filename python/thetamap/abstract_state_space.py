"""
Container for the coefficient matrices of a linear state space model.

The observation equation is described by ``Z, d, beta, H`` and the state
equation by ``T, c, gamma, R, Q``.  Any of them can vary over time: the
matrix then holds a stack of slices along its last axis and ``tau`` stores,
for each period, the (1-based) slice in use.  The measurement calendars have
``n`` entries, the state calendars ``n + 1``.

The same container holds numeric systems, the integer index systems used by
``ThetaMap`` and the bounds recorded for each matrix position, so no dtype is
forced on the stored arrays beyond turning numeric input into ``float``.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple, Union

import numpy as np

from .abstract_system import AbstractSystem


ArrayLike = Union[np.ndarray, float, int]

SYSTEM_PARAM: Tuple[str, ...] = ("Z", "d", "beta", "H", "T", "c", "gamma", "R", "Q")
MEASUREMENT_PARAM: Tuple[str, ...] = ("Z", "d", "beta", "H")
VECTOR_PARAM: Tuple[str, ...] = ("d", "c")
SYMMETRIC_PARAM: Tuple[str, ...] = ("H", "Q", "Q0")


def _as_column(vector: np.ndarray) -> np.ndarray:
    """Ensure ``vector`` is a 2D column array."""
    vector = np.asarray(vector)
    if vector.ndim == 1:
        return vector.reshape(-1, 1)
    return vector


def _as_parameter_array(value: ArrayLike) -> np.ndarray:
    """
    Convert a parameter to an array.

    Integer input (index systems) stays integer, object arrays that hold only
    numbers become ``float`` and object arrays with symbolic entries are kept
    as they are.
    """
    array = np.asarray(value)
    if array.dtype == object:
        try:
            return array.astype(float)
        except (TypeError, ValueError):
            return array
    if array.dtype.kind in "iub":
        return array.astype(int)
    return array.astype(float)


def _is_empty(value) -> bool:
    return value is None or (isinstance(value, (list, tuple)) and len(value) == 0)


def _calendar_offset(name: str) -> int:
    """State equation calendars carry one more period than the observations."""
    return 0 if name in MEASUREMENT_PARAM else 1


def slice_count(name: str, value: np.ndarray) -> int:
    """Number of time-varying slices stored in a parameter."""
    if name in VECTOR_PARAM or name == "a0":
        return value.shape[1]
    return value.shape[2] if value.ndim == 3 else 1


def lower_triangle_mask(shape: Tuple[int, ...]) -> np.ndarray:
    """Boolean mask of on-and-below diagonal elements of every slice."""
    base = np.tril(np.ones(shape[:2], dtype=bool))
    if len(shape) == 3:
        return np.repeat(base[:, :, np.newaxis], shape[2], axis=2)
    return base


def transpose_slices(matrix: np.ndarray) -> np.ndarray:
    """Transpose each slice of a matrix or a stack of matrices."""
    if matrix.ndim == 3:
        return matrix.transpose(1, 0, 2)
    return matrix.T


@dataclass
class AbstractStateSpace(AbstractSystem):
    """
    Abstract representation of a state space model.

    Matrices follow the MFSS naming convention:

    - ``Z, d, beta, H`` describe the observation equation
    - ``T, c, gamma, R, Q`` describe the state equation
    - ``tau`` stores the time-variation calendar for each matrix

    The initial state is ``a0`` and its variance is stored split into a
    diffuse part selected by ``A0`` and a finite part ``R0 @ Q0 @ R0.T``.
    """

    # Measurement equation parameters
    Z: Optional[np.ndarray] = None
    d: Optional[np.ndarray] = None
    beta: Optional[np.ndarray] = None
    H: Optional[np.ndarray] = None

    # State equation parameters
    T: Optional[np.ndarray] = None
    c: Optional[np.ndarray] = None
    gamma: Optional[np.ndarray] = None
    R: Optional[np.ndarray] = None
    Q: Optional[np.ndarray] = None

    # Calendar for time-varying parameters
    tau: Dict[str, np.ndarray] = field(default_factory=dict)

    # Internal storage for initial state
    _a0: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    _A0: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    _R0: Optional[np.ndarray] = field(default=None, init=False, repr=False)
    _Q0: Optional[np.ndarray] = field(default=None, init=False, repr=False)

    system_param: Tuple[str, ...] = SYSTEM_PARAM
    symmetric_params: Tuple[str, ...] = SYMMETRIC_PARAM

    def __init__(  # type: ignore[override]
        self,
        Z=None,
        d=None,
        beta=None,
        H=None,
        T=None,
        c=None,
        gamma=None,
        R=None,
        Q=None,
    ) -> None:
        super().__init__()

        # dataclass default values do not run when overriding __init__, so set
        # them manually.
        for name in SYSTEM_PARAM:
            setattr(self, name, None)
        self.tau = {}
        self._a0 = None
        self._A0 = None
        self._R0 = None
        self._Q0 = None

        if Z is None and d is None and beta is None and H is None:
            if any(item is not None for item in (T, c, gamma, R, Q)):
                raise ValueError(
                    "Observation equation parameters must be supplied together."
                )
            return

        parameters = self._interpret_constructor_args(
            Z, d, beta, H, T, c, gamma, R, Q
        )
        self.set_system_parameters(parameters)

    # ------------------------------------------------------------------
    # Dependent properties for initial state specification
    # ------------------------------------------------------------------
    @property
    def a0(self) -> Optional[np.ndarray]:
        return self._a0

    @a0.setter
    def a0(self, value: Optional[ArrayLike]) -> None:
        if value is None:
            self._a0 = None
            return

        value = _as_column(_as_parameter_array(value))
        if self.m is not None and value.shape != (self.m, 1):
            raise ValueError("a0 should be an m x 1 vector.")
        self._a0 = value

    @property
    def P0(self) -> Optional[np.ndarray]:
        if self._A0 is None or self._R0 is None or self._Q0 is None:
            return None
        diffuse = (self._A0 @ self._A0.T).astype(float)
        diffuse[diffuse != 0] = np.inf
        return diffuse + self._R0 @ self._Q0 @ self._R0.T

    @P0.setter
    def P0(self, value: Optional[ArrayLike]) -> None:
        if value is None:
            self._A0 = None
            self._R0 = None
            self._Q0 = None
            return

        if self.m is None:
            raise ValueError("State dimension (m) must be set before assigning P0.")

        matrix = np.asarray(value, dtype=float)
        if matrix.ndim == 0:
            matrix = np.eye(self.m) * float(matrix)
        elif matrix.ndim == 1:
            if matrix.size != self.m:
                raise ValueError("kappa vector must be length m.")
            matrix = np.diag(matrix)
        elif matrix.shape != (self.m, self.m):
            raise ValueError("P0 should be an m x m matrix.")

        diffuse = np.isinf(matrix).any(axis=1)
        select = np.eye(self.m)
        self._A0 = select[:, diffuse]
        self._R0 = select[:, ~diffuse]
        # Guard against the all-diffuse case where the submatrix can be empty.
        self._Q0 = matrix[~diffuse][:, ~diffuse]

    @property
    def Q0(self) -> Optional[np.ndarray]:
        return self._Q0

    @Q0.setter
    def Q0(self, value: Optional[ArrayLike]) -> None:
        if self._R0 is None:
            raise ValueError("Cannot set Q0 without first setting P0.")
        if value is None:
            self._Q0 = None
            return
        value = _as_parameter_array(value)
        expected = (self._R0.shape[1], self._R0.shape[1])
        if value.shape != expected:
            raise ValueError(f"Q0 should be a {expected[0]} x {expected[1]} matrix.")
        self._Q0 = value

    @property
    def A0(self) -> Optional[np.ndarray]:
        if self._A0 is None or self._A0.size == 0:
            return None
        return self._A0

    @property
    def R0(self) -> Optional[np.ndarray]:
        if self._R0 is None or self._R0.size == 0:
            return None
        return self._R0

    @property
    def explicit_a0(self) -> bool:
        """Whether the initial state mean is given rather than derived."""
        return self._a0 is not None

    @property
    def explicit_P0(self) -> bool:
        """Whether the initial state variance is given rather than derived."""
        return self._R0 is not None

    def set_initial_selectors(
        self, A0: np.ndarray, R0: np.ndarray, Q0: Optional[ArrayLike] = None
    ) -> None:
        """
        Set the diffuse/finite split of the initial variance directly.

        Used for index and bound systems whose ``Q0`` does not describe a
        variance and so cannot be derived from a ``P0`` matrix.
        """
        self._A0 = np.asarray(A0, dtype=float)
        self._R0 = np.asarray(R0, dtype=float)
        self._Q0 = None
        if Q0 is not None:
            self.Q0 = Q0

    # ------------------------------------------------------------------
    # Public utility methods
    # ------------------------------------------------------------------
    def get_parameter(self, name: str) -> Optional[np.ndarray]:
        if name not in SYSTEM_PARAM + ("a0", "Q0"):
            raise KeyError(f"Unknown parameter {name!r}.")
        return getattr(self, name)

    def set_parameter(self, name: str, value: ArrayLike) -> None:
        """Replace a parameter, keeping its shape."""
        current = self.get_parameter(name)
        value = _as_parameter_array(value)
        if current is not None and value.shape != current.shape:
            raise ValueError(
                f"{name} has invalid shape {value.shape}; expected {current.shape}."
            )
        setattr(self, name, value)

    def copy(self) -> "AbstractStateSpace":
        return copy.deepcopy(self)

    def validate_state_space(self) -> None:
        """
        Validate that all system matrices have consistent dimensions.
        """
        if self.p is None or self.m is None or self.g is None:
            raise ValueError("System dimensions (p, m, g) must be initialised.")

        expected = {
            "Z": (self.p, self.m),
            "d": (self.p,),
            "beta": (self.p, self.k or 0),
            "H": (self.p, self.p),
            "T": (self.m, self.m),
            "c": (self.m,),
            "gamma": (self.m, self.l or 0),
            "R": (self.m, self.g),
            "Q": (self.g, self.g),
        }

        for name, shape in expected.items():
            matrix = getattr(self, name)
            if matrix is None:
                raise ValueError(f"{name} matrix is not set.")
            if matrix.shape[: len(shape)] != shape or matrix.ndim > len(shape) + 1:
                raise ValueError(
                    f"{name} has invalid shape {matrix.shape}; expected {shape}."
                )
            if self.time_invariant:
                if slice_count(name, matrix) != 1:
                    raise ValueError(f"{name} varies over time in an invariant system.")
                continue

            calendar = self.tau[name]
            if len(calendar) != self.n + _calendar_offset(name):
                raise ValueError(f"tau{name} length does not match n.")
            if calendar.max() > slice_count(name, matrix):
                raise ValueError(
                    f"tau{name} refers to slice {calendar.max()} but {name} "
                    f"has {slice_count(name, matrix)}."
                )

        if self._a0 is not None and self._a0.shape != (self.m, 1):
            raise ValueError("a0 should be an m x 1 vector.")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _interpret_constructor_args(
        self,
        Z,
        d,
        beta,
        H,
        T,
        c,
        gamma,
        R,
        Q,
    ) -> Dict[str, ArrayLike]:
        """
        Handle the different constructor signatures: another system, a
        mapping of parameters or the nine matrices.
        """
        if isinstance(Z, AbstractStateSpace):
            return {key: getattr(Z, key) for key in SYSTEM_PARAM}

        if isinstance(Z, dict) and "Z" in Z and d is None and beta is None and H is None:
            missing = [name for name in ("Z", "H", "T", "Q") if name not in Z]
            if missing:
                raise ValueError(f"Missing parameters: {', '.join(missing)}")
            return {name: Z.get(name) for name in SYSTEM_PARAM}

        required = {"Z": Z, "H": H, "T": T, "Q": Q}
        missing = [name for name, item in required.items() if item is None]
        if missing:
            raise ValueError(f"Missing parameters: {', '.join(missing)}")
        return {
            "Z": Z,
            "d": d,
            "beta": beta,
            "H": H,
            "T": T,
            "c": c,
            "gamma": gamma,
            "R": R,
            "Q": Q,
        }

    def set_system_parameters(self, parameters: Dict[str, ArrayLike]) -> None:
        """
        Parse and assign system matrices.

        Time-varying parameters are passed as ``{"<name>t": slices,
        "tau<name>": calendar}`` mappings.  Vectors with several columns and
        matrices with several slices but no calendar vary every period.
        """
        self.time_invariant = True
        self.n = None
        self.tau = {}

        # Dimensions come from Z and Q; defaults for the optional parameters
        # depend on them.
        for name in ("Z", "H", "T", "Q", "d", "beta", "c", "gamma", "R"):
            self._assign_parameter(name, parameters.get(name))

        self.p, self.m = self.Z.shape[:2]
        self.g = self.Q.shape[0]
        self.k = self.beta.shape[1]
        self.l = self.gamma.shape[1]

        if not self.time_invariant:
            for name in SYSTEM_PARAM:
                if name not in self.tau:
                    self.tau[name] = np.ones(self.n + _calendar_offset(name), dtype=int)
            for name in SYSTEM_PARAM:
                if len(self.tau[name]) != self.n + _calendar_offset(name):
                    raise ValueError("Inconsistent tau dimensions after assignment.")

    def _assign_parameter(self, name: str, param) -> None:
        offset = _calendar_offset(name)

        if isinstance(param, dict):
            calendar = np.asarray(param[f"tau{name}"], dtype=int).reshape(-1)
            self.set_time_varying(len(calendar) - offset)
            self.tau[name] = calendar
            value = _as_parameter_array(param[f"{name}t"])
            if name in VECTOR_PARAM:
                value = _as_column(value)
        elif _is_empty(param):
            value = self._default_parameter(name)
        else:
            value = _as_parameter_array(param)
            if name in VECTOR_PARAM:
                value = _as_column(value)
            n_slices = slice_count(name, value)
            if n_slices > 1:
                self.set_time_varying(n_slices - offset)
                self.tau[name] = np.arange(1, n_slices + 1, dtype=int)

        setattr(self, name, value)

    def _default_parameter(self, name: str) -> np.ndarray:
        p = self.Z.shape[0] if self.Z is not None else None
        m = self.Z.shape[1] if self.Z is not None else None
        if name == "d":
            return np.zeros((p, 1))
        if name == "beta":
            return np.zeros((p, 0))
        if name == "c":
            return np.zeros((m, 1))
        if name == "gamma":
            return np.zeros((m, 0))
        if name == "R":
            g = self.Q.shape[0]
            if m != g:
                raise ValueError(
                    "Shock dimension does not match state dimension with no R specified."
                )
            return np.eye(m)
        raise ValueError(f"{name} must be specified.")

    def set_time_varying(self, n: int) -> None:
        """
        Set the time dimension for a time-varying system.
        """
        if self.time_invariant:
            self.time_invariant = False
            self.n = n
        elif self.n != n:
            raise ValueError("Time varying calendar length mismatch.")


__all__ = [
    "AbstractStateSpace",
    "SYSTEM_PARAM",
    "SYMMETRIC_PARAM",
    "lower_triangle_mask",
    "transpose_slices",
    "slice_count",
]
