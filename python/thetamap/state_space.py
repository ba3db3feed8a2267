"""
State space model with known parameters.

``StateSpace`` is the concrete system produced by ``ThetaMap.theta2system``
and consumed by the filtering and likelihood code.  It is also used for the
integer index systems and the bound systems of a ``ThetaMap``, which share its
shapes and calendars.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional

import numpy as np

from .abstract_state_space import SYSTEM_PARAM, AbstractStateSpace, ArrayLike


class StateSpace(AbstractStateSpace):
    """
    State space model with known parameters.

    Parameters follow the MFSS constructor: ``Z, H, T, Q`` are required,
    everything else is optional.  Entries must be numeric; use
    :class:`~thetamap.state_space_estimation.StateSpaceEstimation` for
    systems with free or symbolic entries.
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
        a0: Optional[ArrayLike] = None,
        P0: Optional[ArrayLike] = None,
    ) -> None:
        super().__init__(Z, d, beta, H, T, c, gamma, R, Q)

        symbolic = [
            name for name in SYSTEM_PARAM if getattr(self, name).dtype == object
        ]
        if symbolic:
            raise TypeError(
                f"Parameters {', '.join(symbolic)} are not numeric; "
                "use StateSpaceEstimation for symbolic entries."
            )

        if a0 is not None:
            self.a0 = a0
        if P0 is not None:
            self.P0 = P0

        self.validate_state_space()

    @classmethod
    def from_parameters(
        cls,
        params: Mapping[str, np.ndarray],
        tau: Optional[Mapping[str, np.ndarray]] = None,
    ) -> "StateSpace":
        """
        Build a system from assembled parameter matrices.

        Parameters
        ----------
        params:
            The nine system matrices keyed by name.
        tau:
            Calendars of a time-varying system.  ``None`` for time-invariant
            systems.
        """
        if tau:
            params = {
                name: {f"{name}t": params[name], f"tau{name}": tau[name]}
                for name in SYSTEM_PARAM
            }
        return cls(
            params["Z"],
            params["H"],
            params["T"],
            params["Q"],
            d=params["d"],
            beta=params["beta"],
            c=params["c"],
            gamma=params["gamma"],
            R=params["R"],
        )


def set_all_parameters(
    system: AbstractStateSpace, value: float, dtype=float
) -> StateSpace:
    """
    Create a system shaped like ``system`` with every entry set to ``value``.

    Explicit initial conditions are carried over: ``a0`` and ``Q0`` are
    filled as well and the diffuse/finite split of the initial variance is
    kept.
    """
    params: Dict[str, np.ndarray] = {
        name: np.full(np.shape(system.get_parameter(name)), value, dtype=dtype)
        for name in SYSTEM_PARAM
    }
    tau = None if system.time_invariant else system.tau
    new = StateSpace.from_parameters(params, tau)

    if system.explicit_a0:
        new.a0 = np.full(system.a0.shape, value, dtype=dtype)
    if system.explicit_P0:
        new.set_initial_selectors(
            system._A0,
            system._R0,
            np.full((system._R0.shape[1],) * 2, value, dtype=dtype),
        )
    return new


__all__ = ["StateSpace", "set_all_parameters"]
