"""
Executable system: particles x parameter groups of one model.

Public arrays use a state-first layout:
    state:       [n_state, n_particles(, n_groups)]
    simulate():  [n_state, n_particles(, n_groups), n_times]
The group axis is present only when parameters were given as a list (one
mapping per group) or ``n_groups`` was passed explicitly.
"""

import logging
import math
import warnings
import numpy as np
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Union
from joblib import Parallel, delayed
from scipy.integrate import solve_ivp

from ..errors import TimeOrderError
from ..models.generator import SystemGenerator
from ..utils.rng import RngStreams

logger = logging.getLogger(__name__)

# Times closer than this (relative to dt or the period) are treated as equal
TIME_TOLERANCE = 1e-8


@dataclass(frozen=True)
class OdeControl:
    """
    Adaptive step-size control for continuous-time systems.

    Attributes:
        method: scipy.integrate.solve_ivp method
        rtol, atol: Error tolerances
        max_step: Largest allowed step
        critical_times: Times the integrator must land on exactly
    """
    method: str = "RK45"
    rtol: float = 1e-6
    atol: float = 1e-6
    max_step: float = np.inf
    critical_times: Sequence[float] = ()


def _is_multiple(t: float, period: float) -> bool:
    r = t / period
    return abs(r - round(r)) < TIME_TOLERANCE


class System:
    """
    A model instance holding state for ``n_particles`` x ``n_groups``
    realisations, each particle owning one random number stream.

    Args:
        generator: SystemGenerator
        pars: Parameter mapping, or list of mappings (one per group)
        n_particles: Particles per group
        n_groups: Number of parameter groups (inferred from a list of pars)
        time: Initial time
        dt: Step size (discrete time only)
        seed: Root seed for the per-particle streams
        rng: Use these streams instead of creating from ``seed``
        ode_control: OdeControl (continuous time only)
        n_threads: Update particle blocks on this many threads
    """

    def __init__(
        self,
        generator: SystemGenerator,
        pars: Union[Mapping, Sequence[Mapping]],
        n_particles: int = 1,
        n_groups: Optional[int] = None,
        time: float = 0.0,
        dt: float = 1.0,
        seed: Optional[int] = None,
        rng: Optional[RngStreams] = None,
        ode_control: Optional[OdeControl] = None,
        n_threads: int = 1,
    ):
        if n_particles < 1:
            raise ValueError(f"n_particles must be at least 1 (given {n_particles})")
        if generator.time_type == "discrete" and not dt > 0:
            raise ValueError(f"dt must be positive (given {dt})")
        if generator.time_type == "continuous" and ode_control is None:
            ode_control = OdeControl()
        if generator.time_type == "discrete" and ode_control is not None:
            raise ValueError("ode_control is only valid for continuous-time systems")

        self.grouped = not isinstance(pars, Mapping) or n_groups is not None
        group_pars = self._expand_pars(pars, n_groups)

        self.generator = generator
        self.n_particles = int(n_particles)
        self.n_groups = len(group_pars)
        self.dt = float(dt)
        self.ode_control = ode_control
        self.n_threads = max(1, int(n_threads))
        self.time = float(time)
        self._pars = [generator.resolve_parameters(p) for p in group_pars]

        n_total = self.n_groups * self.n_particles
        if rng is None:
            rng = RngStreams(seed, n_total)
        elif rng.n_streams != n_total:
            raise ValueError(f"Expected {n_total} random streams, given {rng.n_streams}")
        self.rng = rng
        self._group_rng = [
            rng.subset(slice(g * self.n_particles, (g + 1) * self.n_particles))
            for g in range(self.n_groups)
        ]
        self._state = np.zeros((self.n_groups, self.n_particles, generator.n_state))

    @staticmethod
    def _expand_pars(pars, n_groups) -> List[Mapping]:
        if isinstance(pars, Mapping):
            return [pars] * (1 if n_groups is None else int(n_groups))
        pars = list(pars)
        if n_groups is not None and len(pars) != n_groups:
            raise ValueError(f"Expected {n_groups} parameter sets, given {len(pars)}")
        if len(pars) < 1:
            raise ValueError("At least one parameter set is required")
        return pars

    # -------------------------------------------------------------------------
    # State and parameters
    # -------------------------------------------------------------------------

    @property
    def n_state(self) -> int:
        return self.generator.n_state

    @property
    def particle_state(self) -> np.ndarray:
        """Internal [n_groups, n_particles, n_state] state (not a copy)."""
        return self._state

    @property
    def parameters(self) -> List[Dict]:
        return [dict(p) for p in self._pars]

    def _to_public(self, x: np.ndarray) -> np.ndarray:
        # [G, N, S, ...] -> [S, N, (G), ...]
        x = np.moveaxis(x, 2, 0)
        x = np.moveaxis(x, 2, 1)
        return x if self.grouped else x[:, :, 0]

    def _from_public(self, values) -> np.ndarray:
        values = np.asarray(values, dtype=np.float64)
        if values.ndim == 1:
            return np.broadcast_to(values, self._state.shape)
        if values.ndim == 2:
            # [S, N] shared by all groups
            return np.broadcast_to(values.T[np.newaxis], self._state.shape)
        return np.broadcast_to(np.moveaxis(values, 0, 2).transpose(1, 0, 2), self._state.shape)

    def state(self, index_state: Optional[Sequence[int]] = None) -> np.ndarray:
        """Current state, [n_state, n_particles(, n_groups)]."""
        x = self._to_public(self._state.copy())
        return x if index_state is None else x[np.asarray(index_state)]

    def set_state(self, values) -> None:
        """
        Overwrite state. ``values`` may be [n_state] (every particle),
        [n_state, n_particles] or the full [n_state, n_particles, n_groups].
        Time is unchanged.
        """
        try:
            self._state = np.array(self._from_public(values), dtype=np.float64)
        except ValueError:
            raise ValueError(
                f"Cannot set state of shape {np.shape(values)} on a system with "
                f"state shape {self.state().shape}"
            ) from None

    def set_state_initial(self) -> None:
        """Reset state to the model's initial conditions at the current time."""
        for g in range(self.n_groups):
            x0 = self.generator.initial(self.time, self._pars[g], self._group_rng[g])
            self._state[g] = np.broadcast_to(x0, self._state[g].shape)

    def set_time(self, time: float) -> None:
        """Set current time; may rewind. State is unchanged."""
        self.time = float(time)

    def update_parameters(self, pars: Union[Mapping, Sequence[Mapping]]) -> None:
        """Merge new parameter values into the existing parameter sets."""
        group_pars = self._expand_pars(pars, self.n_groups)
        if len(group_pars) != self.n_groups:
            raise ValueError(
                f"Expected {self.n_groups} parameter sets, given {len(group_pars)}"
            )
        self._pars = [
            self.generator.resolve_parameters({**old, **new})
            for old, new in zip(self._pars, group_pars)
        ]

    def reorder(self, index: np.ndarray) -> None:
        """Reorder particles within each group; ``index`` is [n_groups, n_particles]."""
        index = np.asarray(index)
        self._state = np.take_along_axis(self._state, index[:, :, np.newaxis], axis=1)

    def get_rng_state(self) -> list:
        return self.rng.get_state()

    def set_rng_state(self, state: list) -> None:
        self.rng.set_state(state)

    # -------------------------------------------------------------------------
    # Time stepping
    # -------------------------------------------------------------------------

    def _zero_periodic(self, time: float) -> None:
        for name, period in self.generator.zero_every.items():
            if _is_multiple(time, period):
                self._state[:, :, self.generator.index[name]] = 0.0

    def _update_group(self, g: int, time: float) -> None:
        update = self.generator.update
        pars = self._pars[g]
        if self.n_threads == 1 or self.n_particles < 2 * self.n_threads:
            self._state[g] = update(time, self.dt, self._state[g], pars, self._group_rng[g])
            return
        blocks = np.array_split(np.arange(self.n_particles), self.n_threads)

        def run_block(idx):
            sl = slice(idx[0], idx[-1] + 1)
            return sl, update(time, self.dt, self._state[g, sl], pars,
                              self._group_rng[g].subset(sl))

        results = Parallel(n_jobs=self.n_threads, backend="threading")(
            delayed(run_block)(idx) for idx in blocks
        )
        new = np.empty_like(self._state[g])
        for sl, x in results:
            new[sl] = x
        self._state[g] = new

    def _step_discrete(self, time: float) -> None:
        t0 = self.time
        n_steps = math.ceil((time - t0) / self.dt - TIME_TOLERANCE)
        for i in range(n_steps):
            t = t0 + i * self.dt
            self._zero_periodic(t)
            for g in range(self.n_groups):
                self._update_group(g, t)
            self.time = t0 + (i + 1) * self.dt

    def _deriv_flat(self, t: float, y: np.ndarray) -> np.ndarray:
        x = y.reshape(self._state.shape)
        out = np.empty_like(x)
        for g in range(self.n_groups):
            out[g] = self.generator.deriv(t, x[g], self._pars[g])
        return out.ravel()

    def _breakpoints(self, t0: float, t1: float) -> List[float]:
        points = [t for t in self.ode_control.critical_times if t0 < t < t1]
        for period in self.generator.zero_every.values():
            k = math.floor(t0 / period + TIME_TOLERANCE) + 1
            while k * period < t1 - TIME_TOLERANCE:
                points.append(k * period)
                k += 1
        return sorted(set(points)) + [t1]

    def _step_continuous(self, time: float) -> None:
        ctl = self.ode_control
        for t_end in self._breakpoints(self.time, time):
            self._zero_periodic(self.time)
            if t_end - self.time <= 0:
                continue
            sol = solve_ivp(
                self._deriv_flat, (self.time, t_end), self._state.ravel(),
                method=ctl.method, rtol=ctl.rtol, atol=ctl.atol,
                max_step=ctl.max_step, t_eval=[t_end],
            )
            if not sol.success:
                warnings.warn(
                    f"ODE integration failed between t={self.time} and t={t_end}: "
                    f"{sol.message}",
                    RuntimeWarning,
                )
                self._state[:] = np.nan
            else:
                self._state = sol.y[:, -1].reshape(self._state.shape)
            self.time = t_end

    def step_to(self, time: float) -> None:
        """
        Advance every particle to ``time``.

        Discrete systems take ceil((time - now) / dt) steps; continuous
        systems integrate, landing exactly on critical times and on
        multiples of reset periods.
        """
        time = float(time)
        if time < self.time - TIME_TOLERANCE:
            raise TimeOrderError(
                f"Cannot step backwards from time {self.time} to {time}; "
                "use set_time() to rewind"
            )
        if self.generator.time_type == "discrete":
            self._step_discrete(time)
        else:
            self._step_continuous(time)

    def simulate(
        self,
        times: Sequence[float],
        index_state: Optional[Sequence[int]] = None,
    ) -> np.ndarray:
        """
        Step through ``times``, recording state at each.

        Args:
            times: Increasing times, the first no earlier than now
            index_state: Optional subset of state indices to record

        Returns:
            [n_state, n_particles(, n_groups), n_times]
        """
        times = np.atleast_1d(np.asarray(times, dtype=np.float64))
        if times[0] < self.time - TIME_TOLERANCE:
            raise TimeOrderError(
                f"First time ({times[0]}) is before the current time ({self.time})"
            )
        if np.any(np.diff(times) <= 0):
            raise TimeOrderError("times must be strictly increasing")
        idx = np.arange(self.n_state) if index_state is None else np.asarray(index_state)
        out = np.empty((self.n_groups, self.n_particles, len(idx), len(times)))
        for k, t in enumerate(times):
            self.step_to(t)
            out[:, :, :, k] = self._state[:, :, idx]
        return self._to_public(out)

    # -------------------------------------------------------------------------
    # Comparison to data
    # -------------------------------------------------------------------------

    def _compare_group(self, g: int, data: Mapping[str, float]) -> np.ndarray:
        ll = np.zeros(self.n_particles)
        for name, compare in self.generator.compare.items():
            value = data.get(name)
            if value is None or np.all(np.isnan(value)):
                continue
            ll = ll + compare(self.time, self._state[g], value, self._pars[g])
        return ll

    def compare_data_groups(self, data: Mapping[str, float]) -> np.ndarray:
        """Per-particle log-density, [n_groups, n_particles]."""
        if not self.generator.has_compare:
            raise ValueError("This model has no compare functions")
        unknown = set(data) - set(self.generator.data_streams) - {"time"}
        if unknown:
            logger.debug("Ignoring data columns not used by the model: %s", sorted(unknown))
        return np.stack([self._compare_group(g, data) for g in range(self.n_groups)])

    def compare_data(self, data: Mapping[str, float]) -> np.ndarray:
        """
        Log-density of one data record for each particle, summed over data
        streams. Missing streams (None/NaN) are skipped.

        Returns:
            [n_particles(, n_groups)]
        """
        ll = self.compare_data_groups(data)
        return ll.T if self.grouped else ll[0]

    def __repr__(self) -> str:
        return (
            f"System({self.generator.time_type}, n_particles={self.n_particles}, "
            f"n_groups={self.n_groups}, time={self.time})"
        )
