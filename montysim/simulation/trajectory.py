"""
Trajectory simulation and storage.
"""

import numpy as np
from dataclasses import dataclass
from typing import Dict, Mapping, Optional, Sequence, Tuple, Union

from ..errors import UnknownNameError
from ..models.generator import SystemGenerator
from .system import OdeControl, System


@dataclass
class Trajectory:
    """
    Container for simulated system state over time.

    Attributes:
        times: [T] Output times
        states: [n_state, n_particles(, n_groups), T] Recorded state
        names: One name per recorded state row ("S", "x[1]", ...)
    """
    times: np.ndarray
    states: np.ndarray
    names: Tuple[str, ...]

    @property
    def T(self) -> int:
        """Number of output times."""
        return len(self.times)

    @property
    def n_state(self) -> int:
        return self.states.shape[0]

    def __getitem__(self, name: str) -> np.ndarray:
        """
        Rows of one variable. Scalars lose the state axis; arrays keep one
        row per element.
        """
        if name in self.names:
            return self.states[self.names.index(name)]
        rows = [i for i, n in enumerate(self.names) if n.startswith(name + "[")]
        if not rows:
            raise UnknownNameError(f"No recorded state variable '{name}'")
        return self.states[rows]

    def subset(self, start: int, end: int) -> "Trajectory":
        """
        Extract a range of output times.

        Args:
            start: Start time index (inclusive)
            end: End time index (exclusive)
        """
        return Trajectory(
            times=self.times[start:end].copy(),
            states=self.states[..., start:end].copy(),
            names=self.names,
        )

    def save(self, path: str):
        """Save trajectory to .npz file."""
        np.savez(
            path,
            times=self.times,
            states=self.states,
            names=np.array(self.names, dtype=str),
        )

    @classmethod
    def load(cls, path: str) -> "Trajectory":
        """Load trajectory from .npz file."""
        with np.load(path, allow_pickle=False) as data:
            return cls(
                times=data["times"],
                states=data["states"],
                names=tuple(str(n) for n in data["names"]),
            )


def simulate(
    generator: SystemGenerator,
    pars: Union[Mapping, Sequence[Mapping]],
    times: Sequence[float],
    n_particles: int = 1,
    time_start: Optional[float] = None,
    dt: float = 1.0,
    seed: Optional[int] = None,
    state_names: Optional[Sequence[str]] = None,
    ode_control: Optional[OdeControl] = None,
) -> Trajectory:
    """
    Simulate a system from its initial conditions.

    Args:
        generator: SystemGenerator
        pars: Parameter mapping, or one per group
        times: Increasing output times
        n_particles: Independent realisations per group
        time_start: Time of the initial conditions (default times[0])
        dt: Step size for discrete-time models
        seed: Random seed
        state_names: Variables to record (default all)
        ode_control: Integration control for continuous-time models

    Returns:
        Trajectory object
    """
    times = np.atleast_1d(np.asarray(times, dtype=np.float64))
    system = System(
        generator,
        pars,
        n_particles=n_particles,
        time=times[0] if time_start is None else time_start,
        dt=dt,
        seed=seed,
        ode_control=ode_control,
    )
    system.set_state_initial()
    index = generator.state_index(state_names)
    all_names = generator.element_names()
    return Trajectory(
        times=times,
        states=system.simulate(times, index_state=index),
        names=tuple(all_names[i] for i in index),
    )


def final_state(trajectory: Trajectory, generator: SystemGenerator) -> Dict[str, np.ndarray]:
    """Named variables at the last output time (requires all states recorded)."""
    return generator.unpack_state(trajectory.states[..., -1], axis=0)
