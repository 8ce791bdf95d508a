"""
Deterministic likelihood: a single realisation compared against data.

For models without stochastic dynamics a particle filter is wasteful; the
likelihood is exact and equals the sum of compare_data over records.
"""

import numpy as np
from typing import Mapping, Optional, Sequence, Union

from .base import FilterBase, FilterResult
from ..models.generator import SystemGenerator
from ..simulation.system import OdeControl, System


class Unfilter(FilterBase):
    """
    Exact likelihood for deterministic systems.

    Same interface as ParticleFilter with a single particle per group and
    no random number streams.
    """

    n_particles = 1

    def __init__(
        self,
        generator: SystemGenerator,
        data,
        time_start: Optional[float] = None,
        n_groups: Optional[int] = None,
        dt: float = 1.0,
        ode_control: Optional[OdeControl] = None,
    ):
        if generator.is_stochastic:
            raise ValueError(
                "Unfilter requires a deterministic model; use ParticleFilter"
            )
        super().__init__(generator, data, time_start, n_groups, dt, ode_control)

    def run(
        self,
        pars: Union[Mapping, Sequence[Mapping]],
        save_trajectories: Union[bool, Sequence] = False,
        save_state: bool = False,
        save_snapshots: Optional[Sequence[float]] = None,
    ):
        """
        Run the model through the data and sum the log-densities.

        Returns:
            Log-likelihood (float, or [n_groups] array for grouped filters)
        """
        system = System(
            self.generator,
            self._group_pars(pars),
            n_particles=1,
            n_groups=self.n_groups,
            time=self.time_start,
            dt=self.dt,
            seed=0,
            ode_control=self.ode_control,
        )
        system.set_state_initial()
        T = len(self.data)
        index_state = self._index_state(save_trajectories)
        snapshot_idx = self._snapshot_index(save_snapshots)

        increments = np.zeros((self.n_groups, T))
        trajectories = None
        if index_state is not None:
            trajectories = np.empty((self.n_groups, 1, len(index_state), T))
        snapshots = []

        for k, (time, record) in enumerate(self.data):
            system.step_to(time)
            if any(name in record for name in self.generator.data_streams):
                ll = system.compare_data_groups(record)[:, 0]
                increments[:, k] = np.where(np.isnan(ll), -np.inf, ll)
            if trajectories is not None:
                trajectories[:, :, :, k] = system.particle_state[:, :, index_state]
            if k in snapshot_idx:
                snapshots.append(system.particle_state.copy())

        result = FilterResult(
            log_likelihood=increments.sum(axis=1),
            log_likelihood_increments=increments,
            trajectories=trajectories,
            index_state=index_state,
        )
        if save_state:
            result.state = system.particle_state.copy()
        if len(snapshot_idx) > 0:
            result.snapshots = np.stack(snapshots, axis=-1)
            result.snapshot_times = self.data.times[snapshot_idx]
        self.last_result = result
        return self._finish(result.log_likelihood)
