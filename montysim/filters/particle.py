"""
Bootstrap particle filter for System models.

Per data record:
    1. Advance all particles to the record time
    2. Score each particle against the record (compare_data)
    3. Add log(mean(exp(score))) to the marginal log-likelihood
    4. Resample ancestors with a single systematic draw from the group's
       dedicated resampling stream
    5. Reorder particle state

Trajectories are rebuilt after the run by replaying the stored ancestor
indices backwards, so saved history only contains surviving lineages.
"""

import logging
import warnings
import numpy as np
from typing import Literal, Mapping, Optional, Sequence, Union

from .base import FilterBase, FilterResult
from ..errors import DegenerateFilterError
from ..models.generator import SystemGenerator
from ..simulation.system import OdeControl, System
from ..utils.resampling import (
    effective_sample_size,
    get_resampler,
    normalize_log_weights,
)
from ..utils.rng import RngStreams

logger = logging.getLogger(__name__)


class ParticleFilter(FilterBase):
    """
    Bootstrap Particle Filter (Sequential Importance Resampling).

    Uses the model's own dynamics as the proposal distribution and
    resamples at every record that carries data.

    Args:
        generator: SystemGenerator with compare functions
        data: Observation data (see prepare_data)
        time_start: Time the system starts from
        n_particles: Particles per group
        n_groups: Number of parameter groups (None for a single, ungrouped set)
        dt: Step size for discrete-time models
        seed: Root seed; particle and resampling streams are split from it
        resample_method: Resampling algorithm
        ode_control: Integration control for continuous-time models
        n_threads: Threads used to update particle blocks
    """

    def __init__(
        self,
        generator: SystemGenerator,
        data,
        time_start: Optional[float] = None,
        n_particles: int = 100,
        n_groups: Optional[int] = None,
        dt: float = 1.0,
        seed: Optional[int] = None,
        resample_method: Literal["systematic", "stratified", "multinomial", "residual"] = "systematic",
        ode_control: Optional[OdeControl] = None,
        n_threads: int = 1,
    ):
        super().__init__(generator, data, time_start, n_groups, dt, ode_control)
        if n_particles < 1:
            raise ValueError(f"n_particles must be at least 1 (given {n_particles})")
        self.n_particles = int(n_particles)
        self.resample_method = resample_method
        self._resample = get_resampler(resample_method)
        self.n_threads = n_threads
        self.reseed(seed)

    def reseed(self, seed) -> None:
        """Replace all random streams with fresh ones derived from ``seed``."""
        root = RngStreams(seed, 3)
        self.rng_system = root.split(self.n_groups * self.n_particles, 0)
        self.rng_resample = root.split(self.n_groups, 1)
        # used by observers to pick a particle to report
        self.rng_select = root.split(1, 2).generator(0)

    def get_rng_state(self) -> dict:
        return {
            "system": self.rng_system.get_state(),
            "resample": self.rng_resample.get_state(),
            "select": self.rng_select.bit_generator.state,
        }

    def set_rng_state(self, state: dict) -> None:
        self.rng_system.set_state(state["system"])
        self.rng_resample.set_state(state["resample"])
        self.rng_select.bit_generator.state = state["select"]

    def _make_system(self, pars) -> System:
        system = System(
            self.generator,
            self._group_pars(pars),
            n_particles=self.n_particles,
            n_groups=self.n_groups,
            time=self.time_start,
            dt=self.dt,
            rng=self.rng_system,
            ode_control=self.ode_control,
            n_threads=self.n_threads,
        )
        system.set_state_initial()
        return system

    def run(
        self,
        pars: Union[Mapping, Sequence[Mapping]],
        save_trajectories: Union[bool, Sequence] = False,
        save_state: bool = False,
        save_snapshots: Optional[Sequence[float]] = None,
    ):
        """
        Run the filter and estimate the marginal log-likelihood.

        Args:
            pars: Parameter mapping, or one per group
            save_trajectories: True, False, or state names/indices to save
            save_state: Save the final particle state
            save_snapshots: Data times at which to save the full state

        Returns:
            Log-likelihood (float, or [n_groups] array for grouped filters);
            -inf if every particle was impossible at some record
        """
        system = self._make_system(pars)
        G, N = self.n_groups, self.n_particles
        T = len(self.data)
        index_state = self._index_state(save_trajectories)
        snapshot_idx = self._snapshot_index(save_snapshots)
        keep_history = index_state is not None or len(snapshot_idx) > 0

        ll = np.zeros(G)
        increments = np.zeros((G, T))
        ess = np.full((G, T), np.nan)
        resampled = np.zeros((G, T), dtype=bool)
        alive = np.ones(G, dtype=bool)
        identity = np.tile(np.arange(N), (G, 1))

        history_index = []
        history_state = []
        snapshot_state = {}

        for k, (time, record) in enumerate(self.data):
            system.step_to(time)
            index = identity.copy()
            has_data = any(name in record for name in self.generator.data_streams)

            if has_data:
                log_w = system.compare_data_groups(record)
                log_w = np.where(np.isnan(log_w), -np.inf, log_w)
                for g in np.flatnonzero(alive):
                    weights, log_sum = normalize_log_weights(log_w[g])
                    increments[g, k] = log_sum - np.log(N)
                    if not np.isfinite(increments[g, k]):
                        alive[g] = False
                        ll[g] = -np.inf
                        warnings.warn(
                            f"All particles have zero likelihood at time {time}"
                            + (f" (group {g})" if self.grouped else ""),
                            DegenerateFilterError,
                        )
                        continue
                    ll[g] += increments[g, k]
                    ess[g, k] = effective_sample_size(weights)
                    index[g] = self._resample(weights, self.rng_resample.generator(g))
                    resampled[g, k] = True
                increments[~alive, k] = -np.inf

            if keep_history:
                history_index.append(index)
                if index_state is not None:
                    history_state.append(system.particle_state[:, :, index_state].copy())
                if k in snapshot_idx:
                    snapshot_state[k] = system.particle_state.copy()

            system.reorder(index)

            if not alive.any():
                increments[:, k + 1:] = -np.inf
                logger.debug("Filter degenerate at time %s; skipping remaining data", time)
                break

        result = FilterResult(
            log_likelihood=ll,
            log_likelihood_increments=increments,
            ess=ess,
            resampled=resampled,
            index_state=index_state,
        )
        if keep_history:
            self._replay(result, history_index, history_state, snapshot_state,
                         snapshot_idx, index_state)
        if save_state:
            result.state = system.particle_state.copy()
        self.last_result = result
        return self._finish(ll)

    def _replay(self, result, history_index, history_state, snapshot_state,
                snapshot_idx, index_state):
        """Trace ancestry backwards so saved history follows surviving lineages."""
        G, N = self.n_groups, self.n_particles
        T = len(self.data)
        if index_state is not None:
            result.trajectories = np.full((G, N, len(index_state), T), np.nan)
        if len(snapshot_idx) > 0:
            result.snapshots = np.full((G, N, self.generator.n_state, len(snapshot_idx)), np.nan)
            result.snapshot_times = self.data.times[snapshot_idx]

        pos = np.tile(np.arange(N), (G, 1))
        for k in reversed(range(len(history_index))):
            ancestor = np.take_along_axis(history_index[k], pos, axis=1)
            if index_state is not None:
                result.trajectories[:, :, :, k] = np.take_along_axis(
                    history_state[k], ancestor[:, :, np.newaxis], axis=1
                )
            if k in snapshot_state:
                j = int(np.flatnonzero(snapshot_idx == k)[0])
                result.snapshots[:, :, :, j] = np.take_along_axis(
                    snapshot_state[k], ancestor[:, :, np.newaxis], axis=1
                )
            pos = ancestor

    def __repr__(self) -> str:
        return (
            f"ParticleFilter(n_particles={self.n_particles}, "
            f"n_groups={self.n_groups}, n_data={len(self.data)})"
        )
