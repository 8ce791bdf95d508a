"""
Filters as Monty models.

The particle filter's density is a noisy estimate: every call consumes fresh
randomness from the filter's own streams, so two calls at the same
parameters return different values. Pass ``reproducible=True`` to restore
the streams before every call instead.
"""

import numpy as np
from typing import Optional, Sequence, Union

from .base import FilterBase
from .particle import ParticleFilter
from ..models.density import MontyModel, Observer
from ..models.packer import Packer


def _requested(value) -> bool:
    """Whether a save_* argument asks for anything (flags, names, indices or times)."""
    if value is None:
        return False
    if isinstance(value, (bool, np.bool_)):
        return bool(value)
    return len(value) > 0


def likelihood_model(
    filter: FilterBase,
    packer: Packer,
    save_trajectories: Union[bool, Sequence] = False,
    save_state: bool = False,
    save_snapshots: Optional[Sequence[float]] = None,
    domain: Optional[np.ndarray] = None,
    reproducible: bool = False,
) -> MontyModel:
    """
    Wrap a ParticleFilter or Unfilter as a MontyModel.

    When any artifact is saved, the model gets an observer reporting one
    particle per evaluation (chosen uniformly from the final, resampled
    particles):
        trajectories: [n_state_saved, n_times]
        state:        [n_state]
        snapshots:    [n_state, n_snapshots]

    Args:
        filter: ParticleFilter or Unfilter (ungrouped)
        packer: Maps the parameter vector to the filter's parameters
        save_trajectories, save_state, save_snapshots: Passed to run()
        domain: Box constraints for the parameter vector
        reproducible: Reset the filter's random streams before each call

    Returns:
        MontyModel
    """
    if filter.grouped:
        raise ValueError("likelihood_model requires an ungrouped filter")
    stochastic = isinstance(filter, ParticleFilter)
    saved = {"rng": filter.get_rng_state() if stochastic and reproducible else None}

    def reseed(seed):
        filter.reseed(seed)
        if saved["rng"] is not None:
            saved["rng"] = filter.get_rng_state()

    def density(x):
        if saved["rng"] is not None:
            filter.set_rng_state(saved["rng"])
        return filter.run(
            packer.unpack(x),
            save_trajectories=save_trajectories,
            save_state=save_state,
            save_snapshots=save_snapshots,
        )

    observer = None
    if _requested(save_trajectories) or _requested(save_state) or _requested(save_snapshots):
        def observe():
            n = filter.n_particles
            i = int(filter.rng_select.integers(n)) if stochastic and n > 1 else 0
            out = {}
            if _requested(save_trajectories):
                out["trajectories"] = filter.last_trajectories()[:, i]
            if _requested(save_state):
                out["state"] = filter.last_state()[:, i]
            if _requested(save_snapshots):
                out["snapshots"] = filter.last_snapshots()[:, i]
            return out
        observer = Observer(observe)

    return MontyModel(
        packer.names,
        density,
        domain=domain,
        observer=observer,
        is_stochastic=stochastic,
        get_rng_state=filter.get_rng_state if stochastic else None,
        set_rng_state=filter.set_rng_state if stochastic else None,
        reseed=reseed if stochastic else None,
    )
