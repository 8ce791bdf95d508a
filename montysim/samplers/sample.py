"""
Run MCMC chains.

Chain i draws from stream i of a root RngStreams split off the seed, and a
stochastic model is reseeded with a second, chain-specific stream before
the chain starts. No random state is shared between chains, so the output
is the same whichever runner executes them.
"""

import copy
import logging
import time as timer
import numpy as np
from numpy.random import Generator
from typing import Dict, Optional

from .base import ChainState, Sampler
from .runner import SerialRunner
from .samples import Samples
from ..models.density import MontyModel
from ..utils.rng import RngStreams

logger = logging.getLogger(__name__)


def _run_chain(
    model: MontyModel,
    sampler: Sampler,
    n_steps: int,
    chain: int,
    rng: Generator,
    pars: Optional[np.ndarray] = None,
    model_seed=None,
    restart: Optional[Dict] = None,
) -> Dict:
    """Run one chain; module level so that it can be sent to worker processes."""
    if restart is None:
        sampler = copy.deepcopy(sampler)
        model.reseed(model_seed)
        state = sampler.initialise(pars, model, rng)
    else:
        sampler = restart["sampler"]
        state = restart["state"]
        rng = restart["rng"]
        if restart["model_rng_state"] is not None:
            model.set_rng_state(restart["model_rng_state"])

    t0 = timer.perf_counter()
    out_pars = np.empty((model.n_pars, n_steps))
    out_density = np.empty(n_steps)
    observations = []
    for i in range(n_steps):
        state = sampler.step(state, model, rng)
        out_pars[:, i] = state.pars
        out_density[i] = state.density
        if model.observer is not None:
            observations.append(state.observation)

    details = sampler.details()
    logger.debug(
        "Chain %d finished %d steps in %.2fs (acceptance rate %.3f, %d failed)",
        chain, n_steps, timer.perf_counter() - t0,
        details["acceptance_rate"], details["n_failed"],
    )
    return {
        "pars": out_pars,
        "density": out_density,
        "observations": observations,
        "details": details,
        "restart": {
            "sampler": sampler,
            "state": ChainState(state.pars.copy(), state.density, state.observation),
            "rng": rng,
            "model_rng_state": model.get_rng_state() if model.is_stochastic else None,
        },
    }


def _initial(model: MontyModel, initial, n_chains: int, rngs: RngStreams) -> np.ndarray:
    if initial is None:
        if not model.properties.has_direct_sample:
            raise ValueError("No initial parameters given and the model cannot be sampled directly")
        return np.column_stack([model.direct_sample(rngs.generator(i)) for i in range(n_chains)])
    initial = np.asarray(initial, dtype=np.float64)
    if initial.ndim == 1:
        initial = np.tile(initial[:, np.newaxis], (1, n_chains))
    if initial.shape != (model.n_pars, n_chains):
        raise ValueError(
            f"Expected initial of shape ({model.n_pars},) or ({model.n_pars}, {n_chains}), "
            f"given {initial.shape}"
        )
    return initial


def _combine(model: MontyModel, results, initial, restartable: bool) -> Samples:
    observations = None
    if model.observer is not None:
        per_chain = [model.observer.finalise(r["observations"]) for r in results]
        # a chain that never left an impossible point observed nothing
        template = next((o for o in per_chain if o), None)
        if template is not None:
            observations = {
                k: np.stack(
                    [o[k] if k in o else np.full(np.shape(v), np.nan) for o in per_chain],
                    axis=-1,
                )
                for k, v in template.items()
            }
    return Samples(
        pars=np.stack([r["pars"] for r in results], axis=-1),
        density=np.stack([r["density"] for r in results], axis=-1),
        initial=initial,
        parameter_names=tuple(model.parameters),
        details=[r["details"] for r in results],
        observations=observations,
        restart=[r["restart"] for r in results] if restartable else None,
    )


def sample(
    model: MontyModel,
    sampler: Sampler,
    n_steps: int,
    initial=None,
    n_chains: int = 1,
    runner=None,
    seed=None,
    restartable: bool = False,
) -> Samples:
    """
    Draw samples from a model.

    Args:
        model: Target MontyModel
        sampler: Sampler configuration; every chain gets its own copy
        n_steps: Steps per chain
        initial: [n_pars] or [n_pars, n_chains] starting point; drawn with
                 model.direct_sample when None
        n_chains: Number of independent chains
        runner: SerialRunner (default) or ParallelRunner
        seed: Root seed for all chains
        restartable: Keep what sample_continue needs

    Returns:
        Samples
    """
    if n_steps < 1:
        raise ValueError(f"n_steps must be at least 1 (given {n_steps})")
    if n_chains < 1:
        raise ValueError(f"n_chains must be at least 1 (given {n_chains})")
    runner = runner or SerialRunner()
    root = RngStreams(seed, 2)
    chain_rng = root.split(n_chains, 0)
    model_rng = root.split(n_chains, 1)
    initial = _initial(model, initial, n_chains, chain_rng)

    logger.info("Sampling %d chains of %d steps with %s", n_chains, n_steps, sampler.name)
    tasks = [
        (model, sampler, n_steps, i, chain_rng.generator(i), initial[:, i],
         model_rng.seed_sequence(i))
        for i in range(n_chains)
    ]
    results = runner.run(_run_chain, tasks)
    return _combine(model, results, initial, restartable)


def sample_continue(
    samples: Samples,
    model: MontyModel,
    n_steps: int,
    runner=None,
    restartable: bool = False,
) -> Samples:
    """
    Continue chains from where a restartable run stopped.

    The returned Samples hold the old and new steps together.
    """
    if samples.restart is None:
        raise ValueError("Samples were not created with restartable=True")
    if tuple(model.parameters) != tuple(samples.parameter_names):
        raise ValueError("Model parameters do not match the samples")
    runner = runner or SerialRunner()
    restart = copy.deepcopy(samples.restart)
    tasks = [
        (model, r["sampler"], n_steps, i, r["rng"], None, None, r)
        for i, r in enumerate(restart)
    ]
    results = runner.run(_run_chain, tasks)
    new = _combine(model, results, samples.initial, restartable)

    observations = None
    if samples.observations is not None and new.observations is not None:
        observations = {
            k: np.concatenate([v, new.observations[k]], axis=-2)
            for k, v in samples.observations.items()
        }
    return Samples(
        pars=np.concatenate([samples.pars, new.pars], axis=1),
        density=np.concatenate([samples.density, new.density], axis=0),
        initial=samples.initial,
        parameter_names=samples.parameter_names,
        details=new.details,
        observations=observations,
        restart=new.restart,
    )
