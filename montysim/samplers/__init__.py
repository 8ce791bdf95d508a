"""
MCMC samplers and chain running.
"""

from .base import ChainState, Sampler, reflect_proposal
from .random_walk import RandomWalk
from .adaptive import Adaptive
from .hmc import HMC
from .parallel_tempering import ParallelTempering, temperature_ladder
from .runner import SerialRunner, ParallelRunner
from .samples import Samples, samples_thin
from .sample import sample, sample_continue

__all__ = [
    "ChainState",
    "Sampler",
    "reflect_proposal",
    "RandomWalk",
    "Adaptive",
    "HMC",
    "ParallelTempering",
    "temperature_ladder",
    "SerialRunner",
    "ParallelRunner",
    "Samples",
    "samples_thin",
    "sample",
    "sample_continue",
]
