"""
Monte Carlo simulation and inference library.

A NumPy-based library for stochastic state space models with:
- Discrete- and continuous-time system simulation
- Particle filters and deterministic likelihoods
- Composable log-density models and priors
- MCMC samplers (random walk, adaptive, HMC, parallel tempering)
"""

from . import models
from . import filters
from . import samplers
from . import simulation
from . import utils

__version__ = "0.1.0"
