"""
Model definitions: system generators, densities and priors.
"""

from .generator import SystemGenerator
from .sir import make_sir, make_sir_ode
from .packer import Packer
from .density import MontyModel, ModelProperties, Observer, combine_models, model_function
from .distributions import (
    Beta,
    Exponential,
    Gamma,
    LogNormal,
    Normal,
    TruncatedNormal,
    Uniform,
    model_prior,
)

__all__ = [
    "SystemGenerator",
    "make_sir",
    "make_sir_ode",
    "Packer",
    "MontyModel",
    "ModelProperties",
    "Observer",
    "combine_models",
    "model_function",
    "Beta",
    "Exponential",
    "Gamma",
    "LogNormal",
    "Normal",
    "TruncatedNormal",
    "Uniform",
    "model_prior",
]
