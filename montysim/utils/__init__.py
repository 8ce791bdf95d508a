"""
Utility functions.
"""

from .rng import RngStreams
from .resampling import (
    systematic_resample,
    stratified_resample,
    multinomial_resample,
    residual_resample,
    get_resampler,
    effective_sample_size,
    normalize_log_weights,
    log_mean_exp,
)
from .interpolation import Interpolator

__all__ = [
    "RngStreams",
    "systematic_resample",
    "stratified_resample",
    "multinomial_resample",
    "residual_resample",
    "get_resampler",
    "effective_sample_size",
    "normalize_log_weights",
    "log_mean_exp",
    "Interpolator",
]
