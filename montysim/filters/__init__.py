"""
Likelihood estimation for System models.
"""

from .base import FilterResult
from .data import ObservationData, prepare_data
from .particle import ParticleFilter
from .unfilter import Unfilter
from .likelihood import likelihood_model

__all__ = [
    "FilterResult",
    "ObservationData",
    "prepare_data",
    "ParticleFilter",
    "Unfilter",
    "likelihood_model",
]
