"""
Univariate distributions for building priors.

Only what samplers need: log-density, its derivative, direct sampling and
support. Densities come from scipy.stats; draws use the caller's Generator.
"""

import numpy as np
from dataclasses import dataclass
from numpy.random import Generator
from scipy import stats
from typing import Mapping, Tuple

from ..errors import DistributionParameterError
from .density import MontyModel


def _require(ok: bool, message: str):
    if not ok:
        raise DistributionParameterError(message)


class Distribution:
    """Base class: subclasses provide ``_dist`` (a frozen scipy distribution)."""

    _dist = None

    @property
    def support(self) -> Tuple[float, float]:
        lo, hi = self._dist.support()
        return float(lo), float(hi)

    def moments(self) -> Tuple[float, float]:
        """(mean, variance) of the distribution."""
        return float(self._dist.mean()), float(self._dist.var())

    def log_density(self, x: float) -> float:
        return float(self._dist.logpdf(x))

    def grad_log_density(self, x: float) -> float:
        raise NotImplementedError

    def sample(self, rng: Generator) -> float:
        return float(self._dist.rvs(random_state=rng))


@dataclass
class Normal(Distribution):
    mean: float = 0.0
    sd: float = 1.0

    def __post_init__(self):
        _require(self.sd > 0, f"Normal sd must be positive (given {self.sd})")
        self._dist = stats.norm(self.mean, self.sd)

    def grad_log_density(self, x):
        return -(x - self.mean) / self.sd ** 2

    def sample(self, rng):
        return float(rng.normal(self.mean, self.sd))


@dataclass
class Uniform(Distribution):
    min: float = 0.0
    max: float = 1.0

    def __post_init__(self):
        _require(self.min < self.max, "Uniform requires min < max")
        self._dist = stats.uniform(self.min, self.max - self.min)

    def grad_log_density(self, x):
        return 0.0

    def sample(self, rng):
        return float(rng.uniform(self.min, self.max))


@dataclass
class Exponential(Distribution):
    rate: float = 1.0

    def __post_init__(self):
        _require(self.rate > 0, f"Exponential rate must be positive (given {self.rate})")
        self._dist = stats.expon(scale=1.0 / self.rate)

    def grad_log_density(self, x):
        return -self.rate

    def sample(self, rng):
        return float(rng.exponential(1.0 / self.rate))


@dataclass
class Gamma(Distribution):
    shape: float = 1.0
    scale: float = 1.0

    def __post_init__(self):
        _require(self.shape > 0 and self.scale > 0, "Gamma requires shape > 0 and scale > 0")
        self._dist = stats.gamma(self.shape, scale=self.scale)

    def grad_log_density(self, x):
        return (self.shape - 1.0) / x - 1.0 / self.scale

    def sample(self, rng):
        return float(rng.gamma(self.shape, self.scale))


@dataclass
class Beta(Distribution):
    a: float = 1.0
    b: float = 1.0

    def __post_init__(self):
        _require(self.a > 0 and self.b > 0, "Beta requires a > 0 and b > 0")
        self._dist = stats.beta(self.a, self.b)

    def grad_log_density(self, x):
        return (self.a - 1.0) / x - (self.b - 1.0) / (1.0 - x)

    def sample(self, rng):
        return float(rng.beta(self.a, self.b))


@dataclass
class LogNormal(Distribution):
    meanlog: float = 0.0
    sdlog: float = 1.0

    def __post_init__(self):
        _require(self.sdlog > 0, "LogNormal sdlog must be positive")
        self._dist = stats.lognorm(self.sdlog, scale=np.exp(self.meanlog))

    def grad_log_density(self, x):
        return -1.0 / x - (np.log(x) - self.meanlog) / (self.sdlog ** 2 * x)

    def sample(self, rng):
        return float(rng.lognormal(self.meanlog, self.sdlog))


@dataclass
class TruncatedNormal(Distribution):
    mean: float = 0.0
    sd: float = 1.0
    min: float = -np.inf
    max: float = np.inf

    def __post_init__(self):
        _require(self.sd > 0, "TruncatedNormal sd must be positive")
        _require(self.min < self.max, "TruncatedNormal requires min < max")
        a = (self.min - self.mean) / self.sd
        b = (self.max - self.mean) / self.sd
        self._dist = stats.truncnorm(a, b, loc=self.mean, scale=self.sd)

    def grad_log_density(self, x):
        return -(x - self.mean) / self.sd ** 2


def model_prior(distributions: Mapping[str, Distribution]) -> MontyModel:
    """
    Independent prior over named scalar parameters.

    Args:
        distributions: Ordered mapping of parameter name -> Distribution

    Returns:
        MontyModel with density, gradient, direct_sample and domain
    """
    names = list(distributions)
    dists = [distributions[n] for n in names]
    domain = np.array([d.support for d in dists], dtype=np.float64)

    def density(x):
        total = 0.0
        for d, xi in zip(dists, x):
            total += d.log_density(xi)
            if total == -np.inf:
                break
        return total

    def gradient(x):
        return np.array([d.grad_log_density(xi) for d, xi in zip(dists, x)])

    def direct_sample(rng):
        return np.array([d.sample(rng) for d in dists])

    return MontyModel(
        names,
        density,
        gradient=gradient,
        direct_sample=direct_sample,
        domain=domain,
    )
