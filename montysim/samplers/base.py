"""
Sampler base class, chain state and shared helpers.

A sampler object holds the tuning and the per-chain auxiliary state of one
chain; runners give every chain its own copy.
"""

import logging
import warnings
import numpy as np
from dataclasses import dataclass
from numpy.random import Generator
from typing import Dict, Literal, Optional, Tuple

from ..errors import OutOfDomainError
from ..models.density import MontyModel

logger = logging.getLogger(__name__)

Boundaries = Literal["reflect", "reject", "ignore"]
BOUNDARIES = ("reflect", "reject", "ignore")


@dataclass
class ChainState:
    """
    Current position of one chain.

    Attributes:
        pars: [n_pars] Parameter vector
        density: Log-density at pars (-inf for numerical failures)
        observation: Observer payload from the evaluation at pars
    """
    pars: np.ndarray
    density: float
    observation: Optional[Dict[str, np.ndarray]] = None


def check_boundaries(boundaries: str) -> str:
    if boundaries not in BOUNDARIES:
        raise ValueError(
            f"Unknown boundaries: {boundaries} (expected one of {BOUNDARIES})"
        )
    return boundaries


def reflect_proposal(x: np.ndarray, domain: np.ndarray) -> np.ndarray:
    """
    Fold out-of-domain coordinates back into the domain.

    A violated limit maps x to 2 * limit - x. If that lands beyond the
    other limit (a jump of more than the domain width), repeated folding is
    applied instead, which is periodic with period 2 (upper - lower).
    """
    x = np.asarray(x, dtype=np.float64)
    lower, upper = domain[:, 0], domain[:, 1]
    y = np.where(x < lower, 2.0 * lower - x, np.where(x > upper, 2.0 * upper - x, x))

    i = (y < lower) | (y > upper)
    if np.any(i):
        width = upper[i] - lower[i]
        z = np.mod(x[i] - lower[i], 2.0 * width)
        y[i] = lower[i] + np.where(z > width, 2.0 * width - z, z)
    return y


def safe_density(model: MontyModel, x: np.ndarray) -> Tuple[float, bool]:
    """
    Evaluate a log-density, mapping numerical failures to -inf.

    Returns:
        (density, failed)
    """
    try:
        with np.errstate(all="ignore"):
            value = float(model.density(x))
    except (FloatingPointError, ArithmeticError) as e:
        logger.debug("Density evaluation failed at %s: %s", x, e)
        return -np.inf, True
    if np.isnan(value):
        return -np.inf, True
    return value, False


def observe(model: MontyModel, density: float) -> Optional[Dict[str, np.ndarray]]:
    """
    Observer payload for the evaluation just made. Nothing is observed at
    an impossible point: a composed model may have skipped the component
    that produces the payload.
    """
    if model.observer is None or density == -np.inf:
        return None
    return model.observer.observe()


class Sampler:
    """
    Base class for MCMC samplers.

    Subclasses implement ``step``; ``initialise`` may be extended to set
    up auxiliary state. Counters feed the acceptance diagnostics.
    """

    name = "sampler"

    def __init__(self):
        self.n_steps = 0
        self.n_accepted = 0
        self.n_failed = 0

    def initialise(self, pars: np.ndarray, model: MontyModel, rng: Generator) -> ChainState:
        """Validate the starting point and evaluate the density there."""
        pars = np.asarray(pars, dtype=np.float64)
        if pars.shape != (model.n_pars,):
            raise ValueError(
                f"Expected initial parameters of length {model.n_pars}, "
                f"given shape {pars.shape}"
            )
        if not model.in_domain(pars):
            raise OutOfDomainError(
                f"Initial parameters {pars.tolist()} lie outside the model domain"
            )
        density, failed = safe_density(model, pars)
        if failed:
            self.n_failed += 1
        if not np.isfinite(density):
            warnings.warn(
                f"Initial log-density is {density}; the chain may not move",
                RuntimeWarning,
            )
        return ChainState(pars, density, observe(model, density))

    def step(self, state: ChainState, model: MontyModel, rng: Generator) -> ChainState:
        raise NotImplementedError

    def _record(self, accepted: bool, failed: bool = False):
        self.n_steps += 1
        self.n_accepted += int(accepted)
        self.n_failed += int(failed)

    def details(self) -> Dict[str, object]:
        """Per-chain diagnostics."""
        rate = self.n_accepted / self.n_steps if self.n_steps else np.nan
        return {
            "acceptance_rate": rate,
            "n_failed": self.n_failed,
        }


def check_vcv(vcv, n_pars: Optional[int] = None) -> np.ndarray:
    vcv = np.atleast_2d(np.asarray(vcv, dtype=np.float64))
    if vcv.ndim != 2 or vcv.shape[0] != vcv.shape[1]:
        raise ValueError(f"vcv must be a square matrix (given shape {vcv.shape})")
    if n_pars is not None and vcv.shape[0] != n_pars:
        raise ValueError(f"vcv has {vcv.shape[0]} rows but the model has {n_pars} parameters")
    if not np.allclose(vcv, vcv.T):
        raise ValueError("vcv must be symmetric")
    return vcv


def matrix_sqrt(vcv: np.ndarray) -> np.ndarray:
    """
    L with L @ L.T == vcv.

    Cholesky where possible, otherwise an eigendecomposition so that
    positive semi-definite matrices (e.g. a fixed parameter) still work.
    """
    try:
        return np.linalg.cholesky(vcv)
    except np.linalg.LinAlgError:
        values, vectors = np.linalg.eigh(vcv)
        if np.any(values < -1e-8 * max(np.abs(values).max(), 1.0)):
            raise ValueError("vcv must be positive semi-definite")
        return vectors * np.sqrt(np.clip(values, 0.0, None))


def metropolis_accept(log_ratio: float, rng: Generator) -> bool:
    """Accept with probability min(1, exp(log_ratio)); NaN never accepts."""
    if not log_ratio > -np.inf:
        return False
    return bool(np.log(rng.random()) < log_ratio)
