"""
Hamiltonian Monte Carlo with a fixed step size and path length.

Bounded parameters are mapped to an unconstrained space before
integrating:

    x in (a, inf)   x = a + exp(z)
    x in (-inf, b)  x = b - exp(z)
    x in (a, b)     x = a + (b - a) * expit(z)

and the log-Jacobian of the map is added to the target.
"""

import numpy as np
from numpy.random import Generator
from scipy.special import expit, logit
from typing import Optional, Tuple

from .base import ChainState, Sampler, check_vcv, matrix_sqrt, metropolis_accept, observe, safe_density
from ..models.density import MontyModel


class DomainTransform:
    """Map between a box-constrained space and R^n."""

    def __init__(self, domain: np.ndarray):
        lower, upper = domain[:, 0], domain[:, 1]
        self.lower = lower
        self.upper = upper
        self.width = upper - lower
        fin_lo, fin_hi = np.isfinite(lower), np.isfinite(upper)
        self.is_lower = fin_lo & ~fin_hi
        self.is_upper = ~fin_lo & fin_hi
        self.is_both = fin_lo & fin_hi

    def to_unconstrained(self, x: np.ndarray) -> np.ndarray:
        z = np.array(x, dtype=np.float64)
        i = self.is_lower
        z[i] = np.log(x[i] - self.lower[i])
        i = self.is_upper
        z[i] = np.log(self.upper[i] - x[i])
        i = self.is_both
        z[i] = logit((x[i] - self.lower[i]) / self.width[i])
        return z

    def to_constrained(self, z: np.ndarray) -> np.ndarray:
        x = np.array(z, dtype=np.float64)
        i = self.is_lower
        x[i] = self.lower[i] + np.exp(z[i])
        i = self.is_upper
        x[i] = self.upper[i] - np.exp(z[i])
        i = self.is_both
        x[i] = self.lower[i] + self.width[i] * expit(z[i])
        return x

    def log_jacobian(self, z: np.ndarray) -> float:
        i = self.is_lower | self.is_upper
        total = np.sum(z[i])
        i = self.is_both
        if np.any(i):
            s = expit(z[i])
            total += np.sum(np.log(self.width[i]) + np.log(s) + np.log1p(-s))
        return float(total)

    def gradient(self, z: np.ndarray, grad_x: np.ndarray) -> np.ndarray:
        """Gradient of log p(x(z)) + log|J(z)| with respect to z."""
        g = np.array(grad_x, dtype=np.float64)
        i = self.is_lower
        g[i] = grad_x[i] * np.exp(z[i]) + 1.0
        i = self.is_upper
        g[i] = -grad_x[i] * np.exp(z[i]) + 1.0
        i = self.is_both
        if np.any(i):
            s = expit(z[i])
            g[i] = grad_x[i] * self.width[i] * s * (1.0 - s) + 1.0 - 2.0 * s
        return g


class HMC(Sampler):
    """
    Hamiltonian Monte Carlo.

    Momentum p ~ N(0, vcv^-1), so that vcv plays the part of the expected
    posterior covariance (inverse mass matrix):

        H(z, p) = -[log p(x(z)) + log|J(z)|] + p^T vcv p / 2

    Args:
        epsilon: Leapfrog step size
        n_integration_steps: Leapfrog steps per proposal
        vcv: [n_pars, n_pars] Inverse mass matrix (default identity)
    """

    name = "hmc"

    def __init__(
        self,
        epsilon: float = 0.015,
        n_integration_steps: int = 10,
        vcv: Optional[np.ndarray] = None,
    ):
        super().__init__()
        if epsilon <= 0:
            raise ValueError(f"epsilon must be positive (given {epsilon})")
        if n_integration_steps < 1:
            raise ValueError("n_integration_steps must be at least 1")
        self.epsilon = float(epsilon)
        self.n_integration_steps = int(n_integration_steps)
        self.vcv = None if vcv is None else check_vcv(vcv)
        self._transform = None
        self._sqrt_vcv = None

    def initialise(self, pars, model: MontyModel, rng: Generator) -> ChainState:
        if not model.properties.has_gradient:
            raise ValueError("HMC requires a model with a gradient")
        if self.vcv is None:
            self.vcv = np.eye(model.n_pars)
        check_vcv(self.vcv, model.n_pars)
        self._sqrt_vcv = matrix_sqrt(self.vcv)
        self._transform = DomainTransform(model.domain)
        return super().initialise(pars, model, rng)

    def _draw_momentum(self, rng: Generator) -> np.ndarray:
        # Cov(L^-T e) = (L L^T)^-1 = vcv^-1
        e = rng.standard_normal(len(self.vcv))
        return np.linalg.solve(self._sqrt_vcv.T, e)

    def _kinetic(self, p: np.ndarray) -> float:
        return 0.5 * float(p @ self.vcv @ p)

    def _grad_z(self, model: MontyModel, z: np.ndarray) -> np.ndarray:
        x = self._transform.to_constrained(z)
        return self._transform.gradient(z, model.gradient(x))

    def _leapfrog(self, model: MontyModel, z: np.ndarray, p: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        eps = self.epsilon
        p = p + 0.5 * eps * self._grad_z(model, z)
        for i in range(self.n_integration_steps):
            z = z + eps * (self.vcv @ p)
            if i < self.n_integration_steps - 1:
                p = p + eps * self._grad_z(model, z)
        p = p + 0.5 * eps * self._grad_z(model, z)
        return z, p

    def step(self, state: ChainState, model: MontyModel, rng: Generator) -> ChainState:
        t = self._transform
        z0 = t.to_unconstrained(state.pars)
        p0 = self._draw_momentum(rng)
        try:
            with np.errstate(over="raise", invalid="raise"):
                z1, p1 = self._leapfrog(model, z0, p0)
        except (FloatingPointError, ArithmeticError):
            self._record(False, failed=True)
            return state
        if not (np.all(np.isfinite(z1)) and np.all(np.isfinite(p1))):
            self._record(False, failed=True)
            return state

        x1 = t.to_constrained(z1)
        density, failed = safe_density(model, x1)
        h0 = -(state.density + t.log_jacobian(z0)) + self._kinetic(p0)
        h1 = -(density + t.log_jacobian(z1)) + self._kinetic(p1)
        accepted = metropolis_accept(h0 - h1, rng)
        self._record(accepted, failed)
        if accepted:
            return ChainState(x1, density, observe(model, density))
        return state
