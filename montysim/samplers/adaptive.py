"""
Adaptive Metropolis sampler.

The proposal covariance is a pooled estimate

    vcv = (w * V_emp + w0 * V_init) / (w + w0)

where V_emp is the empirical covariance of the w samples currently
included and w0 is the pseudo-count given to the initial covariance. The
proposal is scaled by scaling^2 * 2.38^2 / n_pars, with the scaling
adjusted by a Robbins-Monro update towards a target acceptance rate.
Early samples can be dropped ("forgotten") so the estimate is not
dominated by the burn-in.
"""

import numpy as np
from collections import deque
from scipy import stats
from typing import Optional

from .base import Boundaries, ChainState, matrix_sqrt
from .random_walk import RandomWalk


def default_scaling_increment(n_pars: int, acceptance_target: float) -> float:
    """Step size of the scaling update (Garthwaite, Fan & Sisson, 2016)."""
    a = -stats.norm.ppf(acceptance_target / 2.0)
    return (
        (1.0 - 1.0 / n_pars) * (np.sqrt(2.0 * np.pi) * np.exp(a ** 2 / 2.0)) / (2.0 * a)
        + 1.0 / (n_pars * acceptance_target * (1.0 - acceptance_target))
    )


class Adaptive(RandomWalk):
    """
    Random-walk Metropolis with online covariance and scale adaptation.

    Args:
        initial_vcv: [n_pars, n_pars] Starting proposal covariance
        initial_vcv_weight: Pseudo-count of samples backing initial_vcv
        initial_scaling: Starting value of the scaling factor
        scaling_increment: Robbins-Monro step size (default from n_pars and
                           acceptance_target)
        acceptance_target: Acceptance rate the scaling aims for
        forget_rate: Fraction of samples dropped from the covariance estimate
        forget_end: Step after which no more samples are forgotten
        adapt_end: Step after which the proposal is frozen
        boundaries: Domain boundary policy (see RandomWalk)
    """

    name = "adaptive"

    def __init__(
        self,
        initial_vcv,
        initial_vcv_weight: float = 1000.0,
        initial_scaling: float = 1.0,
        scaling_increment: Optional[float] = None,
        acceptance_target: float = 0.234,
        forget_rate: float = 0.2,
        forget_end: float = np.inf,
        adapt_end: float = np.inf,
        boundaries: Boundaries = "reflect",
    ):
        super().__init__(initial_vcv, boundaries=boundaries)
        if initial_vcv_weight < 0:
            raise ValueError("initial_vcv_weight must be non-negative")
        if not 0 < acceptance_target < 1:
            raise ValueError("acceptance_target must lie in (0, 1)")
        if not 0 <= forget_rate < 1:
            raise ValueError("forget_rate must lie in [0, 1)")
        if initial_scaling <= 0:
            raise ValueError("initial_scaling must be positive")
        self.initial_vcv = self.vcv
        self.initial_vcv_weight = float(initial_vcv_weight)
        self.scaling = float(initial_scaling)
        self.scaling_increment = scaling_increment
        self.acceptance_target = acceptance_target
        self.forget_rate = forget_rate
        self.forget_end = forget_end
        self.adapt_end = adapt_end

        # ---- Running sums over the included samples ----
        self._history = deque()
        self._sum = None
        self._sum_sq = None

    @property
    def weight(self) -> int:
        """Number of samples in the covariance estimate."""
        return len(self._history)

    def initialise(self, pars, model, rng) -> ChainState:
        state = super().initialise(pars, model, rng)
        d = model.n_pars
        if self.scaling_increment is None:
            self.scaling_increment = default_scaling_increment(max(d, 2), self.acceptance_target)
        self._sum = np.zeros(d)
        self._sum_sq = np.zeros((d, d))
        self._update_proposal()
        return state

    def empirical_vcv(self) -> np.ndarray:
        w = self.weight
        d = len(self._sum)
        if w < 2:
            return np.zeros((d, d))
        mean = self._sum / w
        return (self._sum_sq - w * np.outer(mean, mean)) / (w - 1)

    def _update_proposal(self):
        w, w0 = self.weight, self.initial_vcv_weight
        if w + w0 > 0:
            self.vcv = (w * self.empirical_vcv() + w0 * self.initial_vcv) / (w + w0)
        d = len(self._sum)
        proposal = self.scaling ** 2 * 2.38 ** 2 / d * self.vcv
        self._sqrt_vcv = matrix_sqrt(proposal)

    def _include(self, x: np.ndarray):
        self._history.append(x.copy())
        self._sum += x
        self._sum_sq += np.outer(x, x)

    def _forget(self):
        x = self._history.popleft()
        self._sum -= x
        self._sum_sq -= np.outer(x, x)

    def step(self, state, model, rng) -> ChainState:
        state = super().step(state, model, rng)
        t = self.n_steps
        if t > self.adapt_end:
            return state

        self._include(state.pars)
        if t <= self.forget_end and np.floor(self.forget_rate * t) > np.floor(self.forget_rate * (t - 1)):
            self._forget()

        log_scaling = np.log(self.scaling) + self.scaling_increment * (
            self.last_accept_prob - self.acceptance_target
        ) / np.sqrt(t)
        self.scaling = float(np.exp(log_scaling))
        self._update_proposal()
        return state

    def details(self):
        out = super().details()
        out["scaling"] = self.scaling
        out["vcv"] = self.vcv.copy()
        out["weight"] = self.weight
        return out
