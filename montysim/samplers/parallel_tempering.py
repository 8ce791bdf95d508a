"""
Parallel tempering.

Rung i targets

    log pi_i(x) = fixed(x) + beta_i * tempered(x)

where for a ``prior + likelihood`` model fixed is the prior and tempered
the likelihood, and otherwise (with a base model) fixed is the base and
tempered is target - base. beta_0 = 1 is the target; the hottest rung has
the smallest beta. Each rung moves with its own copy of the inner sampler
and adjacent rungs swap states using the non-reversible even/odd scheme.
Only the coldest rung is reported.
"""

import copy
import logging
import numpy as np
from numpy.random import Generator
from typing import List, Optional, Sequence

from .base import ChainState, Sampler, metropolis_accept, observe, safe_density
from ..models.density import MontyModel, Observer

logger = logging.getLogger(__name__)

_PARTS = "_tempering_parts"


def temperature_ladder(n_rungs: int, beta_min: float = 0.0) -> np.ndarray:
    """
    Inverse temperatures for ``n_rungs + 1`` chains, from 1 down to beta_min.

    Evenly spaced when beta_min is 0, geometrically spaced otherwise.
    """
    if n_rungs < 1:
        raise ValueError(f"n_rungs must be at least 1 (given {n_rungs})")
    if not 0.0 <= beta_min < 1.0:
        raise ValueError(f"beta_min must lie in [0, 1) (given {beta_min})")
    if beta_min == 0.0:
        return np.linspace(1.0, 0.0, n_rungs + 1)
    return np.geomspace(1.0, beta_min, n_rungs + 1)


def _parts_of(state: ChainState):
    """(fixed, tempered) parts recorded for a state; nothing is recorded at -inf."""
    if state.observation is None:
        return -np.inf, -np.inf
    return state.observation[_PARTS]


class _TemperedTarget:
    """Splits a model into (fixed, tempered) parts and builds per-rung models."""

    def __init__(self, model: MontyModel, base: Optional[MontyModel]):
        self.model = model
        parts = model.split()
        if base is not None:
            if tuple(base.parameters) != tuple(model.parameters):
                raise ValueError("base model must have the same parameters as the target")
            self.fixed = base
            self.idx_fixed = np.arange(model.n_pars)
            self.mode = "base"
        elif parts is not None:
            self.fixed = parts[0]
            self.idx_fixed = np.array([model.parameters.index(p) for p in parts[0].parameters])
            self.likelihood = parts[1]
            self.idx_lik = np.array([model.parameters.index(p) for p in parts[1].parameters])
            self.mode = "split"
        else:
            raise ValueError(
                "Parallel tempering needs a model built as prior + likelihood, "
                "or a base model"
            )
        self.can_sample_fixed = (
            self.fixed.properties.has_direct_sample and len(self.idx_fixed) == model.n_pars
        )

    def parts(self, x: np.ndarray):
        """(fixed, tempered) log-density parts at x."""
        fixed = self.fixed.density(x[self.idx_fixed])
        if fixed == -np.inf:
            return fixed, -np.inf
        if self.mode == "split":
            return fixed, self.likelihood.density(x[self.idx_lik])
        return fixed, self.model.density(x) - fixed

    def rung_model(self, beta: float) -> MontyModel:
        cache = {"parts": (-np.inf, -np.inf)}
        model = self.model

        def density(x):
            cache["parts"] = (-np.inf, -np.inf)
            fixed, tempered = self.parts(x)
            cache["parts"] = (fixed, tempered)
            if fixed == -np.inf:
                return -np.inf
            if beta == 0.0:
                return fixed
            return fixed + beta * tempered

        gradient = None
        if self.mode == "split" and model.properties.has_gradient:
            def gradient(x):
                g = np.zeros(model.n_pars)
                np.add.at(g, self.idx_fixed, self.fixed.gradient(x[self.idx_fixed]))
                np.add.at(g, self.idx_lik, beta * self.likelihood.gradient(x[self.idx_lik]))
                return g

        def observe():
            out = {} if model.observer is None else model.observer.observe()
            out[_PARTS] = cache["parts"]
            return out

        return MontyModel(
            model.parameters,
            density,
            gradient=gradient,
            domain=model.domain,
            observer=Observer(observe),
            is_stochastic=model.is_stochastic,
        )


class ParallelTempering(Sampler):
    """
    Parallel tempering around an inner sampler.

    Args:
        sampler: Inner sampler, copied for every rung
        n_rungs: Number of rungs above the target (ladder from
                 temperature_ladder)
        beta: Explicit inverse temperatures, decreasing from 1
        beta_min: Smallest beta when the ladder is built from n_rungs
        base: Reference model used when the target is not prior + likelihood
    """

    name = "parallel_tempering"

    def __init__(
        self,
        sampler: Sampler,
        n_rungs: Optional[int] = None,
        beta: Optional[Sequence[float]] = None,
        beta_min: float = 0.0,
        base: Optional[MontyModel] = None,
    ):
        super().__init__()
        if (n_rungs is None) == (beta is None):
            raise ValueError("Give exactly one of n_rungs and beta")
        if beta is None:
            beta = temperature_ladder(n_rungs, beta_min)
        beta = np.asarray(beta, dtype=np.float64)
        if beta.ndim != 1 or len(beta) < 2:
            raise ValueError("beta needs at least two rungs")
        if beta[0] != 1.0 or np.any(np.diff(beta) >= 0) or beta[-1] < 0:
            raise ValueError("beta must decrease strictly from 1 to a non-negative value")
        self.beta = beta
        self.sampler = sampler
        self.base = base

        self._target: Optional[_TemperedTarget] = None
        self._models: List[MontyModel] = []
        self._samplers: List[Sampler] = []
        self._states: List[ChainState] = []
        self.n_swap_attempts = np.zeros(len(beta) - 1, dtype=int)
        self.n_swap_accepted = np.zeros(len(beta) - 1, dtype=int)

    @property
    def n_rungs(self) -> int:
        return len(self.beta) - 1

    @property
    def _direct_hottest(self) -> bool:
        return self.beta[-1] == 0.0 and self._target.can_sample_fixed

    def initialise(self, pars, model: MontyModel, rng: Generator) -> ChainState:
        self._target = _TemperedTarget(model, self.base)
        self._models = [self._target.rung_model(b) for b in self.beta]
        self._samplers = [copy.deepcopy(self.sampler) for _ in self.beta]
        self._states = [
            s.initialise(pars, m, rng) for s, m in zip(self._samplers, self._models)
        ]
        self.n_failed = sum(s.n_failed for s in self._samplers)
        return self._report(self._states[0])

    def _report(self, state: ChainState) -> ChainState:
        observation = state.observation
        if observation is not None:
            observation = {k: v for k, v in observation.items() if k != _PARTS}
            if len(observation) == 0:
                observation = None
        return ChainState(state.pars, state.density, observation)

    def _step_hottest(self, rng: Generator) -> ChainState:
        """Independent draw from the fixed part (beta = 0)."""
        model = self._models[-1]
        x = self._target.fixed.direct_sample(rng)
        density, failed = safe_density(model, x)
        self._samplers[-1]._record(True, failed)
        return ChainState(x, density, observe(model, density))

    def _swap(self, rng: Generator):
        start = self.n_steps % 2
        for i in range(start, self.n_rungs, 2):
            a, b = self._states[i], self._states[i + 1]
            tempered_a = _parts_of(a)[1]
            tempered_b = _parts_of(b)[1]
            log_alpha = (self.beta[i] - self.beta[i + 1]) * (tempered_b - tempered_a)
            self.n_swap_attempts[i] += 1
            if np.isnan(log_alpha) or not metropolis_accept(log_alpha, rng):
                continue
            self.n_swap_accepted[i] += 1
            self._states[i] = self._retemper(b, self.beta[i])
            self._states[i + 1] = self._retemper(a, self.beta[i + 1])

    @staticmethod
    def _retemper(state: ChainState, beta: float) -> ChainState:
        fixed, tempered = _parts_of(state)
        if fixed == -np.inf:
            density = -np.inf
        elif beta == 0.0:
            density = fixed
        else:
            density = fixed + beta * tempered
        return ChainState(state.pars, density, state.observation)

    def step(self, state: ChainState, model: MontyModel, rng: Generator) -> ChainState:
        for i, (s, m) in enumerate(zip(self._samplers, self._models)):
            if i == self.n_rungs and self._direct_hottest:
                self._states[i] = self._step_hottest(rng)
            else:
                self._states[i] = s.step(self._states[i], m, rng)
        self._swap(rng)

        accepted = self._states[0].pars is not state.pars
        self._record(accepted)
        self.n_failed = sum(s.n_failed for s in self._samplers)
        return self._report(self._states[0])

    def details(self):
        out = super().details()
        rung = [s.details()["acceptance_rate"] for s in self._samplers]
        with np.errstate(invalid="ignore", divide="ignore"):
            swap = self.n_swap_accepted / self.n_swap_attempts
        out["beta"] = self.beta.copy()
        out["rung_acceptance_rate"] = np.array(rung)
        out["swap_acceptance_rate"] = swap
        return out
