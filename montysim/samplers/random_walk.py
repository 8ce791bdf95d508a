"""
Random-walk Metropolis sampler.
"""

import numpy as np
from numpy.random import Generator

from .base import (
    Boundaries,
    ChainState,
    Sampler,
    check_boundaries,
    check_vcv,
    matrix_sqrt,
    metropolis_accept,
    observe,
    reflect_proposal,
    safe_density,
)
from ..models.density import MontyModel


class RandomWalk(Sampler):
    """
    Random-walk Metropolis with Gaussian proposals.

    theta* = theta + L z,  z ~ N(0, I),  L L^T = vcv

    Args:
        vcv: [n_pars, n_pars] Proposal covariance
        boundaries: What to do with proposals outside the model domain:
            "reflect" - fold back into the domain, then evaluate
            "reject"  - reject without evaluating the density
            "ignore"  - evaluate as-is; the density must return -inf
                        outside its support
        rerun_every: For stochastic models, re-estimate the density at the
                     current point every this many steps
    """

    name = "random_walk"

    def __init__(
        self,
        vcv,
        boundaries: Boundaries = "reflect",
        rerun_every: float = np.inf,
    ):
        super().__init__()
        self.vcv = check_vcv(vcv)
        self.boundaries = check_boundaries(boundaries)
        if not rerun_every >= 1:
            raise ValueError(f"rerun_every must be at least 1 (given {rerun_every})")
        self.rerun_every = rerun_every
        self._sqrt_vcv = matrix_sqrt(self.vcv)

    def initialise(self, pars, model: MontyModel, rng: Generator) -> ChainState:
        check_vcv(self.vcv, model.n_pars)
        return super().initialise(pars, model, rng)

    def _proposal_sqrt(self) -> np.ndarray:
        return self._sqrt_vcv

    def _rerun(self, state: ChainState, model: MontyModel) -> ChainState:
        density, failed = safe_density(model, state.pars)
        self.n_failed += int(failed)
        return ChainState(state.pars, density, observe(model, density))

    def propose(self, state: ChainState, model: MontyModel, rng: Generator):
        """
        Draw and evaluate a proposal.

        Returns:
            (proposal, density, failed); density is None if the proposal
            was rejected by the boundary policy without evaluation
        """
        z = rng.standard_normal(len(state.pars))
        proposal = state.pars + self._proposal_sqrt() @ z
        if not model.in_domain(proposal):
            if self.boundaries == "reject":
                return proposal, None, False
            if self.boundaries == "reflect":
                proposal = reflect_proposal(proposal, model.domain)
        density, failed = safe_density(model, proposal)
        return proposal, density, failed

    def step(self, state: ChainState, model: MontyModel, rng: Generator) -> ChainState:
        if model.is_stochastic and self.n_steps > 0 and self.n_steps % self.rerun_every == 0:
            state = self._rerun(state, model)

        proposal, density, failed = self.propose(state, model, rng)
        if density is None:
            self.last_accept_prob = 0.0
            self._record(False)
            return state

        log_ratio = density - state.density
        self.last_accept_prob = float(np.exp(min(log_ratio, 0.0))) if log_ratio > -np.inf else 0.0
        accepted = metropolis_accept(log_ratio, rng)
        self._record(accepted, failed)
        if accepted:
            return ChainState(proposal, density, observe(model, density))
        return state
