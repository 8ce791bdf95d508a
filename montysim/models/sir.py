"""
SIR epidemic models.

State: [S, I, R, incidence] with incidence reset to zero every time unit.
Observation: cases ~ Poisson(incidence)

Discrete-time (chain binomial):
    n_SI ~ Binomial(S, 1 - exp(-beta I / N dt))
    n_IR ~ Binomial(I, 1 - exp(-gamma dt))

Continuous-time (ODE):
    dS/dt = -beta S I / N
    dI/dt =  beta S I / N - gamma I
    dR/dt =  gamma I
"""

import numpy as np
from scipy import stats
from typing import Optional

from .generator import SystemGenerator
from ..utils.interpolation import Interpolator


SIR_PARAMETERS = ("N", "I0", "beta", "gamma")
SIR_DEFAULTS = {"N": 1000.0, "I0": 10.0, "beta": 0.2, "gamma": 0.1}
SIR_STATE = {"S": 1, "I": 1, "R": 1, "incidence": 1}


def _initial(time, pars, rng):
    n = rng.n_streams
    x = np.zeros((n, 4))
    x[:, 0] = pars["N"] - pars["I0"]
    x[:, 1] = pars["I0"]
    return x


def _compare_cases(time, state, observed, pars):
    """Poisson log-density of observed cases given modelled incidence."""
    incidence = state[:, 3]
    with np.errstate(divide="ignore", invalid="ignore"):
        ll = stats.poisson.logpmf(observed, incidence)
    return np.where(np.isnan(ll), -np.inf, ll)


def make_sir(deterministic: bool = False) -> SystemGenerator:
    """
    Discrete-time chain-binomial SIR model.

    Args:
        deterministic: Replace binomial draws by their expectation

    Returns:
        SystemGenerator instance
    """

    def update(time, dt, state, pars, rng):
        S, I, R, incidence = state.T
        N, beta, gamma = pars["N"], pars["beta"], pars["gamma"]
        p_SI = 1.0 - np.exp(-beta * I / N * dt)
        p_IR = 1.0 - np.exp(-gamma * dt)
        if deterministic:
            n_SI = S * p_SI
            n_IR = I * p_IR
        else:
            n_SI = rng.binomial(S, p_SI)
            n_IR = rng.binomial(I, np.full_like(I, p_IR))
        return np.stack(
            [S - n_SI, I + n_SI - n_IR, R + n_IR, incidence + n_SI], axis=-1
        )

    return SystemGenerator(
        state=SIR_STATE,
        parameters=SIR_PARAMETERS,
        initial=_initial,
        update=update,
        compare={"cases": _compare_cases},
        zero_every={"incidence": 1},
        default_parameters=SIR_DEFAULTS,
        is_stochastic=not deterministic,
    )


def make_sir_ode(contact: Optional[Interpolator] = None) -> SystemGenerator:
    """
    Continuous-time SIR model.

    Args:
        contact: Optional time-varying multiplier on beta (e.g. a
                 school-closure schedule). Its breakpoints should be passed
                 as critical times to the System.

    Returns:
        SystemGenerator instance
    """

    def deriv(time, state, pars):
        S, I = state[:, 0], state[:, 1]
        beta = pars["beta"]
        if contact is not None:
            beta = beta * contact(time)
        n_SI = beta * S * I / pars["N"]
        n_IR = pars["gamma"] * I
        return np.stack([-n_SI, n_SI - n_IR, n_IR, n_SI], axis=-1)

    return SystemGenerator(
        state=SIR_STATE,
        parameters=SIR_PARAMETERS,
        initial=_initial,
        deriv=deriv,
        compare={"cases": _compare_cases},
        zero_every={"incidence": 1},
        default_parameters=SIR_DEFAULTS,
        is_stochastic=False,
    )
