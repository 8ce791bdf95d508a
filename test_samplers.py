"""
Tests for the MCMC samplers, chain runners and sample post-processing.

Run: pytest test_samplers.py -v
"""

import pytest
import numpy as np
from scipy import stats

from montysim.errors import OutOfDomainError
from montysim.filters.likelihood import likelihood_model
from montysim.filters.particle import ParticleFilter
from montysim.models.density import MontyModel, Observer, model_function
from montysim.models.distributions import Gamma, Normal, TruncatedNormal, Uniform, model_prior
from montysim.models.packer import Packer
from montysim.models.sir import make_sir
from montysim.samplers import (
    HMC,
    Adaptive,
    ParallelRunner,
    ParallelTempering,
    RandomWalk,
    Samples,
    SerialRunner,
    reflect_proposal,
    sample,
    sample_continue,
    samples_thin,
    temperature_ladder,
)
from montysim.simulation.system import System


# ============================================================================
# Assertion helpers
# ============================================================================

def lag1_autocorrelation(x: np.ndarray) -> float:
    return float(np.corrcoef(x[:-1], x[1:])[0, 1])


def assert_all_in_domain(samples: Samples, domain: np.ndarray, name: str):
    pars = samples.pars
    lower = domain[:, 0][:, np.newaxis, np.newaxis]
    upper = domain[:, 1][:, np.newaxis, np.newaxis]
    bad = (pars < lower) | (pars > upper)
    if np.any(bad):
        pytest.fail(f"{name}: {bad.sum()} stored samples outside the domain")


# ============================================================================
# Fixtures
# ============================================================================

CORRELATED_VCV = np.array([[1.0, 0.9], [0.9, 1.0]])


@pytest.fixture
def correlated_gaussian():
    """Differentiable 2D Gaussian with correlation 0.9."""
    prec = np.linalg.inv(CORRELATED_VCV)
    return MontyModel(
        ["a", "b"],
        lambda x: -0.5 * float(x @ prec @ x),
        gradient=lambda x: -prec @ x,
    )


@pytest.fixture
def truncated_2d():
    """Each coordinate a standard normal truncated below at 0."""
    return model_prior({
        "a": TruncatedNormal(0.0, 1.0, 0.0, np.inf),
        "b": TruncatedNormal(0.0, 1.0, 0.0, np.inf),
    })


def bimodal_posterior():
    """Uniform prior with a two-mode likelihood at -3 and +3."""
    prior = model_prior({"x": Uniform(-8.0, 8.0)})

    def log_lik(x):
        return np.logaddexp(stats.norm.logpdf(x, -3.0, 1.0), stats.norm.logpdf(x, 3.0, 1.0))

    return prior + model_function(log_lik)


# ============================================================================
# Boundary handling
# ============================================================================

class TestBoundaries:

    def test_reflect_single_sided_exact(self):
        assert reflect_proposal(np.array([-0.3]), np.array([[0.0, np.inf]]))[0] == 0.3
        assert reflect_proposal(np.array([1.5]), np.array([[-np.inf, 1.0]]))[0] == 2.0 * 1.0 - 1.5
        x = np.array([-2.75, 7.0])
        domain = np.array([[-1.0, np.inf], [-np.inf, 5.0]])
        np.testing.assert_array_equal(reflect_proposal(x, domain), [2 * -1.0 - -2.75, 2 * 5.0 - 7.0])

    def test_reflect_two_sided(self):
        domain = np.array([[0.0, 1.0]])
        # crossing one limit of a bounded interval is still an exact mirror
        assert reflect_proposal(np.array([-0.3]), domain)[0] == 0.3
        assert reflect_proposal(np.array([1.2]), domain)[0] == 2.0 * 1.0 - 1.2
        assert reflect_proposal(np.array([-0.2]), domain)[0] == 0.2
        domain = np.array([[-1.0, 2.0]])
        assert reflect_proposal(np.array([-1.7]), domain)[0] == 2.0 * -1.0 - -1.7
        # several widths away still lands inside
        assert reflect_proposal(np.array([3.3]), np.array([[0.0, 1.0]]))[0] == pytest.approx(0.7)

    def test_reflect_leaves_inside_alone(self):
        x = np.array([0.5, 2.0])
        domain = np.array([[0.0, 1.0], [0.0, np.inf]])
        np.testing.assert_array_equal(reflect_proposal(x, domain), x)

    def test_reject_never_moves_outside(self):
        evaluated = []

        def density(x):
            evaluated.append(x.copy())
            return stats.norm.logpdf(x[0])

        model = MontyModel(["x"], density, domain=[[0.0, np.inf]])
        s = sample(model, RandomWalk(np.eye(1) * 4.0, boundaries="reject"), 500,
                   initial=[0.1], seed=1)
        assert np.all(s.pars >= 0)
        # no density call outside the domain
        assert all(x[0] >= 0 for x in evaluated)
        # rejected proposals keep the chain where it was
        assert np.any(np.diff(s.pars[0, :, 0]) == 0)

    def test_reflect_scenario(self, truncated_2d):
        s = sample(truncated_2d, RandomWalk(np.eye(2), boundaries="reflect"), 1000,
                   initial=[1.0, 1.0], seed=2)
        assert s.pars.shape == (2, 1000, 1)
        assert_all_in_domain(s, truncated_2d.domain, "reflect")
        assert np.all(s.pars >= 0)

    def test_ignore_relies_on_density(self, truncated_2d):
        s = sample(truncated_2d, RandomWalk(np.eye(2), boundaries="ignore"), 500,
                   initial=[1.0, 1.0], seed=3)
        assert np.all(s.pars >= 0)

    def test_unknown_boundaries(self):
        with pytest.raises(ValueError):
            RandomWalk(np.eye(1), boundaries="clamp")

    def test_initial_outside_domain(self, truncated_2d):
        with pytest.raises(OutOfDomainError):
            sample(truncated_2d, RandomWalk(np.eye(2)), 10, initial=[-1.0, 1.0])


# ============================================================================
# Random walk
# ============================================================================

class TestRandomWalk:

    def test_gaussian_moments(self):
        model = model_prior({"x": Normal(2.0, 1.0)})
        s = sample(model, RandomWalk(np.eye(1) * 2.0), 5000, initial=[0.0], seed=4)
        x = s.pars[0, 1000:, 0]
        assert abs(x.mean() - 2.0) < 0.2
        assert abs(x.std() - 1.0) < 0.15

    def test_density_recorded(self):
        model = model_prior({"x": Normal(0.0, 1.0)})
        s = sample(model, RandomWalk(np.eye(1)), 50, initial=[0.0], seed=1)
        np.testing.assert_allclose(s.density[:, 0], stats.norm.logpdf(s.pars[0, :, 0]))

    def test_nan_density_is_rejection(self):
        def density(x):
            return np.nan if x[0] > 1.0 else stats.norm.logpdf(x[0])

        model = MontyModel(["x"], density)
        s = sample(model, RandomWalk(np.eye(1)), 500, initial=[0.0], seed=5)
        assert not np.any(np.isnan(s.density))
        assert np.all(s.pars <= 1.0)
        assert s.details[0]["n_failed"] > 0

    def test_arithmetic_error_is_rejection(self):
        def density(x):
            if x[0] > 1.0:
                raise ZeroDivisionError("boom")
            return stats.norm.logpdf(x[0])

        model = MontyModel(["x"], density)
        s = sample(model, RandomWalk(np.eye(1)), 200, initial=[0.0], seed=5)
        assert np.all(s.pars <= 1.0)
        assert s.details[0]["n_failed"] > 0

    def test_acceptance_rate(self):
        model = model_prior({"x": Normal(0.0, 1.0)})
        s = sample(model, RandomWalk(np.eye(1)), 500, initial=[0.0], seed=1)
        rate = s.details[0]["acceptance_rate"]
        assert 0.3 < rate < 0.9
        moved = np.mean(np.diff(s.pars[0, :, 0]) != 0)
        assert abs(moved - rate) < 0.05

    def test_vcv_validation(self):
        with pytest.raises(ValueError):
            RandomWalk(np.array([[1.0, 2.0], [0.0, 1.0]]))
        model = model_prior({"x": Normal(0.0, 1.0)})
        with pytest.raises(ValueError):
            sample(model, RandomWalk(np.eye(2)), 10, initial=[0.0])

    def test_semi_definite_vcv(self):
        # second parameter fixed by a zero proposal variance
        model = model_prior({"a": Normal(0.0, 1.0), "b": Normal(0.0, 1.0)})
        s = sample(model, RandomWalk(np.diag([1.0, 0.0])), 200, initial=[0.0, 0.5], seed=1)
        np.testing.assert_array_equal(s.pars[1], 0.5)


# ============================================================================
# Adaptive
# ============================================================================

class TestAdaptive:

    def test_learns_scale(self):
        model = model_prior({"a": Normal(0.0, 3.0), "b": Normal(0.0, 3.0)})
        sampler = Adaptive(np.eye(2) * 0.01, initial_vcv_weight=10)
        s = sample(model, sampler, 3000, initial=[0.0, 0.0], seed=6)
        details = s.details[0]
        assert np.all(np.diag(details["vcv"]) > 1.0)
        assert 0.1 < details["acceptance_rate"] < 0.5
        x = s.pars[:, 1000:, 0]
        assert np.all(np.abs(x.std(axis=1) - 3.0) < 0.75)

    def test_adapt_end_freezes_proposal(self):
        model = model_prior({"a": Normal(0.0, 1.0)})
        sampler = Adaptive(np.eye(1), adapt_end=50)
        s = sample(model, sampler, 200, initial=[0.0], seed=1)
        # weight counts included samples; forgetting drops a fifth of them
        assert s.details[0]["weight"] == 50 - 10

    def test_forgotten_samples_are_released(self):
        model = model_prior({"a": Normal(0.0, 1.0)})
        sampler = Adaptive(np.eye(1), forget_rate=0.5)
        rng = np.random.default_rng(1)
        state = sampler.initialise(np.array([0.0]), model, rng)
        for _ in range(100):
            state = sampler.step(state, model, rng)
        assert sampler.weight == 50
        assert len(sampler._history) == 50

    def test_parameter_validation(self):
        with pytest.raises(ValueError):
            Adaptive(np.eye(1), acceptance_target=1.5)
        with pytest.raises(ValueError):
            Adaptive(np.eye(1), forget_rate=1.0)
        with pytest.raises(ValueError):
            Adaptive(np.eye(1), initial_vcv_weight=-1)


# ============================================================================
# HMC
# ============================================================================

class TestHMC:

    def test_lower_autocorrelation_than_random_walk(self, correlated_gaussian):
        n = 2000
        rw = sample(correlated_gaussian, RandomWalk(CORRELATED_VCV * 2.38 ** 2 / 2),
                    n, initial=[0.0, 0.0], seed=7)
        hmc = sample(correlated_gaussian, HMC(epsilon=0.1, n_integration_steps=20),
                     n, initial=[0.0, 0.0], seed=7)
        ac_rw = lag1_autocorrelation(rw.pars[0, :, 0])
        ac_hmc = lag1_autocorrelation(hmc.pars[0, :, 0])
        assert ac_hmc < ac_rw
        assert abs(hmc.pars[0, :, 0].mean()) < 0.3
        assert hmc.details[0]["acceptance_rate"] > 0.5

    def test_requires_gradient(self):
        model = MontyModel(["x"], lambda x: 0.0)
        with pytest.raises(ValueError):
            sample(model, HMC(), 10, initial=[0.0])

    def test_bounded_parameter(self):
        model = model_prior({"x": Gamma(2.0, 1.0)})
        s = sample(model, HMC(epsilon=0.2, n_integration_steps=10), 2000,
                   initial=[1.0], seed=8)
        x = s.pars[0, :, 0]
        assert np.all(x > 0)
        assert abs(x.mean() - 2.0) < 0.4

    def test_validation(self):
        with pytest.raises(ValueError):
            HMC(epsilon=0.0)
        with pytest.raises(ValueError):
            HMC(n_integration_steps=0)


# ============================================================================
# Parallel tempering
# ============================================================================

class TestParallelTempering:

    def test_ladder(self):
        np.testing.assert_allclose(temperature_ladder(4), [1.0, 0.75, 0.5, 0.25, 0.0])
        beta = temperature_ladder(3, beta_min=0.01)
        assert beta[0] == 1.0 and beta[-1] == pytest.approx(0.01)
        np.testing.assert_allclose(beta[1:] / beta[:-1], beta[1] / beta[0])
        with pytest.raises(ValueError):
            temperature_ladder(0)

    def test_visits_both_modes(self):
        model = bimodal_posterior()
        sampler = ParallelTempering(RandomWalk(np.eye(1) * 0.5), n_rungs=6)
        s = sample(model, sampler, 2000, initial=[3.0], seed=9)
        x = s.pars[0, :, 0]
        assert np.any(x < -1.0) and np.any(x > 1.0)
        details = s.details[0]
        assert len(details["rung_acceptance_rate"]) == 7
        assert np.all(details["swap_acceptance_rate"] > 0)

    def test_reported_density_is_untempered(self):
        model = bimodal_posterior()
        sampler = ParallelTempering(RandomWalk(np.eye(1) * 0.5), n_rungs=3)
        s = sample(model, sampler, 200, initial=[3.0], seed=1)
        expected = model.density(s.pars[:, :, 0])
        np.testing.assert_allclose(s.density[:, 0], expected)

    def test_base_model(self):
        target = model_function(lambda x: stats.norm.logpdf(x, 1.0, 0.5))
        base = MontyModel(["x"], lambda x: stats.norm.logpdf(x[0], 0.0, 3.0),
                          direct_sample=lambda rng: rng.normal(0.0, 3.0, 1))
        sampler = ParallelTempering(RandomWalk(np.eye(1) * 0.25), n_rungs=3, base=base)
        s = sample(target, sampler, 1000, initial=[0.0], seed=2)
        assert abs(s.pars[0, 200:, 0].mean() - 1.0) < 0.25

    def test_requires_decomposition(self):
        model = model_function(lambda x: -x ** 2)
        with pytest.raises(ValueError):
            sample(model, ParallelTempering(RandomWalk(np.eye(1)), n_rungs=2), 10, initial=[0.0])

    def test_validation(self):
        with pytest.raises(ValueError):
            ParallelTempering(RandomWalk(np.eye(1)))
        with pytest.raises(ValueError):
            ParallelTempering(RandomWalk(np.eye(1)), beta=[0.5, 0.1])
        with pytest.raises(ValueError):
            ParallelTempering(RandomWalk(np.eye(1)), beta=[1.0, 0.5, 0.7])


# ============================================================================
# Chains, runners and output
# ============================================================================

def _normal_model():
    return model_prior({"a": Normal(0.0, 1.0), "b": Normal(1.0, 2.0)})


class TestSample:

    def test_shapes(self):
        s = sample(_normal_model(), RandomWalk(np.eye(2)), 100, n_chains=3, seed=1)
        assert s.pars.shape == (2, 100, 3)
        assert s.density.shape == (100, 3)
        assert s.initial.shape == (2, 3)
        assert s.parameter_names == ("a", "b")
        assert len(s.details) == 3
        assert s.acceptance_rate.shape == (3,)

    def test_chains_differ(self):
        s = sample(_normal_model(), RandomWalk(np.eye(2)), 50, n_chains=2, seed=1)
        assert not np.array_equal(s.pars[:, :, 0], s.pars[:, :, 1])

    def test_reproducible(self):
        a = sample(_normal_model(), RandomWalk(np.eye(2)), 50, n_chains=2, seed=1)
        b = sample(_normal_model(), RandomWalk(np.eye(2)), 50, n_chains=2, seed=1)
        np.testing.assert_array_equal(a.pars, b.pars)

    def test_chain_independent_of_chain_count(self):
        a = sample(_normal_model(), RandomWalk(np.eye(2)), 50, n_chains=1, seed=1)
        b = sample(_normal_model(), RandomWalk(np.eye(2)), 50, n_chains=3, seed=1)
        np.testing.assert_array_equal(a.pars[:, :, 0], b.pars[:, :, 0])

    def test_sampler_not_mutated(self):
        sampler = Adaptive(np.eye(2))
        sample(_normal_model(), sampler, 50, seed=1)
        assert sampler.n_steps == 0

    def test_initial_broadcast_and_validation(self):
        s = sample(_normal_model(), RandomWalk(np.eye(2)), 5, initial=[0.5, 0.5], n_chains=2, seed=1)
        np.testing.assert_array_equal(s.initial, [[0.5, 0.5], [0.5, 0.5]])
        with pytest.raises(ValueError):
            sample(_normal_model(), RandomWalk(np.eye(2)), 5, initial=np.zeros((2, 3)), n_chains=2)
        model = MontyModel(["x"], lambda x: 0.0)
        with pytest.raises(ValueError):
            sample(model, RandomWalk(np.eye(1)), 5)

    def test_parallel_runner_matches_serial(self):
        model = _normal_model()
        serial = sample(model, RandomWalk(np.eye(2)), 100, n_chains=2, seed=3,
                        runner=SerialRunner())
        parallel = sample(model, RandomWalk(np.eye(2)), 100, n_chains=2, seed=3,
                          runner=ParallelRunner(n_workers=2))
        np.testing.assert_array_equal(serial.pars, parallel.pars)
        np.testing.assert_array_equal(serial.density, parallel.density)

    def test_observations(self):
        counter = {"n": 0}

        def density(x):
            counter["n"] += 1
            return stats.norm.logpdf(x[0])

        model = MontyModel(["x"], density,
                           observer=Observer(lambda: {"calls": np.array([counter["n"], 0.0])}))
        s = sample(model, RandomWalk(np.eye(1)), 40, initial=[0.0], n_chains=2, seed=1)
        assert s.observations["calls"].shape == (2, 40, 2)


class TestSamplesPostProcessing:

    @pytest.fixture
    def samples(self):
        return sample(_normal_model(), RandomWalk(np.eye(2)), 100, n_chains=2, seed=1)

    def test_thin(self, samples):
        t = samples.thin(thinning_factor=2, burnin=10)
        assert t.pars.shape == (2, 45, 2)
        np.testing.assert_array_equal(t.pars, samples.pars[:, 10::2])
        np.testing.assert_array_equal(t.density, samples.density[10::2])
        np.testing.assert_array_equal(samples_thin(samples, 2, 10).pars, t.pars)

    def test_thin_validation(self, samples):
        with pytest.raises(ValueError):
            samples.thin(0)
        with pytest.raises(ValueError):
            samples.thin(1, burnin=100)

    def test_save_load(self, samples, tmp_path):
        path = tmp_path / "samples.npz"
        samples.save(path)
        loaded = Samples.load(path)
        np.testing.assert_array_equal(loaded.pars, samples.pars)
        np.testing.assert_array_equal(loaded.density, samples.density)
        assert loaded.parameter_names == samples.parameter_names
        np.testing.assert_allclose(loaded.acceptance_rate, samples.acceptance_rate)
        assert loaded.restart is None

    def test_continue_matches_uninterrupted(self):
        model = _normal_model()
        full = sample(model, Adaptive(np.eye(2)), 60, initial=[0.0, 0.0], seed=4)
        first = sample(model, Adaptive(np.eye(2)), 30, initial=[0.0, 0.0], seed=4,
                       restartable=True)
        resumed = sample_continue(first, model, 30)
        assert resumed.n_steps == 60
        np.testing.assert_array_equal(resumed.pars, full.pars)
        np.testing.assert_array_equal(resumed.density, full.density)

    def test_continue_requires_restart(self, samples):
        with pytest.raises(ValueError):
            sample_continue(samples, _normal_model(), 10)


# ============================================================================
# End-to-end: particle filter inside MCMC
# ============================================================================

def test_pmcmc_sir():
    system = System(make_sir(deterministic=True), {})
    system.set_state_initial()
    times = np.arange(1.0, 11.0)
    data = {"time": times, "cases": np.round(system.simulate(times)[3, 0])}

    pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=30)
    likelihood = likelihood_model(pf, Packer(["beta"]), save_trajectories=["I"])
    prior = model_prior({"beta": Uniform(0.05, 0.5)})
    posterior = prior + likelihood
    assert posterior.is_stochastic

    s = sample(posterior, RandomWalk(np.eye(1) * 0.001, rerun_every=10), 30,
               initial=[0.2], n_chains=2, seed=1)
    assert s.pars.shape == (1, 30, 2)
    assert np.all(np.isfinite(s.density))
    assert np.all((s.pars >= 0.05) & (s.pars <= 0.5))
    assert s.observations["trajectories"].shape == (1, 10, 30, 2)


def test_pmcmc_start_where_prior_is_zero():
    system = System(make_sir(deterministic=True), {})
    system.set_state_initial()
    times = np.arange(1.0, 11.0)
    data = {"time": times, "cases": np.round(system.simulate(times)[3, 0])}

    pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=20)
    posterior = (model_prior({"beta": Gamma(2.0, 0.1)})
                 + likelihood_model(pf, Packer(["beta"]), save_state=True))
    # Gamma(2) density is zero at the boundary, so the filter never runs there
    with pytest.warns(RuntimeWarning):
        s = sample(posterior, RandomWalk(np.eye(1) * 0.01), 20,
                   initial=[0.0], n_chains=2, seed=1)
    assert s.observations["state"].shape == (4, 20, 2)
    assert np.all(np.isfinite(s.density[-1]))
    # steps stored before the first accepted move carry no observation
    stuck = s.density == -np.inf
    assert np.all(np.isnan(s.observations["state"][:, stuck]))
    assert np.all(np.isfinite(s.observations["state"][:, ~stuck]))
