"""
Tests for the particle filter, the deterministic filter and the filter
likelihood adapter.

Run: pytest test_filter.py -v
"""

import warnings

import pytest
import numpy as np
from scipy import stats

from montysim.errors import ArtifactNotSavedError, DegenerateFilterError
from montysim.filters.data import prepare_data
from montysim.filters.likelihood import likelihood_model
from montysim.filters.particle import ParticleFilter
from montysim.filters.unfilter import Unfilter
from montysim.models.generator import SystemGenerator
from montysim.models.packer import Packer
from montysim.models.sir import make_sir, make_sir_ode
from montysim.simulation.system import System


# ============================================================================
# Fixtures
# ============================================================================

def sir_cases(n_days: int) -> dict:
    """Daily cases from the deterministic SIR with default parameters."""
    system = System(make_sir(deterministic=True), {})
    system.set_state_initial()
    times = np.arange(1.0, n_days + 1.0)
    incidence = system.simulate(times)[3, 0]
    return {"time": times, "cases": np.round(incidence)}


@pytest.fixture
def data():
    return sir_cases(20)


@pytest.fixture
def short_data():
    return sir_cases(10)


def make_weighted(log_weights) -> SystemGenerator:
    """
    Particle i has state i; the compare function returns log_weights[i]
    for a particle in state i. Dynamics are the identity.
    """
    log_weights = np.asarray(log_weights, dtype=float)
    return SystemGenerator(
        state={"id": 1},
        parameters=(),
        initial=lambda time, pars, rng: np.arange(rng.n_streams, dtype=float)[:, np.newaxis],
        update=lambda time, dt, state, pars, rng: state,
        compare={"y": lambda time, state, observed, pars: log_weights[state[:, 0].astype(int)]},
        is_stochastic=False,
    )


# ============================================================================
# Observation data
# ============================================================================

class TestPrepareData:

    def test_columns(self, data):
        d = prepare_data(data, time_start=0.0)
        assert len(d) == 20
        assert d.time_start == 0.0
        assert d.streams == ("cases",)

    def test_records_with_missing(self):
        d = prepare_data([
            {"time": 1, "cases": 3},
            {"time": 2, "cases": None},
            {"time": 3, "cases": np.nan},
        ])
        assert d.records == [{"cases": 3}, {}, {}]
        assert d.time_start == 1.0
        assert d.index_of(2.0) == 1

    def test_invalid(self):
        with pytest.raises(ValueError):
            prepare_data({"time": [1, 1], "cases": [1, 2]})
        with pytest.raises(ValueError):
            prepare_data({"time": [1, 2]}, time_start=5.0)
        with pytest.raises(ValueError):
            prepare_data({"cases": [1, 2]})
        with pytest.raises(ValueError):
            prepare_data({"time": [1, 2], "cases": [1]})
        with pytest.raises(ValueError):
            prepare_data({"time": [1, 2]}).index_of(1.5)


# ============================================================================
# Particle filter
# ============================================================================

class TestParticleFilter:

    def test_finite_likelihood(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=100, seed=1)
        ll = pf.run({})
        assert isinstance(ll, float)
        assert np.isfinite(ll)
        assert ll < 0
        result = pf.last_result
        assert result.log_likelihood_increments.shape == (1, 20)
        assert result.T == 20
        assert 1.0 <= result.average_ess() <= 100.0 + 1e-9
        assert result.log_likelihood[0] == pytest.approx(result.log_likelihood_increments.sum())
        assert np.all(result.resampled)
        assert np.all((result.ess >= 1) & (result.ess <= 100 + 1e-9))

    def test_resampling_preserves_particle_count(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=37, seed=1)
        pf.run({}, save_trajectories=True, save_state=True)
        assert pf.last_state().shape == (4, 37)
        assert pf.last_trajectories().shape == (4, 37, 20)

    @pytest.mark.parametrize("method", ["systematic", "stratified", "multinomial", "residual"])
    def test_resample_methods(self, short_data, method):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=50,
                            seed=1, resample_method=method)
        assert np.isfinite(pf.run({}))

    def test_unknown_resample_method(self, data):
        with pytest.raises(ValueError):
            ParticleFilter(make_sir(), data, resample_method="bogus")

    def test_repeated_runs_differ(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=200, seed=1)
        assert pf.run({}) != pf.run({})

    def test_independent_streams_differ(self, data):
        a = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=200, seed=1).run({})
        b = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=200, seed=2).run({})
        assert a != b

    def test_same_seed_reproducible(self, data):
        a = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50, seed=3).run({})
        b = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50, seed=3).run({})
        assert a == b

    def test_rng_state_roundtrip(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50, seed=3)
        state = pf.get_rng_state()
        a = pf.run({})
        pf.set_rng_state(state)
        assert pf.run({}) == a

    def test_variance_decreases_with_particles(self, short_data):
        def spread(n_particles):
            pf = ParticleFilter(make_sir(), short_data, time_start=0.0,
                                n_particles=n_particles, seed=10)
            return np.var([pf.run({}) for _ in range(20)])
        assert spread(1000) < spread(100)

    @pytest.mark.slow
    def test_variance_decreases_with_particles_full_size(self, data):
        def spread(n_particles):
            pf = ParticleFilter(make_sir(), data, time_start=0.0,
                                n_particles=n_particles, seed=11)
            return np.var([pf.run({}) for _ in range(100)])
        assert spread(2000) < spread(200)

    def test_log_sum_exp_stability(self):
        gen = make_weighted([0.0, -10000.0])
        pf = ParticleFilter(gen, {"time": [1.0], "y": [0.0]}, time_start=0.0,
                            n_particles=2, seed=1)
        ll = pf.run({})
        # log((exp(0) + exp(-10000)) / 2)
        assert np.isfinite(ll)
        assert ll == pytest.approx(-np.log(2.0), abs=1e-12)

    def test_resampling_removes_impossible_particles(self):
        gen = make_weighted([0.0, -np.inf, -np.inf, 0.0])
        pf = ParticleFilter(gen, {"time": [1.0, 2.0], "y": [0.0, 0.0]}, time_start=0.0,
                            n_particles=4, seed=1)
        ll = pf.run({}, save_state=True)
        # half the weight is lost at the first record; after resampling
        # every particle is possible
        assert ll == pytest.approx(np.log(0.5))
        np.testing.assert_allclose(pf.last_result.log_likelihood_increments[0], [np.log(0.5), 0.0])
        assert set(pf.last_state()[0]) <= {0.0, 3.0}

    def test_degenerate_filter_returns_neg_inf(self):
        gen = make_weighted([-np.inf, -np.inf])
        pf = ParticleFilter(gen, {"time": [1.0, 2.0, 3.0], "y": [0.0] * 3},
                            time_start=0.0, n_particles=2, seed=1)
        with pytest.warns(DegenerateFilterError):
            ll = pf.run({})
        assert ll == -np.inf
        assert np.all(pf.last_result.log_likelihood_increments == -np.inf)

    def test_degenerate_is_runtime_warning(self):
        assert issubclass(DegenerateFilterError, RuntimeWarning)

    def test_missing_data_skips_resampling(self, data):
        data = {k: list(v) for k, v in data.items()}
        data["cases"][4] = None
        data["cases"][9] = np.nan
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50, seed=1)
        ll = pf.run({})
        result = pf.last_result
        assert np.isfinite(ll)
        assert result.log_likelihood_increments[0, 4] == 0.0
        assert result.log_likelihood_increments[0, 9] == 0.0
        assert not result.resampled[0, 4] and not result.resampled[0, 9]
        assert result.resampled[0, 0]

    def test_requires_compare(self):
        gen = SystemGenerator(
            state={"x": 1}, parameters=(),
            initial=lambda time, pars, rng: 0.0,
            update=lambda time, dt, state, pars, rng: state,
        )
        with pytest.raises(ValueError):
            ParticleFilter(gen, {"time": [1.0], "y": [1.0]})


class TestParticleFilterArtifacts:

    def test_not_saved(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=20, seed=1)
        with pytest.raises(ArtifactNotSavedError):
            pf.last_trajectories()
        pf.run({})
        with pytest.raises(ArtifactNotSavedError):
            pf.last_trajectories()
        with pytest.raises(ArtifactNotSavedError):
            pf.last_state()
        with pytest.raises(ArtifactNotSavedError):
            pf.last_snapshots()

    def test_artifact_error_is_runtime_error(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=20, seed=1)
        with pytest.raises(RuntimeError):
            pf.last_state()

    def test_trajectories_end_at_final_state(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=30, seed=4)
        pf.run({}, save_trajectories=True, save_state=True)
        np.testing.assert_array_equal(pf.last_trajectories()[:, :, -1], pf.last_state())

    def test_trajectories_follow_lineages(self, data):
        # along a surviving lineage S never increases and S + I + R = N
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=30, seed=4)
        pf.run({}, save_trajectories=True)
        x = pf.last_trajectories()
        assert np.all(np.diff(x[0], axis=-1) <= 0)
        np.testing.assert_allclose(x[0] + x[1] + x[2], 1000.0)

    def test_trajectory_subset(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=10, seed=1)
        pf.run({}, save_trajectories=["I"])
        assert pf.last_trajectories().shape == (1, 10, 20)
        pf.run({}, save_trajectories="incidence")
        assert pf.last_trajectories().shape == (1, 10, 20)

    def test_snapshots(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=10, seed=1)
        pf.run({}, save_trajectories=True, save_snapshots=[5.0, 10.0])
        snaps = pf.last_snapshots()
        assert snaps.shape == (4, 10, 2)
        traj = pf.last_trajectories()
        np.testing.assert_array_equal(snaps[:, :, 0], traj[:, :, 4])
        np.testing.assert_array_equal(snaps[:, :, 1], traj[:, :, 9])
        np.testing.assert_array_equal(pf.last_result.snapshot_times, [5.0, 10.0])

    def test_snapshot_time_must_be_data_time(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=10, seed=1)
        with pytest.raises(ValueError):
            pf.run({}, save_snapshots=[5.5])


class TestGroupedFilter:

    def test_grouped_run(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50,
                            n_groups=2, seed=1)
        ll = pf.run([{"beta": 0.2}, {"beta": 0.5}], save_trajectories=True)
        assert ll.shape == (2,)
        # true parameters fit better
        assert ll[0] > ll[1]
        assert pf.last_trajectories().shape == (4, 50, 2, 20)

    def test_grouped_requires_list(self, data):
        pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=5,
                            n_groups=2, seed=1)
        with pytest.raises(ValueError):
            pf.run({"beta": 0.2})

    def test_one_degenerate_group(self):
        gen = SystemGenerator(
            state={"x": 1}, parameters=("w",),
            initial=lambda time, pars, rng: np.zeros((rng.n_streams, 1)),
            update=lambda time, dt, state, pars, rng: state,
            compare={"y": lambda time, state, observed, pars: np.full(len(state), pars["w"])},
            is_stochastic=False,
        )
        pf = ParticleFilter(gen, {"time": [1.0, 2.0], "y": [0.0, 0.0]}, time_start=0.0,
                            n_particles=3, n_groups=2, seed=1)
        with pytest.warns(DegenerateFilterError):
            ll = pf.run([{"w": -1.0}, {"w": -np.inf}])
        assert ll[0] == pytest.approx(-2.0)
        assert ll[1] == -np.inf


# ============================================================================
# Deterministic filter
# ============================================================================

class TestUnfilter:

    def test_matches_direct_computation(self, data):
        gen = make_sir_ode()
        uf = Unfilter(gen, data, time_start=0.0)
        ll = uf.run({})

        system = System(gen, {})
        system.set_state_initial()
        incidence = system.simulate(data["time"])[3, 0]
        expected = stats.poisson.logpmf(data["cases"], incidence).sum()
        assert ll == pytest.approx(expected, rel=1e-6)

    def test_deterministic(self, data):
        uf = Unfilter(make_sir(deterministic=True), data, time_start=0.0)
        assert uf.run({}) == uf.run({})

    def test_artifacts(self, data):
        uf = Unfilter(make_sir_ode(), data, time_start=0.0)
        uf.run({}, save_trajectories=True, save_state=True, save_snapshots=[3.0])
        assert uf.last_trajectories().shape == (4, 1, 20)
        assert uf.last_state().shape == (4, 1)
        assert uf.last_snapshots().shape == (4, 1, 1)
        np.testing.assert_array_equal(uf.last_trajectories()[:, :, -1], uf.last_state())

    def test_grouped(self, data):
        uf = Unfilter(make_sir_ode(), data, time_start=0.0, n_groups=2)
        ll = uf.run([{"beta": 0.2}, {"beta": 0.3}])
        assert ll.shape == (2,)
        assert ll[0] > ll[1]

    def test_rejects_stochastic_model(self, data):
        with pytest.raises(ValueError):
            Unfilter(make_sir(), data)


# ============================================================================
# Filter as a density
# ============================================================================

class TestLikelihoodModel:

    def test_particle_filter_density(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=50, seed=1)
        model = likelihood_model(pf, Packer(["beta", "gamma"]))
        assert model.parameters == ("beta", "gamma")
        assert model.is_stochastic
        a = model.density(np.array([0.2, 0.1]))
        b = model.density(np.array([0.2, 0.1]))
        assert np.isfinite(a) and np.isfinite(b)
        assert a != b

    def test_reproducible(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=50, seed=1)
        model = likelihood_model(pf, Packer(["beta"]), reproducible=True)
        assert model.density(np.array([0.2])) == model.density(np.array([0.2]))

    def test_reseed(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=50, seed=1)
        model = likelihood_model(pf, Packer(["beta"]))
        model.reseed(5)
        a = model.density(np.array([0.2]))
        model.reseed(5)
        assert model.density(np.array([0.2])) == a

    def test_observer(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=20, seed=1)
        model = likelihood_model(pf, Packer(["beta"]), save_trajectories=["I"],
                                 save_state=True)
        model.density(np.array([0.2]))
        obs = model.observer.observe()
        assert obs["trajectories"].shape == (1, 10)
        assert obs["state"].shape == (4,)

    def test_observer_with_array_arguments(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=20, seed=1)
        model = likelihood_model(pf, Packer(["beta"]),
                                 save_trajectories=np.array([1, 3]),
                                 save_snapshots=np.array([5.0, 8.0]))
        assert np.isfinite(model.density(np.array([0.2])))
        obs = model.observer.observe()
        assert obs["trajectories"].shape == (2, 10)
        assert obs["snapshots"].shape == (4, 2)
        assert "state" not in obs

    def test_no_observer_for_empty_requests(self, short_data):
        pf = ParticleFilter(make_sir(), short_data, time_start=0.0, n_particles=20, seed=1)
        model = likelihood_model(pf, Packer(["beta"]), save_snapshots=np.array([]))
        assert model.observer is None

    def test_unfilter_density(self, data):
        uf = Unfilter(make_sir_ode(), data, time_start=0.0)
        model = likelihood_model(uf, Packer(["beta"], fixed={"gamma": 0.1}))
        assert not model.is_stochastic
        assert model.density(np.array([0.2])) == model.density(np.array([0.2]))
        assert model.density(np.array([0.2])) > model.density(np.array([0.4]))

    def test_rejects_grouped(self, data):
        pf = ParticleFilter(make_sir(), data, n_particles=5, n_groups=2)
        with pytest.raises(ValueError):
            likelihood_model(pf, Packer(["beta"]))


def test_no_warnings_in_normal_run(data):
    pf = ParticleFilter(make_sir(), data, time_start=0.0, n_particles=50, seed=1)
    with warnings.catch_warnings():
        warnings.simplefilter("error", DegenerateFilterError)
        pf.run({})
