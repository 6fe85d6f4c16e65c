"""
Unit tests for update kernels and reversible-jump moves.

Tests cover:
- Kernel registry and assignment by structural class
- Conjugate normal and gamma updates against analytic posteriors
- Random-walk bounds, rejection handling and adaptation
- Reversible-jump toggles recovering the inclusion prior
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose

from curves.dose_response import baseline_mean
from inference.distributions import (
    gamma_prior,
    normal_likelihood,
    normal_prior,
    truncated_normal_logpdf,
    uniform_prior,
)
from inference.errors import NumericInstabilityError
from inference.graph import ModelGraph, Structure
from inference.kernels import (
    KERNEL_REGISTRY,
    BlockRandomWalkKernel,
    ConjugateGammaKernel,
    ConjugateNormalKernel,
    RandomWalkKernel,
    assign_kernels,
)
from inference.model_builder import ModelBuilder, ModelConfig, ObservationTable
from inference.rjmcmc import Active, Inactive, ReversibleJumpKernel, RJMCMCSampler
from simulation.simulator import DoseResponseSimulator


def location_graph(y, theta0: float = 0.0, tau0: float = 1.0, prior_scale: float = 10.0):
    graph = ModelGraph()
    tau = graph.add_stochastic(
        "tau", tau0, gamma_prior("tau", 1.0, 1.0),
        structure=Structure.CONJUGATE_GAMMA, meta={"shape": 1.0, "rate": 1.0},
    )
    theta = graph.add_stochastic(
        "theta", theta0, normal_prior("theta", 0.0, prior_scale),
        structure=Structure.CONJUGATE_NORMAL, meta={"loc": 0.0, "scale": prior_scale},
    )
    n = len(y)
    mu = graph.add_deterministic("mu", lambda t: np.full(n, t), [theta])
    graph.add_observed("y", np.asarray(y, dtype=float), normal_likelihood("y"), [mu, tau])
    return graph


def hormesis_prior(p: float):
    def log_density(state) -> float:
        if isinstance(state, Inactive):
            return float(np.log1p(-p))
        return float(np.log(p) + truncated_normal_logpdf(state.magnitude, 0.0, 1.0, 0.0, np.inf))
    return log_density


class TestRegistry:
    def test_every_structure_registered(self) -> None:
        assert set(KERNEL_REGISTRY) == set(Structure)
        assert KERNEL_REGISTRY[Structure.INDICATOR_PAIR] is ReversibleJumpKernel

    def test_assignment_for_model(self) -> None:
        table = ObservationTable([0.1, 1.0, 10.0] * 2, [1.0, 0.5, 0.0] * 2,
                                 [1, 1, 1, 1, 1, 1], [1, 1, 1, 2, 2, 2])
        model = ModelBuilder(table, ModelConfig(n_species=1, n_trials=2)).build()
        kernels = assign_kernels(model.graph, np.random.default_rng(0))
        by_name = {k.node.name: type(k) for k in kernels}

        assert by_name["tau"] is ConjugateGammaKernel
        assert by_name["c[0]"] is ConjugateNormalKernel
        assert by_name["d[0]"] is ConjugateNormalKernel
        assert by_name["e[0]"] is RandomWalkKernel
        assert by_name["b[0]"] is RandomWalkKernel
        assert by_name["hormesis[0]"] is ReversibleJumpKernel
        assert by_name["effect_scale[3]"] is RandomWalkKernel
        assert by_name["effect_corr_free"] is BlockRandomWalkKernel
        assert by_name["effect_z[1]"] is BlockRandomWalkKernel
        assert len(kernels) == len(model.graph.latent_nodes())


class TestConjugateKernels:
    """Closed-form updates against analytic full conditionals."""

    def test_conjugate_normal_posterior(self) -> None:
        rng = np.random.default_rng(1)
        y = rng.normal(2.0, 1.0, size=50)
        graph = location_graph(y)
        kernel = ConjugateNormalKernel(graph["theta"], graph, np.random.default_rng(2))

        draws = []
        for _ in range(2000):
            kernel.step()
            draws.append(graph["theta"].value)

        post_precision = 1.0 / 100.0 + 50.0
        post_mean = y.sum() / post_precision
        assert np.mean(draws) == pytest.approx(post_mean, abs=0.02)
        assert np.std(draws) == pytest.approx(1.0 / np.sqrt(post_precision), rel=0.1)
        assert kernel.acceptance_rate == 1.0

    def test_conjugate_normal_truncated(self) -> None:
        graph = location_graph(np.full(20, -1.0))
        graph["theta"].meta.update(lower=0.0, upper=np.inf)
        kernel = ConjugateNormalKernel(graph["theta"], graph, np.random.default_rng(3))
        for _ in range(200):
            kernel.step()
            assert graph["theta"].value > 0.0

    def test_conjugate_gamma_posterior(self) -> None:
        rng = np.random.default_rng(4)
        y = rng.normal(0.0, 0.5, size=200)
        graph = location_graph(y, theta0=0.0)
        kernel = ConjugateGammaKernel(graph["tau"], graph, np.random.default_rng(5))

        draws = []
        for _ in range(3000):
            kernel.step()
            draws.append(graph["tau"].value)

        shape = 1.0 + 100.0
        rate = 1.0 + 0.5 * np.sum(y ** 2)
        assert np.mean(draws) == pytest.approx(shape / rate, rel=0.03)

    def test_default_precision_prior_recovers_small_noise(self) -> None:
        """With curve parameters at truth, sigma follows the residuals, not the prior."""
        table = DoseResponseSimulator(n_species=1).generate(
            [0.05, 0.1, 0.3, 1.0, 3.0, 10.0, 30.0], c=0.0, d=1.0, e=1.0, b=2.0,
            noise_sd=0.01, replicates=2, random_seed=8,
        )
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=1, trial_effects=False),
            inits={"c": 0.0, "d": 1.0, "e": 1.0, "b": 2.0},
        ).build()
        kernel = ConjugateGammaKernel(model.graph["tau"], model.graph, np.random.default_rng(9))

        sigmas = []
        for _ in range(2000):
            kernel.step()
            sigmas.append(1.0 / np.sqrt(model.graph["tau"].value))

        resid = table.response - baseline_mean(table.dose, 0.0, 1.0, 1.0, 2.0)
        rms = np.sqrt(np.mean(resid ** 2))
        assert np.median(sigmas) == pytest.approx(rms, rel=0.25)
        assert np.median(sigmas) < 0.02

    def test_update_keeps_caches_consistent(self) -> None:
        graph = location_graph([1.0, 2.0, 3.0])
        kernel = ConjugateNormalKernel(graph["theta"], graph, np.random.default_rng(6))
        graph.log_prob()
        kernel.step()
        assert_allclose(graph["mu"].value, graph["theta"].value)


class TestRandomWalk:
    """Tests for adaptive random-walk Metropolis."""

    def bounded_graph(self, fail_above: float = np.inf):
        graph = ModelGraph()
        x = graph.add_stochastic(
            "x", 0.5, uniform_prior("x", 0.0, 2.0),
            structure=Structure.BOUNDED_CONTINUOUS, meta={"lower": 0.0, "upper": 2.0},
        )
        tau = graph.add_stochastic("tau", 1.0, lambda v: 0.0, structure=Structure.CONJUGATE_GAMMA)

        def mean(v):
            return np.array([np.inf if v > fail_above else v])

        mu = graph.add_deterministic("mu", mean, [x])
        graph.add_observed("y", np.array([0.5]), normal_likelihood("y"), [mu, tau])
        return graph

    def test_stays_in_bounds(self) -> None:
        graph = self.bounded_graph()
        kernel = RandomWalkKernel(graph["x"], graph, np.random.default_rng(0))
        kernel.adaptation.scale = 5.0
        for _ in range(300):
            kernel.step()
            assert 0.0 < graph["x"].value <= 2.0
        assert 0.0 < kernel.acceptance_rate < 1.0

    def test_rejection_restores_state(self) -> None:
        graph = self.bounded_graph(fail_above=1.0)
        kernel = RandomWalkKernel(graph["x"], graph, np.random.default_rng(0))
        lp = graph.log_prob()

        assert kernel._metropolis(1.5) is False
        assert graph["x"].value == 0.5
        assert_allclose(graph["mu"].value, 0.5)
        assert graph.log_prob() == pytest.approx(lp)

    def test_persistent_instability_raises(self) -> None:
        graph = self.bounded_graph(fail_above=1.0)
        kernel = RandomWalkKernel(graph["x"], graph, np.random.default_rng(0), max_failures=3)
        for _ in range(3):
            kernel._metropolis(1.5)
        with pytest.raises(NumericInstabilityError, match="consecutive"):
            kernel._metropolis(1.5)

    def test_adapts_only_when_asked(self) -> None:
        graph = self.bounded_graph()
        kernel = RandomWalkKernel(graph["x"], graph, np.random.default_rng(1), adapt_interval=10)
        initial = kernel.scale
        for _ in range(100):
            kernel.step(adapt=False)
        assert kernel.scale == initial
        for _ in range(100):
            kernel.step(adapt=True)
        assert kernel.scale != initial
        assert kernel.adaptation.times_adapted == 10


class TestReversibleJump:
    """Tests for birth/death moves on the hormesis variant."""

    def prior_only_graph(self, p: float, start=None):
        graph = ModelGraph()
        graph.add_stochastic(
            "hormesis[0]",
            start if start is not None else Inactive(),
            hormesis_prior(p),
            structure=Structure.INDICATOR_PAIR,
            meta={"loc": 0.0, "scale": 1.0, "lower": 0.0, "upper": np.inf, "inclusion_prob": p},
        )
        return graph

    def test_variants(self) -> None:
        assert Inactive().indicator == 0
        assert Inactive().magnitude == 0.0
        assert Active(0.7).indicator == 1
        assert Active(0.7).magnitude == 0.7
        assert Active(0.7) == Active(0.7)
        assert Inactive() != Active(0.0)

    def test_recovers_prior_without_data(self) -> None:
        """With no likelihood the chain samples the prior: P(w = 1) = p."""
        p = 0.3
        graph = self.prior_only_graph(p)
        sampler = RJMCMCSampler(graph, np.random.default_rng(7))
        kernel = sampler.indicator_kernels()[0]

        indicators, magnitudes = [], []
        for _ in range(6000):
            sampler.step()
            state = graph["hormesis[0]"].value
            indicators.append(state.indicator)
            if isinstance(state, Active):
                magnitudes.append(state.magnitude)

        assert np.mean(indicators) == pytest.approx(p, abs=0.04)
        # half-normal(0, 1) mean
        assert np.mean(magnitudes) == pytest.approx(np.sqrt(2.0 / np.pi), abs=0.08)
        assert all(m > 0 for m in magnitudes)
        assert kernel.n_births > 0 and kernel.n_deaths > 0

    def test_missing_meta_raises(self) -> None:
        graph = ModelGraph()
        graph.add_stochastic("h", Inactive(), hormesis_prior(0.5),
                             structure=Structure.INDICATOR_PAIR, meta={"loc": 0.0})
        with pytest.raises(ValueError, match="scale"):
            ReversibleJumpKernel(graph["h"], graph, np.random.default_rng(0))

    def test_strong_bump_switches_on(self) -> None:
        """Data with a large hormesis bump are explained only by the active model."""
        dose = np.array([0.5, 1.0, 2.0, 4.0])
        table = ObservationTable(
            dose,
            1.0 + 2.0 * np.exp(-1.0 / np.sqrt(dose)) / (1.0 + (dose / 50.0) ** 2),
            np.ones(4), np.ones(4),
        )
        model = ModelBuilder(
            table,
            ModelConfig(n_species=1, n_trials=1, trial_effects=False),
            inits={"e": 50.0, "b": 2.0, "d": 1.0, "c": 0.0, "tau": 1e4},
        ).build()
        kernel = ReversibleJumpKernel(model.graph["hormesis[0]"], model.graph,
                                      np.random.default_rng(8))
        for _ in range(50):
            kernel.step()
        assert isinstance(model.graph["hormesis[0]"].value, Active)
        assert model.graph["hormesis[0]"].value.magnitude == pytest.approx(2.0, abs=0.05)

    def test_initialize_rejects_invalid_start(self) -> None:
        graph = self.prior_only_graph(0.5)
        graph.add_stochastic(
            "x", 5.0, uniform_prior("x", 0.0, 1.0),
            structure=Structure.BOUNDED_CONTINUOUS, meta={"lower": 0.0, "upper": 1.0},
        )
        sampler = RJMCMCSampler(graph, np.random.default_rng(0))
        with pytest.raises(ValueError, match="violates support"):
            sampler.initialize()
