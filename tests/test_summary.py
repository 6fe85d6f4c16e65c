"""
Unit tests for posterior summaries and diagnostics.

Tests cover:
- R-hat and ESS on synthetic chains
- Per-parameter summaries from a short run
- Inclusion probabilities
- Non-convergence warnings
"""

import warnings

import pytest
import numpy as np

from inference.errors import NonConvergenceWarning
from inference.model_builder import ModelBuilder, ModelConfig
from inference.sampler import Chain, ChainStatus, InferenceResult, MCMCDriver, SamplerConfig
from inference.summary import DiagnosticsComputer, ParameterSummary, PosteriorSummarizer
from curves.dose_response import ResponseType
from simulation.simulator import DoseResponseSimulator


@pytest.fixture(scope="module")
def result() -> InferenceResult:
    table = DoseResponseSimulator(n_species=2).generate(
        doses=[0.1, 0.3, 1.0, 3.0, 10.0], c=0.0, d=1.0, e=1.0, b=2.0,
        noise_sd=0.02, replicates=2, random_seed=1,
    )
    builder = ModelBuilder(table, ModelConfig(n_species=2, n_trials=1, trial_effects=False))
    config = SamplerConfig(iterations=300, burn_in=100, n_chains=2, random_seed=11)
    return MCMCDriver(config).run(builder)


def fake_result(w: np.ndarray, config: SamplerConfig = None) -> InferenceResult:
    """Result with hand-made indicator draws, shape (chains, draws, groups)."""
    chains = []
    for i, w_chain in enumerate(w):
        chain = Chain(i, status=ChainStatus.COMPLETED)
        chain.draws = {"w": np.asarray(w_chain, dtype=float)}
        chains.append(chain)
    groups = [(s, 1) for s in range(1, w.shape[2] + 1)]
    return InferenceResult(chains, groups, [], ResponseType.ABSORBANCE, 0.5,
                           config or SamplerConfig(), 0.0)


class TestDiagnosticsComputer:
    """Tests for R-hat and ESS."""

    def test_rhat_converged(self) -> None:
        samples = np.random.default_rng(0).normal(size=(4, 1000))
        assert DiagnosticsComputer.rhat(samples) < 1.01

    def test_rhat_separated_chains(self) -> None:
        samples = np.random.default_rng(0).normal(size=(2, 500))
        samples[1] += 5.0
        assert DiagnosticsComputer.rhat(samples) > 1.5

    def test_rhat_shape(self) -> None:
        with pytest.raises(ValueError, match="chains, draws"):
            DiagnosticsComputer.rhat(np.zeros(10))

    def test_ess_independent(self) -> None:
        samples = np.random.default_rng(1).normal(size=2000)
        assert DiagnosticsComputer.ess(samples) > 1000

    def test_ess_autocorrelated(self) -> None:
        rng = np.random.default_rng(2)
        x = np.zeros(2000)
        for t in range(1, 2000):
            x[t] = 0.95 * x[t - 1] + rng.normal()
        assert DiagnosticsComputer.ess(x) < 300


class TestPosteriorSummarizer:
    """Tests for per-parameter summaries."""

    def test_summary_fields(self, result) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            summaries = PosteriorSummarizer().summarize(result)

        for label in ("c[0]", "c[1]", "d[0]", "e[1]", "b[0]", "w[0]", "sigma", "e_diff[0]"):
            assert label in summaries
        s = summaries["e[0]"]
        assert isinstance(s, ParameterSummary)
        assert s.lower <= s.mean <= s.upper
        assert s.sd > 0
        assert 0.0 < s.lower and s.upper <= 10.0

    def test_interval_narrows_with_ci(self, result) -> None:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            wide = PosteriorSummarizer().summarize(result, ["d"], ci=0.95)["d[0]"]
            narrow = PosteriorSummarizer().summarize(result, ["d"], ci=0.5)["d[0]"]
        assert narrow.upper - narrow.lower < wide.upper - wide.lower

    def test_invalid_ci(self, result) -> None:
        with pytest.raises(ValueError, match="ci"):
            PosteriorSummarizer().summarize(result, ci=1.5)

    def test_warns_on_low_ess(self, result) -> None:
        summarizer = PosteriorSummarizer(ess_threshold=1e9)
        with pytest.warns(NonConvergenceWarning, match="ESS"):
            summarizer.summarize(result, ["d"])

    def test_explicit_zero_threshold_overrides_config(self) -> None:
        w = np.random.default_rng(3).integers(0, 2, size=(2, 200, 1)).astype(float)
        result = fake_result(w, SamplerConfig(ess_threshold=1e9))
        summarizer = PosteriorSummarizer(rhat_threshold=10.0, ess_threshold=0.0)
        with warnings.catch_warnings():
            warnings.simplefilter("error", NonConvergenceWarning)
            summaries = summarizer.summarize(result, ["w"])
        assert "w[0]" in summaries

    def test_inclusion_probability(self) -> None:
        w = np.zeros((2, 10, 2))
        w[0, :3, 0] = 1.0
        w[1, :5, 1] = 1.0
        probabilities = PosteriorSummarizer.inclusion_probability(fake_result(w))
        assert probabilities == {(1, 1): pytest.approx(0.15), (2, 1): pytest.approx(0.25)}

    def test_inclusion_probability_in_unit_interval(self, result) -> None:
        for p in PosteriorSummarizer.inclusion_probability(result).values():
            assert 0.0 <= p <= 1.0
