"""
Correlated per-trial random effects in non-centered form.

Every trial (batch) i carries a deviation vector δ_i over the four curve
channels (d, f, e, b), shared by all of its observations:

    σ_j ~ Exponential(rate)          j = 1..4   # channel scales
    U   ~ LKJCholesky(η)                        # R = U^T U
    z_i ~ Normal(0, I_4)                        # raw latents, one per trial
    δ_i = diag(σ) U^T z_i                       # δ_i ~ N(0, diag(σ) R diag(σ))

Deviations are conditionally independent across trials given (σ, U) and
correlated across channels within a trial. Sampling the raw latents z_i
instead of δ_i decouples the scale/correlation structure from the
per-trial draws.

Channel offsets are applied by the model builder: additively for d and f,
multiplicatively (on the log scale) for e and b so the curve keeps e, b > 0.
"""

from typing import Dict, List, Optional, Sequence
import numpy as np
from numpy.typing import NDArray

from effects.covariance import (
    cholesky_corr_from_unconstrained,
    cholesky_from_correlation,
    correlation_from_cholesky,
    lkj_cholesky_log_density,
    n_free_correlations,
    trial_effect_matrix,
    unconstrained_from_cholesky_corr,
)
from inference.distributions import exponential_prior, normal_logpdf
from inference.errors import ConfigurationError, DomainViolationError
from inference.graph import DeterministicNode, ModelGraph, Structure

CHANNELS = ("d", "f", "e", "b")


class TrialEffectBuilder:
    """
    Adds the non-centered correlated trial-effect block to a model graph.

    Attributes
    ----------
    n_trials : int
        Number of trials (batches)
    effect_rate : float
        Exponential prior rate of each channel scale
    lkj_eta : float
        LKJ concentration of the correlation factor
    channels : tuple of str
        Curve channels receiving a deviation
    """

    def __init__(
        self,
        n_trials: int,
        effect_rate: float = 10.0,
        lkj_eta: float = 2.0,
        channels: Sequence[str] = CHANNELS,
    ) -> None:
        if n_trials <= 0:
            raise ConfigurationError(f"n_trials must be positive. Got {n_trials}")
        if effect_rate <= 0:
            raise ConfigurationError(f"effect_rate must be positive. Got {effect_rate}")
        if lkj_eta <= 0:
            raise ConfigurationError(f"lkj_eta must be positive. Got {lkj_eta}")
        self.n_trials = n_trials
        self.effect_rate = effect_rate
        self.lkj_eta = lkj_eta
        self.channels = tuple(channels)
        self.dim = len(self.channels)

    def _corr_log_density(self, y: NDArray[np.float64]) -> float:
        if not np.all(np.isfinite(y)):
            raise DomainViolationError("effect_corr_free", y, "finite reals")
        U, log_jacobian = cholesky_corr_from_unconstrained(y, self.dim)
        return lkj_cholesky_log_density(U, self.lkj_eta) + log_jacobian

    def add_to_graph(
        self,
        graph: ModelGraph,
        init_scales: Optional[NDArray[np.float64]] = None,
        init_correlation: Optional[NDArray[np.float64]] = None,
        init_z: Optional[NDArray[np.float64]] = None,
    ) -> DeterministicNode:
        """
        Add scale, correlation and raw-latent nodes plus the deviation node.

        Parameters
        ----------
        graph : ModelGraph
            Graph under construction.
        init_scales : NDArray[np.float64], optional
            Initial σ, shape (K,). Defaults to the prior mean 1/rate.
        init_correlation : NDArray[np.float64], optional
            Initial correlation matrix, shape (K, K). Defaults to identity.
        init_z : NDArray[np.float64], optional
            Initial raw latents, shape (n_trials, K). Defaults to zeros.

        Returns
        -------
        DeterministicNode
            Node "trial_effects" with value of shape (n_trials, K).
        """
        if init_scales is None:
            init_scales = np.full(self.dim, 1.0 / self.effect_rate)
        init_scales = np.asarray(init_scales, dtype=np.float64)
        if init_scales.shape != (self.dim,):
            raise ConfigurationError(
                f"init_scales must have shape ({self.dim},). Got {init_scales.shape}"
            )

        if init_correlation is None:
            y0 = np.zeros(n_free_correlations(self.dim))
        else:
            try:
                U0 = cholesky_from_correlation(np.asarray(init_correlation, dtype=np.float64))
            except ValueError as exc:
                raise ConfigurationError(f"Invalid initial correlation: {exc}")
            y0 = unconstrained_from_cholesky_corr(U0)

        if init_z is None:
            init_z = np.zeros((self.n_trials, self.dim))
        init_z = np.asarray(init_z, dtype=np.float64)
        if init_z.shape != (self.n_trials, self.dim):
            raise ConfigurationError(
                f"init_z must have shape ({self.n_trials}, {self.dim}). Got {init_z.shape}"
            )

        scale_nodes = []
        for j, channel in enumerate(self.channels):
            name = f"effect_scale[{j}]"
            scale_nodes.append(
                graph.add_stochastic(
                    name,
                    float(init_scales[j]),
                    exponential_prior(name, self.effect_rate),
                    structure=Structure.BOUNDED_CONTINUOUS,
                    meta={"lower": 0.0, "upper": np.inf, "channel": channel},
                )
            )

        corr_free = graph.add_stochastic(
            "effect_corr_free",
            y0,
            self._corr_log_density,
            structure=Structure.UNCONSTRAINED_BLOCK,
        )
        factor = graph.add_deterministic(
            "effect_corr_factor",
            lambda y: cholesky_corr_from_unconstrained(y, self.dim)[0],
            [corr_free],
        )
        graph.add_deterministic("effect_correlation", correlation_from_cholesky, [factor])

        z_nodes: List = []
        for i in range(self.n_trials):
            z_nodes.append(
                graph.add_stochastic(
                    f"effect_z[{i}]",
                    init_z[i].copy(),
                    _standard_normal_block,
                    structure=Structure.UNCONSTRAINED_BLOCK,
                )
            )

        n_scales = self.dim

        def effects(*values) -> NDArray[np.float64]:
            scales = np.array(values[:n_scales])
            U = values[n_scales]
            z = np.vstack(values[n_scales + 1:])
            return trial_effect_matrix(scales, U, z)

        return graph.add_deterministic(
            "trial_effects", effects, scale_nodes + [factor] + z_nodes
        )

    def channel_index(self) -> Dict[str, int]:
        return {channel: j for j, channel in enumerate(self.channels)}

    def __repr__(self) -> str:
        return (
            f"TrialEffectBuilder(n_trials={self.n_trials}, "
            f"effect_rate={self.effect_rate}, lkj_η={self.lkj_eta})"
        )


def _standard_normal_block(z: NDArray[np.float64]) -> float:
    if not np.all(np.isfinite(z)):
        raise DomainViolationError("effect_z", z, "finite reals")
    return normal_logpdf(z, 0.0, 1.0)
