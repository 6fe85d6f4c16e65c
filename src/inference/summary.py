"""
Posterior summaries and convergence diagnostics.

Per-parameter statistics come from arviz.summary over the completed chains:
mean, standard deviation, highest-density interval, R-hat and bulk ESS.

Key diagnostics:
- R-hat (potential scale reduction): close to 1 indicates convergence
- ESS (effective sample size): accounts for autocorrelation within chains
- Inclusion probability: fraction of retained draws with w = 1, the
  posterior evidence for hormesis in a group
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
import logging
import warnings
import numpy as np
from numpy.typing import NDArray
import arviz as az

from inference.errors import NonConvergenceWarning
from inference.sampler import InferenceResult

logger = logging.getLogger(__name__)


class DiagnosticsComputer:
    """Convergence diagnostics from raw posterior samples."""

    @staticmethod
    def rhat(posterior_samples: NDArray[np.float64]) -> float:
        """
        Compute rank-normalized split R-hat.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Posterior samples from multiple chains, shape (chains, draws).

        Returns
        -------
        rhat : float
            Potential scale reduction factor.
        """
        posterior_samples = np.asarray(posterior_samples, dtype=np.float64)
        if posterior_samples.ndim != 2:
            raise ValueError(
                f"Expected samples of shape (chains, draws). Got {posterior_samples.shape}"
            )
        return float(az.rhat(posterior_samples))

    @staticmethod
    def ess(posterior_samples: NDArray[np.float64]) -> float:
        """
        Compute bulk effective sample size.

        Parameters
        ----------
        posterior_samples : NDArray[np.float64]
            Samples of shape (draws,) for one chain or (chains, draws).

        Returns
        -------
        ess : float
        """
        samples = np.atleast_2d(np.asarray(posterior_samples, dtype=np.float64))
        if samples.ndim != 2:
            raise ValueError(f"Expected at most 2 dimensions. Got {samples.shape}")
        return float(az.ess(samples, method="bulk"))


@dataclass(frozen=True)
class ParameterSummary:
    """Posterior statistics of one scalar quantity."""

    name: str
    mean: float
    sd: float
    lower: float
    upper: float
    r_hat: float
    ess_bulk: float


class PosteriorSummarizer:
    """
    Summaries of an InferenceResult for downstream reporting.

    Attributes
    ----------
    rhat_threshold : float
        R-hat above which a NonConvergenceWarning is emitted
    ess_threshold : float
        Bulk ESS below which a NonConvergenceWarning is emitted
    """

    DEFAULT_VARS = ("c", "d", "f", "w", "e", "b", "sigma")

    def __init__(
        self,
        rhat_threshold: Optional[float] = None,
        ess_threshold: Optional[float] = None,
    ) -> None:
        self.rhat_threshold = rhat_threshold
        self.ess_threshold = ess_threshold

    def summarize(
        self,
        result: InferenceResult,
        var_names: Optional[List[str]] = None,
        ci: float = 0.95,
    ) -> Dict[str, ParameterSummary]:
        """
        Compute per-parameter summaries.

        Parameters
        ----------
        result : InferenceResult
            Completed run.
        var_names : list of str, optional
            Quantities to summarize. Default: curve parameters, indicator and
            residual sd, plus e / d differences when recorded.
        ci : float
            Credible mass of the highest-density interval. Default 0.95.

        Returns
        -------
        summaries : Dict[str, ParameterSummary]
            Keyed by arviz coordinate label, e.g. "e[0]" or "sigma".
        """
        if not 0.0 < ci < 1.0:
            raise ValueError(f"ci must be in (0, 1). Got {ci}")
        if var_names is None:
            var_names = [v for v in self.DEFAULT_VARS if v in result.names]
            var_names += [v for v in ("e_diff", "d_diff") if v in result.names]

        idata = result.to_inference_data(var_names)
        summary_df = az.summary(idata, var_names=var_names, hdi_prob=ci)
        hdi_columns = [col for col in summary_df.columns if col.startswith("hdi_")]
        low_col, high_col = hdi_columns[0], hdi_columns[-1]

        summaries = {}
        for label in summary_df.index:
            row = summary_df.loc[label]
            summaries[label] = ParameterSummary(
                name=label,
                mean=float(row["mean"]),
                sd=float(row["sd"]),
                lower=float(row[low_col]),
                upper=float(row[high_col]),
                r_hat=float(row["r_hat"]),
                ess_bulk=float(row["ess_bulk"]),
            )

        self._check_convergence(result, summaries)
        return summaries

    def _check_convergence(
        self,
        result: InferenceResult,
        summaries: Dict[str, ParameterSummary],
    ) -> None:
        rhat_threshold = self.rhat_threshold
        if rhat_threshold is None:
            rhat_threshold = result.config.rhat_threshold
        ess_threshold = self.ess_threshold
        if ess_threshold is None:
            ess_threshold = result.config.ess_threshold
        r_hats = np.array([s.r_hat for s in summaries.values()])
        ess = np.array([s.ess_bulk for s in summaries.values()])

        problems = []
        if np.any(np.isfinite(r_hats)) and np.nanmax(r_hats) > rhat_threshold:
            problems.append(f"max R-hat {np.nanmax(r_hats):.3f} > {rhat_threshold}")
        if np.any(np.isfinite(ess)) and np.nanmin(ess) < ess_threshold:
            problems.append(f"min bulk ESS {np.nanmin(ess):.0f} < {ess_threshold}")
        if len(result.completed_chains) < len(result.chains):
            problems.append(
                f"only {len(result.completed_chains)} of {len(result.chains)} chains completed"
            )
        if problems:
            message = "Results may be unreliable: " + "; ".join(problems)
            logger.warning(message)
            warnings.warn(message, NonConvergenceWarning, stacklevel=3)

    @staticmethod
    def inclusion_probability(result: InferenceResult) -> Dict[Tuple[int, int], float]:
        """
        Posterior inclusion probability of hormesis per group.

        Returns
        -------
        probabilities : Dict[Tuple[int, int], float]
            Fraction of retained draws with w = 1, keyed by (species, level).
        """
        w = result.pooled("w")
        probabilities = w.mean(axis=0)
        return {group: float(p) for group, p in zip(result.groups, probabilities)}

    def __repr__(self) -> str:
        return (
            f"PosteriorSummarizer(rhat_threshold={self.rhat_threshold}, "
            f"ess_threshold={self.ess_threshold})"
        )
