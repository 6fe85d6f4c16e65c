"""
Posterior predictive evaluation of fitted dose-response curves.

For a dose grid, the curve is evaluated at every retained draw of every
group, using the sign convention recorded at fit time. Each grid point
then has a distribution of predicted means, reduced to its median and an
equal-tailed credible interval.

Predicted curves are population-level: trial effects are zero-mean
deviations of individual batches and are left out of the grid evaluation.
Replicated observations for posterior predictive checks do include them.
"""

from typing import Dict, List, Optional, Tuple
import logging
import numpy as np
from numpy.typing import NDArray

from curves.dose_response import curve_mean
from inference.model_builder import ObservationTable
from inference.sampler import InferenceResult

logger = logging.getLogger(__name__)


def make_dose_grid(
    lower: float,
    upper: float,
    n_points: int,
    log_spaced: bool = True,
) -> NDArray[np.float64]:
    """
    Dose grid for prediction.

    Parameters
    ----------
    lower, upper : float
        Grid bounds, 0 < lower < upper.
    n_points : int
        Number of grid points, at least 2.
    log_spaced : bool
        Space points evenly on the log scale. Default True.

    Returns
    -------
    NDArray[np.float64]
        Dose grid, shape (n_points,).
    """
    if not 0 < lower < upper:
        raise ValueError(f"Dose grid needs 0 < lower < upper. Got ({lower}, {upper})")
    if n_points < 2:
        raise ValueError(f"Dose grid needs at least 2 points. Got {n_points}")
    if log_spaced:
        return np.geomspace(lower, upper, n_points)
    return np.linspace(lower, upper, n_points)


class PredictiveSummary:
    """
    Median and credible interval of the predicted mean per group and dose.

    Attributes
    ----------
    grid : NDArray[np.float64]
        Doses, shape (n_grid,)
    groups : List[Tuple[int, int]]
        (species, level) per row
    median, lower, upper : NDArray[np.float64]
        Shape (n_groups, n_grid)
    ci : float
        Credible mass of the interval
    """

    def __init__(
        self,
        grid: NDArray[np.float64],
        groups: List[Tuple[int, int]],
        median: NDArray[np.float64],
        lower: NDArray[np.float64],
        upper: NDArray[np.float64],
        ci: float,
    ) -> None:
        self.grid = grid
        self.groups = groups
        self.median = median
        self.lower = lower
        self.upper = upper
        self.ci = ci

    def to_records(self) -> List[Dict[str, float]]:
        """One record per (group, dose), keyed by dose, species and level."""
        records = []
        for g, (species, level) in enumerate(self.groups):
            for k, dose in enumerate(self.grid):
                records.append({
                    "dose": float(dose),
                    "species": species,
                    "level": level,
                    "median": float(self.median[g, k]),
                    "lower": float(self.lower[g, k]),
                    "upper": float(self.upper[g, k]),
                })
        return records

    def __repr__(self) -> str:
        return (
            f"PredictiveSummary(groups={len(self.groups)}, grid={len(self.grid)}, "
            f"ci={self.ci})"
        )


class PosteriorPredictive:
    """
    Curve predictions and replicated data from an InferenceResult.

    Attributes
    ----------
    result : InferenceResult
        Completed run; draws are pooled over completed chains
    """

    def __init__(self, result: InferenceResult) -> None:
        self.result = result
        self._group_index = {group: g for g, group in enumerate(result.groups)}

    def draws_for_group(self, g: int) -> Dict[str, NDArray[np.float64]]:
        """Pooled curve-parameter draws of one group, each shape (n_draws,)."""
        return {
            name: self.result.pooled(name)[:, g]
            for name in ("c", "d", "f", "w", "e", "b")
        }

    def predict_mean(self, grid: NDArray[np.float64], g: int) -> NDArray[np.float64]:
        """
        Predicted means of group g at every draw and grid point.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_draws, n_grid)
        """
        p = {name: value[:, None] for name, value in self.draws_for_group(g).items()}
        return curve_mean(
            np.asarray(grid, dtype=np.float64)[None, :],
            p["c"], p["d"], p["f"], p["w"], p["e"], p["b"],
            self.result.alpha,
            self.result.response_type,
        )

    def evaluate(self, grid: NDArray[np.float64], ci: float = 0.95) -> PredictiveSummary:
        """
        Reduce predicted means to median and equal-tailed interval.

        Parameters
        ----------
        grid : NDArray[np.float64]
            Doses, all > 0.
        ci : float
            Credible mass of the interval. Default 0.95.

        Returns
        -------
        summary : PredictiveSummary
        """
        grid = np.asarray(grid, dtype=np.float64)
        if np.any(grid <= 0):
            raise ValueError("Prediction doses must be positive")
        if not 0.0 < ci < 1.0:
            raise ValueError(f"ci must be in (0, 1). Got {ci}")

        tail = 0.5 * (1.0 - ci)
        n_groups = len(self.result.groups)
        median = np.empty((n_groups, len(grid)))
        lower = np.empty_like(median)
        upper = np.empty_like(median)
        for g in range(n_groups):
            means = self.predict_mean(grid, g)
            median[g], lower[g], upper[g] = np.quantile(
                means, [0.5, tail, 1.0 - tail], axis=0
            )
        logger.debug("Evaluated %d groups on %d grid points", n_groups, len(grid))
        return PredictiveSummary(grid, list(self.result.groups), median, lower, upper, ci)

    def simulate_observations(
        self,
        table: ObservationTable,
        n_draws: Optional[int] = None,
        random_seed: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """
        Replicated responses for the rows of an observation table.

        Each replicate uses one posterior draw: the curve mean at the row's
        group (plus its trial's deviations when trial effects were fitted)
        and Gaussian residual noise with the drawn residual sd.

        Parameters
        ----------
        table : ObservationTable
            Rows to replicate, typically the table used at fit time.
        n_draws : int, optional
            Number of posterior draws to use, chosen at random without
            replacement. Default: all pooled draws.
        random_seed : int, optional
            Random seed for reproducibility.

        Returns
        -------
        NDArray[np.float64]
            Replicated responses, shape (n_draws, n_obs).
        """
        rng = np.random.default_rng(random_seed)
        total = len(self.result.pooled("sigma"))
        if n_draws is None or n_draws >= total:
            idx = np.arange(total)
        else:
            idx = rng.choice(total, size=n_draws, replace=False)

        try:
            rows = np.array([
                self._group_index[(s, l)] for s, l in zip(table.species, table.level)
            ])
        except KeyError as exc:
            raise ValueError(f"Table contains a group not in the fit: {exc}")

        p = {name: self.result.pooled(name)[idx][:, rows] for name in ("c", "d", "f", "w", "e", "b")}
        if "trial_effects" in self.result.names:
            delta = self.result.pooled("trial_effects")[idx][:, table.trial - 1, :]
            p["d"] = p["d"] + delta[..., 0]
            p["f"] = p["f"] + delta[..., 1]
            p["e"] = p["e"] * np.exp(delta[..., 2])
            p["b"] = p["b"] * np.exp(delta[..., 3])

        mean = curve_mean(
            table.dose[None, :],
            p["c"], p["d"], p["f"], p["w"], p["e"], p["b"],
            self.result.alpha,
            self.result.response_type,
        )
        sigma = self.result.pooled("sigma")[idx][:, None]
        return mean + sigma * rng.standard_normal(mean.shape)

    @staticmethod
    def check(
        observed: NDArray[np.float64],
        replicated: NDArray[np.float64],
    ) -> Dict[str, float]:
        """
        Posterior predictive p-values of summary statistics.

        Parameters
        ----------
        observed : NDArray[np.float64]
            Observed responses, shape (n_obs,)
        replicated : NDArray[np.float64]
            Replicated responses, shape (n_draws, n_obs)

        Returns
        -------
        ppc_stats : Dict[str, float]
            Fraction of replicates whose statistic is at least the observed
            one, for the mean, standard deviation and maximum. Values near
            0 or 1 indicate misfit.
        """
        observed = np.asarray(observed, dtype=np.float64)
        replicated = np.atleast_2d(replicated)
        return {
            "mean_pvalue": float(np.mean(replicated.mean(axis=1) >= observed.mean())),
            "std_pvalue": float(np.mean(replicated.std(axis=1) >= observed.std())),
            "max_pvalue": float(np.mean(replicated.max(axis=1) >= observed.max())),
        }

    def __repr__(self) -> str:
        return f"PosteriorPredictive(result={self.result})"
