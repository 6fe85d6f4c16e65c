"""
Synthetic dose-response experiments with known ground truth.

Generates observation tables from fixed group parameters, enabling recovery
checks of the sampler and validation of run configurations.

Key components:
- Design generation (species × level × trial × dose × replicate rows)
- Curve means from ground-truth parameters, with or without hormesis
- Correlated trial effects drawn through the covariance model
- Gaussian residual noise
"""

from typing import Dict, Optional, Sequence, Union
import numpy as np
from numpy.typing import NDArray

from curves.dose_response import DEFAULT_ALPHA, ResponseType, curve_mean
from effects.covariance import CovarianceModel
from inference.model_builder import ObservationTable
from inference.trial_effects import CHANNELS

GroupValues = Union[float, Sequence[float], NDArray[np.float64]]


class DoseResponseSimulator:
    """
    Simulator of hormesis dose-response experiments.

    Attributes
    ----------
    n_species : int
        Number of species
    n_levels : int
        Number of solvent levels
    n_trials : int
        Number of trials (batches)
    alpha : float
        Fixed hormesis shape exponent
    response_type : ResponseType
        Sign convention of the simulated response
    """

    def __init__(
        self,
        n_species: int,
        n_levels: int = 1,
        n_trials: int = 1,
        alpha: float = DEFAULT_ALPHA,
        response_type: Union[str, ResponseType] = ResponseType.ABSORBANCE,
    ) -> None:
        """
        Initialize simulator.

        Parameters
        ----------
        n_species : int
            Number of species
        n_levels : int
            Number of solvent levels. Default 1.
        n_trials : int
            Number of trials. Default 1.
        alpha : float
            Hormesis shape exponent. Default 0.5.
        response_type : str or ResponseType
            "absorbance" or "inhibition".
        """
        if n_species <= 0 or n_levels <= 0 or n_trials <= 0:
            raise ValueError(
                f"All dimensions must be positive. Got "
                f"n_species={n_species}, n_levels={n_levels}, n_trials={n_trials}"
            )

        self.n_species = n_species
        self.n_levels = n_levels
        self.n_trials = n_trials
        self.alpha = alpha
        self.response_type = ResponseType.parse(response_type)

    @property
    def n_groups(self) -> int:
        return self.n_species * self.n_levels

    def _per_group(self, name: str, value: GroupValues) -> NDArray[np.float64]:
        arr = np.asarray(value, dtype=np.float64)
        if arr.ndim == 0:
            return np.full(self.n_groups, float(arr))
        if arr.shape != (self.n_groups,):
            raise ValueError(
                f"{name} must be a scalar or have shape ({self.n_groups},). Got {arr.shape}"
            )
        return arr

    def sample_trial_effects(
        self,
        scales: NDArray[np.float64],
        correlation: Optional[NDArray[np.float64]] = None,
        random_seed: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """
        Draw correlated per-trial deviations for the (d, f, e, b) channels.

        Parameters
        ----------
        scales : NDArray[np.float64]
            Channel scales, shape (4,)
        correlation : NDArray[np.float64], optional
            Channel correlation matrix, shape (4, 4). Default identity.
        random_seed : int, optional
            Random seed for reproducibility.

        Returns
        -------
        NDArray[np.float64]
            Deviations, shape (n_trials, 4)
        """
        if correlation is None:
            correlation = np.eye(len(CHANNELS))
        model = CovarianceModel(correlation, scales)
        return model.sample_mvn(self.n_trials, random_seed=random_seed)

    def generate(
        self,
        doses: Sequence[float],
        c: GroupValues,
        d: GroupValues,
        e: GroupValues,
        b: GroupValues,
        f: GroupValues = 0.0,
        w: GroupValues = 0.0,
        noise_sd: float = 0.01,
        replicates: int = 1,
        trial_effects: Optional[NDArray[np.float64]] = None,
        random_seed: Optional[int] = None,
    ) -> ObservationTable:
        """
        Generate one experiment.

        Parameters
        ----------
        doses : sequence of float
            Doses applied in every trial, all > 0
        c, d, e, b, f, w : float or array of shape (n_groups,)
            Ground-truth curve parameters per group (species-major order)
        noise_sd : float
            Residual standard deviation. Default 0.01.
        replicates : int
            Observations per (group, trial, dose). Default 1.
        trial_effects : NDArray[np.float64], optional
            Per-trial deviations, shape (n_trials, 4), e.g. from
            :meth:`sample_trial_effects`. Default: none.
        random_seed : int, optional
            Random seed for reproducibility.

        Returns
        -------
        table : ObservationTable
        """
        doses = np.asarray(doses, dtype=np.float64)
        if np.any(doses <= 0):
            raise ValueError("All doses must be positive")
        if noise_sd < 0 or replicates <= 0:
            raise ValueError(
                f"noise_sd must be non-negative and replicates positive. "
                f"Got noise_sd={noise_sd}, replicates={replicates}"
            )
        params = {
            name: self._per_group(name, value)
            for name, value in zip("cdebfw", (c, d, e, b, f, w))
        }
        if trial_effects is None:
            trial_effects = np.zeros((self.n_trials, len(CHANNELS)))
        trial_effects = np.asarray(trial_effects, dtype=np.float64)
        if trial_effects.shape != (self.n_trials, len(CHANNELS)):
            raise ValueError(
                f"trial_effects must have shape ({self.n_trials}, {len(CHANNELS)}). "
                f"Got {trial_effects.shape}"
            )

        rng = np.random.default_rng(random_seed)
        rows: Dict[str, list] = {"dose": [], "response": [], "species": [], "level": [], "trial": []}
        for species in range(1, self.n_species + 1):
            for level in range(1, self.n_levels + 1):
                g = (species - 1) * self.n_levels + (level - 1)
                for trial in range(1, self.n_trials + 1):
                    delta = trial_effects[trial - 1]
                    x = np.repeat(doses, replicates)
                    mean = curve_mean(
                        x,
                        params["c"][g],
                        params["d"][g] + delta[0],
                        params["f"][g] + delta[1],
                        params["w"][g],
                        params["e"][g] * np.exp(delta[2]),
                        params["b"][g] * np.exp(delta[3]),
                        self.alpha,
                        self.response_type,
                    )
                    rows["dose"].append(x)
                    rows["response"].append(mean + noise_sd * rng.standard_normal(x.size))
                    rows["species"].append(np.full(x.size, species))
                    rows["level"].append(np.full(x.size, level))
                    rows["trial"].append(np.full(x.size, trial))

        columns = {name: np.concatenate(values) for name, values in rows.items()}
        return ObservationTable(
            dose=columns["dose"],
            response=columns["response"],
            species=columns["species"],
            trial=columns["trial"],
            level=columns["level"],
            response_type=self.response_type,
        )

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"DoseResponseSimulator(n_species={self.n_species}, n_levels={self.n_levels}, "
            f"n_trials={self.n_trials}, response_type={self.response_type.value})"
        )
