"""
Model builder: hierarchical hormesis dose-response model as a node graph.

This module assembles the full Bayesian model for one experiment:
- Per-group curve parameters (group = species × solvent level)
- Hormesis component per group as a reversible-jump variant
- Correlated non-centered trial effects on the (d, f, e, b) channels
- Normal likelihood with a shared residual precision

Mathematical model:
    c_g ~ Normal(c_loc, c_scale)                      # Floor
    d_g ~ Normal(d_loc, d_scale)                      # Ceiling
    w_g ~ Bernoulli(p)                                # Hormesis indicator
    f_g | w_g = 1 ~ Normal(f_loc, f_scale) T(0, ∞)    # Hormesis magnitude
    e_g ~ Uniform(0, max dose]                        # Effective dose
    b_g ~ Normal(b_loc, b_scale) T(0, ∞)              # Slope
    τ ~ Gamma(shape, rate)                            # Residual precision
    δ_t = diag(σ) U^T z_t                             # Trial effects
    y_n ~ Normal(μ(x_n; c_g, d_g + δ_d, f_g + δ_f, w_g,
                   e_g exp(δ_e), b_g exp(δ_b)), 1/τ)

Four variants share this builder: absorbance or inhibition sign convention,
each with a single factor (species) or two factors (species × level).
"""

from itertools import combinations
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import logging
import numpy as np
from numpy.typing import NDArray

from curves.dose_response import DEFAULT_ALPHA, ResponseType, curve_mean
from inference.distributions import (
    gamma_prior,
    normal_likelihood,
    normal_prior,
    truncated_normal_logpdf,
    truncated_normal_prior,
    uniform_prior,
)
from inference.errors import ConfigurationError, DomainViolationError
from inference.graph import ModelGraph, Structure
from inference.rjmcmc import Active, HormesisState, Inactive
from inference.trial_effects import CHANNELS, TrialEffectBuilder

logger = logging.getLogger(__name__)


class PriorSpec:
    """Specification of priors for model parameters."""

    def __init__(
        self,
        # Asymptotes
        c_loc: float = 0.0,
        c_scale: float = 1.0,
        d_loc: float = 1.0,
        d_scale: float = 1.0,
        # Hormesis
        f_loc: float = 0.0,
        f_scale: float = 1.0,
        inclusion_prob: float = 0.5,
        proposal_loc: Optional[float] = None,
        proposal_scale: Optional[float] = None,
        # Shape
        b_loc: float = 1.0,
        b_scale: float = 2.0,
        # Residual precision
        precision_shape: float = 1e-3,
        precision_rate: float = 1e-6,
        # Trial effects
        effect_rate: float = 10.0,
        lkj_eta: float = 2.0,
    ) -> None:
        """
        Initialize prior specification.

        Parameters
        ----------
        c_loc, c_scale : float
            Normal prior on the floor c. Default N(0, 1).
        d_loc, d_scale : float
            Normal prior on the ceiling d. Default N(1, 1).
        f_loc, f_scale : float
            Normal prior on the hormesis magnitude, truncated to f > 0.
        inclusion_prob : float
            Prior probability that hormesis is present, in (0, 1). Default 0.5.
        proposal_loc, proposal_scale : float, optional
            Birth proposal for f (truncated normal). If None, matched to the
            prior on f, so prior and proposal densities cancel.
        b_loc, b_scale : float
            Normal prior on the slope, truncated to b > 0.
        precision_shape, precision_rate : float
            Gamma prior on the residual precision τ. Default Gamma(1e-3, 1e-6),
            vague for responses on a unit scale where the residual sd is
            around 0.01.
        effect_rate : float
            Exponential rate of each trial-effect channel scale. Default 10.
        lkj_eta : float
            LKJ concentration on the trial-effect correlations. Default 2.0.
            Higher → weaker correlations preferred.
        """
        positives = {
            "c_scale": c_scale,
            "d_scale": d_scale,
            "f_scale": f_scale,
            "b_scale": b_scale,
            "precision_shape": precision_shape,
            "precision_rate": precision_rate,
            "effect_rate": effect_rate,
            "lkj_eta": lkj_eta,
        }
        if proposal_scale is not None:
            positives["proposal_scale"] = proposal_scale
        for name, value in positives.items():
            if not value > 0:
                raise ConfigurationError(f"{name} must be positive. Got {value}")
        if not 0.0 < inclusion_prob < 1.0:
            raise ConfigurationError(
                f"inclusion_prob must be in (0, 1). Got {inclusion_prob}"
            )

        self.c_loc = c_loc
        self.c_scale = c_scale
        self.d_loc = d_loc
        self.d_scale = d_scale
        self.f_loc = f_loc
        self.f_scale = f_scale
        self.inclusion_prob = inclusion_prob
        self.proposal_loc = f_loc if proposal_loc is None else proposal_loc
        self.proposal_scale = f_scale if proposal_scale is None else proposal_scale
        self.b_loc = b_loc
        self.b_scale = b_scale
        self.precision_shape = precision_shape
        self.precision_rate = precision_rate
        self.effect_rate = effect_rate
        self.lkj_eta = lkj_eta

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"PriorSpec(c=N({self.c_loc}, {self.c_scale}), d=N({self.d_loc}, {self.d_scale}), "
            f"f=N+({self.f_loc}, {self.f_scale}), p={self.inclusion_prob}, "
            f"b=N+({self.b_loc}, {self.b_scale}), effect_rate={self.effect_rate}, "
            f"lkj_η={self.lkj_eta})"
        )


class ModelConfig:
    """Experiment dimensions and model options."""

    def __init__(
        self,
        n_species: int,
        n_trials: int,
        n_levels: int = 1,
        alpha: float = DEFAULT_ALPHA,
        trial_effects: bool = True,
        response_threshold: Optional[float] = None,
    ) -> None:
        """
        Initialize model configuration.

        Parameters
        ----------
        n_species : int
            Number of species.
        n_trials : int
            Number of trials (batches).
        n_levels : int
            Number of solvent levels. 1 for single-factor experiments.
        alpha : float
            Fixed hormesis shape exponent. Default 0.5.
        trial_effects : bool
            Whether to model correlated trial effects. With a single trial
            the deviations are not identifiable and should be disabled.
        response_threshold : float, optional
            Observations with a response below this value are excluded at
            build time. None keeps every observation.
        """
        if n_species <= 0 or n_trials <= 0 or n_levels <= 0:
            raise ConfigurationError(
                f"All dimensions must be positive. Got "
                f"n_species={n_species}, n_trials={n_trials}, n_levels={n_levels}"
            )
        if not alpha > 0:
            raise ConfigurationError(f"alpha must be positive. Got {alpha}")

        self.n_species = n_species
        self.n_trials = n_trials
        self.n_levels = n_levels
        self.alpha = alpha
        self.trial_effects = trial_effects
        self.response_threshold = response_threshold

    @property
    def n_groups(self) -> int:
        return self.n_species * self.n_levels

    @property
    def groups(self) -> List[Tuple[int, int]]:
        """(species, level) label per group index, 1-based."""
        return [
            (s, l)
            for s in range(1, self.n_species + 1)
            for l in range(1, self.n_levels + 1)
        ]

    @property
    def pairs(self) -> List[Tuple[int, int]]:
        """Group index pairs for derived e / d differences."""
        return list(combinations(range(self.n_groups), 2))

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ModelConfig(n_species={self.n_species}, n_levels={self.n_levels}, "
            f"n_trials={self.n_trials}, alpha={self.alpha}, "
            f"trial_effects={self.trial_effects}, "
            f"response_threshold={self.response_threshold})"
        )


class ObservationTable:
    """
    Observations of one experiment as parallel arrays.

    Ids are 1-based as supplied by upstream data preparation.

    Attributes
    ----------
    dose : NDArray[np.float64]
        Dose, strictly positive
    response : NDArray[np.float64]
        Measured response
    species : NDArray[np.int64]
        Species id
    trial : NDArray[np.int64]
        Trial (batch) id
    level : NDArray[np.int64]
        Solvent-level id (all 1 for single-factor experiments)
    response_type : ResponseType
        Absorbance or inhibition, shared by every row
    """

    def __init__(
        self,
        dose: Sequence[float],
        response: Sequence[float],
        species: Sequence[int],
        trial: Sequence[int],
        level: Optional[Sequence[int]] = None,
        response_type: Union[str, ResponseType, Sequence[str]] = ResponseType.ABSORBANCE,
    ) -> None:
        self.dose = np.asarray(dose, dtype=np.float64)
        self.response = np.asarray(response, dtype=np.float64)
        self.species = self._ids("species", species)
        self.trial = self._ids("trial", trial)
        if level is None:
            level = np.ones(len(self.dose), dtype=np.int64)
        self.level = self._ids("level", level)
        self.response_type = self._response_type(response_type)
        self._validate()

    @staticmethod
    def _ids(name: str, values: Sequence[int]) -> NDArray[np.int64]:
        arr = np.asarray(values)
        if arr.size and not np.all(np.equal(np.mod(arr, 1), 0)):
            raise ConfigurationError(f"{name} ids must be integers")
        return arr.astype(np.int64)

    @staticmethod
    def _response_type(value) -> ResponseType:
        if isinstance(value, (str, ResponseType)):
            values = [value]
        else:
            values = list(value)
        try:
            kinds = {ResponseType.parse(v) for v in values}
        except ValueError as exc:
            raise ConfigurationError(str(exc))
        if len(kinds) != 1:
            raise ConfigurationError(
                f"A fit uses one response type. Got {sorted(k.value for k in kinds)}"
            )
        return kinds.pop()

    def _validate(self) -> None:
        n = len(self.dose)
        for name in ("response", "species", "trial", "level"):
            if len(getattr(self, name)) != n:
                raise ConfigurationError(
                    f"{name} has length {len(getattr(self, name))}, expected {n}"
                )
        if n == 0:
            raise ConfigurationError("Observation table is empty")
        if not np.all(np.isfinite(self.dose)) or not np.all(np.isfinite(self.response)):
            raise ConfigurationError("dose and response must be finite")
        if np.any(self.dose <= 0):
            raise ConfigurationError(
                "All doses must be positive; zero-dose points are excluded from hormesis fits"
            )
        for name in ("species", "trial", "level"):
            if np.any(getattr(self, name) < 1):
                raise ConfigurationError(f"{name} ids are 1-based. Got {getattr(self, name).min()}")

    def subset(self, mask: NDArray[np.bool_]) -> "ObservationTable":
        return ObservationTable(
            self.dose[mask],
            self.response[mask],
            self.species[mask],
            self.trial[mask],
            self.level[mask],
            self.response_type,
        )

    def __len__(self) -> int:
        return len(self.dose)

    def __repr__(self) -> str:
        return (
            f"ObservationTable(n={len(self)}, response_type={self.response_type.value}, "
            f"doses={np.unique(self.dose).size})"
        )


class HormesisModel:
    """
    One model context: graph, data and labels for a single inference run.

    Attributes
    ----------
    graph : ModelGraph
        Node graph owned by this context
    table : ObservationTable
        Observations entering the likelihood
    config : ModelConfig
    prior_spec : PriorSpec
    groups : List[Tuple[int, int]]
        (species, level) label per group, 1-based
    pairs : List[Tuple[int, int]]
        Group index pairs for derived differences
    max_dose : float
        Upper bound of the effective-dose support
    """

    def __init__(
        self,
        graph: ModelGraph,
        table: ObservationTable,
        config: ModelConfig,
        prior_spec: PriorSpec,
        max_dose: float,
    ) -> None:
        self.graph = graph
        self.table = table
        self.config = config
        self.prior_spec = prior_spec
        self.max_dose = max_dose
        self.groups = config.groups
        self.pairs = config.pairs

    @property
    def response_type(self) -> ResponseType:
        return self.table.response_type

    @property
    def alpha(self) -> float:
        return self.config.alpha

    @property
    def n_groups(self) -> int:
        return len(self.groups)

    def _group_values(self, prefix: str) -> List[Any]:
        return [self.graph[f"{prefix}[{g}]"].value for g in range(self.n_groups)]

    def record(self) -> Dict[str, NDArray[np.float64]]:
        """
        Current state as a flat dictionary of arrays (one posterior draw).

        Includes the latent curve parameters, the indicator w and magnitude f
        (0 while inactive), the residual sd, trial-effect scales and
        correlations, and pairwise e / d differences between groups.
        """
        hormesis: List[HormesisState] = self._group_values("hormesis")
        tau = self.graph["tau"].value
        draw = {
            "c": np.array(self._group_values("c")),
            "d": np.array(self._group_values("d")),
            "f": np.array([h.magnitude for h in hormesis]),
            "w": np.array([h.indicator for h in hormesis], dtype=np.float64),
            "e": np.array(self._group_values("e")),
            "b": np.array(self._group_values("b")),
            "tau": np.float64(tau),
            "sigma": np.float64(1.0 / np.sqrt(tau)),
        }
        if self.config.trial_effects:
            draw["effect_scale"] = np.array(
                [self.graph[f"effect_scale[{j}]"].value for j in range(len(CHANNELS))]
            )
            draw["correlation"] = np.array(self.graph["effect_correlation"].value)
            draw["trial_effects"] = np.array(self.graph["trial_effects"].value)
        if self.pairs:
            first = [i for i, _ in self.pairs]
            second = [j for _, j in self.pairs]
            draw["e_diff"] = draw["e"][first] - draw["e"][second]
            draw["d_diff"] = draw["d"][first] - draw["d"][second]
        return draw

    def group_label(self, g: int) -> str:
        species, level = self.groups[g]
        return f"species={species}, level={level}"

    def __repr__(self) -> str:
        return (
            f"HormesisModel(groups={self.n_groups}, n_obs={len(self.table)}, "
            f"response_type={self.response_type.value}, graph={self.graph})"
        )


class ModelBuilder:
    """
    Bayesian hormesis dose-response model builder.

    Validates the observation table against the configured dimensions once,
    then builds an independent HormesisModel (fresh graph and caches) on
    every call to :meth:`build`, so concurrent runs never share state.

    Attributes
    ----------
    table : ObservationTable
        Observations after threshold exclusion
    config : ModelConfig
    prior_spec : PriorSpec
    inits : Dict[str, Any]
        Starting values overriding prior-derived defaults
    max_dose : float
        Largest observed dose of the experiment
    """

    INIT_KEYS = (
        "c", "d", "f", "w", "e", "b", "tau",
        "effect_scale", "effect_correlation", "effect_z",
    )

    def __init__(
        self,
        table: ObservationTable,
        config: ModelConfig,
        prior_spec: Optional[PriorSpec] = None,
        inits: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize model builder.

        Parameters
        ----------
        table : ObservationTable
            Observations of one experiment.
        config : ModelConfig
            Dimensions and options; must agree with the table's id arrays.
        prior_spec : PriorSpec, optional
            Prior specification. If None, use defaults.
        inits : dict, optional
            Starting values keyed by parameter ("c", "d", "f", "w", "e", "b",
            "tau", "effect_scale", "effect_correlation", "effect_z"). Group
            parameters accept a scalar or one value per group.

        Raises
        ------
        ConfigurationError
            If dimensions disagree with the table or inits are malformed.
        """
        self.config = config
        self.prior_spec = prior_spec or PriorSpec()
        self._check_dimensions(table)
        self.max_dose = float(table.dose.max())

        if config.response_threshold is not None:
            keep = table.response >= config.response_threshold
            n_dropped = int((~keep).sum())
            if n_dropped:
                logger.warning(
                    "Excluding %d of %d observations with response below %s",
                    n_dropped, len(table), config.response_threshold,
                )
            if not keep.any():
                raise ConfigurationError("response_threshold excludes every observation")
            table = table.subset(keep)
        self.table = table

        if config.trial_effects and config.n_trials == 1:
            logger.warning("Trial effects with a single trial are not identifiable")

        self.inits = self._check_inits(dict(inits or {}))
        self.group_index = (
            (table.species - 1) * config.n_levels + (table.level - 1)
        ).astype(np.int64)

    def _check_dimensions(self, table: ObservationTable) -> None:
        for name, attribute in (
            ("species", "n_species"),
            ("level", "n_levels"),
            ("trial", "n_trials"),
        ):
            declared = getattr(self.config, attribute)
            largest = int(getattr(table, name).max())
            if largest != declared:
                raise ConfigurationError(
                    f"{attribute} mismatch: "
                    f"config declares {declared}, data uses ids up to {largest}"
                )

    def _check_inits(self, inits: Dict[str, Any]) -> Dict[str, Any]:
        unknown = set(inits) - set(self.INIT_KEYS)
        if unknown:
            raise ConfigurationError(f"Unknown initial values: {sorted(unknown)}")
        n_groups = self.config.n_groups
        for key in ("c", "d", "f", "w", "e", "b"):
            if key in inits:
                value = np.asarray(inits[key], dtype=np.float64)
                if value.ndim == 0:
                    value = np.full(n_groups, float(value))
                if value.shape != (n_groups,):
                    raise ConfigurationError(
                        f"init {key!r} must be a scalar or have shape ({n_groups},). "
                        f"Got {value.shape}"
                    )
                inits[key] = value.copy()
        if "w" in inits and not np.all(np.isin(inits["w"], (0.0, 1.0))):
            raise ConfigurationError("init 'w' must be 0 or 1")
        if not self.config.trial_effects:
            for key in ("effect_scale", "effect_correlation", "effect_z"):
                if key in inits:
                    raise ConfigurationError(f"init {key!r} given but trial effects are disabled")
        return inits

    def _default_inits(self) -> Dict[str, NDArray[np.float64]]:
        spec = self.prior_spec
        n_groups = self.config.n_groups
        e0 = min(float(np.median(self.table.dose)), self.max_dose)
        b0 = spec.b_loc if spec.b_loc > 0 else spec.b_scale
        f0 = spec.f_loc if spec.f_loc > 0 else spec.f_scale
        return {
            "c": np.full(n_groups, spec.c_loc),
            "d": np.full(n_groups, spec.d_loc),
            "f": np.full(n_groups, f0),
            "w": np.zeros(n_groups),
            "e": np.full(n_groups, e0),
            "b": np.full(n_groups, b0),
            "tau": spec.precision_shape / spec.precision_rate,
        }

    def _hormesis_prior(self, name: str):
        spec = self.prior_spec
        log_p = np.log(spec.inclusion_prob)
        log_not_p = np.log1p(-spec.inclusion_prob)

        def log_density(state: HormesisState) -> float:
            if isinstance(state, Inactive):
                return float(log_not_p)
            if not (np.isfinite(state.magnitude) and state.magnitude > 0):
                raise DomainViolationError(name, state.magnitude, "(0, inf)")
            return float(log_p + truncated_normal_logpdf(
                state.magnitude, spec.f_loc, spec.f_scale, 0.0, np.inf
            ))
        return log_density

    def _mean_function(self, g: int, columns: Optional[Dict[str, int]] = None):
        mask = self.group_index == g
        dose = self.table.dose[mask]
        trial = self.table.trial[mask] - 1
        alpha = self.config.alpha
        response_type = self.table.response_type

        if not self.config.trial_effects:
            def mean(c, d, h, e, b):
                return curve_mean(dose, c, d, h.magnitude, h.indicator, e, b, alpha, response_type)
            return mean

        def mean_with_effects(c, d, h, e, b, effects):
            delta = effects[trial]
            return curve_mean(
                dose,
                c,
                d + delta[:, columns["d"]],
                h.magnitude + delta[:, columns["f"]],
                h.indicator,
                e * np.exp(delta[:, columns["e"]]),
                b * np.exp(delta[:, columns["b"]]),
                alpha,
                response_type,
            )
        return mean_with_effects

    def build(self) -> HormesisModel:
        """
        Build a fresh model context.

        Returns
        -------
        model : HormesisModel
            Graph with initial values set; ready for a sampler.
        """
        spec = self.prior_spec
        inits = self._default_inits()
        inits.update(self.inits)
        graph = ModelGraph()

        tau = graph.add_stochastic(
            "tau",
            float(inits["tau"]),
            gamma_prior("tau", spec.precision_shape, spec.precision_rate),
            structure=Structure.CONJUGATE_GAMMA,
            meta={"shape": spec.precision_shape, "rate": spec.precision_rate},
        )

        effects = None
        columns = None
        if self.config.trial_effects:
            effect_builder = TrialEffectBuilder(
                self.config.n_trials, spec.effect_rate, spec.lkj_eta
            )
            columns = effect_builder.channel_index()
            effects = effect_builder.add_to_graph(
                graph,
                init_scales=self.inits.get("effect_scale"),
                init_correlation=self.inits.get("effect_correlation"),
                init_z=self.inits.get("effect_z"),
            )

        for g in range(self.config.n_groups):
            c = graph.add_stochastic(
                f"c[{g}]",
                float(inits["c"][g]),
                normal_prior(f"c[{g}]", spec.c_loc, spec.c_scale),
                structure=Structure.CONJUGATE_NORMAL,
                meta={"loc": spec.c_loc, "scale": spec.c_scale},
            )
            d = graph.add_stochastic(
                f"d[{g}]",
                float(inits["d"][g]),
                normal_prior(f"d[{g}]", spec.d_loc, spec.d_scale),
                structure=Structure.CONJUGATE_NORMAL,
                meta={"loc": spec.d_loc, "scale": spec.d_scale},
            )
            state = Active(float(inits["f"][g])) if inits["w"][g] == 1 else Inactive()
            h = graph.add_stochastic(
                f"hormesis[{g}]",
                state,
                self._hormesis_prior(f"hormesis[{g}]"),
                structure=Structure.INDICATOR_PAIR,
                meta={
                    "loc": spec.f_loc,
                    "scale": spec.f_scale,
                    "lower": 0.0,
                    "upper": np.inf,
                    "inclusion_prob": spec.inclusion_prob,
                    "proposal_loc": spec.proposal_loc,
                    "proposal_scale": spec.proposal_scale,
                },
            )
            e = graph.add_stochastic(
                f"e[{g}]",
                float(inits["e"][g]),
                uniform_prior(f"e[{g}]", 0.0, self.max_dose),
                structure=Structure.BOUNDED_CONTINUOUS,
                meta={"lower": 0.0, "upper": self.max_dose},
            )
            b = graph.add_stochastic(
                f"b[{g}]",
                float(inits["b"][g]),
                truncated_normal_prior(f"b[{g}]", spec.b_loc, spec.b_scale),
                structure=Structure.BOUNDED_CONTINUOUS,
                meta={"lower": 0.0, "upper": np.inf},
            )
            parents = [c, d, h, e, b] + ([effects] if effects is not None else [])
            mu = graph.add_deterministic(f"mu[{g}]", self._mean_function(g, columns), parents)
            graph.add_observed(
                f"y[{g}]",
                self.table.response[self.group_index == g],
                normal_likelihood(f"y[{g}]"),
                [mu, tau],
            )

        model = HormesisModel(graph, self.table, self.config, spec, self.max_dose)
        logger.info(
            "Built %s variant: %d groups, %d observations, %d latent nodes",
            self.table.response_type.value,
            model.n_groups,
            len(self.table),
            len(graph.latent_nodes()),
        )
        return model

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"ModelBuilder(config={self.config}, n_obs={len(self.table)}, "
            f"prior_spec={self.prior_spec})"
        )
