"""
Reversible-jump MCMC for the hormesis inclusion indicator.

Each group's hormesis component is a tagged variant:

    Inactive()        w = 0, no magnitude exists
    Active(f)         w = 1, magnitude f > 0

Prior:
    w ~ Bernoulli(p)
    f | w = 1 ~ Normal(f_loc, f_scale) truncated to f > 0

Toggle moves jump between the two sub-models:
    birth (0 → 1): draw f* ~ q, accept with
        α = min(1, L(f*) p π(f*) / (L₀ (1 - p) q(f*)) · |J|)
    death (1 → 0): discard f, accept with the reciprocal ratio.

The correspondence between models is the identity on the shared parameters
plus f itself, so |J| = 1. With q matched to f's prior the prior and
proposal densities cancel. After the toggle, an Active magnitude gets a
closed-form Gaussian update, since the curve is linear in f.

The per-chain sampler sweeps every latent node once per iteration with the
kernel resolved from the registry at construction.
"""

from dataclasses import dataclass
from typing import ClassVar, Dict, List, Union
import logging
import numpy as np
from scipy import stats

from inference.errors import ConfigurationError, NumericInstabilityError
from inference.graph import ModelGraph, Structure
from inference.distributions import truncated_normal_logpdf
from inference.kernels import (
    Kernel,
    assign_kernels,
    linear_gaussian_terms,
    normal_observations,
    register_kernel,
    sample_gaussian_conditional,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Inactive:
    """Hormesis component switched off (w = 0)."""

    indicator: ClassVar[int] = 0
    magnitude: ClassVar[float] = 0.0


@dataclass(frozen=True)
class Active:
    """Hormesis component switched on (w = 1) with magnitude f."""

    magnitude: float
    indicator: ClassVar[int] = 1


HormesisState = Union[Inactive, Active]


@register_kernel(Structure.INDICATOR_PAIR)
class ReversibleJumpKernel(Kernel):
    """
    Toggle move on a hormesis variant followed by a within-model magnitude update.

    Node meta must provide the magnitude prior ("loc", "scale", "lower",
    "upper"), "inclusion_prob", and optionally "proposal_loc" /
    "proposal_scale" for the birth proposal (default: the prior).
    """

    def __init__(self, node, graph, rng, max_failures=100) -> None:
        super().__init__(node, graph, rng, max_failures)
        meta = node.meta
        for key in ("loc", "scale", "inclusion_prob"):
            if key not in meta:
                raise ConfigurationError(f"{node.name}: reversible-jump prior needs {key!r}")
        self.lower = meta.get("lower", 0.0)
        self.upper = meta.get("upper", np.inf)
        self.proposal_loc = meta.get("proposal_loc", meta["loc"])
        self.proposal_scale = meta.get("proposal_scale", meta["scale"])
        self.observations = normal_observations(graph, node)
        self.n_births = 0
        self.n_deaths = 0

    def _proposal_logpdf(self, f: float) -> float:
        return truncated_normal_logpdf(
            f, self.proposal_loc, self.proposal_scale, self.lower, self.upper
        )

    def _propose_magnitude(self) -> float:
        a = (self.lower - self.proposal_loc) / self.proposal_scale
        b = (self.upper - self.proposal_loc) / self.proposal_scale
        return float(
            stats.truncnorm.rvs(
                a, b, loc=self.proposal_loc, scale=self.proposal_scale, random_state=self.rng
            )
        )

    def toggle(self) -> bool:
        """Attempt one birth or death move. Returns True if accepted."""
        state = self.node.value
        if isinstance(state, Inactive):
            f_new = self._propose_magnitude()
            accepted = self._metropolis(Active(f_new), -self._proposal_logpdf(f_new))
            self.n_births += int(accepted)
        else:
            log_q = self._proposal_logpdf(state.magnitude)
            accepted = self._metropolis(Inactive(), log_q)
            self.n_deaths += int(accepted)
        return accepted

    def _set_magnitude(self, f: float) -> None:
        self.node.value = Active(f)

    def update_magnitude(self) -> None:
        """Closed-form Gaussian update of f within the active model."""
        if not isinstance(self.node.value, Active):
            return
        saved = self.graph.snapshot(self.downstream)
        try:
            precision, information = linear_gaussian_terms(
                self.observations, self._set_magnitude
            )
        except NumericInstabilityError as exc:
            self.graph.restore(saved)
            self._record_failure(exc)
            return
        meta = self.node.meta
        self.node.value = Active(
            sample_gaussian_conditional(
                self.rng,
                meta["loc"],
                meta["scale"],
                precision,
                information,
                self.lower,
                self.upper,
            )
        )

    def step(self, adapt: bool = False) -> None:
        self.toggle()
        self.update_magnitude()


class RJMCMCSampler:
    """
    Single-chain sampler: one sweep of every latent node per iteration.

    Attributes
    ----------
    graph : ModelGraph
        Model graph owned by this chain
    kernels : List[Kernel]
        One kernel per latent node, in topological order
    rng : np.random.Generator
        Chain-local random number generator
    """

    def __init__(
        self,
        graph: ModelGraph,
        rng: np.random.Generator,
        max_failures: int = 100,
        adapt_interval: int = 50,
    ) -> None:
        self.graph = graph
        self.rng = rng
        self.kernels: List[Kernel] = assign_kernels(graph, rng, max_failures, adapt_interval)
        self.iteration = 0

    def initialize(self) -> float:
        """
        Evaluate the full log density at the starting values.

        Raises
        ------
        DomainViolationError
            If a starting value is outside its support.
        NumericInstabilityError
            If the starting log density is not finite.
        """
        log_prob = self.graph.log_prob()
        if not np.isfinite(log_prob):
            raise NumericInstabilityError(f"Initial log density is {log_prob}")
        return log_prob

    def step(self, adapt: bool = False) -> None:
        """One full sweep over all kernels."""
        for kernel in self.kernels:
            kernel.step(adapt)
        self.iteration += 1

    def indicator_kernels(self) -> List[ReversibleJumpKernel]:
        return [k for k in self.kernels if isinstance(k, ReversibleJumpKernel)]

    def acceptance_rates(self) -> Dict[str, float]:
        return {k.node.name: k.acceptance_rate for k in self.kernels}

    def __repr__(self) -> str:
        return f"RJMCMCSampler(kernels={len(self.kernels)}, iteration={self.iteration})"
