"""
Update kernels for latent nodes and the registry that assigns them.

Each latent node carries a static structural class (see graph.Structure).
Kernels are looked up once per node when a sampler is constructed:

    conjugate_normal    → ConjugateNormalKernel   (closed-form Gaussian draw)
    conjugate_gamma     → ConjugateGammaKernel    (closed-form precision draw)
    bounded_continuous  → RandomWalkKernel        (adaptive scalar Metropolis)
    unconstrained_block → BlockRandomWalkKernel   (adaptive block Metropolis)
    indicator_pair      → ReversibleJumpKernel    (registered in rjmcmc.py)

Conjugate kernels rely on the likelihood convention used by the model
builder: every observed node is Normal with parents (mean, precision), and
the mean is linear in the updated node. The linear coefficients are found by
evaluating the mean at two points, so the closed form holds for any curve
that is linear in the node, including trial-effect offsets.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple, Type
import logging
import numpy as np
from numpy.typing import NDArray
from scipy import stats

from inference.errors import (
    ConfigurationError,
    DomainViolationError,
    NumericInstabilityError,
)
from inference.graph import ModelGraph, StochasticNode, Structure

logger = logging.getLogger(__name__)

KERNEL_REGISTRY: Dict[Structure, Type["Kernel"]] = {}


def register_kernel(structure: Structure) -> Callable[[Type["Kernel"]], Type["Kernel"]]:
    """Class decorator registering a kernel for a structural class."""
    def decorator(cls: Type["Kernel"]) -> Type["Kernel"]:
        KERNEL_REGISTRY[structure] = cls
        return cls
    return decorator


class Kernel:
    """
    Base update kernel for one latent node.

    Attributes
    ----------
    node : StochasticNode
        Node updated by this kernel
    graph : ModelGraph
        Owning graph
    rng : np.random.Generator
        Chain-local random number generator
    max_failures : int
        Consecutive numerically unstable proposals tolerated before the
        chain is declared stuck
    """

    def __init__(
        self,
        node: StochasticNode,
        graph: ModelGraph,
        rng: np.random.Generator,
        max_failures: int = 100,
    ) -> None:
        self.node = node
        self.graph = graph
        self.rng = rng
        self.max_failures = max_failures
        self.dependents = graph.dependents(node)
        self.downstream = graph.downstream(node)
        self.n_proposed = 0
        self.n_accepted = 0
        self._consecutive_failures = 0

    def step(self, adapt: bool = False) -> None:
        raise NotImplementedError

    @property
    def acceptance_rate(self) -> float:
        return self.n_accepted / self.n_proposed if self.n_proposed else float("nan")

    def _record_failure(self, exc: Exception) -> None:
        self._consecutive_failures += 1
        if self._consecutive_failures > self.max_failures:
            raise NumericInstabilityError(
                f"{self.node.name}: {self._consecutive_failures} consecutive unstable "
                f"proposals (last: {exc})"
            )

    def _metropolis(self, proposal: Any, log_correction: float = 0.0) -> bool:
        """
        Metropolis-Hastings accept/reject of ``proposal`` for this node.

        Support violations and numeric failures count as rejections; the
        previous caches are restored exactly on rejection.
        """
        self.n_proposed += 1
        lp_current = self.graph.log_prob(self.dependents)
        saved = self.graph.snapshot(self.downstream)
        try:
            self.node.value = proposal
            lp_proposal = self.graph.log_prob(self.dependents)
        except DomainViolationError:
            self.graph.restore(saved)
            return False
        except NumericInstabilityError as exc:
            self.graph.restore(saved)
            self._record_failure(exc)
            return False

        if not np.isfinite(lp_proposal):
            self.graph.restore(saved)
            self._record_failure(NumericInstabilityError(f"log density {lp_proposal}"))
            return False
        self._consecutive_failures = 0

        if np.log(self.rng.uniform()) < lp_proposal - lp_current + log_correction:
            self.n_accepted += 1
            return True
        self.graph.restore(saved)
        return False

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.node.name!r})"


def normal_observations(graph: ModelGraph, node: StochasticNode) -> List[StochasticNode]:
    """Observed dependents of ``node``; each has parents (mean, precision)."""
    return [n for n in graph.dependents(node) if n.observed]


def linear_gaussian_terms(
    observations: List[StochasticNode],
    set_value: Callable[[float], None],
) -> Tuple[float, float]:
    """
    Likelihood precision and precision-weighted mean for a linear node.

    With mu = a + k θ for every observation, the Gaussian likelihood in θ
    has precision Σ τ k² and information Σ τ k (y - a).

    Parameters
    ----------
    observations : list of StochasticNode
        Normal likelihood nodes with parents (mean, precision).
    set_value : callable
        Assigns θ on the model (used at θ = 0 and θ = 1).

    Returns
    -------
    precision : float
    information : float
    """
    set_value(0.0)
    offsets = [obs.parents[0].value for obs in observations]
    set_value(1.0)
    precision = 0.0
    information = 0.0
    for obs, a in zip(observations, offsets):
        k = obs.parents[0].value - a
        tau = obs.parents[1].value
        if not (np.all(np.isfinite(k)) and np.all(np.isfinite(a))):
            raise NumericInstabilityError(f"Non-finite linear coefficients in {obs.name}")
        precision += tau * float(np.dot(k, k))
        information += tau * float(np.dot(k, obs.value - a))
    return precision, information


def sample_gaussian_conditional(
    rng: np.random.Generator,
    prior_loc: float,
    prior_scale: float,
    lik_precision: float,
    lik_information: float,
    lower: float = -np.inf,
    upper: float = np.inf,
) -> float:
    """Draw from the (optionally truncated) Gaussian full conditional."""
    precision = 1.0 / prior_scale ** 2 + lik_precision
    mean = (prior_loc / prior_scale ** 2 + lik_information) / precision
    sd = 1.0 / np.sqrt(precision)
    if np.isinf(lower) and np.isinf(upper):
        return float(rng.normal(mean, sd))
    a, b = (lower - mean) / sd, (upper - mean) / sd
    return float(stats.truncnorm.rvs(a, b, loc=mean, scale=sd, random_state=rng))


@register_kernel(Structure.CONJUGATE_NORMAL)
class ConjugateNormalKernel(Kernel):
    """Closed-form Gibbs update for a Normal-prior node entering the mean linearly."""

    def __init__(self, node, graph, rng, max_failures=100) -> None:
        super().__init__(node, graph, rng, max_failures)
        for key in ("loc", "scale"):
            if key not in node.meta:
                raise ConfigurationError(f"{node.name}: conjugate normal prior needs {key!r}")
        self.observations = normal_observations(graph, node)

    def _set(self, value: float) -> None:
        self.node.value = value

    def step(self, adapt: bool = False) -> None:
        meta = self.node.meta
        saved = self.graph.snapshot(self.downstream)
        self.n_proposed += 1
        try:
            precision, information = linear_gaussian_terms(self.observations, self._set)
        except NumericInstabilityError as exc:
            self.graph.restore(saved)
            self._record_failure(exc)
            return
        self._consecutive_failures = 0
        self.node.value = sample_gaussian_conditional(
            self.rng,
            meta["loc"],
            meta["scale"],
            precision,
            information,
            meta.get("lower", -np.inf),
            meta.get("upper", np.inf),
        )
        self.n_accepted += 1


@register_kernel(Structure.CONJUGATE_GAMMA)
class ConjugateGammaKernel(Kernel):
    """Closed-form Gibbs update of a Normal likelihood precision with a Gamma prior."""

    def __init__(self, node, graph, rng, max_failures=100) -> None:
        super().__init__(node, graph, rng, max_failures)
        for key in ("shape", "rate"):
            if key not in node.meta:
                raise ConfigurationError(f"{node.name}: conjugate gamma prior needs {key!r}")
        self.observations = normal_observations(graph, node)

    def step(self, adapt: bool = False) -> None:
        shape = self.node.meta["shape"]
        rate = self.node.meta["rate"]
        self.n_proposed += 1
        for obs in self.observations:
            resid = obs.value - obs.parents[0].value
            if not np.all(np.isfinite(resid)):
                self._record_failure(NumericInstabilityError(f"Non-finite residuals in {obs.name}"))
                return
            shape += 0.5 * resid.size
            rate += 0.5 * float(np.dot(resid, resid))
        self._consecutive_failures = 0
        self.node.value = float(self.rng.gamma(shape, 1.0 / rate))
        self.n_accepted += 1


class _AdaptiveScale:
    """
    Robbins-Monro style proposal-scale adaptation toward a target acceptance.

    Every ``interval`` proposals the log scale moves by
    γ_k (rate - target), with γ_k = 10 / (k + 3)^0.8 decaying over
    successive adaptations.
    """

    def __init__(self, scale: float, target: float, interval: int) -> None:
        self.scale = scale
        self.target = target
        self.interval = interval
        self.times_adapted = 0
        self._proposed = 0
        self._accepted = 0

    def update(self, accepted: bool) -> None:
        self._proposed += 1
        self._accepted += int(accepted)
        if self._proposed < self.interval:
            return
        rate = self._accepted / self._proposed
        gamma = 10.0 / (self.times_adapted + 3.0) ** 0.8
        self.scale *= float(np.exp(gamma * (rate - self.target)))
        self.times_adapted += 1
        self._proposed = 0
        self._accepted = 0


@register_kernel(Structure.BOUNDED_CONTINUOUS)
class RandomWalkKernel(Kernel):
    """
    Adaptive random-walk Metropolis for a bounded scalar.

    Proposals outside (lower, upper) are rejected without evaluating the
    model. The proposal scale adapts only while ``adapt`` is True (burn-in).
    """

    TARGET_ACCEPTANCE = 0.44

    def __init__(self, node, graph, rng, max_failures=100, adapt_interval: int = 50) -> None:
        super().__init__(node, graph, rng, max_failures)
        self.lower = node.meta.get("lower", -np.inf)
        self.upper = node.meta.get("upper", np.inf)
        initial = node.meta.get("proposal_scale")
        if initial is None:
            initial = 0.1 * abs(node.value) if node.value else 0.1
        self.adaptation = _AdaptiveScale(initial, self.TARGET_ACCEPTANCE, adapt_interval)

    @property
    def scale(self) -> float:
        return self.adaptation.scale

    def step(self, adapt: bool = False) -> None:
        proposal = self.node.value + self.scale * self.rng.standard_normal()
        if proposal <= self.lower or proposal > self.upper:
            self.n_proposed += 1
            accepted = False
        else:
            accepted = self._metropolis(float(proposal))
        if adapt:
            self.adaptation.update(accepted)


@register_kernel(Structure.UNCONSTRAINED_BLOCK)
class BlockRandomWalkKernel(Kernel):
    """Adaptive isotropic random-walk Metropolis on an unconstrained vector."""

    TARGET_ACCEPTANCE = 0.234

    def __init__(self, node, graph, rng, max_failures=100, adapt_interval: int = 50) -> None:
        super().__init__(node, graph, rng, max_failures)
        self.size = np.asarray(node.value).size
        initial = node.meta.get("proposal_scale", 1.0 / np.sqrt(self.size))
        self.adaptation = _AdaptiveScale(initial, self.TARGET_ACCEPTANCE, adapt_interval)

    @property
    def scale(self) -> float:
        return self.adaptation.scale

    def step(self, adapt: bool = False) -> None:
        current = np.asarray(self.node.value)
        proposal = current + self.scale * self.rng.standard_normal(current.shape)
        accepted = self._metropolis(proposal)
        if adapt:
            self.adaptation.update(accepted)


def assign_kernels(
    graph: ModelGraph,
    rng: np.random.Generator,
    max_failures: int = 100,
    adapt_interval: int = 50,
) -> List[Kernel]:
    """
    Resolve one kernel per latent node from its structural class.

    Raises
    ------
    ConfigurationError
        If a node's structural class has no registered kernel.
    """
    kernels: List[Kernel] = []
    for node in graph.latent_nodes():
        kernel_cls = KERNEL_REGISTRY.get(node.structure)
        if kernel_cls is None:
            raise ConfigurationError(
                f"No kernel registered for {node.name} (structure={node.structure})"
            )
        if issubclass(kernel_cls, (RandomWalkKernel, BlockRandomWalkKernel)):
            kernel = kernel_cls(node, graph, rng, max_failures, adapt_interval=adapt_interval)
        else:
            kernel = kernel_cls(node, graph, rng, max_failures)
        kernels.append(kernel)
    logger.debug(
        "Assigned kernels: %s",
        ", ".join(f"{k.node.name}→{type(k).__name__}" for k in kernels),
    )
    return kernels
