"""
Multi-chain MCMC driver for hormesis dose-response models.

Runs independent reversible-jump chains, discards burn-in, thins, and
collects draws into an InferenceResult.

Chain lifecycle:
    Initializing → Sampling → Completed
                 ↘ Failed (initialization or persistent numeric failure)
                 ↘ Cancelled (stop requested at an iteration boundary)

Retained draws per completed chain: floor((iterations - burn_in) / thin).

Each chain builds its own model context from the builder and owns its own
random stream (spawned from one SeedSequence), so chains share no mutable
state and a run is reproducible from its seed whether chains execute
sequentially or in separate processes.
"""

from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Callable, Dict, List, Mapping, Optional, Tuple
import logging
import time
import numpy as np
from numpy.typing import NDArray
import arviz as az
from tqdm.auto import tqdm

from curves.dose_response import ResponseType
from inference.errors import (
    ConfigurationError,
    DomainViolationError,
    NumericInstabilityError,
)
from inference.model_builder import ModelBuilder
from inference.rjmcmc import RJMCMCSampler

logger = logging.getLogger(__name__)


class SamplerConfig:
    """Settings shared by every chain of a run."""

    def __init__(
        self,
        iterations: int = 5000,
        burn_in: int = 1000,
        thin: int = 1,
        n_chains: int = 2,
        random_seed: Optional[int] = None,
        cores: int = 1,
        adapt_interval: int = 50,
        max_consecutive_failures: int = 100,
        progressbar: bool = False,
        rhat_threshold: float = 1.05,
        ess_threshold: float = 100.0,
    ) -> None:
        """
        Initialize sampler settings.

        Parameters
        ----------
        iterations : int
            Total iterations per chain, including burn-in. Default 5000.
        burn_in : int
            Leading iterations discarded; proposal scales adapt only here.
        thin : int
            Keep every thin-th post-burn-in iteration. Default 1.
        n_chains : int
            Number of independent chains. Default 2.
        random_seed : int, optional
            Seed of the SeedSequence that spawns one stream per chain.
        cores : int
            Worker processes. 1 runs chains sequentially in-process.
        adapt_interval : int
            Proposals between proposal-scale adaptations.
        max_consecutive_failures : int
            Consecutive numerically unstable proposals tolerated per kernel
            before the chain is failed as stuck.
        progressbar : bool
            Show a tqdm progress bar per chain. Default False.
        rhat_threshold : float
            R-hat above which results are flagged as non-converged.
        ess_threshold : float
            Bulk ESS below which results are flagged as non-converged.
        """
        if iterations <= 0 or n_chains <= 0 or thin <= 0 or cores <= 0:
            raise ConfigurationError(
                f"iterations, thin, n_chains and cores must be positive. Got "
                f"iterations={iterations}, thin={thin}, n_chains={n_chains}, cores={cores}"
            )
        if not 0 <= burn_in < iterations:
            raise ConfigurationError(
                f"burn_in must be in [0, iterations). Got {burn_in} with iterations={iterations}"
            )
        if adapt_interval <= 0 or max_consecutive_failures <= 0:
            raise ConfigurationError("adapt_interval and max_consecutive_failures must be positive")

        self.iterations = iterations
        self.burn_in = burn_in
        self.thin = thin
        self.n_chains = n_chains
        self.random_seed = random_seed
        self.cores = cores
        self.adapt_interval = adapt_interval
        self.max_consecutive_failures = max_consecutive_failures
        self.progressbar = progressbar
        self.rhat_threshold = rhat_threshold
        self.ess_threshold = ess_threshold

    @property
    def n_retained(self) -> int:
        """Draws kept per completed chain."""
        return (self.iterations - self.burn_in) // self.thin

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"SamplerConfig(iterations={self.iterations}, burn_in={self.burn_in}, "
            f"thin={self.thin}, chains={self.n_chains}, seed={self.random_seed})"
        )


class ChainStatus(str, Enum):
    INITIALIZING = "initializing"
    SAMPLING = "sampling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class Draw:
    """One retained posterior sample."""

    chain_id: int
    index: int
    values: Mapping[str, NDArray[np.float64]]

    def __getitem__(self, name: str) -> NDArray[np.float64]:
        return self.values[name]


@dataclass
class Chain:
    """
    Ordered draws of one independent sampler run.

    Attributes
    ----------
    chain_id : int
    status : ChainStatus
    draws : Dict[str, NDArray[np.float64]]
        Read-only arrays of shape (n_draws, ...) per recorded quantity
    acceptance : Dict[str, float]
        Acceptance rate per latent node
    error : Exception, optional
        Failure cause when status is FAILED
    failed_stage : str, optional
        "initialization" or "sampling"
    iterations_done : int
        Completed iterations, including burn-in
    """

    chain_id: int
    status: ChainStatus = ChainStatus.INITIALIZING
    draws: Dict[str, NDArray[np.float64]] = field(default_factory=dict)
    acceptance: Dict[str, float] = field(default_factory=dict)
    error: Optional[BaseException] = None
    failed_stage: Optional[str] = None
    iterations_done: int = 0

    @property
    def n_draws(self) -> int:
        if not self.draws:
            return 0
        return len(next(iter(self.draws.values())))

    def draw(self, index: int) -> Draw:
        values = {name: arr[index] for name, arr in self.draws.items()}
        return Draw(self.chain_id, index, MappingProxyType(values))

    def __iter__(self):
        return (self.draw(i) for i in range(self.n_draws))


def _freeze(records: List[Dict[str, NDArray[np.float64]]]) -> Dict[str, NDArray[np.float64]]:
    if not records:
        return {}
    frozen = {}
    for name in records[0]:
        arr = np.stack([np.asarray(r[name]) for r in records])
        arr.setflags(write=False)
        frozen[name] = arr
    return frozen


def run_chain(
    builder: ModelBuilder,
    config: SamplerConfig,
    chain_id: int,
    seed: np.random.SeedSequence,
    should_stop: Optional[Callable[[], bool]] = None,
) -> Chain:
    """
    Run one chain in its own model context.

    Errors are contained: initialization failures and persistent numeric
    instability are recorded on the returned Chain instead of propagating.

    Parameters
    ----------
    builder : ModelBuilder
        Validated builder; a fresh model is built for this chain.
    config : SamplerConfig
    chain_id : int
    seed : np.random.SeedSequence
        Chain-specific seed.
    should_stop : callable, optional
        Checked at each iteration boundary; True cancels the chain, keeping
        the draws recorded so far.

    Returns
    -------
    Chain
    """
    chain = Chain(chain_id)
    rng = np.random.default_rng(seed)
    model = builder.build()
    sampler = RJMCMCSampler(
        model.graph, rng, config.max_consecutive_failures, config.adapt_interval
    )

    try:
        sampler.initialize()
    except (DomainViolationError, NumericInstabilityError) as exc:
        chain.status = ChainStatus.FAILED
        chain.error = exc
        chain.failed_stage = "initialization"
        logger.error("Chain %d failed to initialize: %s", chain_id, exc)
        return chain

    chain.status = ChainStatus.SAMPLING
    records: List[Dict[str, NDArray[np.float64]]] = []
    iterations = tqdm(
        range(config.iterations),
        desc=f"chain {chain_id}",
        disable=not config.progressbar,
        leave=False,
    )
    try:
        for i in iterations:
            if should_stop is not None and should_stop():
                chain.status = ChainStatus.CANCELLED
                logger.info("Chain %d cancelled after %d iterations", chain_id, i)
                break
            sampler.step(adapt=i < config.burn_in)
            chain.iterations_done = i + 1
            if i >= config.burn_in and (i - config.burn_in + 1) % config.thin == 0:
                records.append(model.record())
        else:
            chain.status = ChainStatus.COMPLETED
    except NumericInstabilityError as exc:
        chain.status = ChainStatus.FAILED
        chain.error = exc
        chain.failed_stage = "sampling"
        logger.error("Chain %d failed at iteration %d: %s", chain_id, chain.iterations_done, exc)

    chain.draws = _freeze(records)
    chain.acceptance = sampler.acceptance_rates()
    if chain.status is ChainStatus.COMPLETED:
        logger.info("Chain %d completed: %d draws retained", chain_id, chain.n_draws)
    return chain


class InferenceResult:
    """
    Draws and metadata from one multi-chain run.

    Attributes
    ----------
    chains : List[Chain]
    groups : List[Tuple[int, int]]
        (species, level) label per group
    pairs : List[Tuple[int, int]]
        Group index pairs of the e_diff / d_diff derived quantities
    response_type : ResponseType
        Sign convention used at fit time
    alpha : float
        Hormesis shape exponent used at fit time
    config : SamplerConfig
    sampling_time : float
        Wall-clock seconds
    """

    def __init__(
        self,
        chains: List[Chain],
        groups: List[Tuple[int, int]],
        pairs: List[Tuple[int, int]],
        response_type: ResponseType,
        alpha: float,
        config: SamplerConfig,
        sampling_time: float,
    ) -> None:
        self.chains = chains
        self.groups = groups
        self.pairs = pairs
        self.response_type = response_type
        self.alpha = alpha
        self.config = config
        self.sampling_time = sampling_time

    @property
    def completed_chains(self) -> List[Chain]:
        return [c for c in self.chains if c.status is ChainStatus.COMPLETED]

    @property
    def failed_chains(self) -> List[Chain]:
        return [c for c in self.chains if c.status is ChainStatus.FAILED]

    def _usable_chains(self) -> List[Chain]:
        chains = self.completed_chains
        if not chains:
            raise RuntimeError("No completed chains to summarize")
        return chains

    def posterior(self, name: str) -> NDArray[np.float64]:
        """
        Stack one quantity across completed chains.

        Returns
        -------
        NDArray[np.float64]
            Shape (n_chains, n_draws, ...)
        """
        return np.stack([c.draws[name] for c in self._usable_chains()])

    def pooled(self, name: str) -> NDArray[np.float64]:
        """One quantity pooled over completed chains, shape (n_total_draws, ...)."""
        return np.concatenate([c.draws[name] for c in self._usable_chains()])

    @property
    def names(self) -> List[str]:
        return list(self._usable_chains()[0].draws)

    def to_inference_data(self, var_names: Optional[List[str]] = None):
        """
        Convert completed chains to arviz.InferenceData.

        Parameters
        ----------
        var_names : list of str, optional
            Quantities to include. Default: all recorded quantities.
        """
        names = var_names or self.names
        return az.from_dict(posterior={name: self.posterior(name) for name in names})

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"InferenceResult(chains={len(self.chains)}, "
            f"completed={len(self.completed_chains)}, "
            f"draws={self.config.n_retained}, time={self.sampling_time:.1f}s)"
        )


class MCMCDriver:
    """
    Runs N independent chains of the reversible-jump sampler.

    Attributes
    ----------
    config : SamplerConfig
    """

    def __init__(self, config: Optional[SamplerConfig] = None) -> None:
        self.config = config or SamplerConfig()

    def run(
        self,
        builder: ModelBuilder,
        should_stop: Optional[Callable[[], bool]] = None,
    ) -> InferenceResult:
        """
        Sample every chain and collect the results.

        Parameters
        ----------
        builder : ModelBuilder
            Validated model builder; each chain builds its own context.
        should_stop : callable, optional
            Cancellation check evaluated at iteration boundaries. Only
            honoured for in-process execution (cores=1).

        Returns
        -------
        result : InferenceResult

        Raises
        ------
        RuntimeError
            If every chain failed.
        """
        config = self.config
        seeds = np.random.SeedSequence(config.random_seed).spawn(config.n_chains)
        logger.info(
            "Starting %d chains: %d iterations, burn-in %d, thin %d",
            config.n_chains, config.iterations, config.burn_in, config.thin,
        )
        start_time = time.time()

        if config.cores > 1 and config.n_chains > 1:
            if should_stop is not None:
                logger.warning("should_stop is ignored when chains run in worker processes")
            with ProcessPoolExecutor(max_workers=min(config.cores, config.n_chains)) as pool:
                futures = [
                    pool.submit(run_chain, builder, config, chain_id, seed)
                    for chain_id, seed in enumerate(seeds)
                ]
                chains = [future.result() for future in futures]
        else:
            chains = [
                run_chain(builder, config, chain_id, seed, should_stop)
                for chain_id, seed in enumerate(seeds)
            ]

        sampling_time = time.time() - start_time
        n_failed = sum(c.status is ChainStatus.FAILED for c in chains)
        if n_failed:
            logger.warning("%d of %d chains failed", n_failed, len(chains))
        if n_failed == len(chains):
            raise RuntimeError(
                f"All {len(chains)} chains failed; first error: {chains[0].error!r}"
            )

        return InferenceResult(
            chains=chains,
            groups=builder.config.groups,
            pairs=builder.config.pairs,
            response_type=builder.table.response_type,
            alpha=builder.config.alpha,
            config=config,
            sampling_time=sampling_time,
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"MCMCDriver(config={self.config})"
