"""
Bayesian inference module for hormesis dose-response models.

This module provides the complete reversible-jump MCMC pipeline:
1. ModelBuilder: Assemble the hierarchical model as a node graph
2. RJMCMCSampler: Per-chain sweep with registry-assigned update kernels
3. MCMCDriver: Independent chains, burn-in, thinning
4. PosteriorSummarizer: Parameter summaries, R-hat, ESS, inclusion probabilities
5. PosteriorPredictive: Curve predictions on a dose grid and predictive checks

**Usage:**
```python
from inference.model_builder import ModelBuilder, ModelConfig, ObservationTable, PriorSpec
from inference.sampler import MCMCDriver, SamplerConfig
from inference.summary import PosteriorSummarizer
from inference.predictive import PosteriorPredictive, make_dose_grid

# 1. Define the model
table = ObservationTable(dose, response, species, trial, response_type="absorbance")
builder = ModelBuilder(table, ModelConfig(n_species=2, n_trials=3))

# 2. Sample
driver = MCMCDriver(SamplerConfig(iterations=5000, burn_in=1000, thin=2, n_chains=4, random_seed=1))
result = driver.run(builder)

# 3. Summaries and predictions
summaries = PosteriorSummarizer().summarize(result)
inclusion = PosteriorSummarizer.inclusion_probability(result)
curves = PosteriorPredictive(result).evaluate(make_dose_grid(0.01, 100.0, 50))
```

**Key Classes:**
- PriorSpec, ModelConfig, SamplerConfig: Configuration
- ObservationTable: Validated experiment data
- ModelBuilder / HormesisModel: Model assembly, one context per chain
- ReversibleJumpKernel: Birth/death moves on the hormesis variant
- InferenceResult / Chain / Draw: Sampling results
- DiagnosticsComputer: R-hat and ESS
"""

from inference.errors import (
    ConfigurationError,
    DomainViolationError,
    NonConvergenceWarning,
    NumericInstabilityError,
)
from inference.model_builder import (
    HormesisModel,
    ModelBuilder,
    ModelConfig,
    ObservationTable,
    PriorSpec,
)
from inference.rjmcmc import Active, Inactive, ReversibleJumpKernel, RJMCMCSampler
from inference.sampler import (
    Chain,
    ChainStatus,
    Draw,
    InferenceResult,
    MCMCDriver,
    SamplerConfig,
)
from inference.summary import DiagnosticsComputer, ParameterSummary, PosteriorSummarizer
from inference.predictive import PosteriorPredictive, PredictiveSummary, make_dose_grid

__all__ = [
    "ConfigurationError",
    "DomainViolationError",
    "NonConvergenceWarning",
    "NumericInstabilityError",
    "HormesisModel",
    "ModelBuilder",
    "ModelConfig",
    "ObservationTable",
    "PriorSpec",
    "Active",
    "Inactive",
    "ReversibleJumpKernel",
    "RJMCMCSampler",
    "Chain",
    "ChainStatus",
    "Draw",
    "InferenceResult",
    "MCMCDriver",
    "SamplerConfig",
    "DiagnosticsComputer",
    "ParameterSummary",
    "PosteriorSummarizer",
    "PosteriorPredictive",
    "PredictiveSummary",
    "make_dose_grid",
]
