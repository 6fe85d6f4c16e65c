"""
Correlation structure of trial-level random effects.

**Covariance model (covariance.py):**
- Σ = diag(σ) R diag(σ) with R handled through its Cholesky factor
- Unconstrained parameterization of correlation factors
- LKJ prior density on the factor
- Non-centered trial deviations δ_i = diag(σ) U^T z_i
"""

from effects.covariance import (
    CovarianceModel,
    cholesky_corr_from_unconstrained,
    cholesky_from_correlation,
    correlation_from_cholesky,
    lkj_cholesky_log_density,
    n_free_correlations,
    trial_effect_matrix,
    unconstrained_from_cholesky_corr,
    validate_correlation,
)

__all__ = [
    "CovarianceModel",
    "cholesky_corr_from_unconstrained",
    "cholesky_from_correlation",
    "correlation_from_cholesky",
    "lkj_cholesky_log_density",
    "n_free_correlations",
    "trial_effect_matrix",
    "unconstrained_from_cholesky_corr",
    "validate_correlation",
]
