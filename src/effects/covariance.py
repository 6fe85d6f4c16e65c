"""
Correlation matrices through their Cholesky factors, with an LKJ prior.

Trial-level deviations use a covariance decomposed as:
    Σ = diag(σ) R diag(σ)

where:
    - σ ∈ R^K: per-channel scales
    - R ∈ R^{K×K}: correlation matrix (unit diagonal, symmetric, PSD)

R is handled through an upper-triangular factor U with unit-norm columns:
    R = U^T U

The LKJ prior on the factor (η > 0) has density, up to a constant,
    log p(U | η) = Σ_{k=2}^{K} (K - k + 2η - 2) log U_kk

    - η = 1: uniform over correlation matrices
    - η > 1: concentrates near the identity (weak correlations)
    - η < 1: favours strong correlations

For sampling, U is mapped from K(K-1)/2 unconstrained reals through
canonical partial correlations z = tanh(y), so random-walk proposals never
leave the space of valid factors.
"""

from typing import Optional, Tuple
import numpy as np
from numpy.typing import NDArray


def n_free_correlations(dim: int) -> int:
    """Number of unconstrained reals parameterizing a dim × dim correlation factor."""
    return dim * (dim - 1) // 2


def correlation_from_cholesky(U: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Recover the correlation matrix R = U^T U.

    The result is symmetrized and rescaled to an exact unit diagonal so that
    floating-point drift in U never leaks into reported correlations.

    Parameters
    ----------
    U : NDArray[np.float64]
        Upper-triangular Cholesky factor, shape (K, K), unit-norm columns.

    Returns
    -------
    NDArray[np.float64]
        Correlation matrix, shape (K, K).
    """
    R = U.T @ U
    R = 0.5 * (R + R.T)
    scale = np.sqrt(np.diag(R))
    R = R / np.outer(scale, scale)
    np.fill_diagonal(R, 1.0)
    return R


def cholesky_from_correlation(R: NDArray[np.float64]) -> NDArray[np.float64]:
    """
    Upper-triangular factor U with R = U^T U.

    Raises
    ------
    ValueError
        If R is not a valid (positive-definite) correlation matrix.
    """
    validate_correlation(R)
    return np.linalg.cholesky(R).T


def validate_correlation(R: NDArray[np.float64], atol: float = 1e-10) -> None:
    """
    Validate a correlation matrix.

    Checks:
    - Square
    - Unit diagonal
    - Symmetric
    - Positive definite
    """
    if R.ndim != 2 or R.shape[0] != R.shape[1]:
        raise ValueError(f"Correlation matrix must be square. Got shape {R.shape}")

    diag = np.diag(R)
    if not np.allclose(diag, 1.0, atol=atol):
        raise ValueError(f"Correlation matrix diagonal must be 1. Got {diag}")

    if not np.allclose(R, R.T, atol=atol):
        raise ValueError("Correlation matrix must be symmetric")

    try:
        np.linalg.cholesky(R)
    except np.linalg.LinAlgError:
        raise ValueError("Correlation matrix must be positive definite")


def cholesky_corr_from_unconstrained(
    y: NDArray[np.float64],
    dim: int,
) -> Tuple[NDArray[np.float64], float]:
    """
    Map unconstrained reals to a correlation Cholesky factor.

    Each y is squashed to a canonical partial correlation z = tanh(y) in
    (-1, 1); row i of the lower factor L is then built so that it has unit
    norm. The returned factor is U = L^T.

    Parameters
    ----------
    y : NDArray[np.float64]
        Unconstrained values, shape (K(K-1)/2,).
    dim : int
        Matrix dimension K.

    Returns
    -------
    U : NDArray[np.float64]
        Upper-triangular factor, shape (K, K).
    log_jacobian : float
        Log absolute determinant of the transform, for densities over y.
    """
    y = np.asarray(y, dtype=np.float64)
    if y.shape != (n_free_correlations(dim),):
        raise ValueError(
            f"Expected {n_free_correlations(dim)} unconstrained values for "
            f"dim={dim}. Got shape {y.shape}"
        )

    z = np.tanh(y)
    log_jacobian = float(np.sum(np.log1p(-z ** 2)))

    L = np.zeros((dim, dim))
    L[0, 0] = 1.0
    k = 0
    for i in range(1, dim):
        L[i, 0] = z[k]
        k += 1
        sum_sqs = L[i, 0] ** 2
        for j in range(1, i):
            log_jacobian += 0.5 * np.log1p(-sum_sqs)
            L[i, j] = z[k] * np.sqrt(1.0 - sum_sqs)
            k += 1
            sum_sqs += L[i, j] ** 2
        L[i, i] = np.sqrt(max(1.0 - sum_sqs, 0.0))

    return L.T, log_jacobian


def unconstrained_from_cholesky_corr(U: NDArray[np.float64]) -> NDArray[np.float64]:
    """Inverse of :func:`cholesky_corr_from_unconstrained`."""
    L = np.asarray(U, dtype=np.float64).T
    dim = L.shape[0]
    y = np.zeros(n_free_correlations(dim))
    k = 0
    for i in range(1, dim):
        sum_sqs = 0.0
        for j in range(i):
            z = L[i, j] / np.sqrt(1.0 - sum_sqs)
            y[k] = np.arctanh(np.clip(z, -1.0 + 1e-15, 1.0 - 1e-15))
            sum_sqs += L[i, j] ** 2
            k += 1
    return y


def lkj_cholesky_log_density(U: NDArray[np.float64], eta: float) -> float:
    """
    Unnormalized LKJ log density of a correlation Cholesky factor.

    Parameters
    ----------
    U : NDArray[np.float64]
        Upper-triangular factor, shape (K, K).
    eta : float
        Concentration, η > 0.

    Returns
    -------
    float
        Log density up to an additive constant.
    """
    if eta <= 0:
        raise ValueError(f"LKJ eta must be positive. Got {eta}")
    dim = U.shape[0]
    log_diag = np.log(np.diag(U)[1:])
    k = np.arange(2, dim + 1)
    return float(np.sum((dim - k + 2.0 * eta - 2.0) * log_diag))


class CovarianceModel:
    """
    Covariance matrix built from per-channel scales and a correlation matrix.

    Handles conversion between:
    - Full covariance matrices Σ
    - Correlation + scale decomposition (R, σ)
    - Cholesky factor of R (U where R = U^T U)
    """

    def __init__(
        self,
        correlation_matrix: NDArray[np.float64],
        scales: NDArray[np.float64],
        validate: bool = True,
    ) -> None:
        """
        Initialize covariance model.

        Parameters
        ----------
        correlation_matrix : NDArray[np.float64]
            Correlation matrix R, shape (K, K)
        scales : NDArray[np.float64]
            Per-channel standard deviations σ, shape (K,)
        validate : bool, optional
            If True, validate that the correlation matrix and scales are valid.

        Raises
        ------
        ValueError
            If correlation matrix or scales invalid.
        """
        self.correlation_matrix = np.asarray(correlation_matrix, dtype=np.float64)
        self.scales = np.asarray(scales, dtype=np.float64)
        self.dim = len(self.scales)

        if validate:
            self._validate_parameters()

        self._covariance: Optional[NDArray[np.float64]] = None
        self._factor: Optional[NDArray[np.float64]] = None

    @classmethod
    def from_cholesky(
        cls,
        U: NDArray[np.float64],
        scales: NDArray[np.float64],
    ) -> "CovarianceModel":
        """Build from a correlation Cholesky factor U (R = U^T U)."""
        model = cls(correlation_from_cholesky(U), scales, validate=False)
        model._factor = np.asarray(U, dtype=np.float64)
        return model

    def _validate_parameters(self) -> None:
        if self.correlation_matrix.shape != (self.dim, self.dim):
            raise ValueError(
                f"Correlation matrix shape {self.correlation_matrix.shape} "
                f"doesn't match (dim={self.dim}, dim={self.dim})"
            )
        validate_correlation(self.correlation_matrix)
        if np.any(self.scales < 0):
            raise ValueError(f"All scales must be non-negative. Got {self.scales}")

    @property
    def covariance(self) -> NDArray[np.float64]:
        """
        Get covariance matrix (computed lazily).

        Returns
        -------
        NDArray[np.float64]
            Covariance matrix Σ = diag(σ) R diag(σ), shape (K, K)
        """
        if self._covariance is None:
            self._covariance = (
                self.correlation_matrix * np.outer(self.scales, self.scales)
            )
        return self._covariance

    @property
    def correlation_factor(self) -> NDArray[np.float64]:
        """Upper-triangular factor U of the correlation matrix (computed lazily)."""
        if self._factor is None:
            self._factor = cholesky_from_correlation(self.correlation_matrix)
        return self._factor

    def transform(self, z: NDArray[np.float64]) -> NDArray[np.float64]:
        """
        Non-centered transform of standard-normal rows into correlated deviations.

        Each row z_i becomes diag(σ) U^T z_i, so rows are N(0, Σ).

        Parameters
        ----------
        z : NDArray[np.float64]
            Standard-normal draws, shape (n, K) or (K,)

        Returns
        -------
        NDArray[np.float64]
            Deviations, same shape as z
        """
        z = np.asarray(z, dtype=np.float64)
        return (z @ self.correlation_factor) * self.scales

    def sample_mvn(
        self,
        n_samples: int,
        random_seed: Optional[int] = None,
    ) -> NDArray[np.float64]:
        """
        Sample zero-mean multivariate normal deviations with this covariance.

        Parameters
        ----------
        n_samples : int
            Number of samples
        random_seed : int, optional
            Random seed for reproducibility

        Returns
        -------
        NDArray[np.float64]
            Samples, shape (n_samples, K)
        """
        rng = np.random.default_rng(random_seed)
        z = rng.standard_normal(size=(n_samples, self.dim))
        return self.transform(z)

    def log_det(self) -> float:
        """
        Log determinant of the covariance matrix.

            log det(Σ) = 2 Σ log σ_k + 2 Σ log U_kk
        """
        return float(
            2.0 * np.sum(np.log(self.scales))
            + 2.0 * np.sum(np.log(np.diag(self.correlation_factor)))
        )

    def __repr__(self) -> str:
        """String representation."""
        return f"CovarianceModel(dim={self.dim})"


def trial_effect_matrix(
    scales: NDArray[np.float64],
    U: NDArray[np.float64],
    z: NDArray[np.float64],
) -> NDArray[np.float64]:
    """
    Non-centered deviations for all trials, δ_i = diag(σ) U^T z_i.

    Parameters
    ----------
    scales : NDArray[np.float64]
        Channel scales σ, shape (K,)
    U : NDArray[np.float64]
        Upper-triangular correlation factor, shape (K, K)
    z : NDArray[np.float64]
        Raw standard-normal latents, shape (n_trials, K)

    Returns
    -------
    NDArray[np.float64]
        Deviations, shape (n_trials, K)
    """
    return (np.atleast_2d(z) @ U) * np.asarray(scales)
