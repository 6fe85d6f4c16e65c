"""
Log densities and support checks used by model nodes.

Densities are evaluated through scipy.stats. Support violations raise
DomainViolationError so that kernels can reject the proposal and chain
initialization can fail loudly.
"""

from typing import Callable
import numpy as np
from numpy.typing import NDArray
from scipy import stats

from inference.errors import DomainViolationError, NumericInstabilityError


def normal_logpdf(x, loc, scale) -> float:
    """Sum of Normal(loc, scale) log densities."""
    return float(np.sum(stats.norm.logpdf(x, loc, scale)))


def truncated_normal_logpdf(x: float, loc: float, scale: float, lower: float, upper: float) -> float:
    """Normal(loc, scale) log density truncated to (lower, upper)."""
    a, b = (lower - loc) / scale, (upper - loc) / scale
    return float(stats.truncnorm.logpdf(x, a, b, loc=loc, scale=scale))


def gamma_logpdf(x: float, shape: float, rate: float) -> float:
    """Gamma(shape, rate) log density."""
    return float(stats.gamma.logpdf(x, shape, scale=1.0 / rate))


def exponential_logpdf(x: float, rate: float) -> float:
    """Exponential(rate) log density."""
    return float(stats.expon.logpdf(x, scale=1.0 / rate))


def check_bounds(name: str, value: float, lower: float, upper: float, closed_upper: bool = False) -> None:
    """Raise DomainViolationError unless lower < value < upper (or <= upper)."""
    inside_upper = value <= upper if closed_upper else value < upper
    if not (np.isfinite(value) and value > lower and inside_upper):
        bracket = "]" if closed_upper else ")"
        raise DomainViolationError(name, value, f"({lower}, {upper}{bracket}")


def normal_prior(name: str, loc: float, scale: float) -> Callable[[float], float]:
    """Log density of an unbounded Normal prior."""
    def log_density(value: float) -> float:
        if not np.isfinite(value):
            raise DomainViolationError(name, value, "(-inf, inf)")
        return normal_logpdf(value, loc, scale)
    return log_density


def truncated_normal_prior(
    name: str, loc: float, scale: float, lower: float = 0.0, upper: float = np.inf
) -> Callable[[float], float]:
    """Log density of a Normal prior truncated to (lower, upper)."""
    def log_density(value: float) -> float:
        check_bounds(name, value, lower, upper)
        return truncated_normal_logpdf(value, loc, scale, lower, upper)
    return log_density


def uniform_prior(name: str, lower: float, upper: float) -> Callable[[float], float]:
    """Log density of a Uniform(lower, upper] prior."""
    log_width = -np.log(upper - lower)

    def log_density(value: float) -> float:
        check_bounds(name, value, lower, upper, closed_upper=True)
        return float(log_width)
    return log_density


def gamma_prior(name: str, shape: float, rate: float) -> Callable[[float], float]:
    def log_density(value: float) -> float:
        check_bounds(name, value, 0.0, np.inf)
        return gamma_logpdf(value, shape, rate)
    return log_density


def exponential_prior(name: str, rate: float) -> Callable[[float], float]:
    def log_density(value: float) -> float:
        check_bounds(name, value, 0.0, np.inf)
        return exponential_logpdf(value, rate)
    return log_density


def normal_likelihood(name: str) -> Callable[..., float]:
    """
    Log likelihood of observed responses given a mean vector and a precision.

    Raises NumericInstabilityError when the mean is not finite.
    """
    def log_density(y: NDArray[np.float64], mu: NDArray[np.float64], tau: float) -> float:
        if y.size == 0:
            return 0.0
        if not np.all(np.isfinite(mu)):
            raise NumericInstabilityError(f"Non-finite curve mean in {name}")
        return normal_logpdf(y, mu, 1.0 / np.sqrt(tau))
    return log_density
