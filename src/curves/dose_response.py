"""
Dose-response mean function with an optional hormesis component.

The curve is a log-logistic decline between two asymptotes with an additive,
dose-decaying stimulation term switched on by an inclusion flag w:

    Absorbance (stimulatory sign convention):
        mu(x) = c + (d - c + w f exp(-1 / x^α)) / (1 + (x / e)^b)

    Inhibition (mirrored convention):
        mu(x) = c - (c - d + w f exp(-1 / x^α)) / (1 + (x / e)^b)

where:
    - c: floor asymptote, approached for x ≫ e
    - d: ceiling asymptote, the response as x → 0+
    - f: hormesis magnitude, w ∈ {0, 1} its inclusion flag
    - e: effective dose (halfway between floor and ceiling)
    - b: slope
    - α: fixed shape exponent of the hormesis term

For x → 0+ the term exp(-1 / x^α) vanishes, so the hormesis bump never shifts
the zero-dose response. The function assumes x > 0 and e, b > 0; those
domains are enforced by the sampler's priors.
"""

from enum import Enum
from typing import Union
import numpy as np
from numpy.typing import NDArray

ArrayLike = Union[float, NDArray[np.float64]]

DEFAULT_ALPHA = 0.5


class ResponseType(str, Enum):
    """Sign convention of the measured response."""

    ABSORBANCE = "absorbance"
    INHIBITION = "inhibition"

    @classmethod
    def parse(cls, value: Union[str, "ResponseType"]) -> "ResponseType":
        """Coerce a string or ResponseType, raising ValueError on unknown names."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(
                f"Unknown response type {value!r}. "
                f"Expected one of {[t.value for t in cls]}"
            )


def hormesis_term(
    dose: ArrayLike,
    f: ArrayLike,
    w: ArrayLike,
    alpha: float = DEFAULT_ALPHA,
) -> NDArray[np.float64]:
    """
    Dose-decaying hormesis contribution w · f · exp(-1 / x^α).

    The contribution is exactly zero wherever w == 0, whatever the value of f.

    Parameters
    ----------
    dose : float or NDArray[np.float64]
        Dose values, x > 0.
    f : float or NDArray[np.float64]
        Hormesis magnitude.
    w : float or NDArray[np.float64]
        Inclusion flag (0 or 1).
    alpha : float
        Fixed shape exponent.

    Returns
    -------
    NDArray[np.float64]
        Hormesis contribution, broadcast over the inputs.
    """
    dose = np.asarray(dose, dtype=np.float64)
    with np.errstate(divide="ignore", over="ignore"):
        decay = np.exp(-1.0 / dose ** alpha)
    active = np.asarray(w) > 0
    with np.errstate(invalid="ignore"):
        bump = np.asarray(f, dtype=np.float64) * decay
    return np.where(active, bump, 0.0)


def curve_mean(
    dose: ArrayLike,
    c: ArrayLike,
    d: ArrayLike,
    f: ArrayLike,
    w: ArrayLike,
    e: ArrayLike,
    b: ArrayLike,
    alpha: float = DEFAULT_ALPHA,
    response_type: Union[str, ResponseType] = ResponseType.ABSORBANCE,
) -> NDArray[np.float64]:
    """
    Evaluate the dose-response mean.

    All parameters broadcast against ``dose``, so passing parameter arrays of
    shape (n_draws, 1) with a dose grid of shape (n_grid,) yields a
    (n_draws, n_grid) matrix of means.

    Parameters
    ----------
    dose : float or NDArray[np.float64]
        Dose values, x > 0.
    c, d : float or NDArray[np.float64]
        Floor and ceiling asymptotes.
    f : float or NDArray[np.float64]
        Hormesis magnitude.
    w : float or NDArray[np.float64]
        Hormesis inclusion flag (0 or 1).
    e : float or NDArray[np.float64]
        Effective dose, e > 0.
    b : float or NDArray[np.float64]
        Slope, b > 0.
    alpha : float
        Fixed hormesis shape exponent. Default 0.5.
    response_type : str or ResponseType
        "absorbance" (stimulatory convention) or "inhibition" (mirrored).

    Returns
    -------
    NDArray[np.float64]
        Mean response. Overflow yields non-finite entries, which callers
        treat as numeric instability.
    """
    response_type = ResponseType.parse(response_type)
    dose = np.asarray(dose, dtype=np.float64)
    bump = hormesis_term(dose, f, w, alpha)
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        denom = 1.0 + (dose / e) ** b
        if response_type is ResponseType.ABSORBANCE:
            return c + (d - c + bump) / denom
        return c - (c - d + bump) / denom


def baseline_mean(
    dose: ArrayLike,
    c: ArrayLike,
    d: ArrayLike,
    e: ArrayLike,
    b: ArrayLike,
) -> NDArray[np.float64]:
    """Hormesis-free log-logistic curve c + (d - c) / (1 + (x/e)^b)."""
    dose = np.asarray(dose, dtype=np.float64)
    return c + (d - c) / (1.0 + (dose / e) ** b)
