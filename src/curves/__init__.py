"""
Dose-response curve functions.

**Curve function (dose_response.py):**
- Log-logistic mean with an additive hormesis term
- Absorbance and inhibition sign conventions
- Hormesis-free baseline for reference curves
"""

from curves.dose_response import (
    DEFAULT_ALPHA,
    ResponseType,
    baseline_mean,
    curve_mean,
    hormesis_term,
)

__all__ = [
    "DEFAULT_ALPHA",
    "ResponseType",
    "baseline_mean",
    "curve_mean",
    "hormesis_term",
]
