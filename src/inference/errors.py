"""
Exceptions and warnings raised by model construction and sampling.

Errors are scoped per chain: a DomainViolationError or NumericInstabilityError
during sampling rejects the offending proposal, and only a persistent or
initial failure marks the owning chain as failed.
"""


class ConfigurationError(ValueError):
    """Malformed model specification: dimension mismatch, missing or invalid prior."""


class DomainViolationError(ValueError):
    """A proposed or initial value lies outside a declared support constraint."""

    def __init__(self, node: str, value, support: str) -> None:
        self.node = node
        self.value = value
        self.support = support
        super().__init__(f"{node}={value!r} violates support {support}")


class NumericInstabilityError(ArithmeticError):
    """Overflow or NaN while evaluating the curve or the likelihood."""


class NonConvergenceWarning(UserWarning):
    """Convergence diagnostics flag a completed run as untrustworthy."""
