"""
Error taxonomy for the estimation engine.

Every failure aborts the current ``estimate`` / ``test_significance`` call
and propagates to the caller. Nothing is retried internally.
"""


class InfoDynError(Exception):
    """Base class for all estimator errors."""


class ConfigurationError(InfoDynError, ValueError):
    """Invalid embedding/neighbor parameters or mismatched series lengths."""


class InsufficientDataError(InfoDynError):
    """Too few observations for the requested K or exclusion window."""


class InvalidCovarianceError(InfoDynError, ValueError):
    """Covariance matrix is asymmetric, wrongly dimensioned or not positive-definite."""


class NumericDegeneracyError(InfoDynError, ArithmeticError):
    """A neighbor radius collapsed to zero so a digamma count would be undefined."""
