"""
Delay embeddings of time series.

A past-window vector for time n is built from a series as
``[x(n - lag), x(n - lag - tau), ..., x(n - lag - (history - 1) * tau)]``.
All role matrices for one estimate are cut to the same rows so that row t
of every role refers to the same destination time step.
"""

from dataclasses import dataclass

import numpy as np

from infodyn.errors import ConfigurationError, InsufficientDataError


@dataclass(frozen=True)
class EmbeddingSpec:
    """History length and delay for a past-window embedding."""

    history: int = 1
    delay: int = 1

    def __post_init__(self):
        if int(self.history) != self.history or self.history < 1:
            raise ConfigurationError(f"Embedding history length must be >= 1, got {self.history}")
        if int(self.delay) != self.delay or self.delay < 1:
            raise ConfigurationError(f"Embedding delay must be >= 1, got {self.delay}")

    @property
    def span(self) -> int:
        """Number of time steps covered by the window, minus one."""
        return (self.history - 1) * self.delay


def as_columns(series: np.ndarray, name: str = "series") -> np.ndarray:
    """Coerce a series to shape (n_samples, n_dims)."""
    arr = np.asarray(series)
    if arr.ndim == 1:
        arr = arr.reshape(-1, 1)
    if arr.ndim != 2:
        raise ConfigurationError(f"{name} must be 1-D or 2-D (time x dims), got shape {arr.shape}")
    return arr


def first_usable_index(spec: EmbeddingSpec, lag: int) -> int:
    """Earliest target time n for which a window ending at n - lag is complete."""
    return lag + spec.span


def embed(series: np.ndarray, spec: EmbeddingSpec, lag: int, start: int) -> np.ndarray:
    """
    Past-window vectors of ``series`` for every target time n in [start, T).

    Returns shape (T - start, history * n_dims), most recent value first.
    """
    x = as_columns(series)
    T = x.shape[0]
    if lag < 0:
        raise ConfigurationError(f"Lag must be >= 0, got {lag}")
    if start < first_usable_index(spec, lag):
        raise ConfigurationError(
            f"Start index {start} leaves the embedding window (history={spec.history}, "
            f"delay={spec.delay}, lag={lag}) incomplete"
        )
    if start >= T:
        raise InsufficientDataError(
            f"Series of length {T} is too short for an embedding starting at {start}"
        )
    columns = [
        x[start - lag - j * spec.delay : T - lag - j * spec.delay]
        for j in range(spec.history)
    ]
    return np.hstack(columns)


def encode_symbols(embedded: np.ndarray, base: int) -> np.ndarray:
    """Collapse each row of symbols in [0, base) into a single symbol in [0, base**width)."""
    embedded = np.asarray(embedded, dtype=np.int64)
    weights = base ** np.arange(embedded.shape[1], dtype=np.int64)
    return embedded @ weights
