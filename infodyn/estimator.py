"""
Configured estimators: one entry point for every measure and estimator family.

A caller picks an estimator family (KSG nearest-neighbour, box kernel,
Gaussian, discrete) and a measure, supplies time-aligned series, asks for
the point estimate, then asks for a null distribution built from the same
configured estimator:

    est = configure(kind="kraskov", measure="transfer_entropy", k=4, lag=1)
    te = est.estimate(source, destination)
    null = est.test_significance("permutation", n_permutations=200)

Measures are assembled from delay embeddings of the role series:

- Mutual information: I(X(t - time_diff) ; Y(t) [| Z(t)]), time_diff 0 by default
- Active information storage: I(X_past ; X_next)
- Transfer entropy: I(Y_past(lag) ; X_next | X_past, Z_past...)

All computation is in nats; conversion to bits happens only on the way out.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence, Union

import numpy as np

from infodyn.core.discrete import (
    DiscreteEntropyCalculator,
    DiscreteMutualInfoCalculator,
    check_symbols,
    infer_base,
)
from infodyn.core.embedding import EmbeddingSpec, as_columns, embed, encode_symbols, first_usable_index
from infodyn.core.gaussian import GaussianCalculator
from infodyn.core.kernel import KernelCalculator
from infodyn.core.kraskov import KraskovCalculator
from infodyn.core.neighbors import NORM_MAX, NORMS
from infodyn.core.significance import (
    P_VALUE_METHODS,
    NullDistribution,
    permutation_test,
    unit_factor,
)
from infodyn.errors import ConfigurationError, InsufficientDataError

logger = logging.getLogger(__name__)


class EstimatorKind(str, Enum):
    """Estimator families."""
    KRASKOV = "kraskov"      # KSG nearest-neighbour
    KERNEL = "kernel"        # Fixed-width box kernel
    GAUSSIAN = "gaussian"    # Linear-Gaussian, closed form
    DISCRETE = "discrete"    # Plug-in frequency counts


class Measure(str, Enum):
    ENTROPY = "entropy"
    MUTUAL_INFO = "mutual_info"
    CONDITIONAL_MI = "conditional_mi"
    ACTIVE_INFO_STORAGE = "active_info_storage"
    TRANSFER_ENTROPY = "transfer_entropy"


EMBEDDED_MEASURES = (Measure.ACTIVE_INFO_STORAGE, Measure.TRANSFER_ENTROPY)
ANALYTIC_KINDS = (EstimatorKind.GAUSSIAN, EstimatorKind.DISCRETE)

SpecLike = Union[EmbeddingSpec, int, tuple]


def _as_spec(spec: SpecLike, name: str) -> EmbeddingSpec:
    if isinstance(spec, EmbeddingSpec):
        return spec
    if isinstance(spec, (int, np.integer)):
        return EmbeddingSpec(history=int(spec))
    if isinstance(spec, (tuple, list)) and len(spec) == 2:
        return EmbeddingSpec(history=int(spec[0]), delay=int(spec[1]))
    raise ConfigurationError(f"{name} must be an EmbeddingSpec, a history length or (history, delay)")


def _as_enum(enum_cls, value, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        options = ", ".join(m.value for m in enum_cls)
        raise ConfigurationError(f"Unknown {name} {value!r} (expected one of: {options})") from None


@dataclass
class EstimatorConfig:
    """Validated configuration for one estimator."""

    kind: EstimatorKind = EstimatorKind.KRASKOV
    measure: Measure = Measure.TRANSFER_ENTROPY

    # Estimator parameters
    k: int = 4
    kernel_width: float = 0.25
    algorithm: int = 1  # KSG algorithm 1 or 2
    exclusion_window: int = 0
    norm: str = NORM_MAX
    units: str = "nats"

    # Embedding. lag is the transfer entropy source -> destination delay;
    # time_diff is the source -> destination shift for MI and conditional MI
    lag: int = 1
    time_diff: int = 0
    dest_embedding: EmbeddingSpec = field(default_factory=EmbeddingSpec)
    source_embedding: EmbeddingSpec = field(default_factory=EmbeddingSpec)
    cond_embeddings: Optional[list[EmbeddingSpec]] = None
    cond_lags: Optional[list[int]] = None

    # Data preparation (continuous estimators)
    normalise: bool = True
    noise_level: float = 1e-8
    noise_seed: Optional[int] = 0

    # Discrete / Gaussian
    alphabet_size: Optional[int] = None
    bias_correction: bool = False

    # Embedding search
    auto_embed: bool = False
    max_history: int = 5
    max_delay: int = 1
    auto_embed_surrogates: int = 0

    # Significance
    p_value_method: str = "fraction"
    seed: Optional[int] = None

    def __post_init__(self):
        self.kind = _as_enum(EstimatorKind, self.kind, "estimator kind")
        self.measure = _as_enum(Measure, self.measure, "measure")
        self.dest_embedding = _as_spec(self.dest_embedding, "dest_embedding")
        self.source_embedding = _as_spec(self.source_embedding, "source_embedding")
        if self.cond_embeddings is not None:
            self.cond_embeddings = [_as_spec(s, "cond_embeddings") for s in self.cond_embeddings]
        if self.cond_lags is not None:
            self.cond_lags = [int(v) for v in self.cond_lags]
            if any(v < 1 for v in self.cond_lags):
                raise ConfigurationError(f"Conditioning lags must be >= 1, got {self.cond_lags}")

        if self.k < 1:
            raise ConfigurationError(f"Neighbour count k must be >= 1, got {self.k}")
        if not self.kernel_width > 0:
            raise ConfigurationError(f"Kernel width must be > 0, got {self.kernel_width}")
        if self.algorithm not in (1, 2):
            raise ConfigurationError(f"KSG algorithm must be 1 or 2, got {self.algorithm}")
        if self.exclusion_window < 0:
            raise ConfigurationError(f"Exclusion window must be >= 0, got {self.exclusion_window}")
        if self.norm not in NORMS:
            raise ConfigurationError(f"Unknown norm: {self.norm}")
        if self.kind == EstimatorKind.KRASKOV and self.norm != NORM_MAX:
            raise ConfigurationError("KSG estimators are defined for the max norm only")
        if self.units not in ("nats", "bits"):
            raise ConfigurationError(f"Units must be 'nats' or 'bits', got {self.units!r}")
        if self.lag < 0:
            raise ConfigurationError(f"Lag must be >= 0, got {self.lag}")
        if self.time_diff < 0:
            raise ConfigurationError(f"Time difference must be >= 0, got {self.time_diff}")
        if self.measure == Measure.TRANSFER_ENTROPY and self.lag < 1:
            raise ConfigurationError("Transfer entropy needs a source lag >= 1")
        if self.noise_level < 0:
            raise ConfigurationError(f"Noise level must be >= 0, got {self.noise_level}")
        if self.alphabet_size is not None and self.alphabet_size < 2:
            raise ConfigurationError(f"Alphabet size must be >= 2, got {self.alphabet_size}")
        if self.kind == EstimatorKind.DISCRETE and self.measure in (
            Measure.CONDITIONAL_MI, Measure.TRANSFER_ENTROPY
        ):
            raise ConfigurationError(
                f"The discrete estimator supports entropy, mutual_info and active_info_storage, "
                f"not {self.measure.value}"
            )
        if self.auto_embed and self.measure not in EMBEDDED_MEASURES:
            raise ConfigurationError("auto_embed only applies to active_info_storage and transfer_entropy")
        if self.max_history < 1 or self.max_delay < 1:
            raise ConfigurationError(
                f"max_history and max_delay must be >= 1, got {self.max_history}, {self.max_delay}"
            )
        if self.auto_embed_surrogates < 0:
            raise ConfigurationError(
                f"auto_embed_surrogates must be >= 0, got {self.auto_embed_surrogates}"
            )
        if self.p_value_method not in P_VALUE_METHODS:
            raise ConfigurationError(
                f"Unknown p-value method {self.p_value_method!r} (expected one of {P_VALUE_METHODS})"
            )

    def embedding_candidates(self) -> list[EmbeddingSpec]:
        """(history, delay) pairs searched by auto-embedding; delay is moot for history 1."""
        candidates = [EmbeddingSpec(1, 1)]
        for history in range(2, self.max_history + 1):
            for delay in range(1, self.max_delay + 1):
                candidates.append(EmbeddingSpec(history, delay))
        return candidates


def configure(kind: str = "kraskov", measure: str = "transfer_entropy", **kwargs) -> "Estimator":
    """
    Build a configured estimator.

    Parameters
    ----------
    kind : str
        Estimator family: "kraskov", "kernel", "gaussian" or "discrete".
    measure : str
        "entropy", "mutual_info", "conditional_mi", "active_info_storage"
        or "transfer_entropy".
    **kwargs
        Any other EstimatorConfig field. Unknown names raise TypeError.

    Returns
    -------
    Estimator
    """
    return Estimator(EstimatorConfig(kind=kind, measure=measure, **kwargs))


class Estimator:
    """
    A configured estimator holding the state of its last estimate.

    ``test_significance`` and ``local_values`` work on the observations of
    the most recent successful ``estimate`` (or ``set_covariance``) call.
    """

    def __init__(self, config: Optional[EstimatorConfig] = None):
        self.config = config or EstimatorConfig()
        self.dest_embedding = self.config.dest_embedding
        self.source_embedding = self.config.source_embedding
        self.value: Optional[float] = None
        self.null: Optional[NullDistribution] = None
        self._calculator = None
        self._value_nats: Optional[float] = None
        self._rng = np.random.default_rng(self.config.seed)

    def __repr__(self) -> str:
        return f"Estimator(kind={self.config.kind.value}, measure={self.config.measure.value})"

    @property
    def n_observations(self) -> int:
        return 0 if self._calculator is None else self._calculator.n_observations

    def _to_units(self, value_nats):
        return value_nats * unit_factor("nats", self.config.units)

    # ------------------------------------------------------------------
    # Calculators
    # ------------------------------------------------------------------

    def _continuous_calculator(self):
        cfg = self.config
        if cfg.kind == EstimatorKind.KRASKOV:
            return KraskovCalculator(
                k=cfg.k,
                algorithm=cfg.algorithm,
                exclusion_window=cfg.exclusion_window,
                normalise=cfg.normalise,
                noise_level=cfg.noise_level,
                noise_seed=cfg.noise_seed,
            )
        if cfg.kind == EstimatorKind.KERNEL:
            return KernelCalculator(
                kernel_width=cfg.kernel_width,
                exclusion_window=cfg.exclusion_window,
                normalise=cfg.normalise,
                noise_level=cfg.noise_level,
                noise_seed=cfg.noise_seed,
                norm=cfg.norm,
            )
        return GaussianCalculator(bias_correction=cfg.bias_correction)

    def _discrete_symbols(self, arr: np.ndarray, base: int) -> tuple[np.ndarray, int]:
        """Check symbols and collapse multi-column rows into single symbols."""
        arr = as_columns(arr)
        check_symbols(arr, base)
        if arr.shape[1] == 1:
            return arr[:, 0].astype(np.int64), base
        return encode_symbols(arr, base), base ** arr.shape[1]

    def _build_calculator(self, x, y=None, z=None):
        if self.config.kind != EstimatorKind.DISCRETE:
            calc = self._continuous_calculator()
            calc.set_observations(x, y, z)
            return calc

        base = self.config.alphabet_size or infer_base(*(a for a in (x, y) if a is not None))
        x_sym, base_x = self._discrete_symbols(x, base)
        if y is None:
            calc = DiscreteEntropyCalculator(base_x)
            calc.set_observations(x_sym)
            return calc
        y_sym, base_y = self._discrete_symbols(y, base)
        calc = DiscreteMutualInfoCalculator(base_x, base_y, time_diff=0)
        calc.set_observations(x_sym, y_sym)
        return calc

    # ------------------------------------------------------------------
    # Role series
    # ------------------------------------------------------------------

    def _check_series(self, arrays: dict) -> int:
        lengths = {name: as_columns(arr, name).shape[0] for name, arr in arrays.items()}
        if len(set(lengths.values())) != 1:
            raise ConfigurationError(f"Series lengths differ: {lengths}")
        return next(iter(lengths.values()))

    def _ais_roles(self, series, dest_spec: EmbeddingSpec):
        start = first_usable_index(dest_spec, 1)
        past = embed(series, dest_spec, 1, start)
        return past, as_columns(series)[start:], None

    def _te_roles(self, source, destination, conditioning, dest_spec, source_spec):
        cfg = self.config
        cond_specs = cfg.cond_embeddings or [EmbeddingSpec()] * len(conditioning)
        cond_lags = cfg.cond_lags or [1] * len(conditioning)
        if len(cond_specs) != len(conditioning) or len(cond_lags) != len(conditioning):
            raise ConfigurationError(
                f"{len(conditioning)} conditioning series but {len(cond_specs)} embeddings "
                f"and {len(cond_lags)} lags configured"
            )
        start = max(
            [first_usable_index(dest_spec, 1), first_usable_index(source_spec, cfg.lag)]
            + [first_usable_index(s, lag) for s, lag in zip(cond_specs, cond_lags)]
        )
        source_past = embed(source, source_spec, cfg.lag, start)
        dest_next = as_columns(destination)[start:]
        conditioned = [embed(destination, dest_spec, 1, start)]
        conditioned += [
            embed(series, spec, lag, start)
            for series, spec, lag in zip(conditioning, cond_specs, cond_lags)
        ]
        return source_past, dest_next, np.hstack(conditioned)

    def _roles(self, source, destination, conditioning, dest_spec, source_spec):
        cfg = self.config
        measure = cfg.measure
        if measure == Measure.ENTROPY:
            return as_columns(source, "source"), None, None
        if measure == Measure.ACTIVE_INFO_STORAGE:
            return self._ais_roles(source, dest_spec)

        if destination is None:
            raise ConfigurationError(f"{measure.value} needs a destination series")
        if measure == Measure.TRANSFER_ENTROPY:
            return self._te_roles(source, destination, conditioning, dest_spec, source_spec)

        shift = cfg.time_diff
        x = as_columns(source, "source")
        T = x.shape[0]
        if shift >= T:
            raise InsufficientDataError(f"Time difference {shift} leaves no observations from {T} samples")
        x = x[: T - shift]
        y = as_columns(destination, "destination")[shift:]
        if measure == Measure.MUTUAL_INFO:
            return x, y, None
        if not conditioning:
            z = np.empty((T - shift, 0))
        else:
            z = np.hstack([as_columns(c, "conditioning")[shift:] for c in conditioning])
        return x, y, z

    # ------------------------------------------------------------------
    # Auto-embedding
    # ------------------------------------------------------------------

    def _bias(self, calc) -> float:
        """Expected value of the measure under the null, in nats."""
        cfg = self.config
        if cfg.auto_embed_surrogates > 0:
            null = permutation_test(
                calc.compute_with_source_ordering,
                actual=calc.compute(),
                n_observations=calc.n_observations,
                n_permutations=cfg.auto_embed_surrogates,
                rng=self._rng,
                p_value_method=cfg.p_value_method,
            )
            return null.mean
        if cfg.kind == EstimatorKind.GAUSSIAN and cfg.bias_correction:
            return 0.0
        if cfg.kind in ANALYTIC_KINDS:
            return calc.degrees_of_freedom / (2.0 * calc.n_observations)
        return 0.0

    def _search(self, label: str, build) -> EmbeddingSpec:
        best_spec, best_score = None, -np.inf
        for spec in self.config.embedding_candidates():
            calc = self._build_calculator(*build(spec))
            score = calc.compute() - self._bias(calc)
            logger.debug("Auto-embed %s: history=%d delay=%d score=%.6g", label, spec.history, spec.delay, score)
            if score > best_score:
                best_spec, best_score = spec, score
        logger.info(
            "Auto-embed %s: chose history=%d delay=%d (bias-corrected %.6g nats)",
            label, best_spec.history, best_spec.delay, best_score,
        )
        return best_spec

    def _auto_embed(self, source, destination, conditioning):
        measure = self.config.measure
        target = source if measure == Measure.ACTIVE_INFO_STORAGE else destination
        dest_spec = self._search("destination", lambda s: self._ais_roles(target, s))
        source_spec = self.source_embedding
        if measure == Measure.TRANSFER_ENTROPY:
            source_spec = self._search(
                "source",
                lambda s: self._te_roles(source, destination, conditioning, dest_spec, s),
            )
        return dest_spec, source_spec

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def estimate(
        self,
        source: np.ndarray,
        destination: Optional[np.ndarray] = None,
        conditioning: Sequence[np.ndarray] = (),
    ) -> float:
        """
        Compute the configured measure.

        Parameters
        ----------
        source : np.ndarray
            Source series, shape (T,) or (T, dims). For entropy and active
            information storage this is the only series used.
        destination : np.ndarray, optional
            Destination series of the same length T.
        conditioning : sequence of np.ndarray
            Further series of length T to condition on (conditional MI and
            transfer entropy).

        Returns
        -------
        float
            The estimate in the configured units.
        """
        conditioning = list(conditioning)
        arrays = {"source": source}
        if destination is not None:
            arrays["destination"] = destination
        arrays.update({f"conditioning[{i}]": c for i, c in enumerate(conditioning)})
        self._check_series(arrays)

        dest_spec, source_spec = self.config.dest_embedding, self.config.source_embedding
        if self.config.auto_embed:
            dest_spec, source_spec = self._auto_embed(source, destination, conditioning)

        x, y, z = self._roles(source, destination, conditioning, dest_spec, source_spec)
        calc = self._build_calculator(x, y, z)
        value = calc.compute()

        self._calculator = calc
        self._value_nats = value
        self.dest_embedding, self.source_embedding = dest_spec, source_spec
        self.value = self._to_units(value)
        self.null = None
        logger.info(
            "%s (%s): %.6g %s over %d observations",
            self.config.measure.value, self.config.kind.value,
            self.value, self.config.units, calc.n_observations,
        )
        return self.value

    def set_covariance(
        self,
        covariance: np.ndarray,
        n_observations: int,
        dims: tuple[int, ...],
    ) -> float:
        """
        Gaussian estimate from a supplied covariance over [X, Y, Z] blocks.

        ``dims`` gives the block sizes; (dx,) is an entropy, (dx, dy) an MI
        and (dx, dy, dz) a conditional MI.
        """
        if self.config.kind != EstimatorKind.GAUSSIAN:
            raise ConfigurationError("Only the Gaussian estimator accepts a covariance matrix")
        calc = GaussianCalculator(bias_correction=self.config.bias_correction)
        calc.set_covariance(covariance, n_observations, dims)
        value = calc.compute()
        self._calculator = calc
        self._value_nats = value
        self.value = self._to_units(value)
        self.null = None
        return self.value

    def test_significance(
        self,
        mode: str = "permutation",
        n_permutations: int = 100,
        rng: Optional[np.random.Generator] = None,
        n_workers: int = 1,
    ) -> NullDistribution:
        """
        Null distribution for the last estimate.

        Parameters
        ----------
        mode : str
            "permutation" (reorder the source rows and re-estimate) or
            "analytic" (chi-square; Gaussian and discrete estimators only).
        n_permutations : int
            Number of surrogate orderings (permutation mode).
        rng : np.random.Generator, optional
            Random source for the orderings. Defaults to the estimator's own
            generator, seeded from ``config.seed``.
        n_workers : int
            Worker processes for evaluating surrogates.

        Returns
        -------
        NullDistribution
            In the configured units.
        """
        calc = self._calculator
        if calc is None:
            raise ConfigurationError("test_significance needs a prior call to estimate")
        if self.config.measure == Measure.ENTROPY or isinstance(calc, DiscreteEntropyCalculator):
            raise ConfigurationError("Significance is undefined for a single-variable entropy")

        if mode == "analytic":
            if self.config.kind not in ANALYTIC_KINDS:
                raise ConfigurationError(
                    f"Analytic significance is available for Gaussian and discrete estimators, "
                    f"not {self.config.kind.value}"
                )
            null = calc.analytic_null()
        elif mode == "permutation":
            null = permutation_test(
                calc.compute_with_source_ordering,
                actual=self._value_nats,
                n_observations=calc.n_observations,
                n_permutations=n_permutations,
                rng=rng if rng is not None else self._rng,
                p_value_method=self.config.p_value_method,
                n_workers=n_workers,
            )
        else:
            raise ConfigurationError(f"Unknown significance mode {mode!r} (expected 'permutation' or 'analytic')")

        self.null = null.converted(self.config.units)
        return self.null

    def local_values(self) -> np.ndarray:
        """Per-observation values whose mean is the last estimate, in the configured units."""
        if self._calculator is None:
            raise ConfigurationError("local_values needs a prior call to estimate")
        if not hasattr(self._calculator, "compute_local"):
            raise ConfigurationError(f"Local values are not available for the {self.config.kind.value} estimator")
        return self._to_units(self._calculator.compute_local())
