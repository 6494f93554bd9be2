"""
Causal matrices: transfer entropy between every ordered pair of variables.

For a (time x variable) table, each ordered (source, destination) pair
with source != destination gets a conditional transfer entropy estimate,
conditioned on every remaining variable, plus a permutation significance
test. Results are stored as three matrices indexed [source, destination]:
the estimate, its p-value and the null mean (the "effect", i.e. the
estimator bias expected with no relationship).

MatrixSweep repeats this over lags and neighbour counts and writes one
.npz file per run, skipping runs whose file already exists.
"""

import json
import logging
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Optional

import numpy as np
from scipy import io as sio

from infodyn.core.embedding import EmbeddingSpec, as_columns
from infodyn.errors import ConfigurationError
from infodyn.estimator import Estimator, EstimatorConfig

logger = logging.getLogger(__name__)


@dataclass
class MatrixConfig:
    """Configuration for causal matrix runs."""

    # Sweep axes
    lags: list[int] = field(default_factory=lambda: [1])
    neighbor_counts: list[int] = field(default_factory=lambda: [4])

    # Embedding: history None means history length = lag
    delay: int = 1
    history: Optional[int] = None

    # Estimation
    kind: str = "kraskov"
    exclusion_window: int = 0
    units: str = "nats"
    n_permutations: int = 100
    p_value_method: str = "fraction"
    seed: Optional[int] = None

    # Data selection
    n_modes: Optional[int] = None

    # Computation
    n_workers: int = 1
    output_dir: Optional[str] = None
    name_format: str = "Lag{lag}_Embed{delay}_Length{history}_K{k}_{perms}Permutations"

    def __post_init__(self):
        if not self.lags or any(lag < 1 for lag in self.lags):
            raise ConfigurationError(f"Lags must be a non-empty list of values >= 1, got {self.lags}")
        if not self.neighbor_counts or any(k < 1 for k in self.neighbor_counts):
            raise ConfigurationError(
                f"Neighbour counts must be a non-empty list of values >= 1, got {self.neighbor_counts}"
            )
        if self.n_permutations < 1:
            raise ConfigurationError(f"Permutation count must be >= 1, got {self.n_permutations}")
        if self.n_modes is not None and self.n_modes < 2:
            raise ConfigurationError(f"At least two modes are needed, got {self.n_modes}")

    def history_for(self, lag: int) -> int:
        return lag if self.history is None else self.history

    def run_name(self, lag: int, k: int) -> str:
        return self.name_format.format(
            lag=lag, delay=self.delay, history=self.history_for(lag), k=k, perms=self.n_permutations
        )

    def estimator_config(self, lag: int, k: int, n_conditioning: int) -> EstimatorConfig:
        """Transfer entropy settings for one run: every role shares the same embedding."""
        spec = EmbeddingSpec(self.history_for(lag), self.delay)
        return EstimatorConfig(
            kind=self.kind,
            measure="transfer_entropy",
            k=k,
            exclusion_window=self.exclusion_window,
            units=self.units,
            lag=lag,
            dest_embedding=spec,
            source_embedding=spec,
            cond_embeddings=[spec] * n_conditioning,
            cond_lags=[lag] * n_conditioning,
            p_value_method=self.p_value_method,
        )


@dataclass
class CausalMatrix:
    """Transfer entropy, p-values and null means for all ordered variable pairs."""

    values: np.ndarray
    p_values: np.ndarray
    effects: np.ndarray
    lag: int
    k: int
    history: int
    delay: int
    n_permutations: int
    units: str = "nats"
    elapsed_seconds: float = 0.0

    @property
    def n_variables(self) -> int:
        return self.values.shape[0]

    def significant(self, alpha: float = 0.05) -> np.ndarray:
        """Boolean [source, destination] matrix of p-values below alpha (diagonal False)."""
        mask = self.p_values < alpha
        np.fill_diagonal(mask, False)
        return mask

    def to_dict(self) -> dict:
        return {
            "values": self.values.tolist(),
            "p_values": self.p_values.tolist(),
            "effects": self.effects.tolist(),
            "lag": self.lag,
            "k": self.k,
            "history": self.history,
            "delay": self.delay,
            "n_permutations": self.n_permutations,
            "units": self.units,
            "elapsed_seconds": self.elapsed_seconds,
        }

    def save(self, path: str) -> Path:
        """Save to a compressed .npz file (the suffix is added if missing)."""
        path = Path(path)
        if path.suffix != ".npz":
            path = path.with_name(path.name + ".npz")
        path.parent.mkdir(parents=True, exist_ok=True)
        np.savez_compressed(
            path,
            values=self.values,
            p_values=self.p_values,
            effects=self.effects,
            lag=self.lag,
            k=self.k,
            history=self.history,
            delay=self.delay,
            n_permutations=self.n_permutations,
            units=self.units,
            elapsed_seconds=self.elapsed_seconds,
        )
        return path

    @classmethod
    def load(cls, path: str) -> "CausalMatrix":
        with np.load(path) as f:
            return cls(
                values=f["values"],
                p_values=f["p_values"],
                effects=f["effects"],
                lag=int(f["lag"]),
                k=int(f["k"]),
                history=int(f["history"]),
                delay=int(f["delay"]),
                n_permutations=int(f["n_permutations"]),
                units=str(f["units"]),
                elapsed_seconds=float(f["elapsed_seconds"]),
            )


def load_table(path: str, variable: Optional[str] = None) -> np.ndarray:
    """
    Load a (time x variable) table from .npy, .npz, .mat or .csv.

    For .npz and .mat files ``variable`` names the array to use; if it
    is omitted the file must hold exactly one array.
    """
    path = Path(path)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        data = np.load(path)
    elif suffix == ".csv":
        data = np.loadtxt(path, delimiter=",")
    elif suffix in (".npz", ".mat"):
        if suffix == ".npz":
            with np.load(path) as f:
                arrays = {name: f[name] for name in f.files}
        else:
            arrays = {
                name: value for name, value in sio.loadmat(path).items()
                if not name.startswith("__")
            }
        if variable is None:
            if len(arrays) != 1:
                raise ConfigurationError(
                    f"{path.name} holds {sorted(arrays)}; choose one with a variable name"
                )
            variable = next(iter(arrays))
        if variable not in arrays:
            raise ConfigurationError(f"{path.name} has no variable {variable!r} (found {sorted(arrays)})")
        data = arrays[variable]
    else:
        raise ConfigurationError(f"Unsupported data file type: {path.suffix}")
    return as_columns(np.asarray(data, dtype=float), path.name)


def select_modes(data: np.ndarray, n_modes: Optional[int]) -> np.ndarray:
    """The first ``n_modes`` columns of a (time x variable) table."""
    data = as_columns(data, "data")
    if n_modes is None:
        return data
    if n_modes > data.shape[1]:
        raise ConfigurationError(f"Asked for {n_modes} modes but the data has {data.shape[1]} columns")
    return data[:, :n_modes]


def _run_pair(
    data: np.ndarray,
    source: int,
    destination: int,
    config: EstimatorConfig,
    n_permutations: int,
    seed: np.random.SeedSequence,
) -> tuple[int, int, float, float, float]:
    """
    Transfer entropy from one column to another, conditioned on the rest.
    Designed to be called in parallel via ProcessPoolExecutor.
    """
    others = [c for c in range(data.shape[1]) if c not in (source, destination)]
    estimator = Estimator(config)
    value = estimator.estimate(
        data[:, source], data[:, destination], [data[:, c] for c in others]
    )
    null = estimator.test_significance(
        "permutation", n_permutations=n_permutations, rng=np.random.default_rng(seed)
    )
    return source, destination, value, null.p_value, null.mean


def compute_causal_matrix(
    data: np.ndarray,
    config: Optional[MatrixConfig] = None,
    lag: Optional[int] = None,
    k: Optional[int] = None,
    verbose: bool = False,
) -> CausalMatrix:
    """
    Conditional transfer entropy for every ordered pair of columns.

    Parameters
    ----------
    data : np.ndarray
        Shape (T, n_variables).
    config : MatrixConfig, optional
        Run settings. ``lag`` and ``k`` default to the first entries of
        ``config.lags`` and ``config.neighbor_counts``.
    verbose : bool
        Print one line per pair.

    Returns
    -------
    CausalMatrix
        Indexed [source, destination]; the diagonal is zero with p-value 1.
    """
    config = config or MatrixConfig()
    data = select_modes(data, config.n_modes)
    n_vars = data.shape[1]
    if n_vars < 2:
        raise ConfigurationError(f"A causal matrix needs at least two variables, got {n_vars}")
    lag = config.lags[0] if lag is None else lag
    k = config.neighbor_counts[0] if k is None else k
    est_config = config.estimator_config(lag, k, n_vars - 2)

    pairs = [(i, j) for i in range(n_vars) for j in range(n_vars) if i != j]
    seeds = np.random.SeedSequence(config.seed).spawn(len(pairs))

    values = np.zeros((n_vars, n_vars))
    p_values = np.ones((n_vars, n_vars))
    effects = np.zeros((n_vars, n_vars))

    def store(result):
        i, j, value, p_value, effect = result
        values[i, j] = value
        p_values[i, j] = p_value
        effects[i, j] = effect
        if verbose:
            print(f"  {i} -> {j}: TE={value:.4f}  p={p_value:.3f}  effect={effect:.4f}")

    t_start = time.time()
    if config.n_workers > 1:
        with ProcessPoolExecutor(max_workers=config.n_workers) as executor:
            futures = [
                executor.submit(_run_pair, data, i, j, est_config, config.n_permutations, seed)
                for (i, j), seed in zip(pairs, seeds)
            ]
            for future in as_completed(futures):
                store(future.result())
    else:
        for (i, j), seed in zip(pairs, seeds):
            store(_run_pair(data, i, j, est_config, config.n_permutations, seed))

    elapsed = time.time() - t_start
    logger.info("Causal matrix (lag=%d, k=%d, %d variables) in %.2fs", lag, k, n_vars, elapsed)
    return CausalMatrix(
        values=values,
        p_values=p_values,
        effects=effects,
        lag=lag,
        k=k,
        history=config.history_for(lag),
        delay=config.delay,
        n_permutations=config.n_permutations,
        units=config.units,
        elapsed_seconds=elapsed,
    )


class MatrixSweep:
    """
    Runs compute_causal_matrix over every (lag, neighbour count) combination.

    With an output directory, each run is saved as
    ``<output_dir>/<run_name>.npz`` and runs whose file already exists are
    skipped.
    """

    def __init__(self, config: Optional[MatrixConfig] = None):
        self.config = config or MatrixConfig()

    def output_path(self, lag: int, k: int) -> Optional[Path]:
        if self.config.output_dir is None:
            return None
        return Path(self.config.output_dir) / f"{self.config.run_name(lag, k)}.npz"

    def run(self, data: np.ndarray, verbose: bool = True) -> dict:
        """
        Execute the sweep.

        Parameters
        ----------
        data : np.ndarray
            Shape (T, n_variables); only the first ``config.n_modes``
            columns are used.
        verbose : bool
            Print progress information.

        Returns
        -------
        dict
            {(lag, k): CausalMatrix} for the runs computed in this call.
        """
        cfg = self.config
        data = select_modes(data, cfg.n_modes)
        t_start = time.time()
        runs = [(lag, k) for k in cfg.neighbor_counts for lag in cfg.lags]

        if verbose:
            print("Transfer entropy causal matrices")
            print(f"{'=' * 50}")
            print(f"Samples x variables: {data.shape[0]} x {data.shape[1]}")
            print(f"Lags: {cfg.lags}")
            print(f"Neighbour counts: {cfg.neighbor_counts}")
            print(f"History length: {'lag' if cfg.history is None else cfg.history}")
            print(f"Delay: {cfg.delay}")
            print(f"Permutations: {cfg.n_permutations}")
            print(f"{'=' * 50}")

        results = {}
        for lag, k in runs:
            path = self.output_path(lag, k)
            if path is not None and path.exists():
                if verbose:
                    print(f"Skipping {path.name} (already computed)")
                continue

            if verbose:
                print(f"\n--- {cfg.run_name(lag, k)} ---")
            matrix = compute_causal_matrix(data, cfg, lag=lag, k=k, verbose=verbose)
            results[(lag, k)] = matrix

            if path is not None:
                matrix.save(path)
                if verbose:
                    print(f"  Saved: {path}")
            if verbose:
                print(f"  Runtime for this matrix: {matrix.elapsed_seconds:.2f} seconds")

        if verbose:
            print(f"\n{'=' * 50}")
            print(f"Runtime for the sweep: {time.time() - t_start:.2f} seconds")
        return results

    def save_config(self, path: str):
        """Record the sweep settings next to its results."""
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(asdict(self.config), f, indent=2)
