#!/usr/bin/env python3
"""
Compute transfer entropy causal matrices for a (time x variable) dataset.

Every ordered pair of the first N variables (modes) gets a conditional
transfer entropy estimate, conditioned on the remaining modes, with a
permutation significance test. One .npz file is written per
(lag, neighbour count) run; runs already on disk are skipped.

Usage:
    python -m scripts.run_matrix data.npy                       # All columns, lag 1, k 4
    python -m scripts.run_matrix data.mat --variable modes --modes 2
    python -m scripts.run_matrix data.csv --lags 1 2 3 --neighbors 4 5
    python -m scripts.run_matrix data.npy --output results/     # Custom output directory
"""

import argparse
import logging
from pathlib import Path

from rich.console import Console
from rich.table import Table

from infodyn.matrix import MatrixConfig, MatrixSweep, load_table


def summary_table(matrix, alpha: float) -> Table:
    table = Table(title=f"Lag {matrix.lag}, K {matrix.k} ({matrix.units})")
    table.add_column("Source", style="cyan", justify="right")
    table.add_column("Destination", style="cyan", justify="right")
    table.add_column("TE", style="green", justify="right")
    table.add_column("Effect", style="yellow", justify="right")
    table.add_column("p", style="red", justify="right")
    significant = matrix.significant(alpha)
    for i in range(matrix.n_variables):
        for j in range(matrix.n_variables):
            if i == j:
                continue
            mark = " *" if significant[i, j] else ""
            table.add_row(
                str(i), str(j),
                f"{matrix.values[i, j]:.4f}",
                f"{matrix.effects[i, j]:.4f}",
                f"{matrix.p_values[i, j]:.3f}{mark}",
            )
    return table


def main():
    parser = argparse.ArgumentParser(
        description="Transfer entropy causal matrices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  Two modes from a .mat file: python -m scripts.run_matrix data.mat --variable modes --modes 2
  Lag sweep:                  python -m scripts.run_matrix data.npy --lags 1 2 3
  Fixed history length:       python -m scripts.run_matrix data.npy --history 2
  Parallel pairs:             python -m scripts.run_matrix data.npy --workers 4
        """,
    )

    parser.add_argument("data", type=str,
                       help="Data file (.npy, .npz, .mat or .csv), time x variable")
    parser.add_argument("--variable", type=str, default=None,
                       help="Array name inside a .npz or .mat file")
    parser.add_argument("--modes", type=int, default=None,
                       help="Use only the first N columns")
    parser.add_argument("--lags", nargs="+", type=int, default=[1],
                       help="Source-destination lags")
    parser.add_argument("--neighbors", nargs="+", type=int, default=[4],
                       help="KSG neighbour counts")
    parser.add_argument("--delay", type=int, default=1,
                       help="Embedding delay")
    parser.add_argument("--history", type=int, default=None,
                       help="Embedding history length (default: equal to the lag)")
    parser.add_argument("--permutations", type=int, default=100,
                       help="Permutations for significance testing")
    parser.add_argument("--exclusion-window", type=int, default=0,
                       help="Dynamic correlation exclusion window")
    parser.add_argument("--bits", action="store_true",
                       help="Report results in bits instead of nats")
    parser.add_argument("--alpha", type=float, default=0.05,
                       help="Significance level marked in the summary")
    parser.add_argument("--seed", type=int, default=None,
                       help="Seed for the permutation orderings")
    parser.add_argument("--workers", type=int, default=1,
                       help="Worker processes (one pair per task)")
    parser.add_argument("--output", type=str, default="results",
                       help="Output directory for .npz results")
    parser.add_argument("--quiet", action="store_true",
                       help="Suppress progress output")
    parser.add_argument("--log-level", type=str, default="WARNING",
                       help="Logging level for the library (DEBUG, INFO, ...)")

    args = parser.parse_args()
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = MatrixConfig(
        lags=args.lags,
        neighbor_counts=args.neighbors,
        delay=args.delay,
        history=args.history,
        exclusion_window=args.exclusion_window,
        units="bits" if args.bits else "nats",
        n_permutations=args.permutations,
        seed=args.seed,
        n_modes=args.modes,
        n_workers=args.workers,
        output_dir=args.output,
    )

    data = load_table(args.data, args.variable)
    output_dir = Path(args.output)
    output_dir.mkdir(parents=True, exist_ok=True)

    sweep = MatrixSweep(config)
    sweep.save_config(str(output_dir / "matrix_config.json"))
    results = sweep.run(data, verbose=not args.quiet)

    if not args.quiet:
        console = Console()
        if not results:
            console.print("\n[dim]Nothing to do: every run is already in[/dim]", output_dir)
        for matrix in results.values():
            console.print()
            console.print(summary_table(matrix, args.alpha))
        console.print(f"\n[dim]* p < {args.alpha}. Results saved to {output_dir}/[/dim]")


if __name__ == "__main__":
    main()
