"""
Command-line interface for COMPASS Pipeline.

Usage:
    compass-pipeline fit --stimulated stim.csv --unstimulated unstim.csv --markers IFNg IL2 TNFa
    compass-pipeline fit --stimulated stim.csv --unstimulated unstim.csv --markers A B --config fit.yaml
    compass-pipeline score --posterior results/posterior.csv --markers IFNg IL2 TNFa --subset IFNg IL2
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Optional

logger = logging.getLogger("compass_pipeline")


def _setup_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    """Configure logging for CLI."""
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=level, format=fmt, handlers=handlers, force=True)


def _load_config(args: argparse.Namespace):
    """Build a Config from an optional YAML file plus command-line overrides."""
    from compass_pipeline.core.config import Config

    if args.config:
        config_path = Path(args.config)
        if not config_path.exists():
            from compass_pipeline.core.exceptions import ConfigurationError
            raise ConfigurationError(f"Config file not found: {config_path}")
        config = Config.from_yaml(config_path)
    else:
        config = Config()

    config = config.with_overrides(
        iterations=args.iterations,
        replications=args.replications,
        seed=args.seed,
        burn_in_fraction=args.burn_in,
        thin=args.thin,
        scoring_policy=args.policy,
        verbose=args.verbose or None,
    )
    if args.backend is not None:
        config.parallel.backend = args.backend
    if args.filter:
        config.filter.enabled = True
    return config


def cmd_fit(args: argparse.Namespace) -> int:
    """Fit the response model to stimulated/unstimulated count tables."""
    import pandas as pd
    from compass_pipeline.export import CSVWriter, JSONWriter
    from compass_pipeline.pipeline import CompassPipeline

    config = _load_config(args)

    stimulated = pd.read_csv(args.stimulated, index_col=0)
    unstimulated = pd.read_csv(args.unstimulated, index_col=0)
    logger.info(
        "Loaded %d subjects x %d categories from %s",
        stimulated.shape[0], stimulated.shape[1], args.stimulated,
    )

    result = CompassPipeline(config).fit(stimulated, unstimulated, markers=args.markers)

    metadata = None
    if args.metadata:
        metadata = pd.read_csv(args.metadata)
        if args.key is None:
            metadata = metadata.set_index(metadata.columns[0])

    output_dir = Path(args.output or ".")
    csv_writer = CSVWriter(output_dir)
    json_writer = JSONWriter(output_dir)

    csv_writer.write_posterior(result)
    csv_writer.write_scores(result.scores(metadata=metadata, key=args.key))
    if args.long:
        csv_writer.write_posterior_long(result)
    json_writer.write_summary(result)
    if args.heatmap:
        json_writer.write_plot_data(result.plot_data(metadata=metadata, key=args.key))

    if not result.is_converged:
        logger.warning("Fit finished with %d convergence warnings", len(result.warnings))
    logger.info("Results saved to %s", output_dir)
    return 0


def cmd_score(args: argparse.Namespace) -> int:
    """Recompute FS/PFS from a saved posterior matrix."""
    import pandas as pd
    from compass_pipeline.export import CSVWriter
    from compass_pipeline.model.categories import build_category_space
    from compass_pipeline.scoring.scores import Scorer

    posterior = pd.read_csv(args.posterior, index_col=0)
    space = build_category_space(args.markers)
    space.check_markers(args.subset or [])
    if list(posterior.columns) != space.labels:
        from compass_pipeline.core.exceptions import DimensionMismatch
        raise DimensionMismatch(
            f"Posterior columns do not match the category space for markers {args.markers}"
        )

    scorer = Scorer(space=space, policy=args.policy)
    fs, pfs = scorer.score(posterior.to_numpy(), markers=args.subset)
    scores = pd.DataFrame({
        "subject_id": posterior.index.astype(str),
        "FS": fs,
        "PFS": pfs,
    })

    path = CSVWriter(Path(args.output or ".")).write_scores(scores, filename=args.filename)
    logger.info("Scores for %d subjects saved to %s", len(scores), path)
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="compass-pipeline",
        description="Bayesian detection of antigen-specific marker-combination responses",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--log-file", type=str, help="Log file path")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # --- fit ---
    p_fit = subparsers.add_parser("fit", help="Fit the model and write posterior and scores")
    p_fit.add_argument("--stimulated", "-s", required=True, help="Stimulated counts CSV")
    p_fit.add_argument("--unstimulated", "-u", required=True, help="Unstimulated counts CSV")
    p_fit.add_argument("--markers", "-m", nargs="+", required=True, help="Marker names")
    p_fit.add_argument("--config", help="YAML config file")
    p_fit.add_argument("--iterations", type=int, help="Iterations per chain")
    p_fit.add_argument("--replications", type=int, help="Number of chains")
    p_fit.add_argument("--seed", type=int, help="Master random seed")
    p_fit.add_argument("--burn-in", type=float, help="Burn-in fraction")
    p_fit.add_argument("--thin", type=int, help="Thinning interval")
    p_fit.add_argument("--backend", choices=["thread", "process", "serial"])
    p_fit.add_argument("--policy", choices=["degree", "binomial"], help="PFS weighting")
    p_fit.add_argument("--filter", action="store_true", help="Drop sparse categories")
    p_fit.add_argument("--metadata", help="Subject metadata CSV")
    p_fit.add_argument("--key", help="Metadata column holding subject ids")
    p_fit.add_argument("--heatmap", action="store_true", help="Also write heatmap.json")
    p_fit.add_argument("--long", action="store_true", help="Also write posterior_long.csv")
    p_fit.add_argument("--output", "-o", help="Output directory")
    p_fit.set_defaults(func=cmd_fit)

    # --- score ---
    p_score = subparsers.add_parser("score", help="Rescore a saved posterior matrix")
    p_score.add_argument("--posterior", "-p", required=True, help="posterior.csv from a fit")
    p_score.add_argument("--markers", "-m", nargs="+", required=True, help="Marker names")
    p_score.add_argument("--subset", nargs="+", help="Restrict scores to these markers")
    p_score.add_argument("--policy", default="degree", choices=["degree", "binomial"])
    p_score.add_argument("--filename", default="scores.csv", help="Output filename")
    p_score.add_argument("--output", "-o", help="Output directory")
    p_score.set_defaults(func=cmd_score)

    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    from compass_pipeline.core.exceptions import CompassError

    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    _setup_logging(verbose=args.verbose, log_file=args.log_file)

    try:
        return args.func(args)
    except CompassError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
