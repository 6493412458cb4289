"""Command-line interface for the precise-asv pipeline."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
import numpy as np
import pandas as pd

from .config import PipelineConfig, load_config
from .dereplicate import dereplicate
from .error_model import learn_errors
from .exceptions import PreciseASVError
from .io import PipelineIO, reads_from_frame, reads_to_frame
from .logging_config import log_system_info, setup_logging
from .pipeline import run_pipeline, write_artifacts
from .simulate import simulate_community, simulate_paired_reads

DATA_ROOT = Path("data")


@dataclass(slots=True)
class CLIContext:
    """Shared CLI configuration."""

    seed: int
    config_override: Optional[Path]


def _load_pipeline_config(config_option: Optional[Path], seed: int) -> PipelineConfig:
    """Load a pipeline configuration, falling back to defaults."""
    if config_option:
        config_path = Path(config_option)
        if not config_path.exists():
            raise click.ClickException(f"Configuration file not found: {config_path}")
        try:
            config = load_config(config_path)
        except PreciseASVError as exc:
            raise click.ClickException(f"Failed to load configuration {config_path}: {exc}") from exc
    else:
        config = PipelineConfig()
    config.seed = seed
    return config


@click.group()
@click.option("--seed", default=7, show_default=True, type=int, help="Seed for deterministic runs.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    help="Path to a pipeline configuration file. Defaults to built-in settings.",
)
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level.")
@click.pass_context
def main(ctx: click.Context, seed: int, config_path: Optional[Path], log_level: str) -> None:
    """Precise ASV: exact amplicon sequence variants from paired-end reads."""
    log_system_info(setup_logging(level=log_level))
    ctx.obj = CLIContext(seed=seed, config_override=config_path)


@main.command("smoke")
@click.option(
    "--out-dir",
    default=DATA_ROOT / "smoke",
    show_default=True,
    type=click.Path(path_type=Path),
    help="Directory for smoke artifacts.",
)
@click.option("--samples", default=2, show_default=True, type=int, help="Simulated samples.")
@click.option("--depth", default=300, show_default=True, type=int, help="Read pairs per sample.")
@click.pass_obj
def smoke_cmd(ctx: CLIContext, out_dir: Path, samples: int, depth: int) -> None:
    """Simulate a small community with one chimera and run the full pipeline."""
    config = _load_pipeline_config(ctx.config_override, ctx.seed)
    rng = np.random.default_rng(ctx.seed)
    community = simulate_community(rng, n_samples=samples, depth=depth)
    forward, reverse = simulate_paired_reads(community, rng)

    io = PipelineIO(out_dir)
    try:
        result = run_pipeline(forward, reverse, config)
    except PreciseASVError as exc:
        raise click.ClickException(str(exc)) from exc
    artifacts = write_artifacts(result, io, config)

    click.echo(
        json.dumps(
            {
                "stage": "smoke",
                "seed": ctx.seed,
                "summary": result.summary(),
                "artifacts": artifacts,
            },
            indent=2,
        )
    )


@main.command("run")
@click.option("--forward", "forward_path", required=True, type=click.Path(exists=True, path_type=Path),
              help="Parquet table of filtered forward reads.")
@click.option("--reverse", "reverse_path", required=True, type=click.Path(exists=True, path_type=Path),
              help="Parquet table of filtered reverse reads.")
@click.option("--out-dir", required=True, type=click.Path(path_type=Path), help="Output directory.")
@click.pass_obj
def run_cmd(ctx: CLIContext, forward_path: Path, reverse_path: Path, out_dir: Path) -> None:
    """Run the pipeline on long-format read tables."""
    config = _load_pipeline_config(ctx.config_override, ctx.seed)
    try:
        forward = reads_from_frame(pd.read_parquet(forward_path))
        reverse = reads_from_frame(pd.read_parquet(reverse_path))
        result = run_pipeline(forward, reverse, config)
    except PreciseASVError as exc:
        raise click.ClickException(str(exc)) from exc
    artifacts = write_artifacts(result, PipelineIO(out_dir), config)
    click.echo(
        json.dumps(
            {"stage": "run", "summary": result.summary(), "artifacts": artifacts},
            indent=2,
        )
    )


@main.command("fit-errors")
@click.option("--reads", "reads_path", required=True, type=click.Path(exists=True, path_type=Path),
              help="Parquet table of filtered reads of one direction.")
@click.option("--out", "out_path", required=True, type=click.Path(path_type=Path),
              help="Parquet file for the fitted error model.")
@click.option("--direction", default="forward", show_default=True,
              type=click.Choice(["forward", "reverse"]))
@click.pass_obj
def fit_errors_cmd(ctx: CLIContext, reads_path: Path, out_path: Path, direction: str) -> None:
    """Learn an error model from one read direction and write it."""
    config = _load_pipeline_config(ctx.config_override, ctx.seed)
    try:
        reads = reads_from_frame(pd.read_parquet(reads_path))
        samples = [dereplicate(reads[s], s) for s in sorted(reads)]
        model, trace = learn_errors(samples, config, direction=direction)
    except PreciseASVError as exc:
        raise click.ClickException(str(exc)) from exc

    out_path.parent.mkdir(parents=True, exist_ok=True)
    model.to_frame().to_parquet(out_path, index=False)
    click.echo(
        json.dumps(
            {
                "stage": "fit-errors",
                "direction": direction,
                "rounds": len(trace),
                "qualities": [int(q) for q in model.qualities],
                "model": str(out_path),
            },
            indent=2,
        )
    )


@main.command("simulate")
@click.option("--out-dir", required=True, type=click.Path(path_type=Path), help="Output directory.")
@click.option("--samples", default=2, show_default=True, type=int, help="Simulated samples.")
@click.option("--depth", default=300, show_default=True, type=int, help="Read pairs per sample.")
@click.pass_obj
def simulate_cmd(ctx: CLIContext, out_dir: Path, samples: int, depth: int) -> None:
    """Write simulated forward and reverse read tables."""
    rng = np.random.default_rng(ctx.seed)
    community = simulate_community(rng, n_samples=samples, depth=depth)
    forward, reverse = simulate_paired_reads(community, rng)
    out_dir.mkdir(parents=True, exist_ok=True)
    paths = {}
    for name, reads in (("forward", forward), ("reverse", reverse)):
        path = out_dir / f"{name}_reads.parquet"
        reads_to_frame(reads).to_parquet(path, index=False)
        paths[name] = str(path)
    click.echo(json.dumps({"stage": "simulate", "seed": ctx.seed, "artifacts": paths}, indent=2))


if __name__ == "__main__":
    main()
