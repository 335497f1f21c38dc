"""Command line interface for training and inspecting models on CSV data."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Annotated, Optional

import numpy as np
import pandas as pd
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from budgetboost.booster import Booster
from budgetboost.exceptions import BoosterError
from budgetboost.objectives import Objective
from budgetboost.types import IMPORTANCE_METHODS

app = typer.Typer(
    name="budgetboost",
    help="Train and inspect budget-driven gradient boosting models.",
    no_args_is_help=True,
)
console = Console()


def _read_csv(path: Path) -> pd.DataFrame:
    try:
        return pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        console.print(f"[red]Cannot read {path}: {e}[/red]")
        raise typer.Exit(1) from None


def _load(model: Path) -> Booster:
    try:
        return Booster.load_booster(model)
    except BoosterError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler(console=console)])


@app.command()
def train(
    data: Annotated[Path, typer.Argument(help="Training CSV file.")],
    target: Annotated[str, typer.Option("--target", "-t", help="Label column.")],
    output: Annotated[Path, typer.Option("--output", "-o", help="Where to save the model.")],
    objective: Annotated[
        Objective,
        typer.Option("--objective", help="Loss to optimize."),
    ] = Objective.SQUARED_LOSS,
    budget: Annotated[float, typer.Option("--budget", "-b", help="Training budget.")] = 0.5,
    quantile: Annotated[Optional[float], typer.Option("--quantile", help="Quantile for QuantileLoss.")] = None,
    categorical: Annotated[
        Optional[list[str]],
        typer.Option("--categorical", "-c", help="Integer-coded categorical columns (can specify multiple)."),
    ] = None,
    iteration_limit: Annotated[Optional[int], typer.Option("--iteration-limit", help="Maximum rounds.")] = None,
    timeout: Annotated[Optional[float], typer.Option("--timeout", help="Time limit in seconds.")] = None,
    stopping_rounds: Annotated[
        Optional[int], typer.Option("--stopping-rounds", help="Early-stopping patience.")
    ] = None,
    log_iterations: Annotated[int, typer.Option("--log-iterations", help="Log every N rounds.")] = 0,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Show training progress.")] = False,
) -> None:
    """Fit a booster on a CSV file and save it as JSON."""
    _setup_logging(verbose)
    df = _read_csv(data)
    if target not in df.columns:
        console.print(f"[red]Target column {target!r} not found in {data}[/red]")
        raise typer.Exit(1)
    features = df.drop(columns=[target])
    cat_names = categorical or []
    missing_cols = [c for c in cat_names if c not in features.columns]
    if missing_cols:
        console.print(f"[red]Unknown categorical columns: {missing_cols}[/red]")
        raise typer.Exit(1)
    cat_idx = {features.columns.get_loc(c) for c in cat_names}

    try:
        model = Booster(
            objective=objective,
            budget=budget,
            quantile=quantile,
            categorical_features=cat_idx or None,
            iteration_limit=iteration_limit,
            timeout=timeout,
            stopping_rounds=stopping_rounds,
            log_iterations=log_iterations,
        )
        model.fit(features, df[target].to_numpy(dtype=np.float64))
        model.insert_metadata("target", target)
        model.save_booster(output)
    except (BoosterError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None

    console.print(
        f"[green]Trained {model.number_of_trees} trees on {len(df)} rows, saved to {output}[/green]"
    )


@app.command()
def predict(
    model: Annotated[Path, typer.Argument(help="Saved model file.")],
    data: Annotated[Path, typer.Argument(help="CSV file with feature columns.")],
    output: Annotated[Optional[Path], typer.Option("--output", "-o", help="Write predictions to CSV.")] = None,
    proba: Annotated[bool, typer.Option("--proba", help="Output probabilities (LogLoss models).")] = False,
) -> None:
    """Predict every row of a CSV file."""
    booster = _load(model)
    df = _read_csv(data)
    target = booster.metadata.get("target")
    if target is not None and target in df.columns:
        df = df.drop(columns=[target])
    try:
        preds = booster.predict_proba(df) if proba else booster.predict(df)
    except BoosterError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1) from None

    result = pd.DataFrame({"prediction": preds})
    if output:
        result.to_csv(output, index=False)
        console.print(f"[green]Predictions saved to {output}[/green]")
    else:
        for v in preds:
            console.print(f"{v:.6g}")


@app.command()
def dump(
    model: Annotated[Path, typer.Argument(help="Saved model file.")],
    tree: Annotated[Optional[int], typer.Option("--tree", help="Only show this tree.")] = None,
) -> None:
    """Print trees in text form."""
    booster = _load(model)
    trees = booster.text_dump()
    if tree is not None:
        if not 0 <= tree < len(trees):
            console.print(f"[red]Tree {tree} out of range (model has {len(trees)} trees)[/red]")
            raise typer.Exit(1)
        trees = [trees[tree]]
    for i, text in enumerate(trees):
        console.print(f"[bold]booster[{tree if tree is not None else i}][/bold]")
        console.print(text, highlight=False, markup=False)


@app.command()
def importance(
    model: Annotated[Path, typer.Argument(help="Saved model file.")],
    method: Annotated[
        str,
        typer.Option("--method", "-m", help="Weight, Gain, Cover, TotalGain or TotalCover."),
    ] = "Gain",
    normalize: Annotated[bool, typer.Option("--normalize/--no-normalize", help="Scale values to sum to 1.")] = True,
) -> None:
    """Show feature importance as a table."""
    booster = _load(model)
    if method not in IMPORTANCE_METHODS.values() and method.lower() not in IMPORTANCE_METHODS:
        console.print(f"[red]Invalid importance method: {method}[/red]")
        console.print(f"Valid options: {sorted(set(IMPORTANCE_METHODS.values()))}")
        raise typer.Exit(1)
    values = booster.calculate_feature_importance(method, normalize=normalize)
    names = booster.feature_names

    table = Table(title=f"Feature importance ({method})", show_header=True, header_style="bold")
    table.add_column("Feature", style="cyan", no_wrap=True)
    table.add_column("Importance", justify="right")
    for f, v in sorted(values.items(), key=lambda kv: -kv[1]):
        table.add_row(names[f] if names else str(f), f"{v:.4f}")
    console.print(table)


@app.command()
def info(model: Annotated[Path, typer.Argument(help="Saved model file.")]) -> None:
    """Show parameters, size and metadata of a saved model."""
    booster = _load(model)
    table = Table(title=str(model), show_header=True, header_style="bold")
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green")
    table.add_row("state", booster.state.value)
    table.add_row("trees", str(booster.number_of_trees))
    table.add_row("nodes", str(booster.ensemble.n_nodes))
    table.add_row("base_score", f"{booster.base_score:.6g}")
    table.add_row("features", str(booster.n_features))
    for name, value in booster.get_params().items():
        table.add_row(name, str(value))
    for key, value in sorted(booster.metadata.items()):
        table.add_row(f"metadata.{key}", value)
    console.print(table)


if __name__ == "__main__":
    app()
