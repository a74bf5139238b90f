"""Command line interface for the statistical responder."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import typer

from .config import load_config
from .diagnostics import build_report, render_report
from .engine import ResponseEngine
from .errors import LearningStoreFailure
from .logging import configure_logging
from .store import FileLearningStore

LOGGER = configure_logging(level="WARNING", logger_name=__name__)

DEFAULT_STORE = Path("artifacts") / "store.json"
USER_OPTION = typer.Option(
    "default",
    "--user-id",
    help="User whose learned relations drive the response.",
)
STORE_OPTION = typer.Option(
    DEFAULT_STORE,
    "--store",
    help="Learning store snapshot (YAML or JSON); created on first write.",
)
CONFIG_OPTION = typer.Option(
    None,
    "--config",
    help="Optional engine configuration file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Print the full response envelope as JSON.",
)
SCORE_OPTION = typer.Option(
    0.8,
    "--score",
    min=0.0,
    max=1.0,
    help="Quality score credited to the interaction.",
)
HISTORY_OPTION = typer.Option(
    10,
    "--history",
    help="Number of recent responses to include in the report.",
)
REPORT_OUTPUT_OPTION = typer.Option(
    None,
    "--output",
    help="Optional path to write the report as JSON.",
)

app = typer.Typer(help="Generate, learn from and inspect statistically generated responses.")


def _open_store(path: Path) -> FileLearningStore:
    try:
        return FileLearningStore.open(path)
    except LearningStoreFailure as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


def _save_store(store: FileLearningStore) -> None:
    try:
        store.save()
    except LearningStoreFailure as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(code=1) from exc


@app.command()
def generate(
    text: str = typer.Argument(..., help="Utterance to respond to."),
    user_id: str = USER_OPTION,
    store_path: Path = STORE_OPTION,
    config_path: Path | None = CONFIG_OPTION,
    as_json: bool = JSON_OPTION,
) -> None:
    """Respond to TEXT and persist what was learned."""

    store = _open_store(store_path)
    engine = ResponseEngine(store, config=load_config(config_path))
    envelope = engine.respond(text, user_id)
    _save_store(store)
    if as_json:
        typer.echo(json.dumps(envelope.to_dict(), ensure_ascii=False, indent=2))
    else:
        typer.echo(envelope.response)


@app.command()
def learn(
    text: str = typer.Argument(..., help="User utterance."),
    response: str = typer.Argument(..., help="Reply to associate with the utterance."),
    user_id: str = USER_OPTION,
    store_path: Path = STORE_OPTION,
    score: float = SCORE_OPTION,
) -> None:
    """Feed one interaction to the co-occurrence and n-gram learners."""

    store = _open_store(store_path)
    asyncio.run(store.learn(user_id, text, response, score))
    _save_store(store)
    LOGGER.info("Learned interaction for %s", user_id)
    typer.echo(f"Learned {len(store.relations.get(user_id, {}))} keywords for {user_id}.")


@app.command()
def stats(
    user_id: str = USER_OPTION,
    store_path: Path = STORE_OPTION,
    config_path: Path | None = CONFIG_OPTION,
    history: int = HISTORY_OPTION,
    output: Path | None = REPORT_OUTPUT_OPTION,
) -> None:
    """Show strategy statistics and adaptive thresholds."""

    store = _open_store(store_path)
    engine = ResponseEngine(store, config=load_config(config_path))
    report = asyncio.run(build_report(engine, user_id, history))
    render_report(report, sys.stdout)
    if output is not None:
        report.to_json(output)
        LOGGER.info("Wrote report to %s", output)


if __name__ == "__main__":
    app()
