"""Engine report: bandit statistics, thresholds and recent history."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, TextIO

from rich.console import Console
from rich.table import Table

from .engine import ResponseEngine
from .logging import get_logger
from .quality import AdaptiveThresholds
from .state import HistoryEntry
from .utils.io import save_json

LOGGER = get_logger(__name__)


@dataclass
class StrategyRow:
    strategy: str
    selections: int
    average_reward: float
    total_reward: float
    last_used: Optional[str] = None


@dataclass
class EngineReport:
    user_id: str
    strategies: Sequence[StrategyRow] = field(default_factory=list)
    thresholds: Optional[AdaptiveThresholds] = None
    history: Sequence[HistoryEntry] = field(default_factory=list)
    system_defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_selections(self) -> int:
        return sum(row.selections for row in self.strategies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "total_selections": self.total_selections,
            "strategies": [asdict(row) for row in self.strategies],
            "thresholds": None if self.thresholds is None else self.thresholds.to_dict(),
            "history": [entry.to_dict() for entry in self.history],
            "system_defaults": dict(self.system_defaults),
        }

    def to_json(self, path: Path) -> None:
        save_json(Path(path), self.to_dict())


def _format_timestamp(value: Optional[float]) -> Optional[str]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


async def build_report(engine: ResponseEngine, user_id: str = "default", history_limit: int = 10) -> EngineReport:
    """Collect a report for ``user_id`` from a started engine."""
    await engine.start()
    rows: List[StrategyRow] = [
        StrategyRow(
            strategy=strategy.value,
            selections=stat.selections,
            average_reward=stat.average_reward,
            total_reward=stat.total_reward,
            last_used=_format_timestamp(stat.last_used),
        )
        for strategy, stat in engine.state.strategy_stats.snapshot().items()
    ]
    thresholds = await engine.evaluator.adaptive_thresholds(user_id)
    LOGGER.debug("Built report for %s with %d history entries", user_id, len(engine.state.history))
    return EngineReport(
        user_id=user_id,
        strategies=rows,
        thresholds=thresholds,
        history=engine.state.recent(history_limit, user_id=user_id),
        system_defaults=dict(engine.system_defaults),
    )


def render_report(report: EngineReport, stream: TextIO) -> None:
    """Pretty-print ``report`` to ``stream``."""
    console = Console(file=stream, width=120)

    strategies = Table(title=f"Strategy statistics ({report.user_id})")
    strategies.add_column("Strategy")
    strategies.add_column("Selections", justify="right")
    strategies.add_column("Average reward", justify="right")
    strategies.add_column("Last used")
    for row in report.strategies:
        strategies.add_row(row.strategy, str(row.selections), f"{row.average_reward:.3f}", row.last_used or "-")
    console.print(strategies)

    if report.thresholds is not None:
        thresholds = Table(title="Adaptive thresholds")
        thresholds.add_column("Threshold")
        thresholds.add_column("Value", justify="right")
        for name, value in report.thresholds.to_dict().items():
            thresholds.add_row(name, f"{value:.3f}")
        console.print(thresholds)

    if report.history:
        history = Table(title="Recent responses")
        history.add_column("Input")
        history.add_column("Response")
        history.add_column("Strategy")
        history.add_column("Grade")
        for entry in report.history:
            history.add_row(entry.input, entry.response, entry.strategy, entry.grade)
        console.print(history)

    weights = report.system_defaults.get("default_weights")
    if weights:
        console.print("Relation weights: " + ", ".join(f"{key}={value}" for key, value in weights.items()))
