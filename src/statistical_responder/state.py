"""Explicitly owned engine state shared by concurrent requests."""

from __future__ import annotations

from collections import deque
from dataclasses import asdict, dataclass, field
from typing import Any, Deque, Dict, List, Optional

from .logging import get_logger
from .store import LearningStore
from .strategy import StrategyStats

LOGGER = get_logger(__name__)

STRATEGY_STATS_KEY = "strategy_stats"


@dataclass(frozen=True)
class HistoryEntry:
    input: str
    response: str
    strategy: str
    quality_score: float
    grade: str
    timestamp: str
    user_id: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class EngineState:
    """Bandit statistics plus the bounded response history.

    Built once per :class:`~statistical_responder.engine.ResponseEngine`;
    nothing here is a process-wide singleton.
    """

    strategy_stats: StrategyStats = field(default_factory=StrategyStats)
    history_size: int = 50
    history: Deque[HistoryEntry] = field(init=False)

    def __post_init__(self) -> None:
        self.history = deque(maxlen=self.history_size)

    def record(self, entry: HistoryEntry) -> None:
        self.history.append(entry)

    def recent(self, limit: Optional[int] = None, user_id: Optional[str] = None) -> List[HistoryEntry]:
        entries = [entry for entry in self.history if user_id is None or entry.user_id == user_id]
        return entries if limit is None else entries[-limit:]

    async def restore(self, store: LearningStore) -> None:
        """Load persisted strategy statistics, if any."""
        payload = await store.load_system_data(STRATEGY_STATS_KEY)
        if payload:
            self.strategy_stats.update_from_dict(payload)
            LOGGER.debug("Restored strategy statistics for %d strategies", len(payload))

    async def persist(self, store: LearningStore) -> None:
        await store.save_system_data(STRATEGY_STATS_KEY, self.strategy_stats.to_dict())
