# --- TRADEMARK NOTICE ---
# Lightcap (EUIPO. Reg. 019172085) — Contact: alpay@lightcap.ai
# Do not remove this notice from source distributions.

"""Upper-confidence-bound selection over the five generation strategies."""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Awaitable, Mapping
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Optional, TypeVar

from .analysis import UtteranceAnalysis
from .config import StrategyConfig
from .errors import LearningStoreFailure
from .logging import get_logger
from .store import BanditStats, LearningStore, NgramStats, QualityStats, UserStats
from .utils.text import contains_any

LOGGER = get_logger(__name__)

T = TypeVar("T")


class Strategy(str, Enum):
    NGRAM_CONTINUATION = "ngram_continuation"
    COOCCURRENCE_EXPANSION = "cooccurrence_expansion"
    PERSONAL_ADAPTATION = "personal_adaptation"
    VOCABULARY_OPTIMIZATION = "vocabulary_optimization"
    QUALITY_FOCUSED = "quality_focused"


GENERAL_STAGE = "general"

STAGE_KEYWORDS: Dict[str, tuple[str, ...]] = {
    "greeting": ("こんにちは", "こんばんは", "おはよう", "やあ", "どうも"),
    "information_request": ("何ができる", "教えて", "知りたい", "について"),
    "problem_solving": ("問題", "エラー", "うまくいかない", "解決"),
    "confirmation": ("確認", "合ってる", "正しい", "本当に"),
}

# Declaration order breaks ties between equally scored stages.
STAGES = (
    "greeting",
    "information_request",
    "problem_solving",
    "confirmation",
    "context_driven",
    "vocabulary_focused",
    "personalized",
    "relationship_exploration",
)

STAGE_MULTIPLIERS: Dict[str, Dict[Strategy, float]] = {
    "greeting": {Strategy.NGRAM_CONTINUATION: 1.5},
    "information_request": {Strategy.COOCCURRENCE_EXPANSION: 1.2, Strategy.NGRAM_CONTINUATION: 1.1},
    "problem_solving": {Strategy.QUALITY_FOCUSED: 1.5, Strategy.COOCCURRENCE_EXPANSION: 1.3},
    "confirmation": {Strategy.NGRAM_CONTINUATION: 1.3},
    "context_driven": {Strategy.NGRAM_CONTINUATION: 1.2, Strategy.PERSONAL_ADAPTATION: 1.1},
    "vocabulary_focused": {Strategy.VOCABULARY_OPTIMIZATION: 1.5},
    "personalized": {Strategy.PERSONAL_ADAPTATION: 1.5},
    "relationship_exploration": {Strategy.COOCCURRENCE_EXPANSION: 1.5},
}


def determine_stage(analysis: UtteranceAnalysis) -> str:
    """Classify the dialogue stage of ``analysis``."""

    text = analysis.original_text
    scores = {stage: contains_any(text, keywords) for stage, keywords in STAGE_KEYWORDS.items()}
    scores["context_driven"] = int(analysis.predicted_context.confidence > 0.7)
    scores["vocabulary_focused"] = int(analysis.has_vocabulary)
    scores["personalized"] = int(analysis.adapted_content.adaptation_score > 0.5)
    scores["relationship_exploration"] = int(any(analysis.related_terms.values()))

    best_stage, best_score = GENERAL_STAGE, 0
    for stage in STAGES:
        if scores[stage] > best_score:
            best_stage, best_score = stage, scores[stage]
    return best_stage


@dataclass
class StrategyStat:
    selections: int = 0
    total_reward: float = 0.0
    average_reward: float = 0.0
    last_used: Optional[float] = None


class StrategyStats:
    """Per-strategy bandit statistics shared by every request.

    All read-modify-write updates hold one lock so concurrent rewards never
    lose an increment.
    """

    def __init__(self, initial: Optional[Mapping[Strategy, StrategyStat]] = None) -> None:
        self._lock = threading.Lock()
        self._stats: Dict[Strategy, StrategyStat] = {strategy: StrategyStat() for strategy in Strategy}
        for strategy, stat in (initial or {}).items():
            self._stats[Strategy(strategy)] = replace(stat)

    def snapshot(self) -> Dict[Strategy, StrategyStat]:
        with self._lock:
            return {strategy: replace(stat) for strategy, stat in self._stats.items()}

    def total_selections(self) -> int:
        with self._lock:
            return sum(stat.selections for stat in self._stats.values())

    def mark_selected(self, strategy: Strategy) -> None:
        with self._lock:
            stat = self._stats[strategy]
            stat.selections += 1
            stat.last_used = time.time()

    def record_reward(self, strategy: Strategy, reward: float) -> StrategyStat:
        with self._lock:
            stat = self._stats[strategy]
            if stat.selections == 0:
                LOGGER.warning("Ignoring reward for %s without a recorded selection", strategy.value)
                return replace(stat)
            stat.total_reward += reward
            stat.average_reward = stat.total_reward / stat.selections
            return replace(stat)

    def to_dict(self) -> Dict[str, Dict[str, Any]]:
        return {strategy.value: asdict(stat) for strategy, stat in self.snapshot().items()}

    def update_from_dict(self, data: Mapping[str, Mapping[str, Any]]) -> None:
        """Replace statistics in place with a persisted snapshot."""
        loaded = self.from_dict(data).snapshot()
        with self._lock:
            self._stats.update(loaded)

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Any]]) -> StrategyStats:
        initial = {}
        for name, values in data.items():
            try:
                strategy = Strategy(name)
            except ValueError:
                LOGGER.warning("Ignoring statistics for unknown strategy %r", name)
                continue
            initial[strategy] = StrategyStat(
                selections=int(values.get("selections", 0)),
                total_reward=float(values.get("total_reward", 0.0)),
                average_reward=float(values.get("average_reward", 0.0)),
                last_used=values.get("last_used"),
            )
        return cls(initial)


async def _read(call: Awaitable[T], default: T, what: str) -> T:
    try:
        return await call
    except LearningStoreFailure as exc:
        LOGGER.warning("Using cold-start %s: %s", what, exc)
        return default


class StrategySelector:
    """Scores strategies from learned statistics and picks one by UCB."""

    def __init__(
        self,
        store: LearningStore,
        stats: Optional[StrategyStats] = None,
        config: Optional[StrategyConfig] = None,
    ) -> None:
        self.store = store
        self.stats = stats or StrategyStats()
        self.config = config or StrategyConfig()

    async def base_metrics(self, analysis: UtteranceAnalysis, user_id: str) -> Dict[Strategy, float]:
        ngram_stats = await _read(self.store.get_ngram_stats(), NgramStats(), "n-gram statistics")
        bandit_stats = await _read(self.store.get_bandit_stats(), BanditStats(), "bandit statistics")
        quality_stats = await _read(self.store.get_quality_stats(), QualityStats(), "quality statistics")
        user_stats = await _read(self.store.get_user_stats(user_id), UserStats(), "user statistics")

        ngram_quality = min(ngram_stats.total_patterns / 100, 1.0) * 0.5 + ngram_stats.average_confidence * 0.5
        ngram = analysis.predicted_context.confidence * ngram_quality

        richness = (
            min(user_stats.total_interactions / 50, 1.0) * 0.7 + user_stats.profile_completeness * 0.3
        )
        personal = analysis.adapted_content.adaptation_score * 0.6 + richness * 0.4

        vocabulary = analysis.optimized_vocabulary
        candidate_ratio = 0.5 if isinstance(vocabulary, str) else min(len(vocabulary) / 10, 1.0)
        vocab = candidate_ratio * 0.6 + min(bandit_stats.total_optimizations / 100, 1.0) * 0.4

        prediction = analysis.quality_prediction
        quality = (
            prediction.quality_score * prediction.confidence * 0.7 + quality_stats.average_accuracy * 0.3
        ) * self.config.quality_weight

        return {
            Strategy.NGRAM_CONTINUATION: ngram,
            Strategy.COOCCURRENCE_EXPANSION: self._cooccurrence_metric(analysis),
            Strategy.PERSONAL_ADAPTATION: personal,
            Strategy.VOCABULARY_OPTIMIZATION: vocab,
            Strategy.QUALITY_FOCUSED: quality,
        }

    def _cooccurrence_metric(self, analysis: UtteranceAnalysis) -> float:
        buckets = [terms for terms in analysis.related_terms.values() if terms]
        if not buckets:
            return 0.1
        unique = {related.term for terms in buckets for related in terms}
        strengths = [related.strength for terms in buckets for related in terms]
        density = min(len(unique) / (len(buckets) * 5), 1.0)
        return density * self.config.cooccurrence_weight + sum(strengths) / len(strengths)

    def statistical_weights(self) -> Dict[Strategy, float]:
        """Historical average reward per strategy, normalised to sum to one."""
        snapshot = self.stats.snapshot()
        if not any(stat.average_reward > 0 for stat in snapshot.values()):
            return {strategy: 1 / len(Strategy) for strategy in Strategy}
        raw = {strategy: stat.average_reward or 0.1 for strategy, stat in snapshot.items()}
        total = sum(raw.values())
        return {strategy: value / total for strategy, value in raw.items()}

    async def score(self, analysis: UtteranceAnalysis, stage: str, user_id: str = "default") -> Dict[Strategy, float]:
        metrics = await self.base_metrics(analysis, user_id)
        weights = self.statistical_weights()
        multipliers = STAGE_MULTIPLIERS.get(stage, {})
        return {
            strategy: metrics[strategy] * weights[strategy] * multipliers.get(strategy, 1.0)
            for strategy in Strategy
        }

    def ucb_scores(self, scores: Mapping[Strategy, float]) -> Dict[Strategy, float]:
        snapshot = self.stats.snapshot()
        total = sum(stat.selections for stat in snapshot.values())
        result: Dict[Strategy, float] = {}
        for strategy in Strategy:
            stat = snapshot[strategy]
            if stat.selections > 0 and total > 0:
                bonus = self.config.exploration_constant * math.sqrt(math.log(total) / stat.selections)
            else:
                bonus = self.config.unexplored_bonus
            result[strategy] = stat.average_reward + bonus + self.config.base_score_weight * scores.get(strategy, 0.0)
        return result

    def select(self, scores: Mapping[Strategy, float]) -> Strategy:
        """Pick the UCB argmax and count the selection immediately."""
        ucb = self.ucb_scores(scores)
        best = Strategy.NGRAM_CONTINUATION
        for strategy in Strategy:
            if ucb[strategy] > ucb[best]:
                best = strategy
        self.stats.mark_selected(best)
        LOGGER.debug("Selected strategy %s (ucb=%.3f)", best.value, ucb[best])
        return best

    def record_reward(self, strategy: Strategy, reward: float) -> StrategyStat:
        reward = min(max(float(reward), 0.0), 1.0)
        return self.stats.record_reward(strategy, reward)
