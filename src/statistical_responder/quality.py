"""Sentence scoring, adaptive confidence thresholds and grading."""

from __future__ import annotations

import re
import statistics
from dataclasses import asdict, dataclass
from typing import Callable, Dict, Optional, Sequence

from .config import QualityConfig
from .errors import LearningStoreFailure
from .logging import get_logger
from .store import LearningStore, QualityStats, RelationGraph
from .utils.text import EXCLUDED_POS, keyword_quality, tag_token, tokenize

LOGGER = get_logger(__name__)

SentenceScorer = Callable[[str, float], float]

_SEGMENT_RE = re.compile(r"[。！？!?]+")

GRADES = ("excellent", "good", "acceptable", "poor")


def echo_confidence(sentence: str, prior_confidence: float) -> float:
    """Placeholder scorer: the sentence inherits the confidence it was built with."""
    return min(max(prior_confidence, 0.0), 1.0)


@dataclass(frozen=True)
class AdaptiveThresholds:
    low_confidence: float
    medium_confidence: float
    high_confidence: float
    relationship_strength: float
    vocabulary_selection: float

    @property
    def is_ordered(self) -> bool:
        return self.high_confidence > self.medium_confidence > self.low_confidence

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


MINIMAL_THRESHOLDS = AdaptiveThresholds(
    low_confidence=0.1,
    medium_confidence=0.3,
    high_confidence=0.5,
    relationship_strength=0.5,
    vocabulary_selection=0.1,
)


@dataclass(frozen=True)
class PerformanceStats:
    high_quality_rate: float = 0.1
    medium_quality_rate: float = 0.3
    total_keywords: int = 0


@dataclass(frozen=True)
class QualityMetrics:
    vocabulary_diversity: int = 0
    relationship_density: float = 0.0
    average_relation_strength: float = 0.5
    contextual_richness: float = 0.0


@dataclass(frozen=True)
class ResponseMetrics:
    diversity_score: float
    coherence_score: float


def performance_from_relations(relations: RelationGraph) -> PerformanceStats:
    """Bucket each keyword by the summed strength of its relations."""
    if not relations:
        return PerformanceStats()
    high = medium = 0
    for records in relations.values():
        total = sum(record.strength for record in records)
        if total > 5:
            high += 1
        elif total > 2:
            medium += 1
    keywords = len(relations)
    return PerformanceStats(
        high_quality_rate=high / keywords,
        medium_quality_rate=medium / keywords,
        total_keywords=keywords,
    )


def metrics_from_relations(relations: RelationGraph) -> QualityMetrics:
    keywords = len(relations)
    total_relations = sum(len(records) for records in relations.values())
    total_strength = sum(record.strength for records in relations.values() for record in records)
    density = total_relations / keywords if keywords else 0.0
    average = total_strength / total_relations if total_relations else 0.5
    return QualityMetrics(
        vocabulary_diversity=keywords,
        relationship_density=density,
        average_relation_strength=average,
        contextual_richness=average * density,
    )


class QualityEvaluator:
    """Scores sentences and derives per-user confidence bands.

    ``scorer`` is swappable; the default echoes the prior confidence.
    """

    def __init__(
        self,
        store: LearningStore,
        config: Optional[QualityConfig] = None,
        scorer: Optional[SentenceScorer] = None,
    ) -> None:
        self.store = store
        self.config = config or QualityConfig()
        self.scorer = scorer or echo_confidence

    def score(self, sentence: str, prior_confidence: float) -> float:
        return self.scorer(sentence, prior_confidence)

    def metrics(
        self,
        sentence: str,
        structure: Optional[str] = None,
        tokens: Optional[Sequence[str]] = None,
    ) -> ResponseMetrics:
        """Diversity and coherence of ``sentence``; the measures do not depend on ``structure`` yet."""
        tokens = list(tokens) if tokens is not None else tokenize(sentence)
        informative = {token for token in tokens if tag_token(token) not in EXCLUDED_POS}
        diversity = len(informative) / len(tokens) if tokens else 0.0
        segments = [segment for segment in _SEGMENT_RE.split(sentence) if segment.strip()]
        mean_length = statistics.fmean(len(segment) for segment in segments) if segments else 0.0
        return ResponseMetrics(diversity_score=diversity, coherence_score=min(mean_length / 100, 1.0))

    async def performance_stats(self, user_id: str) -> PerformanceStats:
        return performance_from_relations(await self.store.get_user_relations(user_id))

    async def quality_metrics(self, user_id: str) -> QualityMetrics:
        return metrics_from_relations(await self.store.get_user_relations(user_id))

    def compute_thresholds(
        self,
        performance: PerformanceStats,
        metrics: QualityMetrics,
        history_count: int,
    ) -> AdaptiveThresholds:
        high = min(0.5 + 0.3 * performance.high_quality_rate, 0.9)
        medium = min(0.3 + 0.2 * performance.medium_quality_rate, high - 0.1)
        low = self.config.low_confidence
        if history_count < self.config.cold_start_history:
            low = max(low, self.config.cold_floor_low)
            medium = max(medium, self.config.cold_floor_medium)
            high = max(high, self.config.cold_floor_high)
        # configured floors may not overlap the computed bands
        medium = min(medium, high - 0.1)
        low = max(min(low, medium - 0.1), 0.0)
        return AdaptiveThresholds(
            low_confidence=low,
            medium_confidence=medium,
            high_confidence=high,
            relationship_strength=max(0.7 * metrics.average_relation_strength, 0.5),
            vocabulary_selection=min(metrics.vocabulary_diversity / 100, 0.8),
        )

    async def adaptive_thresholds(self, user_id: str) -> AdaptiveThresholds:
        try:
            relations = await self.store.get_user_relations(user_id)
            user_stats = await self.store.get_user_stats(user_id)
        except LearningStoreFailure as exc:
            LOGGER.warning("Minimal thresholds for %s: %s", user_id, exc)
            return MINIMAL_THRESHOLDS
        return self.compute_thresholds(
            performance_from_relations(relations),
            metrics_from_relations(relations),
            user_stats.total_interactions,
        )

    @staticmethod
    def grade(score: float, mean: float, std_dev: float) -> str:
        if score > mean + std_dev:
            return "excellent"
        if score > mean:
            return "good"
        if score > mean - std_dev:
            return "acceptable"
        return "poor"

    async def live_grade(self, score: float) -> str:
        """Grade ``score`` against the stored distribution of quality scores."""
        try:
            stats = await self.store.get_quality_stats()
        except LearningStoreFailure as exc:
            LOGGER.warning("Grading against default distribution: %s", exc)
            stats = QualityStats()
        if stats.count < 2:
            stats = QualityStats()
        return self.grade(score, stats.average, stats.std_dev)

    async def vocabulary_quality_median(self, user_id: str) -> Optional[float]:
        """Median keyword quality over the user's learned vocabulary."""
        try:
            relations = await self.store.get_user_relations(user_id)
        except LearningStoreFailure:
            return None
        if not relations:
            return None
        return statistics.median(keyword_quality(keyword) for keyword in relations)
