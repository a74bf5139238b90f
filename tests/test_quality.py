from __future__ import annotations

import asyncio

import pytest

from statistical_responder.config import QualityConfig
from statistical_responder.errors import LearningStoreFailure
from statistical_responder.quality import (
    MINIMAL_THRESHOLDS,
    PerformanceStats,
    QualityEvaluator,
    QualityMetrics,
    performance_from_relations,
)
from statistical_responder.store import InMemoryLearningStore


class UnreadableStore(InMemoryLearningStore):
    async def get_user_relations(self, user_id: str):
        raise LearningStoreFailure("unreadable")

    async def get_quality_stats(self):
        raise LearningStoreFailure("unreadable")


@pytest.mark.parametrize("high_rate", [0.0, 0.3, 0.7, 1.0])
@pytest.mark.parametrize("medium_rate", [0.0, 0.5, 1.0])
@pytest.mark.parametrize("history", [0, 25])
def test_thresholds_stay_ordered(high_rate: float, medium_rate: float, history: int) -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore())
    thresholds = evaluator.compute_thresholds(
        PerformanceStats(high_quality_rate=high_rate, medium_quality_rate=medium_rate),
        QualityMetrics(),
        history,
    )
    assert thresholds.is_ordered
    assert thresholds.high_confidence <= 0.9


def test_cold_history_floors_confidence_bands() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore(), QualityConfig(low_confidence=0.02))
    cold = evaluator.compute_thresholds(PerformanceStats(0.0, 0.0), QualityMetrics(), 3)
    warm = evaluator.compute_thresholds(PerformanceStats(0.0, 0.0), QualityMetrics(), 30)
    assert (cold.low_confidence, cold.medium_confidence, cold.high_confidence) == (0.1, 0.3, 0.5)
    assert warm.low_confidence == 0.02


def test_configured_low_band_stays_below_medium() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore(), QualityConfig(low_confidence=0.6))
    for history in (3, 30):
        thresholds = evaluator.compute_thresholds(PerformanceStats(0.0, 0.0), QualityMetrics(), history)
        assert thresholds.is_ordered
        assert thresholds.low_confidence == pytest.approx(0.2)


def test_relationship_and_vocabulary_thresholds() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore())
    thresholds = evaluator.compute_thresholds(
        PerformanceStats(),
        QualityMetrics(vocabulary_diversity=250, average_relation_strength=0.9),
        30,
    )
    assert thresholds.relationship_strength == pytest.approx(0.63)
    assert thresholds.vocabulary_selection == 0.8


def test_adaptive_thresholds_from_store(python_store: InMemoryLearningStore) -> None:
    thresholds = asyncio.run(QualityEvaluator(python_store).adaptive_thresholds("u1"))
    assert thresholds.is_ordered
    assert thresholds.relationship_strength == pytest.approx(0.525)


def test_store_failure_returns_minimal_thresholds() -> None:
    thresholds = asyncio.run(QualityEvaluator(UnreadableStore()).adaptive_thresholds("u1"))
    assert thresholds == MINIMAL_THRESHOLDS


def test_performance_sums_relation_strength(store: InMemoryLearningStore) -> None:
    for index in range(6):
        store.add_relation("u1", "Python", f"term{index}", strength=0.9)
    store.add_relation("u1", "Rust", "所有権", strength=0.9)
    stats = performance_from_relations(asyncio.run(store.get_user_relations("u1")))
    assert stats.total_keywords == 2
    assert stats.high_quality_rate == 0.5
    assert stats.medium_quality_rate == 0.0


@pytest.mark.parametrize(
    ("score", "expected"),
    [(0.9, "excellent"), (0.6, "good"), (0.4, "acceptable"), (0.1, "poor")],
)
def test_grade_against_distribution(score: float, expected: str) -> None:
    assert QualityEvaluator.grade(score, 0.5, 0.2) == expected


def test_live_grade_uses_defaults_for_sparse_history(store: InMemoryLearningStore) -> None:
    evaluator = QualityEvaluator(store)
    store.quality_scores = [0.95]
    assert asyncio.run(evaluator.live_grade(0.6)) == "good"
    store.quality_scores = [0.9, 0.95, 0.92]
    assert asyncio.run(evaluator.live_grade(0.6)) == "poor"


def test_live_grade_survives_store_failure() -> None:
    assert asyncio.run(QualityEvaluator(UnreadableStore()).live_grade(0.8)) == "excellent"


def test_metrics_measure_diversity_and_coherence() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore())
    metrics = evaluator.metrics("Pythonの説明。")
    assert 0.0 < metrics.diversity_score <= 1.0
    assert metrics.coherence_score == pytest.approx(0.09)
    assert evaluator.metrics("").diversity_score == 0.0


def test_metrics_accept_structure_and_tokens() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore())
    metrics = evaluator.metrics("Pythonの説明。", "topic_focus", ["Python", "の", "説明", "。"])
    assert metrics.diversity_score == pytest.approx(0.5)
    assert metrics == evaluator.metrics("Pythonの説明。", tokens=["Python", "の", "説明", "。"])


def test_custom_scorer_is_used() -> None:
    evaluator = QualityEvaluator(InMemoryLearningStore(), scorer=lambda sentence, confidence: len(sentence) / 10)
    assert evaluator.score("abcde", 0.9) == 0.5
    assert QualityEvaluator(InMemoryLearningStore()).score("abcde", 1.7) == 1.0
