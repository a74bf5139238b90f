from __future__ import annotations

import asyncio
import threading

import pytest

from statistical_responder.analysis import (
    AdaptedContent,
    PredictedContext,
    RelatedTerm,
    UtteranceAnalysis,
    default_analysis,
)
from statistical_responder.config import StrategyConfig
from statistical_responder.store import InMemoryLearningStore
from statistical_responder.strategy import (
    Strategy,
    StrategySelector,
    StrategyStats,
    determine_stage,
)


def test_first_five_selections_explore_every_strategy_in_order(store: InMemoryLearningStore) -> None:
    selector = StrategySelector(store)
    equal = {strategy: 0.5 for strategy in Strategy}
    chosen = [selector.select(equal) for _ in range(5)]
    assert chosen == list(Strategy)
    assert all(stat.selections == 1 for stat in selector.stats.snapshot().values())


def test_reward_running_mean(store: InMemoryLearningStore) -> None:
    selector = StrategySelector(store)
    stats = selector.stats
    for reward in (0.9, 0.6, 0.3):
        stats.mark_selected(Strategy.QUALITY_FOCUSED)
        selector.record_reward(Strategy.QUALITY_FOCUSED, reward)
    stat = stats.snapshot()[Strategy.QUALITY_FOCUSED]
    assert stat.selections == 3
    assert stat.average_reward == pytest.approx(0.6)
    assert stat.total_reward == pytest.approx(1.8)


def test_reward_is_clamped(store: InMemoryLearningStore) -> None:
    selector = StrategySelector(store)
    selector.stats.mark_selected(Strategy.NGRAM_CONTINUATION)
    stat = selector.record_reward(Strategy.NGRAM_CONTINUATION, 7.0)
    assert stat.average_reward == 1.0


def test_reward_without_selection_is_ignored(store: InMemoryLearningStore) -> None:
    selector = StrategySelector(store)
    stat = selector.record_reward(Strategy.PERSONAL_ADAPTATION, 0.8)
    assert (stat.selections, stat.total_reward, stat.average_reward) == (0, 0.0, 0.0)
    assert selector.stats.total_selections() == 0


def test_exploitation_after_exploration(store: InMemoryLearningStore) -> None:
    selector = StrategySelector(store, config=StrategyConfig(exploration_constant=0.0))
    scores = {strategy: 0.0 for strategy in Strategy}
    for strategy in Strategy:
        assert selector.select(scores) is strategy
        selector.record_reward(strategy, 0.9 if strategy is Strategy.VOCABULARY_OPTIMIZATION else 0.1)
    assert selector.select(scores) is Strategy.VOCABULARY_OPTIMIZATION


def test_concurrent_rewards_do_not_lose_updates() -> None:
    stats = StrategyStats()
    for _ in range(400):
        stats.mark_selected(Strategy.COOCCURRENCE_EXPANSION)

    def worker() -> None:
        for _ in range(100):
            stats.record_reward(Strategy.COOCCURRENCE_EXPANSION, 0.5)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    stat = stats.snapshot()[Strategy.COOCCURRENCE_EXPANSION]
    assert stat.total_reward == pytest.approx(200.0)
    assert stat.average_reward == pytest.approx(0.5)


def test_stats_round_trip_ignores_unknown_strategies() -> None:
    stats = StrategyStats()
    stats.mark_selected(Strategy.PERSONAL_ADAPTATION)
    stats.record_reward(Strategy.PERSONAL_ADAPTATION, 0.4)
    payload = stats.to_dict()
    payload["retired_strategy"] = {"selections": 3}

    restored = StrategyStats()
    restored.update_from_dict(payload)
    assert restored.snapshot()[Strategy.PERSONAL_ADAPTATION].average_reward == pytest.approx(0.4)
    assert restored.total_selections() == 1


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("こんにちは", "greeting"),
        ("Pythonについて教えて", "information_request"),
        ("エラーの問題を解決したい", "problem_solving"),
        ("これで合ってる？", "confirmation"),
        ("Python", "general"),
    ],
)
def test_determine_stage_from_keywords(text: str, expected: str) -> None:
    assert determine_stage(default_analysis(text)) == expected


def test_determine_stage_from_learned_signals() -> None:
    base = default_analysis("Python")
    related = UtteranceAnalysis(
        original_text="Python",
        tokens=base.tokens,
        related_terms={"Python": (RelatedTerm("ライブラリ", 0.9, 6),)},
    )
    personal = UtteranceAnalysis(original_text="Python", adapted_content=AdaptedContent(adaptation_score=0.8))
    predicted = UtteranceAnalysis(original_text="Python", predicted_context=PredictedContext("ライブラリ", 0.9))
    assert determine_stage(related) == "relationship_exploration"
    assert determine_stage(personal) == "personalized"
    assert determine_stage(predicted) == "context_driven"


def test_score_boosts_cooccurrence_for_related_terms(python_store: InMemoryLearningStore) -> None:
    selector = StrategySelector(python_store)
    analysis = UtteranceAnalysis(
        original_text="Python",
        related_terms={"Python": (RelatedTerm("ライブラリ", 0.9, 6), RelatedTerm("データ分析", 0.6, 2))},
    )
    scores = asyncio.run(selector.score(analysis, "relationship_exploration", "u1"))
    assert max(scores, key=scores.get) is Strategy.COOCCURRENCE_EXPANSION
