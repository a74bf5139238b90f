from __future__ import annotations

import asyncio

import pytest

from statistical_responder.analysis import UtteranceAnalysis
from statistical_responder.assembler import minimal_template
from statistical_responder.config import EngineConfig, RuntimeConfig
from statistical_responder.engine import (
    DETAIL_CLAUSE,
    FOLLOW_UP_CLAUSE,
    GENERIC_FALLBACKS,
    SYSTEM_ERROR_RESPONSE,
    ResponseEngine,
    improve,
)
from statistical_responder.errors import GenerationFailure, LearningStoreFailure
from statistical_responder.store import InMemoryLearningStore
from statistical_responder.strategy import Strategy


class FailingStore(InMemoryLearningStore):
    """Every store call raises ``error``."""

    def __init__(self, error: Exception) -> None:
        super().__init__()
        self.error = error

    async def _fail(self, *args, **kwargs):
        raise self.error

    get_user_relations = _fail
    get_ngram_stats = _fail
    get_ngram_patterns = _fail
    get_ngram_counts = _fail
    get_bandit_stats = _fail
    get_quality_stats = _fail
    get_user_stats = _fail
    load_system_data = _fail
    save_system_data = _fail
    learn = _fail


class BrokenAnalyzer:
    async def analyze(self, text: str, user_id: str = "default") -> UtteranceAnalysis:
        raise ValueError("tokenizer crashed")


class UnsuccessfulAnalyzer:
    async def analyze(self, text: str, user_id: str = "default") -> UtteranceAnalysis:
        return UtteranceAnalysis(original_text=text, success=False, error="upstream refused")


class SlowAnalyzer:
    async def analyze(self, text: str, user_id: str = "default") -> UtteranceAnalysis:
        await asyncio.sleep(1.0)
        return UtteranceAnalysis(original_text=text)


def _rewards(engine: ResponseEngine) -> float:
    return sum(stat.total_reward for stat in engine.state.strategy_stats.snapshot().values())


def test_cold_start_returns_minimal_template(store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(store)
    envelope = engine.respond("Python", "new-user")
    assert envelope.success
    assert envelope.response == minimal_template("Python")
    assert envelope.strategy in {strategy.value for strategy in Strategy}
    assert envelope.grade == "poor"
    assert envelope.improved_response is not None
    assert envelope.improved_response.startswith(envelope.response)
    assert len(engine.state.history) == 1


def test_learned_relations_drive_the_response(python_store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(python_store)
    envelope = engine.respond("Pythonについて", "u1")
    assert envelope.success
    assert envelope.strategy == Strategy.COOCCURRENCE_EXPANSION.value
    assert envelope.stage == "information_request"
    assert envelope.response.startswith("Pythonについて")
    assert "ライブラリ" in envelope.response
    assert envelope.quality_score == pytest.approx(0.75)
    assert envelope.grade == "excellent"
    assert envelope.improved_response is None
    stat = engine.state.strategy_stats.snapshot()[Strategy.COOCCURRENCE_EXPANSION]
    assert stat.selections == 1
    assert stat.average_reward == pytest.approx(0.75)


def test_feedback_is_propagated_to_the_store(python_store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(python_store)
    engine.respond("Pythonについて", "u1")
    assert python_store.interactions["u1"] == 1
    assert python_store.quality_scores == [pytest.approx(0.75)]
    assert "strategy_stats" in python_store.system_data


def test_strategy_stats_survive_a_restart(python_store: InMemoryLearningStore) -> None:
    ResponseEngine(python_store).respond("Pythonについて", "u1")
    restarted = ResponseEngine(python_store)
    asyncio.run(restarted.start())
    assert restarted.state.strategy_stats.total_selections() == 1


def test_envelope_uses_camel_case_keys(store: InMemoryLearningStore) -> None:
    payload = ResponseEngine(store).respond("Python").to_dict()
    assert {"success", "response", "confidence", "strategy", "qualityScore", "grade", "improvements"} <= set(payload)
    assert payload["processingTime"] >= 0
    assert "T" in payload["timestamp"]


@pytest.mark.parametrize("text", ["", "   "])
def test_empty_input_falls_back_without_reward(store: InMemoryLearningStore, text: str) -> None:
    engine = ResponseEngine(store)
    envelope = engine.respond(text)
    assert not envelope.success
    assert envelope.strategy == "fallback"
    assert envelope.confidence == 0.1
    assert envelope.quality_score == 0.3
    assert envelope.improvements == ["fallback_response"]
    assert envelope.error == "empty input"
    assert envelope.response in GENERIC_FALLBACKS
    assert engine.state.strategy_stats.total_selections() == 0
    assert not engine.state.history


@pytest.mark.parametrize("analyzer", [BrokenAnalyzer(), UnsuccessfulAnalyzer()])
def test_analysis_failure_falls_back_once(store: InMemoryLearningStore, analyzer) -> None:
    engine = ResponseEngine(store, analyzer=analyzer)
    envelope = engine.respond("Python")
    assert not envelope.success
    assert envelope.error in {"tokenizer crashed", "upstream refused"}
    assert _rewards(engine) == 0.0


def test_fallback_reuses_strong_relation_pairs(python_store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(python_store, analyzer=BrokenAnalyzer())
    envelope = engine.respond("Pythonのライブラリ", "u1")
    assert envelope.response == "Pythonとライブラリの関係性について、さらに詳しくお話しできます。"


def test_fallback_holding_phrase_is_deterministic(store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(store, analyzer=BrokenAnalyzer())
    first = engine.respond("Rustについて")
    second = engine.respond("Rustについて")
    assert first.response == second.response
    assert first.response in GENERIC_FALLBACKS


def test_unreadable_store_still_answers() -> None:
    engine = ResponseEngine(FailingStore(LearningStoreFailure("disk offline")))
    envelope = engine.respond("Python")
    assert envelope.success
    assert envelope.response == minimal_template("Python")


def test_fallback_failure_returns_system_error() -> None:
    engine = ResponseEngine(FailingStore(RuntimeError("corrupted state")))
    envelope = engine.respond("Python")
    assert envelope.success
    assert envelope.response == SYSTEM_ERROR_RESPONSE
    assert envelope.strategy == "error_fallback"
    assert envelope.grade == "error"
    assert envelope.confidence == 0.0
    assert envelope.quality_score == 0.1


def test_generation_failure_is_not_rewarded(python_store: InMemoryLearningStore, monkeypatch: pytest.MonkeyPatch) -> None:
    engine = ResponseEngine(python_store)

    async def broken(*args, **kwargs):
        raise GenerationFailure("assembly exploded")

    monkeypatch.setattr(engine.assembler, "generate_candidates", broken)
    envelope = engine.respond("Pythonについて", "u1")
    assert envelope.success
    assert envelope.response == minimal_template("Python")
    assert envelope.error == "generation_failed"
    assert _rewards(engine) == 0.0
    assert python_store.interactions["u1"] == 0


def test_deadline_routes_to_fallback(store: InMemoryLearningStore) -> None:
    config = EngineConfig(runtime=RuntimeConfig(timeout_seconds=0.05))
    engine = ResponseEngine(store, analyzer=SlowAnalyzer(), config=config)
    envelope = engine.respond("Python")
    assert not envelope.success
    assert envelope.error == "timeout"
    assert engine.state.strategy_stats.total_selections() == 0


def test_history_is_bounded(store: InMemoryLearningStore) -> None:
    config = EngineConfig(runtime=RuntimeConfig(history_size=3))
    engine = ResponseEngine(store, config=config)
    for index in range(5):
        engine.respond(f"Python{index}")
    assert len(engine.state.history) == 3
    assert engine.state.history[-1].input == "Python4"


def test_concurrent_requests_share_strategy_statistics(python_store: InMemoryLearningStore) -> None:
    engine = ResponseEngine(python_store)

    async def burst() -> list:
        envelopes = await asyncio.gather(*(engine.generate_response("Pythonについて", "u1") for _ in range(8)))
        await engine.drain()
        return envelopes

    envelopes = asyncio.run(burst())
    assert all(envelope.success for envelope in envelopes)
    assert engine.state.strategy_stats.total_selections() == 8
    assert python_store.interactions["u1"] == 8


def test_improve_appends_detail_and_follow_up() -> None:
    improved, applied = improve("Python")
    assert improved == "Python" + DETAIL_CLAUSE + FOLLOW_UP_CLAUSE
    assert applied == ["expanded_detail", "follow_up_question"]

    sentence = "Pythonについて、何かお手伝いできることはありますか？"
    improved, applied = improve(sentence)
    assert improved == sentence + FOLLOW_UP_CLAUSE
    assert applied == ["follow_up_question"]


class SlowStatsStore(InMemoryLearningStore):
    """Reading persisted strategy statistics takes a while."""

    def __init__(self) -> None:
        super().__init__()
        self.stats_loads = 0

    async def load_system_data(self, key: str):
        payload = await super().load_system_data(key)
        if key == "strategy_stats":
            self.stats_loads += 1
            await asyncio.sleep(0.05)
        return payload


def test_concurrent_first_requests_restore_stats_once() -> None:
    store = SlowStatsStore()
    store.system_data["strategy_stats"] = {
        "quality_focused": {"selections": 5, "total_reward": 2.5, "average_reward": 0.5}
    }
    engine = ResponseEngine(store)

    async def burst() -> None:
        await asyncio.gather(engine.generate_response("Python", "u1"), engine.generate_response("Rust", "u2"))
        await engine.drain()

    asyncio.run(burst())
    assert store.stats_loads == 1
    assert engine.state.strategy_stats.total_selections() == 5 + 2
