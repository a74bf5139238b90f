from __future__ import annotations

import asyncio

import pytest

from statistical_responder.analysis import StatisticalAnalyzer, UtteranceAnalysis, default_analysis
from statistical_responder.errors import LearningStoreFailure
from statistical_responder.store import InMemoryLearningStore


def test_default_analysis_has_typed_empty_values() -> None:
    analysis = default_analysis("Pythonについて")
    assert analysis.keywords == ["Python"]
    assert analysis.predicted_context.confidence == 0.0
    assert analysis.related_terms == {}
    assert not analysis.has_vocabulary
    assert analysis.success


def test_analyzer_reads_learned_relations(python_store: InMemoryLearningStore) -> None:
    analysis = asyncio.run(StatisticalAnalyzer(python_store).analyze("Pythonについて", "u1"))
    assert analysis.optimized_vocabulary == ("Python",)
    assert [term.term for term in analysis.related_terms["Python"]] == ["ライブラリ", "データ分析"]
    assert analysis.adapted_content.user_category == "new"
    assert analysis.predicted_context.predicted_category == "new_topic"


def test_analyzer_predicts_from_bigrams(store: InMemoryLearningStore) -> None:
    store.add_bigram("Python", "ライブラリ", 3)
    store.add_bigram("Python", "入門", 1)
    analysis = asyncio.run(StatisticalAnalyzer(store).analyze("Python"))
    assert analysis.predicted_context.predicted_next_word == "ライブラリ"
    assert analysis.predicted_context.confidence == pytest.approx(0.75)


def test_analyzer_survives_store_failure() -> None:
    class BrokenStore(InMemoryLearningStore):
        async def get_user_relations(self, user_id: str):
            raise LearningStoreFailure("offline")

    analysis = asyncio.run(StatisticalAnalyzer(BrokenStore()).analyze("Python"))
    assert analysis.success
    assert analysis.keywords == ["Python"]
    assert analysis.related_terms == {}


def test_from_dict_reads_wire_shape() -> None:
    analysis = UtteranceAnalysis.from_dict(
        {
            "originalText": "Pythonについて",
            "processedTokens": [{"surface": "Python", "pos": "名詞"}, {"surface": "について", "pos": "助詞"}],
            "optimizedVocabulary": "Python",
            "predictedContext": {"predictedNextWord": "ライブラリ", "confidence": 0.8},
            "cooccurrenceAnalysis": {"relatedTerms": {"Python": [{"term": "ライブラリ", "strength": 0.9, "count": 6}]}},
            "qualityPrediction": {"qualityScore": 0.7, "confidence": 0.6, "improvements": ["more_context"]},
            "enhancedTerms": [{"term": "Python"}, "ライブラリ"],
        }
    )
    assert analysis.keywords == ["Python"]
    assert analysis.optimized_vocabulary == "Python"
    assert analysis.related_terms["Python"][0].count == 6
    assert analysis.quality_prediction.improvements == ("more_context",)
    assert analysis.enhanced_terms == ("Python", "ライブラリ")


def test_from_dict_defaults_missing_sections() -> None:
    analysis = UtteranceAnalysis.from_dict({"originalText": "hi"})
    assert analysis.tokens == ()
    assert analysis.adapted_content.adaptation_score == 0.0
    assert analysis.quality_prediction.quality_score == 0.0
