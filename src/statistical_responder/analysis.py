"""Typed utterance analysis records and the reference analyzer."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

from .errors import LearningStoreFailure
from .logging import get_logger
from .store import LearningStore, QualityStats, UserStats
from .utils.text import EXCLUDED_POS, tokenize_with_pos

LOGGER = get_logger(__name__)


@dataclass(frozen=True)
class Token:
    surface: str
    pos: str = "名詞"


@dataclass(frozen=True)
class PredictedContext:
    predicted_next_word: Optional[str] = None
    confidence: float = 0.0
    predicted_category: Optional[str] = None


@dataclass(frozen=True)
class AdaptedContent:
    adaptation_score: float = 0.0
    user_category: Optional[str] = None


@dataclass(frozen=True)
class RelatedTerm:
    term: str
    strength: float = 0.5
    count: int = 1


@dataclass(frozen=True)
class QualityPrediction:
    quality_score: float = 0.0
    confidence: float = 0.0
    improvements: Tuple[str, ...] = ()


Vocabulary = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class UtteranceAnalysis:
    """Everything the analysis collaborator knows about one utterance.

    Optional data always has a typed default, so "insufficient data" shows up
    as zeros and empty collections rather than missing attributes.
    """

    original_text: str
    tokens: Tuple[Token, ...] = ()
    optimized_vocabulary: Vocabulary = ()
    predicted_context: PredictedContext = field(default_factory=PredictedContext)
    adapted_content: AdaptedContent = field(default_factory=AdaptedContent)
    related_terms: Mapping[str, Tuple[RelatedTerm, ...]] = field(default_factory=dict)
    quality_prediction: QualityPrediction = field(default_factory=QualityPrediction)
    enhanced_terms: Tuple[str, ...] = ()
    success: bool = True
    error: Optional[str] = None

    @property
    def keywords(self) -> list[str]:
        """Surfaces of informative tokens, in input order."""
        return [token.surface for token in self.tokens if token.pos not in EXCLUDED_POS]

    @property
    def has_vocabulary(self) -> bool:
        return bool(self.optimized_vocabulary)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> UtteranceAnalysis:
        """Build an analysis from the camelCase wire shape."""

        predicted = data.get("predictedContext") or {}
        adapted = data.get("adaptedContent") or {}
        quality = data.get("qualityPrediction") or {}
        cooccurrence = data.get("cooccurrenceAnalysis") or {}
        related: Dict[str, Tuple[RelatedTerm, ...]] = {}
        for keyword, entries in (cooccurrence.get("relatedTerms") or {}).items():
            related[keyword] = tuple(
                RelatedTerm(
                    term=str(entry.get("term", "")),
                    strength=float(entry.get("strength", 0.5)),
                    count=int(entry.get("count", 1)),
                )
                for entry in entries
            )
        vocabulary = data.get("optimizedVocabulary") or ()
        if not isinstance(vocabulary, str):
            vocabulary = tuple(str(item) for item in vocabulary)
        return cls(
            original_text=str(data.get("originalText", "")),
            tokens=tuple(
                Token(surface=str(token.get("surface", "")), pos=str(token.get("pos", "名詞")))
                for token in data.get("processedTokens") or ()
            ),
            optimized_vocabulary=vocabulary,
            predicted_context=PredictedContext(
                predicted_next_word=predicted.get("predictedNextWord"),
                confidence=float(predicted.get("confidence", 0.0)),
                predicted_category=predicted.get("predictedCategory"),
            ),
            adapted_content=AdaptedContent(
                adaptation_score=float(adapted.get("adaptationScore", 0.0)),
                user_category=adapted.get("userCategory"),
            ),
            related_terms=related,
            quality_prediction=QualityPrediction(
                quality_score=float(quality.get("qualityScore", 0.0)),
                confidence=float(quality.get("confidence", 0.0)),
                improvements=tuple(quality.get("improvements") or ()),
            ),
            enhanced_terms=tuple(
                str(entry.get("term", entry)) if isinstance(entry, Mapping) else str(entry)
                for entry in data.get("enhancedTerms") or ()
            ),
            success=bool(data.get("success", True)),
            error=data.get("error"),
        )


def default_analysis(text: str = "", *, success: bool = True, error: Optional[str] = None) -> UtteranceAnalysis:
    """The single construction path for an analysis with no learned data."""
    tokens = tuple(Token(surface, pos) for surface, pos in tokenize_with_pos(text))
    return UtteranceAnalysis(original_text=text, tokens=tokens, success=success, error=error)


def _user_category(stats: UserStats) -> str:
    if stats.total_interactions < 5:
        return "new"
    if stats.total_interactions < 50:
        return "regular"
    return "experienced"


class StatisticalAnalyzer:
    """Reference analysis collaborator backed by a :class:`LearningStore`.

    Tokenises by script runs, predicts the next word from stored n-gram
    continuations and reads the user's co-occurrence graph. Store failures
    degrade to cold-start values instead of failing the analysis.
    """

    def __init__(self, store: LearningStore) -> None:
        self.store = store

    async def analyze(self, text: str, user_id: str = "default") -> UtteranceAnalysis:
        base = default_analysis(text)
        keywords = base.keywords
        try:
            relations = await self.store.get_user_relations(user_id)
            user_stats = await self.store.get_user_stats(user_id)
            quality_stats = await self.store.get_quality_stats()
            predicted = await self._predict(keywords)
        except LearningStoreFailure as exc:
            LOGGER.warning("Analysis for %s fell back to cold start: %s", user_id, exc)
            return base

        related = {
            keyword: tuple(
                RelatedTerm(term=record.term, strength=record.strength, count=record.count)
                for record in relations[keyword]
            )
            for keyword in keywords
            if relations.get(keyword)
        }
        vocabulary = tuple(dict.fromkeys(keyword for keyword in keywords if keyword in relations))
        adaptation = min(user_stats.total_interactions / 20, 1.0) * 0.5 + user_stats.profile_completeness * 0.5
        return UtteranceAnalysis(
            original_text=text,
            tokens=base.tokens,
            optimized_vocabulary=vocabulary,
            predicted_context=predicted,
            adapted_content=AdaptedContent(adaptation_score=adaptation, user_category=_user_category(user_stats)),
            related_terms=related,
            quality_prediction=self._quality(quality_stats, keywords),
        )

    async def _predict(self, keywords: Sequence[str]) -> PredictedContext:
        for keyword in reversed(keywords):
            patterns = await self.store.get_ngram_patterns(keyword)
            if patterns:
                best = max(patterns, key=lambda pattern: pattern.count)
                return PredictedContext(
                    predicted_next_word=best.next_word,
                    confidence=best.confidence,
                    predicted_category="continuation",
                )
        return PredictedContext(predicted_category="new_topic" if keywords else None)

    @staticmethod
    def _quality(stats: QualityStats, keywords: Sequence[str]) -> QualityPrediction:
        improvements = () if keywords else ("more_context",)
        return QualityPrediction(
            quality_score=stats.average,
            confidence=stats.average_accuracy if stats.count else 0.0,
            improvements=improvements,
        )
