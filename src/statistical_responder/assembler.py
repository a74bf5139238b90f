# --- TRADEMARK NOTICE ---
# Lightcap (EUIPO. Reg. 019172085) — Contact: alpay@lightcap.ai
# Do not remove this notice from source distributions.

"""Candidate sentence assembly from structural skeletons and n-gram statistics."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from .analysis import RelatedTerm, UtteranceAnalysis
from .config import AssemblerConfig
from .errors import GenerationFailure, LearningStoreFailure
from .grammar import ContextTerm, GrammarInducer, Skeleton
from .logging import get_logger
from .quality import MINIMAL_THRESHOLDS, AdaptiveThresholds, QualityEvaluator
from .store import LearningStore, NgramCount
from .strategy import Strategy
from .utils.text import is_noise_token, keyword_quality, levenshtein_similarity

LOGGER = get_logger(__name__)

SimilarityHook = Callable[[Sequence[str], str], Optional[float]]

ANCHOR_STRENGTH = 1.0
GENERIC_HOLDING_PHRASE = "何かお手伝いできることはありますか？"

STRUCTURAL_CLAUSES = {
    "subject_predicate": "{primary}は{support}です。",
    "topic_focus": "{primary}について、{support}も関係します。",
    "topic_comment": "{primary}と{support}は関連しています。",
    "topic_formal": "{primary}に関して、{support}も重要です。",
    "object_focus": "{support}を中心に考えてみましょう。",
}


@dataclass
class CandidateResponse:
    text: str
    confidence: float
    structure: str
    primary_term: Optional[str] = None
    support_terms: Tuple[str, ...] = ()
    quality_score: float = 0.0
    diversity_score: float = 0.0
    coherence_score: float = 0.0
    total_score: float = 0.0
    degraded: bool = False


def minimal_template(primary: Optional[str]) -> str:
    if not primary:
        return GENERIC_HOLDING_PHRASE
    return f"{primary}について、{GENERIC_HOLDING_PHRASE}"


def _quote(terms: Sequence[str]) -> str:
    return "「" + "」「".join(terms) + "」"


class KneserNeySmoother:
    """Interpolated Kneser-Ney estimate over bigram ``(context, word, count)`` triples."""

    def __init__(self, discount: float = 0.75, total_word_types: int = 1000) -> None:
        self.discount = discount
        self.total_word_types = total_word_types

    def probability(
        self,
        count: int,
        context_count: int,
        unique_continuations: int,
        word_type_count: int,
        total_word_types: Optional[int] = None,
    ) -> float:
        total_types = total_word_types or self.total_word_types
        if context_count <= 0:
            return word_type_count / total_types
        discounted = max(count - self.discount, 0.0) / context_count
        interpolation = self.discount * unique_continuations / context_count
        return discounted + interpolation * (word_type_count / total_types)

    def rank(self, triples: Sequence[NgramCount]) -> List[Tuple[str, float]]:
        """Return words ordered by their best smoothed probability."""
        if not triples:
            return []
        context_counts: Dict[str, int] = defaultdict(int)
        continuations: Dict[str, set[str]] = defaultdict(set)
        predecessors: Dict[str, set[str]] = defaultdict(set)
        for triple in triples:
            context_counts[triple.context] += triple.count
            continuations[triple.context].add(triple.word)
            predecessors[triple.word].add(triple.context)
        bigram_types = len({(triple.context, triple.word) for triple in triples})
        total_types = max(bigram_types, 1)

        best: Dict[str, float] = {}
        for triple in triples:
            probability = self.probability(
                triple.count,
                context_counts[triple.context],
                len(continuations[triple.context]),
                len(predecessors[triple.word]),
                total_types,
            )
            if probability > best.get(triple.word, float("-inf")):
                best[triple.word] = probability
        return sorted(best.items(), key=lambda item: item[1], reverse=True)


class SentenceAssembler:
    """Produces, scores and selects candidate responses for one strategy."""

    def __init__(
        self,
        store: LearningStore,
        grammar: GrammarInducer,
        evaluator: QualityEvaluator,
        config: Optional[AssemblerConfig] = None,
        similarity_hook: Optional[SimilarityHook] = None,
    ) -> None:
        self.store = store
        self.grammar = grammar
        self.evaluator = evaluator
        self.config = config or AssemblerConfig()
        self.similarity_hook = similarity_hook
        self.smoother = KneserNeySmoother(self.config.kneser_ney_discount, self.config.total_word_types)

    # ------------------------------------------------------------------
    # Semantic context
    # ------------------------------------------------------------------
    def build_semantic_context(
        self,
        keywords: Sequence[str],
        related_terms: Iterable[RelatedTerm],
    ) -> List[ContextTerm]:
        """Merge related terms, score them against ``keywords`` and keep the best.

        Once there are learned relations, input keywords anchor the context at
        full strength. Repeated terms average their strength and sum their
        counts. With no relations the context is empty.
        """
        related_terms = list(related_terms)
        merged: Dict[str, List[float]] = {}
        if related_terms:
            for keyword in keywords:
                merged.setdefault(keyword, [ANCHOR_STRENGTH, 1, 1])
        for related in related_terms:
            entry = merged.get(related.term)
            if entry is None:
                merged[related.term] = [related.strength, related.count, 1]
                continue
            strength, count, seen = entry
            entry[0] = (strength * seen + related.strength) / (seen + 1)
            entry[1] = count + related.count
            entry[2] = seen + 1

        context = []
        for term, (strength, count, _) in merged.items():
            relevance = self._relevance(term, keywords)
            context.append(
                ContextTerm(
                    term=term,
                    strength=strength,
                    count=int(count),
                    relevance=relevance,
                    score=0.7 * strength + 0.3 * relevance,
                )
            )
        context.sort(key=lambda item: item.score, reverse=True)
        context = context[: self.config.context_limit]
        if self.similarity_hook is not None:
            context = self._rerank(keywords, context)
        return context

    @staticmethod
    def _relevance(term: str, keywords: Sequence[str]) -> float:
        best = 0.0
        for keyword in keywords:
            containment = 1.0 if term in keyword or keyword in term else 0.0
            best = max(best, 0.5 * containment + 0.5 * levenshtein_similarity(term, keyword))
        return best

    def _rerank(self, keywords: Sequence[str], context: List[ContextTerm]) -> List[ContextTerm]:
        blend = self.config.semantic_blend
        reranked = []
        for item in context:
            semantic = self.similarity_hook(keywords, item.term) if self.similarity_hook else None
            if semantic is None:
                reranked.append(item)
                continue
            reranked.append(replace(item, score=blend * item.score + (1 - blend) * semantic))
        reranked.sort(key=lambda item: item.score, reverse=True)
        return reranked

    # ------------------------------------------------------------------
    # Keywords
    # ------------------------------------------------------------------
    @staticmethod
    def extract_keywords(analysis: UtteranceAnalysis) -> List[str]:
        keywords = analysis.keywords
        if not keywords and analysis.enhanced_terms:
            keywords = list(analysis.enhanced_terms)
        return list(dict.fromkeys(keywords))

    async def filter_by_quality(self, keywords: Sequence[str], user_id: str) -> List[str]:
        """Keep keywords whose quality reaches the user's vocabulary median."""
        median = await self.evaluator.vocabulary_quality_median(user_id)
        if median is None:
            return list(keywords)
        qualified = [keyword for keyword in keywords if keyword_quality(keyword) >= median]
        if not qualified and keywords:
            qualified = [keywords[0]]
        return qualified

    async def related_terms_for(
        self,
        keywords: Sequence[str],
        analysis: UtteranceAnalysis,
        user_id: str,
    ) -> List[RelatedTerm]:
        related: List[RelatedTerm] = []
        missing = []
        for keyword in keywords:
            terms = analysis.related_terms.get(keyword)
            if terms:
                related.extend(terms)
            else:
                missing.append(keyword)
        if not missing:
            return related
        try:
            graph = await self.store.get_user_relations(user_id)
        except LearningStoreFailure as exc:
            LOGGER.warning("Related terms unavailable for %s: %s", user_id, exc)
            return related
        for keyword in missing:
            related.extend(
                RelatedTerm(term=record.term, strength=record.strength, count=record.count)
                for record in graph.get(keyword, ())
            )
        return related

    # ------------------------------------------------------------------
    # Phrasing
    # ------------------------------------------------------------------
    @staticmethod
    def generate_response_tokens(
        skeleton: Skeleton,
        context: Sequence[ContextTerm],
        enhanced_terms: Sequence[str] = (),
    ) -> Tuple[Optional[str], Tuple[str, ...]]:
        enhanced = [term for term in enhanced_terms if not is_noise_token(term)]
        if enhanced:
            primary, support = enhanced[0], tuple(enhanced[1:3])
        elif skeleton.primary_term:
            primary, support = skeleton.primary_term, tuple(skeleton.support_terms[:2])
        elif context:
            primary, support = context[0].term, tuple(item.term for item in context[1:3])
        else:
            return None, ()
        if is_noise_token(primary):
            primary = None
        return primary, tuple(term for term in support if not is_noise_token(term) and term != primary)

    @staticmethod
    def phrase(primary: str, support: Sequence[str], confidence: float, thresholds: AdaptiveThresholds) -> str:
        if not support:
            if confidence > thresholds.medium_confidence:
                return f"{primary}について、詳しく説明できます。"
            return minimal_template(primary)
        if confidence > thresholds.high_confidence:
            return (
                f"{primary}について、統計的に{_quote(support)}といった概念が強く関連しています。"
                "これらの関係性について詳しく説明できます。"
            )
        if confidence > thresholds.medium_confidence:
            return f"{_quote(support)}に関連があります。{primary}との関連性について掘り下げてみましょう。"
        return f"{_quote(support[:1])}について、{primary}との関連性が見られます。"

    @staticmethod
    def structural_clause(structure: str, primary: str, support: Sequence[str]) -> str:
        template = STRUCTURAL_CLAUSES.get(structure)
        if template is None or not support:
            return ""
        return template.format(primary=primary, support=support[0])

    def compose(self, primary: str, support: Sequence[str], structure: str, confidence: float, thresholds: AdaptiveThresholds) -> str:
        return self.phrase(primary, support, confidence, thresholds) + self.structural_clause(structure, primary, support)

    # ------------------------------------------------------------------
    # Candidate generation
    # ------------------------------------------------------------------
    async def generate_candidates(
        self,
        analysis: UtteranceAnalysis,
        strategy: Strategy,
        user_id: str = "default",
        thresholds: AdaptiveThresholds = MINIMAL_THRESHOLDS,
    ) -> List[CandidateResponse]:
        generators = {
            Strategy.NGRAM_CONTINUATION: self._ngram_candidates,
            Strategy.COOCCURRENCE_EXPANSION: self._cooccurrence_candidates,
            Strategy.PERSONAL_ADAPTATION: self._personal_candidates,
            Strategy.VOCABULARY_OPTIMIZATION: self._vocabulary_candidates,
            Strategy.QUALITY_FOCUSED: self._quality_candidates,
        }
        generator = generators.get(strategy)
        if generator is None:
            raise GenerationFailure(f"Unknown strategy {strategy!r}")
        return await generator(analysis, user_id, thresholds)

    async def _ngram_candidates(
        self, analysis: UtteranceAnalysis, user_id: str, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        predicted = analysis.predicted_context
        next_word = predicted.predicted_next_word
        keywords = self.extract_keywords(analysis)
        if next_word and predicted.confidence > thresholds.low_confidence:
            ranked = await self.kneser_ney_tokens(analysis.original_text, next_word, user_id)
            if ranked:
                return self._kneser_ney_candidates(ranked, predicted.confidence, thresholds)
            return [
                CandidateResponse(
                    text=f"{next_word}について、さらに情報が必要ですか？",
                    confidence=predicted.confidence,
                    structure="ngram_minimal",
                    primary_term=next_word,
                )
            ]
        primary = next_word or (keywords[0] if keywords else None)
        text = f"{primary}について、さらに情報が必要ですか？" if primary else GENERIC_HOLDING_PHRASE
        return [CandidateResponse(text=text, confidence=predicted.confidence, structure="low_confidence", primary_term=primary)]

    async def kneser_ney_tokens(self, text: str, next_word: str, user_id: str) -> List[Tuple[str, float]]:
        try:
            triples = await self.store.get_ngram_counts(text, next_word)
            if not triples:
                graph = await self.store.get_user_relations(user_id)
                triples = [
                    NgramCount(context=next_word, word=record.term, count=record.count)
                    for record in graph.get(next_word, ())
                ]
        except LearningStoreFailure as exc:
            LOGGER.warning("No n-gram counts for %r: %s", next_word, exc)
            return []
        return [(word, probability) for word, probability in self.smoother.rank(triples) if not is_noise_token(word)]

    def _kneser_ney_candidates(
        self, ranked: Sequence[Tuple[str, float]], confidence: float, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        candidates = []
        words = [word for word, _ in ranked]
        top_probability = ranked[0][1] or 1.0
        for index, (primary, probability) in enumerate(ranked[:2]):
            support = tuple(word for word in words[:3] if word != primary)[:2]
            scaled = confidence * (probability / top_probability)
            candidates.append(
                CandidateResponse(
                    text=self.phrase(primary, support, scaled, thresholds),
                    confidence=scaled,
                    structure="kneser_ney" if index == 0 else "kneser_ney_alternative",
                    primary_term=primary,
                    support_terms=support,
                )
            )
        return candidates

    async def _structural_candidates(
        self,
        analysis: UtteranceAnalysis,
        keywords: Sequence[str],
        context: Sequence[ContextTerm],
        user_id: str,
        thresholds: AdaptiveThresholds,
        confidence_scale: float = 1.0,
    ) -> List[CandidateResponse]:
        skeleton = await self.grammar.generate(keywords, context, user_id, thresholds)
        primary, support = self.generate_response_tokens(skeleton, context, analysis.enhanced_terms)
        if primary is None:
            return []
        confidence = skeleton.confidence * confidence_scale
        candidates = [
            CandidateResponse(
                text=self.compose(primary, support, skeleton.structure, confidence, thresholds),
                confidence=confidence,
                structure=skeleton.structure,
                primary_term=primary,
                support_terms=support,
            )
        ]
        realised = replace(skeleton, primary_term=primary).realise()
        if realised:
            candidates.append(
                CandidateResponse(
                    text=realised + self.structural_clause(skeleton.structure, primary, support),
                    confidence=confidence,
                    structure=skeleton.structure,
                    primary_term=primary,
                    support_terms=support,
                )
            )
        return candidates

    async def _cooccurrence_candidates(
        self, analysis: UtteranceAnalysis, user_id: str, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        keywords = await self.filter_by_quality(self.extract_keywords(analysis), user_id)
        related = await self.related_terms_for(keywords, analysis, user_id)
        context = self.build_semantic_context(keywords, related)
        return await self._structural_candidates(analysis, keywords, context, user_id, thresholds)

    async def _personal_candidates(
        self, analysis: UtteranceAnalysis, user_id: str, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        adapted = analysis.adapted_content
        keywords = self.extract_keywords(analysis)
        related = await self.related_terms_for(keywords, analysis, user_id)
        # favour terms this user has paired most often
        context = [
            replace(item, strength=0.5 * item.strength + 0.5 * min(item.count / 5, 1.0))
            for item in self.build_semantic_context(keywords, related)
        ]
        scale = 0.5 + 0.5 * adapted.adaptation_score
        candidates = await self._structural_candidates(analysis, keywords, context, user_id, thresholds, scale)
        if candidates:
            return candidates
        category = adapted.user_category or "一般"
        return [
            CandidateResponse(
                text=f"{category}の観点から、{GENERIC_HOLDING_PHRASE}",
                confidence=adapted.adaptation_score,
                structure="bayesian_minimal",
            )
        ]

    async def _vocabulary_candidates(
        self, analysis: UtteranceAnalysis, user_id: str, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        vocabulary = analysis.optimized_vocabulary
        preferred = [vocabulary] if isinstance(vocabulary, str) else list(vocabulary)
        keywords = list(dict.fromkeys([*preferred, *self.extract_keywords(analysis)]))
        related = await self.related_terms_for(keywords, analysis, user_id)
        context = self.build_semantic_context(keywords, related)
        candidates = await self._structural_candidates(analysis, keywords, context, user_id, thresholds)
        if candidates or not preferred:
            return candidates
        return [
            CandidateResponse(
                text=minimal_template(preferred[0]),
                confidence=thresholds.low_confidence,
                structure="bandit_minimal",
                primary_term=preferred[0],
            )
        ]

    async def _quality_candidates(
        self, analysis: UtteranceAnalysis, user_id: str, thresholds: AdaptiveThresholds
    ) -> List[CandidateResponse]:
        prediction = analysis.quality_prediction
        keywords = self.extract_keywords(analysis)
        related = await self.related_terms_for(keywords, analysis, user_id)
        context = self.build_semantic_context(keywords, related)
        skeleton = await self.grammar.generate(keywords, context, user_id, thresholds)
        primary, support = self.generate_response_tokens(skeleton, context, analysis.enhanced_terms)
        if primary is None:
            return []
        confidence = 0.5 * skeleton.confidence + 0.5 * prediction.confidence
        if prediction.quality_score > thresholds.high_confidence:
            text = f"{primary}について、非常に質の高い情報を提供できます。さらに詳細が必要ですか？"
        elif prediction.quality_score > thresholds.medium_confidence:
            text = f"{primary}について、関連情報を提供できます。何か特定の情報をお探しですか？"
        else:
            text = f"{primary}について、もう少し情報が必要です。どのような点に関心がありますか？"
        text += self.structural_clause(skeleton.structure, primary, support)
        return [
            CandidateResponse(
                text=text,
                confidence=confidence,
                structure=skeleton.structure,
                primary_term=primary,
                support_terms=support,
            )
        ]

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------
    def score_candidate(self, candidate: CandidateResponse) -> CandidateResponse:
        quality = self.evaluator.score(candidate.text, candidate.confidence)
        metrics = self.evaluator.metrics(candidate.text, candidate.structure)
        candidate.quality_score = quality
        candidate.diversity_score = metrics.diversity_score
        candidate.coherence_score = metrics.coherence_score
        candidate.total_score = (
            self.config.quality_weight * quality
            + self.config.diversity_weight * metrics.diversity_score
            + self.config.coherence_weight * metrics.coherence_score
        )
        return candidate

    def select_best(
        self,
        candidates: Sequence[CandidateResponse],
        thresholds: AdaptiveThresholds,
        fallback_primary: Optional[str] = None,
    ) -> CandidateResponse:
        if not candidates:
            return self.minimal_candidate(fallback_primary)
        scored = [self.score_candidate(candidate) for candidate in candidates]
        best = max(scored, key=lambda candidate: candidate.total_score)
        if best.quality_score < thresholds.low_confidence:
            LOGGER.debug("Candidate quality %.3f below %.3f, using minimal template", best.quality_score, thresholds.low_confidence)
            best.text = minimal_template(best.primary_term or fallback_primary)
            best.structure = "minimal"
        return best

    def minimal_candidate(self, primary: Optional[str], *, degraded: bool = False) -> CandidateResponse:
        candidate = CandidateResponse(
            text=minimal_template(primary),
            confidence=0.0,
            structure="minimal",
            primary_term=primary,
            degraded=degraded,
        )
        return self.score_candidate(candidate)

    async def assemble(
        self,
        analysis: UtteranceAnalysis,
        strategy: Strategy,
        user_id: str = "default",
        thresholds: AdaptiveThresholds = MINIMAL_THRESHOLDS,
    ) -> CandidateResponse:
        """Generate, score and select; failures yield a degraded minimal template."""
        keywords = self.extract_keywords(analysis)
        fallback_primary = keywords[0] if keywords else None
        try:
            candidates = await self.generate_candidates(analysis, strategy, user_id, thresholds)
            return self.select_best(candidates, thresholds, fallback_primary)
        except Exception:  # noqa: BLE001 - assembly never propagates
            LOGGER.warning("Assembly failed for %s with %s", user_id, strategy, exc_info=True)
            return self.minimal_candidate(fallback_primary, degraded=True)
