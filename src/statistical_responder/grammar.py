# --- TRADEMARK NOTICE ---
# Lightcap (EUIPO. Reg. 019172085) — Contact: alpay@lightcap.ai
# Do not remove this notice from source distributions.

"""Probabilistic grammar induced from a user's co-occurrence statistics.

Every request rebuilds a small PCFG-style rule set from the relation graph:
sentence rules come from structural patterns, noun and verb phrase rules from
lexical usage counts. The inducer then scores sentence rules against the
current context with a hashed term embedding and turns the winner into a
structural skeleton for the assembler.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from .config import GrammarConfig
from .errors import LearningStoreFailure
from .logging import get_logger
from .quality import MINIMAL_THRESHOLDS, AdaptiveThresholds
from .store import LearningStore, RelationGraph
from .utils.random import deterministic_hash
from .utils.text import tag_token

LOGGER = get_logger(__name__)

HIGH_RELATION_PATTERN = "NP について VP"
MEDIUM_RELATION_PATTERN = "NP は VP"
LOW_RELATION_PATTERN = "NP が VP"

# Checked in order; the first marker present decides the type.
PATTERN_TYPES = (
    ("について", "topic_focus"),
    ("は", "topic_comment"),
    ("が", "subject_predicate"),
    ("に関して", "topic_formal"),
    ("を", "object_focus"),
)

ABSTRACT_MARKERS = ("的", "性", "論")
VERB_CONTEXTS = (
    (("説明", "解説"), "説明"),
    (("分析", "検討"), "分析"),
    (("関連", "関係"), "関連"),
)

MINIMAL_NOUN_RULES = (("テーマ", 1.0), ("情報", 0.8))
MINIMAL_VERB_RULES = (("説明できます", 1.0), ("分析します", 0.8))


@dataclass(frozen=True)
class ContextTerm:
    """A term in the current semantic context with its statistics."""

    term: str
    strength: float = 0.5
    count: int = 1
    relevance: float = 0.0
    score: float = 0.0


@dataclass(frozen=True)
class StructuralPattern:
    keyword: str
    related: str
    pattern: str
    type: str
    strength: float
    probability: float


@dataclass(frozen=True)
class LexicalPattern:
    keyword: str
    term: str
    frequency: int
    relative_frequency: float
    usage_priority: str


@dataclass(frozen=True)
class ContextualPattern:
    keyword: str
    context: str
    style: str
    formality: float


@dataclass
class PatternSet:
    structural: List[StructuralPattern] = field(default_factory=list)
    lexical: List[LexicalPattern] = field(default_factory=list)
    contextual: List[ContextualPattern] = field(default_factory=list)

    @property
    def formality(self) -> float:
        if not self.contextual:
            return 0.5
        return float(np.mean([pattern.formality for pattern in self.contextual]))


@dataclass(frozen=True)
class GrammarRule:
    symbol: str
    pattern: str
    probability: float
    type: str
    learned: bool = True
    confidence: float = 1.0
    terms: Tuple[Tuple[str, float], ...] = ()


@dataclass
class GrammarRuleSet:
    sentence: List[GrammarRule] = field(default_factory=list)
    noun_phrase: List[GrammarRule] = field(default_factory=list)
    verb_phrase: List[GrammarRule] = field(default_factory=list)
    formality: float = 0.5

    def best(self, symbol: str) -> Optional[GrammarRule]:
        family = {"S": self.sentence, "NP": self.noun_phrase, "VP": self.verb_phrase}[symbol]
        return max(family, key=lambda rule: rule.probability, default=None)


@dataclass(frozen=True)
class Skeleton:
    """Structural skeleton handed to the sentence assembler."""

    structure: str
    primary_term: Optional[str]
    support_terms: Tuple[str, ...] = ()
    confidence: float = 0.0
    pattern: Optional[str] = None
    verb_phrase: Optional[str] = None
    formality: float = 0.5

    @property
    def is_valid(self) -> bool:
        return self.primary_term is not None and self.confidence > 0

    def realise(self) -> Optional[str]:
        """Fill the NP/VP placeholders of the pattern, if there is one."""
        if self.pattern is None or self.primary_term is None or "NP" not in self.pattern:
            return None
        verb = self.verb_phrase or MINIMAL_VERB_RULES[0][0]
        text = self.pattern.replace("NP", self.primary_term).replace("VP", verb).replace(" ", "")
        return text if text.endswith("。") else f"{text}。"


def infer_pattern_type(pattern: str) -> str:
    for marker, pattern_type in PATTERN_TYPES:
        if marker in pattern:
            return pattern_type
    return "general"


def is_verb(term: str) -> bool:
    return tag_token(term) == "動詞"


def confidence_band(usage_count: int) -> float:
    if usage_count >= 5:
        return 0.8
    if usage_count >= 3:
        return 0.6
    if usage_count >= 2:
        return 0.4
    return 0.2


def structural_pattern(keyword: str, related: str, count: int) -> StructuralPattern:
    """Bucket one relation into a sentence pattern by its co-occurrence count."""
    if count > 3:
        return StructuralPattern(keyword, related, HIGH_RELATION_PATTERN, "high_relation", count, min(count / 10, 0.8))
    if count > 1:
        return StructuralPattern(keyword, related, MEDIUM_RELATION_PATTERN, "medium_relation", count, min(count / 5, 0.6))
    return StructuralPattern(keyword, related, LOW_RELATION_PATTERN, "low_relation", count, 0.3)


def pattern_distribution(patterns: Iterable[StructuralPattern]) -> Dict[str, float]:
    """Aggregate pattern strengths and normalise them to sum to one."""
    totals: Dict[str, float] = defaultdict(float)
    for pattern in patterns:
        totals[pattern.pattern] += pattern.strength
    if not totals:
        return {}
    grand_total = sum(totals.values())
    if grand_total <= 0:
        return {pattern: 1 / len(totals) for pattern in totals}
    return {pattern: value / grand_total for pattern, value in totals.items()}


def term_embedding(terms: Iterable[Tuple[str, float]], buckets: int = 10) -> NDArray[np.float64]:
    """Hash each term into ``buckets`` slots weighted by strength, L2-normalised."""
    vector = np.zeros(buckets, dtype=np.float64)
    for term, strength in terms:
        vector[deterministic_hash(term) % buckets] += strength
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


def cosine_similarity(left: NDArray[np.float64], right: NDArray[np.float64]) -> float:
    denominator = float(np.linalg.norm(left) * np.linalg.norm(right))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(left, right) / denominator)


class GrammarInducer:
    """Builds and applies a per-request grammar from learned relations."""

    def __init__(self, store: LearningStore, config: Optional[GrammarConfig] = None) -> None:
        self.store = store
        self.config = config or GrammarConfig()

    # ------------------------------------------------------------------
    # Pattern extraction
    # ------------------------------------------------------------------
    async def extract_patterns(self, user_id: str) -> PatternSet:
        try:
            relations = await self.store.get_user_relations(user_id)
        except LearningStoreFailure as exc:
            LOGGER.warning("No relation graph for %s: %s", user_id, exc)
            relations = {}
        return self.patterns_from_relations(relations)

    def patterns_from_relations(self, relations: RelationGraph) -> PatternSet:
        patterns = PatternSet()
        for keyword, records in relations.items():
            if not records:
                continue
            bucket_total = sum(max(record.count, 1) for record in records)
            vocabulary = [keyword, *(record.term for record in records)]
            abstract = any(marker in item for item in vocabulary for marker in ABSTRACT_MARKERS)
            for record in records:
                count = max(record.count, 1)
                patterns.structural.append(structural_pattern(keyword, record.term, count))
                patterns.lexical.append(
                    LexicalPattern(
                        keyword=keyword,
                        term=record.term,
                        frequency=count,
                        relative_frequency=count / bucket_total,
                        usage_priority="high" if count > 2 else "normal",
                    )
                )
            if abstract:
                patterns.contextual.append(ContextualPattern(keyword, "abstract_context", "theoretical", 0.7))
            else:
                patterns.contextual.append(ContextualPattern(keyword, "concrete_context", "practical", 0.4))
        return patterns

    def normalize_probabilities(self, patterns: Sequence[StructuralPattern]) -> Dict[str, float]:
        """Normalised pattern distribution floored at the configured minimum.

        Flooring happens after normalisation and the result is not
        renormalised, so floored distributions can sum to slightly above one.
        """
        distribution = pattern_distribution(patterns)
        floor = self.config.probability_floor
        return {pattern: max(probability, floor) for pattern, probability in distribution.items()}

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------
    def build_rules(
        self,
        patterns: PatternSet,
        probabilities: Mapping[str, float],
        thresholds: AdaptiveThresholds = MINIMAL_THRESHOLDS,
    ) -> GrammarRuleSet:
        terms_by_pattern: Dict[str, List[Tuple[str, float]]] = defaultdict(list)
        for pattern in patterns.structural:
            terms_by_pattern[pattern.pattern].append((pattern.related, pattern.strength))
            terms_by_pattern[pattern.pattern].append((pattern.keyword, pattern.strength))

        sentence = [
            GrammarRule(
                symbol="S",
                pattern=pattern,
                probability=probability,
                type=infer_pattern_type(pattern),
                terms=tuple(terms_by_pattern.get(pattern, ())),
            )
            for pattern, probability in probabilities.items()
        ]
        if not sentence:
            sentence = [
                GrammarRule(
                    symbol="S",
                    pattern=HIGH_RELATION_PATTERN,
                    probability=1.0,
                    type="learned_fallback",
                    learned=False,
                )
            ]
        noun_phrase = self._noun_rules(patterns.lexical) or self._minimal_rules("NP", MINIMAL_NOUN_RULES)
        verb_phrase = self._verb_rules(patterns.lexical, thresholds) or self._minimal_rules("VP", MINIMAL_VERB_RULES)
        return GrammarRuleSet(
            sentence=sentence,
            noun_phrase=noun_phrase,
            verb_phrase=verb_phrase,
            formality=patterns.formality,
        )

    def _verb_rules(self, lexical: Sequence[LexicalPattern], thresholds: AdaptiveThresholds) -> List[GrammarRule]:
        usage: Dict[str, int] = defaultdict(int)
        for pattern in lexical:
            if pattern.usage_priority != "high":
                continue
            context = self._verb_context(pattern.term)
            if context is None and not is_verb(pattern.term):
                continue
            usage[context or "検討"] += pattern.frequency
        rules = []
        for context, count in usage.items():
            confidence = confidence_band(count)
            rules.append(
                GrammarRule(
                    symbol="VP",
                    pattern=self._verb_phrase(context, confidence, thresholds),
                    probability=confidence,
                    type=self._action_type(confidence),
                    confidence=confidence,
                )
            )
        return self._normalise_family(rules)

    @staticmethod
    def _verb_context(term: str) -> Optional[str]:
        for needles, context in VERB_CONTEXTS:
            if any(needle in term for needle in needles):
                return context
        return None

    @staticmethod
    def _verb_phrase(context: str, confidence: float, thresholds: AdaptiveThresholds) -> str:
        if context == "説明":
            return "詳しく説明できます" if confidence > thresholds.high_confidence else "説明できます"
        if context == "分析":
            return "詳細に分析します" if confidence > thresholds.high_confidence else "分析します"
        if context == "関連":
            return "関連があります"
        return "詳しく検討します" if confidence > thresholds.medium_confidence else "検討します"

    @staticmethod
    def _action_type(confidence: float) -> str:
        if confidence >= 0.8:
            return "high_confidence_action"
        if confidence >= 0.4:
            return "medium_confidence_action"
        return "low_confidence_action"

    def _noun_rules(self, lexical: Sequence[LexicalPattern]) -> List[GrammarRule]:
        usage: Dict[str, int] = defaultdict(int)
        for pattern in lexical:
            if not is_verb(pattern.term):
                usage[pattern.term] += pattern.frequency
        rules = []
        for term, count in usage.items():
            confidence = confidence_band(count)
            noun_type = "complex_noun" if len(term) > 3 and confidence > 0.5 else "simple_noun"
            rules.append(GrammarRule(symbol="NP", pattern=term, probability=confidence, type=noun_type, confidence=confidence))
        return self._normalise_family(rules)

    def _minimal_rules(self, symbol: str, entries: Sequence[Tuple[str, float]]) -> List[GrammarRule]:
        rules = [
            GrammarRule(symbol=symbol, pattern=pattern, probability=weight, type="minimal", learned=False, confidence=weight)
            for pattern, weight in entries
        ]
        return self._normalise_family(rules)

    def _normalise_family(self, rules: List[GrammarRule]) -> List[GrammarRule]:
        total = sum(rule.probability for rule in rules)
        if total <= 0:
            return rules
        floor = self.config.probability_floor
        return [
            GrammarRule(
                symbol=rule.symbol,
                pattern=rule.pattern,
                probability=max(rule.probability / total, floor),
                type=rule.type,
                learned=rule.learned,
                confidence=rule.confidence,
                terms=rule.terms,
            )
            for rule in rules
        ]

    # ------------------------------------------------------------------
    # Selection and application
    # ------------------------------------------------------------------
    def select_pattern(
        self,
        keywords: Sequence[str],
        relations: Sequence[ContextTerm],
        rules: GrammarRuleSet,
    ) -> GrammarRule:
        if not rules.sentence:
            anchor = keywords[0] if keywords else (relations[0].term if relations else "情報")
            return GrammarRule(symbol="S", pattern=f"{anchor}について。", probability=0.1, type="emergency_fallback", learned=False)

        buckets = self.config.embedding_buckets
        context_vector = term_embedding(((item.term, item.strength) for item in relations), buckets)
        best_rule, best_score = rules.sentence[0], float("-inf")
        for rule in rules.sentence:
            similarity = cosine_similarity(term_embedding(rule.terms, buckets), context_vector)
            score = self.config.probability_weight * rule.probability + self.config.similarity_weight * similarity
            if score > best_score:
                best_rule, best_score = rule, score
        return best_rule

    def apply(self, rule: GrammarRule, relations: Sequence[ContextTerm], rules: Optional[GrammarRuleSet] = None) -> Skeleton:
        ranked = sorted(relations, key=lambda item: item.strength, reverse=True)
        primary = ranked[0].term if ranked else None
        support = tuple(item.term for item in ranked[1 : 1 + self.config.support_terms])
        verb = rules.best("VP") if rules is not None else None
        return Skeleton(
            structure=rule.type,
            primary_term=primary,
            support_terms=support,
            confidence=rule.probability,
            pattern=rule.pattern,
            verb_phrase=verb.pattern if verb is not None else None,
            formality=rules.formality if rules is not None else 0.5,
        )

    def fallback(self, relations: Sequence[ContextTerm]) -> Skeleton:
        if not relations:
            return Skeleton(structure="minimal", primary_term=None, support_terms=(), confidence=0.0)
        strongest = max(relations, key=lambda item: item.strength)
        support = tuple(item.term for item in relations if item.strength > 0.5 and item.term != strongest.term)
        return Skeleton(
            structure="fallback",
            primary_term=strongest.term,
            support_terms=support,
            confidence=strongest.strength,
        )

    async def generate(
        self,
        keywords: Sequence[str],
        relations: Sequence[ContextTerm],
        user_id: str = "default",
        thresholds: AdaptiveThresholds = MINIMAL_THRESHOLDS,
    ) -> Skeleton:
        """Induce a grammar and return a validated skeleton; never raises."""
        try:
            patterns = await self.extract_patterns(user_id)
            probabilities = self.normalize_probabilities(patterns.structural)
            rules = self.build_rules(patterns, probabilities, thresholds)
            rule = self.select_pattern(keywords, relations, rules)
            skeleton = self.apply(rule, relations, rules)
        except Exception:  # noqa: BLE001 - grammar failures degrade to the fallback skeleton
            LOGGER.warning("Grammar induction failed for %s", user_id, exc_info=True)
            return self.fallback(relations)
        if skeleton.is_valid and skeleton.confidence > thresholds.low_confidence:
            LOGGER.debug("Skeleton %s via %r (%.2f)", skeleton.structure, skeleton.pattern, skeleton.confidence)
            return skeleton
        return self.fallback(relations)
