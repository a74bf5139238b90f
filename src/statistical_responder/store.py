"""Learning store: relation graphs, n-gram counts and learned statistics.

The engine only talks to the :class:`LearningStore` protocol. Two
implementations ship with the package: an in-memory store and a file-backed
store that snapshots the same state to YAML or JSON.
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

import yaml

from .errors import LearningStoreFailure
from .logging import get_logger
from .utils.io import load_yaml_or_json, save_yaml_or_json
from .utils.text import informative_tokens, is_noise_token

LOGGER = get_logger(__name__)

DEFAULT_THRESHOLDS = {
    "high_confidence": 0.756,
    "medium_confidence": 0.700,
    "low_confidence": 0.548,
    "relationship_strength": 0.630,
    "vocabulary_selection": 0.732,
}
DEFAULT_WEIGHTS = {"strength": 0.6, "count": 0.25, "relation_count": 0.15}
DEFAULT_DATA_STATS = {"strength_median": 0.7, "iqr": 0.071, "max_count": 5, "max_relations": 10}

SYSTEM_DEFAULTS = {
    "default_thresholds": DEFAULT_THRESHOLDS,
    "default_weights": DEFAULT_WEIGHTS,
    "real_data_stats": DEFAULT_DATA_STATS,
}


@dataclass
class RelationRecord:
    term: str
    count: int = 1
    strength: float = 0.5
    last_updated: float = field(default_factory=time.time)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> RelationRecord:
        return cls(
            term=str(data["term"]),
            count=int(data.get("count", 1)),
            strength=float(data.get("strength", 0.5)),
            last_updated=float(data.get("last_updated", 0.0)),
        )


RelationGraph = Dict[str, List[RelationRecord]]


@dataclass(frozen=True)
class NgramCount:
    context: str
    word: str
    count: int


@dataclass(frozen=True)
class NgramPattern:
    word: str
    next_word: str
    count: int
    confidence: float


@dataclass(frozen=True)
class NgramStats:
    total_patterns: int = 0
    average_confidence: float = 0.0


@dataclass(frozen=True)
class BanditStats:
    total_optimizations: int = 0


@dataclass(frozen=True)
class QualityStats:
    average: float = 0.5
    std_dev: float = 0.2
    average_accuracy: float = 0.5
    count: int = 0


@dataclass(frozen=True)
class UserStats:
    total_interactions: int = 0
    profile_completeness: float = 0.0


class LearningStore(Protocol):
    """Query surface the engine needs from persistence."""

    async def get_user_relations(self, user_id: str) -> RelationGraph: ...

    async def get_ngram_stats(self) -> NgramStats: ...

    async def get_ngram_patterns(self, word: str) -> List[NgramPattern]: ...

    async def get_ngram_counts(self, text: str, next_word: str) -> List[NgramCount]: ...

    async def get_bandit_stats(self) -> BanditStats: ...

    async def get_quality_stats(self) -> QualityStats: ...

    async def get_user_stats(self, user_id: str) -> UserStats: ...

    async def load_system_data(self, key: str) -> Optional[Any]: ...

    async def save_system_data(self, key: str, value: Any) -> None: ...

    async def learn(
        self,
        user_id: str,
        text: str,
        response: str,
        score: float,
        predicted_quality: Optional[float] = None,
    ) -> None: ...


async def seed_system_defaults(store: LearningStore) -> Dict[str, Any]:
    """Persist the default thresholds and weights once, then reuse them."""
    seeded: Dict[str, Any] = {}
    for key, value in SYSTEM_DEFAULTS.items():
        existing = await store.load_system_data(key)
        if existing is None:
            await store.save_system_data(key, dict(value))
            existing = dict(value)
        seeded[key] = existing
    return seeded


class InMemoryLearningStore:
    """Dictionary-backed store.

    Relation graphs are sharded per user; each shard has its own
    ``asyncio.Lock`` so concurrent learning for one user cannot lose updates.
    """

    def __init__(self) -> None:
        self.relations: Dict[str, RelationGraph] = defaultdict(dict)
        self.bigrams: Dict[str, Counter[str]] = defaultdict(Counter)
        self.quality_scores: List[float] = []
        self.accuracies: List[float] = []
        self.interactions: Counter[str] = Counter()
        self.bandit_optimizations = 0
        self.system_data: Dict[str, Any] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._global_lock = asyncio.Lock()

    def user_lock(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks.setdefault(user_id, asyncio.Lock())
        return lock

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_user_relations(self, user_id: str) -> RelationGraph:
        graph = self.relations.get(user_id, {})
        return {keyword: list(records) for keyword, records in graph.items()}

    async def get_ngram_stats(self) -> NgramStats:
        total = sum(len(followers) for followers in self.bigrams.values())
        if total == 0:
            return NgramStats()
        shares = [
            max(followers.values()) / sum(followers.values())
            for followers in self.bigrams.values()
            if followers
        ]
        return NgramStats(total_patterns=total, average_confidence=statistics.fmean(shares))

    async def get_ngram_patterns(self, word: str) -> List[NgramPattern]:
        followers = self.bigrams.get(word)
        if not followers:
            return []
        total = sum(followers.values())
        return [
            NgramPattern(word=word, next_word=next_word, count=count, confidence=count / total)
            for next_word, count in followers.most_common()
        ]

    async def get_ngram_counts(self, text: str, next_word: str) -> List[NgramCount]:
        contexts = [next_word, *informative_tokens(text)]
        triples: List[NgramCount] = []
        for context in dict.fromkeys(contexts):
            for word, count in self.bigrams.get(context, Counter()).items():
                triples.append(NgramCount(context=context, word=word, count=count))
        return triples

    async def get_bandit_stats(self) -> BanditStats:
        return BanditStats(total_optimizations=self.bandit_optimizations)

    async def get_quality_stats(self) -> QualityStats:
        if not self.quality_scores:
            return QualityStats()
        average = statistics.fmean(self.quality_scores)
        std_dev = statistics.pstdev(self.quality_scores) if len(self.quality_scores) > 1 else 0.0
        accuracy = statistics.fmean(self.accuracies) if self.accuracies else 0.5
        return QualityStats(
            average=average,
            std_dev=std_dev,
            average_accuracy=accuracy,
            count=len(self.quality_scores),
        )

    async def get_user_stats(self, user_id: str) -> UserStats:
        graph = self.relations.get(user_id, {})
        return UserStats(
            total_interactions=self.interactions[user_id],
            profile_completeness=min(len(graph) / 20, 1.0),
        )

    async def load_system_data(self, key: str) -> Optional[Any]:
        return self.system_data.get(key)

    async def save_system_data(self, key: str, value: Any) -> None:
        self.system_data[key] = value

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------
    async def learn(
        self,
        user_id: str,
        text: str,
        response: str,
        score: float,
        predicted_quality: Optional[float] = None,
    ) -> None:
        """Feed one realised interaction to the co-occurrence and n-gram learners."""

        score = min(max(score, 0.0), 1.0)
        source = [token for token in informative_tokens(text) if not is_noise_token(token)]
        target = [token for token in informative_tokens(response) if not is_noise_token(token)]
        async with self.user_lock(user_id):
            self._learn_cooccurrence(user_id, source, target, score)
            self.interactions[user_id] += 1
        async with self._global_lock:
            for sequence in (source, target):
                self._learn_bigrams(sequence)
            self.quality_scores.append(score)
            if predicted_quality is not None:
                self.accuracies.append(1.0 - abs(predicted_quality - score))
            self.bandit_optimizations += 1
        LOGGER.debug("Learned interaction for %s (%d source terms)", user_id, len(source))

    def _learn_cooccurrence(self, user_id: str, source: Sequence[str], target: Sequence[str], score: float) -> None:
        graph = self.relations[user_id]
        now = time.time()
        for keyword in dict.fromkeys(source):
            records = graph.setdefault(keyword, [])
            for other in dict.fromkeys([*source, *target]):
                if other == keyword:
                    continue
                record = next((item for item in records if item.term == other), None)
                if record is None:
                    records.append(RelationRecord(term=other, count=1, strength=score, last_updated=now))
                    continue
                record.count += 1
                record.strength += (score - record.strength) / record.count
                record.last_updated = now

    def _learn_bigrams(self, sequence: Sequence[str]) -> None:
        for context, word in zip(sequence, sequence[1:]):
            self.bigrams[context][word] += 1

    def add_relation(self, user_id: str, keyword: str, term: str, *, count: int = 1, strength: float = 0.5) -> None:
        """Insert or overwrite one relation directly."""
        records = self.relations[user_id].setdefault(keyword, [])
        for record in records:
            if record.term == term:
                record.count, record.strength = count, strength
                record.last_updated = time.time()
                return
        records.append(RelationRecord(term=term, count=count, strength=strength))

    def add_bigram(self, context: str, word: str, count: int = 1) -> None:
        self.bigrams[context][word] += count

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------
    def to_dict(self) -> Dict[str, Any]:
        return {
            "relations": {
                user: {keyword: [asdict(record) for record in records] for keyword, records in graph.items()}
                for user, graph in self.relations.items()
            },
            "bigrams": {context: dict(followers) for context, followers in self.bigrams.items()},
            "quality_scores": list(self.quality_scores),
            "accuracies": list(self.accuracies),
            "interactions": dict(self.interactions),
            "bandit_optimizations": self.bandit_optimizations,
            "system_data": dict(self.system_data),
        }

    def update_from_dict(self, data: Dict[str, Any]) -> None:
        for user, graph in (data.get("relations") or {}).items():
            self.relations[user] = {
                keyword: [RelationRecord.from_dict(item) for item in records]
                for keyword, records in graph.items()
            }
        for context, followers in (data.get("bigrams") or {}).items():
            self.bigrams[context] = Counter({word: int(count) for word, count in followers.items()})
        self.quality_scores = [float(score) for score in data.get("quality_scores") or []]
        self.accuracies = [float(value) for value in data.get("accuracies") or []]
        self.interactions = Counter({user: int(count) for user, count in (data.get("interactions") or {}).items()})
        self.bandit_optimizations = int(data.get("bandit_optimizations", 0))
        self.system_data = dict(data.get("system_data") or {})


class FileLearningStore(InMemoryLearningStore):
    """In-memory store snapshotted to a YAML or JSON file."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = Path(path)

    @classmethod
    def open(cls, path: Path) -> FileLearningStore:
        store = cls(path)
        if store.path.exists():
            store.load()
        return store

    def load(self) -> None:
        try:
            payload = load_yaml_or_json(self.path)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise LearningStoreFailure(f"Could not read learning store {self.path}: {exc}") from exc
        self.update_from_dict(payload)
        LOGGER.info("Loaded learning store from %s", self.path)

    def save(self) -> None:
        try:
            save_yaml_or_json(self.path, self.to_dict())
        except OSError as exc:
            raise LearningStoreFailure(f"Could not write learning store {self.path}: {exc}") from exc
        LOGGER.info("Persisted learning store to %s", self.path)
