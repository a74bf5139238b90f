"""Request orchestration: analyze, select, generate, evaluate, learn."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Set, Tuple

from .analysis import StatisticalAnalyzer, UtteranceAnalysis
from .assembler import CandidateResponse, SentenceAssembler, SimilarityHook
from .config import EngineConfig
from .errors import AnalysisFailure, CatastrophicFailure, LearningStoreFailure
from .grammar import GrammarInducer
from .logging import get_logger
from .quality import AdaptiveThresholds, QualityEvaluator, SentenceScorer
from .state import EngineState, HistoryEntry
from .store import DEFAULT_DATA_STATS, DEFAULT_WEIGHTS, LearningStore, seed_system_defaults
from .strategy import Strategy, StrategySelector, determine_stage
from .utils.random import deterministic_hash
from .utils.text import informative_tokens, is_noise_token, jaccard

LOGGER = get_logger(__name__)

GENERIC_FALLBACKS = (
    "もう少し詳しく教えていただけますか？",
    "その件についてはもう少し考えてみますね。",
    "興味深いお話ですね。もう少し聞かせてください。",
    "なるほど、そういう考え方もありますね。",
)
SYSTEM_ERROR_RESPONSE = "申し訳ございません。処理中にエラーが発生しました。"
DETAIL_CLAUSE = " より詳しく説明いたします。"
FOLLOW_UP_CLAUSE = "ご質問があれば、お聞かせください。"
IMPROVABLE_GRADES = ("poor", "acceptable")


class Analyzer(Protocol):
    async def analyze(self, text: str, user_id: str = "default") -> UtteranceAnalysis: ...


@dataclass
class ResponseEnvelope:
    success: bool
    response: str
    confidence: float
    strategy: str
    quality_score: float
    grade: str
    improvements: List[str] = field(default_factory=list)
    processing_time: float = 0.0
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    error: Optional[str] = None
    improved_response: Optional[str] = None
    stage: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "success": self.success,
            "response": self.response,
            "confidence": self.confidence,
            "strategy": self.strategy,
            "qualityScore": self.quality_score,
            "grade": self.grade,
            "improvements": list(self.improvements),
            "processingTime": self.processing_time,
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.improved_response is not None:
            payload["improvedResponse"] = self.improved_response
        if self.stage is not None:
            payload["stage"] = self.stage
        return payload


@dataclass
class _Generation:
    analysis: UtteranceAnalysis
    stage: str
    strategy: Strategy
    thresholds: AdaptiveThresholds
    candidate: CandidateResponse
    grade: str


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def improve(text: str, min_length: int = 20) -> Tuple[str, List[str]]:
    """Append clarifying clauses to a weak response; the input is left intact."""
    improved, applied = text, []
    if len(text) < min_length:
        improved += DETAIL_CLAUSE
        applied.append("expanded_detail")
    if "？" not in text and "。" not in text:
        improved += FOLLOW_UP_CLAUSE
        applied.append("follow_up_question")
    if not applied:
        improved += FOLLOW_UP_CLAUSE
        applied.append("follow_up_question")
    return improved, applied


class ResponseEngine:
    """Owns the collaborators and state for statistical response generation."""

    def __init__(
        self,
        store: LearningStore,
        analyzer: Optional[Analyzer] = None,
        config: Optional[EngineConfig] = None,
        state: Optional[EngineState] = None,
        scorer: Optional[SentenceScorer] = None,
        similarity_hook: Optional[SimilarityHook] = None,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.state = state or EngineState(history_size=self.config.runtime.history_size)
        self.analyzer = analyzer or StatisticalAnalyzer(store)
        self.evaluator = QualityEvaluator(store, self.config.quality, scorer)
        self.grammar = GrammarInducer(store, self.config.grammar)
        self.assembler = SentenceAssembler(store, self.grammar, self.evaluator, self.config.assembler, similarity_hook)
        self.selector = StrategySelector(store, self.state.strategy_stats, self.config.strategy)
        self.system_defaults: Dict[str, Any] = {}
        self._started = False
        self._start_lock = asyncio.Lock()
        self._pending: Set[asyncio.Task[None]] = set()

    async def start(self) -> None:
        """Seed persisted defaults and restore strategy statistics once."""
        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            try:
                self.system_defaults = await seed_system_defaults(self.store)
                await self.state.restore(self.store)
            except LearningStoreFailure as exc:
                LOGGER.warning("Starting with built-in defaults: %s", exc)
            self._started = True

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    async def generate_response(self, text: str, user_id: str = "default") -> ResponseEnvelope:
        """Run one request; always returns an envelope, never raises."""
        started = time.perf_counter()
        try:
            await self.start()
            generation = await asyncio.wait_for(
                self._generate(text, user_id), timeout=self.config.runtime.timeout_seconds
            )
            return await self._complete(text, user_id, generation, started)
        except asyncio.TimeoutError:
            LOGGER.warning("Request for %s timed out: %r", user_id, text)
            return await self.fallback(text, user_id, "timeout", started)
        except AnalysisFailure as exc:
            LOGGER.warning("Analysis failed for %s on %r: %s", user_id, text, exc)
            return await self.fallback(text, user_id, str(exc), started)
        except Exception as exc:  # noqa: BLE001 - every failure becomes a fallback response
            LOGGER.exception("Response generation failed for %s on %r", user_id, text)
            return await self.fallback(text, user_id, str(exc) or exc.__class__.__name__, started)

    def respond(self, text: str, user_id: str = "default") -> ResponseEnvelope:
        """Synchronous convenience wrapper around :meth:`generate_response`."""
        return asyncio.run(self._respond_and_drain(text, user_id))

    async def _respond_and_drain(self, text: str, user_id: str) -> ResponseEnvelope:
        envelope = await self.generate_response(text, user_id)
        await self.drain()
        return envelope

    async def drain(self) -> None:
        """Wait for outstanding feedback propagation."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    async def _analyze(self, text: str, user_id: str) -> UtteranceAnalysis:
        if not text or not text.strip():
            raise AnalysisFailure("empty input")
        try:
            analysis = await self.analyzer.analyze(text, user_id)
        except Exception as exc:
            raise AnalysisFailure(str(exc) or exc.__class__.__name__) from exc
        if not analysis.success:
            raise AnalysisFailure(analysis.error or "analysis unsuccessful")
        return analysis

    async def _generate(self, text: str, user_id: str) -> _Generation:
        analysis = await self._analyze(text, user_id)
        stage = determine_stage(analysis)
        thresholds = await self.evaluator.adaptive_thresholds(user_id)
        scores = await self.selector.score(analysis, stage, user_id)
        strategy = self.selector.select(scores)
        LOGGER.debug("Stage %s, strategy %s for %s", stage, strategy.value, user_id)
        candidate = await self.assembler.assemble(analysis, strategy, user_id, thresholds)
        grade = await self.evaluator.live_grade(candidate.quality_score)
        return _Generation(analysis, stage, strategy, thresholds, candidate, grade)

    async def _complete(self, text: str, user_id: str, generation: _Generation, started: float) -> ResponseEnvelope:
        candidate = generation.candidate
        improvements = list(generation.analysis.quality_prediction.improvements)
        improved_response = None
        if generation.grade in IMPROVABLE_GRADES:
            improved_response, applied = improve(candidate.text, self.config.runtime.improve_min_length)
            improvements.extend(applied)

        error = None
        if candidate.degraded:
            error = "generation_failed"
            improvements.append("minimal_template")
            LOGGER.warning("Strategy %s degraded for %s on %r", generation.strategy.value, user_id, text)
        else:
            self.selector.record_reward(generation.strategy, candidate.quality_score)
            await self._persist_stats()
            self._propagate_feedback(
                user_id,
                text,
                improved_response or candidate.text,
                candidate.quality_score,
                generation.analysis.quality_prediction.quality_score,
            )

        timestamp = datetime.now(timezone.utc).isoformat()
        self.state.record(
            HistoryEntry(
                input=text,
                response=candidate.text,
                strategy=generation.strategy.value,
                quality_score=candidate.quality_score,
                grade=generation.grade,
                timestamp=timestamp,
                user_id=user_id,
            )
        )
        return ResponseEnvelope(
            success=True,
            response=candidate.text,
            confidence=min(max(candidate.confidence, 0.0), 1.0),
            strategy=generation.strategy.value,
            quality_score=min(max(candidate.quality_score, 0.0), 1.0),
            grade=generation.grade,
            improvements=improvements,
            processing_time=_elapsed_ms(started),
            timestamp=timestamp,
            error=error,
            improved_response=improved_response,
            stage=generation.stage,
        )

    async def _persist_stats(self) -> None:
        try:
            await self.state.persist(self.store)
        except LearningStoreFailure as exc:
            LOGGER.warning("Strategy statistics not persisted: %s", exc)

    def _propagate_feedback(
        self,
        user_id: str,
        text: str,
        response: str,
        score: float,
        predicted: float,
    ) -> None:
        task = asyncio.get_running_loop().create_task(self.store.learn(user_id, text, response, score, predicted))
        self._pending.add(task)
        task.add_done_callback(self._feedback_done)

    def _feedback_done(self, task: asyncio.Task[None]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.warning("Feedback propagation failed: %s", exc)

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------
    async def fallback(self, text: str, user_id: str, error: str, started: Optional[float] = None) -> ResponseEnvelope:
        """Degraded reply; a failure in here yields the static system-error reply."""
        started = started if started is not None else time.perf_counter()
        try:
            response = await self._fallback_text(text, user_id)
        except CatastrophicFailure as exc:
            LOGGER.exception("Fallback failed for %s on %r after %s: %s", user_id, text, error, exc)
            return ResponseEnvelope(
                success=True,
                response=SYSTEM_ERROR_RESPONSE,
                confidence=0.0,
                strategy="error_fallback",
                quality_score=0.1,
                grade="error",
                improvements=["error_fallback"],
                processing_time=_elapsed_ms(started),
                error=error,
            )
        return ResponseEnvelope(
            success=False,
            response=response,
            confidence=0.1,
            strategy="fallback",
            quality_score=0.3,
            grade="fallback",
            improvements=["fallback_response"],
            processing_time=_elapsed_ms(started),
            error=error,
        )

    async def _fallback_text(self, text: str, user_id: str) -> str:
        try:
            return await self._reuse_relation(text, user_id) or self._holding_phrase(text)
        except Exception as exc:  # noqa: BLE001 - any error here ends in the system-error reply
            raise CatastrophicFailure(str(exc) or exc.__class__.__name__) from exc

    async def _reuse_relation(self, text: str, user_id: str) -> Optional[str]:
        keywords = {token for token in informative_tokens(text or "") if not is_noise_token(token)}
        if not keywords:
            return None
        try:
            graph = await self.store.get_user_relations(user_id)
        except LearningStoreFailure as exc:
            LOGGER.warning("Fallback cannot read relations for %s: %s", user_id, exc)
            return None

        weights = {**DEFAULT_WEIGHTS, **self.system_defaults.get("default_weights", {})}
        data_stats = {**DEFAULT_DATA_STATS, **self.system_defaults.get("real_data_stats", {})}
        best: Optional[Tuple[float, float, str]] = None
        for keyword, records in graph.items():
            breadth = min(len(records) / data_stats["max_relations"], 1.0)
            for record in records:
                if record.strength <= 0.5:
                    continue
                overlap = jaccard(keywords, {keyword, record.term})
                if overlap <= 0:
                    continue
                weight = (
                    weights["strength"] * record.strength
                    + weights["count"] * min(record.count / data_stats["max_count"], 1.0)
                    + weights["relation_count"] * breadth
                )
                phrase = f"{keyword}と{record.term}の関係性について、さらに詳しくお話しできます。"
                if best is None or (overlap, weight) > best[:2]:
                    best = (overlap, weight, phrase)
        return best[2] if best else None

    @staticmethod
    def _holding_phrase(text: str) -> str:
        return GENERIC_FALLBACKS[deterministic_hash(text or "") % len(GENERIC_FALLBACKS)]
