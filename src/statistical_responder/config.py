"""Configuration helpers for the statistical responder."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Optional, cast

from .utils.io import load_yaml_or_json, save_yaml_or_json


@dataclass
class StrategyConfig:
    """Configuration for the UCB strategy selector."""

    exploration_constant: float = 2.0
    unexplored_bonus: float = 10.0
    base_score_weight: float = 0.1
    cooccurrence_weight: float = 2.0
    quality_weight: float = 0.5


@dataclass
class GrammarConfig:
    """Configuration for grammar induction."""

    probability_floor: float = 0.05
    embedding_buckets: int = 10
    probability_weight: float = 0.8
    similarity_weight: float = 0.2
    support_terms: int = 2


@dataclass
class AssemblerConfig:
    """Configuration for sentence assembly."""

    kneser_ney_discount: float = 0.75
    total_word_types: int = 1000
    context_limit: int = 10
    semantic_blend: float = 0.6
    quality_weight: float = 0.6
    diversity_weight: float = 0.2
    coherence_weight: float = 0.2


@dataclass
class QualityConfig:
    """Configuration for adaptive thresholds and grading."""

    low_confidence: float = 0.1
    cold_start_history: int = 10
    cold_floor_low: float = 0.1
    cold_floor_medium: float = 0.3
    cold_floor_high: float = 0.5


@dataclass
class RuntimeConfig:
    """Configuration for request orchestration."""

    history_size: int = 50
    timeout_seconds: float = 5.0
    improve_min_length: int = 20


@dataclass
class EngineConfig:
    """Top-level configuration for the response engine."""

    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    grammar: GrammarConfig = field(default_factory=GrammarConfig)
    assembler: AssemblerConfig = field(default_factory=AssemblerConfig)
    quality: QualityConfig = field(default_factory=QualityConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EngineConfig:
        return cls(
            strategy=StrategyConfig(**data.get("strategy", {})),
            grammar=GrammarConfig(**data.get("grammar", {})),
            assembler=AssemblerConfig(**data.get("assembler", {})),
            quality=QualityConfig(**data.get("quality", {})),
            runtime=RuntimeConfig(**data.get("runtime", {})),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def save(self, path: Path) -> None:
        """Write the configuration as YAML or JSON depending on ``path``."""
        save_yaml_or_json(Path(path), self.to_dict())


def _load_yaml_or_json(path: Path) -> dict[str, Any]:
    loaded = load_yaml_or_json(path)
    if not isinstance(loaded, Mapping):
        msg = f"Expected mapping at root of configuration {path}"
        raise TypeError(msg)
    return cast(dict[str, Any], dict(loaded))


def _merge_dict(base: dict[str, Any], overrides: Iterable[dict[str, Any]]) -> dict[str, Any]:
    result: dict[str, Any] = dict(base)
    for override in overrides:
        for key, value in override.items():
            existing = result.get(key)
            if isinstance(value, dict) and isinstance(existing, dict):
                result[key] = _merge_dict(cast(dict[str, Any], existing), [value])
            else:
                result[key] = value
    return result


def load_config(
    path: Optional[Path] = None,
    overrides: Optional[Iterable[dict[str, Any]]] = None,
) -> EngineConfig:
    """Load configuration from disk and merge overrides."""

    overrides = list(overrides or [])
    base: dict[str, Any] = {} if path is None else _load_yaml_or_json(Path(path))
    merged = _merge_dict(base, overrides)
    return EngineConfig.from_dict(merged)
