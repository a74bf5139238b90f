from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from statistical_responder.config import EngineConfig
from statistical_responder.store import InMemoryLearningStore


@pytest.fixture
def config() -> EngineConfig:
    return EngineConfig()


@pytest.fixture
def store() -> InMemoryLearningStore:
    return InMemoryLearningStore()


@pytest.fixture
def python_store() -> InMemoryLearningStore:
    """Store holding one learned keyword with a strong and a weak relation."""
    store = InMemoryLearningStore()
    store.add_relation("u1", "Python", "ライブラリ", count=6, strength=0.9)
    store.add_relation("u1", "Python", "データ分析", count=2, strength=0.6)
    return store


@pytest.fixture
def workspace(tmp_path: Path) -> Iterator[Path]:
    yield tmp_path
