"""Statistical response generation engine."""

from .analysis import StatisticalAnalyzer, UtteranceAnalysis
from .config import EngineConfig, load_config
from .engine import ResponseEngine, ResponseEnvelope
from .errors import (
    AnalysisFailure,
    CatastrophicFailure,
    GenerationFailure,
    LearningStoreFailure,
    ResponseEngineError,
)
from .store import FileLearningStore, InMemoryLearningStore, LearningStore
from .strategy import Strategy

__all__ = [
    "AnalysisFailure",
    "CatastrophicFailure",
    "EngineConfig",
    "FileLearningStore",
    "GenerationFailure",
    "InMemoryLearningStore",
    "LearningStore",
    "LearningStoreFailure",
    "ResponseEngine",
    "ResponseEngineError",
    "ResponseEnvelope",
    "StatisticalAnalyzer",
    "Strategy",
    "UtteranceAnalysis",
    "load_config",
]

__version__ = "0.1.0"
