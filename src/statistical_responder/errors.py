"""Exception taxonomy for the response engine.

None of these escape :meth:`ResponseEngine.generate_response`; they mark
which degradation path a failure takes.
"""

from __future__ import annotations


class ResponseEngineError(Exception):
    """Base class for all engine failures."""


class AnalysisFailure(ResponseEngineError):
    """The analysis collaborator raised or reported ``success=False``."""


class GenerationFailure(ResponseEngineError):
    """Grammar induction or sentence assembly could not produce text."""


class LearningStoreFailure(ResponseEngineError):
    """A read or write against the learning store failed."""


class CatastrophicFailure(ResponseEngineError):
    """The fallback path itself failed."""
