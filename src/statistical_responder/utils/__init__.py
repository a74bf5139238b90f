"""Utility helpers shared across the statistical responder package."""

from .io import load_yaml_or_json, save_json, save_yaml_or_json
from .random import deterministic_hash
from .text import (
    informative_tokens,
    is_noise_token,
    jaccard,
    levenshtein,
    levenshtein_similarity,
    normalise_text,
    tokenize,
    tokenize_with_pos,
)

__all__ = [
    "deterministic_hash",
    "informative_tokens",
    "is_noise_token",
    "jaccard",
    "levenshtein",
    "levenshtein_similarity",
    "load_yaml_or_json",
    "normalise_text",
    "save_json",
    "save_yaml_or_json",
    "tokenize",
    "tokenize_with_pos",
]
