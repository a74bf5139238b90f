from __future__ import annotations

import pytest

from statistical_responder.utils import (
    deterministic_hash,
    informative_tokens,
    is_noise_token,
    jaccard,
    levenshtein,
    levenshtein_similarity,
    normalise_text,
    tokenize,
    tokenize_with_pos,
)
from statistical_responder.utils.text import keyword_quality, script_diversity


def test_tokenize_splits_on_script_boundaries() -> None:
    assert tokenize("Pythonのライブラリについて") == ["Python", "の", "ライブラリ", "について"]
    assert tokenize("Python3 と  Rust!") == ["Python3", "と", "Rust", "!"]


def test_normalise_text_applies_nfkc() -> None:
    assert normalise_text("  ＡＩ　モデル ") == "AI モデル"


def test_pos_tags() -> None:
    tags = dict(tokenize_with_pos("Pythonを勉強する。"))
    assert tags["Python"] == "名詞"
    assert tags["を"] == "助詞"
    assert tags["。"] == "記号"
    assert informative_tokens("Pythonのライブラリ") == ["Python", "ライブラリ"]


@pytest.mark.parametrize(("token", "noisy"), [("。", True), ("の", True), ("ー～", True), ("Python", False)])
def test_noise_tokens(token: str, noisy: bool) -> None:
    assert is_noise_token(token) is noisy


def test_levenshtein() -> None:
    assert levenshtein("kitten", "sitting") == 3
    assert levenshtein("", "abc") == 3
    assert levenshtein_similarity("", "") == 1.0
    assert levenshtein_similarity("abcd", "abcf") == pytest.approx(0.75)
    assert levenshtein_similarity("ライブラリ", "ライブラリー") == pytest.approx(5 / 6)


def test_jaccard() -> None:
    assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
    assert jaccard([], []) == 0.0


def test_keyword_quality_prefers_mixed_scripts() -> None:
    assert script_diversity("AI技術") > script_diversity("AI")
    assert keyword_quality("aaaa") < keyword_quality("機械学習")


def test_deterministic_hash_is_stable() -> None:
    assert deterministic_hash("Python") == deterministic_hash("Python")
    assert deterministic_hash("Python") != deterministic_hash("Rust")
