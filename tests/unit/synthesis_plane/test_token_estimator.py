from __future__ import annotations

from nucleus_orchestrator.synthesis_plane.token_estimator import estimate_tokens


def test_empty_text_is_zero() -> None:
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0


def test_prose_estimate_is_padded_above_four_chars_per_token() -> None:
    text = "the quick brown fox jumps over the lazy dog " * 10
    assert estimate_tokens(text) > len(text) / 4
    assert estimate_tokens(text) < len(text) / 3


def test_code_is_denser_than_prose_of_equal_length() -> None:
    code = "def f(x): return {x: [x, x]};" * 2
    prose = ("plain words " * 10)[: len(code)]
    assert len(code) == len(prose)
    assert estimate_tokens(code) > estimate_tokens(prose)


def test_symbol_density_alone_switches_to_code_ratio() -> None:
    dense = "a=1;b=2;c=3;" * 10
    sparse = "abcdefghijkl" * 10
    assert estimate_tokens(dense) > estimate_tokens(sparse)


def test_long_text_gets_larger_padding() -> None:
    short = "word " * 800
    long = "word " * 801
    per_char_short = estimate_tokens(short) / len(short)
    per_char_long = estimate_tokens(long) / len(long)
    assert per_char_long > per_char_short


def test_estimate_is_monotonic_in_length() -> None:
    estimates = [estimate_tokens("lorem ipsum " * count) for count in range(1, 50)]
    assert estimates == sorted(estimates)
