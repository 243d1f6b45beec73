"""Tests for script-aware token estimation."""

from chatpipe.infra.tokens import (
    CHARS_PER_TOKEN_CJK,
    CHARS_PER_TOKEN_LATIN,
    CHARS_PER_TOKEN_RTL_CYRILLIC,
    estimate_chars_per_token,
    estimate_tokens,
)


class TestEstimateCharsPerToken:
    def test_latin(self):
        assert estimate_chars_per_token("The quick brown fox") == CHARS_PER_TOKEN_LATIN

    def test_empty_is_latin(self):
        assert estimate_chars_per_token("") == CHARS_PER_TOKEN_LATIN

    def test_cjk(self):
        assert estimate_chars_per_token("无国界医生组织" * 10) == CHARS_PER_TOKEN_CJK

    def test_cyrillic(self):
        assert (
            estimate_chars_per_token("Врачи без границ " * 10)
            == CHARS_PER_TOKEN_RTL_CYRILLIC
        )

    def test_arabic(self):
        assert estimate_chars_per_token("أطباء بلا حدود " * 10) == CHARS_PER_TOKEN_RTL_CYRILLIC

    def test_mostly_latin_with_some_cjk(self):
        text = "a" * 80 + "中" * 20
        assert estimate_chars_per_token(text) == CHARS_PER_TOKEN_LATIN


def test_estimate_tokens_never_zero():
    assert estimate_tokens("") == 1
    assert estimate_tokens("x" * 400) == 100
