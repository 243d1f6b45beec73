"""Token estimation.

Two flavours:

* ``estimate_chars_per_token`` picks a chars-per-token ratio from the
  dominant script of a text sample.  Non-Latin scripts tokenize into
  shorter tokens, so the ratio drops and character budgets shrink.
* ``count_tokens`` is an exact count with ``tiktoken`` for when a real
  number is needed (active-file estimates).
"""

import re
from functools import lru_cache

import tiktoken

CHARS_PER_TOKEN_LATIN = 4.0
CHARS_PER_TOKEN_CJK = 1.5
CHARS_PER_TOKEN_RTL_CYRILLIC = 2.0

_SAMPLE_SIZE = 1000
_NON_LATIN_THRESHOLD = 0.3

_CJK = re.compile(r"[\u4e00-\u9fff\u3400-\u4dbf\uf900-\ufaff]")
_KANA = re.compile(r"[\u3040-\u309f\u30a0-\u30ff]")
_RTL = re.compile(r"[\u0600-\u06ff\u0590-\u05ff]")
_CYRILLIC = re.compile(r"[\u0400-\u04ff]")

_FALLBACK_ENCODING = "cl100k_base"


def estimate_chars_per_token(text: str, sample_size: int = _SAMPLE_SIZE) -> float:
    """Return the chars-per-token ratio for *text*'s dominant script."""
    sample = text[:sample_size]
    if not sample:
        return CHARS_PER_TOKEN_LATIN

    cjk_total = len(_CJK.findall(sample)) + len(_KANA.findall(sample))
    rtl_cyrillic_total = len(_RTL.findall(sample)) + len(_CYRILLIC.findall(sample))
    non_latin_ratio = (cjk_total + rtl_cyrillic_total) / len(sample)

    if non_latin_ratio > _NON_LATIN_THRESHOLD:
        if cjk_total > rtl_cyrillic_total:
            return CHARS_PER_TOKEN_CJK
        return CHARS_PER_TOKEN_RTL_CYRILLIC
    return CHARS_PER_TOKEN_LATIN


def estimate_tokens(text: str) -> int:
    """Cheap estimate from the script-aware ratio."""
    return max(1, int(len(text) / estimate_chars_per_token(text)))


@lru_cache(maxsize=16)
def _get_encoding(model: str) -> tiktoken.Encoding:
    try:
        return tiktoken.encoding_for_model(model)
    except KeyError:
        return tiktoken.get_encoding(_FALLBACK_ENCODING)


def count_tokens(text: str, model: str = "gpt-4o") -> int:
    """Exact token count with the model's tiktoken encoding."""
    return len(_get_encoding(model).encode(text, disallowed_special=()))
