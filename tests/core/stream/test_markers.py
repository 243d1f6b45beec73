"""Tests for streaming citation-marker rewriting."""

import pytest

from chatpipe.core.stream.markers import MarkerState, feed, flush

MARKER_A = "【4:0†source】"
MARKER_B = "【4:1†source】"


def _stream(chunks: list[str], state: MarkerState | None = None) -> tuple[str, MarkerState]:
    state = state or MarkerState()
    out = []
    for chunk in chunks:
        state, emitted = feed(state, chunk)
        out.append(emitted)
    state, rest = flush(state)
    out.append(rest)
    return "".join(out), state


# ---------------------------------------------------------------------------
# Whole text in one chunk
# ---------------------------------------------------------------------------


class TestWholeText:
    def test_single_marker(self):
        text, state = _stream([f"Fact {MARKER_A}."])
        assert text == "Fact [1]."
        assert dict(state.numbers) == {MARKER_A: 1}

    def test_numbers_follow_first_appearance(self):
        text, _ = _stream([f"a{MARKER_B} b{MARKER_A} c{MARKER_B}"])
        assert text == "a[1] b[2] c[1]"

    def test_plain_brackets_untouched(self):
        text, state = _stream(["see [Note] and [3]"])
        assert text == "see [Note] and [3]"
        assert dict(state.numbers) == {}


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


class TestFeed:
    @pytest.mark.parametrize("split_at", range(1, len(MARKER_A)))
    def test_marker_split_once_matches_whole(self, split_at):
        whole, _ = _stream([f"x {MARKER_A} y"])
        chunks = ["x " + MARKER_A[:split_at], MARKER_A[split_at:] + " y"]
        split, _ = _stream(chunks)
        assert split == whole == "x [1] y"

    def test_marker_split_into_single_characters(self):
        text = f"one {MARKER_A} two {MARKER_B} three {MARKER_A}"
        split, state = _stream(list(text))
        whole, _ = _stream([text])
        assert split == whole == "one [1] two [2] three [1]"
        assert state.next_number == 3

    def test_partial_marker_is_buffered(self):
        state, emitted = feed(MarkerState(), "text 【4:0")
        assert emitted == "text "
        assert state.buffer == "【4:0"

    def test_flush_releases_unterminated_marker(self):
        state, _ = feed(MarkerState(), "end 【4:0†sou")
        state, rest = flush(state)
        assert rest == "【4:0†sou"
        assert state.buffer == ""

    def test_first_number_offsets_numbering(self):
        text, _ = _stream([f"web {MARKER_A}"], MarkerState(first_number=4))
        assert text == "web [4]"

    def test_state_is_not_shared_between_streams(self):
        _, first = _stream([MARKER_A])
        _, second = _stream([MARKER_B])
        assert dict(first.numbers) == {MARKER_A: 1}
        assert dict(second.numbers) == {MARKER_B: 1}
