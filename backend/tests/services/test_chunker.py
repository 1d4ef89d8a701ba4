"""
Tests for ContentChunker.

This test module verifies:
1. Configuration validation
2. Sentence-aware windows (overlap collapses to whole sentences)
3. Paragraph mode and hard cuts
4. Coverage, ordering and offsets
5. Trailing remainder merge
6. Units priced above the window
7. Reassembly and overlap properties over varied texts
"""

import math

import pytest

from ragcore.core.exceptions import ChunkingConfigError
from ragcore.services.processors.chunker import (
    ContentChunker,
    WordTokenEstimator,
    create_token_estimator,
)


def make_chunker(**kwargs) -> ContentChunker:
    kwargs.setdefault("estimator", WordTokenEstimator())
    return ContentChunker(**kwargs)


class CharTokenEstimator:
    """Roughly four characters per token, like subword tokenizers on Latin text."""

    name = "chars"

    def costs(self, units):
        return [max(1, math.ceil(len(u) / 4)) for u in units]

    def count_tokens(self, text):
        return sum(self.costs(text.split()))


class TestContentChunkerBasics:
    """Test basic ContentChunker functionality."""

    def test_initialization(self):
        """Test ContentChunker initialization with custom settings."""
        chunker = make_chunker(max_tokens=100, overlap_tokens=10, boundary_mode="paragraph")
        assert chunker.max_tokens == 100
        assert chunker.overlap_tokens == 10
        assert chunker.boundary_mode == "paragraph"
        assert chunker.boundary_tolerance == 25
        assert chunker.min_chunk_tokens == 25

    def test_overlap_must_be_smaller_than_window(self):
        """Overlap equal to or larger than the window is a configuration error."""
        with pytest.raises(ChunkingConfigError):
            make_chunker(max_tokens=10, overlap_tokens=10)
        with pytest.raises(ChunkingConfigError):
            make_chunker(max_tokens=10, overlap_tokens=-1)

    def test_per_call_overrides_are_validated(self):
        """Overrides passed to chunk() get the same validation."""
        chunker = make_chunker(max_tokens=10, overlap_tokens=2)
        with pytest.raises(ChunkingConfigError):
            chunker.chunk("a b c", max_tokens=2, overlap_tokens=5)

    def test_unknown_boundary_mode(self):
        """Unknown boundary modes are rejected."""
        with pytest.raises(ChunkingConfigError):
            make_chunker(max_tokens=10, overlap_tokens=2, boundary_mode="words")

    def test_unknown_estimator(self):
        """Unknown estimator names are rejected."""
        with pytest.raises(ChunkingConfigError):
            create_token_estimator("bytes")

    def test_count_tokens(self):
        """Word estimator counts whitespace-delimited units."""
        chunker = make_chunker(max_tokens=10, overlap_tokens=2)
        assert chunker.count_tokens("Hello world") == 2
        assert chunker.count_tokens("  ") == 0

    def test_empty_text(self):
        """Empty and whitespace-only text produce no chunks."""
        chunker = make_chunker(max_tokens=10, overlap_tokens=2)
        assert chunker.chunk("") == []
        assert chunker.chunk("   \n\t ") == []


class TestSentenceBoundaries:
    """Sentence-aware windows."""

    def test_short_sentences_collapse_overlap(self):
        """Each sentence becomes one chunk and no text repeats."""
        chunker = make_chunker(max_tokens=4, overlap_tokens=1, boundary_mode="sentence")
        text = "The cat sat. The dog ran. The bird flew."

        spans = chunker.chunk(text)

        assert [s.text for s in spans] == ["The cat sat.", "The dog ran.", "The bird flew."]
        for prev, nxt in zip(spans, spans[1:]):
            assert prev.token_end == nxt.token_start

    def test_overlap_without_boundaries(self):
        """Mode none keeps a fixed token overlap between windows."""
        chunker = make_chunker(max_tokens=4, overlap_tokens=1, boundary_mode="none")
        text = "one two three four five six seven eight nine ten"

        spans = chunker.chunk(text)

        assert [s.text for s in spans] == [
            "one two three four",
            "four five six seven",
            "seven eight nine ten",
        ]
        for prev, nxt in zip(spans, spans[1:]):
            assert prev.token_end - nxt.token_start == 1

    def test_hard_cut_when_no_boundary_in_reach(self):
        """A sentence longer than the window is cut at the token limit."""
        chunker = make_chunker(max_tokens=4, overlap_tokens=0, boundary_mode="sentence")
        text = "alpha beta gamma delta epsilon zeta eta theta"

        spans = chunker.chunk(text)

        assert [s.token_count for s in spans] == [4, 4]

    def test_paragraph_mode_prefers_paragraph_breaks(self):
        """Paragraph mode snaps to the blank line; sentence mode to the period."""
        text = "Alpha beta.\n\nGamma delta. Epsilon zeta."

        paragraph = make_chunker(
            max_tokens=5, overlap_tokens=1, boundary_mode="paragraph", boundary_tolerance=3
        ).chunk(text)
        sentence = make_chunker(
            max_tokens=5, overlap_tokens=1, boundary_mode="sentence", boundary_tolerance=3
        ).chunk(text)

        assert [s.text for s in paragraph] == ["Alpha beta.", "Gamma delta. Epsilon zeta."]
        assert sentence[0].text == "Alpha beta.\n\nGamma delta."


class TestChunkInvariants:
    """Coverage, order and offsets."""

    TEXT = (
        "Retrieval systems split documents into chunks. Each chunk is embedded once. "
        "Queries are embedded at search time! Does the ranking use lexical signals? "
        "It does, and usage counts as well.\n\nA second paragraph starts here. "
        "It repeats a few words so that lexical matching has something to find."
    )

    def test_indices_dense_and_offsets_match_text(self):
        """Indices run 0..n-1 and each span's text is the slice it claims."""
        chunker = make_chunker(max_tokens=10, overlap_tokens=3)
        spans = chunker.chunk(self.TEXT)

        assert [s.index for s in spans] == list(range(len(spans)))
        for span in spans:
            assert self.TEXT[span.char_start:span.char_end] == span.text
            assert span.token_count > 0

    def test_every_word_is_covered(self):
        """Every word of the source appears in at least one chunk."""
        chunker = make_chunker(max_tokens=10, overlap_tokens=3)
        spans = chunker.chunk(self.TEXT)

        covered = set()
        for span in spans:
            covered.update(range(span.token_start, span.token_end))
        assert covered == set(range(len(self.TEXT.split())))

    def test_offsets_strictly_increase(self):
        """Chunks move forward through the text."""
        chunker = make_chunker(max_tokens=8, overlap_tokens=2, boundary_mode="none")
        spans = chunker.chunk(self.TEXT)

        for prev, nxt in zip(spans, spans[1:]):
            assert nxt.char_start > prev.char_start
            assert nxt.token_start > prev.token_start

    def test_deterministic(self):
        """Same input and configuration give the same spans."""
        chunker = make_chunker(max_tokens=9, overlap_tokens=2)
        assert chunker.chunk(self.TEXT) == chunker.chunk(self.TEXT)

    def test_trailing_remainder_merged(self):
        """A tail shorter than min_chunk_tokens joins the previous chunk."""
        chunker = make_chunker(max_tokens=4, overlap_tokens=0, boundary_mode="none", min_chunk_tokens=2)
        spans = chunker.chunk("a b c d e f g h i")

        assert len(spans) == 2
        assert spans[-1].text == "e f g h i"

    def test_per_call_window(self):
        """chunk(max_tokens=...) overrides the instance window."""
        chunker = make_chunker(max_tokens=100, overlap_tokens=0, boundary_mode="none")
        text = " ".join(f"w{i}" for i in range(20))

        assert len(chunker.chunk(text)) == 1
        assert len(chunker.chunk(text, max_tokens=5)) == 4



class TestOversizedUnits:
    """Units that cost more than a whole window on their own."""

    def test_long_run_is_sliced_to_fit(self):
        """A 400-char run without spaces is cut into window-sized slices."""
        chunker = ContentChunker(
            max_tokens=16, overlap_tokens=2, boundary_mode="sentence",
            boundary_tolerance=4, min_chunk_tokens=4, estimator=CharTokenEstimator(),
        )
        run = "x" * 400
        text = f"Intro words here. {run}"

        spans = chunker.chunk(text)

        assert spans[0].text == "Intro words here."
        assert "".join(s.text for s in spans[1:]) == run
        for span in spans:
            assert span.token_count <= 16
            assert chunker.count_tokens(span.text) <= 16
            assert text[span.char_start:span.char_end] == span.text
        assert [s.index for s in spans] == list(range(len(spans)))

    def test_slices_are_not_sentence_boundaries(self):
        """A period inside a sliced run does not count as a sentence end."""
        chunker = ContentChunker(
            max_tokens=4, overlap_tokens=1, boundary_mode="sentence",
            boundary_tolerance=4, min_chunk_tokens=0, estimator=CharTokenEstimator(),
        )
        text = "a." * 20

        spans = chunker.chunk(text)

        assert "".join(s.text for s in spans) == text
        assert all(s.token_count <= 4 for s in spans)

        sentence, _ = ContentChunker._boundaries("a.b.", [(0, 2), (2, 4)])
        assert sentence == {2}

    def test_word_estimator_never_splits(self):
        """One token per word means no unit is ever above the window."""
        chunker = make_chunker(max_tokens=2, overlap_tokens=0, boundary_mode="none", min_chunk_tokens=0)

        spans = chunker.chunk("x" * 50 + " y")

        assert [s.text for s in spans] == ["x" * 50 + " y"]


PROSE = TestChunkInvariants.TEXT
RUN_ON = " ".join(f"word{i}" for i in range(57))
SHORT_SENTENCES = "Go. Stop now. Wait right here. Run away from it. " * 6
PARAGRAPHS = "\n\n".join(
    f"Item {i} has a short note. It ends here after a few more words." for i in range(8)
)
TINY = "Just three words"


def reassemble(spans) -> list[str]:
    """Concatenate chunk words in index order, dropping each chunk's overlap."""
    words: list[str] = []
    for span in spans:
        assert span.token_start <= len(words), "gap between chunks"
        words.extend(span.text.split()[len(words) - span.token_start:])
    return words


@pytest.mark.parametrize("mode", ["none", "sentence", "paragraph"])
@pytest.mark.parametrize("max_tokens,overlap", [(6, 0), (8, 2), (12, 5)])
@pytest.mark.parametrize(
    "text",
    [PROSE, RUN_ON, SHORT_SENTENCES, PARAGRAPHS, TINY],
    ids=["prose", "run_on", "short_sentences", "paragraphs", "tiny"],
)
class TestChunkProperties:
    """Properties that hold for every text, window and boundary mode."""

    def test_reassembly_reproduces_text(self, text, max_tokens, overlap, mode):
        """Chunks in index order, minus their overlap, give back the source words."""
        spans = make_chunker(max_tokens=max_tokens, overlap_tokens=overlap, boundary_mode=mode).chunk(text)

        assert reassemble(spans) == text.split()
        assert [s.index for s in spans] == list(range(len(spans)))
        for span in spans:
            assert text[span.char_start:span.char_end] == span.text

    def test_overlap_within_tolerance(self, text, max_tokens, overlap, mode):
        """Shared tokens never exceed the overlap, and equal it without snapping."""
        chunker = make_chunker(max_tokens=max_tokens, overlap_tokens=overlap, boundary_mode=mode)
        spans = chunker.chunk(text)

        for prev, nxt in zip(spans, spans[1:]):
            shared = prev.token_end - nxt.token_start
            assert 0 <= shared <= overlap
            if mode == "none":
                assert shared == overlap
            if shared:
                assert nxt.char_start < prev.char_end
            else:
                assert nxt.char_start >= prev.char_end

    def test_window_sizes(self, text, max_tokens, overlap, mode):
        """Full windows give up at most the tolerance; only the tail may absorb a remainder."""
        chunker = make_chunker(max_tokens=max_tokens, overlap_tokens=overlap, boundary_mode=mode)
        spans = chunker.chunk(text)

        for span in spans[:-1]:
            assert max_tokens - chunker.boundary_tolerance <= span.token_count <= max_tokens
            if mode == "none":
                assert span.token_count == max_tokens
        assert 0 < spans[-1].token_count < max_tokens + chunker.min_chunk_tokens
