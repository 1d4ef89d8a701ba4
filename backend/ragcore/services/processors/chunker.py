"""
Content Chunking Service

This module splits normalized text into overlapping, boundary-respecting
chunks sized for embedding and retrieval.

Chunking Strategy:
------------------
1. Split text into lexical units (whitespace-delimited runs) with char offsets
2. Price each unit with a pluggable token estimator (tiktoken or 1-per-word).
   A unit priced above ``max_tokens`` (a long URL or base64 blob) is cut into
   character slices that each fit the window
3. Slide a window of ``max_tokens`` with ``overlap_tokens`` shared between
   consecutive chunks
4. In sentence/paragraph mode, snap the window end back to the nearest
   boundary within ``boundary_tolerance`` tokens (hard cut if none). After a
   snapped cut the overlap is snapped as well, so it only ever contains whole
   sentences (or collapses to 0)
5. Merge a trailing remainder shorter than ``min_chunk_tokens`` into the
   previous chunk

Image and audio units are chunked identically from their derived text.

Configuration from settings:
- CHUNK_SIZE_TOKENS: 512 (default)
- CHUNK_OVERLAP_TOKENS: 64 (default)
- CHUNK_BOUNDARY_MODE: sentence (default)
- CHUNK_BOUNDARY_TOLERANCE_RATIO / CHUNK_MIN_TOKENS_RATIO: 0.25 of max_tokens
"""

import math
import re
from typing import Literal, Optional, Sequence

import tiktoken

from ragcore.core.config import settings
from ragcore.core.exceptions import ChunkingConfigError
from ragcore.core.logging import get_logger
from ragcore.schemas.content import ChunkSpan


logger = get_logger(__name__)

BoundaryMode = Literal["none", "sentence", "paragraph"]

_UNIT_PATTERN = re.compile(r"\S+")
# Sentence terminator, optionally followed by closing quotes/brackets
_SENTENCE_END = re.compile(r"[.!?…][\"'”’)\]]*$")
_PARAGRAPH_GAP = re.compile(r"\n[ \t\r\f\v]*\n")


# ========================================
# Token estimators
# ========================================

class WordTokenEstimator:
    """Every lexical unit costs exactly one token."""

    name = "word"

    def costs(self, units: Sequence[str]) -> list[int]:
        return [1] * len(units)

    def count_tokens(self, text: str) -> int:
        return len(_UNIT_PATTERN.findall(text))


class TiktokenEstimator:
    """
    Prices units with a tiktoken encoding (cl100k_base by default).

    Units are encoded independently, so the total can differ slightly from
    encoding the whole string at once. Every unit costs at least one token.
    """

    name = "tiktoken"

    def __init__(self, encoding_name: Optional[str] = None):
        self.encoding_name = encoding_name or settings.CHUNK_TIKTOKEN_ENCODING
        self.tokenizer = tiktoken.get_encoding(self.encoding_name)

    def costs(self, units: Sequence[str]) -> list[int]:
        if not units:
            return []
        encoded = self.tokenizer.encode_ordinary_batch(list(units))
        return [max(1, len(tokens)) for tokens in encoded]

    def count_tokens(self, text: str) -> int:
        """Count tokens in text using tiktoken."""
        return len(self.tokenizer.encode_ordinary(text))


def create_token_estimator(kind: Optional[str] = None):
    """Build the estimator named by CHUNK_TOKEN_ESTIMATOR."""
    kind = kind or settings.CHUNK_TOKEN_ESTIMATOR
    if kind == "word":
        return WordTokenEstimator()
    if kind == "tiktoken":
        return TiktokenEstimator()
    raise ChunkingConfigError(f"Unknown token estimator: {kind}")


# ========================================
# Chunker
# ========================================

class ContentChunker:
    """
    Deterministic, boundary-aware text chunker.

    The same input and configuration always produce the same spans.

    Usage:
    ------
    chunker = ContentChunker(max_tokens=256, overlap_tokens=32)
    for span in chunker.chunk(text):
        print(span.index, span.char_start, span.char_end)
    """

    def __init__(
        self,
        max_tokens: Optional[int] = None,
        overlap_tokens: Optional[int] = None,
        boundary_mode: Optional[BoundaryMode] = None,
        boundary_tolerance: Optional[int] = None,
        min_chunk_tokens: Optional[int] = None,
        estimator=None,
    ):
        """
        Initialize the chunker with configuration.

        Args:
            max_tokens: Max tokens per chunk (default from settings)
            overlap_tokens: Tokens shared by consecutive chunks (default from settings)
            boundary_mode: none, sentence or paragraph (default from settings)
            boundary_tolerance: How far back (in tokens) the end may snap
                (default ceil(max_tokens * CHUNK_BOUNDARY_TOLERANCE_RATIO))
            min_chunk_tokens: Trailing remainders below this are merged
                (default ceil(max_tokens * CHUNK_MIN_TOKENS_RATIO))
            estimator: Token estimator (default from CHUNK_TOKEN_ESTIMATOR)

        Raises:
            ChunkingConfigError: If the parameters are inconsistent
        """
        self.max_tokens = settings.CHUNK_SIZE_TOKENS if max_tokens is None else max_tokens
        self.overlap_tokens = (
            settings.CHUNK_OVERLAP_TOKENS if overlap_tokens is None else overlap_tokens
        )
        self.boundary_mode = boundary_mode or settings.CHUNK_BOUNDARY_MODE
        self.boundary_tolerance = (
            math.ceil(self.max_tokens * settings.CHUNK_BOUNDARY_TOLERANCE_RATIO)
            if boundary_tolerance is None else boundary_tolerance
        )
        self.min_chunk_tokens = (
            math.ceil(self.max_tokens * settings.CHUNK_MIN_TOKENS_RATIO)
            if min_chunk_tokens is None else min_chunk_tokens
        )
        self.estimator = estimator or create_token_estimator()

        self._validate(
            self.max_tokens, self.overlap_tokens, self.boundary_mode,
            self.boundary_tolerance, self.min_chunk_tokens,
        )

    @staticmethod
    def _validate(max_tokens, overlap_tokens, boundary_mode, tolerance, min_chunk) -> None:
        if max_tokens < 1:
            raise ChunkingConfigError(f"max_tokens must be >= 1, got {max_tokens}")
        if overlap_tokens < 0:
            raise ChunkingConfigError(f"overlap_tokens must be >= 0, got {overlap_tokens}")
        if overlap_tokens >= max_tokens:
            raise ChunkingConfigError(
                f"overlap_tokens ({overlap_tokens}) must be smaller than max_tokens ({max_tokens})",
                details={"max_tokens": max_tokens, "overlap_tokens": overlap_tokens},
            )
        if boundary_mode not in ("none", "sentence", "paragraph"):
            raise ChunkingConfigError(f"Unknown boundary mode: {boundary_mode}")
        if tolerance < 0 or min_chunk < 0:
            raise ChunkingConfigError("boundary_tolerance and min_chunk_tokens must be >= 0")

    def count_tokens(self, text: str) -> int:
        """
        Count tokens in text with the configured estimator.

        Args:
            text: Text to count tokens in

        Returns:
            Number of tokens
        """
        return self.estimator.count_tokens(text)

    def chunk(
        self,
        text: str,
        max_tokens: Optional[int] = None,
        overlap_tokens: Optional[int] = None,
        boundary_mode: Optional[BoundaryMode] = None,
    ) -> list[ChunkSpan]:
        """
        Split text into ordered chunk spans.

        Per-call overrides fall back to the instance configuration. Tolerance
        and floor scale with an overridden ``max_tokens``.

        Args:
            text: Normalized text to split
            max_tokens: Window size override
            overlap_tokens: Overlap override
            boundary_mode: Boundary mode override

        Returns:
            Chunk spans in index order; empty for empty/whitespace input
        """
        max_tok = self.max_tokens if max_tokens is None else max_tokens
        overlap = self.overlap_tokens if overlap_tokens is None else overlap_tokens
        mode = boundary_mode or self.boundary_mode
        if max_tokens is None:
            tolerance, floor = self.boundary_tolerance, self.min_chunk_tokens
        else:
            tolerance = math.ceil(max_tok * settings.CHUNK_BOUNDARY_TOLERANCE_RATIO)
            floor = math.ceil(max_tok * settings.CHUNK_MIN_TOKENS_RATIO)
        self._validate(max_tok, overlap, mode, tolerance, floor)

        units = [(m.start(), m.end()) for m in _UNIT_PATTERN.finditer(text or "")]
        if not units:
            return []

        costs = self.estimator.costs([text[s:e] for s, e in units])
        units, costs = self._split_oversized(text, units, costs, max_tok)
        cum = [0]
        for c in costs:
            cum.append(cum[-1] + c)

        n = len(units)
        sentence_b, paragraph_b = self._boundaries(text, units)

        # (start_unit, end_unit) pairs; end is exclusive
        windows: list[tuple[int, int]] = []
        start = 0
        while start < n:
            hard_end = self._hard_end(cum, start, max_tok)

            if hard_end >= n:
                if windows and cum[n] - cum[windows[-1][1]] < floor:
                    prev_start, _ = windows[-1]
                    windows[-1] = (prev_start, n)
                else:
                    windows.append((start, n))
                break

            end, snapped = hard_end, False
            if mode != "none":
                candidates = [paragraph_b, sentence_b] if mode == "paragraph" else [sentence_b]
                for boundary_set in candidates:
                    b = self._snap_back(cum, boundary_set, start, hard_end, tolerance)
                    if b is not None:
                        end, snapped = b, True
                        break

            windows.append((start, end))
            start = self._next_start(cum, sentence_b if snapped else None, start, end, overlap)

        spans = []
        for idx, (s, e) in enumerate(windows):
            char_start, char_end = units[s][0], units[e - 1][1]
            spans.append(ChunkSpan(
                index=idx,
                text=text[char_start:char_end],
                char_start=char_start,
                char_end=char_end,
                token_start=cum[s],
                token_end=cum[e],
            ))

        logger.debug(
            "text_chunked",
            chunk_count=len(spans),
            total_tokens=cum[n],
            max_tokens=max_tok,
            boundary_mode=mode,
        )
        return spans

    # ----------------------------------------
    # Window helpers
    # ----------------------------------------

    def _split_oversized(self, text: str, units, costs: list[int], max_tokens: int):
        """Replace every unit priced above ``max_tokens`` with character slices that fit."""
        if all(c <= max_tokens for c in costs):
            return units, costs

        split_units, split_costs = [], []
        for (s, e), cost in zip(units, costs):
            if cost <= max_tokens:
                split_units.append((s, e))
                split_costs.append(cost)
                continue
            while s < e:
                q = self._longest_slice(text, s, e, max_tokens)
                split_units.append((s, q))
                split_costs.append(self.estimator.costs([text[s:q]])[0])
                s = q

        logger.debug(
            "oversized_units_split",
            unit_count=len(units),
            split_unit_count=len(split_units),
            max_tokens=max_tokens,
        )
        return split_units, split_costs

    def _longest_slice(self, text: str, start: int, end: int, max_tokens: int) -> int:
        """Binary search for the longest text[start:q] within max_tokens (at least one char)."""
        lo, hi = start + 1, end
        while lo < hi:
            mid = (lo + hi + 1) // 2
            if self.estimator.costs([text[start:mid]])[0] <= max_tokens:
                lo = mid
            else:
                hi = mid - 1
        return lo

    @staticmethod
    def _hard_end(cum: list[int], start: int, max_tokens: int) -> int:
        """Largest end with cum[end] - cum[start] <= max_tokens (at least start + 1)."""
        end = start + 1
        n = len(cum) - 1
        while end < n and cum[end + 1] - cum[start] <= max_tokens:
            end += 1
        return end

    @staticmethod
    def _snap_back(cum, boundaries: set[int], start: int, hard_end: int, tolerance: int) -> Optional[int]:
        """Nearest boundary at or before hard_end that gives up at most ``tolerance`` tokens."""
        b = hard_end
        while b > start and cum[hard_end] - cum[b] <= tolerance:
            if b in boundaries:
                return b
            b -= 1
        return None

    @staticmethod
    def _next_start(cum, boundaries: Optional[set[int]], start: int, end: int, overlap: int) -> int:
        """
        Start of the next window: the earliest unit that keeps the shared
        tokens within ``overlap``. After a snapped cut the start must also be
        a boundary, so partial sentences never repeat.
        """
        j = start + 1
        while j < end and cum[end] - cum[j] > overlap:
            j += 1
        if boundaries is not None:
            while j < end and j not in boundaries:
                j += 1
        return j

    @staticmethod
    def _boundaries(text: str, units: list[tuple[int, int]]) -> tuple[set[int], set[int]]:
        """
        Cut positions (unit indices) that fall on sentence/paragraph breaks.

        Position i means "between unit i-1 and unit i". Paragraph breaks are
        also sentence breaks. The end of the text is both.
        """
        n = len(units)
        sentence, paragraph = {n}, {n}
        for i in range(1, n):
            prev_start, prev_end = units[i - 1]
            gap = text[prev_end:units[i][0]]
            if not gap:
                # slices of one oversized unit
                continue
            if _PARAGRAPH_GAP.search(gap):
                paragraph.add(i)
                sentence.add(i)
            elif _SENTENCE_END.search(text[prev_start:prev_end]):
                sentence.add(i)
        return sentence, paragraph

