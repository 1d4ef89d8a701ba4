"""
Lexical Index

Keyword retrieval behind one async interface:

- InMemoryLexicalIndex: Okapi BM25 over tokenized chunk text
- PgLexicalIndex (pg_lexical_index.py): PostgreSQL tsvector + ts_rank

Scores are "higher is better" and unbounded; the ranking engine
normalizes them per query.

Like the vector index, the in-memory index swaps immutable snapshots on
write so queries never wait for ingestion.
"""

import asyncio
import math
import threading
from abc import ABC, abstractmethod
from collections import Counter
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from pydantic import BaseModel, Field

from ragcore.core.config import settings
from ragcore.core.logging import get_logger
from ragcore.services.index.filters import matches_filters
from ragcore.services.processors.text_search import clean_text_for_search, tokenize


logger = get_logger(__name__)

LexicalItem = Tuple[str, str, Optional[Mapping[str, Any]]]


class LexicalCandidate(BaseModel):
    """One keyword hit."""

    chunk_id: str
    score: float
    metadata: Dict[str, Any] = Field(default_factory=dict)


class LexicalIndex(ABC):
    """Async interface shared by lexical backends."""

    @abstractmethod
    async def upsert(self, chunk_id: str, text: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        """Insert or replace one chunk's text."""

    @abstractmethod
    async def upsert_many(self, items: Iterable[LexicalItem]) -> int:
        """Insert or replace many chunks. Returns the count written."""

    @abstractmethod
    async def query(
        self,
        text: str,
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[LexicalCandidate]:
        """Top-``k`` chunks by descending relevance. Non-matching chunks are omitted."""

    @abstractmethod
    async def delete(self, chunk_id: str) -> bool:
        """Remove one chunk. Returns False when it was not present."""

    async def delete_many(self, chunk_ids: Iterable[str]) -> int:
        removed = 0
        for chunk_id in chunk_ids:
            if await self.delete(chunk_id):
                removed += 1
        return removed

    @abstractmethod
    async def count(self) -> int:
        """Number of indexed chunks."""

    async def health_check(self) -> bool:
        return True


class _LexicalSnapshot:
    """Immutable postings view."""

    __slots__ = ("postings", "lengths", "metadata", "total_length")

    def __init__(
        self,
        postings: Dict[str, Dict[str, int]],
        lengths: Dict[str, int],
        metadata: Dict[str, Dict[str, Any]],
        total_length: int,
    ):
        self.postings = postings
        self.lengths = lengths
        self.metadata = metadata
        self.total_length = total_length

    @property
    def avg_length(self) -> float:
        return self.total_length / len(self.lengths) if self.lengths else 0.0


class InMemoryLexicalIndex(LexicalIndex):
    """
    Okapi BM25 keyword index.

    score(q, d) = sum over query terms t of
        idf(t) * tf(t, d) * (k1 + 1) / (tf(t, d) + k1 * (1 - b + b * |d| / avgdl))
    idf(t) = ln(1 + (N - df(t) + 0.5) / (df(t) + 0.5))
    """

    def __init__(self, k1: Optional[float] = None, b: Optional[float] = None):
        self.k1 = settings.LEXICAL_BM25_K1 if k1 is None else k1
        self.b = settings.LEXICAL_BM25_B if b is None else b
        self._snapshot = _LexicalSnapshot({}, {}, {}, 0)
        self._write_lock = threading.Lock()
        # Term frequencies per chunk, owned by writers only
        self._terms: Dict[str, Counter] = {}

    async def upsert(self, chunk_id: str, text: str, metadata: Optional[Mapping[str, Any]] = None) -> None:
        await self.upsert_many([(chunk_id, text, metadata)])

    async def upsert_many(self, items: Iterable[LexicalItem]) -> int:
        prepared = [
            (chunk_id, Counter(tokenize(clean_text_for_search(text))), dict(metadata or {}))
            for chunk_id, text, metadata in items
        ]
        if not prepared:
            return 0
        await asyncio.to_thread(self._apply, prepared, ())
        return len(prepared)

    async def delete(self, chunk_id: str) -> bool:
        if chunk_id not in self._snapshot.lengths:
            return False
        return await asyncio.to_thread(self._apply, (), (chunk_id,)) > 0

    async def delete_many(self, chunk_ids: Iterable[str]) -> int:
        ids = tuple(chunk_ids)
        if not ids:
            return 0
        return await asyncio.to_thread(self._apply, (), ids)

    def _apply(self, upserts, deletes) -> int:
        with self._write_lock:
            current = self._snapshot
            postings = dict(current.postings)
            lengths = dict(current.lengths)
            metadata = dict(current.metadata)
            total = current.total_length
            copied: set[str] = set()

            def posting(term: str) -> Dict[str, int]:
                # Copy a posting list once per write before mutating it
                if term not in copied:
                    postings[term] = dict(postings.get(term, {}))
                    copied.add(term)
                return postings[term]

            def remove(chunk_id: str) -> bool:
                nonlocal total
                old_terms = self._terms.pop(chunk_id, None)
                if old_terms is None:
                    return False
                for term in old_terms:
                    plist = posting(term)
                    plist.pop(chunk_id, None)
                    if not plist:
                        del postings[term]
                        copied.discard(term)
                total -= lengths.pop(chunk_id, 0)
                metadata.pop(chunk_id, None)
                return True

            removed = sum(1 for chunk_id in deletes if remove(chunk_id))

            for chunk_id, terms, meta in upserts:
                remove(chunk_id)
                self._terms[chunk_id] = terms
                for term, tf in terms.items():
                    posting(term)[chunk_id] = tf
                length = sum(terms.values())
                lengths[chunk_id] = length
                metadata[chunk_id] = meta
                total += length

            self._snapshot = _LexicalSnapshot(postings, lengths, metadata, total)
            return removed

    async def query(
        self,
        text: str,
        k: int,
        filters: Optional[Mapping[str, Any]] = None,
    ) -> List[LexicalCandidate]:
        terms = tokenize(text)
        if not terms or k <= 0:
            return []
        snapshot = self._snapshot
        if not snapshot.lengths:
            return []
        return await asyncio.to_thread(self._search, snapshot, terms, k, filters)

    def _search(self, snapshot: _LexicalSnapshot, terms: List[str], k: int, filters) -> List[LexicalCandidate]:
        n_docs = len(snapshot.lengths)
        avgdl = snapshot.avg_length or 1.0
        scores: Dict[str, float] = {}

        for term in set(terms):
            plist = snapshot.postings.get(term)
            if not plist:
                continue
            df = len(plist)
            idf = math.log(1.0 + (n_docs - df + 0.5) / (df + 0.5))
            for chunk_id, tf in plist.items():
                norm = self.k1 * (1.0 - self.b + self.b * snapshot.lengths[chunk_id] / avgdl)
                scores[chunk_id] = scores.get(chunk_id, 0.0) + idf * tf * (self.k1 + 1.0) / (tf + norm)

        if filters:
            scores = {
                chunk_id: score for chunk_id, score in scores.items()
                if matches_filters(snapshot.metadata.get(chunk_id, {}), filters)
            }

        ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))[:k]
        return [
            LexicalCandidate(chunk_id=chunk_id, score=score, metadata=dict(snapshot.metadata.get(chunk_id, {})))
            for chunk_id, score in ranked
        ]

    async def count(self) -> int:
        return len(self._snapshot.lengths)

    def __len__(self) -> int:
        return len(self._snapshot.lengths)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._snapshot.lengths
