"""
Text Search Helpers

Shared text handling for the lexical side of retrieval:

- tokenize(): lowercase word tokens for the in-memory BM25 index and for
  the ranking engine's query analysis
- prepare_search_query(): user query -> PostgreSQL tsquery string
- clean_text_for_search(): strip markup/URLs before indexing

Both lexical backends (BM25 in memory, tsvector/ts_rank in PostgreSQL)
analyze text through these helpers so queries behave the same way on each.
"""

import re
from typing import Literal


_TOKEN_PATTERN = re.compile(r"[\w']+", re.UNICODE)
_TSQUERY_UNSAFE = re.compile(r"[^\w\s&|!]")
_OPERATORS = {"and": "&", "&": "&", "or": "|", "|": "|", "not": "!", "!": "!"}


def tokenize(text: str) -> list[str]:
    """
    Split text into lowercase word tokens.

    Apostrophes stay inside words ("don't"), possessive 's is dropped.

    Examples:
        "The Cat's hat!" -> ["the", "cat", "hat"]
    """
    if not text:
        return []
    tokens = []
    for match in _TOKEN_PATTERN.finditer(text.lower()):
        token = match.group(0).strip("'")
        if token.endswith("'s"):
            token = token[:-2]
        if token:
            tokens.append(token)
    return tokens


def prepare_search_query(
    query_text: str,
    use_prefix_matching: bool = True,
    default_operator: Literal["&", "|"] = "&",
) -> str:
    """
    Prepare user query for full-text search.

    Transforms user query into PostgreSQL tsquery format:
    - Splits on whitespace
    - Joins bare words with ``default_operator``
    - Honours explicit AND / OR / NOT
    - Optionally adds prefix matching (:*)

    Args:
        query_text: User's search query
        use_prefix_matching: Enable prefix matching (e.g., "hook" matches "hooks")
        default_operator: Operator inserted between words without one

    Returns:
        Formatted tsquery string ("" when nothing searchable remains)

    Examples:
        "react hooks" -> "react:* & hooks:*"
        "react OR hooks" -> "react:* | hooks:*"
        "react hooks" (default_operator="|") -> "react:* | hooks:*"
    """
    if not query_text or not query_text.strip():
        return ""

    words = _TSQUERY_UNSAFE.sub(" ", query_text.strip()).split()

    parts: list[str] = []
    for raw in words:
        word = raw.lower()
        op = _OPERATORS.get(word)
        if op is not None:
            # Drop leading binary operators and repeated operators
            if op in ("&", "|") and (not parts or parts[-1] in ("&", "|", "!")):
                continue
            parts.append(op)
            continue

        term = f"{word}:*" if use_prefix_matching else word
        if parts and parts[-1] not in ("&", "|", "!"):
            parts.append(default_operator)
        elif parts and parts[-1] == "!" and len(parts) > 1 and parts[-2] not in ("&", "|"):
            parts.insert(len(parts) - 1, "&")
        parts.append(term)

    # A trailing operator would make the tsquery invalid
    while parts and parts[-1] in ("&", "|", "!"):
        parts.pop()

    return " ".join(parts)


def clean_text_for_search(text: str) -> str:
    """
    Clean text before indexing.

    Removes:
    - HTML tags
    - URLs
    - Email addresses
    - Excessive whitespace

    Args:
        text: Text to clean

    Returns:
        Cleaned text
    """
    if not text:
        return ""

    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"https?://\S+", " ", text)
    text = re.sub(r"\S+@\S+", " ", text)
    text = re.sub(r"\s+", " ", text)

    return text.strip()
