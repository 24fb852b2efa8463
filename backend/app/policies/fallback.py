"""Keyword-overlap scoring used when the embedding provider is unavailable."""

import re

_WORD_RE = re.compile(r"[a-z0-9']+")

# Shorter content words ("a", "of") would otherwise match inside most query words
_MIN_REVERSE_MATCH = 3


def keyword_relevance(query: str, content: str) -> float:
    """Fraction of query words that match some content word.

    A query word matches when it is a substring of a content word, or a
    content word (3+ characters) is a substring of it. The score is capped
    at 1.0 and is 0.0 for an empty query.
    """
    query_words = _WORD_RE.findall(query.lower())
    if not query_words:
        return 0.0

    content_words = set(_WORD_RE.findall(content.lower()))

    matches = 0
    for query_word in query_words:
        if any(
            query_word in word or (len(word) >= _MIN_REVERSE_MATCH and word in query_word)
            for word in content_words
        ):
            matches += 1

    return min(matches / len(query_words), 1.0)
