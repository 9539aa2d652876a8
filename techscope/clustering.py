from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

from .models import Cluster, ContentItem

logger = logging.getLogger(__name__)

SIMILARITY_THRESHOLD = 0.3
HEADLINE_MIN_LENGTH = 3
HEADLINE_WORDS = 3
HEADLINE_FALLBACK_CHARS = 30

NON_WORD_RE = re.compile(r"\W+")

STOPWORDS = frozenset(
    {
        "the", "and", "for", "with", "from", "this", "that", "will", "have", "been",
        "are", "was", "were", "but", "not", "you", "all", "can", "had", "her", "his",
        "how", "its", "may", "new", "now", "old", "see", "way", "who", "boy", "did",
        "has", "she", "use", "one", "our", "out", "day", "get", "man",
    }
)


def tokenize(title: str) -> set[str]:
    return {token for token in NON_WORD_RE.split(title.lower()) if token}


def title_similarity(first: str, second: str) -> float:
    """Jaccard index of the two titles' token sets; 0.0 when both are empty."""
    tokens_a = tokenize(first)
    tokens_b = tokenize(second)
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)


def extract_headline(
    title: str,
    stopwords: Iterable[str] = (),
    min_length: int = HEADLINE_MIN_LENGTH,
) -> str:
    excluded = {word.lower() for word in stopwords}
    words = [
        word
        for word in NON_WORD_RE.split(title)
        if len(word) > min_length and word.lower() not in excluded
    ]
    headline = " ".join(words[:HEADLINE_WORDS])
    return headline or title[:HEADLINE_FALLBACK_CHARS].strip()


def dedupe_by_id(items: Iterable[ContentItem]) -> list[ContentItem]:
    seen: set[str] = set()
    out: list[ContentItem] = []
    for item in items:
        if item.id in seen:
            continue
        seen.add(item.id)
        out.append(item)
    return out


def cluster_items(
    items: Sequence[ContentItem],
    threshold: float = SIMILARITY_THRESHOLD,
    mixed: bool = False,
) -> list[Cluster]:
    """
    Group items into topics by pairwise title similarity.

    Each unprocessed item, in input order, leads a cluster that absorbs every other
    unprocessed item scoring above ``threshold`` against it. The result is sorted by
    size, largest first; equal sizes keep their formation order.
    """
    unique = dedupe_by_id(items)
    processed: set[str] = set()
    formed: list[tuple[str, list[ContentItem]]] = []
    stopwords = STOPWORDS if mixed else ()

    for item in unique:
        if item.id in processed:
            continue
        similar = [
            other
            for other in unique
            if other.id != item.id
            and other.id not in processed
            and title_similarity(item.title, other.title) > threshold
        ]
        members = [item, *similar]
        processed.update(member.id for member in members)
        formed.append((extract_headline(item.title, stopwords), members))

    formed.sort(key=lambda entry: len(entry[1]), reverse=True)
    clusters = [
        Cluster(index=index, headline=headline, members=tuple(members))
        for index, (headline, members) in enumerate(formed)
    ]
    logger.debug("Clustered %d items into %d topics", len(unique), len(clusters))
    return clusters
