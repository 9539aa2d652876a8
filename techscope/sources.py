from __future__ import annotations

import html
import logging
import random
import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from time import struct_time
from typing import Any, Callable, Sequence

import feedparser
import requests
from dateutil import parser as date_parser

from .clustering import dedupe_by_id
from .models import ContentItem, ItemKind

logger = logging.getLogger(__name__)

HN_STORY_LISTS = (
    "https://hacker-news.firebaseio.com/v0/newstories.json",
    "https://hacker-news.firebaseio.com/v0/topstories.json",
)
HN_ITEM_URL = "https://hacker-news.firebaseio.com/v0/item/{id}.json"
DAILY_DEV_URL = "https://daily.dev/api/graphql"
DAILY_DEV_QUERY = """
query {
  page: sourceFeed(first: %d, ranking: POPULARITY, supportedTypes: [article]) {
    edges {
      node {
        id
        title
        permalink
        createdAt
        source {
          name
        }
        tags
      }
    }
  }
}
"""

HTTP_TIMEOUT = 10
MAX_LIMIT = 50
MAX_WORKERS = 8

VALID_SOURCES = ("news", "apps", "feeds")
DEFAULT_SOURCES = ("news", "apps")

HTML_TAG_RE = re.compile(r"<[^>]+>")
WHITESPACE_RE = re.compile(r"\s+")

SourceResult = tuple[list[ContentItem], str]


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def normalize_text(raw: Any) -> str:
    if raw is None:
        return ""
    if not isinstance(raw, str):
        raw = str(raw)
    unescaped = html.unescape(raw)
    no_html = HTML_TAG_RE.sub(" ", unescaped)
    return WHITESPACE_RE.sub(" ", no_html).strip()


def parse_date(raw: Any) -> datetime | None:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        parsed = raw
    elif isinstance(raw, (int, float)):
        try:
            return datetime.fromtimestamp(raw, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(raw, (tuple, struct_time)):
        try:
            return datetime(*list(raw)[:6], tzinfo=timezone.utc)
        except (TypeError, ValueError):
            return None
    else:
        try:
            parsed = date_parser.parse(str(raw))
        except (TypeError, ValueError, OverflowError):
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_sources(raw: str) -> tuple[str, ...]:
    if not raw.strip():
        return DEFAULT_SOURCES
    out: list[str] = []
    for part in raw.split(","):
        key = part.strip().lower()
        if not key:
            continue
        if key not in VALID_SOURCES:
            valid = ", ".join(VALID_SOURCES)
            raise ValueError(f"Unknown source '{part.strip()}'. Valid sources: {valid}")
        if key not in out:
            out.append(key)
    return tuple(out) or DEFAULT_SOURCES


def parse_feed_urls(raw: str) -> tuple[str, ...]:
    return tuple(piece.strip() for piece in raw.split(",") if piece.strip())


def apply_keyword_filter(items: list[ContentItem], keyword: str) -> list[ContentItem]:
    if not keyword.strip():
        return items
    lowered = keyword.strip().lower()
    return [item for item in items if lowered in item.title.lower()]


def _fetch_story_ids() -> list[int]:
    last_error = "no story list answered"
    for url in HN_STORY_LISTS:
        try:
            response = requests.get(url, timeout=HTTP_TIMEOUT)
            response.raise_for_status()
            story_ids = response.json()
        except (requests.RequestException, ValueError) as exc:
            last_error = str(exc)
            logger.debug("Story list %s unavailable: %s", url, exc)
            continue
        if isinstance(story_ids, list) and story_ids:
            return story_ids
    raise LookupError(last_error)


def _fetch_story(story_id: int) -> dict[str, Any] | None:
    try:
        response = requests.get(HN_ITEM_URL.format(id=story_id), timeout=HTTP_TIMEOUT)
        response.raise_for_status()
        story = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.debug("Story %s unavailable: %s", story_id, exc)
        return None
    return story if isinstance(story, dict) else None


def story_to_item(story: dict[str, Any]) -> ContentItem | None:
    title = normalize_text(story.get("title"))
    url = (story.get("url") or "").strip()
    if story.get("id") is None or not title or not url:
        return None
    return ContentItem(
        id=str(story["id"]),
        title=title,
        url=url,
        created_at=parse_date(story.get("time")) or now_utc(),
        source_name="Tech News",
        tags=(),
        kind=ItemKind.NEWS,
    )


def fetch_news_items(limit: int) -> SourceResult:
    """Sample ``limit`` fresh Hacker News stories; falls back to top stories."""
    try:
        story_ids = _fetch_story_ids()
    except LookupError as exc:
        logger.info("Tech news unavailable: %s", exc)
        return [], f"Tech news unavailable ({normalize_text(str(exc))[:120]})."

    selected = random.sample(story_ids, min(limit, len(story_ids)))
    with ThreadPoolExecutor(max_workers=MAX_WORKERS) as pool:
        stories = list(pool.map(_fetch_story, selected))

    items = [item for item in (story_to_item(s) for s in stories if s) if item]
    logger.debug("Fetched %d of %d sampled stories", len(items), len(selected))
    return items, ""


def node_to_item(node: dict[str, Any]) -> ContentItem | None:
    title = normalize_text(node.get("title"))
    url = (node.get("permalink") or "").strip()
    if not node.get("id") or not title or not url:
        return None
    source = node.get("source") or {}
    return ContentItem(
        id=str(node["id"]),
        title=title,
        url=url,
        created_at=parse_date(node.get("createdAt")) or now_utc(),
        source_name=normalize_text(source.get("name")) or "daily.dev",
        tags=tuple(str(tag) for tag in node.get("tags") or ()),
        kind=ItemKind.APP,
    )


def fetch_app_items(limit: int) -> SourceResult:
    """Pull popular posts from the daily.dev GraphQL feed."""
    try:
        response = requests.post(
            DAILY_DEV_URL,
            json={"query": DAILY_DEV_QUERY % limit},
            timeout=HTTP_TIMEOUT,
        )
        response.raise_for_status()
        payload = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.info("App feed unavailable: %s", exc)
        return [], f"App feed unavailable ({normalize_text(str(exc))[:120]})."

    edges = None
    if isinstance(payload, dict):
        edges = ((payload.get("data") or {}).get("page") or {}).get("edges")
    if not isinstance(edges, list):
        logger.warning("App feed returned an unexpected payload")
        return [], "App feed unavailable (invalid response format)."

    items = [item for item in (node_to_item(edge.get("node") or {}) for edge in edges) if item]
    return items[:limit], ""


def entry_to_item(entry: Any, feed_title: str) -> ContentItem | None:
    title = normalize_text(entry.get("title"))
    url = (entry.get("link") or "").strip()
    if not title or not url:
        return None
    published = parse_date(
        entry.get("published")
        or entry.get("updated")
        or entry.get("published_parsed")
        or entry.get("updated_parsed")
    )
    tags = tuple(tag.get("term", "") for tag in entry.get("tags", []) if tag.get("term"))
    return ContentItem(
        id=str(entry.get("id") or url),
        title=title,
        url=url,
        created_at=published or now_utc(),
        source_name=feed_title,
        tags=tags,
        kind=ItemKind.NEWS,
    )


def fetch_feed_items(feed_urls: Sequence[str], limit: int) -> SourceResult:
    """Read RSS/Atom feeds; a feed that fails to parse is skipped."""
    items: list[ContentItem] = []
    failed: list[str] = []
    for feed_url in feed_urls:
        parsed = feedparser.parse(feed_url)
        if parsed.bozo and not parsed.entries:
            logger.info("Feed %s unavailable: %s", feed_url, parsed.get("bozo_exception"))
            failed.append(feed_url)
            continue
        feed_title = normalize_text(parsed.feed.get("title")) or feed_url
        for entry in parsed.entries[:limit]:
            item = entry_to_item(entry, feed_title)
            if item is None:
                logger.debug("Skipping malformed entry in %s", feed_url)
                continue
            items.append(item)

    items.sort(key=lambda item: item.created_at, reverse=True)
    error = f"Feeds unavailable: {', '.join(failed)}." if failed else ""
    return items[:limit], error


def fetch_items(
    limit: int,
    sources: Sequence[str] = DEFAULT_SOURCES,
    feed_urls: Sequence[str] = (),
) -> tuple[list[ContentItem], list[str]]:
    """
    Fetch every selected source concurrently and join all of them.

    Never raises: a failing source contributes an error message instead of items,
    and the other sources are unaffected.
    """
    limit = max(1, min(MAX_LIMIT, limit))
    branches: list[tuple[str, Callable[[], SourceResult]]] = []
    if "news" in sources:
        branches.append(("news", lambda: fetch_news_items(limit)))
    if "apps" in sources:
        branches.append(("apps", lambda: fetch_app_items(limit)))
    if "feeds" in sources and feed_urls:
        branches.append(("feeds", lambda: fetch_feed_items(feed_urls, limit)))

    items: list[ContentItem] = []
    errors: list[str] = []
    if not branches:
        return items, errors

    with ThreadPoolExecutor(max_workers=len(branches)) as pool:
        futures = [(name, pool.submit(branch)) for name, branch in branches]
        for name, future in futures:
            try:
                branch_items, error = future.result()
            except Exception as exc:
                logger.exception("Source %s failed", name)
                errors.append(f"{name} source unavailable ({normalize_text(str(exc))[:120]}).")
                continue
            items.extend(branch_items)
            if error:
                errors.append(error)

    return dedupe_by_id(items), errors
