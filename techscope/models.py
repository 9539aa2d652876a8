from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ItemKind(str, Enum):
    NEWS = "news"
    APP = "app"


@dataclass(frozen=True)
class ContentItem:
    """
    A normalized piece of content pulled from one of the feed sources.

    Items are immutable once fetched; every refresh produces a new generation.
    """
    id: str
    title: str
    url: str
    created_at: datetime
    source_name: str
    tags: tuple[str, ...] = field(default_factory=tuple)
    kind: ItemKind = ItemKind.NEWS


@dataclass(frozen=True)
class Cluster:
    index: int
    headline: str
    members: tuple[ContentItem, ...]

    @property
    def lead(self) -> ContentItem:
        return self.members[0]

    def __len__(self) -> int:
        return len(self.members)
