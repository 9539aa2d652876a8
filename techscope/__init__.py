"""
techscope

Terminal dashboard that pulls tech stories, groups near-duplicate titles into topics
and lets you browse and open them from the keyboard.

Pipeline: fetch (news, apps, feeds) → de-duplicate → cluster by title similarity →
interactive dashboard (navigate, open, refresh, help, menu, quit).
"""
from .clustering import cluster_items, extract_headline, title_similarity
from .dashboard import Command, DashboardController, DashboardState, Outcome
from .models import Cluster, ContentItem, ItemKind

__all__ = [
    "Cluster",
    "Command",
    "ContentItem",
    "DashboardController",
    "DashboardState",
    "ItemKind",
    "Outcome",
    "cluster_items",
    "extract_headline",
    "title_similarity",
]
