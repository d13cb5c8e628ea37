"""
GitLab Tree Viewer

Aggregates a GitLab instance's groups, projects, epics and issues into one
hierarchical view that can be filtered, sorted and searched locally.
"""

__version__ = "1.0.0"
__author__ = "GitLab Tree Viewer"

from .extractor import HierarchyExtractor
from .database import CacheStore
from .filters import FilterQuery, apply_filters
from .gitlab_client import ClientConfig, GitLabClient
from .hierarchy_builder import build_tree
from .store import AggregationState

__all__ = [
    "HierarchyExtractor",
    "CacheStore",
    "FilterQuery",
    "apply_filters",
    "ClientConfig",
    "GitLabClient",
    "build_tree",
    "AggregationState",
]
