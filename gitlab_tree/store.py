"""
Aggregation state: the current flat data, its derived tree and the view state around it.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Set

from .filters import (
    FilterQuery,
    SearchSnippet,
    apply_filters,
    epic_search_snippet,
    issue_search_snippet,
)
from .hierarchy_builder import HierarchyBuilder
from .label_parser import LabelParser, all_assignees
from .models import (
    SNAPSHOT_VERSION,
    Assignee,
    Epic,
    FlatData,
    Group,
    Issue,
    Project,
    TreeGroup,
    collect_all_keys,
)

logger = logging.getLogger(__name__)

STORAGE_KEY = 'gitlab-data'

# Cached snapshots older than this are discarded
CACHE_MAX_AGE = 60 * 60


class AggregationState:
    """
    Holds the flat record sets of the last fetch cycle.

    The tree is derived from the flat data on demand and recomputed only
    after the data changed. Filtered views are derived from the tree and the
    current FilterQuery.
    """

    def __init__(
        self,
        cache=None,
        query: Optional[FilterQuery] = None,
        clock: Callable[[], float] = time.time,
        strict: bool = False
    ):
        """
        Initialize aggregation state.

        Args:
            cache: Optional CacheStore-like object for the data snapshot
            query: Filter query (a default one is created otherwise)
            clock: Time source in seconds, used for snapshot freshness
            strict: Raise on duplicate keys while building the tree
        """
        self.cache = cache
        self.query = query or FilterQuery()
        self.clock = clock
        self.strict = strict

        self.data = FlatData()
        self.expanded: Set[str] = set()
        self.builder: Optional[HierarchyBuilder] = None
        self._tree: Optional[List[TreeGroup]] = None

    @property
    def groups(self) -> List[Group]:
        return self.data.groups

    @property
    def projects(self) -> List[Project]:
        return self.data.projects

    @property
    def epics(self) -> List[Epic]:
        return self.data.epics

    @property
    def issues(self) -> List[Issue]:
        return self.data.issues

    @property
    def has_data(self) -> bool:
        return bool(self.data.groups)

    def set_data(
        self,
        groups: List[Group],
        projects: List[Project],
        epics: List[Epic],
        issues: List[Issue],
        persist: bool = True
    ):
        """Replace all four record sets at once and persist a snapshot."""
        self.data = FlatData(
            groups=list(groups),
            projects=list(projects),
            epics=list(epics),
            issues=list(issues),
        )
        self._tree = None

        if persist and self.cache is not None:
            snapshot = {
                'version': SNAPSHOT_VERSION,
                'timestamp': self.clock(),
                **self.data.to_dict(),
            }
            self.cache.set(STORAGE_KEY, snapshot)

    def clear(self):
        """Drop the data, in memory and in the cache."""
        self.data = FlatData()
        self._tree = None
        self.builder = None
        self.expanded = set()
        if self.cache is not None:
            self.cache.remove(STORAGE_KEY)

    def reset(self):
        """Clear the data and restore default filters."""
        self.clear()
        self.query = FilterQuery()

    def load_from_cache(self) -> bool:
        """
        Restore the data from a cached snapshot.

        Snapshots of another version or older than CACHE_MAX_AGE are evicted.

        Returns:
            True if fresh data was loaded
        """
        if self.cache is None:
            return False

        snapshot = self.cache.get(STORAGE_KEY)
        if not isinstance(snapshot, dict):
            return False

        if snapshot.get('version') != SNAPSHOT_VERSION:
            logger.info("Cached data has an outdated format, discarding")
            self.cache.remove(STORAGE_KEY)
            return False

        age = self.clock() - snapshot.get('timestamp', 0)
        if age > CACHE_MAX_AGE:
            logger.info(f"Cached data is {age / 60:.0f} minutes old, discarding")
            self.cache.remove(STORAGE_KEY)
            return False

        data = FlatData.from_dict(snapshot)
        self.set_data(data.groups, data.projects, data.epics, data.issues, persist=False)
        logger.info(
            f"✓ Loaded cached data: {len(data.groups)} groups, {len(data.projects)} projects, "
            f"{len(data.epics)} epics, {len(data.issues)} issues"
        )
        return True

    def _rebuild(self):
        self.builder = HierarchyBuilder(strict=self.strict)
        self._tree = self.builder.build(
            self.data.groups, self.data.projects, self.data.epics, self.data.issues
        )

    @property
    def tree(self) -> List[TreeGroup]:
        """The canonical tree, rebuilt after each data change."""
        if self._tree is None:
            self._rebuild()
        return self._tree

    @property
    def unresolved_issues(self) -> List[Issue]:
        """Issues left out of the tree because their epic is out of reach."""
        if self._tree is None:
            self._rebuild()
        return self.builder.unresolved_issues

    @property
    def filtered_tree(self) -> List[TreeGroup]:
        return apply_filters(self.tree, self.query)

    # Filter option sets, computed from the unfiltered data

    def _label_parser(self) -> LabelParser:
        return LabelParser(self.query.enabled_scoped_keys)

    @property
    def all_labels(self) -> List[str]:
        return self._label_parser().all_labels(self.data.epics, self.data.issues)

    @property
    def all_scoped_label_keys(self) -> List[str]:
        return self._label_parser().scoped_label_keys(self.data.epics, self.data.issues)

    @property
    def scoped_label_values(self) -> Dict[str, List[str]]:
        return self._label_parser().scoped_label_values(self.data.epics, self.data.issues)

    @property
    def active_scoped_keys(self) -> List[str]:
        return self._label_parser().active_scoped_keys(self.data.epics, self.data.issues)

    @property
    def all_assignees(self) -> List[Assignee]:
        return all_assignees(self.data.issues)

    def issue_snippet(self, issue: Issue) -> Optional[SearchSnippet]:
        return issue_search_snippet(issue, self.query)

    def epic_snippet(self, epic: Epic) -> Optional[SearchSnippet]:
        return epic_search_snippet(epic, self.query)

    # Expansion state of tree nodes

    def is_expanded(self, key: str) -> bool:
        return key in self.expanded

    def toggle_expanded(self, key: str):
        if key in self.expanded:
            self.expanded.discard(key)
        else:
            self.expanded.add(key)

    def expand_all(self):
        """Expand every node of the current filtered view."""
        keys: Set[str] = set()
        for tree_group in self.filtered_tree:
            keys.update(collect_all_keys(tree_group))
        self.expanded = keys

    def collapse_all(self):
        self.expanded = set()
