"""
Tree synthesis: turn flat groups, projects, epics and issues into a group tree.
"""

import logging
from typing import Callable, Dict, Hashable, List, Optional, Tuple, TypeVar

from .models import Epic, Group, Issue, Project, TreeEpic, TreeGroup, TreeProject

logger = logging.getLogger(__name__)

T = TypeVar('T')


class TreeIntegrityError(ValueError):
    """Raised in strict mode when the flat data contains duplicate keys."""


def _index(items: List[T], key_fn: Callable[[T], Hashable]) -> Dict[Hashable, List[T]]:
    """Bucket items by key, preserving input order inside each bucket."""
    buckets: Dict[Hashable, List[T]] = {}
    for item in items:
        buckets.setdefault(key_fn(item), []).append(item)
    return buckets


class HierarchyBuilder:
    """Build the group -> subgroup -> project -> epic -> issue tree."""

    def __init__(self, strict: bool = False):
        """
        Initialize hierarchy builder.

        Args:
            strict: Raise TreeIntegrityError on duplicate keys instead of
                keeping the first occurrence
        """
        self.strict = strict
        self.unresolved_issues: List[Issue] = []
        self.duplicates: Dict[str, List[Hashable]] = {}

        self._groups: List[Group] = []
        self._groups_by_id: Dict[int, Group] = {}
        self._children: Dict[Hashable, List[Group]] = {}
        self._projects_by_group: Dict[Hashable, List[Project]] = {}
        self._epics_by_group: Dict[Hashable, List[Epic]] = {}
        self._issues_by_project: Dict[Hashable, List[Issue]] = {}
        self._available_cache: Dict[int, List[Epic]] = {}

    def index(
        self,
        groups: List[Group],
        projects: List[Project],
        epics: List[Epic],
        issues: List[Issue]
    ):
        """Index the flat record sets. Called by build(); resets prior state."""
        self.unresolved_issues = []
        self.duplicates = {}
        self._available_cache = {}

        groups = self._dedupe('group', groups, lambda g: g.id)
        projects = self._dedupe('project', projects, lambda p: p.id)
        epics = self._dedupe('epic', epics, lambda e: e.id)
        # (group, iid) must identify a single epic
        epics = self._dedupe('epic iid', epics, lambda e: (e.group_id, e.iid))
        issues = self._dedupe('issue', issues, lambda i: i.id)

        self._groups = groups
        self._groups_by_id = {g.id: g for g in groups}
        self._children = _index(groups, lambda g: g.parent_id)
        self._projects_by_group = _index(projects, lambda p: p.namespace_id)
        self._epics_by_group = _index(epics, lambda e: e.group_id)
        self._issues_by_project = _index(issues, lambda i: i.project_id)

    def build(
        self,
        groups: List[Group],
        projects: List[Project],
        epics: List[Epic],
        issues: List[Issue]
    ) -> List[TreeGroup]:
        """
        Build the tree from flat record sets.

        Args:
            groups: All fetched groups
            projects: Projects, attributed by namespace id
            epics: Epics, attributed by group id
            issues: Issues, attributed by project id

        Returns:
            Root TreeGroups: groups without a parent or whose parent was not fetched
        """
        if not groups:
            self.index([], [], [], [])
            return []

        self.index(groups, projects, epics, issues)

        roots = [
            g for g in self._groups
            if g.parent_id is None or g.parent_id not in self._groups_by_id
        ]
        tree = [self._build_group(g) for g in roots]

        logger.debug(f"Built tree with {len(tree)} root groups from {len(self._groups)} groups")
        if self.unresolved_issues:
            logger.info(
                f"{len(self.unresolved_issues)} issues reference an epic outside "
                f"their group's ancestor chain and were left out of the tree"
            )
        return tree

    def ancestor_chain(self, group_id: int) -> List[int]:
        """
        Group ids from the group itself up to its root, nearest first.

        Stops at a parent that was not fetched, or at an already visited
        group when parent links form a cycle.
        """
        chain: List[int] = []
        visited = set()
        current: Optional[int] = group_id

        while current is not None and current in self._groups_by_id:
            if current in visited:
                logger.warning(f"Cycle in group parent links at group {current}")
                break
            visited.add(current)
            chain.append(current)
            current = self._groups_by_id[current].parent_id

        return chain

    def available_epics(self, group_id: int) -> List[Epic]:
        """
        Epics usable by issues of projects in this group.

        The union of the group's own epics and those of all its ancestors,
        ordered from the root ancestor down to the group itself.
        """
        if group_id in self._available_cache:
            return self._available_cache[group_id]

        result: List[Epic] = []
        seen = set()
        for gid in reversed(self.ancestor_chain(group_id)):
            for epic in self._epics_by_group.get(gid, []):
                if epic.id in seen:
                    continue
                seen.add(epic.id)
                result.append(epic)

        self._available_cache[group_id] = result
        return result

    def _resolve_epic(
        self,
        issue: Issue,
        chain: List[int],
        epics_by_key: Dict[Tuple[int, int], Epic]
    ) -> Optional[Epic]:
        if issue.epic_group_id is not None:
            return epics_by_key.get((issue.epic_group_id, issue.epic_iid))

        # Without the owning group, the nearest group carrying the iid wins
        for gid in chain:
            epic = epics_by_key.get((gid, issue.epic_iid))
            if epic:
                return epic
        return None

    def _build_project(self, project: Project, group_id: int) -> TreeProject:
        available = self.available_epics(group_id)
        chain = self.ancestor_chain(group_id)
        epics_by_key = {(e.group_id, e.iid): e for e in available}

        by_epic: Dict[int, List[Issue]] = {}
        no_epic: List[Issue] = []

        for issue in self._issues_by_project.get(project.id, []):
            if issue.epic_iid is None:
                no_epic.append(issue)
                continue

            epic = self._resolve_epic(issue, chain, epics_by_key)
            if epic is None:
                logger.debug(
                    f"Issue {issue.key} references epic #{issue.epic_iid} "
                    f"not reachable from group {group_id}"
                )
                self.unresolved_issues.append(issue)
                continue
            by_epic.setdefault(epic.id, []).append(issue)

        tree_epics = [
            TreeEpic(epic=epic, issues=by_epic[epic.id])
            for epic in available
            if epic.id in by_epic
        ]
        if no_epic:
            tree_epics.append(TreeEpic(epic=None, issues=no_epic))

        self._check_unique(f"epics of project {project.id}", tree_epics, lambda te: te.key)
        return TreeProject(project=project, epics=tree_epics)

    def _build_group(self, group: Group) -> TreeGroup:
        projects = [
            self._build_project(p, group.id)
            for p in self._projects_by_group.get(group.id, [])
        ]
        subgroups = [self._build_group(g) for g in self._children.get(group.id, [])]
        return TreeGroup(group=group, subgroups=subgroups, projects=projects)

    def _dedupe(self, label: str, items: List[T], key_fn: Callable[[T], Hashable]) -> List[T]:
        seen = set()
        result: List[T] = []
        for item in items:
            key = key_fn(item)
            if key in seen:
                self._report_duplicate(label, key)
                continue
            seen.add(key)
            result.append(item)
        return result

    def _check_unique(self, label: str, items: List[T], key_fn: Callable[[T], Hashable]):
        seen = set()
        for item in items:
            key = key_fn(item)
            if key in seen:
                self._report_duplicate(label, key)
            seen.add(key)

    def _report_duplicate(self, label: str, key: Hashable):
        self.duplicates.setdefault(label, []).append(key)
        if self.strict:
            raise TreeIntegrityError(f"Duplicate {label} key: {key}")
        logger.warning(f"Duplicate {label} key {key}, keeping first occurrence")


def build_tree(
    groups: List[Group],
    projects: List[Project],
    epics: List[Epic],
    issues: List[Issue],
    strict: bool = False
) -> List[TreeGroup]:
    """Build the tree in one call. See HierarchyBuilder.build."""
    return HierarchyBuilder(strict=strict).build(groups, projects, epics, issues)
