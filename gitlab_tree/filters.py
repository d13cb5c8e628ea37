"""
Filtering, sorting and search over the synthesized tree.

Everything here is a pure function of a tree and a FilterQuery; the input
tree is never modified.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .label_parser import DEFAULT_SCOPED_KEYS, SCOPED_SEPARATOR
from .models import Epic, Issue, TreeEpic, TreeGroup, TreeProject

STATUS_FILTERS = ('all', 'opened', 'closed')
SORT_FIELDS = ('iid', 'title', 'status')
SORT_DIRECTIONS = ('asc', 'desc')

SNIPPET_CONTEXT_CHARS = 60
ELLIPSIS = '…'

_WHITESPACE = re.compile(r'\s+')


@dataclass
class FilterQuery:
    """Current filter, sort and scoped-column state."""

    search_text: str = ''
    selected_labels: List[str] = field(default_factory=list)
    selected_scoped_labels: Dict[str, List[str]] = field(default_factory=dict)
    status_filter: str = 'opened'
    selected_assignees: List[str] = field(default_factory=list)
    sort_field: str = 'iid'
    sort_direction: str = 'asc'
    sort_active: bool = False
    enabled_scoped_keys: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPED_KEYS))

    def __post_init__(self):
        if self.status_filter not in STATUS_FILTERS:
            raise ValueError(f"Unknown status filter: {self.status_filter}")
        if self.sort_field not in SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {self.sort_field}")
        if self.sort_direction not in SORT_DIRECTIONS:
            raise ValueError(f"Unknown sort direction: {self.sort_direction}")

    @property
    def has_scoped_filters(self) -> bool:
        return any(values for values in self.selected_scoped_labels.values())

    @property
    def is_unfiltered(self) -> bool:
        """True when no predicate would remove anything."""
        return (
            self.search_text == ''
            and not self.selected_labels
            and self.status_filter == 'all'
            and not self.selected_assignees
            and not self.has_scoped_filters
        )

    @property
    def is_default_sort(self) -> bool:
        return self.sort_field == 'iid' and self.sort_direction == 'asc'

    @property
    def has_active_filters(self) -> bool:
        """True when filters differ from their defaults (open issues only)."""
        return (
            self.search_text != ''
            or bool(self.selected_labels)
            or self.status_filter != 'opened'
            or bool(self.selected_assignees)
            or self.has_scoped_filters
        )

    def set_scoped_label_filter(self, key: str, values: List[str]):
        self.selected_scoped_labels = {**self.selected_scoped_labels, key: list(values)}

    def toggle_sort(self, sort_field: str):
        """Flip direction when the field is already active, else sort ascending by it."""
        if sort_field not in SORT_FIELDS:
            raise ValueError(f"Unknown sort field: {sort_field}")
        self.sort_active = True
        if self.sort_field == sort_field:
            self.sort_direction = 'desc' if self.sort_direction == 'asc' else 'asc'
        else:
            self.sort_field = sort_field
            self.sort_direction = 'asc'

    def clear_filters(self):
        """Reset filters to defaults; sort and scoped columns are kept."""
        self.search_text = ''
        self.selected_labels = []
        self.selected_scoped_labels = {}
        self.status_filter = 'opened'
        self.selected_assignees = []


@dataclass(frozen=True)
class SearchSnippet:
    before: str
    match: str
    after: str


def _contains(text: Optional[str], query: str) -> bool:
    return bool(text) and query.lower() in text.lower()


def matches_filters(issue: Issue, query: FilterQuery) -> bool:
    """Check an issue against every active predicate."""
    if query.search_text:
        if not (_contains(issue.title, query.search_text)
                or _contains(issue.description, query.search_text)):
            return False

    if query.status_filter != 'all' and issue.state != query.status_filter:
        return False

    if query.selected_labels and not any(l in issue.labels for l in query.selected_labels):
        return False

    if query.selected_assignees:
        usernames = {a.username for a in issue.assignees}
        if not any(u in usernames for u in query.selected_assignees):
            return False

    # OR within a key, AND across keys
    for key, values in query.selected_scoped_labels.items():
        if not values:
            continue
        if not any(f"{key}{SCOPED_SEPARATOR}{v}" in issue.labels for v in values):
            return False

    return True


def epic_matches_search(epic: Optional[Epic], query: FilterQuery) -> bool:
    if epic is None or not query.search_text:
        return False
    return _contains(epic.title, query.search_text) or _contains(epic.description, query.search_text)


def sort_issues(issues: List[Issue], sort_field: str = 'iid', direction: str = 'asc') -> List[Issue]:
    """Stable sort of issues; equal keys keep their input order in both directions."""
    if sort_field == 'iid':
        key = lambda issue: issue.iid
    elif sort_field == 'title':
        key = lambda issue: issue.title.casefold()
    elif sort_field == 'status':
        key = lambda issue: issue.state.casefold()
    else:
        raise ValueError(f"Unknown sort field: {sort_field}")

    return sorted(issues, key=key, reverse=(direction == 'desc'))


def _filter_epic(tree_epic: TreeEpic, query: FilterQuery) -> TreeEpic:
    issues = [i for i in tree_epic.issues if matches_filters(i, query)]
    issues = sort_issues(issues, query.sort_field, query.sort_direction)

    if query.search_text:
        title_matches = [i for i in issues if _contains(i.title, query.search_text)]
        description_only = [i for i in issues if not _contains(i.title, query.search_text)]
        issues = title_matches + description_only

    return TreeEpic(epic=tree_epic.epic, issues=issues)


def _filter_project(tree_project: TreeProject, query: FilterQuery) -> TreeProject:
    epics = [_filter_epic(te, query) for te in tree_project.epics]
    epics = [te for te in epics if te.issues or epic_matches_search(te.epic, query)]
    return TreeProject(project=tree_project.project, epics=epics)


def _filter_group(tree_group: TreeGroup, query: FilterQuery) -> TreeGroup:
    subgroups = [_filter_group(g, query) for g in tree_group.subgroups]
    subgroups = [g for g in subgroups if g.subgroups or g.projects]

    projects = [_filter_project(p, query) for p in tree_group.projects]
    projects = [p for p in projects if p.epics]

    return TreeGroup(group=tree_group.group, subgroups=subgroups, projects=projects)


def apply_filters(tree: List[TreeGroup], query: FilterQuery) -> List[TreeGroup]:
    """
    Derive the filtered, sorted view of a tree.

    Returns the very same list when nothing is filtered and the sort is the
    default one.
    """
    if query.is_unfiltered and query.is_default_sort:
        return tree

    groups = [_filter_group(g, query) for g in tree]
    return [g for g in groups if g.subgroups or g.projects]


def extract_snippet(text: str, query: str, context_chars: int = SNIPPET_CONTEXT_CHARS) -> Optional[SearchSnippet]:
    """
    Cut a snippet around the first case-insensitive occurrence of query.

    Whitespace runs are collapsed first. An ellipsis marks each side where
    text was cut off.
    """
    normalized = _WHITESPACE.sub(' ', text).strip()
    idx = normalized.lower().find(query.lower())
    if idx == -1:
        return None

    start = max(0, idx - context_chars)
    end = min(len(normalized), idx + len(query) + context_chars)

    return SearchSnippet(
        before=(ELLIPSIS if start > 0 else '') + normalized[start:idx],
        match=normalized[idx:idx + len(query)],
        after=normalized[idx + len(query):end] + (ELLIPSIS if end < len(normalized) else ''),
    )


def _description_snippet(title: str, description: Optional[str], query: FilterQuery) -> Optional[SearchSnippet]:
    if not query.search_text:
        return None
    if _contains(title, query.search_text):
        return None
    if not description:
        return None
    return extract_snippet(description, query.search_text)


def issue_search_snippet(issue: Issue, query: FilterQuery) -> Optional[SearchSnippet]:
    """Snippet for an issue that matched the search on its description only."""
    return _description_snippet(issue.title, issue.description, query)


def epic_search_snippet(epic: Epic, query: FilterQuery) -> Optional[SearchSnippet]:
    """Snippet for an epic that matched the search on its description only."""
    return _description_snippet(epic.title, epic.description, query)
