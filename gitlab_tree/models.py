"""
Data models for GitLab entities and the derived group/project/epic tree.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Key-value cache table used by database.CacheStore
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    stored_at REAL NOT NULL
);
"""

# Version of the flat data snapshot blob; bump when the shape changes
SNAPSHOT_VERSION = 1


@dataclass
class Group:
    """A GitLab group (or subgroup)."""

    id: int
    name: str
    full_path: str = ''
    web_url: str = ''
    parent_id: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Group':
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            full_path=data.get('full_path', ''),
            web_url=data.get('web_url', ''),
            parent_id=data.get('parent_id'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'full_path': self.full_path,
            'web_url': self.web_url,
            'parent_id': self.parent_id,
        }


@dataclass
class Project:
    """A GitLab project, attributed to the group that owns its namespace."""

    id: int
    name: str
    web_url: str = ''
    namespace_id: Optional[int] = None
    namespace_full_path: str = ''

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Project':
        namespace = data.get('namespace') or {}
        return cls(
            id=data['id'],
            name=data.get('name', ''),
            web_url=data.get('web_url', ''),
            namespace_id=namespace.get('id'),
            namespace_full_path=namespace.get('full_path', ''),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'web_url': self.web_url,
            'namespace': {'id': self.namespace_id, 'full_path': self.namespace_full_path},
        }


@dataclass
class Epic:
    """A GitLab epic. The iid is only unique inside the owning group."""

    id: int
    iid: int
    title: str
    group_id: int
    web_url: str = ''
    labels: List[str] = field(default_factory=list)
    state: str = 'opened'
    description: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Epic':
        return cls(
            id=data['id'],
            iid=data['iid'],
            title=data.get('title', ''),
            group_id=data['group_id'],
            web_url=data.get('web_url', ''),
            labels=list(data.get('labels') or []),
            state=data.get('state', 'opened'),
            description=data.get('description'),
        )

    @property
    def key(self) -> str:
        """Identity of the epic across groups."""
        return f"epic:{self.group_id}#{self.iid}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'iid': self.iid,
            'title': self.title,
            'group_id': self.group_id,
            'web_url': self.web_url,
            'labels': list(self.labels),
            'state': self.state,
            'description': self.description,
        }


@dataclass
class Assignee:
    name: str
    username: str
    avatar_url: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Assignee':
        return cls(
            name=data.get('name', ''),
            username=data['username'],
            avatar_url=data.get('avatar_url'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'username': self.username, 'avatar_url': self.avatar_url}


@dataclass
class Issue:
    """A GitLab issue with its optional epic reference."""

    id: int
    iid: int
    title: str
    project_id: int
    web_url: str = ''
    state: str = 'opened'
    labels: List[str] = field(default_factory=list)
    assignees: List[Assignee] = field(default_factory=list)
    epic_iid: Optional[int] = None
    epic_group_id: Optional[int] = None
    milestone: Optional[str] = None
    description: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Issue':
        # GitLab Premium embeds the epic; older payloads only carry epic_iid
        epic = data.get('epic') or {}
        epic_iid = data.get('epic_iid')
        if epic_iid is None:
            epic_iid = epic.get('iid')
        milestone = data.get('milestone')
        if isinstance(milestone, dict):
            milestone = milestone.get('title')
        return cls(
            id=data['id'],
            iid=data['iid'],
            title=data.get('title', ''),
            project_id=data['project_id'],
            web_url=data.get('web_url', ''),
            state=data.get('state', 'opened'),
            labels=list(data.get('labels') or []),
            assignees=[Assignee.from_api(a) for a in data.get('assignees') or []],
            epic_iid=epic_iid,
            epic_group_id=data.get('epic_group_id', epic.get('group_id')),
            milestone=milestone,
            description=data.get('description'),
        )

    @property
    def key(self) -> str:
        return f"issue:{self.project_id}#{self.iid}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'iid': self.iid,
            'title': self.title,
            'project_id': self.project_id,
            'web_url': self.web_url,
            'state': self.state,
            'labels': list(self.labels),
            'assignees': [a.to_dict() for a in self.assignees],
            'epic_iid': self.epic_iid,
            'epic_group_id': self.epic_group_id,
            'milestone': {'title': self.milestone} if self.milestone else None,
            'description': self.description,
        }


@dataclass
class TreeEpic:
    """An epic (or None for the "no epic" bucket) and the issues under it."""

    epic: Optional[Epic]
    issues: List[Issue] = field(default_factory=list)

    @property
    def key(self) -> Optional[int]:
        return self.epic.id if self.epic else None


@dataclass
class TreeProject:
    project: Project
    epics: List[TreeEpic] = field(default_factory=list)


@dataclass
class TreeGroup:
    group: Group
    subgroups: List['TreeGroup'] = field(default_factory=list)
    projects: List[TreeProject] = field(default_factory=list)


@dataclass
class FlatData:
    """The four flat record sets produced by one fetch cycle."""

    groups: List[Group] = field(default_factory=list)
    projects: List[Project] = field(default_factory=list)
    epics: List[Epic] = field(default_factory=list)
    issues: List[Issue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'groups': [g.to_dict() for g in self.groups],
            'projects': [p.to_dict() for p in self.projects],
            'epics': [e.to_dict() for e in self.epics],
            'issues': [i.to_dict() for i in self.issues],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FlatData':
        return cls(
            groups=[Group.from_api(g) for g in data.get('groups', [])],
            projects=[Project.from_api(p) for p in data.get('projects', [])],
            epics=[Epic.from_api(e) for e in data.get('epics', [])],
            issues=[Issue.from_api(i) for i in data.get('issues', [])],
        )


def count_issues(tree_group: TreeGroup) -> int:
    """Recursively count all issues in a tree group, subgroups included."""
    count = 0
    for tree_project in tree_group.projects:
        for tree_epic in tree_project.epics:
            count += len(tree_epic.issues)
    for subgroup in tree_group.subgroups:
        count += count_issues(subgroup)
    return count


def collect_all_keys(tree_group: TreeGroup) -> List[str]:
    """Collect every expandable node key under a tree group."""
    keys = [f"group-{tree_group.group.id}"]
    for subgroup in tree_group.subgroups:
        keys.extend(collect_all_keys(subgroup))
    for tree_project in tree_group.projects:
        keys.append(f"project-{tree_project.project.id}")
        for tree_epic in tree_project.epics:
            if tree_epic.epic:
                keys.append(f"epic-{tree_epic.epic.group_id}-{tree_epic.epic.iid}")
            else:
                keys.append(f"no-epic-{tree_project.project.id}")
    return keys
