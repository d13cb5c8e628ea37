"""
Shared pytest fixtures for gitlab_tree tests.
"""

import pytest
import tempfile
from pathlib import Path

from gitlab_tree.models import Epic, Group, Issue, Project

GITLAB_URL = 'https://gitlab.example.com'
API_URL = f'{GITLAB_URL}/api/v4'


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name

    yield db_path

    # Cleanup
    Path(db_path).unlink(missing_ok=True)


@pytest.fixture
def make_issue():
    """Factory for issues with sensible defaults."""
    counter = {'id': 1000}

    def _make(iid, project_id=10, title=None, state='opened', labels=None,
              assignees=None, epic_iid=None, epic_group_id=None, description=None):
        counter['id'] += 1
        data = {
            'id': counter['id'],
            'iid': iid,
            'project_id': project_id,
            'title': title or f'Issue {iid}',
            'state': state,
            'labels': labels or [],
            'assignees': assignees or [],
            'description': description,
            'web_url': f'{GITLAB_URL}/p/{project_id}/-/issues/{iid}',
        }
        if epic_iid is not None:
            data['epic_iid'] = epic_iid
        if epic_group_id is not None:
            data['epic'] = {'iid': epic_iid, 'group_id': epic_group_id}
        return Issue.from_api(data)

    return _make


@pytest.fixture
def sample_api_group():
    """Sample group payload as returned by GitLab."""
    return {
        'id': 2,
        'name': 'Platform',
        'full_path': 'acme/platform',
        'web_url': f'{GITLAB_URL}/groups/acme/platform',
        'parent_id': 1,
        'visibility': 'private',
    }


@pytest.fixture
def sample_api_issue():
    """Sample issue payload with an embedded epic."""
    return {
        'id': 5001,
        'iid': 42,
        'project_id': 10,
        'title': 'Fix login redirect',
        'description': 'Users land on a 404 after SSO login.',
        'state': 'opened',
        'web_url': f'{GITLAB_URL}/acme/platform/api/-/issues/42',
        'labels': ['bug', 'Priority::High', 'Type::Bug'],
        'assignees': [
            {'id': 7, 'name': 'Dana Scully', 'username': 'dscully', 'avatar_url': None},
        ],
        'milestone': {'id': 3, 'title': 'Sprint 10'},
        'epic_iid': 1,
        'epic': {'id': 200, 'iid': 1, 'group_id': 2, 'title': 'Platform epic'},
    }


@pytest.fixture
def sample_groups():
    """acme > platform > api, plus an unrelated root group."""
    return [
        Group(id=1, name='Acme', full_path='acme', parent_id=None),
        Group(id=2, name='Platform', full_path='acme/platform', parent_id=1),
        Group(id=3, name='API', full_path='acme/platform/api', parent_id=2),
        Group(id=9, name='Other', full_path='other', parent_id=None),
    ]


@pytest.fixture
def sample_projects():
    return [
        Project(id=10, name='api-server', namespace_id=3, namespace_full_path='acme/platform/api'),
        Project(id=11, name='platform-docs', namespace_id=2, namespace_full_path='acme/platform'),
        Project(id=12, name='misc', namespace_id=9, namespace_full_path='other'),
    ]


@pytest.fixture
def sample_epics():
    """Epic iid 1 exists in both acme and platform; iid 2 only in api."""
    return [
        Epic(id=100, iid=1, title='Roadmap', group_id=1, labels=['Type::Initiative']),
        Epic(id=200, iid=1, title='Platform epic', group_id=2, description='Shared platform work'),
        Epic(id=300, iid=2, title='API epic', group_id=3),
    ]


@pytest.fixture
def sample_issues(make_issue):
    return [
        make_issue(1, project_id=10, epic_iid=1, epic_group_id=1, title='Publish roadmap',
                   labels=['Priority::High', 'docs']),
        make_issue(2, project_id=10, epic_iid=1, title='Harden platform',
                   labels=['Priority::Low'],
                   assignees=[{'name': 'Fox Mulder', 'username': 'fmulder'}]),
        make_issue(3, project_id=10, epic_iid=2, epic_group_id=3, title='Add rate limits',
                   state='closed', labels=['Priority::High', 'Type::Feature'],
                   description='Throttle clients that exceed the quota'),
        make_issue(4, project_id=10, title='Loose end',
                   assignees=[{'name': 'Dana Scully', 'username': 'dscully'}]),
        make_issue(5, project_id=10, epic_iid=7, title='Dangling epic reference'),
        make_issue(1, project_id=11, epic_iid=2, epic_group_id=3, title='Docs for API epic'),
        make_issue(1, project_id=12, title='Unrelated work', labels=['Partner::Initech']),
    ]


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "database: Database tests")
    config.addinivalue_line("markers", "api: API-related tests")
    config.addinivalue_line("markers", "slow: Slow-running tests")
