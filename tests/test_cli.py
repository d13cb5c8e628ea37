"""
Tests for the command-line interface.
"""

import json

import pandas as pd
import pytest
from aioresponses import aioresponses
from click.testing import CliRunner

from gitlab_tree.cli import build_query, cli, tree_to_rows
from gitlab_tree.connection import GROUP_SELECTION_KEY
from gitlab_tree.database import CacheStore
from gitlab_tree.hierarchy_builder import build_tree
from gitlab_tree.label_parser import LabelParser
from gitlab_tree.store import STORAGE_KEY, AggregationState

GITLAB_URL = 'https://gitlab.example.com'
API_URL = f'{GITLAB_URL}/api/v4'

CLEAN_ENV = {
    'GITLAB_URL': None,
    'GITLAB_TOKEN': None,
    'GITLAB_REFRESH_TOKEN': None,
    'GITLAB_CLIENT_ID': None,
    'GITLAB_TREE_DB': None,
}


@pytest.fixture
def runner():
    return CliRunner(env=CLEAN_ENV)


@pytest.fixture
def cached_db(temp_db_path, sample_groups, sample_projects, sample_epics, sample_issues):
    """Database holding a fresh snapshot of the sample data."""
    with CacheStore(temp_db_path) as cache:
        AggregationState(cache=cache).set_data(sample_groups, sample_projects, sample_epics, sample_issues)
    return temp_db_path


def test_tree_shows_hierarchy(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--status', 'all'])

    assert result.exit_code == 0, result.output
    assert '▸ acme (4 issues)' in result.output
    assert '■ api-server' in result.output
    assert '◆ &1 Roadmap' in result.output
    assert '#1 [opened] Publish roadmap' in result.output
    assert '◇ No epic' in result.output
    assert '(5 issues)' in result.output


def test_tree_applies_filters(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--scoped', 'Priority::High'])

    assert result.exit_code == 0, result.output
    assert 'Publish roadmap' in result.output
    assert 'Add rate limits' not in result.output  # closed
    assert 'Harden platform' not in result.output
    assert '(1 issues)' in result.output


def test_tree_shows_description_snippet(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--status', 'all', '--search', 'quota'])

    assert result.exit_code == 0, result.output
    assert 'Add rate limits' in result.output
    assert '[quota]' in result.output


def test_tree_without_matches(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--search', 'no-such-text'])

    assert result.exit_code == 0
    assert 'No matching issues' in result.output


def test_tree_without_cached_data(runner, temp_db_path):
    result = runner.invoke(cli, ['tree', '--db', temp_db_path])

    assert result.exit_code == 1
    assert "gltree fetch" in result.output


def test_invalid_scoped_filter(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--scoped', 'Priority'])

    assert result.exit_code == 2
    assert 'Key::Value' in result.output


def test_labels_lists_options(runner, cached_db):
    result = runner.invoke(cli, ['labels', '--db', cached_db])

    assert result.exit_code == 0, result.output
    assert '* Priority: High, Low' in result.output
    assert '  docs' in result.output
    assert 'dscully (Dana Scully)' in result.output


def test_export_csv(runner, cached_db, tmp_path):
    output = tmp_path / 'issues.csv'

    result = runner.invoke(cli, ['export', '--db', cached_db, '--status', 'all', '--output', str(output)])

    assert result.exit_code == 0, result.output
    assert '✓ Exported 5 rows' in result.output
    df = pd.read_csv(output)
    assert list(df['iid']) == [1, 2, 3, 4, 1]
    assert {'label_Partner', 'label_Priority', 'label_Type', 'labels'} <= set(df.columns)
    assert df.loc[0, 'label_Priority'] == 'High'
    assert df.loc[0, 'labels'] == 'docs'


def test_export_json_sorted(runner, cached_db, tmp_path):
    output = tmp_path / 'issues.json'

    result = runner.invoke(cli, [
        'export', '--db', cached_db, '--status', 'all', '--sort', 'iid', '--desc',
        '--format', 'json', '--output', str(output),
    ])

    assert result.exit_code == 0, result.output
    rows = json.loads(output.read_text())
    assert [r['title'] for r in rows][:4] == ['Publish roadmap', 'Harden platform', 'Add rate limits', 'Loose end']


def test_export_nothing(runner, cached_db, tmp_path):
    result = runner.invoke(cli, ['export', '--db', cached_db, '--search', 'no-such-text',
                                 '--output', str(tmp_path / 'x.csv')])

    assert result.exit_code == 1
    assert 'No data to export' in result.output


def test_stats(runner, cached_db):
    result = runner.invoke(cli, ['stats', '--db', cached_db])

    assert result.exit_code == 0, result.output
    assert 'CACHE STATISTICS' in result.output
    assert 'Issues: 7' in result.output
    assert 'Issues with unreachable epic: 2' in result.output


def test_select_groups(runner, cached_db):
    result = runner.invoke(cli, ['select-groups', '--db', cached_db, '--group-ids', '3, 9'])
    assert result.exit_code == 0, result.output
    assert 'Selected groups: 3, 9' in result.output

    with CacheStore(cached_db) as cache:
        assert cache.get(GROUP_SELECTION_KEY) == [3, 9]
        # Data fetched for the previous selection is dropped
        assert cache.get(STORAGE_KEY) is None

    result = runner.invoke(cli, ['select-groups', '--db', cached_db])
    assert 'Selected groups: 3, 9' in result.output

    result = runner.invoke(cli, ['select-groups', '--db', cached_db, '--clear'])
    assert 'cleared' in result.output
    with CacheStore(cached_db) as cache:
        assert cache.get(GROUP_SELECTION_KEY) is None


def test_select_groups_rejects_bad_ids(runner, temp_db_path):
    result = runner.invoke(cli, ['select-groups', '--db', temp_db_path, '--group-ids', 'a,b'])

    assert result.exit_code == 2


def test_clear_cache(runner, cached_db):
    with CacheStore(cached_db) as cache:
        cache.set(GROUP_SELECTION_KEY, [1])

    result = runner.invoke(cli, ['clear-cache', '--db', cached_db])
    assert result.exit_code == 0
    with CacheStore(cached_db) as cache:
        assert cache.keys() == [GROUP_SELECTION_KEY]

    result = runner.invoke(cli, ['clear-cache', '--db', cached_db, '--all'])
    assert 'Removed 1 cache entries' in result.output
    with CacheStore(cached_db) as cache:
        assert cache.keys() == []


def test_fetch_requires_connection(runner, temp_db_path):
    result = runner.invoke(cli, ['fetch', '--db', temp_db_path])

    assert result.exit_code == 1
    assert 'GitLab URL and token required' in result.output


def _page_url(path):
    separator = '&' if '?' in path else '?'
    return f"{API_URL}{path}{separator}per_page=100&page=1"


def test_fetch_and_reuse_cache(runner, temp_db_path):
    with aioresponses() as m:
        m.get(f"{API_URL}/user", payload={'username': 'dscully'})
        m.get(_page_url('/groups?top_level_only=false'),
              payload=[{'id': 1, 'name': 'Acme', 'full_path': 'acme', 'parent_id': None}])
        m.get(_page_url('/groups/1/projects?include_subgroups=true'),
              payload=[{'id': 10, 'name': 'api', 'namespace': {'id': 1, 'full_path': 'acme'}}])
        m.get(_page_url('/groups/1/epics?include_descendant_groups=false'), status=403)
        m.get(_page_url('/projects/10/issues'),
              payload=[{'id': 1, 'iid': 1, 'project_id': 10, 'title': 'First'}])

        result = runner.invoke(cli, [
            'fetch', '--db', temp_db_path, '--gitlab-url', GITLAB_URL, '--token', 'tok',
        ])

    assert result.exit_code == 0, result.output
    assert f'Loaded from {GITLAB_URL}' in result.output
    assert 'Issues: 1' in result.output

    # URL is remembered; fresh data comes from the cache without requests
    with aioresponses():
        result = runner.invoke(cli, ['fetch', '--db', temp_db_path, '--token', 'tok'])

    assert result.exit_code == 0, result.output
    assert 'Loaded from cache' in result.output


TWO_ROOT_GROUPS = [
    {'id': 1, 'name': 'Acme', 'full_path': 'acme', 'parent_id': None},
    {'id': 2, 'name': 'Other', 'full_path': 'other', 'parent_id': None},
]


def _mock_group_fetch(m, group_id, project_id):
    m.get(f"{API_URL}/user", payload={'username': 'dscully'})
    m.get(_page_url('/groups?top_level_only=false'), payload=TWO_ROOT_GROUPS)
    m.get(_page_url(f'/groups/{group_id}/projects?include_subgroups=true'),
          payload=[{'id': project_id, 'name': f'p{project_id}', 'namespace': {'id': group_id}}])
    m.get(_page_url(f'/groups/{group_id}/epics?include_descendant_groups=false'), payload=[])
    m.get(_page_url(f'/projects/{project_id}/issues'),
          payload=[{'id': project_id, 'iid': 1, 'project_id': project_id, 'title': 'Only'}])


def test_fetch_with_new_group_ids_refetches(runner, temp_db_path):
    with aioresponses() as m:
        _mock_group_fetch(m, 1, 10)
        result = runner.invoke(cli, [
            'fetch', '--db', temp_db_path, '--gitlab-url', GITLAB_URL, '--token', 't', '--group-ids', '1',
        ])
    assert result.exit_code == 0, result.output

    with aioresponses() as m:
        _mock_group_fetch(m, 2, 20)
        result = runner.invoke(cli, ['fetch', '--db', temp_db_path, '--token', 't', '--group-ids', '2'])
        requested = {url.path for (method, url) in m.requests}

    assert result.exit_code == 0, result.output
    assert 'Loaded from cache' not in result.output
    assert '/api/v4/projects/20/issues' in requested

    with CacheStore(temp_db_path) as cache:
        assert cache.get(GROUP_SELECTION_KEY) == [2]
        state = AggregationState(cache=cache)
        assert state.load_from_cache()
        assert [p.id for p in state.projects] == [20]

    # Same selection again reuses the snapshot
    with aioresponses():
        result = runner.invoke(cli, ['fetch', '--db', temp_db_path, '--token', 't', '--group-ids', '2'])

    assert result.exit_code == 0, result.output
    assert 'Loaded from cache' in result.output


def test_fetch_reports_api_errors(runner, temp_db_path):
    with aioresponses() as m:
        m.get(f"{API_URL}/user", status=401)

        result = runner.invoke(cli, [
            'fetch', '--db', temp_db_path, '--gitlab-url', GITLAB_URL, '--token', 'bad', '--force',
        ])

    assert result.exit_code == 1
    assert '✗ Error' in result.output


def test_build_query_merges_scoped_values():
    query = build_query('', (), ('Priority::High', 'Priority::Low', 'Type::Bug'), 'all', (), 'title', True, 'Priority, Type')

    assert query.selected_scoped_labels == {'Priority': ['High', 'Low'], 'Type': ['Bug']}
    assert query.enabled_scoped_keys == ['Priority', 'Type']
    assert (query.sort_field, query.sort_direction, query.sort_active) == ('title', 'desc', True)


def test_tree_to_rows(sample_groups, sample_projects, sample_epics, sample_issues):
    tree = build_tree(sample_groups, sample_projects, sample_epics, sample_issues)

    rows = tree_to_rows(tree, LabelParser(), ['Priority'])

    assert len(rows) == 5
    first = rows[0]
    assert first['group'] == 'acme/platform/api'
    assert (first['epic_iid'], first['epic_title']) == (1, 'Roadmap')
    assert first['label_Priority'] == 'High'
    assert rows[-1]['group'] == 'other'
    assert rows[-1]['labels'] == 'Partner::Initech'


def test_tree_shows_sort_marker(runner, cached_db):
    result = runner.invoke(cli, ['tree', '--db', cached_db, '--status', 'all', '--sort', 'title', '--desc'])

    assert result.exit_code == 0, result.output
    assert '(sorted by title desc)' in result.output

    result = runner.invoke(cli, ['tree', '--db', cached_db, '--status', 'all'])
    assert 'sorted by' not in result.output
