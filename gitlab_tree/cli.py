"""
Command-line interface for the GitLab tree viewer.
"""

import asyncio
import os
import sys
import logging
import time
from typing import Any, Dict, List, Optional

import click
from tqdm import tqdm

from .connection import ConnectionStore, GroupSelection
from .database import CacheStore
from .extractor import HierarchyExtractor
from .filters import FilterQuery
from .gitlab_client import GitLabClient
from .label_parser import LabelParser, parse_scoped_label
from .models import TreeGroup, count_issues
from .oauth import make_refresh_callback
from .store import STORAGE_KEY, AggregationState

DEFAULT_DB = 'gitlab_tree.db'


# Setup logging
def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s %(levelname)s %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_id_list(value: str) -> List[int]:
    """Parse a comma-separated list of integer ids."""
    try:
        return [int(part.strip()) for part in value.split(',') if part.strip()]
    except ValueError:
        raise click.BadParameter("Use comma-separated integers (e.g., '123,456,789')")


def db_option(f):
    return click.option(
        '--db', 'db_path',
        default=lambda: os.getenv('GITLAB_TREE_DB', DEFAULT_DB),
        help='SQLite cache database path'
    )(f)


def filter_options(f):
    """Options shared by the commands that show a filtered view."""
    options = [
        click.option('--search', default='', help='Match issue/epic titles and descriptions'),
        click.option('--label', 'labels', multiple=True, help='Plain label (repeatable, any matches)'),
        click.option('--scoped', multiple=True, help='Scoped label Key::Value (repeatable)'),
        click.option('--status', type=click.Choice(['all', 'opened', 'closed']), default='opened', help='Issue state'),
        click.option('--assignee', 'assignees', multiple=True, help='Assignee username (repeatable)'),
        click.option('--sort', 'sort_field', type=click.Choice(['iid', 'title', 'status']), default='iid', help='Sort issues by'),
        click.option('--desc', is_flag=True, help='Sort descending'),
        click.option('--scoped-keys', default=None, help='Comma-separated scoped keys shown as columns'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def build_query(search, labels, scoped, status, assignees, sort_field, desc, scoped_keys) -> FilterQuery:
    """Build a FilterQuery from command-line options."""
    query = FilterQuery(
        search_text=search,
        selected_labels=list(labels),
        status_filter=status,
        selected_assignees=list(assignees),
        sort_field=sort_field,
        sort_direction='desc' if desc else 'asc',
        sort_active=(sort_field != 'iid' or desc),
    )
    if scoped_keys is not None:
        query.enabled_scoped_keys = [k.strip() for k in scoped_keys.split(',') if k.strip()]

    for label in scoped:
        parsed = parse_scoped_label(label)
        if parsed is None:
            raise click.BadParameter(f"Expected Key::Value, got '{label}'", param_hint='--scoped')
        key, value = parsed
        query.set_scoped_label_filter(key, query.selected_scoped_labels.get(key, []) + [value])

    return query


def load_state(db_path: str, query: Optional[FilterQuery] = None) -> AggregationState:
    """Load cached data or exit with a hint to fetch first."""
    state = AggregationState(cache=CacheStore(db_path), query=query)
    if not state.load_from_cache():
        click.echo("No fresh cached data. Run 'gltree fetch' first.", err=True)
        sys.exit(1)
    return state


def render_tree(tree: List[TreeGroup], state: AggregationState, depth: int = 0) -> List[str]:
    """Render tree nodes as indented text lines."""
    lines = []
    pad = '  ' * depth

    for tree_group in tree:
        lines.append(f"{pad}▸ {tree_group.group.full_path or tree_group.group.name} ({count_issues(tree_group)} issues)")
        lines.extend(render_tree(tree_group.subgroups, state, depth + 1))

        for tree_project in tree_group.projects:
            lines.append(f"{pad}  ■ {tree_project.project.name}")

            for tree_epic in tree_project.epics:
                if tree_epic.epic:
                    lines.append(f"{pad}    ◆ &{tree_epic.epic.iid} {tree_epic.epic.title}")
                    snippet = state.epic_snippet(tree_epic.epic)
                    if snippet:
                        lines.append(f"{pad}      {snippet.before}[{snippet.match}]{snippet.after}")
                else:
                    lines.append(f"{pad}    ◇ No epic")

                for issue in tree_epic.issues:
                    assignees = ', '.join(a.username for a in issue.assignees)
                    line = f"{pad}      #{issue.iid} [{issue.state}] {issue.title}"
                    if assignees:
                        line += f" @{assignees}"
                    lines.append(line)
                    snippet = state.issue_snippet(issue)
                    if snippet:
                        lines.append(f"{pad}        {snippet.before}[{snippet.match}]{snippet.after}")

    return lines


def tree_to_rows(tree: List[TreeGroup], label_parser: LabelParser, scoped_keys: List[str]) -> List[Dict[str, Any]]:
    """
    Flatten a tree into one row per issue.

    Args:
        tree: Tree (usually the filtered view)
        label_parser: Parser splitting labels into scoped columns
        scoped_keys: Keys that get their own 'label_<key>' column

    Returns:
        List of row dictionaries in tree order
    """
    rows = []

    def walk(tree_group: TreeGroup):
        for tree_project in tree_group.projects:
            for tree_epic in tree_project.epics:
                epic = tree_epic.epic
                for issue in tree_epic.issues:
                    row = {
                        'group': tree_group.group.full_path,
                        'project': tree_project.project.name,
                        'epic_iid': epic.iid if epic else None,
                        'epic_title': epic.title if epic else None,
                        'iid': issue.iid,
                        'title': issue.title,
                        'state': issue.state,
                        'assignees': ', '.join(a.username for a in issue.assignees),
                        'milestone': issue.milestone,
                        'web_url': issue.web_url,
                    }
                    row.update(label_parser.parse_labels(issue.labels, scoped_keys))
                    rows.append(row)
        for subgroup in tree_group.subgroups:
            walk(subgroup)

    for tree_group in tree:
        walk(tree_group)
    return rows


@click.group()
@click.version_option(version='1.0.0')
def cli():
    """Aggregate GitLab groups, projects, epics and issues into one filterable tree."""
    pass


async def _run_fetch(connection: ConnectionStore, state: AggregationState, group_ids, force: bool, verbose: bool):
    refresh = make_refresh_callback(connection) if connection.auth_method == 'oauth' else None
    config = connection.client_config(refresh_auth=refresh)

    progress = tqdm(desc="Fetching pages", unit="page") if verbose else None
    on_page = (lambda page: progress.update(1)) if progress else None

    try:
        async with GitLabClient(config) as client:
            extractor = HierarchyExtractor(client, state)
            return await extractor.load_or_extract(group_ids, force=force, on_page=on_page)
    finally:
        if progress:
            progress.close()


@cli.command()
@db_option
@click.option('--gitlab-url', default=lambda: os.getenv('GITLAB_URL'), help='GitLab instance URL')
@click.option('--token', default=lambda: os.getenv('GITLAB_TOKEN'), help='Personal access token or OAuth access token')
@click.option('--auth-method', type=click.Choice(['pat', 'oauth']), default='pat', help='How the token is sent')
@click.option('--refresh-token', default=lambda: os.getenv('GITLAB_REFRESH_TOKEN'), help='OAuth refresh token')
@click.option('--client-id', default=lambda: os.getenv('GITLAB_CLIENT_ID'), help='OAuth application id')
@click.option('--group-ids', default=None, help='Comma-separated group IDs (default: saved selection, or all)')
@click.option('--force', is_flag=True, help='Ignore cached data and fetch again')
@click.option('--verbose', is_flag=True, help='Verbose output')
def fetch(db_path, gitlab_url, token, auth_method, refresh_token, client_id, group_ids, force, verbose):
    """
    Fetch groups, projects, epics and issues into the local cache.

    Cached data younger than one hour is reused unless --force is given.

    Example:
        gltree fetch --gitlab-url https://gitlab.example.com --group-ids "12,34"
    """
    setup_logging(verbose)

    try:
        with CacheStore(db_path) as cache:
            connection = ConnectionStore(cache)
            if gitlab_url and token:
                connection.set_connection(
                    gitlab_url, token,
                    auth_method=auth_method,
                    refresh_token=refresh_token or '',
                    client_id=client_id or '',
                )
            elif token and connection.gitlab_url:
                connection.update_tokens(token, refresh_token or '')

            if not connection.is_connected:
                click.echo(
                    "Error: GitLab URL and token required. Set GITLAB_URL and GITLAB_TOKEN "
                    "or use --gitlab-url and --token",
                    err=True
                )
                sys.exit(1)

            state = AggregationState(cache=cache)
            selection = GroupSelection(cache)

            if group_ids is not None:
                ids = parse_id_list(group_ids)
                # Cached data belongs to the previous selection
                if ids != selection.selected_ids:
                    if ids:
                        selection.set_selection(ids)
                    else:
                        selection.clear()
                    state.clear()
                selected = ids or None
            else:
                selected = selection.resolve()

            result = asyncio.run(_run_fetch(connection, state, selected, force, verbose))

        source = "cache" if result['from_cache'] else connection.gitlab_url
        click.echo(f"\n✓ Loaded from {source}")
        click.echo(f"  Groups: {result['group_count']}")
        click.echo(f"  Projects: {result['project_count']}")
        click.echo(f"  Epics: {result['epic_count']}")
        click.echo(f"  Issues: {result['issue_count']}")
        if result['unresolved_count']:
            click.echo(f"  Issues with unreachable epic: {result['unresolved_count']}")

    except click.BadParameter:
        raise
    except Exception as e:
        click.echo(f"\n✗ Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@db_option
@filter_options
@click.option('--verbose', is_flag=True, help='Verbose output')
def tree(db_path, search, labels, scoped, status, assignees, sort_field, desc, scoped_keys, verbose):
    """Show the cached data as a filtered group/project/epic/issue tree."""
    setup_logging(verbose)

    query = build_query(search, labels, scoped, status, assignees, sort_field, desc, scoped_keys)
    state = load_state(db_path, query)

    try:
        view = state.filtered_tree
        if not view:
            click.echo("No matching issues")
            return

        for line in render_tree(view, state):
            click.echo(line)

        total = sum(count_issues(g) for g in view)
        click.echo(f"\n({total} issues)")
        if query.has_active_filters:
            click.echo("(filters active)")
        if query.sort_active:
            click.echo(f"(sorted by {query.sort_field} {query.sort_direction})")

    except Exception as e:
        click.echo(f"\n✗ Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@db_option
@click.option('--scoped-keys', default=None, help='Comma-separated scoped keys shown as columns')
def labels(db_path, scoped_keys):
    """List the available label, scoped label and assignee filter values."""
    setup_logging()

    query = build_query('', (), (), 'opened', (), 'iid', False, scoped_keys)
    state = load_state(db_path, query)

    click.echo("\nScoped labels:")
    values = state.scoped_label_values
    active = set(state.active_scoped_keys)
    for key in state.all_scoped_label_keys:
        marker = '*' if key in active else ' '
        click.echo(f" {marker} {key}: {', '.join(values.get(key, []))}")

    click.echo("\nLabels:")
    for label in state.all_labels:
        click.echo(f"  {label}")

    click.echo("\nAssignees:")
    for assignee in state.all_assignees:
        click.echo(f"  {assignee.username} ({assignee.name})")


@cli.command()
@db_option
@filter_options
@click.option('--format', 'output_format', type=click.Choice(['csv', 'json']), default='csv', help='Export format')
@click.option('--output', default='export.csv', help='Output file path')
def export(db_path, search, labels, scoped, status, assignees, sort_field, desc, scoped_keys, output_format, output):
    """Export the filtered view to CSV or JSON, one row per issue."""
    setup_logging()

    query = build_query(search, labels, scoped, status, assignees, sort_field, desc, scoped_keys)
    state = load_state(db_path, query)

    try:
        import pandas as pd

        parser = LabelParser(query.enabled_scoped_keys)
        rows = tree_to_rows(state.filtered_tree, parser, state.active_scoped_keys)

        if not rows:
            click.echo("No data to export", err=True)
            sys.exit(1)

        df = pd.DataFrame(rows)

        if output_format == 'csv':
            df.to_csv(output, index=False)
            click.echo(f"\n✓ Exported {len(df)} rows to {output} (CSV)")
        else:
            df.to_json(output, orient='records', indent=2)
            click.echo(f"\n✓ Exported {len(df)} rows to {output} (JSON)")

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command()
@db_option
def stats(db_path):
    """Show cache statistics."""
    setup_logging()

    try:
        with CacheStore(db_path) as cache:
            cache_stats = cache.get_stats()
            snapshot = cache.get_entry(STORAGE_KEY)
            state = AggregationState(cache=cache)
            loaded = state.load_from_cache()

            click.echo("\n" + "=" * 80)
            click.echo("CACHE STATISTICS")
            click.echo("=" * 80)
            click.echo(f"Entries: {cache_stats.get('entry_count', 0)}")
            click.echo(f"Size: {cache_stats.get('total_bytes', 0)} bytes")
            click.echo("")

            if snapshot is None:
                click.echo("Data: none")
            else:
                age = time.time() - snapshot['stored_at']
                click.echo(f"Data age: {age / 60:.1f} minutes{'' if loaded else ' (stale)'}")

            if loaded:
                click.echo(f"  Groups: {len(state.groups)}")
                click.echo(f"  Projects: {len(state.projects)}")
                click.echo(f"  Epics: {len(state.epics)}")
                click.echo(f"  Issues: {len(state.issues)}")
                click.echo(f"  Issues with unreachable epic: {len(state.unresolved_issues)}")
            click.echo("=" * 80)

    except Exception as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@cli.command(name='select-groups')
@db_option
@click.option('--group-ids', default=None, help='Comma-separated group IDs to aggregate')
@click.option('--clear', 'clear_selection', is_flag=True, help='Aggregate all groups again')
def select_groups(db_path, group_ids, clear_selection):
    """
    Show or change the saved group selection.

    Changing the selection drops cached data fetched for the old one.
    """
    setup_logging()

    with CacheStore(db_path) as cache:
        selection = GroupSelection(cache)

        if clear_selection:
            selection.clear()
            AggregationState(cache=cache).clear()
            click.echo("✓ Group selection cleared (all groups)")
            return

        if group_ids is not None:
            selection.set_selection(parse_id_list(group_ids))
            AggregationState(cache=cache).clear()
            click.echo(f"✓ Selected groups: {', '.join(str(i) for i in selection.selected_ids)}")
            return

        if selection.has_selection:
            click.echo(f"Selected groups: {', '.join(str(i) for i in selection.selected_ids)}")
        else:
            click.echo("No group selection (all groups)")


@cli.command(name='clear-cache')
@db_option
@click.option('--all', 'clear_all', is_flag=True, help='Also forget connection settings and group selection')
def clear_cache(db_path, clear_all):
    """Drop cached data."""
    setup_logging()

    with CacheStore(db_path) as cache:
        if clear_all:
            deleted = cache.clear()
            click.echo(f"\n✓ Removed {deleted} cache entries")
        else:
            AggregationState(cache=cache).clear()
            click.echo("\n✓ Cached data removed")


if __name__ == '__main__':
    cli()
