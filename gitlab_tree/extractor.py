"""
Aggregation workflow: fetch groups, projects, epics and issues into the aggregation state.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Dict, Iterable, List, Optional

from .gitlab_client import GitLabClient, PageCallback
from .models import Group, Project
from .store import AggregationState

logger = logging.getLogger(__name__)


def select_groups(groups: List[Group], group_ids: Optional[Iterable[int]] = None) -> List[Group]:
    """
    Restrict groups to the selected ones and all their descendants.

    Args:
        groups: All fetched groups
        group_ids: Selected group ids, or None for every group

    Returns:
        Matching groups in fetch order
    """
    if group_ids is None:
        return list(groups)

    wanted = set(group_ids)
    known = {g.id for g in groups}
    missing = wanted - known
    if missing:
        logger.warning(f"Selected groups not visible to this user: {sorted(missing)}")

    children: Dict[int, List[int]] = {}
    for g in groups:
        if g.parent_id is not None:
            children.setdefault(g.parent_id, []).append(g.id)

    selected = set()
    pending = [gid for gid in wanted if gid in known]
    while pending:
        gid = pending.pop()
        if gid in selected:
            continue
        selected.add(gid)
        pending.extend(children.get(gid, []))

    return [g for g in groups if g.id in selected]


async def _gather_all(aws: Iterable[Awaitable[Any]]) -> List[Any]:
    """Run awaitables concurrently; on the first failure cancel the rest and re-raise."""
    tasks = [asyncio.ensure_future(aw) for aw in aws]
    try:
        return await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise


class HierarchyExtractor:
    """Main orchestrator for one fetch cycle."""

    def __init__(self, client: GitLabClient, state: AggregationState):
        """
        Initialize extractor.

        Args:
            client: GitLab API client
            state: Aggregation state receiving the fetched data
        """
        self.client = client
        self.state = state

    async def extract(
        self,
        group_ids: Optional[List[int]] = None,
        on_page: Optional[PageCallback] = None
    ) -> Dict[str, Any]:
        """
        Fetch everything and replace the state's data in one step.

        Any unrecovered error aborts the cycle and leaves the previous data
        untouched.

        Args:
            group_ids: Selected group ids (descendants included), or None for all
            on_page: Called after every fetched page with its 1-based number

        Returns:
            Summary statistics dictionary
        """
        start_time = time.time()

        logger.info("=" * 80)
        logger.info("GitLab Tree Extractor")
        logger.info("=" * 80)
        logger.info(f"  GitLab URL: {self.client.config.base_url}")
        logger.info(f"  Group selection: {group_ids if group_ids is not None else 'all'}")
        logger.info("")

        # Phase 1: Groups
        logger.info("Phase 1: Fetching groups")
        logger.info("-" * 80)

        await self.client.validate_connection()
        all_groups = await self.client.get_all_groups(on_page)
        groups = select_groups(all_groups, group_ids)
        group_ids_selected = {g.id for g in groups}

        logger.info(f"✓ {len(groups)} groups selected of {len(all_groups)} visible")
        logger.info("")

        # Phase 2: Projects, fetched from the top of each selected subtree
        logger.info("Phase 2: Fetching projects")
        logger.info("-" * 80)

        roots = [g for g in groups if g.parent_id not in group_ids_selected]
        project_lists = await _gather_all(
            self.client.get_group_projects(g.id, on_page) for g in roots
        )

        projects: List[Project] = []
        seen_projects = set()
        for project_list in project_lists:
            for project in project_list:
                if project.id in seen_projects or project.namespace_id not in group_ids_selected:
                    continue
                seen_projects.add(project.id)
                projects.append(project)

        logger.info(f"✓ {len(projects)} projects")
        logger.info("")

        # Phase 3: Epics of every selected group
        logger.info("Phase 3: Fetching epics")
        logger.info("-" * 80)

        epic_lists = await _gather_all(
            self.client.get_group_epics(g.id, on_page) for g in groups
        )
        epics = [epic for epic_list in epic_lists for epic in epic_list]

        logger.info(f"✓ {len(epics)} epics")
        logger.info("")

        # Phase 4: Issues of every project
        logger.info("Phase 4: Fetching issues")
        logger.info("-" * 80)

        issue_lists = await _gather_all(
            self.client.get_project_issues(p.id, on_page) for p in projects
        )
        issues = [issue for issue_list in issue_lists for issue in issue_list]

        logger.info(f"✓ {len(issues)} issues")
        logger.info("")

        self.state.set_data(groups, projects, epics, issues)

        elapsed = time.time() - start_time
        unresolved = len(self.state.unresolved_issues)

        logger.info("=" * 80)
        logger.info("SUMMARY")
        logger.info("=" * 80)
        logger.info(f"Groups: {len(groups)}")
        logger.info(f"Projects: {len(projects)}")
        logger.info(f"Epics: {len(epics)}")
        logger.info(f"Issues: {len(issues)}")
        if unresolved:
            logger.info(f"Issues with unreachable epic: {unresolved}")
        logger.info(f"Execution Time: {elapsed:.2f}s")
        logger.info("=" * 80)
        logger.info("✓ Extraction complete!")

        return {
            'success': True,
            'from_cache': False,
            'group_count': len(groups),
            'project_count': len(projects),
            'epic_count': len(epics),
            'issue_count': len(issues),
            'unresolved_count': unresolved,
            'execution_time': elapsed,
        }

    async def load_or_extract(
        self,
        group_ids: Optional[List[int]] = None,
        force: bool = False,
        on_page: Optional[PageCallback] = None
    ) -> Dict[str, Any]:
        """Use a fresh cached snapshot when there is one, fetch otherwise."""
        if not force and self.state.load_from_cache():
            return {
                'success': True,
                'from_cache': True,
                'group_count': len(self.state.groups),
                'project_count': len(self.state.projects),
                'epic_count': len(self.state.epics),
                'issue_count': len(self.state.issues),
                'unresolved_count': len(self.state.unresolved_issues),
                'execution_time': 0.0,
            }
        return await self.extract(group_ids, on_page)
