"""
Async GitLab REST client: concurrency limiting, retries, token refresh and pagination.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp

from .models import Epic, Group, Issue, Project

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v4"
PAGE_SIZE = 100
MAX_CONCURRENT_REQUESTS = 5
MAX_RETRIES = 3
AUTH_METHODS = ('pat', 'oauth')

RefreshCallback = Callable[[], Awaitable[Optional[str]]]
PageCallback = Callable[[int], None]


class GitLabApiError(Exception):
    """Raised when GitLab answers with a non-success status."""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"GitLab API error: {status}")


class GitLabRateLimitError(GitLabApiError):
    """Raised when every retry attempt was throttled (429)."""

    def __init__(self, message: str = "Rate limited - too many retries"):
        super().__init__(429, message)


@dataclass
class ClientConfig:
    """
    Connection descriptor for a GitLab instance.

    Args:
        base_url: GitLab instance URL, without the /api/v4 prefix
        token: Personal access token or OAuth access token
        auth_method: 'pat' sends PRIVATE-TOKEN, 'oauth' sends a Bearer header
        refresh_auth: Optional coroutine returning a fresh token, or None on failure
    """

    base_url: str
    token: str
    auth_method: str = 'pat'
    refresh_auth: Optional[RefreshCallback] = None

    def __post_init__(self):
        if self.auth_method not in AUTH_METHODS:
            raise ValueError(f"Unknown auth method: {self.auth_method}")
        self.base_url = self.base_url.rstrip('/')

    def headers(self) -> Dict[str, str]:
        if self.auth_method == 'pat':
            return {'PRIVATE-TOKEN': self.token}
        return {'Authorization': f"Bearer {self.token}"}


class ConcurrencyLimiter:
    """
    Counting permit with a FIFO wait queue.

    A released slot is handed directly to the longest-waiting acquirer, so
    callers are served in arrival order.
    """

    def __init__(self, max_concurrent: int):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.active = 0
        self._waiters: deque = deque()

    @property
    def waiting(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def acquire(self):
        if self.active < self.max_concurrent and not self.waiting:
            self.active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            # The slot may have been handed over right before cancellation
            if waiter.done() and not waiter.cancelled():
                self.release()
            raise

    def release(self):
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self.active -= 1

    async def __aenter__(self):
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        self.release()


# Shared by every client in the process
default_limiter = ConcurrencyLimiter(MAX_CONCURRENT_REQUESTS)


def parse_next_page(value: Optional[str]) -> Optional[int]:
    """Parse the x-next-page header; None means the current page is the last."""
    if not value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class GitLabClient:
    """Read-only client for the GitLab REST API using aiohttp."""

    def __init__(
        self,
        config: ClientConfig,
        session: Optional[aiohttp.ClientSession] = None,
        limiter: Optional[ConcurrencyLimiter] = None,
        max_retries: int = MAX_RETRIES,
        backoff_factor: float = 1.0,
        timeout: Optional[float] = None
    ):
        """
        Initialize GitLab client.

        Args:
            config: Connection descriptor; its token is updated in place on refresh
            session: Optional aiohttp session (one is created lazily otherwise)
            limiter: Concurrency limiter (defaults to the process-wide one)
            max_retries: Attempts per request when throttled
            backoff_factor: Multiplier for the 2**attempt backoff, in seconds
            timeout: Opt-in total request timeout in seconds (default: none, only
                cancellation ends a request)
        """
        self.config = config
        self.limiter = limiter or default_limiter
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.timeout = timeout
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
            self._owns_session = True
        return self._session

    async def close(self):
        """Close the aiohttp session if this client created it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}{API_PREFIX}{path}"

    async def _fetch_with_retry(self, url: str, headers: Dict[str, str]) -> Tuple[Any, Any]:
        """GET a URL, backing off on 429. Returns the decoded body and response headers."""
        session = self._get_session()

        for attempt in range(self.max_retries):
            logger.debug(f"GET {url} (attempt {attempt + 1}/{self.max_retries})")

            async with session.get(url, headers=headers) as response:
                if response.status != 429:
                    if response.status >= 400:
                        raise GitLabApiError(
                            response.status,
                            f"GitLab API error: {response.status} {response.reason}"
                        )
                    return await response.json(), response.headers

            delay = self.backoff_factor * (2 ** attempt)
            logger.warning(f"Rate limited by GitLab, retrying in {delay:.1f}s")
            await asyncio.sleep(delay)

        raise GitLabRateLimitError()

    async def _limited_get(self, url: str, headers: Optional[Dict[str, str]] = None) -> Tuple[Any, Any]:
        async with self.limiter:
            # Headers are built after the wait so a token refreshed meanwhile is used
            return await self._fetch_with_retry(url, headers or self.config.headers())

    async def _handle_unauthorized(self, error: GitLabApiError) -> Dict[str, str]:
        """
        Refresh the token after a 401.

        Returns:
            Headers carrying the new token

        Raises:
            GitLabApiError: The original 401 when refresh is unavailable or fails
        """
        if self.config.refresh_auth is None:
            raise error

        logger.info("Access token rejected (401), refreshing")
        try:
            new_token = await self.config.refresh_auth()
        except Exception as e:
            logger.warning(f"Token refresh failed: {e}")
            raise error from e

        if not new_token:
            logger.warning("Token refresh returned no token")
            raise error

        self.config.token = new_token
        logger.info("✓ Access token refreshed")
        return self.config.headers()

    async def _get_with_refresh(self, url: str) -> Tuple[Any, Any]:
        try:
            return await self._limited_get(url)
        except GitLabApiError as e:
            if e.status != 401:
                raise
            headers = await self._handle_unauthorized(e)
            return await self._limited_get(url, headers)

    async def request(self, path: str) -> Any:
        """
        Fetch a single (non-paginated) resource.

        Args:
            path: Path relative to /api/v4, e.g. "/user"

        Returns:
            Decoded JSON body
        """
        data, _ = await self._get_with_refresh(self._url(path))
        return data

    async def fetch_all_pages(self, path: str, on_page: Optional[PageCallback] = None) -> List[Any]:
        """
        Fetch every page of a paginated endpoint, in server order.

        Pages are requested one after the other following the x-next-page
        header. A 401 refreshes the token and replays only the current page.

        Args:
            path: Path relative to /api/v4, may already contain a query string
            on_page: Called with the 1-based page number after each page

        Returns:
            Items of all pages concatenated
        """
        separator = '&' if '?' in path else '?'
        results: List[Any] = []
        page = 1

        while True:
            url = f"{self._url(path)}{separator}per_page={PAGE_SIZE}&page={page}"
            data, headers = await self._get_with_refresh(url)
            results.extend(data)

            if on_page:
                on_page(page)

            next_page = parse_next_page(headers.get('x-next-page'))
            if next_page is None:
                break
            page = next_page

        logger.debug(f"Fetched {len(results)} items from {path} ({page} pages)")
        return results

    async def validate_connection(self) -> str:
        """Fetch the current user to check the connection. Returns the username."""
        user = await self.request("/user")
        logger.info(f"✓ Connected to {self.config.base_url} as {user['username']}")
        return user['username']

    async def get_all_groups(self, on_page: Optional[PageCallback] = None) -> List[Group]:
        """Get all groups visible to the user, nested subgroups included."""
        data = await self.fetch_all_pages("/groups?top_level_only=false", on_page)
        logger.info(f"Fetched {len(data)} groups")
        return [Group.from_api(item) for item in data]

    async def get_group_projects(self, group_id: int, on_page: Optional[PageCallback] = None) -> List[Project]:
        """Get all projects of a group, subgroup projects included."""
        data = await self.fetch_all_pages(
            f"/groups/{group_id}/projects?include_subgroups=true", on_page
        )
        logger.debug(f"Fetched {len(data)} projects from group {group_id}")
        return [Project.from_api(item) for item in data]

    async def get_group_epics(self, group_id: int, on_page: Optional[PageCallback] = None) -> List[Epic]:
        """
        Get the epics owned by a group.

        Epics require GitLab Premium; a 403 yields an empty list so the rest
        of the aggregation can continue.
        """
        try:
            data = await self.fetch_all_pages(
                f"/groups/{group_id}/epics?include_descendant_groups=false", on_page
            )
        except GitLabApiError as e:
            if e.status == 403:
                logger.warning(f"Epics not available for group {group_id} (403), skipping")
                return []
            raise

        logger.debug(f"Fetched {len(data)} epics from group {group_id}")
        return [Epic.from_api(item) for item in data]

    async def get_project_issues(self, project_id: int, on_page: Optional[PageCallback] = None) -> List[Issue]:
        """Get all issues of a project."""
        data = await self.fetch_all_pages(f"/projects/{project_id}/issues", on_page)
        logger.debug(f"Fetched {len(data)} issues from project {project_id}")
        return [Issue.from_api(item) for item in data]
