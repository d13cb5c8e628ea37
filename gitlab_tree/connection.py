"""
Connection settings, credentials and group selection, persisted in key-value stores.
"""

import logging
from typing import List, Optional

from .database import MemoryStore
from .gitlab_client import AUTH_METHODS, ClientConfig

logger = logging.getLogger(__name__)

CONNECTION_KEY = 'gitlab-connection'
CREDENTIALS_KEY = 'gitlab-credentials'
GROUP_SELECTION_KEY = 'gitlab-group-selection'


class ConnectionStore:
    """
    Where to connect and how to authenticate.

    Non-secret settings (url, auth method, OAuth client id) go to the settings
    store; tokens go to the credential store, which is in-memory by default.
    """

    def __init__(self, settings_store, credential_store=None):
        """
        Initialize connection store.

        Args:
            settings_store: CacheStore-like store for url, auth method and client id
            credential_store: Store for the token pair (MemoryStore if omitted)
        """
        self.settings_store = settings_store
        self.credential_store = credential_store if credential_store is not None else MemoryStore()

        settings = self.settings_store.get(CONNECTION_KEY) or {}
        credentials = self.credential_store.get(CREDENTIALS_KEY) or {}

        self.gitlab_url: str = settings.get('gitlab_url', '')
        self.auth_method: str = settings.get('auth_method', 'pat')
        self.client_id: str = settings.get('client_id', '')
        self.token: str = credentials.get('token', '')
        self.refresh_token: str = credentials.get('refresh_token', '')

    @property
    def is_connected(self) -> bool:
        return bool(self.gitlab_url) and bool(self.token)

    def _persist(self):
        self.settings_store.set(CONNECTION_KEY, {
            'gitlab_url': self.gitlab_url,
            'auth_method': self.auth_method,
            'client_id': self.client_id,
        })
        self.credential_store.set(CREDENTIALS_KEY, {
            'token': self.token,
            'refresh_token': self.refresh_token,
        })

    def set_connection(
        self,
        gitlab_url: str,
        token: str,
        auth_method: str = 'pat',
        refresh_token: str = '',
        client_id: str = ''
    ):
        """Store a new connection, replacing the previous one."""
        if auth_method not in AUTH_METHODS:
            raise ValueError(f"Unknown auth method: {auth_method}")

        self.gitlab_url = gitlab_url.rstrip('/')
        self.auth_method = auth_method
        self.token = token
        self.refresh_token = refresh_token or ''
        self.client_id = client_id or ''
        self._persist()
        logger.debug(f"Connection set to {self.gitlab_url} ({auth_method})")

    def update_tokens(self, token: str, refresh_token: str):
        self.token = token
        self.refresh_token = refresh_token
        self._persist()

    def disconnect(self):
        """Forget the connection and its credentials."""
        self.gitlab_url = ''
        self.auth_method = 'pat'
        self.client_id = ''
        self.token = ''
        self.refresh_token = ''
        self.settings_store.remove(CONNECTION_KEY)
        self.credential_store.remove(CREDENTIALS_KEY)

    def client_config(self, refresh_auth=None) -> ClientConfig:
        """
        Build the client configuration for the current connection.

        Args:
            refresh_auth: Optional token refresh callback, see oauth.make_refresh_callback

        Raises:
            ValueError: If not connected
        """
        if not self.is_connected:
            raise ValueError("Not connected: a GitLab URL and token are required")
        return ClientConfig(
            base_url=self.gitlab_url,
            token=self.token,
            auth_method=self.auth_method,
            refresh_auth=refresh_auth,
        )


class GroupSelection:
    """Ids of the groups the user chose to aggregate. Empty means all groups."""

    def __init__(self, store):
        self.store = store
        stored = self.store.get(GROUP_SELECTION_KEY) or []
        self.selected_ids: List[int] = [int(i) for i in stored]

    @property
    def has_selection(self) -> bool:
        return len(self.selected_ids) > 0

    def set_selection(self, ids: List[int]):
        self.selected_ids = list(ids)
        self.store.set(GROUP_SELECTION_KEY, self.selected_ids)

    def clear(self):
        self.selected_ids = []
        self.store.remove(GROUP_SELECTION_KEY)

    def resolve(self) -> Optional[List[int]]:
        """Selected ids, or None when everything is selected."""
        return list(self.selected_ids) if self.has_selection else None
