"""
OAuth2 helpers for GitLab: PKCE parameters, code exchange and token refresh.
"""

import base64
import hashlib
import logging
import secrets
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

logger = logging.getLogger(__name__)

OAUTH_SCOPE = 'read_api'


class OAuthError(Exception):
    """Raised when the token endpoint rejects a request."""

    def __init__(self, status: int, message: Optional[str] = None):
        self.status = status
        super().__init__(message or f"OAuth token request failed: {status}")


@dataclass
class OAuthTokens:
    access_token: str
    refresh_token: str = ''
    token_type: str = 'Bearer'
    expires_in: Optional[int] = None
    created_at: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'OAuthTokens':
        return cls(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token', ''),
            token_type=data.get('token_type', 'Bearer'),
            expires_in=data.get('expires_in'),
            created_at=data.get('created_at'),
        )


def generate_pkce() -> Tuple[str, str]:
    """
    Generate a PKCE code verifier and its S256 challenge.

    Returns:
        (code_verifier, code_challenge) tuple
    """
    code_verifier = secrets.token_hex(32)
    digest = hashlib.sha256(code_verifier.encode()).digest()
    code_challenge = base64.urlsafe_b64encode(digest).decode().rstrip('=')
    return code_verifier, code_challenge


def build_auth_url(gitlab_url: str, client_id: str, redirect_uri: str, code_challenge: str) -> str:
    """Build the authorization URL the user is sent to."""
    params = urlencode({
        'client_id': client_id,
        'redirect_uri': redirect_uri,
        'response_type': 'code',
        'scope': OAUTH_SCOPE,
        'code_challenge': code_challenge,
        'code_challenge_method': 'S256',
    })
    return f"{gitlab_url.rstrip('/')}/oauth/authorize?{params}"


async def _token_request(session: aiohttp.ClientSession, gitlab_url: str, payload: Dict[str, str]) -> OAuthTokens:
    url = f"{gitlab_url.rstrip('/')}/oauth/token"
    async with session.post(url, json=payload) as response:
        if response.status >= 400:
            raise OAuthError(response.status)
        return OAuthTokens.from_api(await response.json())


async def exchange_code(
    session: aiohttp.ClientSession,
    gitlab_url: str,
    client_id: str,
    code: str,
    redirect_uri: str,
    code_verifier: str
) -> OAuthTokens:
    """Exchange an authorization code for a token pair."""
    return await _token_request(session, gitlab_url, {
        'grant_type': 'authorization_code',
        'client_id': client_id,
        'code': code,
        'redirect_uri': redirect_uri,
        'code_verifier': code_verifier,
    })


async def refresh_access_token(
    session: aiohttp.ClientSession,
    gitlab_url: str,
    client_id: str,
    refresh_token: str
) -> OAuthTokens:
    """
    Trade a refresh token for a new token pair.

    Raises:
        OAuthError: If GitLab rejects the refresh token
    """
    return await _token_request(session, gitlab_url, {
        'grant_type': 'refresh_token',
        'client_id': client_id,
        'refresh_token': refresh_token,
    })


def make_refresh_callback(connection, session: Optional[aiohttp.ClientSession] = None):
    """
    Build the refresh_auth callback for ClientConfig.

    The callback refreshes with the connection's current refresh token,
    stores the new pair on the connection and returns the new access token.
    It returns None when there is nothing to refresh with or GitLab refuses.

    Args:
        connection: ConnectionStore holding url, client id and tokens
        session: Optional aiohttp session to post with
    """

    async def refresh() -> Optional[str]:
        if not connection.refresh_token or not connection.client_id:
            return None

        try:
            if session is not None:
                tokens = await refresh_access_token(
                    session, connection.gitlab_url, connection.client_id, connection.refresh_token
                )
            else:
                async with aiohttp.ClientSession() as own_session:
                    tokens = await refresh_access_token(
                        own_session, connection.gitlab_url, connection.client_id, connection.refresh_token
                    )
        except (OAuthError, aiohttp.ClientError) as e:
            logger.warning(f"OAuth token refresh failed: {e}")
            return None

        connection.update_tokens(tokens.access_token, tokens.refresh_token)
        return tokens.access_token

    return refresh
