"""Access-token providers used to authorize Drive requests."""

from __future__ import annotations

import logging
import threading
from typing import Optional, Protocol

import google.auth.exceptions
import keyring
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from keyring.errors import KeyringError

from .config import Config
from .errors import AuthExpiredError

log = logging.getLogger(__name__)

TOKEN_URI = "https://oauth2.googleapis.com/token"
SCOPES = ("https://www.googleapis.com/auth/drive.file",)


class TokenProvider(Protocol):
    def get_token(self) -> str:
        """Return a valid access token or raise AuthExpiredError."""
        ...


class StaticTokenProvider:
    """Hands out a fixed, pre-minted access token."""

    def __init__(self, token: str):
        self.token = token

    def get_token(self) -> str:
        if not self.token:
            raise AuthExpiredError("No access token configured")
        return self.token


class RefreshTokenProvider:
    """Mints access tokens from an OAuth refresh token via google-auth."""

    def __init__(self, client_id: str, client_secret: str, refresh_token: str):
        if not refresh_token:
            raise AuthExpiredError("No refresh token available; authorize the application first")
        self._credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=list(SCOPES),
        )
        self._request = Request()
        self._lock = threading.Lock()

    def get_token(self) -> str:
        with self._lock:
            if not self._credentials.valid:
                try:
                    self._credentials.refresh(self._request)
                except google.auth.exceptions.RefreshError as e:
                    raise AuthExpiredError(f"Token refresh rejected: {e}") from e
                except google.auth.exceptions.TransportError as e:
                    raise AuthExpiredError(f"Token endpoint unreachable: {e}") from e
                log.debug("Access token refreshed")
            return self._credentials.token


def resolve_refresh_token(config: Config) -> Optional[str]:
    """Refresh token from the environment, falling back to the OS keyring."""
    token = config.refresh_token
    if not token and config.use_keyring:
        try:
            token = keyring.get_password(config.keyring_service, config.keyring_username)
            if token:
                log.info("Loaded refresh token from keyring")
        except KeyringError as e:
            log.warning(f"Keyring get failed: {e}")
    elif token and config.use_keyring:
        try:
            keyring.set_password(config.keyring_service, config.keyring_username, token)
            log.info("Stored refresh token in keyring")
        except KeyringError as e:
            log.warning(f"Keyring set failed: {e}")
    return token


def build_token_provider(config: Config) -> RefreshTokenProvider:
    token = resolve_refresh_token(config)
    return RefreshTokenProvider(config.client_id, config.client_secret, token or "")
