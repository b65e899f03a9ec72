"""
BasePlatform — abstract interface for every OAuth2 platform.

Each provider (Google Sheets, YouCan, Shopify) subclasses this and supplies
its endpoints, scopes, identity lookup and connection test.  The shared
handshake, storage and refresh logic lives in ``OAuth2ConnectionManager``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
from pydantic import BaseModel

from connectors.exceptions import PlatformNotConfiguredError
from connectors.schemas import ConnectionTestResult, OAuth2Config
from database.models import PlatformType


class BasePlatform(ABC):
    """Abstract base for all OAuth2 platforms."""

    def __init__(self, settings):
        self._settings = settings

    # ── Identity ────────────────────────────────────────────────────────
    @property
    @abstractmethod
    def platform_type(self) -> PlatformType:
        ...

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Human-readable: 'Google Sheets', 'YouCan', 'Shopify'."""
        ...

    @property
    @abstractmethod
    def scopes(self) -> List[str]:
        ...

    @property
    def slug(self) -> str:
        """URL segment: 'google_sheets', 'youcan', 'shopify'."""
        return self.platform_type.value.lower()

    # ── OAuth endpoints ─────────────────────────────────────────────────
    @property
    @abstractmethod
    def authorization_endpoint(self) -> str:
        ...

    @property
    @abstractmethod
    def token_endpoint(self) -> str:
        ...

    @property
    def use_pkce(self) -> bool:
        return False

    @property
    def scope_separator(self) -> str:
        return " "

    @abstractmethod
    def client_credentials(self) -> Tuple[str, str]:
        """(client_id, client_secret) from settings."""
        ...

    def extra_authorization_params(self) -> Dict[str, str]:
        return {}

    def is_configured(self) -> bool:
        client_id, client_secret = self.client_credentials()
        return bool(client_id and client_secret)

    def resolve_endpoint(self, url: str, platform_data: Mapping[str, Any]) -> str:
        """Hook for providers with per-account endpoints."""
        return url

    def oauth_config(self, platform_data: Optional[Mapping[str, Any]] = None) -> OAuth2Config:
        if not self.is_configured():
            raise PlatformNotConfiguredError(
                f"Platform {self.platform_type.value} is not configured (missing client id/secret)"
            )
        platform_data = platform_data or {}
        client_id, client_secret = self.client_credentials()
        return OAuth2Config(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=self._settings.get_redirect_uri(self.slug),
            authorization_url=self.resolve_endpoint(self.authorization_endpoint, platform_data),
            token_url=self.resolve_endpoint(self.token_endpoint, platform_data),
            scopes=list(self.scopes),
            use_pkce=self.use_pkce,
            scope_separator=self.scope_separator,
            extra_authorization_params=self.extra_authorization_params(),
        )

    # ── Account data ────────────────────────────────────────────────────
    @abstractmethod
    def account_view(self, platform_data: Mapping[str, Any]) -> BaseModel:
        """Typed view over the connection's platform_data bag."""
        ...

    def connection_label(self, platform_data: Mapping[str, Any]) -> str:
        return self.display_name

    async def fetch_account_info(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """
        Look up the remote account right after the code exchange.

        Returns keys to merge into platform_data.
        """
        return {}

    # ── Health ──────────────────────────────────────────────────────────
    @abstractmethod
    async def test_connection(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> ConnectionTestResult:
        ...

    async def revoke_token(self, client: httpx.AsyncClient, token: str) -> bool:
        """
        Revoke the token at the provider (optional).
        Returns True on success, False if provider doesn't support revocation.
        """
        return False

    # ── Helpers ─────────────────────────────────────────────────────────
    async def _probe(
        self,
        client: httpx.AsyncClient,
        url: str,
        headers: Dict[str, str],
    ) -> Tuple[ConnectionTestResult, Optional[Dict[str, Any]]]:
        """GET an identity endpoint and turn the outcome into a test result."""
        try:
            resp = await client.get(url, headers=headers)
        except httpx.HTTPError as exc:
            return ConnectionTestResult(success=False, error=f"{self.display_name} unreachable: {exc}"), None
        if resp.status_code != 200:
            return (
                ConnectionTestResult(
                    success=False,
                    error=f"{self.display_name} returned HTTP {resp.status_code}",
                    details={"status_code": resp.status_code},
                ),
                None,
            )
        return ConnectionTestResult(success=True, details={"platform": self.display_name}), resp.json()
