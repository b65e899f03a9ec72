"""
YoucanPlatform — OAuth2 for YouCan Shop stores.

YouCan supports PKCE; the connected store is identified via ``GET /shop``.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Tuple

import httpx

from connectors.base import BasePlatform
from connectors.schemas import ConnectionTestResult, YoucanStore
from database.models import PlatformType

logger = logging.getLogger(__name__)

# YouCan OAuth2 endpoints
_YC_AUTH_URL = "https://youcan.shop/oauth/authorize"
_YC_TOKEN_URL = "https://youcan.shop/oauth/token"
_YC_API = "https://youcan.shop/api/v1"


class YoucanPlatform(BasePlatform):
    """OAuth2 platform for YouCan."""

    @property
    def platform_type(self) -> PlatformType:
        return PlatformType.YOUCAN

    @property
    def display_name(self) -> str:
        return "YouCan"

    @property
    def scopes(self) -> List[str]:
        return [
            "read_orders",
            "write_orders",
            "read_products",
            "write_products",
            "read_customers",
            "write_customers",
        ]

    @property
    def authorization_endpoint(self) -> str:
        return _YC_AUTH_URL

    @property
    def token_endpoint(self) -> str:
        return _YC_TOKEN_URL

    @property
    def use_pkce(self) -> bool:
        return True

    def client_credentials(self) -> Tuple[str, str]:
        return self._settings.youcan_client_id, self._settings.youcan_client_secret

    def account_view(self, platform_data: Mapping[str, Any]) -> YoucanStore:
        return YoucanStore.model_validate(dict(platform_data or {}))

    def connection_label(self, platform_data: Mapping[str, Any]) -> str:
        store = self.account_view(platform_data)
        name = store.store_name or store.store_domain
        return f"{self.display_name} - {name}" if name else self.display_name

    async def fetch_account_info(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        resp = await client.get(
            f"{_YC_API}/shop",
            headers={"Authorization": f"Bearer {access_token}"},
        )
        resp.raise_for_status()
        payload = resp.json()
        shop = payload.get("data", payload)
        return {
            "store_id": str(shop.get("id", "")) or None,
            "store_name": shop.get("name"),
            "store_domain": shop.get("domain"),
        }

    async def test_connection(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> ConnectionTestResult:
        result, body = await self._probe(
            client, f"{_YC_API}/shop", {"Authorization": f"Bearer {access_token}"}
        )
        if body is not None:
            shop = body.get("data", body)
            result.details["store_name"] = shop.get("name")
        return result
