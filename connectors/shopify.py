"""
ShopifyPlatform — OAuth2 for Shopify stores.

Authorization and token URLs are shop-specific, so the shop domain must be
known before the redirect; it travels in the state's platform_data.  Shopify
does not support PKCE and offline tokens never expire.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Tuple

import httpx

from connectors.base import BasePlatform
from connectors.exceptions import AuthorizationError
from connectors.schemas import ConnectionTestResult, ShopifyStore
from database.models import PlatformType

logger = logging.getLogger(__name__)

_SHOPIFY_AUTH_URL = "https://{shop}.myshopify.com/admin/oauth/authorize"
_SHOPIFY_TOKEN_URL = "https://{shop}.myshopify.com/admin/oauth/access_token"
_SHOPIFY_API_VERSION = "2024-01"


class ShopifyPlatform(BasePlatform):
    """OAuth2 platform for Shopify."""

    @property
    def platform_type(self) -> PlatformType:
        return PlatformType.SHOPIFY

    @property
    def display_name(self) -> str:
        return "Shopify"

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
        return _SHOPIFY_AUTH_URL

    @property
    def token_endpoint(self) -> str:
        return _SHOPIFY_TOKEN_URL

    @property
    def scope_separator(self) -> str:
        return ","

    def client_credentials(self) -> Tuple[str, str]:
        return self._settings.shopify_client_id, self._settings.shopify_client_secret

    def resolve_endpoint(self, url: str, platform_data: Mapping[str, Any]) -> str:
        shop = self.account_view(platform_data).shop_subdomain
        if not shop:
            raise AuthorizationError("Shopify requires a shop domain")
        return url.format(shop=shop)

    def account_view(self, platform_data: Mapping[str, Any]) -> ShopifyStore:
        return ShopifyStore.model_validate(dict(platform_data or {}))

    def connection_label(self, platform_data: Mapping[str, Any]) -> str:
        store = self.account_view(platform_data)
        name = store.shop_name or store.shop
        return f"{self.display_name} - {name}" if name else self.display_name

    def _shop_api(self, platform_data: Mapping[str, Any]) -> str:
        shop = self.account_view(platform_data).shop_subdomain
        return f"https://{shop}.myshopify.com/admin/api/{_SHOPIFY_API_VERSION}"

    async def fetch_account_info(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        resp = await client.get(
            f"{self._shop_api(platform_data)}/shop.json",
            headers={"X-Shopify-Access-Token": access_token},
        )
        resp.raise_for_status()
        shop = resp.json().get("shop", {})
        return {
            "shop_name": shop.get("name"),
            "shop_email": shop.get("email"),
        }

    async def test_connection(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> ConnectionTestResult:
        result, body = await self._probe(
            client,
            f"{self._shop_api(platform_data)}/shop.json",
            {"X-Shopify-Access-Token": access_token},
        )
        if body is not None:
            result.details["shop_name"] = body.get("shop", {}).get("name")
        return result
