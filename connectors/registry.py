"""
PlatformRegistry — the configured OAuth2 platforms for this process.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from connectors.base import BasePlatform
from connectors.exceptions import PlatformNotConfiguredError
from connectors.google_sheets import GoogleSheetsPlatform
from connectors.schemas import OAuth2Config
from connectors.shopify import ShopifyPlatform
from connectors.youcan import YoucanPlatform
from database.models import PlatformType

logger = logging.getLogger(__name__)


class PlatformRegistry:
    """Lookup of platforms by type or URL slug."""

    def __init__(self, platforms: Iterable[BasePlatform]):
        self._all: List[BasePlatform] = list(platforms)
        self._platforms: Dict[PlatformType, BasePlatform] = {}
        for platform in self._all:
            if platform.is_configured():
                self._platforms[platform.platform_type] = platform
                logger.info(
                    "Platform registered: %s (%s)",
                    platform.display_name,
                    platform.slug,
                )
            else:
                logger.warning(
                    "Platform %s skipped — not configured (missing client_id/secret)",
                    platform.slug,
                )

    @classmethod
    def from_settings(cls, settings) -> "PlatformRegistry":
        return cls(
            [
                GoogleSheetsPlatform(settings),
                YoucanPlatform(settings),
                ShopifyPlatform(settings),
            ]
        )

    def get(self, platform_type: PlatformType | str) -> BasePlatform:
        """Get a configured platform, raising if it is unknown or unconfigured."""
        try:
            key = PlatformType(platform_type)
        except ValueError:
            raise PlatformNotConfiguredError(f"Unknown platform '{platform_type}'")
        platform = self._platforms.get(key)
        if platform is None:
            raise PlatformNotConfiguredError(f"Platform {key.value} is not configured")
        return platform

    def get_by_slug(self, slug: str) -> BasePlatform:
        return self.get(slug.upper())

    def config_for(
        self,
        platform_type: PlatformType | str,
        platform_data: Optional[Mapping[str, Any]] = None,
    ) -> OAuth2Config:
        return self.get(platform_type).oauth_config(platform_data)

    def list_platforms(self) -> List[Dict[str, Any]]:
        """Return info about all known platforms."""
        return [
            {
                "platform_type": p.platform_type.value,
                "slug": p.slug,
                "display_name": p.display_name,
                "configured": p.is_configured(),
                "scopes": p.scopes,
                "use_pkce": p.use_pkce,
            }
            for p in self._all
        ]
