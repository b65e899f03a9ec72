"""
GoogleSheetsPlatform — OAuth2 web flow for Google Sheets / Drive.

Spreadsheet access plus Drive push notifications for change detection.
Supports several Google accounts per user (one connection each).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Tuple

import httpx

from connectors.base import BasePlatform
from connectors.schemas import ConnectionTestResult, GoogleSheetsAccount
from database.models import PlatformType

logger = logging.getLogger(__name__)

# Google OAuth2 endpoints
_GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
_GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
_GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
_GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class GoogleSheetsPlatform(BasePlatform):
    """OAuth2 platform for Google Sheets."""

    @property
    def platform_type(self) -> PlatformType:
        return PlatformType.GOOGLE_SHEETS

    @property
    def display_name(self) -> str:
        return "Google Sheets"

    @property
    def scopes(self) -> List[str]:
        return [
            "https://www.googleapis.com/auth/spreadsheets",
            "https://www.googleapis.com/auth/drive.readonly",
            "https://www.googleapis.com/auth/userinfo.email",
            "https://www.googleapis.com/auth/userinfo.profile",
        ]

    @property
    def authorization_endpoint(self) -> str:
        return _GOOGLE_AUTH_URL

    @property
    def token_endpoint(self) -> str:
        return _GOOGLE_TOKEN_URL

    @property
    def use_pkce(self) -> bool:
        return True

    def client_credentials(self) -> Tuple[str, str]:
        return self._settings.google_client_id, self._settings.google_client_secret

    def extra_authorization_params(self) -> Dict[str, str]:
        return {
            "access_type": "offline",       # gets refresh_token
            "prompt": "consent",            # force consent to always get refresh_token
        }

    def account_view(self, platform_data: Mapping[str, Any]) -> GoogleSheetsAccount:
        return GoogleSheetsAccount.model_validate(dict(platform_data or {}))

    def connection_label(self, platform_data: Mapping[str, Any]) -> str:
        email = self.account_view(platform_data).google_email
        return f"{self.display_name} - {email}" if email else self.display_name

    async def fetch_account_info(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {access_token}"}
        resp = await client.get(_GOOGLE_USERINFO_URL, headers=headers)
        resp.raise_for_status()
        user_info = resp.json()
        return {
            "google_user_id": user_info.get("id"),
            "google_email": user_info.get("email"),
            "google_name": user_info.get("name"),
            "google_picture": user_info.get("picture"),
        }

    async def test_connection(
        self,
        client: httpx.AsyncClient,
        access_token: str,
        platform_data: Mapping[str, Any],
    ) -> ConnectionTestResult:
        result, body = await self._probe(
            client, _GOOGLE_USERINFO_URL, {"Authorization": f"Bearer {access_token}"}
        )
        if body is not None:
            result.details["email"] = body.get("email")
        return result

    async def revoke_token(self, client: httpx.AsyncClient, token: str) -> bool:
        """Revoke the token at Google."""
        try:
            resp = await client.post(_GOOGLE_REVOKE_URL, params={"token": token})
            return resp.status_code == 200
        except httpx.HTTPError:
            logger.warning("Google token revocation failed", exc_info=True)
            return False
