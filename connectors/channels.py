"""
DriveChannelClient — Google Drive push-notification channels (files.watch /
channels.stop) over the shared httpx client.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx

from connectors.clock import Clock, utcnow
from connectors.exceptions import WebhookSetupError
from connectors.schemas import ChannelRegistration

logger = logging.getLogger(__name__)

_DRIVE_API = "https://www.googleapis.com/drive/v3"

# Drive channels live 24h when the provider does not say otherwise.
DEFAULT_CHANNEL_TTL = timedelta(hours=24)


class DriveChannelClient:
    def __init__(self, http_client: httpx.AsyncClient, *, base_url: str = _DRIVE_API, clock: Clock = utcnow):
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    async def watch(
        self,
        access_token: str,
        file_id: str,
        *,
        channel_id: str,
        address: str,
        token: Optional[str] = None,
    ) -> ChannelRegistration:
        """
        Open a web_hook channel on ``file_id``.

        Raises WebhookSetupError on transport errors, non-2xx responses
        (rate limit, auth failure, missing file) or an incomplete body.
        """
        body = {"id": channel_id, "type": "web_hook", "address": address}
        if token:
            body["token"] = token
        try:
            resp = await self._http.post(
                f"{self._base_url}/files/{file_id}/watch",
                json=body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise WebhookSetupError(f"Drive watch request failed: {exc}") from exc

        if resp.status_code >= 400:
            raise WebhookSetupError(
                f"Drive watch for {file_id} returned HTTP {resp.status_code}: {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise WebhookSetupError("Invalid watch response from Google Drive") from exc
        if not isinstance(data, dict) or not data.get("id") or not data.get("resourceId"):
            raise WebhookSetupError("Invalid watch response from Google Drive")

        expiration = data.get("expiration")
        if expiration:
            try:
                expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=timezone.utc)
            except (TypeError, ValueError, OverflowError, OSError) as exc:
                raise WebhookSetupError(f"Invalid channel expiration from Google Drive: {expiration!r}") from exc
        else:
            expires_at = self._clock() + DEFAULT_CHANNEL_TTL

        logger.info("Opened Drive channel %s on file %s (expires %s)", data["id"], file_id, expires_at)
        return ChannelRegistration(
            external_subscription_id=data["id"],
            external_resource_id=data["resourceId"],
            expiration=expires_at,
        )

    async def stop(self, access_token: str, channel_id: str, resource_id: str) -> None:
        """Close a channel.  Raises httpx errors; callers decide whether to care."""
        resp = await self._http.post(
            f"{self._base_url}/channels/stop",
            json={"id": channel_id, "resourceId": resource_id},
            headers={"Authorization": f"Bearer {access_token}"},
        )
        # Already-gone channels count as stopped.
        if resp.status_code != 404:
            resp.raise_for_status()
        logger.info("Stopped Drive channel %s", channel_id)
