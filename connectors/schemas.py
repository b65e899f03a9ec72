"""
Pydantic schemas for the connection and webhook lifecycle.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from database.models import PlatformType


# ═══════════════════════════════════════════════════════════════════════════════
# OAuth2 handshake
# ═══════════════════════════════════════════════════════════════════════════════


class OAuth2Config(BaseModel):
    client_id: str
    client_secret: str
    redirect_uri: str
    authorization_url: str
    token_url: str
    scopes: List[str] = Field(default_factory=list)
    use_pkce: bool = False
    scope_separator: str = " "
    # provider-specific query params, e.g. Google's access_type=offline
    extra_authorization_params: Dict[str, str] = Field(default_factory=dict)


class TokenResponse(BaseModel):
    """Token endpoint response (authorization_code and refresh_token grants)."""

    model_config = ConfigDict(extra="ignore")

    access_token: str = Field(min_length=1)
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    token_type: Optional[str] = None
    scope: Optional[str] = None


class AuthorizationRequest(BaseModel):
    authorization_url: str
    state: str


class AuthorizationStateData(BaseModel):
    state: str
    user_id: str
    tenant_id: str
    platform_type: PlatformType
    code_verifier: Optional[str] = None
    platform_data: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    expires_at: datetime


class ConnectionTestResult(BaseModel):
    success: bool
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ConnectionSummary(BaseModel):
    """Connection as exposed over the API; never carries tokens."""

    id: uuid.UUID
    platform_type: str
    platform_name: str
    status: str
    scopes: List[str] = Field(default_factory=list)
    token_expires_at: Optional[datetime] = None
    last_sync_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    last_error_message: Optional[str] = None
    sync_count: int = 0
    account: Dict[str, Any] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Platform data views: one typed view per provider over the platform_data bag
# ═══════════════════════════════════════════════════════════════════════════════


class GoogleSheetsAccount(BaseModel):
    model_config = ConfigDict(extra="ignore")

    google_user_id: Optional[str] = None
    google_email: Optional[str] = None
    google_name: Optional[str] = None
    google_picture: Optional[str] = None
    last_token_refresh: Optional[str] = None


class YoucanStore(BaseModel):
    model_config = ConfigDict(extra="ignore")

    store_id: Optional[str] = None
    store_name: Optional[str] = None
    store_domain: Optional[str] = None
    last_token_refresh: Optional[str] = None


class ShopifyStore(BaseModel):
    model_config = ConfigDict(extra="ignore")

    shop: Optional[str] = None          # "acme" or "acme.myshopify.com"
    shop_name: Optional[str] = None
    shop_email: Optional[str] = None

    @property
    def shop_subdomain(self) -> Optional[str]:
        if not self.shop:
            return None
        return self.shop.removesuffix(".myshopify.com")


# ═══════════════════════════════════════════════════════════════════════════════
# Token refresh scheduler
# ═══════════════════════════════════════════════════════════════════════════════


class TokenHealthStatus(BaseModel):
    total: int = 0
    active: int = 0
    expiring_soon: int = 0
    expired: int = 0
    needing_refresh: int = 0


class SchedulerStatus(BaseModel):
    is_running: bool
    interval_ms: int
    interval_minutes: float


class RefreshBatchResult(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    # due when listed but already refreshed (or deactivated) by the time the lock was held
    skipped: int = 0
    failures: Dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════════════════════
# Webhooks
# ═══════════════════════════════════════════════════════════════════════════════


class WebhookNotification(BaseModel):
    """Push notification delivered by the provider for a watched resource."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: str = "api#channel"
    id: Optional[str] = None                      # local channel id
    resource_id: str = Field(alias="resourceId")  # provider's channel handle
    resource_uri: Optional[str] = Field(default=None, alias="resourceUri")
    resource_state: str = Field(alias="resourceState")
    event_type: Optional[str] = Field(default=None, alias="eventType")
    message_number: Optional[str] = Field(default=None, alias="messageNumber")
    channel_token: Optional[str] = Field(default=None, alias="channelToken")


class ChannelRegistration(BaseModel):
    external_subscription_id: str
    external_resource_id: str
    expiration: datetime


class SubscriptionRenewalResult(BaseModel):
    subscription_id: uuid.UUID
    success: bool
    error: Optional[str] = None


class CleanupResult(BaseModel):
    cleaned_count: int = 0
    errors: List[str] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════════════════
# Sync operations
# ═══════════════════════════════════════════════════════════════════════════════


class SyncCounters(BaseModel):
    records_processed: int = 0
    records_created: int = 0
    records_skipped: int = 0
    error_count: int = 0


class SyncOperationView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    connection_id: uuid.UUID
    resource_id: str
    operation_type: str
    status: str
    records_processed: int = 0
    records_created: int = 0
    records_skipped: int = 0
    error_count: int = 0
    error_details: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class WebhookSubscriptionView(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    connection_id: uuid.UUID
    resource_id: str
    external_subscription_id: str
    external_resource_id: str
    expiration: Optional[datetime] = None
    is_active: bool
