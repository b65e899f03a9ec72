"""
connectors — OAuth2 connection and webhook lifecycle for external platforms.

Provides:
  • OAuth2 authorization URLs with CSRF state and PKCE
  • Callback handling (code → token exchange)
  • Encrypted token storage with on-demand and scheduled refresh
  • Drive push-notification subscriptions and coalesced sync triggering
  • Revocation / disconnect

Each platform (Google Sheets, YouCan, Shopify) is a subclass of BasePlatform.
"""
