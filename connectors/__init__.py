"""
connectors — ad-platform integration module.

Provides a vendor-neutral connector framework that handles:
  • OAuth2 auth-URL generation with a single-use server-side CSRF nonce
  • Callback handling (code → long-lived token exchange)
  • Per-owner token storage, refresh and invalidation
  • Fernet encryption of tokens at rest
  • Paged listing of ad accounts, lead forms and leads

Each ad platform (Meta Lead Ads, …) is a subclass of BaseAdConnector.
"""
