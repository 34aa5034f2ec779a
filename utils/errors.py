"""
Error taxonomy for the lead-acquisition pipeline.

Every error carries a stable machine-readable ``code`` (used in callback
redirects and in ``SyncRun.per_branch_errors``) and a ``user_message``
that is safe to show to end users.  Vendor payloads live in ``details``
and are only ever logged.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Advisory (not an error): a valid token that can see zero ad accounts.
NO_AD_ACCOUNTS_FOUND = "no_ad_accounts_found"


class LeadSyncError(Exception):
    """Base class for every categorised pipeline failure."""

    code: str = "lead_sync_error"
    user_message: str = "Something went wrong while talking to the ad platform."

    def __init__(self, message: str = "", *, details: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message
        self.details: Dict[str, Any] = details or {}


# ── Handshake (fail-fast) ─────────────────────────────────────────────────


class HandshakeError(LeadSyncError):
    """Fatal to the authorization handshake; the user must start over."""

    code = "handshake_failed"
    user_message = "The connection could not be completed. Please try again."


class StateMismatch(HandshakeError):
    code = "state_mismatch"
    user_message = "The authorization request could not be verified. Please try again."


class StateExpired(HandshakeError):
    code = "state_expired"
    user_message = "The authorization request expired. Please try again."


class AuthorizationDenied(HandshakeError):
    code = "authorization_denied"
    user_message = "Access was not granted on the ad platform."


class TokenExchangeFailure(HandshakeError):
    code = "token_exchange_failed"
    user_message = "The ad platform rejected the authorization. Please reconnect."


class SessionRequired(HandshakeError):
    code = "session_required"
    user_message = "Your session has ended. Please sign in and connect again."


class InvalidTransition(LeadSyncError):
    code = "invalid_transition"


# ── Token lifecycle ───────────────────────────────────────────────────────


class InvalidToken(LeadSyncError):
    """The vendor rejected the bearer token (expired or revoked)."""

    code = "invalid_token"
    user_message = "The ad platform connection is no longer valid."


class ConnectionInvalid(InvalidToken):
    """Refresh failed; the connection must be re-authorized from scratch."""

    code = "reauthorization_required"
    user_message = "Please reconnect your ad platform account."


class ConnectionNotFound(LeadSyncError):
    code = "connection_not_found"
    user_message = "No ad platform account is connected."


# ── Discovery / fetch (isolated per branch) ───────────────────────────────


class UpstreamError(LeadSyncError):
    code = "upstream_error"
    user_message = "The ad platform returned an error."


class UpstreamRateLimited(UpstreamError):
    code = "upstream_rate_limited"
    user_message = "The ad platform is rate limiting requests. Try again later."


class PaginationLimitExceeded(UpstreamError):
    code = "pagination_limit_exceeded"


class MalformedLead(LeadSyncError):
    code = "malformed_lead"


class AdAccountNotFound(LeadSyncError):
    code = "ad_account_not_found"
    user_message = "That ad account is not visible to the connected user."


class SyncInProgress(LeadSyncError):
    code = "sync_in_progress"
    user_message = "A sync is already running for this account."
