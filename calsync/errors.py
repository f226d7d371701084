# calsync/errors.py
from typing import Optional


class IntegrationError(Exception):
    """
    Base class for every failure the sync engine surfaces.
    `code` is the machine-readable string returned to clients as `error`
    and stored in Account.last_error.
    """
    status_code = 500
    code = "internal_error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        if code:
            self.code = code
        super().__init__(message or self.code)


class ValidationError(IntegrationError):
    status_code = 400
    code = "invalid_request"


class AuthError(IntegrationError):
    status_code = 401
    code = "invalid_auth"


class NotConnected(IntegrationError):
    status_code = 404
    code = "not_connected"


class ReauthRequired(IntegrationError):
    # refresh token revoked / feed URL rejected; never auto-retried
    status_code = 409
    code = "reauth_required"


class InvalidOAuthState(IntegrationError):
    status_code = 400
    code = "invalid_state"


class ProviderError(IntegrationError):
    status_code = 502
    code = "provider_error"


class DecryptionError(IntegrationError):
    code = "decryption_failed"


class FeedError(IntegrationError):
    status_code = 502
    code = "feed_error"


class TransientFetchError(FeedError):
    code = "fetch_failed"


class FeedFormatError(FeedError):
    code = "invalid_format"


class RateLimited(IntegrationError):
    status_code = 429
    code = "rate_limited"

    def __init__(self, message: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MirrorAuthError(IntegrationError):
    status_code = 502
    code = "mirror_reauth_required"


def parse_retry_after(value: Optional[str]) -> Optional[int]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0, int(value.strip()))
    except ValueError:
        return None
