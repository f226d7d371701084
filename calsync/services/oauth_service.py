# calsync/services/oauth_service.py
import base64
import hashlib
import os
import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

import httpx
import structlog
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from calsync.errors import (
    InvalidOAuthState,
    ProviderError,
    RateLimited,
    ReauthRequired,
    TransientFetchError,
    ValidationError,
    parse_retry_after,
)
from calsync.infrastructure.accounts_repo import AccountsRepository
from calsync.infrastructure.redis_cache import Cache
from calsync.infrastructure.vault import SecretVault
from calsync.models.account import (
    Account,
    PROVIDER_GOOGLE,
    PROVIDER_MTM,
    STATUS_CONNECTED,
    STATUS_CONNECTING,
    STATUS_ERROR,
    STATUS_EXPIRED,
)

logger = structlog.get_logger(__name__)

OAUTH_SESSION_TTL = 600
TOKEN_SAFETY_BUFFER = timedelta(minutes=5)
TOKEN_HTTP_TIMEOUT = 15.0

MTM_CLIENT_ID = os.getenv("MTM_CLIENT_ID", "")
MTM_CLIENT_SECRET = os.getenv("MTM_CLIENT_SECRET")
MTM_AUTH_URL = os.getenv("MTM_AUTH_URL", "https://app.meettomatch.com/oauth/authorize")
MTM_TOKEN_URL = os.getenv("MTM_TOKEN_URL", "https://app.meettomatch.com/oauth/token")
MTM_REVOKE_URL = os.getenv("MTM_REVOKE_URL", "https://app.meettomatch.com/oauth/revoke")
MTM_REDIRECT_URI = os.getenv("MTM_REDIRECT_URI", "")
MTM_SCOPES = os.getenv("MTM_SCOPES", "meetings.read calendar.read")

GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
GOOGLE_CLIENT_SECRET = os.getenv("GOOGLE_CLIENT_SECRET")
GOOGLE_REDIRECT_URI = os.getenv("GOOGLE_REDIRECT_URI", "")
GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"
GOOGLE_SCOPES = "https://www.googleapis.com/auth/calendar.events"


@dataclass(frozen=True)
class OAuthProvider:
    name: str
    client_id: str
    client_secret: Optional[str]
    auth_url: str
    token_url: str
    revoke_url: Optional[str]
    redirect_uri: str
    scopes: str
    extra_auth_params: Dict[str, str] = field(default_factory=dict)

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.redirect_uri and self.auth_url and self.token_url)


def providers_from_env() -> Dict[str, OAuthProvider]:
    return {
        PROVIDER_MTM: OAuthProvider(
            name=PROVIDER_MTM,
            client_id=MTM_CLIENT_ID,
            client_secret=MTM_CLIENT_SECRET,
            auth_url=MTM_AUTH_URL,
            token_url=MTM_TOKEN_URL,
            revoke_url=MTM_REVOKE_URL,
            redirect_uri=MTM_REDIRECT_URI,
            scopes=MTM_SCOPES,
        ),
        PROVIDER_GOOGLE: OAuthProvider(
            name=PROVIDER_GOOGLE,
            client_id=GOOGLE_CLIENT_ID,
            client_secret=GOOGLE_CLIENT_SECRET,
            auth_url=GOOGLE_AUTH_URL,
            token_url=GOOGLE_TOKEN_URL,
            revoke_url=GOOGLE_REVOKE_URL,
            redirect_uri=GOOGLE_REDIRECT_URI,
            scopes=GOOGLE_SCOPES,
            extra_auth_params={"access_type": "offline", "prompt": "consent"},
        ),
    }


class OAuthSession(BaseModel):
    session_id: str
    uid: str
    provider: str
    verifier: str
    state: str
    expires_at: datetime


def generate_pkce_pair() -> Tuple[str, str]:
    """
    PKCE verifier/challenge per RFC 7636 (S256).
    48 random bytes -> 64 urlsafe characters, well inside the 43..128 range.
    """
    verifier = secrets.token_urlsafe(48)
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return verifier, challenge


def _session_key(state: str) -> str:
    return f"oauth_session:{state}"


class TokenManager:
    """
    Owns the OAuth lifecycle of both providers: PKCE authorization,
    code exchange, refresh and revoke. Tokens are only ever stored encrypted.
    """

    def __init__(
        self,
        session: AsyncSession,
        cache: Cache,
        vault: SecretVault,
        http_client: httpx.AsyncClient,
        providers: Dict[str, OAuthProvider],
    ):
        self.repo = AccountsRepository(session)
        self.cache = cache
        self.vault = vault
        self.http_client = http_client
        self.providers = providers

    def provider(self, name: str) -> OAuthProvider:
        provider = self.providers.get(name)
        if provider is None:
            raise ValidationError(f"unknown provider {name}", code="unknown_provider")
        return provider

    # --- authorization code + PKCE ---

    async def begin_authorization(self, uid: str, provider_name: str) -> Tuple[str, OAuthSession]:
        provider = self.provider(provider_name)
        if not provider.configured:
            raise ValidationError(f"{provider_name} oauth not configured", code="provider_not_configured")

        verifier, challenge = generate_pkce_pair()
        state = secrets.token_urlsafe(32)
        oauth_session = OAuthSession(
            session_id=str(uuid.uuid4()),
            uid=str(uid),
            provider=provider.name,
            verifier=verifier,
            state=state,
            expires_at=datetime.utcnow() + timedelta(seconds=OAUTH_SESSION_TTL),
        )
        await self.cache.set(_session_key(state), oauth_session.model_dump_json(), ttl=OAUTH_SESSION_TTL)

        account = await self.repo.get(uid, provider.name)
        if account and account.connection_status != STATUS_CONNECTED:
            await self.repo.set_status(account, STATUS_CONNECTING)

        params = {
            "client_id": provider.client_id,
            "redirect_uri": provider.redirect_uri,
            "response_type": "code",
            "scope": provider.scopes,
            "state": state,
            "code_challenge": challenge,
            "code_challenge_method": "S256",
            **provider.extra_auth_params,
        }
        url = httpx.URL(provider.auth_url).copy_merge_params(params)
        logger.info("oauth_authorization_started", uid=uid, provider=provider.name, session_id=oauth_session.session_id)
        return str(url), oauth_session

    async def consume_session(self, state: str) -> OAuthSession:
        """Single use: the session is deleted by the same call that reads it."""
        if not state:
            raise InvalidOAuthState("missing state")
        raw = await self.cache.pop(_session_key(state))
        if not raw:
            logger.warning("oauth_state_unknown_or_replayed")
            raise InvalidOAuthState("invalid or expired state")
        try:
            oauth_session = OAuthSession.model_validate_json(raw)
        except ValueError as e:
            raise InvalidOAuthState("corrupt oauth session") from e
        if oauth_session.expires_at <= datetime.utcnow() or not secrets.compare_digest(oauth_session.state, state):
            raise InvalidOAuthState("invalid or expired state")
        return oauth_session

    async def complete_authorization(self, state: str, code: str, provider_name: Optional[str] = None) -> Account:
        oauth_session = await self.consume_session(state)
        if provider_name and oauth_session.provider != provider_name:
            raise InvalidOAuthState("state provider mismatch")
        if not code:
            raise ValidationError("missing code", code="missing_code")
        provider = self.provider(oauth_session.provider)

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": provider.redirect_uri,
            "client_id": provider.client_id,
            "code_verifier": oauth_session.verifier,
        }
        if provider.client_secret:
            data["client_secret"] = provider.client_secret
        token_data = await self._token_request(provider, data, on_rejected=ProviderError("token exchange rejected", code="token_exchange_failed"))

        access_token = token_data.get("access_token")
        if not access_token:
            raise ProviderError("no access token returned from provider", code="token_exchange_failed")

        account = await self.repo.get(oauth_session.uid, provider.name)
        if account is None:
            account = Account(uid=oauth_session.uid, provider=provider.name)
        refresh_token = token_data.get("refresh_token")
        account.encrypted_access_token = self.vault.encrypt(access_token)
        if refresh_token:
            account.encrypted_refresh_token = self.vault.encrypt(refresh_token)
        account.expires_at = _expiry(token_data.get("expires_in"))
        account.scope = token_data.get("scope") or provider.scopes
        account.connection_status = STATUS_CONNECTED
        account.last_error = None
        account.consecutive_errors = 0
        account.backoff_until = None
        account = await self.repo.save(account)
        logger.info("oauth_connected", uid=account.uid, provider=provider.name, session_id=oauth_session.session_id)
        return account

    # --- access tokens ---

    async def get_valid_access_token(self, account: Account, now: Optional[datetime] = None) -> str:
        now = now or datetime.utcnow()
        if account.encrypted_access_token and (
            account.expires_at is None or account.expires_at - now > TOKEN_SAFETY_BUFFER
        ):
            return self.vault.decrypt(account.encrypted_access_token)
        return await self.refresh(account, now)

    async def refresh(self, account: Account, now: Optional[datetime] = None) -> str:
        provider = self.provider(account.provider)
        if not account.encrypted_refresh_token:
            await self.repo.set_status(account, STATUS_EXPIRED, last_error=ReauthRequired.code)
            logger.warning("oauth_token_expired_without_refresh", uid=account.uid, provider=account.provider)
            raise ReauthRequired(f"{account.provider} token expired")

        data = {
            "grant_type": "refresh_token",
            "refresh_token": self.vault.decrypt(account.encrypted_refresh_token),
            "client_id": provider.client_id,
        }
        if provider.client_secret:
            data["client_secret"] = provider.client_secret

        try:
            token_data = await self._token_request(provider, data, on_rejected=ReauthRequired(f"{account.provider} refresh rejected"))
        except ReauthRequired:
            # dead credential: park the account until the user reconnects
            await self.repo.set_status(account, STATUS_ERROR, last_error=ReauthRequired.code)
            logger.warning("oauth_refresh_rejected", uid=account.uid, provider=account.provider)
            raise

        access_token = token_data.get("access_token")
        if not access_token:
            raise TransientFetchError("refresh response carried no access token")

        new_refresh = token_data.get("refresh_token")
        if account.connection_status == STATUS_EXPIRED:
            account.connection_status = STATUS_CONNECTED
        await self.repo.update_tokens(
            account,
            self.vault.encrypt(access_token),
            self.vault.encrypt(new_refresh) if new_refresh else None,
            _expiry(token_data.get("expires_in"), now),
            scope=token_data.get("scope"),
        )
        logger.info("oauth_token_refreshed", uid=account.uid, provider=account.provider, expires_at=str(account.expires_at))
        return access_token

    async def revoke(self, account: Account) -> bool:
        """Best effort; a failure is logged and never blocks disconnect."""
        provider = self.providers.get(account.provider)
        token_enc = account.encrypted_refresh_token or account.encrypted_access_token
        if provider is None or not provider.revoke_url or not token_enc:
            return False
        try:
            data = {"token": self.vault.decrypt(token_enc), "client_id": provider.client_id}
            resp = await self.http_client.post(provider.revoke_url, data=data, timeout=TOKEN_HTTP_TIMEOUT)
        except Exception as e:
            logger.warning("oauth_revoke_failed", uid=account.uid, provider=account.provider, error=str(e))
            return False
        if not resp.is_success:
            logger.warning("oauth_revoke_failed", uid=account.uid, provider=account.provider, status=resp.status_code)
            return False
        logger.info("oauth_revoked", uid=account.uid, provider=account.provider)
        return True

    async def _token_request(self, provider: OAuthProvider, data: dict, on_rejected: Exception) -> dict:
        try:
            resp = await self.http_client.post(
                provider.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=TOKEN_HTTP_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise TransientFetchError(f"{provider.name} token endpoint unreachable") from e

        if resp.status_code == 429:
            raise RateLimited(f"{provider.name} token endpoint rate limited", retry_after=parse_retry_after(resp.headers.get("Retry-After")))
        if resp.status_code in (400, 401):
            logger.info("oauth_token_request_rejected", provider=provider.name, status=resp.status_code, error=_error_code(resp))
            raise on_rejected
        if not resp.is_success:
            raise TransientFetchError(f"{provider.name} token endpoint returned HTTP {resp.status_code}")
        try:
            return resp.json()
        except ValueError as e:
            raise TransientFetchError(f"{provider.name} token endpoint returned invalid json") from e


def _expiry(expires_in, now: Optional[datetime] = None) -> Optional[datetime]:
    if not expires_in:
        return None
    return (now or datetime.utcnow()) + timedelta(seconds=int(expires_in))


def _error_code(resp: httpx.Response) -> Optional[str]:
    try:
        body = resp.json()
    except ValueError:
        return None
    return body.get("error") if isinstance(body, dict) else None
