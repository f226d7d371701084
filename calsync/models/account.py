from dataclasses import dataclass
from sqlmodel import SQLModel, Field, Column
from typing import Optional
from datetime import datetime
import uuid
from sqlalchemy import String, UniqueConstraint

PROVIDER_MTM = "mtm"
PROVIDER_GOOGLE = "google"

# connection_status values
STATUS_DISCONNECTED = "disconnected"
STATUS_CONNECTING = "connecting"
STATUS_CONNECTED = "connected"
STATUS_EXPIRED = "expired"
STATUS_ERROR = "error"


@dataclass(frozen=True)
class SyncState:
    last_sync_at: Optional[datetime]
    consecutive_errors: int
    backoff_until: Optional[datetime]

    def in_backoff(self, now: datetime) -> bool:
        return self.backoff_until is not None and self.backoff_until > now


class Account(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("uid", "provider", name="uq_account_uid_provider"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    uid: str = Field(sa_column=Column(String, index=True, nullable=False))
    provider: str = Field(sa_column=Column(String, index=True, nullable=False))
    connection_status: str = Field(default=STATUS_DISCONNECTED, index=True)
    encrypted_access_token: Optional[str] = None
    encrypted_refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None
    scope: Optional[str] = None
    encrypted_feed_url: Optional[str] = None
    feed_url_hash: Optional[str] = Field(default=None, index=True)
    last_sync_at: Optional[datetime] = None
    last_error: Optional[str] = None
    consecutive_errors: int = Field(default=0)
    backoff_until: Optional[datetime] = None
    mirror_enabled: bool = Field(default=False)
    mirror_calendar_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def sync_state(self) -> SyncState:
        return SyncState(
            last_sync_at=self.last_sync_at,
            consecutive_errors=self.consecutive_errors or 0,
            backoff_until=self.backoff_until,
        )

    @property
    def uses_oauth(self) -> bool:
        return bool(self.encrypted_access_token or self.encrypted_refresh_token)
