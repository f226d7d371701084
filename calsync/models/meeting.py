from sqlmodel import SQLModel, Field, Column
from typing import Optional, List
import uuid
from datetime import datetime
from sqlalchemy import String, JSON, UniqueConstraint

MEETING_CONFIRMED = "confirmed"
MEETING_PENDING = "pending"
MEETING_DECLINED = "declined"
MEETING_CANCELED = "canceled"

# written from the feed on every reconcile; everything else on the row is local
FEED_FIELDS = (
    "title",
    "description",
    "start",
    "end",
    "time_zone",
    "location",
    "lat",
    "lon",
    "participants",
    "status",
    "id_synthesized",
)


class Meeting(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("owner_uid", "provider", "external_id", name="uq_meeting_owner_provider_external"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    owner_uid: str = Field(sa_column=Column(String, index=True, nullable=False))
    provider: str = Field(default="mtm", index=True)
    external_id: str = Field(sa_column=Column(String, index=True, nullable=False))
    id_synthesized: bool = Field(default=False)
    title: str = Field(default="Untitled Meeting")
    description: Optional[str] = Field(default=None)
    start: datetime
    end: datetime
    time_zone: Optional[str] = Field(default=None)
    location: Optional[str] = Field(default=None)
    lat: Optional[float] = Field(default=None)
    lon: Optional[float] = Field(default=None)
    participants: List[dict] = Field(sa_column=Column(JSON), default=[])
    status: str = Field(default=MEETING_CONFIRMED, index=True)  # confirmed, pending, declined, canceled
    mirror_ref: Optional[str] = Field(default=None)  # google calendar event id
    mirror_pending: bool = Field(default=False, index=True)  # feed change not yet written to google
    notes: Optional[str] = Field(default=None)  # user annotation, never overwritten by sync
    last_seen_at: Optional[datetime] = Field(default=None)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.status != MEETING_CANCELED
