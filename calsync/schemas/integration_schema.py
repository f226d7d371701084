# calsync/schemas/integration_schema.py
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from typing import Any, Optional


class ConnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # checked by the service so a bad value comes back as 400 invalid_url
    feed_url: Optional[Any] = Field(default=None, validation_alias=AliasChoices("feedUrl", "icsUrl", "feed_url"))


class DisconnectRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    delete_events: bool = Field(default=False, validation_alias=AliasChoices("deleteEvents", "delete_events", "purge"))


class ToggleMirrorRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    mirror_enabled: bool = Field(validation_alias=AliasChoices("mirrorEnabled", "enabled", "mirror_enabled"))
    calendar_id: Optional[str] = Field(default=None, validation_alias=AliasChoices("calendarId", "calendar_id"))
