from typing import Literal

from pydantic import BaseModel

PlatformName = Literal["strava", "bluesky", "instagram"]


class WebhookAccepted(BaseModel):
    status: Literal["accepted", "ignored"]
    raw_item_id: str | None = None
    detail: str | None = None
