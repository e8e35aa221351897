from typing import Literal

from pydantic import BaseModel, Field

ItemKind = Literal["raw_item", "extracted_post", "media_download"]


class DeadLetterRequest(BaseModel):
    reason: str = Field(default="dead-lettered by operator", min_length=1, max_length=500)


class DeadLetterOut(BaseModel):
    kind: ItemKind
    id: str
    status: str
    attempts: int
    last_error: str | None = None


class ReinjectOut(BaseModel):
    id: str
    retry_of: str
    source: str
    status: str
