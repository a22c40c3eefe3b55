from __future__ import annotations

from pydantic import BaseModel, Field


class PurchaseCreditsRequest(BaseModel):
    package_id: str = Field(min_length=1, max_length=32)
