from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ProfilePublic(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    full_name: str | None = None
