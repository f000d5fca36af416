from __future__ import annotations

from fastapi import APIRouter, Depends

from collector_messaging.api.deps import get_current_profile
from collector_messaging.core.errors import success_response
from collector_messaging.models import Profile
from collector_messaging.schemas.profiles import ProfilePublic

router = APIRouter(prefix="/profiles", tags=["profiles"])


@router.get("/me")
def me(current_profile: Profile = Depends(get_current_profile)):
    return success_response(ProfilePublic.model_validate(current_profile).model_dump(mode="json"))
