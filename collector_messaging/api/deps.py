from __future__ import annotations

import logging

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from collector_messaging.core.errors import APIError
from collector_messaging.core.security import decode_access_token
from collector_messaging.db.session import get_db
from collector_messaging.models import Profile

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/v1/auth/login")


def profile_id_from_token(token: str) -> str:
    payload = decode_access_token(token)
    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        logger.warning("Token subject is invalid")
        raise APIError(status_code=401, code="invalid_token", message="Token payload is invalid")
    return subject


def get_current_profile(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> Profile:
    logger.debug("Resolving current profile from access token")
    profile_id = profile_id_from_token(token)
    profile = db.get(Profile, profile_id)
    if profile is None:
        logger.warning("Token profile_id=%s not found", profile_id)
        raise APIError(status_code=401, code="invalid_token", message="Token user was not found")

    logger.debug("Resolved current profile profile_id=%s", profile.id)
    return profile
