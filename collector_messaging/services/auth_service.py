from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from collector_messaging.core.errors import APIError
from collector_messaging.core.security import create_access_token, hash_password, verify_password
from collector_messaging.core.settings import get_settings
from collector_messaging.models import Profile
from collector_messaging.schemas.auth import AccessToken, LoginRequest, RegisterRequest

logger = logging.getLogger(__name__)
settings = get_settings()


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _access_token(profile: Profile) -> AccessToken:
    return AccessToken(
        access_token=create_access_token(profile_id=profile.id),
        token_type="bearer",
        expires_in=settings.access_token_expire_minutes * 60,
    )


def register_profile(db: Session, payload: RegisterRequest) -> tuple[Profile, AccessToken]:
    email = _normalize_email(payload.email)
    existing = db.scalar(select(Profile).where(Profile.email == email))
    if existing is not None:
        logger.warning("Registration rejected, email already in use")
        raise APIError(status_code=409, code="email_taken", message="Email is already registered")

    profile = Profile(
        email=email,
        full_name=payload.full_name,
        password_hash=hash_password(payload.password),
    )
    db.add(profile)
    db.commit()
    db.refresh(profile)
    logger.info("Profile registered profile_id=%s", profile.id)
    return profile, _access_token(profile)


def authenticate_profile(db: Session, payload: LoginRequest) -> tuple[Profile, AccessToken]:
    profile = db.scalar(select(Profile).where(Profile.email == _normalize_email(payload.email)))
    if profile is None or not verify_password(payload.password, profile.password_hash):
        raise APIError(status_code=401, code="invalid_credentials", message="Invalid email or password")

    logger.debug("Profile authenticated profile_id=%s", profile.id)
    return profile, _access_token(profile)
