from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from collector_messaging.core.errors import success_response
from collector_messaging.db.session import get_db
from collector_messaging.schemas.auth import AuthResponse, LoginRequest, RegisterRequest
from collector_messaging.schemas.profiles import ProfilePublic
from collector_messaging.services import auth_service

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register")
def register(payload: RegisterRequest, db: Session = Depends(get_db)):
    logger.info("Auth register endpoint hit")
    profile, token = auth_service.register_profile(db, payload)
    body = AuthResponse(user=ProfilePublic.model_validate(profile), tokens=token)
    return success_response(body.model_dump(mode="json"), status_code=status.HTTP_201_CREATED)


@router.post("/login")
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    logger.info("Auth login endpoint hit")
    profile, token = auth_service.authenticate_profile(db, payload)
    body = AuthResponse(user=ProfilePublic.model_validate(profile), tokens=token)
    return success_response(body.model_dump(mode="json"))
