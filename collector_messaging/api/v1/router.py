from fastapi import APIRouter

from collector_messaging.api.v1 import auth, conversations, messages, profiles, ws

api_router = APIRouter()
api_router.include_router(auth.router)
api_router.include_router(profiles.router)
api_router.include_router(conversations.router)
api_router.include_router(messages.router)
api_router.include_router(messages.message_router)
api_router.include_router(ws.router)
