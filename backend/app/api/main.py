from fastapi import APIRouter

from app.api.routes import (
    agency,
    chat,
    documents,
    login,
    profiles,
    progress,
    storage,
    users,
    utils,
)

api_router = APIRouter()
api_router.include_router(login.router)
api_router.include_router(users.router)
api_router.include_router(profiles.router)
api_router.include_router(documents.router)
api_router.include_router(progress.router)
api_router.include_router(chat.router)
api_router.include_router(agency.router)
api_router.include_router(storage.router)
api_router.include_router(utils.router)
