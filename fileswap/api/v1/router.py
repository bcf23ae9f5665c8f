"""API v1 Router"""

from fastapi import APIRouter

from fileswap.api.v1.endpoints import download

api_router = APIRouter()

api_router.include_router(download.router, prefix="/files", tags=["files"])

