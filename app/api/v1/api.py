from fastapi import APIRouter

from app.api.v1.endpoints import sso

api_router = APIRouter()
api_router.include_router(sso.router, prefix="/sso", tags=["sso"])
