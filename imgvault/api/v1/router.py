"""API v1 router aggregation"""
from fastapi import APIRouter

from imgvault.api.v1 import auth, backup

api_router = APIRouter()

api_router.include_router(auth.router)
api_router.include_router(backup.router)
