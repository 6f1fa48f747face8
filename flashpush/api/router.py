from fastapi import APIRouter

from flashpush.api.push import router as push_router

api_router = APIRouter()

# API routes at /api/*
api_router.include_router(push_router, prefix="/api", tags=["push"])
