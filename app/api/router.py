from fastapi import APIRouter
from app.api.endpoints import analyses, queries

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(analyses.router)
api_router.include_router(queries.router)
