from fastapi import APIRouter
from atspect.routers import resumes, status, uploads

# Centralized API router hub
# Routers are aggregated here, and main.py only imports this single hub.
api_router = APIRouter()

api_router.include_router(uploads.router, tags=["Uploads"])
api_router.include_router(resumes.router, tags=["Resumes"])
api_router.include_router(status.router, tags=["Status"])
