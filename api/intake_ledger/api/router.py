from fastapi import APIRouter

from intake_ledger.api.routes import health, intake, uploads

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(intake.router, prefix="/api", tags=["intake"])
api_router.include_router(uploads.router, prefix="/api", tags=["uploads"])
