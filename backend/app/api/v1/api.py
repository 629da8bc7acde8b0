"""
API v1 Router
Aggregates all API endpoints.
"""
from fastapi import APIRouter

from app.api.v1.endpoints import (
    admin,
    billing,
    plans,
    resources,
)

api_router = APIRouter()

# Health check for API
@api_router.get("/ping", tags=["Health"])
async def ping():
    """Simple ping endpoint to verify API is responding"""
    return {"message": "pong", "api_version": "v1"}

# Include endpoint routers
api_router.include_router(plans.router, prefix="/plans", tags=["Plans"])
api_router.include_router(billing.router, prefix="/billing", tags=["Billing"])
api_router.include_router(resources.router, prefix="/resources", tags=["Resources"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
