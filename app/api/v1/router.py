from fastapi import APIRouter

from app.api.v1.endpoints import (
    # Distribution Engine
    distributions,
    deals,
)


api_router = APIRouter(prefix="/api/v1")

# Distribution Engine
api_router.include_router(distributions.router)
api_router.include_router(deals.router)
