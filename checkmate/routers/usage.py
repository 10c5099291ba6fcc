from fastapi import APIRouter, Request

from checkmate.routers.dependencies import get_client_ip
from checkmate.services.usage import UsageEnvelope, UsageLimiter


def make_usage_router(usage_limiter: UsageLimiter):
    router = APIRouter(prefix="/api", tags=["usage"])

    @router.get("/usage", response_model=UsageEnvelope, summary="Remaining free checks today")
    async def get_usage(request: Request):
        return await usage_limiter.get_usage(get_client_ip(request))

    return router
