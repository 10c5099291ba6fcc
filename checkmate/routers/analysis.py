import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
from starlette import status

from checkmate.routers.dependencies import (
    classify_model_error,
    get_client_ip,
    quota_exceeded_response,
)
from checkmate.schemas.analysis import AnalysisTableItem, AnalysisValidationError
from checkmate.services.analysis import (
    AnalysisService,
    AnalyzeRequest,
    EmptyModelResponseError,
    GenerateImageRequest,
    InvalidAnalysisRequestError,
)
from checkmate.services.usage import UsageLimiter

log = logging.getLogger(__name__)


class FixPromptRequest(BaseModel):
    issue: Optional[AnalysisTableItem] = None
    issues: List[AnalysisTableItem] = Field(default_factory=list)
    comprehensive: bool = False


def _raise_for_model_error(error: Exception, action: str):
    if isinstance(error, InvalidAnalysisRequestError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, AnalysisValidationError):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"message": "The model returned an invalid analysis", "errors": error.errors},
        )
    if isinstance(error, EmptyModelResponseError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(error))
    status_code, message = classify_model_error(error, action)
    raise HTTPException(status_code=status_code, detail=message)


def make_analysis_router(
    analysis_service: Optional[AnalysisService], usage_limiter: UsageLimiter
):
    router = APIRouter(prefix="/api", tags=["analysis"])

    def require_service() -> AnalysisService:
        if analysis_service is None:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Analysis is not configured on this server",
            )
        return analysis_service

    @router.post("/analyze", summary="Check content against the ad policy guide")
    async def analyze(request: Request, body: AnalyzeRequest):
        service = require_service()
        ip = get_client_ip(request)
        quota = await usage_limiter.check_quota(ip)
        if not quota.allowed:
            return quota_exceeded_response(usage_limiter.per_caller_limit)

        try:
            result = await service.analyze(body)
        except Exception as e:
            log.error(f"Analysis failed: {e}", exc_info=True)
            _raise_for_model_error(e, "Analysis")

        await usage_limiter.record_usage(ip)
        usage = await usage_limiter.get_usage(ip)
        return {
            **result.model_dump(mode="json", by_alias=True),
            "_usage": {"remaining": usage.remaining, "limit": usage.limit},
        }

    @router.post("/generate-fix-prompt", summary="Turn violations into an editing instruction")
    async def generate_fix_prompt(request: Request, body: FixPromptRequest):
        service = require_service()
        ip = get_client_ip(request)
        # Checked but not charged, prompt generation is cheap.
        quota = await usage_limiter.check_quota(ip)
        if not quota.allowed:
            return quota_exceeded_response(usage_limiter.per_caller_limit)

        if body.comprehensive and body.issues:
            call = service.generate_comprehensive_fix_prompt(body.issues)
        elif body.issue is not None:
            call = service.generate_fix_prompt(body.issue)
        else:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Either issue or issues (with comprehensive: true) is required",
            )

        try:
            prompt = await call
        except Exception as e:
            log.error(f"Fix prompt generation failed: {e}", exc_info=True)
            _raise_for_model_error(e, "Fix prompt generation")

        return {
            "prompt": prompt,
            "_usage": {
                "remaining": quota.caller_remaining,
                "limit": usage_limiter.per_caller_limit,
            },
        }

    @router.post("/generate-image", summary="Generate or edit an image with the hosted model")
    async def generate_image(request: Request, body: GenerateImageRequest):
        service = require_service()
        ip = get_client_ip(request)
        quota = await usage_limiter.check_quota(ip)
        if not quota.allowed:
            return quota_exceeded_response(usage_limiter.per_caller_limit)

        try:
            image_data_url = await service.generate_image(body)
        except Exception as e:
            log.error(f"Image generation failed: {e}", exc_info=True)
            _raise_for_model_error(e, "Image generation")

        await usage_limiter.record_usage(ip)
        usage = await usage_limiter.get_usage(ip)
        return {
            "imageDataUrl": image_data_url,
            "_usage": {"remaining": usage.remaining, "limit": usage.limit},
        }

    return router
